from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from kennel.errors import StoreError
from kennel.events import utcnow_iso
from kennel.tasks.models import Task, TaskStatus

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class TaskStore:
    """Durable task rows, one JSON envelope per task.

    Each file holds ``{schema_version, revision, updated_at, data}``. Writes
    go to a temp file that is fsynced and renamed over the target, so a crash
    leaves either the old row or the new one, never a torn file.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.tasks_dir = self.root / "tasks"
        self.meta_dir = self.root / "meta"
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self.meta_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.root / ".lock"
        self._clear_stale_lock()

    def _clear_stale_lock(self) -> None:
        """Remove a lock left behind by a process that no longer exists."""
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip() or "0")
        except FileNotFoundError:
            return
        except ValueError:
            owner = 0
        if owner > 0:
            try:
                os.kill(owner, 0)
                return
            except ProcessLookupError:
                pass
            except PermissionError:
                return
        logger.warning("Removing stale state lock held by pid %s", owner or "unknown")
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _validate_key(key: str) -> None:
        if not _KEY_PATTERN.match(key):
            raise StoreError(f"Invalid store key: {key!r}")

    def _task_file(self, task_id: str) -> Path:
        self._validate_key(task_id)
        return self.tasks_dir / f"{task_id}.json"

    def _meta_file(self, key: str) -> Path:
        self._validate_key(key)
        return self.meta_dir / f"{key}.json"

    @staticmethod
    def _read_envelope(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StoreError(f"Corrupt state file {path.name}: {exc}") from exc
        if not isinstance(raw, dict) or "data" not in raw:
            raise StoreError(f"State file {path.name} is not an envelope.")
        return raw

    def _write_envelope(self, path: Path, data: Any, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StoreError(f"Failed to write {path.name}: {exc}") from exc
        self._fsync_dir(path.parent)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)

    def save(self, task: Task, expected_revision: int | None = None) -> int:
        """Persist ``task`` and return its new revision.

        The write is durable when this returns.
        """
        path = self._task_file(task.id)
        with self._state_lock():
            current = self._read_envelope(path)
            current_revision = int(current.get("revision", 0)) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise StoreError(f"Concurrent update detected for task '{task.id}'.")
            revision = current_revision + 1
            self._write_envelope(path, task.to_dict(), revision)
        return revision

    def revision(self, task_id: str) -> int:
        envelope = self._read_envelope(self._task_file(task_id))
        return int(envelope.get("revision", 0)) if envelope else 0

    def get(self, task_id: str) -> Task | None:
        envelope = self._read_envelope(self._task_file(task_id))
        if envelope is None:
            return None
        return Task.from_dict(envelope["data"])

    def _scan(self) -> Iterator[Task]:
        for path in sorted(self.tasks_dir.glob("*.json")):
            try:
                envelope = self._read_envelope(path)
                if envelope is None:
                    continue
                yield Task.from_dict(envelope["data"])
            except (StoreError, KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable task file %s: %s", path.name, exc)

    def list(
        self,
        session_id: str | None = None,
        status: TaskStatus | str | None = None,
    ) -> list[Task]:
        wanted = TaskStatus(status) if status is not None else None
        tasks = [
            task
            for task in self._scan()
            if (session_id is None or task.session_id == session_id)
            and (wanted is None or task.status is wanted)
        ]
        tasks.sort(key=lambda task: (task.created_at, task.id))
        return tasks

    def find_interrupted(self) -> list[Task]:
        return [
            task
            for task in self._scan()
            if task.status in {TaskStatus.RUNNING, TaskStatus.WAITING_INPUT}
        ]

    def get_meta(self, key: str, default: Any = None) -> Any:
        envelope = self._read_envelope(self._meta_file(key))
        if envelope is None:
            return default
        return envelope.get("data", default)

    def set_meta(self, key: str, value: Any) -> None:
        path = self._meta_file(key)
        with self._state_lock():
            current = self._read_envelope(path)
            revision = int(current.get("revision", 0)) + 1 if current else 1
            self._write_envelope(path, value, revision)
