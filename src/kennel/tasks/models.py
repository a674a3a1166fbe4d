from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kennel.events import utcnow_iso

_ID_ALPHABET = string.ascii_lowercase + string.digits
RAW_OUTPUT_TAIL_CHARS = 4000
INTERRUPTED = "interrupted"


def new_task_id() -> str:
    return "tsk_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(10))


def new_progress_id() -> str:
    return "prg_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# pending -> failed covers executions that never managed to spawn.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.WAITING_INPUT,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.WAITING_INPUT: frozenset(
        {TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


@dataclass(slots=True)
class ProgressEntry:
    message: str
    percent: int | None = None
    files: dict[str, list[str]] | None = None
    id: str = field(default_factory=new_progress_id)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "message": self.message,
            "percent": self.percent,
            "files": self.files,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressEntry:
        return cls(
            message=str(data.get("message", "")),
            percent=data.get("percent"),
            files=data.get("files"),
            id=str(data.get("id") or new_progress_id()),
            timestamp=str(data.get("timestamp") or utcnow_iso()),
        )


@dataclass(slots=True)
class TaskResult:
    success: bool
    summary: str
    files_modified: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    exit_code: int | None = None
    raw_output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "files_modified": list(self.files_modified),
            "files_created": list(self.files_created),
            "files_deleted": list(self.files_deleted),
            "exit_code": self.exit_code,
            "raw_output": self.raw_output,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskResult:
        return cls(
            success=bool(data.get("success", False)),
            summary=str(data.get("summary", "")),
            files_modified=list(data.get("files_modified", [])),
            files_created=list(data.get("files_created", [])),
            files_deleted=list(data.get("files_deleted", [])),
            exit_code=data.get("exit_code"),
            raw_output=str(data.get("raw_output", "")),
        )


@dataclass(slots=True)
class TaskError:
    kind: str
    message: str
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskError:
        return cls(
            kind=str(data.get("kind", "process")),
            message=str(data.get("message", "")),
            reason=data.get("reason"),
        )


@dataclass(slots=True)
class TaskConstraints:
    timeout_ms: int = 300_000
    require_approval: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"timeout_ms": self.timeout_ms, "require_approval": self.require_approval}


@dataclass(slots=True)
class Task:
    id: str
    session_id: str
    goal: str
    harness: str
    workspace: str
    status: TaskStatus = TaskStatus.PENDING
    agent_selection: str = "auto"
    priority: str = "normal"
    constraints: TaskConstraints = field(default_factory=TaskConstraints)
    progress: list[ProgressEntry] = field(default_factory=list)
    result: TaskResult | None = None
    error: TaskError | None = None
    pending_question: str | None = None
    retry_count: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def add_progress(self, entry: ProgressEntry) -> None:
        self.progress.append(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "goal": self.goal,
            "harness": self.harness,
            "workspace": self.workspace,
            "status": self.status.value,
            "agent_selection": self.agent_selection,
            "priority": self.priority,
            "constraints": self.constraints.to_dict(),
            "progress": [entry.to_dict() for entry in self.progress],
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "pending_question": self.pending_question,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        constraints = data.get("constraints") or {}
        return cls(
            id=str(data["id"]),
            session_id=str(data["session_id"]),
            goal=str(data.get("goal", "")),
            harness=str(data.get("harness", "")),
            workspace=str(data.get("workspace", "")),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            agent_selection=str(data.get("agent_selection", "auto")),
            priority=str(data.get("priority", "normal")),
            constraints=TaskConstraints(
                timeout_ms=int(constraints.get("timeout_ms", 300_000)),
                require_approval=bool(constraints.get("require_approval", False)),
            ),
            progress=[ProgressEntry.from_dict(item) for item in data.get("progress", [])],
            result=TaskResult.from_dict(data["result"]) if data.get("result") else None,
            error=TaskError.from_dict(data["error"]) if data.get("error") else None,
            pending_question=data.get("pending_question"),
            retry_count=int(data.get("retry_count", 0)),
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass(frozen=True, slots=True)
class TaskSnapshot:
    """Read-only view of a task handed to callers."""

    id: str
    session_id: str
    goal: str
    status: TaskStatus
    harness: str
    workspace: str
    progress: tuple[ProgressEntry, ...]
    result: TaskResult | None
    error: TaskError | None
    pending_question: str | None
    retry_count: int
    created_at: str
    started_at: str | None
    completed_at: str | None

    @classmethod
    def of(cls, task: Task) -> TaskSnapshot:
        restored = Task.from_dict(task.to_dict())
        return cls(
            id=restored.id,
            session_id=restored.session_id,
            goal=restored.goal,
            status=restored.status,
            harness=restored.harness,
            workspace=restored.workspace,
            progress=tuple(restored.progress),
            result=restored.result,
            error=restored.error,
            pending_question=restored.pending_question,
            retry_count=restored.retry_count,
            created_at=restored.created_at,
            started_at=restored.started_at,
            completed_at=restored.completed_at,
        )

    @property
    def latest_progress(self) -> ProgressEntry | None:
        return self.progress[-1] if self.progress else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "goal": self.goal,
            "status": self.status.value,
            "harness": self.harness,
            "workspace": self.workspace,
            "progress": [entry.to_dict() for entry in self.progress],
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "pending_question": self.pending_question,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
