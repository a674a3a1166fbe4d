from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from kennel.errors import HarnessProcessError, SpawnError
from kennel.harness.base import HarnessConfig

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096


@dataclass(frozen=True, slots=True)
class OutputChunk:
    stream: str
    data: bytes


@dataclass(frozen=True, slots=True)
class ProcessExit:
    returncode: int | None

    @property
    def signal(self) -> int | None:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None


ProcessSink = Callable[[OutputChunk | ProcessExit], None]


@dataclass(slots=True)
class ProcessHandle:
    execution_id: str
    config: HarnessConfig
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.monotonic)
    pump: asyncio.Task[None] | None = None
    kill_reason: str | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class HarnessSpawner:
    """Launches and tears down harness processes.

    The working directory must resolve inside ``workspace_root``. Output is
    pushed to the sink as raw chunks, followed by exactly one ProcessExit
    once both streams reach EOF.
    """

    def __init__(self, workspace_root: Path, *, kill_grace_seconds: float = 3.0) -> None:
        self.workspace_root = workspace_root.resolve()
        self.kill_grace_seconds = kill_grace_seconds

    def _checked_cwd(self, config: HarnessConfig) -> Path:
        cwd = config.cwd.resolve()
        if cwd != self.workspace_root and not cwd.is_relative_to(self.workspace_root):
            raise SpawnError(
                f"Working directory {cwd} is outside workspace root {self.workspace_root}",
                harness=config.harness,
                retriable=False,
            )
        if not cwd.is_dir():
            raise SpawnError(
                f"Working directory does not exist: {cwd}",
                harness=config.harness,
                retriable=False,
            )
        return cwd

    async def spawn(self, execution_id: str, config: HarnessConfig, sink: ProcessSink) -> ProcessHandle:
        cwd = self._checked_cwd(config)
        env = os.environ.copy()
        env.update(config.env)
        try:
            process = await asyncio.create_subprocess_exec(
                *config.argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise SpawnError(
                f"Harness binary not found: {config.command}",
                harness=config.harness,
            ) from exc
        except PermissionError as exc:
            raise SpawnError(
                f"Permission denied launching {config.command}",
                harness=config.harness,
            ) from exc
        except OSError as exc:
            raise SpawnError(
                f"Failed to launch {config.command}: {exc}",
                harness=config.harness,
            ) from exc

        handle = ProcessHandle(execution_id=execution_id, config=config, process=process)
        handle.pump = asyncio.create_task(self._pump(handle, sink), name=f"pump-{execution_id}")
        logger.info("Spawned %s for %s (pid %s)", config.command, execution_id, process.pid)
        return handle

    async def _pump(self, handle: ProcessHandle, sink: ProcessSink) -> None:
        process = handle.process

        async def _read(stream: asyncio.StreamReader | None, name: str) -> None:
            if stream is None:
                return
            while True:
                data = await stream.read(READ_CHUNK_BYTES)
                if not data:
                    return
                sink(OutputChunk(name, data))

        await asyncio.gather(_read(process.stdout, "stdout"), _read(process.stderr, "stderr"))
        returncode = await process.wait()
        logger.info(
            "Harness %s exited with %s (pid %s)", handle.execution_id, returncode, process.pid
        )
        sink(ProcessExit(returncode))

    async def send_input(self, handle: ProcessHandle, text: str) -> None:
        stdin = handle.process.stdin
        if not handle.alive or stdin is None or stdin.is_closing():
            raise HarnessProcessError(
                f"Harness {handle.execution_id} is not accepting input.",
                harness=handle.config.harness,
            )
        try:
            stdin.write(text.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise HarnessProcessError(
                f"Harness {handle.execution_id} closed its input stream.",
                harness=handle.config.harness,
            ) from exc

    def _signal(self, handle: ProcessHandle, sig: signal.Signals) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(handle.pid, sig)
            return
        with contextlib.suppress(ProcessLookupError):
            handle.process.send_signal(sig)

    async def kill(self, handle: ProcessHandle, reason: str) -> None:
        """SIGTERM the process group, escalate to SIGKILL after the grace period."""
        if handle.kill_reason is None:
            handle.kill_reason = reason
        if not handle.alive:
            return
        logger.info("Stopping harness %s (%s)", handle.execution_id, reason)
        self._signal(handle, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.warning(
                "Harness %s ignored SIGTERM for %.1fs, sending SIGKILL",
                handle.execution_id,
                self.kill_grace_seconds,
            )
            self._signal(handle, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                await handle.process.wait()
