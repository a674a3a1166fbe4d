from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from kennel.errors import (
    HarnessCancelledError,
    HarnessError,
    HarnessProcessError,
    HarnessTimeoutError,
    SpawnError,
)
from kennel.events import EventBus, Subscription, utcnow_iso
from kennel.harness.base import FileOperations, HarnessAdapter, HarnessConfig
from kennel.harness.parser import EventKind, OutputEvent, OutputParser
from kennel.harness.pool import HarnessPool
from kennel.harness.resilient import RetryPolicy, spawn_with_retry
from kennel.harness.spawner import OutputChunk, ProcessExit

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits
_WAKE = object()


def new_execution_id() -> str:
    return "hrn_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


class ExecutionEventKind(str, Enum):
    QUEUED = "queued"
    SPAWN_RETRY = "spawn_retry"
    STARTED = "started"
    PROGRESS = "progress"
    FILE_OP = "file_op"
    OUTPUT_ERROR = "output_error"
    QUESTION = "question"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ExecutionEvent:
    kind: ExecutionEventKind
    execution_id: str
    task_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class ExecutionResult:
    execution_id: str
    harness: str
    success: bool
    output: str
    summary: str = ""
    files: FileOperations = field(default_factory=FileOperations)
    exit_code: int | None = None
    duration_seconds: float = 0.0
    error: HarnessError | None = None


class PausableDeadline:
    """Time budget that stops counting while paused."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._consumed = 0.0
        self._running_since: float | None = None

    def start(self) -> None:
        if self._running_since is None:
            self._running_since = self._clock()

    def pause(self) -> None:
        if self._running_since is not None:
            self._consumed += self._clock() - self._running_since
            self._running_since = None

    resume = start

    @property
    def paused(self) -> bool:
        return self._running_since is None

    def elapsed(self) -> float:
        if self._running_since is None:
            return self._consumed
        return self._consumed + (self._clock() - self._running_since)

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())


@dataclass(slots=True)
class Execution:
    execution_id: str
    task_id: str | None
    adapter: HarnessAdapter
    config: HarnessConfig
    deadline: PausableDeadline
    stdout: OutputParser
    stderr: OutputParser
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    files: FileOperations = field(default_factory=FileOperations)
    pending_question: str | None = None
    completed_seen: bool = False
    grace_deadline: float | None = None
    cancel_requested: bool = False
    cancel_reason: str = "cancelled"
    exited: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def suspended(self) -> bool:
        return self.pending_question is not None

    def output(self) -> str:
        if self.stderr.output.strip():
            return f"{self.stdout.output}\n[stderr]\n{self.stderr.output}"
        return self.stdout.output


class HarnessExecutor:
    """Drives executions end to end: slot, spawn, stream, suspend, finalize.

    Events for one execution are published in the order its output
    arrived. Every execution releases its pool slot when ``execute``
    returns, whatever the outcome.
    """

    def __init__(
        self,
        pool: HarnessPool,
        *,
        retry_policy: RetryPolicy | None = None,
        completion_grace_seconds: float = 5.0,
        max_output_chars: int = 1_048_576,
    ) -> None:
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self.completion_grace_seconds = completion_grace_seconds
        self.max_output_chars = max_output_chars
        self.events: EventBus[ExecutionEvent] = EventBus("executor")
        self._executions: dict[str, Execution] = {}

    def subscribe(self, handler: Callable[[ExecutionEvent], None]) -> Subscription:
        return self.events.subscribe(handler)

    def _emit(self, execution: Execution, kind: ExecutionEventKind, **payload: Any) -> None:
        self.events.publish(
            ExecutionEvent(
                kind=kind,
                execution_id=execution.execution_id,
                task_id=execution.task_id,
                payload=payload,
            )
        )

    def active(self) -> list[str]:
        return list(self._executions)

    def is_suspended(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        return execution is not None and execution.suspended

    async def execute(
        self,
        adapter: HarnessAdapter,
        goal: str,
        workspace: Path,
        *,
        timeout_seconds: float,
        task_id: str | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        execution_id = execution_id or new_execution_id()
        config = adapter.build_config(goal, workspace, timeout_seconds)
        execution = Execution(
            execution_id=execution_id,
            task_id=task_id,
            adapter=adapter,
            config=config,
            deadline=PausableDeadline(timeout_seconds),
            stdout=adapter.create_parser(max_output_chars=self.max_output_chars),
            stderr=adapter.create_parser(max_output_chars=self.max_output_chars),
        )
        self._executions[execution_id] = execution
        try:
            return await self._run(execution)
        finally:
            self.pool.release(execution_id)
            self._executions.pop(execution_id, None)

    async def _run(self, execution: Execution) -> ExecutionResult:
        execution_id = execution.execution_id
        stats = self.pool.stats()
        if stats.running >= stats.capacity or stats.queued:
            self._emit(execution, ExecutionEventKind.QUEUED, position=stats.queued + 1)
        try:
            await self.pool.acquire(execution_id)
        except HarnessCancelledError as exc:
            return self._finish(execution, error=exc)
        if execution.cancel_requested:
            return self._finish(execution, error=self._cancelled_error(execution))

        try:
            handle = await spawn_with_retry(
                lambda: self.pool.launch(execution_id, execution.config, execution.queue.put_nowait),
                self.retry_policy,
                label=execution_id,
                event_hook=lambda event: self._emit(
                    execution,
                    ExecutionEventKind.SPAWN_RETRY,
                    attempt=event["attempt"],
                    delay_seconds=event["delay_seconds"],
                    error=event["error"],
                ),
                should_continue=lambda: not execution.cancel_requested,
            )
        except SpawnError as exc:
            if execution.cancel_requested:
                return self._finish(execution, error=self._cancelled_error(execution))
            return self._finish(execution, error=exc)

        execution.started_at = time.monotonic()
        execution.deadline.start()
        self._emit(
            execution,
            ExecutionEventKind.STARTED,
            pid=handle.pid,
            harness=execution.config.harness,
            command=execution.config.command,
        )
        if execution.cancel_requested:
            await self.pool.kill(execution_id, execution.cancel_reason)
        return await self._consume(execution)

    def _next_wait(self, execution: Execution) -> float | None:
        waits: list[float] = []
        if not execution.deadline.paused:
            waits.append(execution.deadline.remaining())
        if execution.grace_deadline is not None:
            waits.append(max(0.0, execution.grace_deadline - time.monotonic()))
        return min(waits) if waits else None

    async def _consume(self, execution: Execution) -> ExecutionResult:
        while True:
            wait = self._next_wait(execution)
            try:
                if wait is None:
                    item = await execution.queue.get()
                else:
                    item = await asyncio.wait_for(execution.queue.get(), timeout=wait)
            except TimeoutError:
                if execution.completed_seen:
                    execution.grace_deadline = None
                    await self.pool.kill(execution.execution_id, "completed")
                    continue
                if execution.deadline.remaining() <= 0:
                    return await self._time_out(execution)
                continue

            if item is _WAKE:
                continue
            if isinstance(item, OutputChunk):
                self._handle_chunk(execution, item)
                continue
            return self._on_exit(execution, item)

    def _handle_chunk(self, execution: Execution, chunk: OutputChunk) -> None:
        parser = execution.stderr if chunk.stream == "stderr" else execution.stdout
        if execution.completed_seen:
            execution.grace_deadline = time.monotonic() + self.completion_grace_seconds
        for event in parser.feed(chunk.data):
            self._dispatch(execution, event)

    def _dispatch(self, execution: Execution, event: OutputEvent) -> None:
        if event.kind is EventKind.QUESTION:
            if execution.suspended or execution.exited or execution.cancel_requested:
                return
            execution.pending_question = event.text
            execution.deadline.pause()
            self._emit(execution, ExecutionEventKind.QUESTION, question=event.text)
        elif event.kind is EventKind.COMPLETION:
            execution.completed_seen = True
            execution.grace_deadline = time.monotonic() + self.completion_grace_seconds
            self._emit(execution, ExecutionEventKind.PROGRESS, message=event.text, percent=100)
        elif event.kind is EventKind.FILE_OP:
            assert event.operation is not None and event.path is not None
            execution.files.record(event.operation, event.path)
            self._emit(
                execution,
                ExecutionEventKind.FILE_OP,
                operation=event.operation.value,
                path=event.path,
                message=event.text,
            )
        elif event.kind is EventKind.ERROR:
            self._emit(execution, ExecutionEventKind.OUTPUT_ERROR, message=event.text)
        else:
            self._emit(
                execution, ExecutionEventKind.PROGRESS, message=event.text, percent=event.percent
            )

    def _flush(self, execution: Execution) -> None:
        for parser in (execution.stdout, execution.stderr):
            for event in parser.flush():
                self._dispatch(execution, event)

    def _on_exit(self, execution: Execution, exit_event: ProcessExit) -> ExecutionResult:
        execution.exited = True
        self._flush(execution)
        returncode = exit_event.returncode
        if execution.cancel_requested:
            return self._finish(
                execution, error=self._cancelled_error(execution), exit_code=returncode
            )
        if execution.completed_seen or returncode == 0:
            return self._finish(execution, exit_code=returncode)
        if exit_event.signal is not None:
            message = f"{execution.config.harness} was terminated by signal {exit_event.signal}"
        else:
            message = f"{execution.config.harness} exited with code {returncode}"
        return self._finish(
            execution,
            error=HarnessProcessError(
                message,
                harness=execution.config.harness,
                exit_code=returncode,
                output=execution.output(),
            ),
            exit_code=returncode,
        )

    async def _time_out(self, execution: Execution) -> ExecutionResult:
        budget = execution.deadline.budget_seconds
        logger.warning("Execution %s timed out after %.1fs", execution.execution_id, budget)
        await self.pool.kill(execution.execution_id, "timeout")
        exit_code = await self._drain(execution, limit_seconds=self.pool.spawner.kill_grace_seconds + 1.0)
        return self._finish(
            execution,
            error=HarnessTimeoutError(
                f"{execution.config.harness} timed out after {budget:.1f}s",
                harness=execution.config.harness,
                exit_code=exit_code,
                output=execution.output(),
            ),
            exit_code=exit_code,
        )

    async def _drain(self, execution: Execution, *, limit_seconds: float) -> int | None:
        """Collect output left in flight after a kill, without emitting events."""
        loop = asyncio.get_running_loop()
        stop_at = loop.time() + limit_seconds
        while True:
            remaining = stop_at - loop.time()
            if remaining <= 0:
                break
            try:
                item = await asyncio.wait_for(execution.queue.get(), timeout=remaining)
            except TimeoutError:
                break
            if isinstance(item, OutputChunk):
                parser = execution.stderr if item.stream == "stderr" else execution.stdout
                parser.feed(item.data)
            elif isinstance(item, ProcessExit):
                execution.exited = True
                for parser in (execution.stdout, execution.stderr):
                    parser.flush()
                return item.returncode
        return None

    def _cancelled_error(self, execution: Execution) -> HarnessCancelledError:
        return HarnessCancelledError(
            f"Execution {execution.execution_id} cancelled: {execution.cancel_reason}",
            harness=execution.config.harness,
            output=execution.output(),
        )

    def _finish(
        self,
        execution: Execution,
        *,
        error: HarnessError | None = None,
        exit_code: int | None = None,
    ) -> ExecutionResult:
        output = execution.output()
        files = FileOperations()
        files.merge(execution.files)
        files.merge(execution.adapter.extract_file_operations(execution.stdout.output))
        result = ExecutionResult(
            execution_id=execution.execution_id,
            harness=execution.config.harness,
            success=error is None,
            output=output,
            files=files,
            exit_code=exit_code,
            duration_seconds=round(time.monotonic() - execution.started_at, 3),
            error=error,
        )
        if error is None:
            result.summary = execution.adapter.extract_summary(execution.stdout.output)
            self._emit(
                execution,
                ExecutionEventKind.COMPLETED,
                summary=result.summary,
                files=files.to_dict(),
                exit_code=exit_code,
            )
        elif isinstance(error, HarnessCancelledError):
            self._emit(execution, ExecutionEventKind.CANCELLED, reason=execution.cancel_reason)
        else:
            self._emit(
                execution,
                ExecutionEventKind.FAILED,
                error_kind=error.kind,
                message=str(error),
                exit_code=exit_code,
                output=output,
                files=files.to_dict(),
            )
        return result

    async def send_input(self, execution_id: str, text: str) -> None:
        """Answer a pending question and restart the deadline."""
        execution = self._executions.get(execution_id)
        if execution is None:
            raise HarnessProcessError(f"No active execution {execution_id}.")
        if not execution.suspended:
            raise HarnessProcessError(f"Execution {execution_id} is not waiting for input.")
        # resume before writing so a follow-up question is not swallowed
        question = execution.pending_question
        execution.pending_question = None
        execution.deadline.resume()
        execution.queue.put_nowait(_WAKE)
        try:
            await self.pool.send_input(execution_id, execution.adapter.format_response(text))
        except HarnessError:
            if execution.pending_question is None and not execution.exited:
                execution.pending_question = question
                execution.deadline.pause()
            raise
        self._emit(execution, ExecutionEventKind.RESUMED)

    async def cancel(self, execution_id: str, reason: str = "cancelled") -> bool:
        execution = self._executions.get(execution_id)
        if execution is None:
            return False
        if not execution.cancel_requested:
            execution.cancel_requested = True
            execution.cancel_reason = reason
        if self.pool.cancel_queued(execution_id):
            return True
        if self.pool.handle(execution_id) is not None:
            await self.pool.kill(execution_id, reason)
        execution.queue.put_nowait(_WAKE)
        return True
