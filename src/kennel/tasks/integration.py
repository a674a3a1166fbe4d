from __future__ import annotations

import asyncio
import logging

from kennel.errors import HarnessCancelledError, HarnessProcessError, KennelError, NotFoundError
from kennel.harness.executor import (
    ExecutionEvent,
    ExecutionEventKind,
    ExecutionResult,
    HarnessExecutor,
    new_execution_id,
)
from kennel.harness.registry import HarnessRegistry
from kennel.tasks.framing import FramingContext, GoalFramer, TemplateGoalFramer
from kennel.tasks.manager import TaskManager
from kennel.tasks.models import RAW_OUTPUT_TAIL_CHARS, Task, TaskError, TaskResult
from kennel.workspace import WorkspaceRegistry

logger = logging.getLogger(__name__)


def _tail(text: str, limit: int = RAW_OUTPUT_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


def _task_result(result: ExecutionResult) -> TaskResult:
    return TaskResult(
        success=result.success,
        summary=result.summary,
        files_modified=list(result.files.modified),
        files_created=list(result.files.created),
        files_deleted=list(result.files.deleted),
        exit_code=result.exit_code,
        raw_output="" if result.success else _tail(result.output),
    )


class TaskIntegration:
    """Runs tasks on the executor and folds its events back into the manager.

    Only the execution id is tracked per task; the process handle itself
    stays inside the pool.
    """

    def __init__(
        self,
        manager: TaskManager,
        executor: HarnessExecutor,
        registry: HarnessRegistry,
        workspaces: WorkspaceRegistry,
        *,
        framer: GoalFramer | None = None,
    ) -> None:
        self.manager = manager
        self.executor = executor
        self.registry = registry
        self.workspaces = workspaces
        self.framer = framer or TemplateGoalFramer()
        self._executions: dict[str, str] = {}
        self._runs: dict[str, asyncio.Task[ExecutionResult | None]] = {}
        self._subscription = executor.subscribe(self._on_event)
        manager.attach(self)

    def close(self) -> None:
        self._subscription.close()

    def execution_id(self, task_id: str) -> str | None:
        return self._executions.get(task_id)

    def running_tasks(self) -> list[str]:
        return [task_id for task_id, run in self._runs.items() if not run.done()]

    def dispatch(self, task: Task) -> None:
        existing = self._runs.get(task.id)
        if existing is not None and not existing.done():
            return
        execution_id = new_execution_id()
        self._executions[task.id] = execution_id
        self._runs[task.id] = asyncio.get_running_loop().create_task(
            self._run(task, execution_id), name=f"task-{task.id}"
        )

    async def wait(self, task_id: str) -> ExecutionResult | None:
        run = self._runs.get(task_id)
        if run is None:
            return None
        return await run

    async def _run(self, task: Task, execution_id: str) -> ExecutionResult | None:
        try:
            adapter = self.registry.get(task.harness)
            workspace = self.workspaces.resolve(task.workspace)
            instruction = await self.framer.frame(
                FramingContext(
                    goal=task.goal,
                    workspace=task.workspace,
                    harness=task.harness,
                    require_approval=task.constraints.require_approval,
                )
            )
            if self.manager.is_terminal(task.id):
                return None
            result = await self.executor.execute(
                adapter,
                instruction,
                workspace,
                timeout_seconds=task.constraints.timeout_ms / 1000,
                task_id=task.id,
                execution_id=execution_id,
            )
        except KennelError as exc:
            logger.error("Task %s could not be dispatched: %s", task.id, exc)
            self._fail_open(task.id, TaskError(kind="spawn", message=str(exc)))
            return None
        except Exception as exc:
            logger.exception("Task %s crashed before its harness finished", task.id)
            self._fail_open(task.id, TaskError(kind="process", message=f"{type(exc).__name__}: {exc}"))
            return None
        finally:
            if self._executions.get(task.id) == execution_id:
                del self._executions[task.id]
        self._settle(task.id, result)
        return result

    def _fail_open(self, task_id: str, error: TaskError, result: TaskResult | None = None) -> None:
        try:
            if not self.manager.is_terminal(task_id):
                self.manager.fail(task_id, error, result=result)
        except KennelError:
            logger.exception("Could not record failure of task %s", task_id)

    def _settle(self, task_id: str, result: ExecutionResult) -> None:
        """Write the terminal row when the executor's final event did not land."""
        if self.manager.is_terminal(task_id):
            return
        logger.warning(
            "Task %s is still %s after its execution ended; settling it",
            task_id,
            self.manager.get_status(task_id).status.value,
        )
        if isinstance(result.error, HarnessCancelledError):
            try:
                self.manager.mark_cancelled(task_id, str(result.error))
                return
            except KennelError:
                logger.exception("Could not record cancellation of task %s", task_id)
        elif result.success:
            try:
                self.manager.complete(task_id, _task_result(result))
                return
            except KennelError:
                logger.exception("Could not record completion of task %s", task_id)
        error = result.error
        partial = _task_result(result)
        partial.success = False
        partial.raw_output = _tail(result.output)
        self._fail_open(
            task_id,
            TaskError(
                kind=error.kind if error is not None else "process",
                message=str(error) if error is not None else "Harness result could not be recorded.",
            ),
            result=partial,
        )

    async def deliver_input(self, task_id: str, text: str) -> None:
        execution_id = self._executions.get(task_id)
        if execution_id is None:
            raise HarnessProcessError(f"Task {task_id} has no live execution.")
        await self.executor.send_input(execution_id, text)

    async def abort(self, task_id: str, reason: str) -> None:
        execution_id = self._executions.get(task_id)
        if execution_id is not None:
            await self.executor.cancel(execution_id, reason)

    def _on_event(self, event: ExecutionEvent) -> None:
        task_id = event.task_id
        if task_id is None or self._executions.get(task_id) != event.execution_id:
            return
        try:
            if self.manager.is_terminal(task_id):
                logger.debug("Ignoring %s for finished task %s", event.kind.value, task_id)
                return
        except NotFoundError:
            return

        payload = event.payload
        kind = event.kind
        if kind is ExecutionEventKind.QUEUED:
            self.manager.record_progress(
                task_id, f"Waiting for a free harness slot (position {payload.get('position')})"
            )
        elif kind is ExecutionEventKind.SPAWN_RETRY:
            self.manager.record_retry(task_id, int(payload["attempt"]), str(payload["error"]))
        elif kind is ExecutionEventKind.STARTED:
            self.manager.mark_started(task_id, pid=payload.get("pid"))
        elif kind is ExecutionEventKind.PROGRESS:
            self.manager.record_progress(
                task_id, str(payload.get("message", "")), percent=payload.get("percent")
            )
        elif kind is ExecutionEventKind.FILE_OP:
            bucket = {"create": "created", "modify": "modified", "delete": "deleted"}[
                payload["operation"]
            ]
            self.manager.record_progress(
                task_id, str(payload.get("message", "")), files={bucket: [payload["path"]]}
            )
        elif kind is ExecutionEventKind.OUTPUT_ERROR:
            self.manager.record_progress(task_id, str(payload.get("message", "")))
        elif kind is ExecutionEventKind.QUESTION:
            self.manager.mark_waiting(task_id, str(payload["question"]))
        elif kind is ExecutionEventKind.COMPLETED:
            files = payload.get("files", {})
            self.manager.complete(
                task_id,
                TaskResult(
                    success=True,
                    summary=str(payload.get("summary", "")),
                    files_modified=list(files.get("modified", [])),
                    files_created=list(files.get("created", [])),
                    files_deleted=list(files.get("deleted", [])),
                    exit_code=payload.get("exit_code"),
                ),
            )
        elif kind is ExecutionEventKind.FAILED:
            files = payload.get("files", {})
            output = str(payload.get("output", ""))
            self.manager.fail(
                task_id,
                TaskError(kind=str(payload.get("error_kind", "process")), message=str(payload.get("message", ""))),
                result=TaskResult(
                    success=False,
                    summary="",
                    files_modified=list(files.get("modified", [])),
                    files_created=list(files.get("created", [])),
                    files_deleted=list(files.get("deleted", [])),
                    exit_code=payload.get("exit_code"),
                    raw_output=_tail(output),
                ),
            )
        elif kind is ExecutionEventKind.CANCELLED:
            self.manager.mark_cancelled(task_id, str(payload.get("reason", "cancelled")))
