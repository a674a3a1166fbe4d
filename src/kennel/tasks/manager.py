from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from kennel.errors import (
    CapacityError,
    HarnessError,
    InvalidTransitionError,
    KennelError,
    NotFoundError,
    NotWaitingError,
    ValidationError,
)
from kennel.events import EventBus, Subscription, utcnow_iso
from kennel.harness.registry import HarnessRegistry
from kennel.tasks.models import (
    INTERRUPTED,
    TRANSITIONS,
    ProgressEntry,
    Task,
    TaskConstraints,
    TaskError,
    TaskResult,
    TaskSnapshot,
    TaskStatus,
    new_task_id,
)
from kennel.tasks.store import TaskStore
from kennel.workspace import WorkspaceRegistry

logger = logging.getLogger(__name__)

MAX_GOAL_CHARS = 10_000
# Tabs and newlines are allowed in goals; NUL cannot be passed in argv at all.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class TaskEventType(str, Enum):
    CREATED = "task:created"
    STARTED = "task:started"
    PROGRESS = "task:progress"
    WAITING_INPUT = "task:waiting_input"
    COMPLETED = "task:completed"
    FAILED = "task:failed"
    CANCELLED = "task:cancelled"
    TIMEOUT = "task:timeout"


@dataclass(frozen=True, slots=True)
class TaskEvent:
    type: TaskEventType
    task_id: str
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=utcnow_iso)


class ExecutionControl(Protocol):
    """What the manager needs from whoever runs tasks."""

    def dispatch(self, task: Task) -> None: ...

    async def deliver_input(self, task_id: str, text: str) -> None: ...

    async def abort(self, task_id: str, reason: str) -> None: ...


class TaskManager:
    """The task state machine and the only writer of task rows.

    Every transition is saved to the store before its event is published,
    and a terminal task is never written again.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: HarnessRegistry,
        workspaces: WorkspaceRegistry,
        *,
        default_timeout_ms: int = 300_000,
        max_active_per_session: int = 1,
    ) -> None:
        self.store = store
        self.registry = registry
        self.workspaces = workspaces
        self.default_timeout_ms = default_timeout_ms
        self.max_active_per_session = max_active_per_session
        self.events: EventBus[TaskEvent] = EventBus("tasks")
        self._tasks: dict[str, Task] = {}
        # Store revision of each cached row; a mismatch means another writer got there first.
        self._revisions: dict[str, int] = {}
        self._control: ExecutionControl | None = None

    def attach(self, control: ExecutionControl) -> None:
        self._control = control

    def subscribe(self, handler: Callable[[TaskEvent], None]) -> Subscription:
        return self.events.subscribe(handler)

    def _emit(self, event_type: TaskEventType, task: Task, **payload: Any) -> None:
        self.events.publish(
            TaskEvent(type=event_type, task_id=task.id, session_id=task.session_id, payload=payload)
        )

    def _load(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is not None:
            return task
        task = self.store.get(task_id)
        if task is None:
            raise NotFoundError(f"Unknown task '{task_id}'.")
        return task

    def _update(self, task_id: str, mutate: Callable[[Task], None]) -> Task:
        current = self._load(task_id)
        if current.terminal:
            raise InvalidTransitionError(f"Task {task_id} is {current.status.value} and cannot change.")
        draft = Task.from_dict(current.to_dict())
        mutate(draft)
        draft.updated_at = utcnow_iso()
        expected = self._revisions.get(task_id)
        if expected is None:
            expected = self.store.revision(task_id)
        revision = self.store.save(draft, expected_revision=expected)
        if draft.terminal:
            self._tasks.pop(task_id, None)
            self._revisions.pop(task_id, None)
        else:
            self._tasks[task_id] = draft
            self._revisions[task_id] = revision
        return draft

    @staticmethod
    def _move(task: Task, status: TaskStatus) -> None:
        if status not in TRANSITIONS[task.status]:
            raise InvalidTransitionError(
                f"Task {task.id} cannot move from {task.status.value} to {status.value}."
            )
        task.status = status
        if status.terminal:
            task.completed_at = utcnow_iso()
            task.pending_question = None

    def start(self) -> list[str]:
        """Reconcile rows a previous process left mid-flight.

        Running and waiting tasks had a process that no longer exists, so
        they fail as interrupted. Pending tasks never started any work and
        are kept for ``dispatch_pending``.
        """
        reconciled: list[str] = []
        for stale in self.store.find_interrupted():
            self._tasks[stale.id] = stale

            def _interrupt(task: Task) -> None:
                self._move(task, TaskStatus.FAILED)
                task.error = TaskError(
                    kind=INTERRUPTED,
                    message="Task was interrupted by an orchestrator restart.",
                    reason=INTERRUPTED,
                )

            task = self._update(stale.id, _interrupt)
            reconciled.append(task.id)
            self._emit(
                TaskEventType.FAILED,
                task,
                error=task.error.message if task.error else INTERRUPTED,
                kind=INTERRUPTED,
                reason=INTERRUPTED,
            )
        for pending in self.store.list(status=TaskStatus.PENDING):
            self._tasks.setdefault(pending.id, pending)
        if reconciled:
            logger.warning("Reconciled %d interrupted task(s): %s", len(reconciled), ", ".join(reconciled))
        return reconciled

    def active_for_session(self, session_id: str) -> list[Task]:
        return [task for task in self.store.list(session_id=session_id) if not task.terminal]

    def create(
        self,
        goal: str,
        *,
        workspace: str,
        session_id: str,
        harness: str | None = None,
        timeout_ms: int | None = None,
        require_approval: bool = False,
    ) -> str:
        goal = (goal or "").strip()
        if not goal:
            raise ValidationError("Goal must not be empty.")
        if len(goal) > MAX_GOAL_CHARS:
            raise ValidationError(f"Goal exceeds {MAX_GOAL_CHARS} characters.")
        if _CONTROL_CHARS.search(goal):
            raise ValidationError("Goal must not contain control characters.")
        if not (session_id or "").strip():
            raise ValidationError("Session id is required.")
        if timeout_ms is not None and (isinstance(timeout_ms, bool) or int(timeout_ms) <= 0):
            raise ValidationError("timeout_ms must be a positive number of milliseconds.")
        harness_name = self.registry.resolve_name(harness)
        self.workspaces.resolve(workspace)

        active = self.active_for_session(session_id)
        if len(active) >= self.max_active_per_session:
            raise CapacityError(
                f"Session {session_id} already has an active task ({active[0].id}, {active[0].status.value})."
            )

        task = Task(
            id=new_task_id(),
            session_id=session_id,
            goal=goal,
            harness=harness_name,
            workspace=workspace.strip(),
            agent_selection=harness or "auto",
            constraints=TaskConstraints(
                timeout_ms=int(timeout_ms) if timeout_ms is not None else self.default_timeout_ms,
                require_approval=require_approval,
            ),
        )
        self._revisions[task.id] = self.store.save(task, expected_revision=0)
        self._tasks[task.id] = task
        logger.info("Created %s for session %s on %s", task.id, session_id, harness_name)
        self._emit(TaskEventType.CREATED, task, goal=goal, harness=harness_name, workspace=task.workspace)
        if self._control is not None:
            self._control.dispatch(task)
        return task.id

    def dispatch_pending(self, task_id: str) -> None:
        task = self._load(task_id)
        if task.status is not TaskStatus.PENDING:
            raise InvalidTransitionError(f"Task {task_id} is {task.status.value}, not pending.")
        if self._control is None:
            raise KennelError("No executor attached to the task manager.")
        self._control.dispatch(task)

    async def cancel(self, task_id: str, reason: str = "cancelled by user") -> TaskSnapshot:
        task = self._load(task_id)
        if task.terminal:
            return TaskSnapshot.of(task)
        task = self.mark_cancelled(task_id, reason)
        if self._control is not None:
            await self._control.abort(task_id, reason)
        return TaskSnapshot.of(task)

    async def respond(self, task_id: str, text: str) -> TaskSnapshot:
        task = self._load(task_id)
        if task.status is not TaskStatus.WAITING_INPUT:
            raise NotWaitingError(f"Task {task_id} is {task.status.value}, not waiting for input.")
        if not (text or "").strip():
            raise ValidationError("Response must not be empty.")
        if self._control is None:
            raise KennelError("No executor attached to the task manager.")

        question = task.pending_question or ""

        def _resume(draft: Task) -> None:
            self._move(draft, TaskStatus.RUNNING)
            draft.pending_question = None
            draft.add_progress(ProgressEntry(message="Input delivered, resuming."))

        task = self._update(task_id, _resume)
        try:
            await self._control.deliver_input(task_id, text)
        except HarnessError:
            current = self._load(task_id)
            if current.status is TaskStatus.RUNNING:

                def _restore(draft: Task) -> None:
                    self._move(draft, TaskStatus.WAITING_INPUT)
                    draft.pending_question = question

                self._update(task_id, _restore)
            raise
        self._emit(TaskEventType.PROGRESS, task, message="Input delivered, resuming.", percent=None, resumed=True)
        return self.get_status(task_id)

    def mark_cancelled(self, task_id: str, reason: str) -> Task:
        def _cancel(draft: Task) -> None:
            self._move(draft, TaskStatus.CANCELLED)
            draft.add_progress(ProgressEntry(message=f"Cancelled: {reason}"))

        task = self._update(task_id, _cancel)
        logger.info("Cancelled %s (%s)", task_id, reason)
        self._emit(TaskEventType.CANCELLED, task, reason=reason)
        return task

    def get_status(self, task_id: str) -> TaskSnapshot:
        return TaskSnapshot.of(self._load(task_id))

    def list(
        self,
        session_id: str | None = None,
        status: TaskStatus | str | None = None,
    ) -> list[TaskSnapshot]:
        try:
            tasks = self.store.list(session_id=session_id, status=status)
        except ValueError as exc:
            raise ValidationError(f"Unknown task status: {status}") from exc
        return [TaskSnapshot.of(self._tasks.get(task.id, task)) for task in tasks]

    def is_terminal(self, task_id: str) -> bool:
        return self._load(task_id).terminal

    # Transitions driven by executions.

    def mark_started(self, task_id: str, *, pid: int | None = None) -> None:
        def _start(draft: Task) -> None:
            self._move(draft, TaskStatus.RUNNING)
            draft.started_at = utcnow_iso()
            draft.add_progress(ProgressEntry(message=f"Started {draft.harness}"))

        task = self._update(task_id, _start)
        self._emit(TaskEventType.STARTED, task, harness=task.harness, pid=pid)

    def record_progress(
        self,
        task_id: str,
        message: str,
        *,
        percent: int | None = None,
        files: dict[str, list[str]] | None = None,
    ) -> None:
        entry = ProgressEntry(message=message, percent=percent, files=files)
        task = self._update(task_id, lambda draft: draft.add_progress(entry))
        payload: dict[str, Any] = {"message": message, "percent": percent}
        if files:
            payload["files"] = files
        self._emit(TaskEventType.PROGRESS, task, **payload)

    def record_retry(self, task_id: str, attempt: int, error: str) -> None:
        def _retry(draft: Task) -> None:
            draft.retry_count += 1
            draft.add_progress(ProgressEntry(message=f"Spawn retry {attempt}: {error}"))

        self._update(task_id, _retry)

    def mark_waiting(self, task_id: str, question: str) -> None:
        def _wait(draft: Task) -> None:
            self._move(draft, TaskStatus.WAITING_INPUT)
            draft.pending_question = question

        task = self._update(task_id, _wait)
        self._emit(TaskEventType.WAITING_INPUT, task, question=question)

    def complete(self, task_id: str, result: TaskResult) -> None:
        def _complete(draft: Task) -> None:
            self._move(draft, TaskStatus.COMPLETED)
            draft.result = result
            draft.add_progress(ProgressEntry(message="Completed", percent=100))

        task = self._update(task_id, _complete)
        logger.info("Task %s completed", task_id)
        self._emit(
            TaskEventType.COMPLETED,
            task,
            summary=result.summary,
            files_modified=[*result.files_modified, *result.files_created, *result.files_deleted],
        )

    def fail(self, task_id: str, error: TaskError, *, result: TaskResult | None = None) -> None:
        def _fail(draft: Task) -> None:
            self._move(draft, TaskStatus.FAILED)
            draft.error = error
            draft.result = result

        task = self._update(task_id, _fail)
        logger.info("Task %s failed (%s): %s", task_id, error.kind, error.message)
        if error.kind == "timeout":
            self._emit(TaskEventType.TIMEOUT, task, error=error.message)
        self._emit(TaskEventType.FAILED, task, error=error.message, kind=error.kind, reason=error.reason)
