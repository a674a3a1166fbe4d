from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from kennel.config import KennelConfig
from kennel.events import Subscription
from kennel.harness.executor import ExecutionResult, HarnessExecutor
from kennel.harness.pool import HarnessPool
from kennel.harness.registry import HarnessRegistry
from kennel.harness.resilient import RetryPolicy
from kennel.harness.spawner import HarnessSpawner
from kennel.modes import ModeCoordinator, ModeNotice
from kennel.tasks.framing import GoalFramer, OpenAIGoalFramer, TemplateGoalFramer
from kennel.tasks.integration import TaskIntegration
from kennel.tasks.manager import TaskEvent, TaskManager
from kennel.tasks.models import TaskSnapshot, TaskStatus
from kennel.tasks.store import TaskStore
from kennel.workspace import WorkspaceRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StartupReport:
    reconciled: list[str]
    notices: list[ModeNotice]


def build_framer(config: KennelConfig) -> GoalFramer:
    if config.framing.strategy == "openai":
        return OpenAIGoalFramer(
            model=config.framing.model,
            max_tokens=config.framing.max_tokens,
            temperature=config.framing.temperature,
        )
    return TemplateGoalFramer()


class Orchestrator:
    """The inbound surface: create, respond, cancel and query tasks."""

    def __init__(
        self,
        *,
        store: TaskStore,
        registry: HarnessRegistry,
        workspaces: WorkspaceRegistry,
        pool: HarnessPool,
        executor: HarnessExecutor,
        manager: TaskManager,
        integration: TaskIntegration,
        modes: ModeCoordinator,
    ) -> None:
        self.store = store
        self.registry = registry
        self.workspaces = workspaces
        self.pool = pool
        self.executor = executor
        self.manager = manager
        self.integration = integration
        self.modes = modes
        self.started = False

    @classmethod
    def from_config(
        cls,
        config: KennelConfig,
        base_dir: Path,
        *,
        registry: HarnessRegistry | None = None,
        framer: GoalFramer | None = None,
    ) -> Orchestrator:
        workspace_root = config.resolve_path(base_dir, config.workspaces.root)
        store = TaskStore(config.resolve_path(base_dir, config.state.path))
        registry = registry or HarnessRegistry.with_builtins(
            config.harnesses.binaries(), default=config.tasks.default_harness
        )
        workspaces = WorkspaceRegistry(workspace_root)
        pool = HarnessPool(
            HarnessSpawner(workspace_root, kill_grace_seconds=config.pool.kill_grace_seconds),
            capacity=config.pool.capacity,
        )
        executor = HarnessExecutor(
            pool,
            retry_policy=RetryPolicy(
                max_retries=max(0, int(config.retry.max_spawn_retries)),
                backoff_seconds=max(0.0, float(config.retry.backoff_seconds)),
            ),
            completion_grace_seconds=config.tasks.completion_grace_seconds,
            max_output_chars=config.tasks.max_output_bytes,
        )
        manager = TaskManager(
            store,
            registry,
            workspaces,
            default_timeout_ms=config.tasks.default_timeout_ms,
            max_active_per_session=config.tasks.max_active_per_session,
        )
        integration = TaskIntegration(
            manager,
            executor,
            registry,
            workspaces,
            framer=framer or build_framer(config),
        )
        return cls(
            store=store,
            registry=registry,
            workspaces=workspaces,
            pool=pool,
            executor=executor,
            manager=manager,
            integration=integration,
            modes=ModeCoordinator(store),
        )

    def start(self) -> StartupReport:
        notices = self.modes.start()
        self.modes.attach(self.manager)
        reconciled = self.manager.start()
        self.started = True
        return StartupReport(reconciled=reconciled, notices=notices)

    def subscribe(self, handler: Callable[[TaskEvent], None]) -> Subscription:
        return self.manager.subscribe(handler)

    def create_task(
        self,
        goal: str,
        *,
        workspace: str,
        session_id: str,
        harness: str | None = None,
        timeout_ms: int | None = None,
        require_approval: bool = False,
    ) -> str:
        return self.manager.create(
            goal,
            workspace=workspace,
            session_id=session_id,
            harness=harness,
            timeout_ms=timeout_ms,
            require_approval=require_approval,
        )

    async def respond(self, task_id: str, text: str) -> TaskSnapshot:
        return await self.manager.respond(task_id, text)

    async def cancel(self, task_id: str) -> TaskSnapshot:
        return await self.manager.cancel(task_id)

    def get_status(self, task_id: str) -> TaskSnapshot:
        return self.manager.get_status(task_id)

    def list_tasks(
        self,
        session_id: str | None = None,
        status: TaskStatus | str | None = None,
    ) -> list[TaskSnapshot]:
        return self.manager.list(session_id=session_id, status=status)

    async def wait(self, task_id: str) -> TaskSnapshot:
        await self.integration.wait(task_id)
        return self.get_status(task_id)

    async def shutdown(self) -> None:
        running = self.integration.running_tasks()
        for task_id in running:
            await self.manager.cancel(task_id, reason="orchestrator shutdown")
        results: list[ExecutionResult | None | BaseException] = await asyncio.gather(
            *(self.integration.wait(task_id) for task_id in running), return_exceptions=True
        )
        for task_id, outcome in zip(running, results, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Task %s ended with an error during shutdown: %s", task_id, outcome)
        self.modes.close()
        self.integration.close()
