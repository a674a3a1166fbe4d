import asyncio
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from kennel.config import KennelConfig
from kennel.harness.base import HarnessAdapter
from kennel.harness.registry import HarnessRegistry
from kennel.orchestrator import Orchestrator
from kennel.tasks.framing import TemplateGoalFramer


class ScriptHarness(HarnessAdapter):
    """Runs a Python snippet in place of a real coding-agent CLI."""

    default_binary = sys.executable

    def __init__(self, script: str, name: str = "harness-a") -> None:
        super().__init__(binary=sys.executable)
        self.name = name
        self.script = script

    def build_args(self, goal: str) -> list[str]:
        return ["-u", "-c", self.script, goal]


async def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    for name in ("proj-a", "proj-b"):
        (root / name).mkdir(parents=True)
    return root


@pytest.fixture
def make_orchestrator(tmp_path: Path, workspace_root: Path) -> Callable[..., Orchestrator]:
    def _make(*harnesses: HarnessAdapter, capacity: int = 2) -> Orchestrator:
        config = KennelConfig.default()
        config.pool.capacity = capacity
        config.pool.kill_grace_seconds = 0.5
        config.retry.backoff_seconds = 0.0
        config.tasks.completion_grace_seconds = 0.5
        config.workspaces.root = str(workspace_root)
        config.state.path = str(tmp_path / "state")
        registry = HarnessRegistry.with_builtins(default="claude")
        for harness in harnesses:
            registry.register(harness)
        return Orchestrator.from_config(
            config, tmp_path, registry=registry, framer=TemplateGoalFramer()
        )

    return _make
