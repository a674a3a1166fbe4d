import asyncio
import signal
import sys
from pathlib import Path

import pytest

from kennel.errors import HarnessProcessError, SpawnError
from kennel.harness.base import HarnessConfig
from kennel.harness.spawner import HarnessSpawner, OutputChunk, ProcessExit


def _python(workspace: Path, script: str) -> HarnessConfig:
    return HarnessConfig(
        harness="script",
        command=sys.executable,
        args=["-u", "-c", script],
        cwd=workspace,
    )


def _stdout(items: list) -> bytes:
    return b"".join(item.data for item in items if isinstance(item, OutputChunk) and item.stream == "stdout")


def test_spawn_streams_output_then_reports_exit(workspace_root: Path) -> None:
    async def _run() -> list:
        spawner = HarnessSpawner(workspace_root)
        items: list = []
        handle = await spawner.spawn(
            "hrn_echo", _python(workspace_root / "proj-a", "print('hello'); raise SystemExit(3)"), items.append
        )
        assert handle.pid > 0
        assert handle.pump is not None
        await handle.pump
        return items

    items = asyncio.run(_run())

    assert _stdout(items) == b"hello\n"
    assert items[-1] == ProcessExit(3)
    assert sum(isinstance(item, ProcessExit) for item in items) == 1


def test_spawn_runs_inside_the_workspace(workspace_root: Path) -> None:
    async def _run() -> list:
        spawner = HarnessSpawner(workspace_root)
        items: list = []
        handle = await spawner.spawn(
            "hrn_cwd", _python(workspace_root / "proj-b", "import os; print(os.getcwd())"), items.append
        )
        await handle.pump
        return items

    items = asyncio.run(_run())

    assert Path(_stdout(items).decode().strip()).resolve() == (workspace_root / "proj-b").resolve()
    assert items[-1].returncode == 0


def test_missing_binary_is_a_retriable_spawn_error(workspace_root: Path) -> None:
    config = HarnessConfig(
        harness="ghost",
        command=str(workspace_root / "no-such-harness"),
        args=[],
        cwd=workspace_root / "proj-a",
    )

    async def _run() -> None:
        await HarnessSpawner(workspace_root).spawn("hrn_ghost", config, lambda item: None)

    with pytest.raises(SpawnError) as excinfo:
        asyncio.run(_run())
    assert excinfo.value.retriable is True
    assert excinfo.value.harness == "ghost"


def test_cwd_outside_workspace_root_is_not_retriable(workspace_root: Path, tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere"
    outside.mkdir()

    async def _run() -> None:
        await HarnessSpawner(workspace_root).spawn("hrn_out", _python(outside, "pass"), lambda item: None)

    with pytest.raises(SpawnError) as excinfo:
        asyncio.run(_run())
    assert excinfo.value.retriable is False


def test_send_input_reaches_stdin(workspace_root: Path) -> None:
    script = "line = input(); print('got ' + line)"

    async def _run() -> list:
        spawner = HarnessSpawner(workspace_root)
        items: list = []
        handle = await spawner.spawn("hrn_stdin", _python(workspace_root / "proj-a", script), items.append)
        await spawner.send_input(handle, "yes\n")
        await handle.pump
        with pytest.raises(HarnessProcessError):
            await spawner.send_input(handle, "late\n")
        return items

    items = asyncio.run(_run())

    assert _stdout(items) == b"got yes\n"


def test_kill_escalates_to_sigkill_when_sigterm_is_ignored(workspace_root: Path) -> None:
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )

    async def _run() -> tuple[list, float]:
        spawner = HarnessSpawner(workspace_root, kill_grace_seconds=0.3)
        items: list = []
        handle = await spawner.spawn("hrn_stubborn", _python(workspace_root / "proj-a", script), items.append)
        while b"ready" not in _stdout(items):
            await asyncio.sleep(0.02)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await spawner.kill(handle, "timeout")
        elapsed = loop.time() - started
        await handle.pump
        assert handle.kill_reason == "timeout"
        assert handle.alive is False
        return items, elapsed

    items, elapsed = asyncio.run(_run())

    assert items[-1].signal == signal.SIGKILL
    assert 0.3 <= elapsed < 5.0
