import asyncio
import signal
from pathlib import Path

from conftest import ScriptHarness, wait_until

from kennel.errors import (
    HarnessCancelledError,
    HarnessProcessError,
    HarnessTimeoutError,
    SpawnError,
)
from kennel.harness.claude import ClaudeHarness
from kennel.harness.executor import (
    ExecutionEvent,
    ExecutionEventKind,
    HarnessExecutor,
    PausableDeadline,
)
from kennel.harness.pool import HarnessPool
from kennel.harness.resilient import RetryPolicy
from kennel.harness.spawner import HarnessSpawner


def _executor(workspace_root: Path, *, capacity: int = 2, completion_grace: float = 0.5) -> HarnessExecutor:
    spawner = HarnessSpawner(workspace_root, kill_grace_seconds=0.5)
    return HarnessExecutor(
        HarnessPool(spawner, capacity=capacity),
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.0),
        completion_grace_seconds=completion_grace,
    )


def _kinds(events: list[ExecutionEvent]) -> list[ExecutionEventKind]:
    return [event.kind for event in events]


def test_successful_execution_reports_summary_and_files(workspace_root: Path) -> None:
    script = (
        "print('Working on the goal')\n"
        "print('Created src/health.py')\n"
        "print('Modified src/app.py')\n"
        "print('Done.')\n"
        "print('## Summary')\n"
        "print('Added a health endpoint.')\n"
    )
    executor = _executor(workspace_root)
    events: list[ExecutionEvent] = []
    executor.subscribe(events.append)

    result = asyncio.run(
        executor.execute(ScriptHarness(script), "add health", workspace_root / "proj-a", timeout_seconds=10.0)
    )

    assert result.success is True
    assert result.exit_code == 0
    assert result.summary == "Added a health endpoint."
    assert result.files.created == ["src/health.py"]
    assert result.files.modified == ["src/app.py"]
    assert _kinds(events)[0] is ExecutionEventKind.STARTED
    assert _kinds(events)[-1] is ExecutionEventKind.COMPLETED
    assert [event.payload["path"] for event in events if event.kind is ExecutionEventKind.FILE_OP] == [
        "src/health.py",
        "src/app.py",
    ]
    assert any(event.payload.get("percent") == 100 for event in events)
    assert executor.pool.stats().running == 0
    assert executor.active() == []


def test_question_suspends_until_input_is_sent(workspace_root: Path) -> None:
    script = (
        "answer = input('Overwrite config.yml? [y/n]\\n')\n"
        "print('Answer was ' + answer)\n"
        "print('Done.')\n"
    )
    executor = _executor(workspace_root)
    events: list[ExecutionEvent] = []
    suspended: list[bool] = []

    def _on_event(event: ExecutionEvent) -> None:
        events.append(event)
        if event.kind is ExecutionEventKind.QUESTION:
            suspended.append(executor.is_suspended(event.execution_id))
            asyncio.get_running_loop().create_task(executor.send_input(event.execution_id, "y"))

    executor.subscribe(_on_event)

    result = asyncio.run(
        executor.execute(
            ScriptHarness(script),
            "update config",
            workspace_root / "proj-a",
            timeout_seconds=10.0,
            execution_id="hrn_question",
        )
    )

    assert result.success is True
    assert "Answer was y" in result.output
    questions = [event for event in events if event.kind is ExecutionEventKind.QUESTION]
    assert len(questions) == 1
    assert "[y/n]" in questions[0].payload["question"]
    assert suspended == [True]
    assert ExecutionEventKind.RESUMED in _kinds(events)


def test_deadline_does_not_run_while_waiting_for_an_answer(workspace_root: Path) -> None:
    script = "input('Proceed? [y/n]\\n')\nprint('Done.')\n"
    executor = _executor(workspace_root)

    async def _answer_late(execution_id: str) -> None:
        await asyncio.sleep(2.5)
        await executor.send_input(execution_id, "y")

    def _on_event(event: ExecutionEvent) -> None:
        if event.kind is ExecutionEventKind.QUESTION:
            asyncio.get_running_loop().create_task(_answer_late(event.execution_id))

    executor.subscribe(_on_event)

    result = asyncio.run(
        executor.execute(ScriptHarness(script), "goal", workspace_root / "proj-a", timeout_seconds=2.0)
    )

    assert result.success is True
    assert result.duration_seconds >= 2.5


def test_timeout_kills_process_and_keeps_partial_output(workspace_root: Path) -> None:
    script = "import time\nprint('Working on step 1')\ntime.sleep(30)\n"
    executor = _executor(workspace_root)
    events: list[ExecutionEvent] = []
    executor.subscribe(events.append)

    async def _run():
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await executor.execute(
            ScriptHarness(script), "goal", workspace_root / "proj-a", timeout_seconds=1.0
        )
        return result, loop.time() - started

    result, elapsed = asyncio.run(_run())

    assert isinstance(result.error, HarnessTimeoutError)
    assert "Working on step 1" in result.error.output
    assert result.exit_code == -signal.SIGTERM
    assert elapsed < 5.0
    failed = events[-1]
    assert failed.kind is ExecutionEventKind.FAILED
    assert failed.payload["error_kind"] == "timeout"
    assert executor.pool.stats().running == 0


def test_nonzero_exit_without_completion_is_a_process_error(workspace_root: Path) -> None:
    script = "print('error: cannot find module x')\nraise SystemExit(2)\n"
    executor = _executor(workspace_root)
    events: list[ExecutionEvent] = []
    executor.subscribe(events.append)

    result = asyncio.run(
        executor.execute(ScriptHarness(script), "goal", workspace_root / "proj-a", timeout_seconds=10.0)
    )

    assert isinstance(result.error, HarnessProcessError)
    assert result.exit_code == 2
    assert ExecutionEventKind.OUTPUT_ERROR in _kinds(events)
    assert events[-1].payload["exit_code"] == 2


def test_missing_binary_is_retried_then_fails(workspace_root: Path) -> None:
    adapter = ClaudeHarness(binary=str(workspace_root / "no-such-claude"))
    executor = _executor(workspace_root)
    events: list[ExecutionEvent] = []
    executor.subscribe(events.append)

    result = asyncio.run(
        executor.execute(adapter, "goal", workspace_root / "proj-a", timeout_seconds=10.0)
    )

    assert isinstance(result.error, SpawnError)
    retries = [event for event in events if event.kind is ExecutionEventKind.SPAWN_RETRY]
    assert [event.payload["attempt"] for event in retries] == [1, 2]
    assert events[-1].kind is ExecutionEventKind.FAILED
    assert events[-1].payload["error_kind"] == "spawn"
    assert executor.pool.stats().running == 0


def test_cancel_running_execution(workspace_root: Path) -> None:
    script = "import time\nprint('Working on it')\ntime.sleep(30)\n"
    executor = _executor(workspace_root)
    events: list[ExecutionEvent] = []
    executor.subscribe(events.append)

    async def _run():
        running = asyncio.create_task(
            executor.execute(
                ScriptHarness(script),
                "goal",
                workspace_root / "proj-a",
                timeout_seconds=30.0,
                execution_id="hrn_cancel",
            )
        )
        await wait_until(lambda: executor.pool.handle("hrn_cancel") is not None)
        assert await executor.cancel("hrn_cancel", "user request") is True
        return await running

    result = asyncio.run(_run())

    assert isinstance(result.error, HarnessCancelledError)
    assert events[-1].kind is ExecutionEventKind.CANCELLED
    assert events[-1].payload["reason"] == "user request"
    assert asyncio.run(executor.cancel("hrn_cancel")) is False


def test_second_execution_is_queued_when_pool_is_full(workspace_root: Path) -> None:
    script = "print('Done.')\n"
    executor = _executor(workspace_root, capacity=1)
    events: list[ExecutionEvent] = []
    executor.subscribe(events.append)

    async def _run():
        return await asyncio.gather(
            executor.execute(ScriptHarness(script), "one", workspace_root / "proj-a", timeout_seconds=10.0),
            executor.execute(ScriptHarness(script), "two", workspace_root / "proj-b", timeout_seconds=10.0),
        )

    first, second = asyncio.run(_run())

    assert first.success and second.success
    queued = [event for event in events if event.kind is ExecutionEventKind.QUEUED]
    assert [event.execution_id for event in queued] == [second.execution_id]
    assert queued[0].payload["position"] == 1


def test_completion_without_exit_is_terminated_after_grace(workspace_root: Path) -> None:
    script = "import time\nprint('Task completed')\ntime.sleep(30)\n"
    executor = _executor(workspace_root, completion_grace=0.3)

    async def _run():
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await executor.execute(
            ScriptHarness(script), "goal", workspace_root / "proj-a", timeout_seconds=30.0
        )
        return result, loop.time() - started

    result, elapsed = asyncio.run(_run())

    assert result.success is True
    assert result.exit_code == -signal.SIGTERM
    assert elapsed < 5.0


def test_pausable_deadline_with_fake_clock() -> None:
    now = [100.0]
    deadline = PausableDeadline(10.0, clock=lambda: now[0])

    assert deadline.paused is True
    deadline.start()
    now[0] += 4.0
    deadline.pause()
    now[0] += 60.0
    assert deadline.elapsed() == 4.0
    assert deadline.remaining() == 6.0
    deadline.resume()
    now[0] += 7.0
    assert deadline.remaining() == 0.0
    assert deadline.paused is False
