import asyncio
from pathlib import Path
from typing import Any

import pytest

from kennel.errors import HarnessCancelledError, HarnessProcessError, ValidationError
from kennel.harness.base import HarnessConfig
from kennel.harness.pool import HarnessPool


class FakeHandle:
    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id


class FakeSpawner:
    kill_grace_seconds = 0.1

    def __init__(self) -> None:
        self.spawned: list[str] = []
        self.inputs: list[tuple[str, str]] = []
        self.killed: list[tuple[str, str]] = []

    async def spawn(self, execution_id: str, config: HarnessConfig, sink: Any) -> FakeHandle:
        _ = config, sink
        self.spawned.append(execution_id)
        return FakeHandle(execution_id)

    async def send_input(self, handle: FakeHandle, text: str) -> None:
        self.inputs.append((handle.execution_id, text))

    async def kill(self, handle: FakeHandle, reason: str) -> None:
        self.killed.append((handle.execution_id, reason))


def _config() -> HarnessConfig:
    return HarnessConfig(harness="fake", command="fake", args=[], cwd=Path("."))


def test_pool_caps_concurrency_and_admits_in_fifo_order() -> None:
    async def _run() -> list[str]:
        pool = HarnessPool(FakeSpawner(), capacity=2)
        admitted: list[str] = []

        async def _request(execution_id: str) -> None:
            await pool.acquire(execution_id)
            admitted.append(execution_id)

        await pool.acquire("a")
        await pool.acquire("b")
        waiters = [asyncio.create_task(_request(name)) for name in ("c", "d", "e")]
        await asyncio.sleep(0)

        assert pool.stats().running == 2
        assert pool.stats().queued == 3
        assert pool.queue_position("d") == 1
        assert admitted == []

        pool.release("a")
        await asyncio.sleep(0)
        assert admitted == ["c"]
        assert pool.stats().running == 2

        pool.release("b")
        pool.release("c")
        await asyncio.gather(*waiters)
        assert pool.stats().running == 2
        assert pool.stats().queued == 0
        return admitted

    assert asyncio.run(_run()) == ["c", "d", "e"]


def test_new_request_does_not_jump_the_queue() -> None:
    async def _run() -> None:
        pool = HarnessPool(FakeSpawner(), capacity=1)
        await pool.acquire("a")
        queued = asyncio.create_task(pool.acquire("b"))
        await asyncio.sleep(0)
        pool.release("a")
        late = asyncio.create_task(pool.acquire("c"))
        await asyncio.sleep(0)

        assert queued.done()
        assert pool.holds_slot("b")
        assert pool.is_queued("c")
        pool.release("b")
        await late

    asyncio.run(_run())


def test_cancelled_queued_request_never_spawns() -> None:
    async def _run() -> None:
        spawner = FakeSpawner()
        pool = HarnessPool(spawner, capacity=1)
        await pool.acquire("a")
        waiter = asyncio.create_task(pool.acquire("b"))
        await asyncio.sleep(0)

        assert pool.cancel_queued("b") is True
        with pytest.raises(HarnessCancelledError):
            await waiter
        assert pool.cancel_queued("b") is False
        assert pool.stats().queued == 0
        assert spawner.spawned == []

    asyncio.run(_run())


def test_input_and_kill_are_routed_through_the_pool() -> None:
    async def _run() -> None:
        spawner = FakeSpawner()
        pool = HarnessPool(spawner, capacity=1)
        await pool.acquire("a")
        await pool.launch("a", _config(), sink=lambda item: None)

        await pool.send_input("a", "yes\n")
        assert await pool.kill("a", "timeout") is True
        pool.release("a")

        assert spawner.inputs == [("a", "yes\n")]
        assert spawner.killed == [("a", "timeout")]
        assert pool.handle("a") is None
        assert await pool.kill("a", "again") is False
        with pytest.raises(HarnessProcessError):
            await pool.send_input("a", "late\n")

    asyncio.run(_run())


def test_launch_requires_a_slot_and_capacity_must_be_positive() -> None:
    async def _run() -> None:
        pool = HarnessPool(FakeSpawner(), capacity=1)
        with pytest.raises(ValidationError):
            await pool.launch("ghost", _config(), sink=lambda item: None)

    asyncio.run(_run())
    with pytest.raises(ValidationError):
        HarnessPool(FakeSpawner(), capacity=0)


def test_raising_capacity_admits_waiters() -> None:
    async def _run() -> None:
        pool = HarnessPool(FakeSpawner(), capacity=1)
        await pool.acquire("a")
        waiter = asyncio.create_task(pool.acquire("b"))
        await asyncio.sleep(0)

        pool.set_capacity(2)
        await waiter
        assert pool.stats().running == 2

    asyncio.run(_run())
