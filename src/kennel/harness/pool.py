from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass

from kennel.errors import HarnessCancelledError, HarnessProcessError, ValidationError
from kennel.harness.base import HarnessConfig
from kennel.harness.spawner import HarnessSpawner, ProcessHandle, ProcessSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PoolStats:
    running: int
    queued: int
    capacity: int


class HarnessPool:
    """Bounded admission in front of the spawner.

    At most ``capacity`` executions hold a slot at once; later requests wait
    in FIFO order. The pool owns the only table of live process handles, so
    every kill or input write goes through it.
    """

    def __init__(self, spawner: HarnessSpawner, capacity: int = 2) -> None:
        if capacity < 1:
            raise ValidationError("Pool capacity must be at least 1.")
        self.spawner = spawner
        self.capacity = capacity
        self._slots: set[str] = set()
        self._waiters: OrderedDict[str, asyncio.Future[None]] = OrderedDict()
        self._handles: dict[str, ProcessHandle] = {}

    def stats(self) -> PoolStats:
        return PoolStats(running=len(self._slots), queued=len(self._waiters), capacity=self.capacity)

    def holds_slot(self, execution_id: str) -> bool:
        return execution_id in self._slots

    def is_queued(self, execution_id: str) -> bool:
        return execution_id in self._waiters

    def queue_position(self, execution_id: str) -> int | None:
        for index, waiting_id in enumerate(self._waiters):
            if waiting_id == execution_id:
                return index
        return None

    async def acquire(self, execution_id: str) -> None:
        if execution_id in self._slots or execution_id in self._waiters:
            raise ValidationError(f"Execution {execution_id} already requested a slot.")
        if len(self._slots) < self.capacity and not self._waiters:
            self._slots.add(execution_id)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters[execution_id] = future
        logger.info(
            "Queued %s (position %d, %d running)",
            execution_id,
            len(self._waiters),
            len(self._slots),
        )
        try:
            await future
        except asyncio.CancelledError:
            if self._waiters.get(execution_id) is future:
                del self._waiters[execution_id]
            elif execution_id in self._slots and not self._handles.get(execution_id):
                # admitted in the same tick the waiter was cancelled
                self.release(execution_id)
            raise

    def cancel_queued(self, execution_id: str) -> bool:
        """Drop a request that has not been admitted yet. Nothing is spawned."""
        future = self._waiters.pop(execution_id, None)
        if future is None:
            return False
        if not future.done():
            future.set_exception(HarnessCancelledError(f"Execution {execution_id} cancelled while queued."))
        return True

    def _admit_waiters(self) -> None:
        while self._waiters and len(self._slots) < self.capacity:
            execution_id, future = self._waiters.popitem(last=False)
            if future.done():
                continue
            self._slots.add(execution_id)
            future.set_result(None)

    def release(self, execution_id: str) -> None:
        self._handles.pop(execution_id, None)
        if execution_id in self._slots:
            self._slots.discard(execution_id)
            self._admit_waiters()

    def set_capacity(self, capacity: int) -> None:
        if capacity < 1:
            raise ValidationError("Pool capacity must be at least 1.")
        self.capacity = capacity
        self._admit_waiters()

    async def launch(self, execution_id: str, config: HarnessConfig, sink: ProcessSink) -> ProcessHandle:
        if execution_id not in self._slots:
            raise ValidationError(f"Execution {execution_id} does not hold a pool slot.")
        handle = await self.spawner.spawn(execution_id, config, sink)
        self._handles[execution_id] = handle
        return handle

    def handle(self, execution_id: str) -> ProcessHandle | None:
        return self._handles.get(execution_id)

    async def send_input(self, execution_id: str, text: str) -> None:
        handle = self._handles.get(execution_id)
        if handle is None:
            raise HarnessProcessError(f"No live process for execution {execution_id}.")
        await self.spawner.send_input(handle, text)

    async def kill(self, execution_id: str, reason: str) -> bool:
        handle = self._handles.get(execution_id)
        if handle is None:
            return False
        await self.spawner.kill(handle, reason)
        return True
