from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Subscription:
    """Handle returned by EventBus.subscribe; closing it stops delivery."""

    def __init__(self, bus: EventBus, handler: Callable) -> None:
        self._bus = bus
        self._handler = handler
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._bus._remove(self._handler)
            self.closed = True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus(Generic[E]):
    """Synchronous publish/subscribe channel for one event type.

    Handlers run in subscription order on the publisher's thread. A handler
    that raises is logged and skipped so the remaining subscribers still
    receive the event.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[[E], None]] = []

    def subscribe(self, handler: Callable[[E], None]) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: Callable[[E], None]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def publish(self, event: E) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber on %s failed for %r", self.name, event)
