from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from kennel.errors import SpawnError

logger = logging.getLogger(__name__)

T = TypeVar("T")
RetryEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 0.5

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


async def spawn_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    event_hook: RetryEventHook | None = None,
    should_continue: Callable[[], bool] | None = None,
) -> T:
    """Run ``call`` and retry retriable SpawnErrors with exponential backoff.

    Other exceptions propagate on the first occurrence. The last SpawnError
    is re-raised once retries are exhausted.
    """
    last_error: SpawnError | None = None
    for attempt in range(policy.max_retries + 1):
        if attempt > 0:
            delay = policy.delay_for(attempt)
            if event_hook is not None:
                event_hook(
                    {
                        "event": "spawn_retry",
                        "label": label,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(last_error),
                    }
                )
            await asyncio.sleep(delay)
            if should_continue is not None and not should_continue():
                break
        try:
            return await call()
        except SpawnError as exc:
            last_error = exc
            logger.warning("Spawn attempt %d for %s failed: %s", attempt + 1, label, exc)
            if not exc.retriable:
                break
    assert last_error is not None
    raise last_error
