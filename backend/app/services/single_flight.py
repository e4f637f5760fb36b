"""In-flight de-duplication: concurrent callers for the same key share one task."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable, TypeVar

logger = logging.getLogger("sportsbook.single_flight")

T = TypeVar("T")


class SingleFlight:
    def __init__(self, name: str) -> None:
        self.name = name
        self._inflight: dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._forget(k, _t))
        else:
            logger.debug("%s: joining in-flight call for %r", self.name, key)
        # shield: one cancelled waiter must not cancel the shared call
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            # Retrieved here so an error nobody awaited is not reported as "never retrieved".
            logger.debug("%s: call for %r failed: %s", self.name, key, task.exception())

    def snapshot(self) -> dict[str, Any]:
        return {"name": self.name, "in_flight": [str(k) for k in self._inflight]}
