"""
backend/app/services/event_bus.py

Purpose:
    Lightweight in-memory event bus for match/bet notifications. Provides
    async publish/subscribe with per-handler worker queues. Delivery to
    external transports is left to subscribers.

Dependencies:
    - asyncio
    - app.config
    - app.services.event_models
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.config import settings
from app.services.event_models import BaseEvent, normalize_event_time
from app.utils import utcnow

logger = logging.getLogger("sportsbook.event_bus")

AsyncEventHandler = Callable[[BaseEvent], Awaitable[None]]


@dataclass
class _Subscription:
    event_type: str
    handler_name: str
    handler: AsyncEventHandler
    queue: asyncio.Queue
    workers: list[asyncio.Task]
    handled_total: int = 0
    failed_total: int = 0
    dropped_total: int = 0


class InMemoryEventBus:
    def __init__(self, *, queue_maxsize: int, error_buffer_size: int = 50) -> None:
        self._queue_maxsize = max(1, int(queue_maxsize))
        self._ingress: asyncio.Queue[BaseEvent] | None = None
        self._subscriptions: dict[str, list[_Subscription]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task | None = None
        self._running = False

        self._published = 0
        self._handled = 0
        self._failed = 0
        self._dropped = 0
        self._errors: deque[dict[str, Any]] = deque(maxlen=max(1, int(error_buffer_size)))

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._ingress = asyncio.Queue(maxsize=self._queue_maxsize)
        self._running = True
        for subs in self._subscriptions.values():
            for sub in subs:
                if not sub.workers:
                    sub.workers.append(self._spawn_worker(sub))
        self._dispatcher_task = asyncio.create_task(self._dispatch_loop(), name="event_bus_dispatcher")
        logger.info("Event bus started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        tasks: list[asyncio.Task] = []
        if self._dispatcher_task is not None:
            tasks.append(self._dispatcher_task)
            self._dispatcher_task = None
        for subs in self._subscriptions.values():
            for sub in subs:
                tasks.extend(sub.workers)
                sub.workers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Event bus stopped")

    def subscribe(self, event_type: str, handler: AsyncEventHandler, *, handler_name: str) -> None:
        sub = _Subscription(
            event_type=event_type,
            handler_name=handler_name,
            handler=handler,
            queue=asyncio.Queue(maxsize=self._queue_maxsize),
            workers=[],
        )
        self._subscriptions[event_type].append(sub)
        if self._running:
            sub.workers.append(self._spawn_worker(sub))

    async def publish(self, event: BaseEvent) -> None:
        """Enqueue without blocking. Dropped when disabled, stopped, or full."""
        if not settings.EVENT_BUS_ENABLED or not self._running or self._ingress is None:
            return
        normalized = normalize_event_time(event)
        try:
            self._ingress.put_nowait(normalized)
            self._published += 1
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning("Event bus ingress queue full; dropping event_type=%s", normalized.event_type)

    def stats(self) -> dict[str, Any]:
        per_handler = {
            f"{event_type}:{sub.handler_name}": {
                "queue_depth": sub.queue.qsize(),
                "handled_total": sub.handled_total,
                "failed_total": sub.failed_total,
                "dropped_total": sub.dropped_total,
            }
            for event_type, subs in self._subscriptions.items()
            for sub in subs
        }
        return {
            "enabled": bool(settings.EVENT_BUS_ENABLED),
            "running": self._running,
            "published_total": self._published,
            "handled_total": self._handled,
            "failed_total": self._failed,
            "dropped_total": self._dropped,
            "ingress_queue_depth": self._ingress.qsize() if self._ingress else 0,
            "per_handler": per_handler,
            "recent_errors": list(self._errors),
        }

    async def _dispatch_loop(self) -> None:
        while self._running:
            event = await self._ingress.get()
            for sub in self._subscriptions.get(event.event_type, []):
                try:
                    sub.queue.put_nowait(event)
                except asyncio.QueueFull:
                    self._dropped += 1
                    sub.dropped_total += 1
                    logger.warning(
                        "Event bus handler queue full; dropping event_type=%s handler=%s",
                        event.event_type,
                        sub.handler_name,
                    )

    def _spawn_worker(self, sub: _Subscription) -> asyncio.Task:
        name = f"event_bus_{sub.event_type}_{sub.handler_name}"
        return asyncio.create_task(self._handler_loop(sub), name=name)

    async def _handler_loop(self, sub: _Subscription) -> None:
        while self._running:
            event = await sub.queue.get()
            try:
                await sub.handler(event)
                self._handled += 1
                sub.handled_total += 1
            except Exception as exc:
                self._failed += 1
                sub.failed_total += 1
                self._errors.append({
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "handler_name": sub.handler_name,
                    "correlation_id": event.correlation_id,
                    "ts": utcnow().isoformat(),
                    "error": str(exc),
                })
                logger.error(
                    "Event handler failed event_id=%s event_type=%s handler=%s error=%s",
                    event.event_id,
                    event.event_type,
                    sub.handler_name,
                    str(exc),
                    exc_info=True,
                )


event_bus = InMemoryEventBus(queue_maxsize=settings.EVENT_BUS_QUEUE_MAXSIZE)
