"""In-process event bus for scheduling state changes.

The store, generator, reconciliation engine and maintenance run publish a
SystemEvent after every write. Subscribers (today only the notification
dispatcher) register for the event types they care about and are fed from
a background queue, so a slow notification service never holds up a
booking request.

Events nobody subscribed to are dropped at publish time. Before the bus is
started (scripts, tests) events are delivered inline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Routes events to handlers by type through a single worker task."""

    def __init__(self) -> None:
        self._routes: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def subscribe(self, handler: EventHandler, event_types: Iterable[EventType]) -> None:
        types = list(event_types)
        for event_type in types:
            self._routes.setdefault(event_type, []).append(handler)
        logger.info("Subscribed %s to %s", handler.__name__, [t.value for t in types])

    async def publish(self, event: SystemEvent) -> None:
        if not self._routes.get(event.event_type):
            logger.debug("No subscriber for %s (clinic=%s)", event.event_type.value, event.clinic_id)
            return
        if self._queue is None or not self.running:
            await self._deliver(event)
            return
        await self._queue.put(event)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run())
        logger.info(
            "Event bus started: %d handlers over %d event types",
            sum(len(h) for h in self._routes.values()),
            len(self._routes),
        )

    async def stop(self) -> None:
        """Deliver what is queued, stop the worker, and forget all subscribers."""
        if self._queue is not None:
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        self._routes.clear()
        logger.info("Event bus stopped")

    async def _run(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            try:
                await self._deliver(event)
            finally:
                queue.task_done()

    async def _deliver(self, event: SystemEvent) -> None:
        # Handlers run one after another; a failure is logged and the rest still run
        for handler in list(self._routes.get(event.event_type, [])):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for %s (clinic=%s)",
                    handler.__name__,
                    event.event_type.value,
                    event.clinic_id,
                )


event_bus = EventBus()


async def emit(event: SystemEvent) -> None:
    await event_bus.publish(event)


def subscribe(handler: EventHandler, event_types: Iterable[EventType]) -> None:
    event_bus.subscribe(handler, event_types)


async def start_event_system() -> None:
    await event_bus.start()


async def stop_event_system() -> None:
    await event_bus.stop()
