"""
EventBus service for Production Flow Orchestrator

Carries typed domain events from the step execution model to subscribers
(the automation rule engine and event-type webhook subscriptions) over an
asyncio queue, so publishers never call consumers directly.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Any

from ..models.events import DomainEvent
from ..utils.logger import get_logger, set_log_context

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    In-process publish/subscribe channel for domain events.

    Provides capabilities for:
    - Non-blocking publish from the state machine and controller
    - Ordered delivery of events to every subscriber by one consumer task
    - Queue statistics for system health reporting
    """

    def __init__(self, maxsize: int = 0):
        """
        Initialize EventBus.

        Args:
            maxsize: Queue bound; 0 means unbounded
        """
        self._queue: "asyncio.Queue[DomainEvent]" = asyncio.Queue(maxsize=maxsize)
        self._subscribers: List[EventHandler] = []
        self._consumer_task: Optional[asyncio.Task] = None
        self._published = 0
        self._delivered = 0
        self._handler_errors = 0

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="event_bus")

    def subscribe(self, handler: EventHandler):
        """Register a coroutine called with every published event."""
        self._subscribers.append(handler)

    async def publish(self, event: DomainEvent):
        """Place an event on the bus."""
        await self._queue.put(event)
        self._published += 1

        self.logger.debug("Event published", extra={
            "event_type": event.event_type,
            "unit_id": event.unit_id,
            "queue_size": self._queue.qsize()
        })

    def drain_nowait(self) -> List[DomainEvent]:
        """Remove and return every queued event without dispatching it."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
            self._queue.task_done()
        return events

    async def start(self):
        """Start the consumer task."""
        if self._consumer_task is None:
            self.logger.info("Starting EventBus", extra={"subscribers": len(self._subscribers)})
            self._consumer_task = asyncio.create_task(self._consume())

    async def stop(self, drain: bool = True):
        """Stop the consumer task, optionally dispatching queued events first."""
        self.logger.info("Stopping EventBus")
        if self._consumer_task is None:
            return
        if drain:
            await self._queue.join()
        self._consumer_task.cancel()
        try:
            await self._consumer_task
        except asyncio.CancelledError:
            pass
        self._consumer_task = None

    async def join(self):
        """Wait until every queued event has been dispatched."""
        await self._queue.join()

    async def _consume(self):
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: DomainEvent):
        for handler in self._subscribers:
            try:
                await handler(event)
                self._delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self._handler_errors += 1
                self.logger.error("Event handler failed", exc_info=True, extra={
                    "event_type": event.event_type,
                    "unit_id": event.unit_id,
                    "handler": getattr(handler, "__qualname__", repr(handler))
                })

    def get_statistics(self) -> Dict[str, Any]:
        """Get event bus statistics."""
        return {
            "queue_size": self._queue.qsize(),
            "subscribers": len(self._subscribers),
            "published": self._published,
            "delivered": self._delivered,
            "handler_errors": self._handler_errors,
            "running": self._consumer_task is not None
        }
