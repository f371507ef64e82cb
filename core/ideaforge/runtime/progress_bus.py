"""
Progress Bus - Fire-and-forget progress events for interactive callers.

The executor publishes synchronously and never waits on listeners:
- Every subscriber owns an unbounded queue drained by its own delivery task
- A slow or failing listener only delays (or loses) its own deliveries
- Each listener sees events in publish order
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class ProgressKind(StrEnum):
    """Types of progress events."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_INTERRUPTED = "run_interrupted"
    RUN_FAILED = "run_failed"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_PROGRESS = "node_progress"  # Free-form report() from inside a node

    # Degradation
    RESEARCH_WARNING = "research_warning"

    SYSTEM = "system"


class ProgressLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ProgressEvent:
    """A progress notification."""

    node: str
    message: str
    level: ProgressLevel = ProgressLevel.INFO
    kind: ProgressKind = ProgressKind.NODE_PROGRESS
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "node": self.node,
            "message": self.message,
            "level": self.level.value,
            "kind": self.kind.value,
            "session_id": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Listeners may be plain functions or coroutines
ProgressListener = Callable[[ProgressEvent], Awaitable[None] | None]


@dataclass
class _Subscriber:
    id: str
    listener: ProgressListener
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    delivered: int = 0
    failed: int = 0


class ProgressBus:
    """
    Per-subscriber queued progress delivery.

    Example:
        bus = ProgressBus()

        def on_progress(event: ProgressEvent):
            print(f"[{event.node}] {event.message}")

        sub_id = bus.subscribe(on_progress)
        bus.publish(ProgressEvent(node="ideaRefinement", message="Refining idea"))
        await bus.drain()
        bus.unsubscribe(sub_id)
    """

    def __init__(self, max_history: int = 500):
        """
        Initialize progress bus.

        Args:
            max_history: Maximum events to keep in history
        """
        self._subscribers: dict[str, _Subscriber] = {}
        self._history: list[ProgressEvent] = []
        self._max_history = max_history
        self._subscription_counter = 0
        self._closed = False

    def subscribe(self, listener: ProgressListener) -> str:
        """
        Register a listener for every event published from now on.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        subscriber = _Subscriber(id=sub_id, listener=listener)
        self._subscribers[sub_id] = subscriber
        self._start_delivery(subscriber)
        logger.debug(f"Progress subscription {sub_id} registered")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Stop delivery to a listener. Undelivered events are dropped.

        Returns:
            True if subscription was found and removed
        """
        subscriber = self._subscribers.pop(subscription_id, None)
        if subscriber is None:
            return False
        if subscriber.task is not None:
            subscriber.task.cancel()
        while not subscriber.queue.empty():
            subscriber.queue.get_nowait()
            subscriber.queue.task_done()
        logger.debug(f"Progress subscription {subscription_id} removed")
        return True

    def publish(self, event: ProgressEvent) -> None:
        """
        Queue an event for every current subscriber. Never blocks.
        """
        if self._closed:
            logger.debug(f"Dropping progress event after close: {event.message}")
            return

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]

        for subscriber in self._subscribers.values():
            subscriber.queue.put_nowait(event)
            self._start_delivery(subscriber)

    def _start_delivery(self, subscriber: _Subscriber) -> None:
        """Spawn the subscriber's delivery task once an event loop is available."""
        if subscriber.task is not None and not subscriber.task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Publishing outside a loop; delivery starts at the next drain()
            return
        subscriber.task = loop.create_task(self._deliver(subscriber))

    async def _deliver(self, subscriber: _Subscriber) -> None:
        while True:
            event = await subscriber.queue.get()
            try:
                result = subscriber.listener(event)
                if inspect.isawaitable(result):
                    await result
                subscriber.delivered += 1
            except Exception as e:
                subscriber.failed += 1
                logger.error(f"Progress listener {subscriber.id} failed on {event.kind}: {e}")
            finally:
                subscriber.queue.task_done()

    async def drain(self) -> None:
        """Wait until every event published so far has been delivered."""
        for subscriber in list(self._subscribers.values()):
            self._start_delivery(subscriber)
            await subscriber.queue.join()

    async def close(self) -> None:
        """Deliver outstanding events, then stop all delivery tasks."""
        await self.drain()
        self._closed = True
        tasks = [s.task for s in self._subscribers.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscribers.clear()

    # === CONVENIENCE PUBLISHERS ===

    def emit(
        self,
        node: str,
        message: str,
        kind: ProgressKind = ProgressKind.NODE_PROGRESS,
        level: ProgressLevel = ProgressLevel.INFO,
        session_id: str | None = None,
        **data: Any,
    ) -> ProgressEvent:
        """Build and publish an event in one call."""
        event = ProgressEvent(
            node=node,
            message=message,
            level=level,
            kind=kind,
            session_id=session_id,
            data=data,
        )
        self.publish(event)
        return event

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        kind: ProgressKind | None = None,
        session_id: str | None = None,
        limit: int = 100,
    ) -> list[ProgressEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._history[::-1]
        if kind:
            events = [e for e in events if e.kind == kind]
        if session_id:
            events = [e for e in events if e.session_id == session_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get progress bus statistics."""
        kind_counts: dict[str, int] = {}
        for event in self._history:
            kind_counts[event.kind.value] = kind_counts.get(event.kind.value, 0) + 1

        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscribers),
            "events_by_kind": kind_counts,
            "pending": {s.id: s.queue.qsize() for s in self._subscribers.values()},
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        kind: ProgressKind,
        timeout: float | None = None,
    ) -> ProgressEvent | None:
        """
        Wait for the next event of a given kind.

        Returns:
            The event if received, None if timeout
        """
        result: ProgressEvent | None = None
        event_received = asyncio.Event()

        def listener(event: ProgressEvent) -> None:
            nonlocal result
            if event.kind == kind and not event_received.is_set():
                result = event
                event_received.set()

        sub_id = self.subscribe(listener)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
