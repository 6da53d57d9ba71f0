"""
Engine event stream.

Every phase transition, approval request, approval resolution, and
escalation is published as a ``WorkflowEvent``. Consumers either iterate
``subscribe()`` or register a callback with ``add_listener()``.

Delivery is best-effort: a slow subscriber gets an unbounded queue and a
failing listener is logged and skipped. Publishing never raises.

Example:
    >>> bus = EventBus()
    >>> async for event in bus.subscribe():
    ...     print(event.kind, event.execution_id, event.outcome)
"""

import asyncio
import inspect
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import structlog

from issue_pilot.models.domain import WorkflowEvent

log = structlog.get_logger(__name__)

EventListener = Callable[[WorkflowEvent], Awaitable[Any] | Any]


class EventBus:
    """Fan out workflow events to subscribers and listeners."""

    def __init__(self, history_size: int = 1000) -> None:
        self._queues: set[asyncio.Queue[WorkflowEvent | None]] = set()
        self._listeners: list[EventListener] = []
        self._history: deque[WorkflowEvent] = deque(maxlen=history_size)
        self._closed = False

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def recent(self, execution_id: str | None = None) -> list[WorkflowEvent]:
        """Recently published events, oldest first."""
        return [e for e in self._history if execution_id is None or e.execution_id == execution_id]

    async def publish(self, event: WorkflowEvent) -> None:
        self._history.append(event)
        for queue in list(self._queues):
            queue.put_nowait(event)

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.warning(
                    "event_listener_failed",
                    kind=event.kind.value,
                    execution_id=event.execution_id,
                    error=str(e),
                )

    def subscribe(self) -> AsyncIterator[WorkflowEvent]:
        """Iterate events published from this call on until the bus closes."""
        queue: asyncio.Queue[WorkflowEvent | None] = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        else:
            self._queues.add(queue)
        return self._drain(queue)

    async def _drain(self, queue: "asyncio.Queue[WorkflowEvent | None]") -> AsyncIterator[WorkflowEvent]:
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._queues.discard(queue)

    def close(self) -> None:
        """End every active subscription."""
        self._closed = True
        for queue in list(self._queues):
            queue.put_nowait(None)
