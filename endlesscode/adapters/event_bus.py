"""Event plumbing between the engine and the WebSocket layer.

``EventBus`` is a bounded async queue drained by the server's consumer
loop. ``EventDispatcher`` is a synchronous typed fan-out used where
listeners must observe transitions in order (prompt state changes).
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

from endlesscode.adapters.events import SessionEvent

logger = logging.getLogger(__name__)

EMIT_TIMEOUT_SECONDS = 30.0

T = TypeVar("T")


class EventBus:
    """Async queue bridging engine events to the broadcast loop.

    ``emit`` waits up to ``emit_timeout`` for room in the queue and then
    drops the event. Drops are counted per session so the stats route
    can show which sessions lost output.
    """

    def __init__(
        self, maxsize: int = 5000, emit_timeout: float = EMIT_TIMEOUT_SECONDS
    ) -> None:
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self._emit_timeout = emit_timeout
        self._dropped: Counter[str] = Counter()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def dropped_events(self, session_id: str | None = None) -> int:
        """Events dropped for *session_id*, or for all sessions."""
        if session_id is None:
            return sum(self._dropped.values())
        return self._dropped[session_id]

    def forget_session(self, session_id: str) -> None:
        self._dropped.pop(session_id, None)

    async def emit(self, event: SessionEvent) -> None:
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._emit_timeout)
        except asyncio.TimeoutError:
            self._dropped[event.session_id] += 1
            logger.error(
                "EventBus queue blocked for %.1fs, dropping: %s session=%s "
                "(queue size: %d, dropped for session: %d)",
                self._emit_timeout,
                event.event_type,
                event.session_id,
                self._queue.qsize(),
                self._dropped[event.session_id],
            )

    async def consume(self) -> AsyncIterator[SessionEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True


class EventDispatcher(Generic[T]):
    """Synchronous fan-out to listeners in registration order."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)
