"""Per-runner event bus.

The runner announces turn boundaries and the executor announces each
finished tool call.  Listeners subscribe by event type; a listener that
raises is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

TURN_STARTED = "turn_started"
TURN_COMPLETED = "turn_completed"
TOOL_EXECUTED = "tool_executed"


@dataclass
class Event:
    """One notification about a conversation (tool_id set for tool events)."""

    type: str
    conversation_id: str
    data: dict[str, Any] = field(default_factory=dict)
    tool_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue plus listener table.

    After start() a background task feeds queued events to listeners;
    without it, drain() delivers them inline.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Listener %s subscribed to %s", handler.__qualname__, event_type)

    async def emit(self, event: Event) -> None:
        """Queue an event; dropped with a warning once max_queue is reached."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full, dropping %s for %s", event.type, event.conversation_id)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="conductor-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Cancel the background task, then deliver whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Event bus stopped")

    async def drain(self) -> None:
        """Dispatch everything still queued, in order."""
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Listener %s failed on %s (%s)", handler.__qualname__, event.type, event.conversation_id)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
