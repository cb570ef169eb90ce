"""Async pub/sub EventBus for decoupling the relay from observers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from thinkbot.types import EventType, RelayEvent

_logger = logging.getLogger(__name__)

# Sentinel used for wildcard subscriptions (receive all events)
_WILDCARD = "*"

# Type alias for handlers (sync or async callables taking a RelayEvent)
Handler = Callable[[RelayEvent], Any]


class EventBus:
    """Lightweight async pub/sub event bus.

    Features:
    - Subscribe to specific EventType or wildcard ``"*"`` for all events.
    - Handlers can be sync or async; sync handlers are auto-wrapped.
    - ``emit()`` fans out to matching handlers concurrently.
    - Handler failures are logged and never reach the publisher.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[RelayEvent] = []
        self._max_history = max_history

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
    ) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        key = self._key(event_type)
        self._handlers.setdefault(key, []).append(handler)

    def unsubscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
    ) -> None:
        """Remove *handler* from *event_type*."""
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: RelayEvent) -> None:
        """Emit an event to all matching handlers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        if not handlers:
            return

        await asyncio.gather(
            *(self._call_handler(h, event) for h in handlers),
            return_exceptions=True,
        )

    async def publish(self, event_type: EventType, **data: Any) -> None:
        """Shorthand for ``emit(RelayEvent(event_type, data))``."""
        await self.emit(RelayEvent(type=event_type, data=data))

    @property
    def history(self) -> list[RelayEvent]:
        """Return a copy of the event history."""
        return list(self._history)

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: RelayEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type,
            )
