"""Per-connection session: validation, upstream call, history, reply.

    IDLE → VALIDATING → IN_FLIGHT → COMPLETED | FAILED → IDLE

Messages are handled one at a time.  A ``user_message`` arriving while
another is in flight waits in the session's FIFO inbox and is processed
after the current one has sent its terminal signal.  ``clear_history`` and
``get_history_summary`` bypass the inbox.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Any

from thinkbot.core.history import HistoryStore
from thinkbot.core.relay import ChunkSink, StreamingRelay
from thinkbot.core.retry import RetryOrchestrator, RetryState
from thinkbot.events.bus import EventBus
from thinkbot.providers.base import Provider
from thinkbot.types import (
    HISTORY_CLEARED,
    HISTORY_SUMMARY,
    ErrorKind,
    EventType,
    ProviderError,
    Turn,
)

_logger = logging.getLogger(__name__)

INVALID_MESSAGE = "Please send a valid message."
MISSING_CONFIG = "Server configuration error: API key not found."
HISTORY_CLEARED_MESSAGE = "Conversation history cleared."

# User-facing text per failure kind; raw upstream detail is never shown
ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.DNS_UNRESOLVED: (
        "I'm having trouble connecting to my AI service. This appears to be "
        "a network connectivity issue. Please try again in a few moments."
    ),
    ErrorKind.CONNECTION_REFUSED: (
        "Connection failed after multiple attempts. Please try again later."
    ),
    ErrorKind.UPSTREAM_SERVER_ERROR: (
        "The AI service is experiencing issues. Please try again later."
    ),
    ErrorKind.RATE_LIMITED: (
        "I'm receiving too many requests. Please wait a moment and try again."
    ),
    ErrorKind.AUTH_FAILED: (
        "Authentication error. Please check the API configuration."
    ),
    ErrorKind.BAD_REQUEST: (
        "The AI service rejected the request. Please try rephrasing your message."
    ),
    ErrorKind.MALFORMED_RESPONSE: (
        "I received an empty response. Please try again."
    ),
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}


def user_message_for(kind: ErrorKind) -> str:
    return ERROR_MESSAGES.get(kind, ERROR_MESSAGES[ErrorKind.UNKNOWN])


def _preview(text: str, limit: int = 50) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class SessionState(enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class ChatSession:
    """Owns the lifecycle of one logical connection.

    Parameters
    ----------
    sink:
        Where envelopes for this connection go.
    store:
        Shared history store; only this session's id is ever mutated.
    provider:
        Text-completion provider.
    orchestrator:
        Retry driver shared across sessions.
    relay:
        Chunked reply delivery.
    event_bus:
        Optional bus for lifecycle events.
    summary_size:
        How many trailing turns ``get_history_summary`` returns.
    """

    def __init__(
        self,
        sink: ChunkSink,
        store: HistoryStore,
        provider: Provider,
        orchestrator: RetryOrchestrator,
        relay: StreamingRelay,
        event_bus: EventBus | None = None,
        session_id: str | None = None,
        summary_size: int = 4,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self._sink = sink
        self._store = store
        self._provider = provider
        self._orchestrator = orchestrator
        self._relay = relay
        self._bus = event_bus or EventBus()
        self._summary_size = summary_size
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.state = SessionState.IDLE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker that drains queued user messages."""
        if self._worker is None:
            self._worker = asyncio.create_task(
                self._drain_inbox(), name=f"session-{self.id[:8]}",
            )

    async def close(self) -> None:
        """Abandon queued and in-flight work without emitting anything."""
        if self._worker is not None:
            worker, self._worker = self._worker, None
            worker.cancel()
            # gather() lets a cancellation of the caller itself propagate
            await asyncio.gather(worker, return_exceptions=True)
        self.state = SessionState.IDLE
        await self._bus.publish(EventType.SESSION_CLOSED, session_id=self.id)

    @property
    def pending(self) -> int:
        """Number of queued messages not yet started."""
        return self._inbox.qsize()

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def submit(self, text: Any) -> None:
        """Queue a ``user_message`` for the worker."""
        if self._worker is None:
            self.start()
        await self._inbox.put(text if isinstance(text, str) else "")

    async def clear_history(self) -> None:
        self._store.clear(self.id)
        _logger.info("History cleared for session %s", self.id[:8])
        await self._bus.publish(EventType.HISTORY_CLEARED, session_id=self.id)
        await self._sink.emit(HISTORY_CLEARED, HISTORY_CLEARED_MESSAGE)

    async def send_history_summary(self) -> None:
        count, last = self._store.summary(self.id, self._summary_size)
        await self._sink.emit(HISTORY_SUMMARY, {
            "messageCount": count,
            "lastMessages": [turn.to_message() for turn in last],
        })

    async def handle_user_message(self, text: Any) -> SessionState:
        """Run one message through the state machine.

        Always ends with exactly one terminal signal unless the task is
        cancelled.  Returns the outcome (COMPLETED or FAILED); the session
        itself is back to IDLE afterwards.
        """
        self.state = SessionState.VALIDATING
        message = text.strip() if isinstance(text, str) else ""
        _logger.info(
            "Received message for session %s: %r", self.id[:8], _preview(message),
        )
        try:
            outcome = await self._process(message)
        except asyncio.CancelledError:
            self.state = SessionState.IDLE
            raise
        self.state = SessionState.IDLE
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _process(self, message: str) -> SessionState:
        if not message:
            return await self._fail(INVALID_MESSAGE, reason="empty_message")
        if not self._provider.is_configured:
            _logger.error("Upstream provider is not configured (missing API key)")
            return await self._fail(MISSING_CONFIG, reason="missing_config")

        # In-flight requests keep this snapshot even if history is cleared
        context = self._store.get(self.id)
        self.state = SessionState.IN_FLIGHT
        await self._bus.publish(
            EventType.REQUEST_STARTED,
            session_id=self.id, context_turns=len(context),
        )

        try:
            reply = await self._orchestrator.execute(
                lambda: self._provider.generate(context, message),
                on_retry=self._on_retry,
            )
        except ProviderError as e:
            self.state = SessionState.FAILED
            await self._bus.publish(
                EventType.REQUEST_FAILED,
                session_id=self.id, attempts=e.attempts, **e.log_fields(),
            )
            await self._relay.deliver_error(self._sink, user_message_for(e.kind))
            return SessionState.FAILED
        except Exception as e:
            _logger.exception("Unexpected error handling message for %s", self.id[:8])
            self.state = SessionState.FAILED
            await self._bus.publish(
                EventType.REQUEST_FAILED,
                session_id=self.id, kind=ErrorKind.UNKNOWN.value, message=str(e),
            )
            await self._relay.deliver_error(
                self._sink, user_message_for(ErrorKind.UNKNOWN),
            )
            return SessionState.FAILED

        self.state = SessionState.COMPLETED
        self._store.extend(self.id, (Turn.user(message), Turn.assistant(reply)))
        chunks = await self._relay.deliver(self._sink, reply)
        _logger.info(
            "Reply delivered to session %s: %d chars in %d chunk(s)",
            self.id[:8], len(reply), chunks,
        )
        await self._bus.publish(
            EventType.REQUEST_COMPLETED,
            session_id=self.id, chars=len(reply), chunks=chunks,
        )
        return SessionState.COMPLETED

    async def _fail(self, message: str, reason: str) -> SessionState:
        self.state = SessionState.FAILED
        await self._bus.publish(
            EventType.REQUEST_REJECTED, session_id=self.id, reason=reason,
        )
        await self._relay.deliver_error(self._sink, message)
        return SessionState.FAILED

    async def _on_retry(
        self, state: RetryState, error: ProviderError, delay: float,
    ) -> None:
        await self._bus.publish(
            EventType.PROVIDER_RETRY,
            session_id=self.id,
            attempt=state.attempt + 1,
            max_attempts=state.max_attempts,
            delay=delay,
            **error.log_fields(),
        )

    async def _drain_inbox(self) -> None:
        while True:
            text = await self._inbox.get()
            try:
                await self.handle_user_message(text)
            except Exception:
                # Sink failures; the connection is going away
                _logger.exception("Delivery failed for session %s", self.id[:8])
            finally:
                self._inbox.task_done()
