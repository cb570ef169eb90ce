"""Shared data types for the Thinkbot relay."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One message in a session's history."""

    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def user(cls, content: str) -> Turn:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Turn:
        return cls(Role.ASSISTANT, content)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ErrorKind(str, enum.Enum):
    """Classification of an upstream failure."""

    DNS_UNRESOLVED = "dns_unresolved"
    CONNECTION_REFUSED = "connection_refused"  # also reset / timed out
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_SERVER_ERROR = "upstream_server_error"
    BAD_REQUEST = "bad_request"
    MALFORMED_RESPONSE = "malformed_response"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset({
    ErrorKind.DNS_UNRESOLVED,
    ErrorKind.CONNECTION_REFUSED,
    ErrorKind.UPSTREAM_SERVER_ERROR,
    ErrorKind.RATE_LIMITED,
})


class ProviderError(Exception):
    """A classified failure from a text-completion provider.

    ``detail`` is a truncated excerpt of the upstream payload.  It is meant
    for logs and the debug endpoints, never for the chat user.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        *,
        status_code: int | None = None,
        code: str = "",
        detail: str = "",
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.detail = detail
        self.attempts = 0

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def log_fields(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status_code,
            "code": self.code or None,
            "message": str(self),
        }


# ---------------------------------------------------------------------------
# Wire envelopes
# ---------------------------------------------------------------------------

# Connection-level event names
USER_MESSAGE = "user_message"
CLEAR_HISTORY = "clear_history"
GET_HISTORY_SUMMARY = "get_history_summary"
SESSION_STARTED = "session_started"
BOT_MESSAGE_CHUNK = "bot_message_chunk"
BOT_MESSAGE_DONE = "bot_message_done"
HISTORY_CLEARED = "history_cleared"
HISTORY_SUMMARY = "history_summary"
ERROR = "error"


@dataclass
class Envelope:
    """One outbound event addressed to a single connection."""

    event: str
    data: Any = None
    session_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


# ---------------------------------------------------------------------------
# Relay events (internal observability)
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types published on the EventBus."""

    SESSION_OPENED = "session.opened"
    SESSION_CLOSED = "session.closed"

    REQUEST_STARTED = "request.started"
    REQUEST_COMPLETED = "request.completed"
    REQUEST_FAILED = "request.failed"
    REQUEST_REJECTED = "request.rejected"

    PROVIDER_RETRY = "provider.retry"

    HISTORY_CLEARED = "history.cleared"
    HISTORY_EVICTED = "history.evicted"


@dataclass
class RelayEvent:
    """Event emitted by the relay via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
