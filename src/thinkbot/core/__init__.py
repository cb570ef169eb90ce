"""Core relay components: retry, history, chunked delivery, sessions."""

from thinkbot.core.history import HistoryStore, HistorySweeper, Session
from thinkbot.core.relay import (
    ChannelSink,
    ChunkSink,
    RelayClosedError,
    ReplyStream,
    StreamingRelay,
    chunk_words,
)
from thinkbot.core.retry import RetryOrchestrator, RetryPolicy, RetryState
from thinkbot.core.session import ChatSession, SessionState

__all__ = [
    "ChannelSink",
    "ChatSession",
    "ChunkSink",
    "HistoryStore",
    "HistorySweeper",
    "RelayClosedError",
    "ReplyStream",
    "RetryOrchestrator",
    "RetryPolicy",
    "RetryState",
    "Session",
    "SessionState",
    "StreamingRelay",
    "chunk_words",
]
