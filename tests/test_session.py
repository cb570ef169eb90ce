"""Tests for ChatSession: the per-connection request lifecycle."""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

import pytest

from thinkbot.core.history import HistoryStore
from thinkbot.core.relay import StreamingRelay
from thinkbot.core.retry import RetryOrchestrator, RetryPolicy
from thinkbot.core.session import (
    ERROR_MESSAGES,
    HISTORY_CLEARED_MESSAGE,
    INVALID_MESSAGE,
    MISSING_CONFIG,
    ChatSession,
    SessionState,
    user_message_for,
)
from thinkbot.events.bus import EventBus
from thinkbot.types import (
    BOT_MESSAGE_CHUNK,
    BOT_MESSAGE_DONE,
    HISTORY_CLEARED,
    HISTORY_SUMMARY,
    ErrorKind,
    EventType,
    ProviderError,
    Turn,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def emit(self, event: str, data: Any = None) -> None:
        self.events.append((event, data))

    def chunks(self) -> list[str]:
        return [d for e, d in self.events if e == BOT_MESSAGE_CHUNK]

    def done_count(self) -> int:
        return sum(1 for e, _ in self.events if e == BOT_MESSAGE_DONE)


class StubProvider:
    """Scripted provider: each call pops the next reply or raises it."""

    def __init__(self, *replies: str | BaseException, configured: bool = True) -> None:
        self._replies = list(replies)
        self.configured = configured
        self.calls: list[tuple[list[Turn], str]] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, context: Sequence[Turn], message: str) -> str:
        self.calls.append((list(context), message))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        reply = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def close(self) -> None:
        pass


async def _no_sleep(_delay: float) -> None:
    return None


def _session(
    provider: StubProvider,
    store: HistoryStore | None = None,
    bus: EventBus | None = None,
    max_attempts: int = 4,
) -> tuple[ChatSession, RecordingSink, HistoryStore]:
    sink = RecordingSink()
    store = store or HistoryStore()
    session = ChatSession(
        sink,
        store,
        provider,
        RetryOrchestrator(RetryPolicy(max_attempts=max_attempts), sleep=_no_sleep),
        StreamingRelay(words_per_chunk=5, chunk_delay=0),
        event_bus=bus,
        session_id="sess-1",
    )
    return session, sink, store


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestHappyPath:
    @pytest.mark.asyncio
    async def test_hello_round_trip(self):
        provider = StubProvider("Hi there, how can I help?")
        session, sink, store = _session(provider)

        outcome = await session.handle_user_message("Hello")

        assert outcome is SessionState.COMPLETED
        assert session.state is SessionState.IDLE
        assert "".join(sink.chunks()) == "Hi there, how can I help?"
        assert sink.done_count() == 1
        assert sink.events[-1] == (BOT_MESSAGE_DONE, None)
        assert store.get("sess-1") == [
            Turn.user("Hello"),
            Turn.assistant("Hi there, how can I help?"),
        ]

    @pytest.mark.asyncio
    async def test_message_is_trimmed(self):
        provider = StubProvider("ok")
        session, _, store = _session(provider)
        await session.handle_user_message("   Hello  \n")
        assert provider.calls[0][1] == "Hello"
        assert store.get("sess-1")[0] == Turn.user("Hello")

    @pytest.mark.asyncio
    async def test_prior_turns_sent_as_context(self):
        provider = StubProvider("first reply", "second reply")
        session, _, _ = _session(provider)

        await session.handle_user_message("one")
        await session.handle_user_message("two")

        context, message = provider.calls[1]
        assert message == "two"
        assert context == [Turn.user("one"), Turn.assistant("first reply")]

    @pytest.mark.asyncio
    async def test_history_capped_at_ten(self):
        provider = StubProvider("reply")
        session, _, store = _session(provider)
        for i in range(8):
            await session.handle_user_message(f"m{i}")

        history = store.get("sess-1")
        assert len(history) == 10
        assert history[0] == Turn.user("m3")
        assert len(provider.calls[-1][0]) == 10

    @pytest.mark.asyncio
    async def test_completion_events_published(self):
        bus = EventBus()
        provider = StubProvider("done and dusted")
        session, _, _ = _session(provider, bus=bus)

        await session.handle_user_message("go")

        types = [e.type for e in bus.history]
        assert types == [EventType.REQUEST_STARTED, EventType.REQUEST_COMPLETED]
        assert bus.history[-1].data["chunks"] == 1


# ---------------------------------------------------------------------------
# Rejections and failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.parametrize("text", ["", "   \t\n", None, 42, {"text": "hi"}])
    @pytest.mark.asyncio
    async def test_invalid_message_skips_provider(self, text):
        provider = StubProvider("never")
        session, sink, store = _session(provider)

        outcome = await session.handle_user_message(text)

        assert outcome is SessionState.FAILED
        assert provider.calls == []
        assert sink.events == [
            (BOT_MESSAGE_CHUNK, INVALID_MESSAGE),
            (BOT_MESSAGE_DONE, None),
        ]
        assert store.get("sess-1") == []

    @pytest.mark.asyncio
    async def test_missing_config(self):
        provider = StubProvider("never", configured=False)
        session, sink, _ = _session(provider)

        await session.handle_user_message("Hello")

        assert provider.calls == []
        assert sink.chunks() == [MISSING_CONFIG]
        assert sink.done_count() == 1

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self):
        bus = EventBus()
        provider = StubProvider(ProviderError(ErrorKind.AUTH_FAILED, status_code=401))
        session, sink, store = _session(provider, bus=bus)

        outcome = await session.handle_user_message("Hello")

        assert outcome is SessionState.FAILED
        assert len(provider.calls) == 1
        assert sink.chunks() == [ERROR_MESSAGES[ErrorKind.AUTH_FAILED]]
        assert sink.done_count() == 1
        assert store.get("sess-1") == []
        assert not [e for e in bus.history if e.type is EventType.PROVIDER_RETRY]

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_history_untouched(self):
        bus = EventBus()
        store = HistoryStore()
        store.extend("sess-1", [Turn.user("earlier"), Turn.assistant("reply")])
        provider = StubProvider(
            ProviderError(ErrorKind.UPSTREAM_SERVER_ERROR, status_code=502),
        )
        session, sink, _ = _session(provider, store=store, bus=bus, max_attempts=3)

        await session.handle_user_message("Hello")

        assert len(provider.calls) == 3
        assert sink.chunks() == [ERROR_MESSAGES[ErrorKind.UPSTREAM_SERVER_ERROR]]
        assert sink.done_count() == 1
        assert store.get("sess-1") == [Turn.user("earlier"), Turn.assistant("reply")]

        retries = [e for e in bus.history if e.type is EventType.PROVIDER_RETRY]
        assert [e.data["attempt"] for e in retries] == [1, 2]
        failed = [e for e in bus.history if e.type is EventType.REQUEST_FAILED]
        assert failed[0].data["attempts"] == 3

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        provider = StubProvider(
            ProviderError(ErrorKind.DNS_UNRESOLVED),
            ProviderError(ErrorKind.RATE_LIMITED, status_code=429),
            "finally",
        )
        session, sink, store = _session(provider)

        outcome = await session.handle_user_message("Hello")

        assert outcome is SessionState.COMPLETED
        assert len(provider.calls) == 3
        assert sink.chunks() == ["finally"]
        assert len(store.get("sess-1")) == 2

    @pytest.mark.asyncio
    async def test_unexpected_exception_maps_to_unknown(self):
        provider = StubProvider(RuntimeError("kaboom"))
        session, sink, _ = _session(provider)

        outcome = await session.handle_user_message("Hello")

        assert outcome is SessionState.FAILED
        assert sink.chunks() == [ERROR_MESSAGES[ErrorKind.UNKNOWN]]
        assert sink.done_count() == 1

    def test_every_kind_has_a_message(self):
        for kind in ErrorKind:
            assert user_message_for(kind) == ERROR_MESSAGES[kind]
            assert "HTTP" not in user_message_for(kind)


# ---------------------------------------------------------------------------
# Queueing and lifecycle
# ---------------------------------------------------------------------------

class TestQueueing:
    @pytest.mark.asyncio
    async def test_second_message_waits_for_first(self):
        provider = StubProvider("first answer", "second answer")
        provider.gate = asyncio.Event()
        session, sink, _ = _session(provider)
        session.start()

        await session.submit("one")
        await session.submit("two")
        await asyncio.wait_for(provider.entered.wait(), timeout=1)

        assert session.state is SessionState.IN_FLIGHT
        assert len(provider.calls) == 1
        assert session.pending == 1

        provider.gate.set()
        await asyncio.wait_for(session._inbox.join(), timeout=1)
        await session.close()

        assert [m for _, m in provider.calls] == ["one", "two"]
        assert sink.events == [
            (BOT_MESSAGE_CHUNK, "first answer"),
            (BOT_MESSAGE_DONE, None),
            (BOT_MESSAGE_CHUNK, "second answer"),
            (BOT_MESSAGE_DONE, None),
        ]

    @pytest.mark.asyncio
    async def test_close_abandons_in_flight_request(self):
        bus = EventBus()
        provider = StubProvider("never delivered")
        provider.gate = asyncio.Event()
        session, sink, store = _session(provider, bus=bus)

        await session.submit("Hello")
        await asyncio.wait_for(provider.entered.wait(), timeout=1)
        await session.close()

        assert sink.events == []
        assert store.get("sess-1") == []
        assert session.state is SessionState.IDLE
        assert bus.history[-1].type is EventType.SESSION_CLOSED

    @pytest.mark.asyncio
    async def test_close_propagates_caller_cancellation(self):
        class SlowCleanupProvider(StubProvider):
            async def generate(self, context, message):
                try:
                    return await super().generate(context, message)
                except asyncio.CancelledError:
                    await asyncio.sleep(0.05)
                    raise

        provider = SlowCleanupProvider("never delivered")
        provider.gate = asyncio.Event()
        session, sink, _ = _session(provider)

        await session.submit("Hello")
        await asyncio.wait_for(provider.entered.wait(), timeout=1)

        closer = asyncio.create_task(session.close())
        await asyncio.sleep(0)
        closer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closer

        assert closer.cancelled()
        # Let the worker finish its cleanup before the loop closes
        await asyncio.sleep(0.1)
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_clear_during_flight_uses_snapshot(self):
        store = HistoryStore()
        store.extend("sess-1", [Turn.user("old"), Turn.assistant("older reply")])
        provider = StubProvider("new reply")
        provider.gate = asyncio.Event()
        session, sink, _ = _session(provider, store=store)

        await session.submit("Hello")
        await asyncio.wait_for(provider.entered.wait(), timeout=1)
        await session.clear_history()
        assert store.get("sess-1") == []

        provider.gate.set()
        await asyncio.wait_for(session._inbox.join(), timeout=1)
        await session.close()

        # The upstream call saw the pre-clear context
        assert provider.calls[0][0] == [Turn.user("old"), Turn.assistant("older reply")]
        assert store.get("sess-1") == [Turn.user("Hello"), Turn.assistant("new reply")]
        assert sink.events[0] == (HISTORY_CLEARED, HISTORY_CLEARED_MESSAGE)
        assert sink.done_count() == 1


# ---------------------------------------------------------------------------
# History events
# ---------------------------------------------------------------------------

class TestHistoryEvents:
    @pytest.mark.asyncio
    async def test_clear_history_acknowledges(self):
        store = HistoryStore()
        store.extend("sess-1", [Turn.user(str(i)) for i in range(6)])
        session, sink, _ = _session(StubProvider("x"), store=store)

        await session.clear_history()

        assert store.get("sess-1") == []
        assert sink.events == [(HISTORY_CLEARED, HISTORY_CLEARED_MESSAGE)]

    @pytest.mark.asyncio
    async def test_summary_has_count_and_last_four(self):
        store = HistoryStore()
        store.extend("sess-1", [
            Turn.user("u1"), Turn.assistant("a1"),
            Turn.user("u2"), Turn.assistant("a2"),
            Turn.user("u3"), Turn.assistant("a3"),
        ])
        session, sink, _ = _session(StubProvider("x"), store=store)

        await session.send_history_summary()

        event, data = sink.events[0]
        assert event == HISTORY_SUMMARY
        assert data["messageCount"] == 6
        assert data["lastMessages"] == [
            {"role": "user", "content": "u2"},
            {"role": "assistant", "content": "a2"},
            {"role": "user", "content": "u3"},
            {"role": "assistant", "content": "a3"},
        ]

    @pytest.mark.asyncio
    async def test_summary_of_empty_session(self):
        session, sink, _ = _session(StubProvider("x"))
        await session.send_history_summary()
        assert sink.events == [(HISTORY_SUMMARY, {"messageCount": 0, "lastMessages": []})]
