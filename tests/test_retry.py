"""Tests for the retry orchestrator and backoff policy."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from thinkbot.config import RetryConfig
from thinkbot.core.retry import RetryOrchestrator, RetryPolicy, RetryState
from thinkbot.types import ErrorKind, ProviderError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _failing_op(kind: ErrorKind, status: int | None = None):
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise ProviderError(kind, f"boom {calls['n']}", status_code=status)

    return op, calls


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_defaults(self):
        p = RetryPolicy()
        assert p.max_attempts == 4
        assert p.backoff_base == 1.0
        assert p.backoff_cap == 10.0

    def test_delay_doubles_then_caps(self):
        p = RetryPolicy(max_attempts=6, backoff_base=1.0, backoff_cap=10.0)
        assert [p.delay_for(i) for i in range(6)] == [1, 2, 4, 8, 10, 10]

    def test_from_config(self):
        p = RetryPolicy.from_config(
            RetryConfig(max_attempts=5, backoff_base=0.5, backoff_cap=3),
        )
        assert p == RetryPolicy(max_attempts=5, backoff_base=0.5, backoff_cap=3)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRetryState:
    def test_exhausted_on_last_attempt(self):
        state = RetryState(max_attempts=2)
        assert not state.exhausted
        state.attempt = 1
        assert state.exhausted


# ---------------------------------------------------------------------------
# RetryOrchestrator
# ---------------------------------------------------------------------------

class TestExecute:
    @pytest.mark.asyncio
    async def test_first_attempt_success_no_sleep(self):
        sleep = RecordingSleep()
        orch = RetryOrchestrator(RetryPolicy(), sleep=sleep)

        async def op():
            return "ok"

        assert await orch.execute(op) == "ok"
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_always_5xx_uses_all_attempts(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=5, backoff_base=1.0, backoff_cap=5.0)
        orch = RetryOrchestrator(policy, sleep=sleep)
        op, calls = _failing_op(ErrorKind.UPSTREAM_SERVER_ERROR, 503)

        with pytest.raises(ProviderError) as exc_info:
            await orch.execute(op)

        assert calls["n"] == 5
        assert exc_info.value.attempts == 5
        assert exc_info.value.kind is ErrorKind.UPSTREAM_SERVER_ERROR
        # One sleep between each pair of attempts, none after the last
        assert sleep.delays == [min(1.0 * 2 ** i, 5.0) for i in range(4)]
        assert sleep.delays == sorted(sleep.delays)

    @pytest.mark.asyncio
    async def test_last_error_is_raised(self):
        orch = RetryOrchestrator(RetryPolicy(max_attempts=3), sleep=RecordingSleep())
        op, _ = _failing_op(ErrorKind.CONNECTION_REFUSED)

        with pytest.raises(ProviderError, match="boom 3"):
            await orch.execute(op)

    @pytest.mark.parametrize("kind", [
        ErrorKind.AUTH_FAILED,
        ErrorKind.BAD_REQUEST,
        ErrorKind.MALFORMED_RESPONSE,
        ErrorKind.UNKNOWN,
    ])
    @pytest.mark.asyncio
    async def test_fatal_kinds_do_not_retry(self, kind: ErrorKind):
        sleep = RecordingSleep()
        orch = RetryOrchestrator(RetryPolicy(max_attempts=4), sleep=sleep)
        op, calls = _failing_op(kind)

        with pytest.raises(ProviderError) as exc_info:
            await orch.execute(op)

        assert calls["n"] == 1
        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    @pytest.mark.parametrize("kind", [
        ErrorKind.DNS_UNRESOLVED,
        ErrorKind.CONNECTION_REFUSED,
        ErrorKind.UPSTREAM_SERVER_ERROR,
        ErrorKind.RATE_LIMITED,
    ])
    @pytest.mark.asyncio
    async def test_retryable_kinds_recover(self, kind: ErrorKind):
        sleep = RecordingSleep()
        orch = RetryOrchestrator(RetryPolicy(max_attempts=4), sleep=sleep)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ProviderError(kind)
            return "recovered"

        assert await orch.execute(op) == "recovered"
        assert calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_per_call_policy_overrides_default(self):
        orch = RetryOrchestrator(RetryPolicy(max_attempts=4), sleep=RecordingSleep())
        op, calls = _failing_op(ErrorKind.DNS_UNRESOLVED)

        with pytest.raises(ProviderError):
            await orch.execute(op, policy=RetryPolicy(max_attempts=2))
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_on_retry_hook(self):
        seen: list[tuple[int, ErrorKind | None, int | None, float]] = []

        async def hook(state, error, delay):
            seen.append((state.attempt, state.last_error, error.status_code, delay))

        orch = RetryOrchestrator(RetryPolicy(max_attempts=3), sleep=RecordingSleep())
        op, _ = _failing_op(ErrorKind.UPSTREAM_SERVER_ERROR, 500)

        with pytest.raises(ProviderError):
            await orch.execute(op, on_retry=hook)

        # No hook after the final attempt
        assert seen == [
            (0, ErrorKind.UPSTREAM_SERVER_ERROR, 500, 1.0),
            (1, ErrorKind.UPSTREAM_SERVER_ERROR, 500, 2.0),
        ]

    @pytest.mark.asyncio
    async def test_on_retry_hook_not_called_on_fatal(self):
        hook = AsyncMock()
        orch = RetryOrchestrator(sleep=RecordingSleep())
        op, _ = _failing_op(ErrorKind.AUTH_FAILED, 401)

        with pytest.raises(ProviderError):
            await orch.execute(op, on_retry=hook)
        hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_provider_errors_propagate(self):
        orch = RetryOrchestrator(sleep=RecordingSleep())

        async def op():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await orch.execute(op)

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        orch = RetryOrchestrator(RetryPolicy(max_attempts=3, backoff_base=60))
        op, calls = _failing_op(ErrorKind.CONNECTION_REFUSED)

        task = asyncio.create_task(orch.execute(op))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert calls["n"] == 1
