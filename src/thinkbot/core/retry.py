"""Bounded retry with capped exponential backoff.

    attempt 0 -> fail (retryable) -> sleep min(base * 2**0, cap)
    attempt 1 -> fail (retryable) -> sleep min(base * 2**1, cap)
    ...
    attempt max_attempts - 1 -> fail -> raise

Fatal error kinds stop the loop immediately.  The sleep between attempts
is an ``asyncio`` sleep, so cancelling the calling task (connection closed)
abandons the sequence at either suspension point.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from thinkbot.config import RetryConfig
from thinkbot.types import ErrorKind, ProviderError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
RetryHook = Callable[["RetryState", ProviderError, float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    backoff_base: float = 1.0
    backoff_cap: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError("backoff durations must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed *attempt* (0-indexed)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_cap=config.backoff_cap,
        )


@dataclass
class RetryState:
    """Progress of one ``execute()`` call."""

    max_attempts: int
    attempt: int = 0
    last_error: ErrorKind | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts


class RetryOrchestrator:
    """Run an async operation until it succeeds, fails fatally or runs out
    of attempts.

    Holds no per-call state, so one instance can be shared by every session.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        on_retry: RetryHook | None = None,
    ) -> T:
        """Return the first successful result of *op*.

        Raises the last ``ProviderError`` once attempts are exhausted, or the
        first one whose kind is not retryable.  ``error.attempts`` records
        how many calls were made.
        """
        policy = policy or self.policy
        state = RetryState(max_attempts=policy.max_attempts)

        while True:
            try:
                return await op()
            except ProviderError as e:
                state.last_error = e.kind
                e.attempts = state.attempt + 1

                if not e.retryable:
                    _logger.error(
                        "Attempt %d/%d failed with fatal error: %s",
                        state.attempt + 1, policy.max_attempts, e.log_fields(),
                    )
                    raise
                if state.exhausted:
                    _logger.error(
                        "All %d attempts exhausted, last error: %s",
                        policy.max_attempts, e.log_fields(),
                    )
                    raise

                delay = policy.delay_for(state.attempt)
                state.delays.append(delay)
                _logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.2fs: %s",
                    state.attempt + 1, policy.max_attempts,
                    e.kind.value, delay, e.log_fields(),
                )
                if on_retry is not None:
                    await on_retry(state, e, delay)
                await self._sleep(delay)
                state.attempt += 1
