"""In-memory per-session conversation history.

Sessions are keyed by id and capped at ``max_turns`` turns with FIFO
truncation.  The mapping lock is held only for lookups, inserts, deletes
and the sweep's scan; each session's turn list has its own lock, so
unrelated sessions never wait on each other.  No lock is held across an
``await``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from thinkbot.types import Turn

_logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 10  # 5 exchanges


@dataclass
class Session:
    id: str
    turns: list[Turn] = field(default_factory=list)
    last_activity: float = field(default_factory=time.time)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    evicted: bool = False


class HistoryStore:
    """Bounded session-id → turns mapping, safe for concurrent use."""

    def __init__(
        self,
        max_turns: int = DEFAULT_MAX_TURNS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.max_turns = max_turns
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, session_id: str, turn: Turn) -> None:
        """Append one turn, dropping the oldest turns beyond the cap."""
        self.extend(session_id, (turn,))

    def extend(self, session_id: str, turns: Iterable[Turn]) -> None:
        """Append several turns atomically (no interleaving within the id)."""
        new = list(turns)
        while True:
            session = self._get_or_create(session_id)
            with session.lock:
                # Lost a race with the sweeper; resolve the id again
                if session.evicted:
                    continue
                session.turns.extend(new)
                overflow = len(session.turns) - self.max_turns
                if overflow > 0:
                    del session.turns[:overflow]
                session.last_activity = self._clock()
                return

    def clear(self, session_id: str) -> bool:
        """Drop a session's history.  Returns whether it existed."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        with session.lock:
            session.evicted = True
            session.turns.clear()
        return True

    def evict_stale(self, now: float | None = None, max_age: float | None = None) -> int:
        """Remove empty sessions and sessions idle for longer than *max_age*.

        With ``max_age=None`` only empty sessions are removed.  Returns the
        number of sessions evicted.
        """
        now = self._clock() if now is None else now
        evicted: list[str] = []
        with self._lock:
            for sid, session in list(self._sessions.items()):
                with session.lock:
                    idle = now - session.last_activity
                    if not session.turns or (max_age is not None and idle > max_age):
                        session.evicted = True
                        del self._sessions[sid]
                        evicted.append(sid)
        if evicted:
            _logger.info("Evicted %d stale session(s)", len(evicted))
        return len(evicted)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> list[Turn]:
        """Return a snapshot of the session's turns (``[]`` if unknown)."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return []
        with session.lock:
            return list(session.turns)

    def summary(self, session_id: str, last: int = 4) -> tuple[int, list[Turn]]:
        """Return ``(turn_count, last_turns)`` for a session."""
        turns = self.get(session_id)
        return len(turns), turns[-last:] if last > 0 else []

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def _get_or_create(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(id=session_id, last_activity=self._clock())
                self._sessions[session_id] = session
            return session


class HistorySweeper:
    """Background task that periodically evicts stale sessions.

    Usage::

        sweeper = HistorySweeper(store, interval=3600, max_age=3600)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        store: HistoryStore,
        interval: float = 3600,
        max_age: float | None = 3600,
        on_evict: Callable[[int], Any] | None = None,
    ) -> None:
        self._store = store
        self.interval = interval
        self.max_age = max_age
        self._on_evict = on_evict
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="history-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def sweep_once(self) -> int:
        count = self._store.evict_stale(max_age=self.max_age)
        if count and self._on_evict is not None:
            result = self._on_evict(count)
            if asyncio.iscoroutine(result):
                await result
        return count

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception:
                _logger.exception("History sweep failed")
