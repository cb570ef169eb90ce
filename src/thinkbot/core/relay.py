"""Chunked delivery of replies to a single connection.

A reply is produced as an ordered, finite sequence of ``bot_message_chunk``
envelopes followed by exactly one ``bot_message_done``.  ``ReplyStream``
enforces that contract per request; ``ChannelSink`` decouples producers
from the socket by queueing envelopes for one writer task.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Iterator, Protocol

from thinkbot.types import BOT_MESSAGE_CHUNK, BOT_MESSAGE_DONE, Envelope

_logger = logging.getLogger(__name__)

# A word plus the whitespace that follows it
_WORD_RE = re.compile(r"\S+\s*")


class RelayClosedError(RuntimeError):
    """Raised when a reply is written to after its terminal signal."""


class ChunkSink(Protocol):
    """Destination connection for outbound events."""

    async def emit(self, event: str, data: Any = None) -> None:
        ...


def chunk_words(text: str, words_per_chunk: int = 5) -> Iterator[str]:
    """Yield *text* in chunks of up to *words_per_chunk* words.

    Whitespace is kept with the word it follows (leading whitespace with the
    first chunk), so ``"".join(chunk_words(text))`` reproduces *text*.
    """
    if words_per_chunk < 1:
        raise ValueError("words_per_chunk must be >= 1")
    words = _WORD_RE.findall(text)
    if not words:
        if text:
            yield text
        return
    lead = text[: len(text) - len(text.lstrip())]
    words[0] = lead + words[0]
    for i in range(0, len(words), words_per_chunk):
        yield "".join(words[i:i + words_per_chunk])


class ReplyStream:
    """Outbound side of one request: chunks, then one terminal signal."""

    def __init__(self, sink: ChunkSink) -> None:
        self._sink = sink
        self.chunks_sent = 0
        self.closed = False

    async def chunk(self, text: str) -> None:
        if self.closed:
            raise RelayClosedError("chunk after bot_message_done")
        await self._sink.emit(BOT_MESSAGE_CHUNK, text)
        self.chunks_sent += 1

    async def done(self) -> None:
        if self.closed:
            raise RelayClosedError("bot_message_done already sent")
        self.closed = True
        await self._sink.emit(BOT_MESSAGE_DONE)


class StreamingRelay:
    """Split replies into word chunks and deliver them with a short pause."""

    def __init__(
        self,
        words_per_chunk: int = 5,
        chunk_delay: float = 0.05,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.words_per_chunk = words_per_chunk
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    def open(self, sink: ChunkSink) -> ReplyStream:
        return ReplyStream(sink)

    async def deliver(self, sink: ChunkSink, text: str) -> int:
        """Stream *text* as chunks followed by the terminal signal.

        Returns the number of chunks delivered.
        """
        reply = self.open(sink)
        for i, chunk in enumerate(chunk_words(text, self.words_per_chunk)):
            if i and self.chunk_delay > 0:
                await self._sleep(self.chunk_delay)
            await reply.chunk(chunk)
        await reply.done()
        return reply.chunks_sent

    async def deliver_error(self, sink: ChunkSink, message: str) -> None:
        """Deliver one human-readable error chunk and the terminal signal."""
        reply = self.open(sink)
        await reply.chunk(message)
        await reply.done()


class ChannelSink:
    """Sink backed by an ``asyncio.Queue`` drained by a single writer.

    Several producers (the request worker, acks from the receive loop) may
    emit concurrently; the writer sends envelopes in queue order.
    """

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[Envelope] = asyncio.Queue()

    async def emit(self, event: str, data: Any = None) -> None:
        await self._queue.put(Envelope(event, data, self.session_id))

    def pending(self) -> int:
        return self._queue.qsize()

    async def drain(self, send: Callable[[dict[str, Any]], Awaitable[Any]]) -> None:
        """Forward envelopes to *send* until cancelled."""
        while True:
            envelope = await self._queue.get()
            try:
                await send(envelope.to_dict())
            finally:
                self._queue.task_done()
