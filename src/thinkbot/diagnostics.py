"""Connectivity checks and structured JSONL event recording."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import urlsplit

from thinkbot.types import RelayEvent

_logger = logging.getLogger(__name__)

BASELINE_HOST = "google.com"


# ---------------------------------------------------------------------------
# DNS check
# ---------------------------------------------------------------------------

@dataclass
class DNSResult:
    host: str
    address: str = ""
    family: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


def host_of(url: str) -> str:
    """Return the hostname of *url* (``""`` if it has none)."""
    return urlsplit(url).hostname or ""


async def resolve_host(host: str) -> DNSResult:
    """Resolve *host* without blocking the event loop."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, OSError) as e:
        return DNSResult(host=host, error=str(e))
    if not infos:
        return DNSResult(host=host, error="no addresses")
    family, _, _, _, sockaddr = infos[0]
    return DNSResult(host=host, address=str(sockaddr[0]), family=int(family))


async def check_dns(hosts: Iterable[str]) -> list[DNSResult]:
    """Resolve each host and log the outcome.  Never raises."""
    results = await asyncio.gather(*(resolve_host(h) for h in hosts if h))
    for r in results:
        if r.ok:
            version = 6 if r.family == socket.AF_INET6 else 4
            _logger.info("DNS resolved %s to %s (IPv%d)", r.host, r.address, version)
        elif r.host == BASELINE_HOST:
            _logger.error(
                "Basic internet connectivity issue, can't resolve %s: %s",
                r.host, r.error,
            )
        else:
            _logger.error(
                "DNS lookup failed for %s: %s (upstream calls may fail)",
                r.host, r.error,
            )
    return list(results)


# ---------------------------------------------------------------------------
# Event recorder
# ---------------------------------------------------------------------------

class EventRecorder:
    """Append every relay event to a JSONL file.

    Subscribe it to the bus with ``bus.subscribe("*", recorder)``.
    Each line: {"_seq": 0, "_elapsed_ms": 12.3, "_ts": "...", "type": ..., "data": {...}}
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")
        self._seq = 0
        self._start = time.monotonic()

    def __call__(self, event: RelayEvent) -> None:
        self.record(event)

    def record(self, event: RelayEvent) -> None:
        self._write({"type": event.type.value, "data": event.data})

    def _write(self, record: dict[str, Any]) -> None:
        record["_seq"] = self._seq
        record["_elapsed_ms"] = round((time.monotonic() - self._start) * 1000, 1)
        record["_ts"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        self._seq += 1
        self._file.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        self._file.flush()

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


def log_event(event: RelayEvent) -> None:
    """Bus handler that mirrors relay events into the debug log."""
    _logger.debug("event %s %s", event.type.value, event.data)
