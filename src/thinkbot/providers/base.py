"""Provider contract and upstream error classification.

A provider turns ``(history, new message)`` into one upstream call and
returns the complete reply text.  Failures are raised as ``ProviderError``
with an ``ErrorKind`` that the retry orchestrator uses to choose between
retrying and giving up.
"""

from __future__ import annotations

import abc
import logging
import socket
from typing import Any, Protocol, Sequence

import httpx

from thinkbot.config import UpstreamConfig
from thinkbot.types import ErrorKind, ProviderError, Turn

_logger = logging.getLogger(__name__)

USER_AGENT = "Thinkbot/1.0"

# Max chars of an upstream error body kept on ProviderError.detail
_DETAIL_LIMIT = 500

# Resolver messages across libc / macOS / Windows
_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
)


class Provider(Protocol):
    """Anything that can produce a reply for a conversation."""

    @property
    def is_configured(self) -> bool:
        ...

    async def generate(self, context: Sequence[Turn], message: str) -> str:
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_status(status_code: int) -> ErrorKind:
    """Map a non-2xx HTTP status to an ``ErrorKind``."""
    if status_code in (401, 403):
        return ErrorKind.AUTH_FAILED
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.UPSTREAM_SERVER_ERROR
    if 400 <= status_code < 500:
        return ErrorKind.BAD_REQUEST
    return ErrorKind.UNKNOWN


def _is_dns_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, socket.gaierror):
            return True
        lower = str(cur).lower()
        if any(marker in lower for marker in _DNS_MARKERS):
            return True
        cur = cur.__cause__ or cur.__context__
    return False


def classify_transport_error(exc: httpx.HTTPError) -> ProviderError:
    """Build a ``ProviderError`` for a failure that produced no response."""
    code = type(exc).__name__
    if isinstance(exc, httpx.ConnectError) and _is_dns_failure(exc):
        return ProviderError(
            ErrorKind.DNS_UNRESOLVED, f"DNS resolution failed: {exc}", code=code,
        )
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return ProviderError(
            ErrorKind.CONNECTION_REFUSED, f"Connection error: {exc}", code=code,
        )
    return ProviderError(ErrorKind.UNKNOWN, str(exc) or code, code=code)


def error_from_response(resp: httpx.Response) -> ProviderError:
    """Build a ``ProviderError`` for a non-2xx upstream response."""
    try:
        detail = resp.text[:_DETAIL_LIMIT]
    except Exception:
        detail = ""
    return ProviderError(
        classify_status(resp.status_code),
        f"Upstream returned HTTP {resp.status_code}",
        status_code=resp.status_code,
        code=resp.reason_phrase,
        detail=detail,
    )


# ---------------------------------------------------------------------------
# HTTP provider base
# ---------------------------------------------------------------------------

class HTTPProvider(abc.ABC):
    """Shared request/response plumbing for JSON chat APIs.

    Subclasses supply the endpoint path, the payload shape and the reply
    extraction; this class owns validation, the ``httpx.AsyncClient`` and
    error classification.
    """

    name = "http"
    endpoint = ""

    def __init__(
        self,
        config: UpstreamConfig,
        history_cap: int = 10,
    ) -> None:
        self.config = config
        self.history_cap = history_cap
        self._client = httpx.AsyncClient(
            base_url=self.base_url(config),
            headers=self.headers(config),
            timeout=httpx.Timeout(config.timeout, connect=min(config.timeout, 10)),
        )

    # -- hooks -----------------------------------------------------------

    @staticmethod
    def base_url(config: UpstreamConfig) -> str:
        return config.base_url.rstrip("/")

    @staticmethod
    def headers(config: UpstreamConfig) -> dict[str, str]:
        return {"Content-Type": "application/json", "User-Agent": USER_AGENT}

    @property
    def is_configured(self) -> bool:
        return bool(self.config.base_url)

    @abc.abstractmethod
    def build_payload(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        """Return the JSON body for one request."""

    @abc.abstractmethod
    def parse_reply(self, data: dict[str, Any]) -> str:
        """Extract reply text, raising MALFORMED_RESPONSE if absent."""

    # -- public API ------------------------------------------------------

    def build_messages(
        self, context: Sequence[Turn], message: str,
    ) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.extend(turn.to_message() for turn in context)
        messages.append({"role": "user", "content": message})
        return messages

    async def generate(self, context: Sequence[Turn], message: str) -> str:
        """Send one chat request and return the complete reply text."""
        message = message.strip()
        if not message:
            raise ValueError("message must not be empty")
        if len(context) > self.history_cap:
            raise ValueError(
                f"context has {len(context)} turns, cap is {self.history_cap}"
            )

        payload = self.build_payload(self.build_messages(context, message))
        _logger.debug(
            "Making %s request to %s%s (%d context turns)",
            self.name, self._client.base_url, self.endpoint, len(context),
        )
        try:
            resp = await self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            raise classify_transport_error(e) from e

        if resp.status_code >= 300:
            raise error_from_response(resp)

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                "Upstream returned invalid JSON",
                status_code=resp.status_code,
                detail=resp.text[:_DETAIL_LIMIT],
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                "Upstream returned a non-object JSON body",
                status_code=resp.status_code,
            )
        return self.parse_reply(data)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def malformed(reason: str, data: dict[str, Any]) -> ProviderError:
    return ProviderError(
        ErrorKind.MALFORMED_RESPONSE,
        reason,
        status_code=200,
        detail=str(data)[:_DETAIL_LIMIT],
    )
