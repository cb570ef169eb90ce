"""Text-completion providers."""

from __future__ import annotations

from thinkbot.config import RelayConfig
from thinkbot.providers.base import (
    HTTPProvider,
    Provider,
    classify_status,
    classify_transport_error,
)
from thinkbot.providers.ollama import OllamaChatProvider
from thinkbot.providers.openai import OpenAIChatProvider

_PROVIDERS: dict[str, type[HTTPProvider]] = {
    "openai": OpenAIChatProvider,
    "ollama": OllamaChatProvider,
}


def create_provider(config: RelayConfig) -> HTTPProvider:
    """Build the provider selected by ``upstream.api_type``."""
    api_type = config.upstream.api_type.lower()
    try:
        cls = _PROVIDERS[api_type]
    except KeyError:
        raise ValueError(
            f"Unknown upstream api_type {config.upstream.api_type!r}; "
            f"expected one of {', '.join(sorted(_PROVIDERS))}"
        ) from None
    return cls(config.upstream, history_cap=config.history.max_turns)


__all__ = [
    "HTTPProvider",
    "OllamaChatProvider",
    "OpenAIChatProvider",
    "Provider",
    "classify_status",
    "classify_transport_error",
    "create_provider",
]
