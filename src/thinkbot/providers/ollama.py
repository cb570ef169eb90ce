"""Ollama native chat provider (``/api/chat``)."""

from __future__ import annotations

from typing import Any

from thinkbot.config import UpstreamConfig

from .base import HTTPProvider, malformed


class OllamaChatProvider(HTTPProvider):
    name = "ollama"
    endpoint = "/api/chat"

    @staticmethod
    def base_url(config: UpstreamConfig) -> str:
        # Native API lives beside the OpenAI shim, not under /v1
        return config.base_url.rstrip("/").removesuffix("/v1")

    def build_payload(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
        }
        if self.config.extra_params:
            payload.update(self.config.extra_params)
        return payload

    def parse_reply(self, data: dict[str, Any]) -> str:
        message = data.get("message")
        if not isinstance(message, dict):
            raise malformed("No message in Ollama response", data)
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise malformed("Empty message content in Ollama response", data)
        return content
