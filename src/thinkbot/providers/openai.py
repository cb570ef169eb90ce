"""OpenAI-compatible chat completions provider (OpenAI, OpenRouter, LM Studio)."""

from __future__ import annotations

from typing import Any

from thinkbot.config import UpstreamConfig

from .base import HTTPProvider, malformed


class OpenAIChatProvider(HTTPProvider):
    """``POST /chat/completions`` with ``stream: false``."""

    name = "openai"
    endpoint = "/chat/completions"

    @staticmethod
    def headers(config: UpstreamConfig) -> dict[str, str]:
        headers = HTTPProvider.headers(config)
        headers["Authorization"] = f"Bearer {config.api_key}"
        # OpenRouter attribution headers
        if config.referer:
            headers["HTTP-Referer"] = config.referer
        if config.title:
            headers["X-Title"] = config.title
        return headers

    @property
    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key)

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
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise malformed("No choices in API response", data)
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise malformed("Empty message content in API response", data)
        return content
