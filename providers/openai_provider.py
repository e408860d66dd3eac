"""OpenAI (and OpenAI-compatible) chat/completions provider."""

from __future__ import annotations

import logging
from typing import Any

import requests

from providers.base import BaseLLMProvider

logger = logging.getLogger(__name__)
DEFAULT_OPENAI_BASE = "https://api.openai.com/v1"


class OpenAIProvider(BaseLLMProvider):
    """OpenAI API; image parts are sent as data URLs with detail=high."""

    name = "openai"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        timeout_sec: int = 120,
    ) -> None:
        super().__init__(api_key=api_key, model=model, timeout_sec=timeout_sec)
        self._base_url = (base_url or DEFAULT_OPENAI_BASE).rstrip("/")

    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        url = f"{self._base_url}/chat/completions"
        payload: dict[str, Any] = {
            "model": kwargs.get("model") or self._model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", 2500),
            "stream": False,
        }
        if kwargs.get("temperature") is not None:
            payload["temperature"] = kwargs["temperature"]
        if kwargs.get("response_format") is not None:
            payload["response_format"] = kwargs["response_format"]
        resp = requests.post(url, json=payload, headers=self._headers(), timeout=self._timeout)
        resp.raise_for_status()
        data = resp.json()
        choice = (data.get("choices") or [{}])[0]
        content = (choice.get("message") or {}).get("content") or ""
        if choice.get("finish_reason") == "length":
            logger.warning("OpenAI response truncated at max_tokens (model=%s)", payload["model"])
        return content.strip()

    def chat_vision(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        return self.chat([_with_high_detail(m) for m in messages], **kwargs)


def _with_high_detail(message: dict[str, Any]) -> dict[str, Any]:
    """Copy of message with detail=high on image parts (small receipt digits)."""
    content = message.get("content")
    if not isinstance(content, list):
        return message
    parts: list[Any] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "image_url":
            part = {**part, "image_url": {"detail": "high", **part["image_url"]}}
        parts.append(part)
    return {**message, "content": parts}
