"""Google Gemini generateContent REST provider."""

from __future__ import annotations

import logging
from typing import Any

import requests

from providers.base import BaseLLMProvider

logger = logging.getLogger(__name__)
DEFAULT_GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta"


def _split_data_url(url: str) -> tuple[str, str]:
    """'data:image/png;base64,AAAA' -> ('image/png', 'AAAA')."""
    header, _, data = url.partition(",")
    mime_type = header[len("data:"):].split(";")[0] if header.startswith("data:") else "image/jpeg"
    return mime_type or "image/jpeg", data


def _to_gemini_contents(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert OpenAI-style chat messages (text + image_url parts) to Gemini contents."""
    contents: list[dict[str, Any]] = []
    for message in messages:
        role = "model" if message.get("role") == "assistant" else "user"
        content = message.get("content")
        parts: list[dict[str, Any]] = []
        if isinstance(content, str):
            parts.append({"text": content})
        elif isinstance(content, list):
            for part in content:
                if part.get("type") == "text":
                    parts.append({"text": part.get("text", "")})
                elif part.get("type") == "image_url":
                    mime_type, data = _split_data_url((part.get("image_url") or {}).get("url", ""))
                    parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
        if parts:
            contents.append({"role": role, "parts": parts})
    return contents


class GeminiProvider(BaseLLMProvider):
    """Gemini models over the public REST API; API key sent as x-goog-api-key."""

    name = "gemini"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str = "",
        model: str = "gemini-2.5-flash",
        timeout_sec: int = 120,
    ) -> None:
        super().__init__(api_key=api_key, model=model, timeout_sec=timeout_sec)
        self._base_url = (base_url or DEFAULT_GEMINI_BASE).rstrip("/")

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            h["x-goog-api-key"] = self._api_key
        return h

    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        model = kwargs.get("model") or self._model
        url = f"{self._base_url}/models/{model}:generateContent"
        generation_config: dict[str, Any] = {
            "maxOutputTokens": kwargs.get("max_tokens", 4096),
        }
        if kwargs.get("temperature") is not None:
            generation_config["temperature"] = kwargs["temperature"]
        if kwargs.get("response_format") is not None:
            generation_config["responseMimeType"] = "application/json"
        payload: dict[str, Any] = {
            "contents": _to_gemini_contents(messages),
            "generationConfig": generation_config,
        }
        resp = requests.post(url, json=payload, headers=self._headers(), timeout=self._timeout)
        resp.raise_for_status()
        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            logger.warning("Gemini returned no candidates (model=%s): %s", model, data.get("promptFeedback"))
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts).strip()
