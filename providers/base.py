"""
Abstract base for all model providers.
Services depend only on ILLMProvider; no concrete provider imports outside the factory.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from core.interfaces import ILLMProvider


class BaseLLMProvider(ILLMProvider, ABC):
    """Abstract provider. Implement chat(); chat_vision delegates to it by default."""

    def __init__(self, api_key: str = "", model: str = "", timeout_sec: int = 120) -> None:
        self._api_key = api_key or ""
        self._model = model
        self._timeout = timeout_sec

    @property
    def model(self) -> str:
        return self._model

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            h["Authorization"] = f"Bearer {self._api_key}"
        return h

    @abstractmethod
    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Chat completion. Returns content string; HTTP errors propagate as requests exceptions."""
        ...
