"""
Abstract interfaces for the consignment pipeline.
Every external dependency is behind an interface; no service depends on a concrete model backend or store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from core.models import AppendResult, ConsignmentRecord, HistoryFilter, RawFields, TrainingExample


class ILLMProvider(ABC):
    """Abstract chat-completion backend with vision input. Used by the extraction service."""

    name: str = ""

    @abstractmethod
    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Chat completion; returns content string. kwargs: model, max_tokens, temperature, response_format."""
        ...

    def chat_vision(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Vision-capable chat. Default: delegate to chat."""
        return self.chat(messages, **kwargs)


class IExtractionService(ABC):
    """One extraction backend: image bytes -> RawFields for a single model call."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Label recorded as used_provider on results."""
        ...

    @abstractmethod
    def extract(
        self,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        prompt_context: Sequence[TrainingExample] = (),
    ) -> RawFields:
        """
        Extract receipt fields from one image.
        Raises InvalidImage, RateLimited, ModelUnavailable or ModelProtocolError.
        """
        ...


class IPostProcessingService(ABC):
    """Deterministic bank-format corrections applied to each call's RawFields."""

    @abstractmethod
    def apply(self, raw: RawFields) -> RawFields:
        ...


class ICacheStore(ABC):
    """
    Key -> document store backing the result cache.
    Documents are JSON-compatible dicts; the ruleset version lives beside them.
    """

    @abstractmethod
    def read(self, key: str) -> dict[str, Any] | None:
        """Return the document or None. Raises CacheCorrupt if it exists but cannot be read."""
        ...

    @abstractmethod
    def write(self, key: str, document: dict[str, Any]) -> None:
        """Replace the document for key in a single step."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...

    @abstractmethod
    def read_version(self) -> int:
        """Current ruleset version; 1 when never written."""
        ...

    @abstractmethod
    def write_version(self, version: int) -> None:
        ...


class IHistoryStore(ABC):
    """Remote store of previously accepted consignments."""

    @abstractmethod
    def fetch_history(self, query: HistoryFilter | None = None) -> list[ConsignmentRecord]:
        ...

    @abstractmethod
    def append_records(self, records: Sequence[ConsignmentRecord]) -> AppendResult:
        ...
