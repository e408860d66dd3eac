"""Factory for creating model providers from config. No hardcoded model names in services."""

from __future__ import annotations

from core.exceptions import ConfigError
from core.interfaces import ILLMProvider
from providers.gemini_provider import GeminiProvider
from providers.ollama_provider import OllamaProvider
from providers.openai_provider import OpenAIProvider


def create_provider(
    provider: str,
    *,
    base_url: str | None = None,
    api_key: str = "",
    model: str = "",
    timeout_sec: int = 120,
) -> ILLMProvider:
    """
    Create a provider by name. All settings from config; easy to add new providers.
    """
    name = (provider or "openai").strip().lower()
    if name == "openai":
        return OpenAIProvider(
            base_url=base_url or None,
            api_key=api_key,
            model=model or "gpt-4o-mini",
            timeout_sec=timeout_sec,
        )
    if name == "gemini":
        return GeminiProvider(
            base_url=base_url or None,
            api_key=api_key,
            model=model or "gemini-2.5-flash",
            timeout_sec=timeout_sec,
        )
    if name == "ollama":
        return OllamaProvider(
            base_url=base_url or None,
            api_key=api_key,
            model=model or "llava",
            timeout_sec=timeout_sec,
        )
    raise ConfigError(f"Unknown provider: {provider}. Use openai, gemini, or ollama.")
