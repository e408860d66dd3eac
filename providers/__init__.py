"""Model providers: abstract base and concrete implementations."""

from providers.base import BaseLLMProvider
from providers.openai_provider import OpenAIProvider
from providers.ollama_provider import OllamaProvider
from providers.gemini_provider import GeminiProvider
from providers.factory import create_provider

__all__ = [
    "BaseLLMProvider",
    "OpenAIProvider",
    "OllamaProvider",
    "GeminiProvider",
    "create_provider",
]
