"""Prompt templates shipped with the package."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path


def get_prompts_dir() -> Path:
    """Return the prompts directory (same as this package)."""
    return Path(__file__).resolve().parent


@lru_cache(maxsize=8)
def load_prompt(filename: str) -> str:
    """Load prompt text from prompts/<filename>. Raises FileNotFoundError if missing."""
    path = get_prompts_dir() / filename
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    return path.read_text(encoding="utf-8").strip()
