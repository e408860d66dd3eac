"""
Result cache for consensus extraction.
Cache key: SHA-256 of the image bytes. Entries carry the ruleset version they were computed under;
bumping the version invalidates every entry logically, and stale entries are deleted when read.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

from core.exceptions import CacheCorrupt
from core.interfaces import ICacheStore
from core.models import CacheEntry, CacheStats, ExtractionResult

logger = logging.getLogger(__name__)

DEFAULT_EXPIRATION_HOURS = 720
VERSION_DOCUMENT = "ruleset_version"
# Keeps the version document out of the entry namespace.
META_DIR = "_meta"
INITIAL_RULESET_VERSION = 1


def _entry_to_dict(entry: CacheEntry) -> dict[str, Any]:
    """CacheEntry to JSON-serializable dict."""
    return {
        "image_hash": entry.image_hash,
        "result": asdict(entry.result),
        "provider_used": entry.provider_used,
        "ruleset_version": entry.ruleset_version,
        "created_at": entry.created_at,
    }


def _dict_to_result(d: dict[str, Any]) -> ExtractionResult:
    known = ExtractionResult.__dataclass_fields__
    values = {k: v for k, v in d.items() if k in known}
    values["ambiguous_fields"] = tuple(values.get("ambiguous_fields") or ())
    return ExtractionResult(**values)


def _dict_to_entry(d: dict[str, Any]) -> CacheEntry:
    """Dict to CacheEntry. Raises CacheCorrupt on a malformed document."""
    try:
        return CacheEntry(
            image_hash=str(d["image_hash"]),
            result=_dict_to_result(d["result"]),
            provider_used=str(d.get("provider_used", "")),
            ruleset_version=int(d["ruleset_version"]),
            created_at=float(d["created_at"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorrupt(f"Malformed cache document: {e}") from e


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class InMemoryCacheStore(ICacheStore):
    """Dict-backed store for tests and single-process runs."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._version = INITIAL_RULESET_VERSION
        self._lock = threading.Lock()

    def read(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._docs.get(key)
            return dict(doc) if doc is not None else None

    def write(self, key: str, document: dict[str, Any]) -> None:
        with self._lock:
            self._docs[key] = dict(document)

    def delete(self, key: str) -> None:
        with self._lock:
            self._docs.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._docs)

    def read_version(self) -> int:
        return self._version

    def write_version(self, version: int) -> None:
        self._version = int(version)


class JsonFileCacheStore(ICacheStore):
    """One JSON file per key under cache_dir, plus _meta/ruleset_version.json. Writes go through os.replace."""

    def __init__(self, cache_dir: str | Path) -> None:
        self._dir = Path(cache_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._version_path = self._dir / META_DIR / f"{VERSION_DOCUMENT}.json"

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def _atomic_write(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def read(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            raise CacheCorrupt(f"Cache read failed for {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise CacheCorrupt(f"Cache document {path.name} is not an object")
        return data

    def write(self, key: str, document: dict[str, Any]) -> None:
        self._atomic_write(self._path(key), document)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return sorted(p.stem for p in self._dir.glob("*.json") if not p.name.startswith("."))

    def read_version(self) -> int:
        path = self._version_path
        if not path.exists():
            return INITIAL_RULESET_VERSION
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return int(data["version"])
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            logger.warning("Unreadable ruleset version document, using %s: %s", INITIAL_RULESET_VERSION, e)
            return INITIAL_RULESET_VERSION

    def write_version(self, version: int) -> None:
        self._atomic_write(self._version_path, {"version": int(version)})


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ResultCache:
    """
    Versioned, TTL-bounded cache of consensus results keyed by image hash.
    The store is injected; the clock is injectable for tests.
    """

    def __init__(
        self,
        store: ICacheStore,
        expiration_hours: float = DEFAULT_EXPIRATION_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._expiration_sec = float(expiration_hours) * 3600.0
        self._clock = clock
        # guards version bumps, entry writes and stale-entry deletion
        self._lock = threading.Lock()

    @property
    def ruleset_version(self) -> int:
        return self._store.read_version()

    def get(self, image_hash: str) -> CacheEntry | None:
        try:
            doc = self._store.read(image_hash)
            if doc is None:
                return None
            entry = _dict_to_entry(doc)
        except CacheCorrupt as e:
            logger.warning("Cache miss on corrupt entry %s: %s", image_hash[:12], e)
            return None
        current = self._store.read_version()
        if entry.ruleset_version != current:
            logger.info(
                "Cache entry %s built under ruleset v%s (current v%s); deleting",
                image_hash[:12],
                entry.ruleset_version,
                current,
            )
            self._delete_if_stale(image_hash, entry.ruleset_version)
            return None
        if self._clock() - entry.created_at > self._expiration_sec:
            logger.debug("Cache entry %s expired", image_hash[:12])
            return None
        return entry

    def put(self, image_hash: str, result: ExtractionResult, provider_used: str) -> CacheEntry:
        entry = CacheEntry(
            image_hash=image_hash,
            result=result,
            provider_used=provider_used,
            ruleset_version=self._store.read_version(),
            created_at=self._clock(),
        )
        with self._lock:
            self._store.write(image_hash, _entry_to_dict(entry))
        return entry

    def _delete_if_stale(self, image_hash: str, stale_version: int) -> None:
        """Delete only if the stored document still carries stale_version (a fresh put may have replaced it)."""
        with self._lock:
            try:
                doc = self._store.read(image_hash)
            except CacheCorrupt:
                doc = None
            if doc is not None and doc.get("ruleset_version") == stale_version:
                self._store.delete(image_hash)

    def bump_ruleset_version(self) -> int:
        """Invalidate every entry by advancing the version; returns the new version."""
        with self._lock:
            new_version = self._store.read_version() + 1
            self._store.write_version(new_version)
        logger.info("Ruleset version bumped to v%s", new_version)
        return new_version

    def sweep_expired(self, window_hours: float | None = None) -> int:
        """Physically delete entries older than the window, regardless of version. Returns count removed."""
        window_sec = self._expiration_sec if window_hours is None else float(window_hours) * 3600.0
        now = self._clock()
        removed = 0
        for key in self._store.keys():
            try:
                doc = self._store.read(key)
                if doc is None:
                    continue
                created_at = float(doc.get("created_at", 0.0))
            except (CacheCorrupt, TypeError, ValueError) as e:
                logger.warning("Removing unreadable cache entry %s: %s", key[:12], e)
                self._store.delete(key)
                removed += 1
                continue
            if now - created_at > window_sec:
                self._store.delete(key)
                removed += 1
        if removed:
            logger.info("Swept %s expired cache entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    def stats(self) -> CacheStats:
        oldest: float | None = None
        size = 0
        for key in self._store.keys():
            try:
                doc = self._store.read(key)
            except CacheCorrupt:
                continue
            if doc is None:
                continue
            size += 1
            created_at = doc.get("created_at")
            if isinstance(created_at, (int, float)) and (oldest is None or created_at < oldest):
                oldest = float(created_at)
        return CacheStats(size=size, oldest_created_at=oldest)

    def clear(self) -> int:
        keys = self._store.keys()
        for key in keys:
            self._store.delete(key)
        logger.info("Cleared %s cache entries", len(keys))
        return len(keys)
