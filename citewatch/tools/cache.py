from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from citewatch.config import settings
from citewatch.models.records import CacheEntry
from citewatch.tools.web_utils import url_key

CACHE_VERSION = 1

FetchFn = Callable[[], Awaitable[dict[str, Any]]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PageCache:
    """JSON-file cache of crawled pages keyed by the hash of the normalized URL.

    Entries past their ttl are never served as fresh, but are kept on disk so a
    failing fetch can fall back to them.
    """

    def __init__(
        self,
        *,
        cache_dir: str | None = None,
        ttl: timedelta | None = None,
        enabled: bool | None = None,
    ):
        self.cache_dir = Path(cache_dir or settings.cache_dir)
        self.ttl = ttl if ttl is not None else timedelta(hours=max(settings.cache_ttl_hours, 0))
        self.enabled = settings.cache_enabled if enabled is None else enabled

    @staticmethod
    def key_for(url: str) -> str:
        return url_key(url)

    def path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def read(self, key: str) -> CacheEntry | None:
        """Return the stored entry regardless of age."""
        path = self.path_for(key)
        if not path.exists():
            return None

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

        stored_at_raw = payload.get("stored_at")
        value = payload.get("value")
        if not isinstance(stored_at_raw, str) or not isinstance(value, dict):
            return None

        try:
            stored_at = datetime.fromisoformat(stored_at_raw)
        except ValueError:
            return None
        if stored_at.tzinfo is None:
            stored_at = stored_at.replace(tzinfo=timezone.utc)

        return CacheEntry(key=key, value=value, stored_at=stored_at, from_cache=True)

    def is_fresh(self, entry: CacheEntry, ttl: timedelta | None = None) -> bool:
        effective = self.ttl if ttl is None else ttl
        if effective <= timedelta(0):
            return False
        return _utc_now() < entry.stored_at + effective

    def write(self, key: str, value: dict[str, Any]) -> CacheEntry:
        stored_at = _utc_now()
        entry = CacheEntry(key=key, value=value, stored_at=stored_at)
        if not self.enabled:
            return entry

        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": CACHE_VERSION,
            "key": key,
            "stored_at": stored_at.isoformat(),
            "value": value,
        }
        try:
            path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Failed to write cache entry {key}: {exc}")
        return entry

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        *,
        ttl: timedelta | None = None,
        bypass: bool = False,
    ) -> CacheEntry:
        """Serve a fresh entry, otherwise fetch and store.

        If the fetch raises and an expired entry exists, the expired entry is
        returned with `stale=True` instead of the error.
        """
        if not self.enabled:
            return CacheEntry(key=key, value=await fetch_fn(), stored_at=_utc_now())

        existing = self.read(key)
        if not bypass and existing is not None and self.is_fresh(existing, ttl):
            logger.debug(f"Cache hit for {key}")
            return existing

        try:
            value = await fetch_fn()
        except Exception as exc:
            if existing is not None:
                logger.warning(f"Fetch failed for {key}, serving stale cache entry: {exc}")
                existing.stale = True
                return existing
            raise

        return self.write(key, value)

    def clear(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return True
        try:
            path.unlink()
            return True
        except OSError as exc:
            logger.warning(f"Failed to clear cache entry {key}: {exc}")
            return False

    def clear_all(self, max_age: timedelta | None = None) -> int:
        """Delete entries, or only those older than `max_age`. Returns count removed."""
        if not self.cache_dir.exists():
            return 0
        cleared = 0
        for path in self.cache_dir.glob("*.json"):
            if max_age is not None:
                entry = self.read(path.stem)
                if entry is not None and _utc_now() - entry.stored_at < max_age:
                    continue
            try:
                path.unlink()
                cleared += 1
            except OSError:
                continue
        return cleared

    def stats(self) -> dict[str, Any]:
        files = list(self.cache_dir.glob("*.json")) if self.cache_dir.exists() else []
        total_size = sum(p.stat().st_size for p in files)
        return {
            "total_files": len(files),
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
        }
