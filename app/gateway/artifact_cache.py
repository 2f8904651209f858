"""Artifact Cache: generated files on local disk with TTL expiry.

Entries live in an in-memory index keyed by a logical cache key (normally the
upstream artifact URL). An entry is valid while ``now - created_at <= ttl``
and its file still exists.

Eviction happens in two places, the read path (``get``) and the periodic
``sweep``. Both go through ``_evict`` under the same lock and only remove the
exact entry object they inspected, so a racing get/sweep pair removes and
counts an entry once, and an entry replaced by ``set`` in the meantime is
left alone.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import os
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlparse

import aiofiles
import aiofiles.os

from app.core.metrics import CACHE_EVENTS
from app.gateway.types import CacheEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600


class ArtifactCache:
    """TTL cache of downloaded artifacts.

    Usage:
        cache = ArtifactCache(cache_dir="./cache", ttl_seconds=3600, enabled=True)
        cache.start_sweeper()

        path = await cache.get(url)
        if path is None:
            path = await cache.set(url, url, data)

        await cache.stop_sweeper()
    """

    def __init__(
        self,
        cache_dir: str | os.PathLike,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        enabled: bool = False,
        base_url: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self.base_url = base_url.rstrip("/")
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None
        self.evictions = 0

    # -- runtime settings ----------------------------------------------------

    def set_ttl(self, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("Cache TTL must be positive")
        self.ttl_seconds = ttl_seconds
        logger.info("Artifact cache TTL set to %ss", ttl_seconds)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info("Artifact cache %s", "enabled" if enabled else "disabled")

    # -- read / write --------------------------------------------------------

    async def get(self, key: str) -> str | None:
        """Return the cached file path for ``key``, or None on a miss."""
        if not self.enabled:
            return None

        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                CACHE_EVENTS.labels(event="miss").inc()
                return None

            now = self._clock()
            if entry.is_expired(now, self.ttl_seconds) or not await aiofiles.os.path.exists(entry.path):
                stale = self._evict(entry)
            else:
                entry.access_count += 1
                entry.last_accessed_at = now
                CACHE_EVENTS.labels(event="hit").inc()
                return entry.path

        if stale is not None:
            await self._delete_file(stale.path)
        CACHE_EVENTS.labels(event="miss").inc()
        return None

    async def set(self, key: str, source_url: str, data: bytes) -> str:
        """Store ``data`` for ``key`` and return its path ('' when disabled)."""
        if not self.enabled:
            return ""

        await aiofiles.os.makedirs(self.cache_dir, exist_ok=True)
        path = self.cache_dir / self._filename(key, source_url)

        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError:
            logger.exception("Failed to write cache file %s", path)
            CACHE_EVENTS.labels(event="error").inc()
            await self._delete_file(str(path))
            raise

        now = self._clock()
        entry = CacheEntry(key=key, path=str(path), source_url=source_url, created_at=now, last_accessed_at=now)

        async with self._lock:
            previous = self._entries.get(key)
            replaced = self._evict(previous) if previous is not None else None
            self._entries[key] = entry

        if replaced is not None:
            await self._delete_file(replaced.path)

        CACHE_EVENTS.labels(event="store").inc()
        logger.debug("Cached %s -> %s (%d bytes)", source_url, path, len(data))
        return str(path)

    # -- expiry --------------------------------------------------------------

    async def sweep(self) -> int:
        """Remove every entry older than the TTL. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [e for e in self._entries.values() if e.is_expired(now, self.ttl_seconds)]
            removed = [e for e in expired if self._evict(e) is not None]

        for entry in removed:
            await self._delete_file(entry.path)

        logger.info("Cache sweep completed. Removed %d expired entries.", len(removed))
        return len(removed)

    def _evict(self, entry: CacheEntry) -> CacheEntry | None:
        """Drop ``entry`` from the index. Caller must hold ``self._lock``.

        Returns the entry if this call removed it, None if it was already gone
        or has been replaced by a newer entry for the same key.
        """
        if self._entries.get(entry.key) is not entry:
            return None
        del self._entries[entry.key]
        self.evictions += 1
        CACHE_EVENTS.labels(event="evict").inc()
        return entry

    async def _delete_file(self, path: str) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete cached file %s: %s", path, e)

    # -- background sweeper --------------------------------------------------

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds))
        logger.info("Cache sweeper started (every %ss)", interval_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Cache sweeper stopped")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            if not self.enabled:
                continue
            try:
                await self.sweep()
            except Exception:
                logger.exception("Cache sweep failed")

    # -- helpers -------------------------------------------------------------

    def _filename(self, key: str, source_url: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        stamp = int(self._clock() * 1000)
        return f"{digest}_{stamp}_{uuid.uuid4().hex[:8]}{self._extension(source_url)}"

    @staticmethod
    def _extension(source_url: str) -> str:
        suffix = Path(urlparse(source_url).path).suffix.lower()
        if suffix and len(suffix) <= 6:
            return suffix
        guessed = mimetypes.guess_extension(mimetypes.guess_type(source_url)[0] or "")
        return guessed or ""

    def public_url(self, path: str) -> str | None:
        """URL under ``base_url`` at which a cached file is served, if configured."""
        if not self.base_url or not path:
            return None
        return f"{self.base_url}/cache/{Path(path).name}"

    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "entry_count": len(self._entries),
            "ttl": self.ttl_seconds,
        }
