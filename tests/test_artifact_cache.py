"""Tests for the TTL artifact cache."""

import asyncio
import os
from unittest.mock import patch

import pytest

from app.gateway.artifact_cache import ArtifactCache


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    return ArtifactCache(cache_dir=tmp_path / "cache", ttl_seconds=60, enabled=True, clock=clock)


URL = "https://cdn.example.com/videos/abc.mp4"


class TestGetSet:
    @pytest.mark.asyncio
    async def test_set_then_get_returns_same_path(self, cache):
        path = await cache.set(URL, URL, b"video")
        assert await cache.get(URL) == path
        with open(path, "rb") as f:
            assert f.read() == b"video"

    @pytest.mark.asyncio
    async def test_filename_keeps_extension(self, cache):
        path = await cache.set(URL, URL, b"video")
        assert path.endswith(".mp4")

    @pytest.mark.asyncio
    async def test_miss_for_unknown_key(self, cache):
        assert await cache.get("nope") is None

    @pytest.mark.asyncio
    async def test_get_counts_access(self, cache):
        await cache.set(URL, URL, b"video")
        await cache.get(URL)
        await cache.get(URL)
        assert cache._entries[URL].access_count == 3

    @pytest.mark.asyncio
    async def test_expired_entry_is_evicted_on_get(self, cache, clock):
        path = await cache.set(URL, URL, b"video")
        clock.advance(61)
        assert await cache.get(URL) is None
        assert cache.stats()["entry_count"] == 0
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_entry_at_exact_ttl_is_still_valid(self, cache, clock):
        await cache.set(URL, URL, b"video")
        clock.advance(60)
        assert await cache.get(URL) is not None

    @pytest.mark.asyncio
    async def test_missing_file_is_a_miss(self, cache):
        path = await cache.set(URL, URL, b"video")
        os.remove(path)
        assert await cache.get(URL) is None
        assert cache.stats()["entry_count"] == 0

    @pytest.mark.asyncio
    async def test_set_replaces_previous_file(self, cache):
        first = await cache.set(URL, URL, b"one")
        second = await cache.set(URL, URL, b"two")
        assert first != second
        assert not os.path.exists(first)
        assert await cache.get(URL) == second


class TestDisabled:
    @pytest.mark.asyncio
    async def test_disabled_cache_is_a_no_op(self, tmp_path):
        cache = ArtifactCache(cache_dir=tmp_path / "cache")
        assert cache.enabled is False
        assert await cache.set(URL, URL, b"video") == ""
        assert await cache.get(URL) is None
        assert not (tmp_path / "cache").exists()

    @pytest.mark.asyncio
    async def test_set_enabled_toggle(self, cache):
        cache.set_enabled(False)
        assert await cache.get(URL) is None
        cache.set_enabled(True)
        await cache.set(URL, URL, b"video")
        assert await cache.get(URL) is not None


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, cache, clock):
        await cache.set("old", "https://x/old.png", b"1")
        clock.advance(50)
        fresh = await cache.set("fresh", "https://x/fresh.png", b"2")
        clock.advance(20)

        removed = await cache.sweep()

        assert removed == 1
        assert cache.stats()["entry_count"] == 1
        assert await cache.get("fresh") == fresh

    @pytest.mark.asyncio
    async def test_sweep_continues_past_undeletable_file(self, cache, clock):
        locked = await cache.set("locked", "https://x/locked.png", b"1")
        other = await cache.set("other", "https://x/other.png", b"2")
        clock.advance(120)

        async def remove(path):
            if path == locked:
                raise PermissionError(13, "Permission denied", path)
            os.remove(path)

        with patch("app.gateway.artifact_cache.aiofiles.os.remove", side_effect=remove):
            removed = await cache.sweep()

        assert removed == 2
        assert cache.stats()["entry_count"] == 0
        assert not os.path.exists(other)
        assert os.path.exists(locked)

    @pytest.mark.asyncio
    async def test_get_and_sweep_evict_once(self, cache, clock):
        await cache.set(URL, URL, b"video")
        clock.advance(120)

        results = await asyncio.gather(cache.get(URL), cache.sweep())

        assert results[0] is None
        assert cache.evictions == 1

    @pytest.mark.asyncio
    async def test_set_ttl(self, cache, clock):
        await cache.set(URL, URL, b"video")
        cache.set_ttl(10)
        clock.advance(11)
        assert await cache.sweep() == 1

    def test_set_ttl_rejects_non_positive(self, cache):
        with pytest.raises(ValueError):
            cache.set_ttl(0)

    @pytest.mark.asyncio
    async def test_background_sweeper(self, cache, clock):
        await cache.set(URL, URL, b"video")
        clock.advance(120)

        cache.start_sweeper(interval_seconds=0.01)
        for _ in range(100):
            if cache.stats()["entry_count"] == 0:
                break
            await asyncio.sleep(0.01)
        await cache.stop_sweeper()

        assert cache.stats()["entry_count"] == 0
        assert cache._sweeper is None


class TestPublicUrl:
    def test_public_url_requires_base_url(self, cache):
        assert cache.public_url("/tmp/cache/a.png") is None

    def test_public_url(self, tmp_path):
        cache = ArtifactCache(cache_dir=tmp_path, enabled=True, base_url="https://gw.example.com/")
        assert cache.public_url(str(tmp_path / "a_1.png")) == "https://gw.example.com/cache/a_1.png"

    def test_stats(self, cache):
        assert cache.stats() == {"enabled": True, "entry_count": 0, "ttl": 60}
