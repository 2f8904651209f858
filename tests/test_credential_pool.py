"""Tests for credential rotation."""

import pytest

from app.gateway.credential_pool import CredentialPool
from tests.conftest import MemoryPersistence, make_credentials


@pytest.fixture
async def pool():
    p = CredentialPool(MemoryPersistence(credentials=make_credentials(3)))
    await p.load_all()
    return p


class TestRoundRobin:
    @pytest.mark.asyncio
    async def test_cycles_through_each_enabled_credential_once(self, pool):
        picked = [pool.next_enabled().id for _ in range(3)]
        assert picked == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_wraps_around(self, pool):
        for _ in range(3):
            pool.next_enabled()
        assert pool.next_enabled().id == 1

    @pytest.mark.asyncio
    async def test_skips_disabled(self, pool):
        await pool.update(2, {"enabled": False})
        picked = [pool.next_enabled().id for _ in range(4)]
        assert 2 not in picked
        assert sorted(picked[:2]) == [1, 3]

    @pytest.mark.asyncio
    async def test_none_when_nothing_enabled(self):
        p = CredentialPool(MemoryPersistence())
        await p.load_all()
        assert p.next_enabled() is None
        assert p.enabled_count() == 0


class TestPoolManagement:
    @pytest.mark.asyncio
    async def test_load_all_counts(self, pool):
        assert len(pool.all()) == 3
        assert pool.enabled_count() == 3

    @pytest.mark.asyncio
    async def test_add_makes_credential_selectable(self, pool):
        added = await pool.add("extra", "secret-extra")
        assert added.id == 4
        picked = {pool.next_enabled().id for _ in range(4)}
        assert picked == {1, 2, 3, 4}

    @pytest.mark.asyncio
    async def test_update_unknown_returns_none(self, pool):
        assert await pool.update(99, {"enabled": False}) is None

    @pytest.mark.asyncio
    async def test_remove(self, pool):
        assert await pool.remove(1) is True
        assert await pool.remove(1) is False
        assert [c.id for c in pool.all()] == [2, 3]

    def test_masked_secret(self):
        credential = make_credentials(1)[0]
        assert credential.masked() == "****cdef"
        assert credential.secret not in credential.masked()
