"""Tests for the entity store adapters.

Created: 2026-10-19
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chainpulse.config import Settings
from chainpulse.errors import ConcurrencyConflict, InvalidPayload
from chainpulse.store import EntityStore, InMemoryStore, JsonFileStore, create_store


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path: Path) -> EntityStore:
    if request.param == "memory":
        return InMemoryStore()
    return JsonFileStore(tmp_path / "store")


class TestStoreContract:
    """Behaviour shared by every adapter."""

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self, store: EntityStore):
        assert await store.read("user", "0xabc") is None

    @pytest.mark.asyncio
    async def test_write_then_read(self, store: EntityStore):
        version = await store.write("user", "0xabc", {"n": 1})
        record = await store.read("user", "0xabc")
        assert version == 1
        assert record is not None
        assert record.version == 1
        assert record.value == {"n": 1}

    @pytest.mark.asyncio
    async def test_write_bumps_version(self, store: EntityStore):
        await store.write("snapshot", "2026-10-19", {"n": 1})
        version = await store.write("snapshot", "2026-10-19", {"n": 2})
        record = await store.read("snapshot", "2026-10-19")
        assert version == 2
        assert record.value == {"n": 2}

    @pytest.mark.asyncio
    async def test_compare_and_write_create_only_once(self, store: EntityStore):
        assert await store.compare_and_write("contract", "0xc", None, {"n": 1}) == 1
        with pytest.raises(ConcurrencyConflict) as info:
            await store.compare_and_write("contract", "0xc", None, {"n": 2})
        assert info.value.actual == 1
        assert (await store.read("contract", "0xc")).value == {"n": 1}

    @pytest.mark.asyncio
    async def test_compare_and_write_stale_version(self, store: EntityStore):
        await store.compare_and_write("user", "k", None, {"n": 1})
        assert await store.compare_and_write("user", "k", 1, {"n": 2}) == 2
        with pytest.raises(ConcurrencyConflict):
            await store.compare_and_write("user", "k", 1, {"n": 3})
        assert (await store.read("user", "k")).value == {"n": 2}

    @pytest.mark.asyncio
    async def test_list_is_per_kind(self, store: EntityStore):
        await store.write("user", "a", {"n": 1})
        await store.write("user", "b", {"n": 2})
        await store.write("session", "a", {"n": 3})
        users = await store.list("user")
        assert sorted(r.key for r in users) == ["a", "b"]
        assert await store.list("contract") == []

    @pytest.mark.asyncio
    async def test_keys_with_unsafe_characters(self, store: EntityStore):
        key = "session/../../etc:1"
        await store.write("session", key, {"ok": True})
        record = await store.read("session", key)
        assert record.key == key
        assert [r.key for r in await store.list("session")] == [key]


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_record_is_valid_json(self, tmp_path: Path):
        store = JsonFileStore(tmp_path)
        await store.write("user", "0xabc", {"total_gas_spent": "3500000000000000000"})
        files = list((tmp_path / "user").glob("*.json"))
        assert len(files) == 1
        data = json.loads(files[0].read_text())
        assert data["version"] == 1
        assert data["value"]["total_gas_spent"] == "3500000000000000000"

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, tmp_path: Path):
        store = JsonFileStore(tmp_path)
        for i in range(3):
            await store.write("user", "0xabc", {"n": i})
        assert list((tmp_path / "user").glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_corrupted_record_raises(self, tmp_path: Path):
        store = JsonFileStore(tmp_path)
        await store.write("user", "0xabc", {"n": 1})
        path = next((tmp_path / "user").glob("*.json"))
        path.write_text("{{INVALID JSON{{")
        with pytest.raises(InvalidPayload):
            await store.read("user", "0xabc")

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path: Path):
        await JsonFileStore(tmp_path).write("contract", "0xc", {"n": 7})
        record = await JsonFileStore(tmp_path).read("contract", "0xc")
        assert record.value == {"n": 7}


class TestCreateStore:
    def test_memory_backend(self):
        assert isinstance(create_store(Settings(store_backend="memory")), InMemoryStore)

    def test_file_backend(self, tmp_path: Path):
        store = create_store(Settings(store_backend="file", store_path=tmp_path))
        assert isinstance(store, JsonFileStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(Settings(store_backend="postgres"))
