"""Tests for the persistent state stores."""

from __future__ import annotations

import asyncio

import pytest

from docharvest.persistence import MemoryStateStore, SqlStateStore, get_async_url


class TestAsyncUrl:
    def test_sqlite(self) -> None:
        assert get_async_url("sqlite:///data/x.db") == "sqlite+aiosqlite:///data/x.db"

    def test_postgres(self) -> None:
        assert get_async_url("postgres://u@h/db") == "postgresql+asyncpg://u@h/db"
        assert get_async_url("postgresql://u@h/db") == "postgresql+asyncpg://u@h/db"

    def test_already_async(self) -> None:
        assert get_async_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


@pytest.mark.asyncio
class TestMemoryStateStore:
    async def test_values_are_copied(self) -> None:
        store = MemoryStateStore()
        value = {"items": [1, 2]}
        await store.set({"k": value})
        value["items"].append(3)

        fetched = await store.get(["k"])
        fetched["k"]["items"].append(4)

        assert (await store.get(["k"]))["k"] == {"items": [1, 2]}

    async def test_missing_keys_are_absent(self) -> None:
        store = MemoryStateStore({"a": 1})
        assert await store.get(["a", "b"]) == {"a": 1}

    async def test_remove(self) -> None:
        store = MemoryStateStore({"a": 1, "b": 2})
        await store.remove(["a", "zzz"])
        assert store.snapshot() == {"b": 2}


@pytest.mark.asyncio
class TestSqlStateStore:
    async def test_round_trip(self, tmp_path) -> None:
        store = SqlStateStore(f"sqlite:///{tmp_path}/state/state.db")
        try:
            await store.set(
                {
                    "batch_queue": [{"target": "a", "options": {"image_mode": "local"}}],
                    "is_paused": True,
                }
            )
            values = await store.get(["batch_queue", "is_paused", "missing"])
        finally:
            await store.close()

        assert values == {
            "batch_queue": [{"target": "a", "options": {"image_mode": "local"}}],
            "is_paused": True,
        }
        assert (tmp_path / "state" / "state.db").exists()

    async def test_overwrite_and_remove(self, tmp_path) -> None:
        store = SqlStateStore(f"sqlite:///{tmp_path}/state.db")
        try:
            await store.set({"a": 1, "b": "two"})
            await store.set({"a": {"nested": [1]}})
            await store.remove(["b", "never-written"])
            values = await store.get(["a", "b"])
        finally:
            await store.close()

        assert values == {"a": {"nested": [1]}}

    async def test_state_survives_reopen(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path}/state.db"
        first = SqlStateStore(url)
        await first.set({"processed_results": [{"target": "a", "status": "success"}]})
        await first.close()

        second = SqlStateStore(url)
        try:
            values = await second.get(["processed_results"])
        finally:
            await second.close()

        assert values["processed_results"][0]["status"] == "success"

    async def test_concurrent_writes_to_new_keys(self, tmp_path) -> None:
        store = SqlStateStore(f"sqlite:///{tmp_path}/state.db")
        try:
            await asyncio.gather(
                *(store.set({"batch_queue": [n], "is_processing": n % 2 == 0}) for n in range(3))
            )
            values = await store.get(["batch_queue", "is_processing"])
        finally:
            await store.close()

        assert values["batch_queue"] in ([0], [1], [2])
        assert values["is_processing"] == (values["batch_queue"][0] % 2 == 0)

    async def test_empty_calls_are_noops(self, tmp_path) -> None:
        store = SqlStateStore(f"sqlite:///{tmp_path}/state.db")
        try:
            assert await store.get([]) == {}
            await store.set({})
            await store.remove([])
        finally:
            await store.close()
