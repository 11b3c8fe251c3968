"""
Persistent key/value stores for orchestrator state.

``get``/``set``/``remove`` mirror a browser-extension style storage area:
values are JSON-compatible blobs, missing keys are simply absent from the
result, and writes are last-writer-wins.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .db import DEFAULT_DATABASE_URL, create_engine_for, create_session_factory, init_db
from .models import StateEntry

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Persistent store read or write failed."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class StateStore(ABC):
    """Crash-surviving key/value store."""

    @abstractmethod
    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values for ``keys`` that exist."""

    @abstractmethod
    async def set(self, items: Mapping[str, Any]) -> None:
        """Write every key in ``items``, replacing existing values."""

    @abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        """Delete ``keys``; unknown keys are ignored."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemoryStateStore(StateStore):
    """In-process store; survives nothing but is handy for tests and dry runs."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self.writes = 0

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {key: copy.deepcopy(self._data[key]) for key in keys if key in self._data}

    async def set(self, items: Mapping[str, Any]) -> None:
        self.writes += 1
        for key, value in items.items():
            self._data[key] = copy.deepcopy(value)

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class SqlStateStore(StateStore):
    """SQLAlchemy-backed store (SQLite by default)."""

    def __init__(
        self,
        url: str = DEFAULT_DATABASE_URL,
        echo: bool = False,
        engine: AsyncEngine | None = None,
    ):
        self.url = url
        self._engine = engine or create_engine_for(url, echo=echo)
        self._session_factory = create_session_factory(self._engine)
        self._initialized = False
        self._schema_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._initialized:
            return
        async with self._schema_lock:
            if not self._initialized:
                await init_db(self._engine)
                self._initialized = True

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                stmt = select(StateEntry).where(StateEntry.key.in_(keys))
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read state keys {keys}", cause=e) from e
        return {row.key: row.value for row in rows}

    async def set(self, items: Mapping[str, Any]) -> None:
        if not items:
            return
        now = datetime.utcnow()
        rows = [{"key": key, "value": value, "updated_at": now} for key, value in items.items()]
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(self._upsert(rows))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write state keys {list(items)}", cause=e) from e

    def _upsert(self, rows: list[dict[str, Any]]):
        """Single-statement INSERT ... ON CONFLICT DO UPDATE for the engine's dialect."""
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(StateEntry).values(rows)
        elif dialect == "sqlite":
            stmt = sqlite_insert(StateEntry).values(rows)
        else:
            raise StoreError(f"Unsupported state store dialect: {dialect}")
        return stmt.on_conflict_do_update(
            index_elements=[StateEntry.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )

    async def remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(StateEntry).where(StateEntry.key.in_(keys)))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to remove state keys {keys}", cause=e) from e

    async def close(self) -> None:
        await self._engine.dispose()
        logger.debug(f"Disposed state store engine for {self.url}")
