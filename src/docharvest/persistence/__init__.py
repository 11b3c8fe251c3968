"""Persistent state storage."""

from .db import create_engine_for, get_async_url, init_db
from .models import Base, StateEntry
from .store import MemoryStateStore, SqlStateStore, StateStore, StoreError

__all__ = [
    "create_engine_for",
    "get_async_url",
    "init_db",
    "Base",
    "StateEntry",
    "StateStore",
    "MemoryStateStore",
    "SqlStateStore",
    "StoreError",
]
