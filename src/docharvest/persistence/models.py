"""
SQLAlchemy ORM models for DocHarvest.

The orchestrator persists its state as opaque key/value blobs, so the
schema is a single table of JSON values keyed by name.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
    }


class StateEntry(Base):
    """One persisted state blob (queue, results, flags, archive payloads)."""

    __tablename__ = "state_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StateEntry(key='{self.key}')>"
