"""Sync queue and file cache models."""

from __future__ import annotations

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cloudsync.models.base import Base


class SyncQueueItem(Base):
    """Durable record of one pending transfer intent.

    ``seq`` is the insertion order used for FIFO draining; ``id`` is the
    composite identifier exposed to callers.
    """

    __tablename__ = "sync_queue"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    local_id: Mapped[str] = mapped_column(String, nullable=False)
    connection_id: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ix_sync_queue_status", "status"),
        Index("ix_sync_queue_connection_id", "connection_id"),
    )


class FileCacheEntry(Base):
    """Local content buffered for upload when an adapter cannot supply it."""

    __tablename__ = "file_cache"

    local_id: Mapped[str] = mapped_column(String, primary_key=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    encoding: Mapped[str] = mapped_column(String, nullable=False, default="utf-8")
    mime_type: Mapped[str] = mapped_column(String, nullable=False, default="application/json")
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
