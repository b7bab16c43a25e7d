"""Durable FIFO of transfer intents, plus the local file cache."""

from __future__ import annotations

import base64
import logging
import secrets
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update

from cloudsync.database import storage_session
from cloudsync.exceptions import QueueFullError
from cloudsync.models.sync_queue import FileCacheEntry, SyncQueueItem
from cloudsync.providers.base import FileContent
from cloudsync.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class SyncAction(StrEnum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


class QueueStatus(StrEnum):
    PENDING = "pending"
    OFFLINE = "offline"
    ERROR = "error"


MAX_RETRIES_ERROR = "Max retries exceeded"


class SyncQueue:
    """Queue operations over ``sync_queue`` and ``file_cache``.

    Each mutation runs in its own transaction and is committed before the
    call returns, so a crash never loses an acknowledged enqueue.
    Database failures raise StorageUnavailable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_size: int = 100,
        max_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._max_size = max_size
        self.max_retries = max_retries

    async def enqueue(
        self,
        local_id: str,
        connection_id: str,
        action: str,
        path: str,
        *,
        online: bool = True,
    ) -> SyncQueueItem:
        """Persist a transfer intent.

        Identical intents are not collapsed. Raises QueueFullError when the
        queue already holds ``max_size`` items that are not in error, and
        ValueError for an unknown action.
        """
        sync_action = SyncAction(action)
        now = now_utc()
        created_ms = int(now.timestamp() * 1000)
        item = SyncQueueItem(
            id=f"{connection_id}_{local_id}_{created_ms}_{secrets.token_hex(3)}",
            local_id=local_id,
            connection_id=connection_id,
            action=sync_action.value,
            file_path=path,
            status=QueueStatus.PENDING if online else QueueStatus.OFFLINE,
            retry_count=0,
            created_at=format_datetime(now),
        )
        async with storage_session(self._session_factory) as session:
            active = await session.scalar(
                select(func.count())
                .select_from(SyncQueueItem)
                .where(SyncQueueItem.status != QueueStatus.ERROR)
            )
            if (active or 0) >= self._max_size:
                msg = f"Sync queue is full ({self._max_size} items)"
                raise QueueFullError(msg)
            session.add(item)
            await session.commit()
        logger.debug("Queued %s of %s as %s", sync_action, local_id, item.id)
        return item

    async def list_pending(self, connection_id: str | None = None) -> list[SyncQueueItem]:
        """Items ready to drain, in insertion order."""
        stmt = select(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.PENDING)
        if connection_id is not None:
            stmt = stmt.where(SyncQueueItem.connection_id == connection_id)
        async with storage_session(self._session_factory) as session:
            result = await session.execute(stmt.order_by(SyncQueueItem.seq))
            return list(result.scalars().all())

    async def list_all(self, connection_id: str | None = None) -> list[SyncQueueItem]:
        """Every queued item regardless of status, in insertion order."""
        stmt = select(SyncQueueItem)
        if connection_id is not None:
            stmt = stmt.where(SyncQueueItem.connection_id == connection_id)
        async with storage_session(self._session_factory) as session:
            result = await session.execute(stmt.order_by(SyncQueueItem.seq))
            return list(result.scalars().all())

    async def get(self, item_id: str) -> SyncQueueItem | None:
        async with storage_session(self._session_factory) as session:
            return await session.scalar(select(SyncQueueItem).where(SyncQueueItem.id == item_id))

    async def update(self, item: SyncQueueItem) -> SyncQueueItem:
        async with storage_session(self._session_factory) as session:
            merged = await session.merge(item)
            await session.commit()
            return merged

    async def remove(self, item_id: str) -> bool:
        async with storage_session(self._session_factory) as session:
            item = await session.scalar(select(SyncQueueItem).where(SyncQueueItem.id == item_id))
            if item is None:
                return False
            await session.delete(item)
            await session.commit()
            return True

    async def record_failure(
        self, item: SyncQueueItem, error: str, *, terminal: bool = False
    ) -> SyncQueueItem:
        """Count a failed attempt.

        The item turns terminal at the retry ceiling, or at once when
        ``terminal`` marks a failure that retrying cannot fix.
        """
        item.retry_count += 1
        item.last_attempt = format_datetime(now_utc())
        item.error = error
        if terminal or item.retry_count >= self.max_retries:
            item.status = QueueStatus.ERROR
        return await self.update(item)

    async def mark_exhausted(self, item: SyncQueueItem) -> SyncQueueItem:
        item.status = QueueStatus.ERROR
        item.error = MAX_RETRIES_ERROR
        return await self.update(item)

    async def reset(self, item_id: str) -> SyncQueueItem | None:
        """Manual retry: clear the failure history and make the item pending."""
        item = await self.get(item_id)
        if item is None:
            return None
        item.retry_count = 0
        item.status = QueueStatus.PENDING
        item.error = None
        return await self.update(item)

    async def mark_online(self) -> int:
        """Promote every offline item to pending. Returns the number promoted."""
        async with storage_session(self._session_factory) as session:
            result = await session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.status == QueueStatus.OFFLINE)
                .values(status=QueueStatus.PENDING)
            )
            await session.commit()
            return int(getattr(result, "rowcount", 0) or 0)

    async def counts(self) -> dict[str, int]:
        """Number of items per status."""
        counts = {status.value: 0 for status in QueueStatus}
        async with storage_session(self._session_factory) as session:
            result = await session.execute(
                select(SyncQueueItem.status, func.count()).group_by(SyncQueueItem.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def status_for(self, local_id: str) -> str | None:
        """Status of the most recent queued item for a record, if any."""
        stmt = (
            select(SyncQueueItem.status)
            .where(SyncQueueItem.local_id == local_id)
            .order_by(SyncQueueItem.seq.desc())
            .limit(1)
        )
        async with storage_session(self._session_factory) as session:
            return await session.scalar(stmt)

    # -- file cache ----------------------------------------------------------

    async def cache_content(
        self, local_id: str, content: FileContent, connection_id: str | None = None
    ) -> None:
        """Buffer local content for a pending upload."""
        if isinstance(content.data, bytes):
            text, encoding = base64.b64encode(content.data).decode(), "base64"
        else:
            text, encoding = content.data, content.encoding
        async with storage_session(self._session_factory) as session:
            await session.merge(
                FileCacheEntry(
                    local_id=local_id,
                    connection_id=connection_id,
                    content=text,
                    encoding=encoding,
                    mime_type=content.mime_type,
                    updated_at=format_datetime(now_utc()),
                )
            )
            await session.commit()

    async def store_cached(self, local_id: str, content: FileContent) -> None:
        """Replace cached content, keeping the entry's connection."""
        existing = await self._cache_entry(local_id)
        await self.cache_content(
            local_id, content, existing.connection_id if existing is not None else None
        )

    async def load_cached(self, local_id: str) -> FileContent | None:
        entry = await self._cache_entry(local_id)
        if entry is None:
            return None
        return FileContent(data=entry.content, encoding=entry.encoding, mime_type=entry.mime_type)

    async def evict_cached(self, local_id: str) -> None:
        async with storage_session(self._session_factory) as session:
            entry = await session.get(FileCacheEntry, local_id)
            if entry is not None:
                await session.delete(entry)
                await session.commit()

    async def _cache_entry(self, local_id: str) -> FileCacheEntry | None:
        async with storage_session(self._session_factory) as session:
            return await session.get(FileCacheEntry, local_id)
