"""Sync engine: drains the queue against live providers and reports status.

Drains are single-flight and skipped while offline. Items are processed in
insertion order; items of one connection run one at a time while distinct
connections drain concurrently. Provider failures become queue-item state;
only StorageUnavailable escapes ``drain()`` and ``enqueue()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

from cloudsync.exceptions import StorageUnavailable
from cloudsync.providers.base import ErrorCode, ProviderResult, compute_checksum, parent_and_name
from cloudsync.services.datetime_service import filename_timestamp, now_utc
from cloudsync.services.sync_queue import QueueStatus, SyncAction

if TYPE_CHECKING:
    from collections.abc import Awaitable
    from datetime import datetime

    from cloudsync.config import ConflictStrategy
    from cloudsync.models.sync_queue import SyncQueueItem
    from cloudsync.providers.base import CloudFile, CloudProvider, FileContent
    from cloudsync.services.connection_store import ConnectionStore
    from cloudsync.services.record_adapter import RecordAdapter
    from cloudsync.services.sync_queue import SyncQueue
    from cloudsync.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures with these codes will not succeed on retry.
TERMINAL_ERROR_CODES = {ErrorCode.CONFIGURATION, ErrorCode.NOT_SUPPORTED}


class SyncStatus(StrEnum):
    SYNCED = "synced"
    SYNCING = "syncing"
    PENDING = "pending"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass
class SyncResult:
    """Outcome of processing one queue item."""

    success: bool
    action: str  # uploaded | downloaded | deleted | conflict | skipped
    local_id: str
    cloud_file: CloudFile | None = None
    error: str | None = None
    error_code: str | None = None
    conflict_copy_path: str | None = None
    # When the uploaded content was read; later local edits still need a sync
    content_loaded_at: datetime | None = None


@dataclass
class StatusSnapshot:
    status: SyncStatus
    pending_count: int
    error_count: int


StatusListener = Callable[[StatusSnapshot], Any]


def conflict_copy_path(path: str, at: datetime) -> str:
    """Sibling path for a conflicting upload: ``<base>_conflict_<timestamp>.<ext>``."""
    parent, name = parent_and_name(path)
    base, dot, ext = name.rpartition(".")
    if not dot or not base:
        base, ext = name, ""
    copy_name = f"{base}_conflict_{filename_timestamp(at)}"
    if ext:
        copy_name = f"{copy_name}.{ext}"
    return f"{parent.rstrip('/')}/{copy_name}"


class SyncEngine:
    """Queue-draining coordinator for all connections."""

    def __init__(
        self,
        queue: SyncQueue,
        tokens: TokenLifecycleManager,
        store: ConnectionStore,
        *,
        adapter: RecordAdapter | None = None,
        conflict_strategy: ConflictStrategy = "create_copy",
        operation_timeout: float = 30.0,
        sync_interval: float = 30.0,
        max_file_size_bytes: int = 50 * 1024 * 1024,
        auto_sync: bool = True,
        sync_on_focus_lost: bool = True,
        sync_on_app_start: bool = True,
        online: bool = True,
    ) -> None:
        self._queue = queue
        self._tokens = tokens
        self._store = store
        self.adapter = adapter
        self.conflict_strategy = conflict_strategy
        self._timeout = operation_timeout
        self._interval = sync_interval
        self._max_file_size = max_file_size_bytes
        self._auto_sync = auto_sync
        self._sync_on_focus_lost = sync_on_focus_lost
        self._sync_on_app_start = sync_on_app_start
        self._online = online
        self._draining = False
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[StatusListener] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._periodic_task: asyncio.Task[None] | None = None
        self._stop_periodic = asyncio.Event()

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_draining(self) -> bool:
        return self._draining

    # -- enqueue -------------------------------------------------------------

    async def enqueue(
        self, local_id: str, connection_id: str, action: str, path: str
    ) -> SyncQueueItem:
        """Persist an intent and, when online with auto-sync, start a drain."""
        item = await self._queue.enqueue(
            local_id, connection_id, action, path, online=self._online
        )
        await self._notify()
        if self._online and self._auto_sync:
            self._spawn(self.drain())
        return item

    async def enqueue_upload(
        self, local_id: str, connection_id: str, path: str, content: FileContent
    ) -> SyncQueueItem:
        """Buffer content in the file cache and queue its upload."""
        await self._queue.cache_content(local_id, content, connection_id)
        return await self.enqueue(local_id, connection_id, SyncAction.UPLOAD, path)

    # -- draining ------------------------------------------------------------

    async def drain(self) -> list[SyncResult]:
        """Process every pending item once. No-op when offline or already draining."""
        if self._draining or not self._online:
            return []
        self._draining = True
        try:
            await self._notify()
            await self._queue.mark_online()
            items = await self._queue.list_pending()
            by_connection: dict[str, list[SyncQueueItem]] = {}
            for item in items:
                by_connection.setdefault(item.connection_id, []).append(item)
            # Every connection runs to completion before a failure is reported
            outcomes = await asyncio.gather(
                *(self._drain_connection(cid, batch) for cid, batch in by_connection.items()),
                return_exceptions=True,
            )
        finally:
            self._draining = False
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        await self._notify()
        results = [
            result
            for batch in outcomes
            if not isinstance(batch, BaseException)
            for result in batch
        ]
        if results:
            logger.info(
                "Drained %d items (%d failed)",
                len(results),
                sum(1 for r in results if not r.success),
            )
        return results

    async def _drain_connection(
        self, connection_id: str, items: list[SyncQueueItem]
    ) -> list[SyncResult]:
        results: list[SyncResult] = []
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        async with lock:
            for item in items:
                if item.retry_count >= self._queue.max_retries:
                    await self._queue.mark_exhausted(item)
                    continue
                result = await self._process(item)
                await self._settle(item, result)
                results.append(result)
        return results

    async def _settle(self, item: SyncQueueItem, result: SyncResult) -> None:
        if result.success:
            await self._queue.remove(item.id)
            now = now_utc()
            await self._store.touch_last_sync(item.connection_id, now)
            if item.action == SyncAction.UPLOAD:
                # Keep the buffer while another intent for the record is queued
                if await self._queue.status_for(item.local_id) is None:
                    await self._queue.evict_cached(item.local_id)
            if self.adapter is not None and result.action in ("uploaded", "downloaded", "deleted"):
                await self.adapter.mark_synced(item.local_id, result.content_loaded_at or now)
            return

        error = result.error or "Sync failed"
        logger.warning("Sync of %s failed: %s", item.id, error)
        if result.error_code == ErrorCode.AUTH:
            await self._tokens.mark_disconnected(item.connection_id, error)
        await self._queue.record_failure(
            item, error, terminal=result.error_code in TERMINAL_ERROR_CODES
        )

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _process(self, item: SyncQueueItem) -> SyncResult:
        try:
            provider = await self._bounded(self._tokens.get_live_provider(item.connection_id))
            if provider is None:
                return self._failed(item, "Provider not available")
            if item.action == SyncAction.UPLOAD:
                return await self._upload(provider, item)
            if item.action == SyncAction.DOWNLOAD:
                return await self._download(provider, item)
            if item.action == SyncAction.DELETE:
                return await self._delete(provider, item)
            return self._failed(item, f"Unknown action: {item.action}", ErrorCode.NOT_SUPPORTED)
        except StorageUnavailable:
            raise
        except TimeoutError:
            return self._failed(item, "Operation timed out", ErrorCode.NETWORK)
        except Exception as exc:
            logger.exception("Unexpected error processing %s", item.id)
            return self._failed(item, str(exc), ErrorCode.PROVIDER)

    @staticmethod
    def _failed(
        item: SyncQueueItem, error: str, error_code: str | None = ErrorCode.PROVIDER
    ) -> SyncResult:
        return SyncResult(
            success=False,
            action="skipped",
            local_id=item.local_id,
            error=error,
            error_code=error_code,
        )

    @classmethod
    def _from_provider(cls, item: SyncQueueItem, result: ProviderResult[Any]) -> SyncResult:
        return cls._failed(item, result.error or "Provider error", result.error_code)

    async def _load_content(self, local_id: str) -> FileContent | None:
        if self.adapter is not None:
            content = await self.adapter.load_local_content(local_id)
            if content is not None:
                return content
        return await self._queue.load_cached(local_id)

    async def _differs(
        self, provider: CloudProvider, remote: CloudFile, raw: bytes
    ) -> ProviderResult[bool]:
        """Compare local bytes with the remote object using the provider's checksum."""
        algorithm = provider.checksum_algorithm
        if algorithm is None:
            remote_content = await self._bounded(provider.read_file(remote.id))
            if not remote_content.success or remote_content.data is None:
                return ProviderResult.fail(
                    remote_content.error or "Cannot read remote copy", remote_content.error_code
                )
            return ProviderResult.ok(remote_content.data.to_bytes() != raw)
        if not remote.checksum:
            return ProviderResult.ok(False)
        return ProviderResult.ok(compute_checksum(raw, algorithm) != remote.checksum)

    async def _upload(self, provider: CloudProvider, item: SyncQueueItem) -> SyncResult:
        loaded_at = now_utc()
        content = await self._load_content(item.local_id)
        if content is None:
            return self._failed(item, "Local content not found", ErrorCode.NOT_FOUND)
        raw = content.to_bytes()
        if len(raw) > self._max_file_size:
            return self._failed(
                item,
                f"Content exceeds the {self._max_file_size} byte limit",
                ErrorCode.NOT_SUPPORTED,
            )

        existing = await self._bounded(provider.get_file_by_path(item.file_path))
        if existing.success and existing.data is not None and not existing.data.is_folder:
            differs = await self._differs(provider, existing.data, raw)
            if not differs.success:
                return self._from_provider(item, differs)
            if differs.data:
                resolved = await self._resolve_conflict(provider, item, content)
                if resolved is not None:
                    return resolved
        elif not existing.success and not existing.is_not_found:
            return self._from_provider(item, existing)

        written = await self._bounded(provider.write_file(item.file_path, content, True))
        if not written.success:
            return self._from_provider(item, written)
        return SyncResult(
            success=True,
            action="uploaded",
            local_id=item.local_id,
            cloud_file=written.data,
            content_loaded_at=loaded_at,
        )

    async def _resolve_conflict(
        self, provider: CloudProvider, item: SyncQueueItem, content: FileContent
    ) -> SyncResult | None:
        """Apply the conflict policy. None means go ahead and overwrite."""
        strategy = self.conflict_strategy
        logger.info("Conflict on %s, resolving with %s", item.file_path, strategy)
        if strategy == "prefer_cloud":
            return SyncResult(success=True, action="skipped", local_id=item.local_id)
        if strategy != "create_copy":
            # prefer_local; ask_user has no interactive path here and overwrites too
            return None
        copy_path = conflict_copy_path(item.file_path, now_utc())
        written = await self._bounded(provider.write_file(copy_path, content, True))
        if not written.success:
            return self._from_provider(item, written)
        return SyncResult(
            success=True,
            action="conflict",
            local_id=item.local_id,
            cloud_file=written.data,
            conflict_copy_path=copy_path,
        )

    async def _download(self, provider: CloudProvider, item: SyncQueueItem) -> SyncResult:
        remote = await self._bounded(provider.get_file_by_path(item.file_path))
        if not remote.success or remote.data is None:
            return self._from_provider(item, remote)
        content = await self._bounded(provider.read_file(remote.data.id))
        if not content.success or content.data is None:
            return self._from_provider(item, content)
        if self.adapter is None:
            await self._queue.store_cached(item.local_id, content.data)
        elif not await self.adapter.save_local_content(item.local_id, content.data):
            return self._failed(item, "Failed to save downloaded content locally")
        return SyncResult(
            success=True, action="downloaded", local_id=item.local_id, cloud_file=remote.data
        )

    async def _delete(self, provider: CloudProvider, item: SyncQueueItem) -> SyncResult:
        remote = await self._bounded(provider.get_file_by_path(item.file_path))
        if remote.is_not_found:
            return SyncResult(success=True, action="deleted", local_id=item.local_id)
        if not remote.success or remote.data is None:
            return self._from_provider(item, remote)
        deleted = await self._bounded(provider.delete_file(remote.data.id))
        if not deleted.success and not deleted.is_not_found:
            return self._from_provider(item, deleted)
        return SyncResult(success=True, action="deleted", local_id=item.local_id)

    # -- status --------------------------------------------------------------

    async def overall_status(self) -> StatusSnapshot:
        """Aggregate status: offline > syncing > error > pending > synced."""
        counts = await self._queue.counts()
        pending = counts.get(QueueStatus.PENDING, 0) + counts.get(QueueStatus.OFFLINE, 0)
        errors = counts.get(QueueStatus.ERROR, 0)
        if not self._online:
            status = SyncStatus.OFFLINE
        elif self._draining:
            status = SyncStatus.SYNCING
        elif errors:
            status = SyncStatus.ERROR
        elif pending:
            status = SyncStatus.PENDING
        else:
            status = SyncStatus.SYNCED
        return StatusSnapshot(status=status, pending_count=pending, error_count=errors)

    async def status_for(self, local_id: str) -> SyncStatus:
        """Sync status of one record."""
        queued = await self._queue.status_for(local_id)
        if queued is None:
            return SyncStatus.SYNCED
        if queued == QueueStatus.ERROR:
            return SyncStatus.ERROR
        if queued == QueueStatus.OFFLINE or not self._online:
            return SyncStatus.OFFLINE
        return SyncStatus.SYNCING if self._draining else SyncStatus.PENDING

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = await self.overall_status()
        for listener in list(self._listeners):
            try:
                outcome = listener(snapshot)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("Sync status listener failed")

    # -- triggers ------------------------------------------------------------

    async def set_online(self, online: bool) -> list[SyncResult]:
        """Record a connectivity change; coming back online drains the queue."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            promoted = await self._queue.mark_online()
            logger.info("Back online, %d queued items released", promoted)
            await self._notify()
            return await self.drain()
        if was_online != online:
            await self._notify()
        return []

    async def on_focus_lost(self) -> list[SyncResult]:
        if not self._sync_on_focus_lost:
            return []
        return await self.drain()

    async def sync_now(self) -> list[SyncResult]:
        return await self.drain()

    async def on_app_start(self) -> list[SyncResult]:
        """Startup hook: optional initial drain, then the periodic timer."""
        results = await self.drain() if self._sync_on_app_start else []
        if self._auto_sync:
            self.start_periodic_sync()
        return results

    def start_periodic_sync(self) -> None:
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._stop_periodic.clear()
        self._periodic_task = asyncio.create_task(self._periodic_loop())

    def stop_periodic_sync(self) -> None:
        """Prevent future ticks. A drain already running completes normally."""
        self._stop_periodic.set()

    async def _periodic_loop(self) -> None:
        while not self._stop_periodic.is_set():
            try:
                await asyncio.wait_for(self._stop_periodic.wait(), timeout=self._interval)
            except TimeoutError:
                pass
            if self._stop_periodic.is_set():
                break
            try:
                await self.drain()
            except StorageUnavailable:
                logger.error("Periodic sync skipped: local storage unavailable")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background sync failed: %s", task.exception())

    async def wait_idle(self) -> None:
        """Wait for drains started in the background to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        self.stop_periodic_sync()
        if self._periodic_task is not None:
            await self._periodic_task
            self._periodic_task = None
        await self.wait_idle()
