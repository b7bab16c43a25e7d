"""Sync status, queue and trigger endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from cloudsync.api.deps import (
    get_connection_store,
    get_settings,
    get_sync_engine,
    get_sync_queue,
    get_user_id,
)
from cloudsync.config import Settings
from cloudsync.providers.base import FileContent
from cloudsync.schemas.sync import (
    ConnectivityRequest,
    QueueItemResponse,
    QueueListResponse,
    RecordActionRequest,
    RecordStatusResponse,
    RecordUploadRequest,
    SyncResultResponse,
    SyncRunResponse,
    SyncStatusResponse,
)
from cloudsync.services.connection_store import ConnectionStore
from cloudsync.services.record_adapter import build_remote_path
from cloudsync.services.sync_engine import SyncEngine
from cloudsync.services.sync_queue import SyncQueue

if TYPE_CHECKING:
    from cloudsync.models.sync_queue import SyncQueueItem
    from cloudsync.services.sync_engine import SyncResult

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _item_response(item: SyncQueueItem) -> QueueItemResponse:
    return QueueItemResponse(
        id=item.id,
        local_id=item.local_id,
        connection_id=item.connection_id,
        action=item.action,
        file_path=item.file_path,
        status=item.status,
        retry_count=item.retry_count,
        last_attempt=item.last_attempt,
        error=item.error,
        created_at=item.created_at,
    )


def _run_response(results: list[SyncResult]) -> SyncRunResponse:
    return SyncRunResponse(
        results=[
            SyncResultResponse(
                success=r.success,
                action=r.action,
                local_id=r.local_id,
                error=r.error,
                conflict_copy_path=r.conflict_copy_path,
            )
            for r in results
        ]
    )


async def _target_connection(
    store: ConnectionStore, user_id: str, connection_id: str | None
) -> str:
    if connection_id is not None:
        connection = await store.get(connection_id)
        if connection is None or connection.user_id != user_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found"
            )
        return connection.id
    default = await store.get_default(user_id)
    if default is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="No cloud connection configured"
        )
    return default.id


@router.get("/status", response_model=SyncStatusResponse)
async def status_endpoint(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncStatusResponse:
    """Aggregate sync status with pending and error counts."""
    snapshot = await engine.overall_status()
    return SyncStatusResponse(
        status=snapshot.status,
        pending_count=snapshot.pending_count,
        error_count=snapshot.error_count,
        online=engine.online,
    )


@router.get("/records/{local_id}/status", response_model=RecordStatusResponse)
async def record_status_endpoint(
    local_id: str,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> RecordStatusResponse:
    return RecordStatusResponse(local_id=local_id, status=await engine.status_for(local_id))


@router.get("/queue", response_model=QueueListResponse)
async def queue_endpoint(
    queue: Annotated[SyncQueue, Depends(get_sync_queue)],
    connection_id: Annotated[str | None, Query()] = None,
) -> QueueListResponse:
    """List queued items in drain order."""
    items = await queue.list_all(connection_id)
    return QueueListResponse(items=[_item_response(item) for item in items])


@router.post("/queue/{item_id}/retry", response_model=QueueItemResponse)
async def retry_endpoint(
    item_id: str,
    queue: Annotated[SyncQueue, Depends(get_sync_queue)],
) -> QueueItemResponse:
    """Reset an item's retry count so the next drain picks it up again."""
    item = await queue.reset(item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue item not found")
    return _item_response(item)


@router.post("/now", response_model=SyncRunResponse)
async def sync_now_endpoint(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncRunResponse:
    """Drain the queue immediately."""
    return _run_response(await engine.sync_now())


@router.post("/connectivity", response_model=SyncRunResponse)
async def connectivity_endpoint(
    body: ConnectivityRequest,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncRunResponse:
    """Report a connectivity change. Coming back online drains the queue."""
    return _run_response(await engine.set_online(body.online))


@router.post("/focus-lost", response_model=SyncRunResponse)
async def focus_lost_endpoint(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncRunResponse:
    return _run_response(await engine.on_focus_lost())


@router.post("/records", response_model=QueueItemResponse, status_code=201)
async def upload_record_endpoint(
    body: RecordUploadRequest,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    settings: Annotated[Settings, Depends(get_settings)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> QueueItemResponse:
    """Buffer a record's content and queue its upload."""
    max_bytes = settings.max_file_size_mb * 1024 * 1024
    if len(body.content.encode("utf-8")) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Record exceeds {settings.max_file_size_mb} MB",
        )
    connection_id = await _target_connection(store, user_id, body.connection_id)
    path = build_remote_path(settings.app_folder_name, body.record_type, body.local_id)
    item = await engine.enqueue_upload(
        body.local_id,
        connection_id,
        path,
        FileContent.from_text(body.content, body.mime_type),
    )
    return _item_response(item)


@router.post("/records/action", response_model=QueueItemResponse, status_code=201)
async def record_action_endpoint(
    body: RecordActionRequest,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    settings: Annotated[Settings, Depends(get_settings)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> QueueItemResponse:
    """Queue a download or delete of a record."""
    connection_id = await _target_connection(store, user_id, body.connection_id)
    path = build_remote_path(settings.app_folder_name, body.record_type, body.local_id)
    item = await engine.enqueue(body.local_id, connection_id, body.action, path)
    return _item_response(item)
