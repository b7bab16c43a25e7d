"""Sync queue and status schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class SyncStatusResponse(BaseModel):
    """Aggregate sync status."""

    status: str
    pending_count: int
    error_count: int
    online: bool


class RecordStatusResponse(BaseModel):
    local_id: str
    status: str


class QueueItemResponse(BaseModel):
    """One queued transfer intent."""

    id: str
    local_id: str
    connection_id: str
    action: str
    file_path: str
    status: str
    retry_count: int
    last_attempt: str | None = None
    error: str | None = None
    created_at: str


class QueueListResponse(BaseModel):
    items: list[QueueItemResponse]


class SyncResultResponse(BaseModel):
    success: bool
    action: str
    local_id: str
    error: str | None = None
    conflict_copy_path: str | None = None


class SyncRunResponse(BaseModel):
    """Results of one drain."""

    results: list[SyncResultResponse]


class RecordUploadRequest(BaseModel):
    """Local record content to buffer and upload."""

    local_id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    record_type: str = Field(min_length=1, pattern=r"^[a-z_]+$", description="e.g. 'journal'")
    content: str = Field(description="Record body as UTF-8 text")
    mime_type: str = Field(default="application/json")
    connection_id: str | None = Field(
        default=None, description="Target connection; the user's default when omitted"
    )


class RecordActionRequest(BaseModel):
    """Queue a download or delete of a record."""

    local_id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    record_type: str = Field(min_length=1, pattern=r"^[a-z_]+$")
    action: Literal["download", "delete"]
    connection_id: str | None = None


class ConnectivityRequest(BaseModel):
    online: bool
