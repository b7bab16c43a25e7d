"""SQLAlchemy ORM models for cloudsync."""

from cloudsync.models.base import Base
from cloudsync.models.connection import CloudConnection
from cloudsync.models.sync_queue import FileCacheEntry, SyncQueueItem

__all__ = [
    "Base",
    "CloudConnection",
    "FileCacheEntry",
    "SyncQueueItem",
]
