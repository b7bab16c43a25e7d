"""Shared API dependencies: settings, DB session and sync services."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cloudsync.config import Settings
from cloudsync.services.connection_store import ConnectionStore
from cloudsync.services.sync_engine import SyncEngine
from cloudsync.services.sync_queue import SyncQueue
from cloudsync.services.token_manager import TokenLifecycleManager


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_connection_store(request: Request) -> ConnectionStore:
    store: ConnectionStore = request.app.state.connection_store
    return store


def get_token_manager(request: Request) -> TokenLifecycleManager:
    manager: TokenLifecycleManager = request.app.state.token_manager
    return manager


def get_sync_queue(request: Request) -> SyncQueue:
    queue: SyncQueue = request.app.state.sync_queue
    return queue


def get_sync_engine(request: Request) -> SyncEngine:
    engine: SyncEngine = request.app.state.sync_engine
    return engine


def get_user_id(settings: Annotated[Settings, Depends(get_settings)]) -> str:
    """The single local user this instance syncs for."""
    return settings.local_user_id
