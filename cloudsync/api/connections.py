"""Connection management endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from cloudsync.api.deps import get_connection_store, get_token_manager, get_user_id
from cloudsync.models.connection import CloudConnection
from cloudsync.providers.base import CredentialAuth
from cloudsync.providers.registry import list_providers
from cloudsync.schemas.connection import (
    ConnectionResponse,
    ConnectionTestResponse,
    CredentialConnectionCreate,
    ProviderInfoResponse,
)
from cloudsync.services.connection_store import ConnectionStore
from cloudsync.services.token_manager import TokenLifecycleManager

router = APIRouter(prefix="/api/connections", tags=["connections"])


def to_response(connection: CloudConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        provider=connection.provider,
        display_name=connection.display_name,
        auth_kind=connection.auth_kind,
        sync_folder_path=connection.sync_folder_path,
        is_default=connection.is_default,
        is_connected=connection.is_connected,
        last_error=connection.last_error,
        last_sync_at=connection.last_sync_at,
        created_at=connection.created_at,
    )


async def _owned(store: ConnectionStore, connection_id: str, user_id: str) -> CloudConnection:
    connection = await store.get(connection_id)
    if connection is None or connection.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return connection


@router.get("/providers", response_model=list[ProviderInfoResponse])
async def providers_endpoint() -> list[ProviderInfoResponse]:
    """List declared provider kinds and whether this build implements them."""
    return [ProviderInfoResponse.model_validate(info) for info in list_providers()]


@router.get("", response_model=list[ConnectionResponse])
async def list_connections_endpoint(
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> list[ConnectionResponse]:
    """List the user's connections, oldest first."""
    return [to_response(c) for c in await store.list_for_user(user_id)]


@router.post("/credentials", response_model=ConnectionResponse, status_code=201)
async def create_credential_connection_endpoint(
    body: CredentialConnectionCreate,
    manager: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ConnectionResponse:
    """Verify server credentials and store a new connection."""
    credentials = CredentialAuth(
        server_url=body.server_url,
        username=body.username,
        password=body.password,
        private_key=body.private_key,
        port=body.port,
        base_path=body.base_path,
    )
    connection = await manager.connect_with_credentials(
        user_id, body.provider, credentials, body.display_name
    )
    return to_response(connection)


@router.post("/{connection_id}/default", response_model=ConnectionResponse)
async def set_default_endpoint(
    connection_id: str,
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ConnectionResponse:
    """Make a connection the user's default."""
    connection = await store.set_default(user_id, connection_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return to_response(connection)


@router.post("/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection_endpoint(
    connection_id: str,
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    manager: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ConnectionTestResponse:
    """Check that the connection can list its root folder."""
    await _owned(store, connection_id, user_id)
    result = await manager.test_connection(connection_id)
    return ConnectionTestResponse(
        success=result.success, error=result.error, error_code=result.error_code
    )


@router.post("/{connection_id}/disconnect", response_model=ConnectionResponse)
async def disconnect_endpoint(
    connection_id: str,
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    manager: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ConnectionResponse:
    """Mark a connection disconnected without deleting it."""
    await _owned(store, connection_id, user_id)
    await manager.disconnect(connection_id)
    return to_response(await _owned(store, connection_id, user_id))


@router.delete("/{connection_id}", status_code=204)
async def delete_connection_endpoint(
    connection_id: str,
    store: Annotated[ConnectionStore, Depends(get_connection_store)],
    manager: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> None:
    """Remove a connection and forget its live provider."""
    await _owned(store, connection_id, user_id)
    await manager.remove_connection(connection_id)
