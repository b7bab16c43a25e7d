"""Connection schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CredentialConnectionCreate(BaseModel):
    """Request to connect a credential-based backend such as WebDAV."""

    provider: str = Field(min_length=1, description="Provider kind, e.g. 'webdav'")
    server_url: str = Field(min_length=1, description="Base URL of the server")
    username: str = Field(min_length=1)
    password: str | None = Field(default=None, description="Password or app token")
    private_key: str | None = Field(default=None, description="Private key for key-based auth")
    port: int | None = Field(default=None, ge=1, le=65535)
    base_path: str | None = Field(default=None, description="Folder on the server to sync into")
    display_name: str | None = Field(default=None, description="Label shown for the connection")


class ConnectionResponse(BaseModel):
    """A stored connection. Auth secrets are never returned."""

    id: str
    provider: str
    display_name: str
    auth_kind: str
    sync_folder_path: str
    is_default: bool
    is_connected: bool
    last_error: str | None = None
    last_sync_at: str | None = None
    created_at: str


class ConnectionTestResponse(BaseModel):
    success: bool
    error: str | None = None
    error_code: str | None = None


class ProviderInfoResponse(BaseModel):
    id: str
    name: str
    auth_method: str
    available: bool


class OAuthAuthorizeResponse(BaseModel):
    authorization_url: str
