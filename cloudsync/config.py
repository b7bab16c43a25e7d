"""Application configuration loaded from environment variables."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from cloudsync.providers.registry import ProviderSecrets

ConflictStrategy = Literal["create_copy", "prefer_local", "prefer_cloud", "ask_user"]


class Settings(BaseSettings):
    """cloudsync settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = "change-me-in-production"
    debug: bool = False
    local_user_id: str = "local"

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/cloudsync.db"

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    # OAuth client registrations
    dropbox_client_id: str = ""
    dropbox_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    onedrive_client_id: str = ""
    onedrive_client_secret: str = ""
    box_client_id: str = ""
    box_client_secret: str = ""
    oauth_redirect_base_url: str = "http://localhost:8000"
    oauth_state_ttl_seconds: int = Field(default=600, ge=1)

    # Credential-family backends are reached through a trusted proxy
    webdav_proxy_url: str = "http://localhost:8888/webdav-proxy"

    # Sync behaviour
    auto_sync_enabled: bool = True
    sync_on_focus_lost: bool = True
    sync_on_app_start: bool = True
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    offline_queue_enabled: bool = True
    max_offline_queue_size: int = Field(default=100, ge=1)
    conflict_strategy: ConflictStrategy = "create_copy"
    max_file_size_mb: int = Field(default=50, ge=1)
    app_folder_name: str = "Create App"
    operation_timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)

    @property
    def oauth_redirect_uri(self) -> str:
        """Redirect URI registered with every OAuth provider."""
        return f"{self.oauth_redirect_base_url.rstrip('/')}/api/oauth/callback"

    def provider_secrets(self) -> ProviderSecrets:
        """Collect the client registrations the provider factory needs."""
        from cloudsync.providers.registry import ProviderSecrets

        return ProviderSecrets(
            dropbox_client_id=self.dropbox_client_id,
            dropbox_client_secret=self.dropbox_client_secret,
            google_client_id=self.google_client_id,
            google_client_secret=self.google_client_secret,
            onedrive_client_id=self.onedrive_client_id,
            onedrive_client_secret=self.onedrive_client_secret,
            box_client_id=self.box_client_id,
            box_client_secret=self.box_client_secret,
            webdav_proxy_url=self.webdav_proxy_url,
            timeout_seconds=self.operation_timeout_seconds,
        )

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
            violations.append(
                "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
            )
        if not self.oauth_redirect_base_url.startswith("https://") and not (
            self.oauth_redirect_base_url.startswith("http://localhost")
            or self.oauth_redirect_base_url.startswith("http://127.0.0.1")
        ):
            violations.append("OAUTH_REDIRECT_BASE_URL must use https outside localhost")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
