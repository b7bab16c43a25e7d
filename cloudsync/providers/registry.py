"""Provider registry and factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from cloudsync.providers.base import (
    AUTH_METHODS,
    DISPLAY_NAMES,
    AuthMethod,
    ErrorCode,
    ProviderKind,
    ProviderResult,
)
from cloudsync.providers.dropbox import DropboxProvider
from cloudsync.providers.google_drive import GoogleDriveProvider
from cloudsync.providers.webdav import WebDAVProvider

if TYPE_CHECKING:
    import httpx

    from cloudsync.providers.base import CloudProvider, CredentialAuth, OAuthTokens


@dataclass
class ProviderSecrets:
    """Client registrations and proxy endpoints used to build providers."""

    dropbox_client_id: str = ""
    dropbox_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    onedrive_client_id: str = ""
    onedrive_client_secret: str = ""
    box_client_id: str = ""
    box_client_secret: str = ""
    webdav_proxy_url: str = ""
    timeout_seconds: float = 30.0


OAUTH_PROVIDERS: dict[str, type[DropboxProvider] | type[GoogleDriveProvider]] = {
    ProviderKind.DROPBOX: DropboxProvider,
    ProviderKind.GOOGLE_DRIVE: GoogleDriveProvider,
}

CREDENTIAL_PROVIDERS: dict[str, type[WebDAVProvider]] = {
    ProviderKind.WEBDAV: WebDAVProvider,
}


def _client_registration(kind: ProviderKind, secrets: ProviderSecrets) -> tuple[str, str]:
    registrations = {
        ProviderKind.DROPBOX: (secrets.dropbox_client_id, secrets.dropbox_client_secret),
        ProviderKind.GOOGLE_DRIVE: (secrets.google_client_id, secrets.google_client_secret),
        ProviderKind.ONEDRIVE: (secrets.onedrive_client_id, secrets.onedrive_client_secret),
        ProviderKind.BOX: (secrets.box_client_id, secrets.box_client_secret),
    }
    return registrations.get(kind, ("", ""))


def create_provider(
    kind: str,
    secrets: ProviderSecrets,
    *,
    tokens: OAuthTokens | None = None,
    credentials: CredentialAuth | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderResult[CloudProvider]:
    """Build a provider instance for ``kind``.

    Fails with ``configuration_error`` for unknown kinds, kinds without an
    implementation in this build, and missing client secrets.
    """
    try:
        provider_kind = ProviderKind(kind)
    except ValueError:
        return ProviderResult.fail(f"Unknown provider: {kind!r}", ErrorCode.CONFIGURATION)

    if provider_kind in OAUTH_PROVIDERS:
        client_id, client_secret = _client_registration(provider_kind, secrets)
        if not client_id or not client_secret:
            return ProviderResult.fail(
                f"{DISPLAY_NAMES[provider_kind]} client credentials are not configured",
                ErrorCode.CONFIGURATION,
            )
        oauth_cls = OAUTH_PROVIDERS[provider_kind]
        return ProviderResult.ok(
            oauth_cls(
                client_id,
                client_secret,
                tokens,
                transport=transport,
                timeout=secrets.timeout_seconds,
            )
        )

    if provider_kind in CREDENTIAL_PROVIDERS:
        if not secrets.webdav_proxy_url:
            return ProviderResult.fail(
                "WebDAV proxy URL is not configured", ErrorCode.CONFIGURATION
            )
        credential_cls = CREDENTIAL_PROVIDERS[provider_kind]
        return ProviderResult.ok(
            credential_cls(
                secrets.webdav_proxy_url,
                credentials,
                transport=transport,
                timeout=secrets.timeout_seconds,
            )
        )

    return ProviderResult.fail(
        f"{DISPLAY_NAMES[provider_kind]} is not supported in this build",
        ErrorCode.CONFIGURATION,
    )


def auth_method_for(kind: str) -> AuthMethod:
    """Return the auth family of ``kind``. Raises ValueError for unknown kinds."""
    return AUTH_METHODS[ProviderKind(kind)]


def list_providers() -> list[dict[str, str | bool]]:
    """Describe every declared provider kind and whether it is implemented."""
    return [
        {
            "id": kind.value,
            "name": DISPLAY_NAMES[kind],
            "auth_method": AUTH_METHODS[kind].value,
            "available": kind in OAUTH_PROVIDERS or kind in CREDENTIAL_PROVIDERS,
        }
        for kind in ProviderKind
    ]
