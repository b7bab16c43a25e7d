"""Token lifecycle: live provider registry, refresh, OAuth and credential flows."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from cloudsync.exceptions import (
    AuthError,
    CloudSyncError,
    ConfigurationError,
    NotFoundError,
    TransientNetworkError,
)
from cloudsync.providers.base import (
    DISPLAY_NAMES,
    CredentialAuth,
    ErrorCode,
    OAuthTokens,
    ProviderKind,
    ProviderResult,
)
from cloudsync.providers.registry import create_provider

if TYPE_CHECKING:
    from cloudsync.models.connection import CloudConnection
    from cloudsync.providers.base import CloudProvider
    from cloudsync.providers.oauth_state import OAuthStateStore
    from cloudsync.providers.registry import ProviderSecrets
    from cloudsync.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)


class ProviderFactory(Protocol):
    def __call__(
        self,
        kind: str,
        secrets: ProviderSecrets,
        *,
        tokens: OAuthTokens | None = None,
        credentials: CredentialAuth | None = None,
    ) -> ProviderResult[CloudProvider]: ...


_ERRORS_BY_CODE: dict[str, type[CloudSyncError]] = {
    ErrorCode.AUTH: AuthError,
    ErrorCode.NOT_FOUND: NotFoundError,
    ErrorCode.NETWORK: TransientNetworkError,
    ErrorCode.CONFIGURATION: ConfigurationError,
}


def raise_for_result(result: ProviderResult[Any], default: str) -> None:
    """Raise the exception matching a failed result's error code."""
    if result.success:
        return
    if result.error_code == ErrorCode.NOT_SUPPORTED:
        raise ValueError(result.error or default)
    error_cls = _ERRORS_BY_CODE.get(result.error_code or "", CloudSyncError)
    raise error_cls(result.error or default)


class TokenLifecycleManager:
    """Owns the registry of live, authenticated providers keyed by connection id."""

    def __init__(
        self,
        store: ConnectionStore,
        secrets: ProviderSecrets,
        state_store: OAuthStateStore,
        *,
        redirect_uri: str,
        app_folder_name: str = "Create App",
        provider_factory: ProviderFactory = create_provider,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self._state_store = state_store
        self._redirect_uri = redirect_uri
        self._app_folder_name = app_folder_name
        self._factory = provider_factory
        self._live: dict[str, CloudProvider] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def evict(self, connection_id: str) -> None:
        """Drop a cached provider so the next lookup rebuilds it."""
        self._live.pop(connection_id, None)

    async def get_live_provider(self, connection_id: str) -> CloudProvider | None:
        """Return an authenticated provider for the connection, or None.

        Rebuilds from the stored payload when nothing usable is cached and
        refreshes expired OAuth tokens. Failures mark the connection
        disconnected with a readable ``last_error``.
        """
        cached = self._live.get(connection_id)
        if cached is not None and cached.is_authenticated():
            return cached

        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        async with lock:
            cached = self._live.get(connection_id)
            if cached is not None and cached.is_authenticated():
                return cached
            self.evict(connection_id)

            connection = await self._store.get(connection_id)
            if connection is None:
                return None
            try:
                auth = self._store.read_auth(connection)
            except ValueError as exc:
                logger.warning("Unreadable auth payload for %s: %s", connection_id, exc)
                await self.mark_disconnected(connection_id, str(exc))
                return None

            provider = await self._rebuild(connection, auth)
            if provider is not None:
                self._live[connection_id] = provider
            return provider

    async def _rebuild(
        self, connection: CloudConnection, auth: OAuthTokens | CredentialAuth
    ) -> CloudProvider | None:
        if isinstance(auth, OAuthTokens):
            built = self._factory(connection.provider, self._secrets, tokens=auth)
        else:
            built = self._factory(connection.provider, self._secrets, credentials=auth)
        if not built.success or built.data is None:
            await self.mark_disconnected(connection.id, built.error or "Provider unavailable")
            return None
        provider = built.data

        if isinstance(auth, OAuthTokens):
            if not auth.is_expired():
                return provider
            if not auth.refresh_token:
                await self.mark_disconnected(connection.id, "Token expired and no refresh token")
                return None
            refreshed = await provider.refresh_token(auth.refresh_token)
            if not refreshed.success or refreshed.data is None:
                logger.warning("Token refresh failed for %s: %s", connection.id, refreshed.error)
                await self.mark_disconnected(
                    connection.id, f"Token refresh failed: {refreshed.error}"
                )
                return None
            await self._store.update_auth(connection.id, refreshed.data)
            logger.info("Refreshed tokens for connection %s", connection.id)
            return provider

        result = await provider.connect_with_credentials(auth)
        if not result.success:
            await self.mark_disconnected(connection.id, result.error or "Connection failed")
            return None
        return provider

    async def mark_disconnected(self, connection_id: str, error: str) -> None:
        self.evict(connection_id)
        await self._store.update_status(connection_id, is_connected=False, last_error=error)

    def _build(self, provider: str) -> CloudProvider:
        if provider not in {kind.value for kind in ProviderKind}:
            msg = f"Unknown provider: {provider!r}"
            raise ValueError(msg)
        built = self._factory(provider, self._secrets)
        raise_for_result(built, f"Cannot create provider {provider!r}")
        assert built.data is not None
        return built.data

    def _default_name(self, provider: str, account: ProviderResult[dict[str, str]]) -> str:
        if account.success and account.data:
            name = account.data.get("email") or account.data.get("name")
            if name:
                return name
        try:
            return DISPLAY_NAMES[ProviderKind(provider)]
        except ValueError:
            return provider

    async def _create_connection(
        self,
        user_id: str,
        provider: str,
        auth: OAuthTokens | CredentialAuth,
        display_name: str,
    ) -> CloudConnection:
        existing = await self._store.list_for_user(user_id)
        return await self._store.create(
            user_id,
            provider,
            auth,
            display_name=display_name,
            sync_folder_path=f"/{self._app_folder_name}",
            is_default=not existing,
        )

    def start_oauth_flow(self, user_id: str, provider: str) -> str:
        """Return the authorization URL for ``provider`` with a signed state.

        Raises ConfigurationError when the provider cannot be built.
        """
        instance = self._build(provider)
        state = self._state_store.issue(provider, user_id)
        url = instance.get_auth_url(self._redirect_uri, state)
        raise_for_result(url, "Cannot build authorization URL")
        assert url.data is not None
        return url.data

    async def complete_oauth_flow(
        self, state: str, code: str, display_name: str | None = None
    ) -> CloudConnection:
        """Validate ``state``, exchange ``code`` and save the new connection.

        Raises OAuthStateError for a bad state and AuthError when the code
        exchange fails.
        """
        payload = self._state_store.consume(state)
        provider_kind = str(payload["provider"])
        user_id = str(payload["user_id"])
        provider = self._build(provider_kind)

        tokens = await provider.handle_auth_callback(code, self._redirect_uri)
        if not tokens.success or tokens.data is None:
            if tokens.error_code == ErrorCode.NETWORK:
                raise TransientNetworkError(tokens.error or "Token exchange failed")
            raise AuthError(tokens.error or "Token exchange failed")

        account = await provider.get_account_info()
        name = display_name or self._default_name(provider_kind, account)
        connection = await self._create_connection(user_id, provider_kind, tokens.data, name)
        self._live[connection.id] = provider
        logger.info("Connected %s for user %s as %s", provider_kind, user_id, connection.id)
        return connection

    async def connect_with_credentials(
        self,
        user_id: str,
        provider: str,
        credentials: CredentialAuth,
        display_name: str | None = None,
    ) -> CloudConnection:
        """Verify server credentials and save a new connection."""
        instance = self._build(provider)
        result = await instance.connect_with_credentials(credentials)
        raise_for_result(result, "Connection failed")
        name = display_name or credentials.server_url
        connection = await self._create_connection(user_id, provider, credentials, name)
        self._live[connection.id] = instance
        logger.info("Connected %s for user %s as %s", provider, user_id, connection.id)
        return connection

    async def test_connection(self, connection_id: str) -> ProviderResult[bool]:
        """List the root folder and record the outcome on the connection."""
        provider = await self.get_live_provider(connection_id)
        if provider is None:
            connection = await self._store.get(connection_id)
            error = connection.last_error if connection and connection.last_error else None
            return ProviderResult.fail(error or "Provider not available", ErrorCode.AUTH)
        result = await provider.test_connection()
        await self._store.update_status(
            connection_id,
            is_connected=result.success,
            last_error=None if result.success else result.error,
        )
        if not result.success and result.error_code == ErrorCode.AUTH:
            self.evict(connection_id)
        return result

    async def disconnect(self, connection_id: str) -> bool:
        """Forget the live provider and mark the connection disconnected."""
        provider = self._live.pop(connection_id, None)
        if provider is not None:
            await provider.disconnect()
        connection = await self._store.get(connection_id)
        if connection is None:
            return False
        await self._store.update_status(connection_id, is_connected=False, last_error=None)
        return True

    async def remove_connection(self, connection_id: str) -> bool:
        """Evict the live provider and delete the stored connection."""
        provider = self._live.pop(connection_id, None)
        if provider is not None:
            await provider.disconnect()
        self._locks.pop(connection_id, None)
        return await self._store.remove(connection_id)
