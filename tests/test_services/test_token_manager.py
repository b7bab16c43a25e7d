"""Tests for the token lifecycle manager and connection flows."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

import pytest

from cloudsync.exceptions import (
    AuthError,
    ConfigurationError,
    OAuthStateError,
    TransientNetworkError,
)
from cloudsync.providers.base import CredentialAuth, ErrorCode, OAuthTokens, ProviderResult
from cloudsync.services.datetime_service import now_utc
from cloudsync.services.token_manager import raise_for_result
from tests.conftest import TEST_USER, valid_tokens

if TYPE_CHECKING:
    from cloudsync.models.connection import CloudConnection
    from cloudsync.services.connection_store import ConnectionStore
    from cloudsync.services.token_manager import TokenLifecycleManager
    from tests.conftest import FakeCloud


def _expired(refresh_token: str | None = "refresh-0") -> OAuthTokens:
    return valid_tokens(
        access_token="stale",
        refresh_token=refresh_token,
        expires_at=now_utc() - timedelta(minutes=5),
    )


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestRaiseForResult:
    def test_success_does_not_raise(self) -> None:
        raise_for_result(ProviderResult.ok(True), "unused")

    @pytest.mark.parametrize(
        ("code", "error_cls"),
        [
            (ErrorCode.AUTH, AuthError),
            (ErrorCode.NETWORK, TransientNetworkError),
            (ErrorCode.CONFIGURATION, ConfigurationError),
        ],
    )
    def test_maps_codes(self, code: str, error_cls: type[Exception]) -> None:
        with pytest.raises(error_cls, match="went wrong"):
            raise_for_result(ProviderResult.fail("went wrong", code), "default")

    def test_not_supported_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            raise_for_result(ProviderResult.fail("nope", ErrorCode.NOT_SUPPORTED), "default")


class TestLiveProvider:
    async def test_valid_tokens_need_no_refresh(
        self, token_manager: TokenLifecycleManager, connection: CloudConnection, cloud: FakeCloud
    ) -> None:
        provider = await token_manager.get_live_provider(connection.id)

        assert provider is not None
        assert provider.is_authenticated()
        assert cloud.refresh_calls == 0
        assert await token_manager.get_live_provider(connection.id) is provider
        assert cloud.built == 1

    async def test_unknown_connection(self, token_manager: TokenLifecycleManager) -> None:
        assert await token_manager.get_live_provider("dropbox_missing") is None

    async def test_expired_tokens_are_refreshed_and_persisted(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore, cloud: FakeCloud
    ) -> None:
        created = await store.create(TEST_USER, "dropbox", _expired())

        provider = await token_manager.get_live_provider(created.id)

        assert provider is not None
        assert cloud.refresh_calls == 1
        loaded = await store.get(created.id)
        assert loaded is not None
        auth = store.read_auth(loaded)
        assert isinstance(auth, OAuthTokens)
        assert auth.access_token == "refreshed-1"
        assert auth.refresh_token == "refresh-0"
        assert not auth.is_expired()
        assert loaded.is_connected

    async def test_expired_without_refresh_token_makes_no_call(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore, cloud: FakeCloud
    ) -> None:
        created = await store.create(TEST_USER, "dropbox", _expired(refresh_token=None))

        assert await token_manager.get_live_provider(created.id) is None

        assert cloud.refresh_calls == 0
        assert cloud.calls == []
        loaded = await store.get(created.id)
        assert loaded is not None
        assert not loaded.is_connected
        assert loaded.last_error == "Token expired and no refresh token"

    async def test_refresh_failure_disconnects(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore, cloud: FakeCloud
    ) -> None:
        created = await store.create(TEST_USER, "dropbox", _expired())
        cloud.refresh_error = "invalid_grant"

        assert await token_manager.get_live_provider(created.id) is None

        loaded = await store.get(created.id)
        assert loaded is not None
        assert not loaded.is_connected
        assert loaded.last_error == "Token refresh failed: invalid_grant"

    async def test_concurrent_lookups_refresh_once(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore, cloud: FakeCloud
    ) -> None:
        created = await store.create(TEST_USER, "dropbox", _expired())

        first, second = await asyncio.gather(
            token_manager.get_live_provider(created.id),
            token_manager.get_live_provider(created.id),
        )

        assert first is not None
        assert first is second
        assert cloud.refresh_calls == 1

    async def test_unreadable_payload_disconnects(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore
    ) -> None:
        created = await store.create(TEST_USER, "dropbox", valid_tokens())
        created.auth_payload = "not-a-fernet-token"
        await store.save(created)

        assert await token_manager.get_live_provider(created.id) is None

        loaded = await store.get(created.id)
        assert loaded is not None
        assert not loaded.is_connected
        assert loaded.last_error is not None

    async def test_factory_failure_disconnects(
        self,
        token_manager: TokenLifecycleManager,
        store: ConnectionStore,
        connection: CloudConnection,
        cloud: FakeCloud,
    ) -> None:
        cloud.factory_error = ProviderResult.fail(
            "Dropbox client credentials are not configured", ErrorCode.CONFIGURATION
        )

        assert await token_manager.get_live_provider(connection.id) is None

        loaded = await store.get(connection.id)
        assert loaded is not None
        assert loaded.last_error == "Dropbox client credentials are not configured"

    async def test_credential_connection_reconnects(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore
    ) -> None:
        created = await store.create(
            TEST_USER,
            "webdav",
            CredentialAuth(server_url="https://dav.example.com", username="u", password="p"),
        )

        provider = await token_manager.get_live_provider(created.id)

        assert provider is not None
        assert provider.is_authenticated()


class TestOAuthFlow:
    async def test_full_flow(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore
    ) -> None:
        url = token_manager.start_oauth_flow(TEST_USER, "dropbox")

        connection = await token_manager.complete_oauth_flow(_state_from(url), "good-code")

        assert connection.provider == "dropbox"
        assert connection.user_id == TEST_USER
        assert connection.display_name == "user@example.com"
        assert connection.sync_folder_path == "/Create App"
        assert connection.is_default
        auth = store.read_auth(connection)
        assert isinstance(auth, OAuthTokens)
        assert auth.access_token == "access-good-code"
        assert await token_manager.get_live_provider(connection.id) is not None

    async def test_second_connection_is_not_default(
        self, token_manager: TokenLifecycleManager, connection: CloudConnection
    ) -> None:
        url = token_manager.start_oauth_flow(TEST_USER, "google_drive")

        second = await token_manager.complete_oauth_flow(_state_from(url), "code", "Work Drive")

        assert second.display_name == "Work Drive"
        assert not second.is_default

    async def test_state_cannot_be_replayed(self, token_manager: TokenLifecycleManager) -> None:
        state = _state_from(token_manager.start_oauth_flow(TEST_USER, "dropbox"))
        await token_manager.complete_oauth_flow(state, "code")

        with pytest.raises(OAuthStateError):
            await token_manager.complete_oauth_flow(state, "code")

    async def test_forged_state_rejected(self, token_manager: TokenLifecycleManager) -> None:
        with pytest.raises(OAuthStateError):
            await token_manager.complete_oauth_flow("forged", "code")

    async def test_failed_exchange(
        self, token_manager: TokenLifecycleManager, cloud: FakeCloud, store: ConnectionStore
    ) -> None:
        state = _state_from(token_manager.start_oauth_flow(TEST_USER, "dropbox"))
        cloud.fail("handle_auth_callback", "Token request failed: 400", ErrorCode.AUTH)

        with pytest.raises(AuthError):
            await token_manager.complete_oauth_flow(state, "bad-code")
        assert await store.list_for_user(TEST_USER) == []

    async def test_network_failure_during_exchange(
        self, token_manager: TokenLifecycleManager, cloud: FakeCloud
    ) -> None:
        state = _state_from(token_manager.start_oauth_flow(TEST_USER, "dropbox"))
        cloud.fail("handle_auth_callback", "Token request error: timeout", ErrorCode.NETWORK)

        with pytest.raises(TransientNetworkError):
            await token_manager.complete_oauth_flow(state, "code")

    def test_unknown_provider(self, token_manager: TokenLifecycleManager) -> None:
        with pytest.raises(ValueError, match="Unknown provider"):
            token_manager.start_oauth_flow(TEST_USER, "ftp")

    def test_unconfigured_provider(
        self, token_manager: TokenLifecycleManager, cloud: FakeCloud
    ) -> None:
        cloud.factory_error = ProviderResult.fail("not configured", ErrorCode.CONFIGURATION)

        with pytest.raises(ConfigurationError):
            token_manager.start_oauth_flow(TEST_USER, "dropbox")


class TestCredentialFlow:
    async def test_connect(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore
    ) -> None:
        credentials = CredentialAuth(
            server_url="https://dav.example.com", username="alice", password="secret"
        )

        connection = await token_manager.connect_with_credentials(TEST_USER, "webdav", credentials)

        assert connection.display_name == "https://dav.example.com"
        assert connection.auth_kind == "credentials"
        assert store.read_auth(connection) == credentials

    async def test_bad_password(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore
    ) -> None:
        credentials = CredentialAuth(
            server_url="https://dav.example.com", username="alice", password="wrong"
        )

        with pytest.raises(AuthError):
            await token_manager.connect_with_credentials(TEST_USER, "webdav", credentials)
        assert await store.list_for_user(TEST_USER) == []


class TestConnectionManagement:
    async def test_test_connection_success(
        self, token_manager: TokenLifecycleManager, connection: CloudConnection
    ) -> None:
        result = await token_manager.test_connection(connection.id)

        assert result.success

    async def test_test_connection_auth_failure(
        self,
        token_manager: TokenLifecycleManager,
        connection: CloudConnection,
        store: ConnectionStore,
        cloud: FakeCloud,
    ) -> None:
        cloud.fail("test_connection", "List failed: 401", ErrorCode.AUTH)

        result = await token_manager.test_connection(connection.id)

        assert not result.success
        assert result.error_code == ErrorCode.AUTH
        loaded = await store.get(connection.id)
        assert loaded is not None
        assert not loaded.is_connected
        assert loaded.last_error == "List failed: 401"

    async def test_test_connection_reports_stored_error(
        self, token_manager: TokenLifecycleManager, store: ConnectionStore
    ) -> None:
        created = await store.create(TEST_USER, "dropbox", _expired(refresh_token=None))

        result = await token_manager.test_connection(created.id)

        assert not result.success
        assert result.error == "Token expired and no refresh token"

    async def test_disconnect(
        self,
        token_manager: TokenLifecycleManager,
        connection: CloudConnection,
        store: ConnectionStore,
    ) -> None:
        await token_manager.get_live_provider(connection.id)

        assert await token_manager.disconnect(connection.id) is True

        loaded = await store.get(connection.id)
        assert loaded is not None
        assert not loaded.is_connected
        assert await token_manager.disconnect("dropbox_missing") is False

    async def test_remove_connection(
        self,
        token_manager: TokenLifecycleManager,
        connection: CloudConnection,
        store: ConnectionStore,
    ) -> None:
        await token_manager.get_live_provider(connection.id)

        assert await token_manager.remove_connection(connection.id) is True

        assert await store.get(connection.id) is None
        assert await token_manager.get_live_provider(connection.id) is None
