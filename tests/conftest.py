"""Shared test fixtures for cloudsync."""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from cloudsync.config import Settings
from cloudsync.database import create_engine, init_db
from cloudsync.main import create_app, init_services
from cloudsync.providers.base import (
    CloudFile,
    CredentialAuth,
    ErrorCode,
    FileContent,
    ListFilesResult,
    OAuthTokens,
    ProviderKind,
    ProviderResult,
    normalize_path,
    parent_and_name,
)
from cloudsync.providers.oauth_state import OAuthStateStore
from cloudsync.services.connection_store import ConnectionStore
from cloudsync.services.datetime_service import now_utc
from cloudsync.services.record_adapter import InMemoryRecordAdapter
from cloudsync.services.sync_engine import SyncEngine
from cloudsync.services.sync_queue import SyncQueue
from cloudsync.services.token_manager import TokenLifecycleManager

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from cloudsync.models.connection import CloudConnection
    from cloudsync.providers.registry import ProviderSecrets

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
TEST_USER = "local"
NOTE_PATH = "/Create App/notes/n1.json"


class FakeCloud:
    """In-memory remote storage shared by every FakeProvider built for a test.

    Failures are injected per operation name, either for the next call only
    or until cleared.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.folders: set[str] = {"/"}
        self.checksum_algorithm: str | None = "sha256"
        self.delay = 0.0
        self.calls: list[tuple[str, str]] = []
        self.refresh_calls = 0
        self.refresh_error: str | None = None
        self.factory_error: ProviderResult[object] | None = None
        self.built = 0
        self._once: dict[str, list[ProviderResult[object]]] = {}
        self._always: dict[str, ProviderResult[object]] = {}

    def fail(
        self,
        operation: str,
        error: str,
        code: str = ErrorCode.PROVIDER,
        *,
        always: bool = False,
    ) -> None:
        failure: ProviderResult[object] = ProviderResult.fail(error, code)
        if always:
            self._always[operation] = failure
        else:
            self._once.setdefault(operation, []).append(failure)

    def clear_failures(self) -> None:
        self._once.clear()
        self._always.clear()

    def injected(self, operation: str) -> ProviderResult[object] | None:
        queued = self._once.get(operation)
        if queued:
            return queued.pop(0)
        return self._always.get(operation)

    def calls_of(self, operation: str) -> list[str]:
        return [arg for op, arg in self.calls if op == operation]


class FakeProvider:
    """CloudProvider double backed by a FakeCloud."""

    display_name = "Fake"

    def __init__(
        self,
        cloud: FakeCloud,
        kind: str,
        tokens: OAuthTokens | None = None,
        credentials: CredentialAuth | None = None,
    ) -> None:
        self.cloud = cloud
        self.provider_id = kind
        self.tokens = tokens
        self.credentials = credentials
        self._connected = False

    @property
    def checksum_algorithm(self) -> str | None:
        return self.cloud.checksum_algorithm

    def _describe(self, path: str) -> CloudFile:
        _, name = parent_and_name(path)
        if path in self.cloud.folders:
            return CloudFile(id=path, name=name, path=path, mime_type="folder", is_folder=True)
        data = self.cloud.files[path]
        return CloudFile(
            id=path,
            name=name,
            path=path,
            mime_type="application/json",
            size=len(data),
            checksum=hashlib.sha256(data).hexdigest(),
        )

    async def _enter(self, operation: str, arg: str) -> ProviderResult[object] | None:
        self.cloud.calls.append((operation, arg))
        if self.cloud.delay:
            await asyncio.sleep(self.cloud.delay)
        return self.cloud.injected(operation)

    def is_authenticated(self) -> bool:
        if self.tokens is not None:
            return not self.tokens.is_expired()
        return self._connected and self.credentials is not None

    def get_auth_url(self, redirect_uri: str, state: str) -> ProviderResult[str]:
        return ProviderResult.ok(f"https://auth.example.test/authorize?state={state}")

    async def handle_auth_callback(
        self, code: str, redirect_uri: str
    ) -> ProviderResult[OAuthTokens]:
        failure = await self._enter("handle_auth_callback", code)
        if failure is not None:
            return ProviderResult.fail(failure.error or "", failure.error_code)
        self.tokens = OAuthTokens(
            access_token=f"access-{code}",
            refresh_token="refresh-1",
            expires_at=now_utc() + timedelta(hours=1),
        )
        return ProviderResult.ok(self.tokens)

    async def refresh_token(self, refresh_token: str) -> ProviderResult[OAuthTokens]:
        self.cloud.refresh_calls += 1
        if self.cloud.refresh_error:
            return ProviderResult.fail(self.cloud.refresh_error, ErrorCode.AUTH)
        self.tokens = OAuthTokens(
            access_token=f"refreshed-{self.cloud.refresh_calls}",
            refresh_token=refresh_token,
            expires_at=now_utc() + timedelta(hours=1),
        )
        return ProviderResult.ok(self.tokens)

    async def connect_with_credentials(self, credentials: CredentialAuth) -> ProviderResult[bool]:
        self.credentials = credentials
        if credentials.password == "wrong":
            self._connected = False
            return ProviderResult.fail("WebDAV PROPFIND failed: 401", ErrorCode.AUTH)
        self._connected = True
        return ProviderResult.ok(True)

    async def test_connection(self) -> ProviderResult[bool]:
        failure = await self._enter("test_connection", "/")
        if failure is not None:
            return ProviderResult.fail(failure.error or "", failure.error_code)
        return ProviderResult.ok(True)

    async def disconnect(self) -> None:
        self.tokens = None
        self.credentials = None
        self._connected = False

    async def list_files(
        self, path: str, cursor: str | None = None
    ) -> ProviderResult[ListFilesResult]:
        base = normalize_path(path).rstrip("/") + "/"
        names = [p for p in self.cloud.files if p.startswith(base)]
        return ProviderResult.ok(ListFilesResult(files=[self._describe(p) for p in sorted(names)]))

    async def get_file(self, file_id: str) -> ProviderResult[CloudFile]:
        return await self.get_file_by_path(file_id)

    async def get_file_by_path(self, path: str) -> ProviderResult[CloudFile]:
        failure = await self._enter("get_file_by_path", path)
        if failure is not None:
            return ProviderResult.fail(failure.error or "", failure.error_code)
        path = normalize_path(path)
        if path not in self.cloud.files and path not in self.cloud.folders:
            return ProviderResult.fail(f"Not found: {path}", ErrorCode.NOT_FOUND)
        return ProviderResult.ok(self._describe(path))

    async def read_file(self, file_id: str) -> ProviderResult[FileContent]:
        failure = await self._enter("read_file", file_id)
        if failure is not None:
            return ProviderResult.fail(failure.error or "", failure.error_code)
        if file_id not in self.cloud.files:
            return ProviderResult.fail(f"Not found: {file_id}", ErrorCode.NOT_FOUND)
        return ProviderResult.ok(
            FileContent(data=self.cloud.files[file_id].decode("utf-8"))
        )

    async def write_file(
        self, path: str, content: FileContent, overwrite: bool = True
    ) -> ProviderResult[CloudFile]:
        failure = await self._enter("write_file", path)
        if failure is not None:
            return ProviderResult.fail(failure.error or "", failure.error_code)
        path = normalize_path(path)
        if not overwrite and path in self.cloud.files:
            return ProviderResult.fail(f"File already exists: {path}", ErrorCode.CONFLICT)
        self.cloud.files[path] = content.to_bytes()
        return ProviderResult.ok(self._describe(path))

    async def delete_file(self, file_id: str) -> ProviderResult[bool]:
        failure = await self._enter("delete_file", file_id)
        if failure is not None:
            return ProviderResult.fail(failure.error or "", failure.error_code)
        if self.cloud.files.pop(file_id, None) is None:
            return ProviderResult.fail(f"Not found: {file_id}", ErrorCode.NOT_FOUND)
        return ProviderResult.ok(True)

    async def move_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        self.cloud.files[new_path] = self.cloud.files.pop(file_id)
        return ProviderResult.ok(self._describe(new_path))

    async def copy_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        self.cloud.files[new_path] = self.cloud.files[file_id]
        return ProviderResult.ok(self._describe(new_path))

    async def create_folder(self, path: str) -> ProviderResult[CloudFile]:
        self.cloud.folders.add(normalize_path(path))
        return ProviderResult.ok(self._describe(normalize_path(path)))

    async def get_quota(self) -> ProviderResult[dict[str, int]]:
        used = sum(len(v) for v in self.cloud.files.values())
        return ProviderResult.ok({"used": used, "total": 0})

    async def get_account_info(self) -> ProviderResult[dict[str, str]]:
        return ProviderResult.ok({"email": "user@example.com", "name": "Test User"})


class FakeProviderFactory:
    """Provider factory handing out FakeProviders over one FakeCloud."""

    def __init__(self, cloud: FakeCloud) -> None:
        self.cloud = cloud

    def __call__(
        self,
        kind: str,
        secrets: ProviderSecrets,
        *,
        tokens: OAuthTokens | None = None,
        credentials: CredentialAuth | None = None,
    ) -> ProviderResult[FakeProvider]:
        if kind not in {k.value for k in ProviderKind}:
            return ProviderResult.fail(f"Unknown provider: {kind!r}", ErrorCode.CONFIGURATION)
        if self.cloud.factory_error is not None:
            return ProviderResult.fail(
                self.cloud.factory_error.error or "", self.cloud.factory_error.error_code
            )
        self.cloud.built += 1
        return ProviderResult.ok(FakeProvider(self.cloud, kind, tokens, credentials))


def valid_tokens(**overrides: object) -> OAuthTokens:
    values: dict[str, object] = {
        "access_token": "access-0",
        "refresh_token": "refresh-0",
        "expires_at": now_utc() + timedelta(hours=1),
    }
    values.update(overrides)
    return OAuthTokens(**values)  # type: ignore[arg-type]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        auto_sync_enabled=False,
        sync_on_app_start=False,
        dropbox_client_id="dropbox-id",
        dropbox_client_secret="dropbox-secret",
        google_client_id="google-id",
        google_client_secret="google-secret",
        webdav_proxy_url="http://proxy.test/webdav",
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _ = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def provider_factory(cloud: FakeCloud) -> FakeProviderFactory:
    return FakeProviderFactory(cloud)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> ConnectionStore:
    return ConnectionStore(session_factory, TEST_SECRET_KEY)


@pytest.fixture
def queue(session_factory: async_sessionmaker[AsyncSession]) -> SyncQueue:
    return SyncQueue(session_factory, max_size=100, max_retries=3)


@pytest.fixture
def state_store() -> OAuthStateStore:
    return OAuthStateStore(TEST_SECRET_KEY, ttl_seconds=600)


@pytest.fixture
def token_manager(
    store: ConnectionStore,
    test_settings: Settings,
    state_store: OAuthStateStore,
    provider_factory: FakeProviderFactory,
) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        store,
        test_settings.provider_secrets(),
        state_store,
        redirect_uri=test_settings.oauth_redirect_uri,
        app_folder_name=test_settings.app_folder_name,
        provider_factory=provider_factory,
    )


@pytest.fixture
def adapter() -> InMemoryRecordAdapter:
    return InMemoryRecordAdapter("note")


@pytest.fixture
async def sync_engine(
    queue: SyncQueue,
    token_manager: TokenLifecycleManager,
    store: ConnectionStore,
    adapter: InMemoryRecordAdapter,
) -> AsyncGenerator[SyncEngine]:
    """Engine with background draining off so tests drive drains explicitly."""
    engine = SyncEngine(
        queue,
        token_manager,
        store,
        adapter=adapter,
        operation_timeout=5.0,
        auto_sync=False,
        sync_on_app_start=False,
    )
    yield engine
    await engine.shutdown()


@pytest.fixture
async def connection(store: ConnectionStore) -> CloudConnection:
    """A connected Dropbox connection with fresh tokens."""
    return await store.create(
        TEST_USER,
        "dropbox",
        valid_tokens(),
        display_name="Dropbox",
        sync_folder_path="/Create App",
        is_default=True,
    )


@asynccontextmanager
async def create_test_client(
    settings: Settings, cloud: FakeCloud | None = None
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with the sync services wired to a FakeCloud.

    Performs the work of the application lifespan because ASGITransport
    does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    sync_engine = await init_services(
        app, settings, provider_factory=FakeProviderFactory(cloud or FakeCloud())
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await sync_engine.shutdown()
    await app.state.engine.dispose()
