"""Provider capability interface, shared data classes and base implementations."""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar, runtime_checkable

import httpx

from cloudsync.services.datetime_service import format_iso, now_utc, parse_datetime

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tokens this close to expiry are treated as already expired.
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)

DROPBOX_BLOCK_SIZE = 4 * 1024 * 1024


class ProviderKind(StrEnum):
    """Supported backend kinds."""

    DROPBOX = "dropbox"
    GOOGLE_DRIVE = "google_drive"
    ONEDRIVE = "onedrive"
    BOX = "box"
    WEBDAV = "webdav"
    SFTP = "sftp"


class AuthMethod(StrEnum):
    OAUTH = "oauth"
    CREDENTIALS = "credentials"


AUTH_METHODS: dict[ProviderKind, AuthMethod] = {
    ProviderKind.DROPBOX: AuthMethod.OAUTH,
    ProviderKind.GOOGLE_DRIVE: AuthMethod.OAUTH,
    ProviderKind.ONEDRIVE: AuthMethod.OAUTH,
    ProviderKind.BOX: AuthMethod.OAUTH,
    ProviderKind.WEBDAV: AuthMethod.CREDENTIALS,
    ProviderKind.SFTP: AuthMethod.CREDENTIALS,
}

DISPLAY_NAMES: dict[ProviderKind, str] = {
    ProviderKind.DROPBOX: "Dropbox",
    ProviderKind.GOOGLE_DRIVE: "Google Drive",
    ProviderKind.ONEDRIVE: "OneDrive",
    ProviderKind.BOX: "Box",
    ProviderKind.WEBDAV: "WebDAV",
    ProviderKind.SFTP: "SFTP / SSH",
}


class ErrorCode(StrEnum):
    """Machine-readable failure categories carried by ``ProviderResult``."""

    AUTH = "auth_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    NETWORK = "network_error"
    CONFIGURATION = "configuration_error"
    NOT_SUPPORTED = "not_supported"
    PROVIDER = "provider_error"


@dataclass
class ProviderResult(Generic[T]):
    """Tagged success/failure result returned by every provider operation."""

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> ProviderResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: str | None = ErrorCode.PROVIDER) -> ProviderResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    @property
    def is_not_found(self) -> bool:
        return not self.success and self.error_code == ErrorCode.NOT_FOUND


@dataclass
class OAuthTokens:
    """OAuth token set for one connection."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str = ""

    def is_expired(self, now: datetime | None = None) -> bool:
        """Tokens without an expiry never expire on their own."""
        if self.expires_at is None:
            return False
        current = now or now_utc()
        return current >= self.expires_at - TOKEN_EXPIRY_SKEW

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": format_iso(self.expires_at) if self.expires_at else None,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OAuthTokens:
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("OAuth token payload is missing access_token")
        expires_at = data.get("expires_at")
        return cls(
            access_token=str(access_token),
            refresh_token=data.get("refresh_token") or None,
            expires_at=parse_datetime(expires_at) if expires_at else None,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or "",
        )

    @classmethod
    def from_token_response(
        cls, data: Mapping[str, Any], previous_refresh_token: str | None = None
    ) -> OAuthTokens:
        """Build tokens from an OAuth token endpoint response.

        Providers that do not rotate refresh tokens omit ``refresh_token`` on
        refresh; the previous one is kept in that case.
        """
        expires_in = data.get("expires_in")
        expires_at = now_utc() + timedelta(seconds=int(expires_in)) if expires_in else None
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or "",
        )


@dataclass
class CredentialAuth:
    """Static credentials for server-protocol backends."""

    server_url: str
    username: str
    password: str | None = None
    private_key: str | None = None
    port: int | None = None
    base_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_url": self.server_url,
            "username": self.username,
            "password": self.password,
            "private_key": self.private_key,
            "port": self.port,
            "base_path": self.base_path,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CredentialAuth:
        server_url = data.get("server_url")
        username = data.get("username")
        if not server_url or not username:
            raise ValueError("Credential payload requires server_url and username")
        port = data.get("port")
        return cls(
            server_url=str(server_url),
            username=str(username),
            password=data.get("password"),
            private_key=data.get("private_key"),
            port=int(port) if port is not None else None,
            base_path=data.get("base_path"),
        )


@dataclass
class CloudFile:
    """Provider-reported metadata for one remote object."""

    id: str
    name: str
    path: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    checksum: str | None = None
    modified_at: datetime | None = None
    created_at: datetime | None = None
    is_folder: bool = False
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileContent:
    """Opaque record payload with its declared MIME type."""

    data: str | bytes
    encoding: str = "utf-8"  # "utf-8", "base64" or "binary"
    mime_type: str = "application/json"

    def to_bytes(self) -> bytes:
        """Raw bytes of the payload, decoding base64 text if needed."""
        if isinstance(self.data, bytes):
            return self.data
        if self.encoding == "base64":
            return base64.b64decode(self.data)
        return self.data.encode("utf-8")

    @classmethod
    def from_text(cls, text: str, mime_type: str = "application/json") -> FileContent:
        return cls(data=text, encoding="utf-8", mime_type=mime_type)


@dataclass
class ListFilesResult:
    """One page of a directory listing."""

    files: list[CloudFile]
    has_more: bool = False
    cursor: str | None = None


def compute_checksum(content: bytes, algorithm: str = "sha256") -> str:
    """Hash content the way a provider reports its checksums.

    ``dropbox`` implements the Dropbox content hash: SHA-256 over the
    concatenated SHA-256 digests of 4 MiB blocks.
    """
    if algorithm == "md5":
        return hashlib.md5(content, usedforsecurity=False).hexdigest()
    if algorithm == "dropbox":
        blocks = [
            hashlib.sha256(content[i : i + DROPBOX_BLOCK_SIZE]).digest()
            for i in range(0, len(content), DROPBOX_BLOCK_SIZE)
        ]
        return hashlib.sha256(b"".join(blocks)).hexdigest()
    return hashlib.sha256(content).hexdigest()


def split_path(path: str) -> list[str]:
    """Split a remote path into non-empty segments."""
    return [part for part in path.split("/") if part]


def normalize_path(path: str) -> str:
    """Return ``path`` with a single leading slash and no trailing slash."""
    return "/" + "/".join(split_path(path))


def parent_and_name(path: str) -> tuple[str, str]:
    """Split ``/a/b/c.json`` into ``("/a/b", "c.json")``."""
    parts = split_path(path)
    if not parts:
        return "/", ""
    return "/" + "/".join(parts[:-1]), parts[-1]


def error_code_for_status(status: int) -> ErrorCode:
    """Map an HTTP status to the failure category the engine acts on."""
    if status in (401, 403):
        return ErrorCode.AUTH
    if status == 404:
        return ErrorCode.NOT_FOUND
    if status in (409, 412):
        return ErrorCode.CONFLICT
    if status in (408, 429) or status >= 500:
        return ErrorCode.NETWORK
    return ErrorCode.PROVIDER


def result_from_response(response: httpx.Response, operation: str) -> ProviderResult[Any]:
    """Convert a non-success HTTP response into a failed result."""
    status = response.status_code
    text = response.text[:500]
    return ProviderResult.fail(
        f"{operation} failed: {status} {text}".strip(), error_code_for_status(status)
    )


def result_from_exception(exc: Exception, operation: str) -> ProviderResult[Any]:
    """Convert a transport-level exception into a failed result."""
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        logger.warning("%s network error: %s", operation, exc)
        return ProviderResult.fail(f"{operation} error: {exc}", ErrorCode.NETWORK)
    logger.exception("%s unexpected error", operation)
    return ProviderResult.fail(f"{operation} error: {exc}", ErrorCode.PROVIDER)


@runtime_checkable
class CloudProvider(Protocol):
    """Uniform capability contract every backend satisfies."""

    provider_id: str
    display_name: str
    checksum_algorithm: str | None

    def is_authenticated(self) -> bool: ...

    def get_auth_url(self, redirect_uri: str, state: str) -> ProviderResult[str]: ...

    async def handle_auth_callback(
        self, code: str, redirect_uri: str
    ) -> ProviderResult[OAuthTokens]: ...

    async def refresh_token(self, refresh_token: str) -> ProviderResult[OAuthTokens]: ...

    async def connect_with_credentials(
        self, credentials: CredentialAuth
    ) -> ProviderResult[bool]: ...

    async def test_connection(self) -> ProviderResult[bool]: ...

    async def disconnect(self) -> None: ...

    async def list_files(
        self, path: str, cursor: str | None = None
    ) -> ProviderResult[ListFilesResult]: ...

    async def get_file(self, file_id: str) -> ProviderResult[CloudFile]: ...

    async def get_file_by_path(self, path: str) -> ProviderResult[CloudFile]: ...

    async def read_file(self, file_id: str) -> ProviderResult[FileContent]: ...

    async def write_file(
        self, path: str, content: FileContent, overwrite: bool = True
    ) -> ProviderResult[CloudFile]: ...

    async def delete_file(self, file_id: str) -> ProviderResult[bool]: ...

    async def move_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]: ...

    async def copy_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]: ...

    async def create_folder(self, path: str) -> ProviderResult[CloudFile]: ...

    async def get_quota(self) -> ProviderResult[dict[str, int]]: ...

    async def get_account_info(self) -> ProviderResult[dict[str, str]]: ...


class _HttpProvider:
    """Shared HTTP plumbing. Tests inject an ``httpx.MockTransport``."""

    provider_id: str = ""
    display_name: str = ""
    checksum_algorithm: str | None = "sha256"

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def _default_headers(self) -> dict[str, str]:
        return {}

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> ProviderResult[httpx.Response]:
        """Issue one request; non-2xx responses and transport errors become failures."""
        merged = {**self._default_headers(), **(headers or {})}
        try:
            async with self._client() as client:
                resp = await client.request(method, url, headers=merged, **kwargs)
        except httpx.HTTPError as exc:
            return result_from_exception(exc, operation)
        if resp.is_success:
            return ProviderResult.ok(resp)
        return result_from_response(resp, operation)

    @staticmethod
    def _json(
        response: httpx.Response, operation: str, *required: str
    ) -> ProviderResult[dict[str, Any]]:
        """Decode a JSON object body that must carry the ``required`` keys."""
        try:
            body = response.json()
        except ValueError:
            logger.warning("%s returned a non-JSON body", operation)
            return ProviderResult.fail(
                f"{operation} returned an unreadable response", ErrorCode.PROVIDER
            )
        if not isinstance(body, dict):
            return ProviderResult.fail(
                f"{operation} returned an unexpected response", ErrorCode.PROVIDER
            )
        missing = [key for key in required if key not in body]
        if missing:
            return ProviderResult.fail(
                f"{operation} response is missing {', '.join(missing)}", ErrorCode.PROVIDER
            )
        return ProviderResult.ok(body)

    async def _send_json(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        required: tuple[str, ...] = (),
        **kwargs: Any,
    ) -> ProviderResult[dict[str, Any]]:
        """``_send`` followed by ``_json`` on the success body."""
        result = await self._send(method, url, operation, **kwargs)
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or f"{operation} failed", result.error_code)
        return self._json(result.data, operation, *required)

    async def get_quota(self) -> ProviderResult[dict[str, int]]:
        return ProviderResult.fail("Quota not available", ErrorCode.NOT_SUPPORTED)

    async def get_account_info(self) -> ProviderResult[dict[str, str]]:
        return ProviderResult.fail("Account info not available", ErrorCode.NOT_SUPPORTED)


class OAuthProvider(_HttpProvider):
    """Base for OAuth-family providers (token-bearing HTTP APIs)."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        tokens: OAuthTokens | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(transport=transport, timeout=timeout)
        self._client_id = client_id
        self._client_secret = client_secret
        self._tokens = tokens

    @property
    def tokens(self) -> OAuthTokens | None:
        return self._tokens

    def set_tokens(self, tokens: OAuthTokens) -> None:
        self._tokens = tokens

    def is_authenticated(self) -> bool:
        if self._tokens is None or not self._tokens.access_token:
            return False
        return not self._tokens.is_expired()

    async def disconnect(self) -> None:
        self._tokens = None

    async def connect_with_credentials(self, credentials: CredentialAuth) -> ProviderResult[bool]:
        return ProviderResult.fail(
            f"{self.display_name} does not accept server credentials", ErrorCode.NOT_SUPPORTED
        )

    async def test_connection(self) -> ProviderResult[bool]:
        result = await self.list_files("/")
        if result.success:
            return ProviderResult.ok(True)
        return ProviderResult.fail(result.error or "Connection test failed", result.error_code)

    def _default_headers(self) -> dict[str, str]:
        if self._tokens is None:
            return {}
        return {"Authorization": f"Bearer {self._tokens.access_token}"}

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> ProviderResult[httpx.Response]:
        if self._tokens is None:
            return ProviderResult.fail("Not authenticated", ErrorCode.AUTH)
        return await super()._send(method, url, operation, headers=headers, **kwargs)

    async def _token_request(
        self, token_url: str, form: dict[str, str], previous_refresh_token: str | None = None
    ) -> ProviderResult[OAuthTokens]:
        """POST to a token endpoint and store the resulting tokens."""
        try:
            async with self._client() as client:
                resp = await client.post(token_url, data=form)
        except httpx.HTTPError as exc:
            return result_from_exception(exc, "Token request")
        if resp.status_code != 200:
            failed = result_from_response(resp, "Token request")
            # Token endpoints answer 400 invalid_grant for revoked refresh tokens.
            if resp.status_code == 400:
                failed.error_code = ErrorCode.AUTH
            return failed
        try:
            tokens = OAuthTokens.from_token_response(resp.json(), previous_refresh_token)
        except (KeyError, ValueError) as exc:
            return ProviderResult.fail(f"Malformed token response: {exc}", ErrorCode.AUTH)
        self._tokens = tokens
        return ProviderResult.ok(tokens)


class CredentialProvider(_HttpProvider):
    """Base for credential-family providers reached through a trusted proxy."""

    def __init__(
        self,
        proxy_url: str,
        credentials: CredentialAuth | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(transport=transport, timeout=timeout)
        self._proxy_url = proxy_url
        self._credentials = credentials
        self._connected = False

    def set_credentials(self, credentials: CredentialAuth) -> None:
        self._credentials = credentials
        self._connected = False

    def is_authenticated(self) -> bool:
        return self._connected and self._credentials is not None

    async def disconnect(self) -> None:
        self._credentials = None
        self._connected = False

    def get_auth_url(self, redirect_uri: str, state: str) -> ProviderResult[str]:
        return ProviderResult.fail(
            "OAuth not supported for credential-based providers", ErrorCode.NOT_SUPPORTED
        )

    async def handle_auth_callback(
        self, code: str, redirect_uri: str
    ) -> ProviderResult[OAuthTokens]:
        return ProviderResult.fail(
            "OAuth not supported for credential-based providers", ErrorCode.NOT_SUPPORTED
        )

    async def refresh_token(self, refresh_token: str) -> ProviderResult[OAuthTokens]:
        return ProviderResult.fail(
            "Token refresh not supported for credential-based providers", ErrorCode.NOT_SUPPORTED
        )

    async def connect_with_credentials(self, credentials: CredentialAuth) -> ProviderResult[bool]:
        self.set_credentials(credentials)
        result = await self.test_connection()
        self._connected = result.success
        return result
