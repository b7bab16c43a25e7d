"""Dropbox provider (OAuth, path-native addressing)."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any
from urllib.parse import urlencode

from cloudsync.providers.base import (
    CloudFile,
    ErrorCode,
    FileContent,
    ListFilesResult,
    OAuthProvider,
    OAuthTokens,
    ProviderKind,
    ProviderResult,
    normalize_path,
)
from cloudsync.services.datetime_service import parse_datetime

logger = logging.getLogger(__name__)

DROPBOX_AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
DROPBOX_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
DROPBOX_API_URL = "https://api.dropboxapi.com/2"
DROPBOX_CONTENT_URL = "https://content.dropboxapi.com/2"

TEXT_EXTENSIONS = {"json": "application/json", "md": "text/markdown", "txt": "text/plain"}


def _api_path(path: str) -> str:
    """Dropbox names the root folder with the empty string."""
    normalized = normalize_path(path)
    return "" if normalized == "/" else normalized


def _guess_mime(name: str) -> str:
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    return TEXT_EXTENSIONS.get(ext, "application/octet-stream")


class DropboxProvider(OAuthProvider):
    """Dropbox uses paths (or ``id:`` strings) interchangeably as identifiers."""

    provider_id = ProviderKind.DROPBOX
    display_name = "Dropbox"
    checksum_algorithm = "dropbox"

    def get_auth_url(self, redirect_uri: str, state: str) -> ProviderResult[str]:
        if not self._client_id:
            return ProviderResult.fail("Dropbox app key is not configured", ErrorCode.CONFIGURATION)
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "token_access_type": "offline",
        }
        return ProviderResult.ok(f"{DROPBOX_AUTH_URL}?{urlencode(params)}")

    async def handle_auth_callback(
        self, code: str, redirect_uri: str
    ) -> ProviderResult[OAuthTokens]:
        return await self._token_request(
            DROPBOX_TOKEN_URL,
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )

    async def refresh_token(self, refresh_token: str) -> ProviderResult[OAuthTokens]:
        return await self._token_request(
            DROPBOX_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
            previous_refresh_token=refresh_token,
        )

    async def _rpc(
        self, endpoint: str, body: dict[str, Any] | None, *required: str
    ) -> ProviderResult[dict[str, Any]]:
        """Call an RPC endpoint; Dropbox reports missing paths as 409 ``path/not_found``."""
        result = await self._send_json(
            "POST",
            f"{DROPBOX_API_URL}/{endpoint}",
            endpoint,
            required=required,
            content=json.dumps(body).encode() if body is not None else b"null",
            headers={"Content-Type": "application/json"},
        )
        if (
            not result.success
            and result.error_code == ErrorCode.CONFLICT
            and "not_found" in (result.error or "")
        ):
            result.error_code = ErrorCode.NOT_FOUND
        return result

    async def list_files(
        self, path: str, cursor: str | None = None
    ) -> ProviderResult[ListFilesResult]:
        if cursor:
            result = await self._rpc("files/list_folder/continue", {"cursor": cursor})
        else:
            result = await self._rpc("files/list_folder", {"path": _api_path(path), "limit": 100})
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "List failed", result.error_code)
        body = result.data
        return ProviderResult.ok(
            ListFilesResult(
                files=[self._to_cloud_file(entry) for entry in body.get("entries", [])],
                has_more=bool(body.get("has_more")),
                cursor=body.get("cursor"),
            )
        )

    async def get_file(self, file_id: str) -> ProviderResult[CloudFile]:
        result = await self._rpc("files/get_metadata", {"path": file_id}, ".tag")
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Get file failed", result.error_code)
        return ProviderResult.ok(self._to_cloud_file(result.data))

    async def get_file_by_path(self, path: str) -> ProviderResult[CloudFile]:
        return await self.get_file(_api_path(path))

    async def read_file(self, file_id: str) -> ProviderResult[FileContent]:
        result = await self._send(
            "POST",
            f"{DROPBOX_CONTENT_URL}/files/download",
            "Read file",
            headers={"Dropbox-API-Arg": json.dumps({"path": file_id})},
        )
        if not result.success or result.data is None:
            if result.error_code == ErrorCode.CONFLICT and "not_found" in (result.error or ""):
                result.error_code = ErrorCode.NOT_FOUND
            return ProviderResult.fail(result.error or "Read failed", result.error_code)
        raw = result.data.content
        try:
            meta = json.loads(result.data.headers.get("Dropbox-API-Result", "{}"))
        except ValueError:
            meta = {}
        name = meta.get("name") if isinstance(meta, dict) else None
        mime_type = _guess_mime(name or file_id)
        if mime_type != "application/octet-stream":
            try:
                return ProviderResult.ok(
                    FileContent(data=raw.decode("utf-8"), encoding="utf-8", mime_type=mime_type)
                )
            except UnicodeDecodeError:
                logger.warning("Dropbox file %s is not UTF-8 text", file_id)
        return ProviderResult.ok(
            FileContent(data=base64.b64encode(raw).decode(), encoding="base64", mime_type=mime_type)
        )

    async def write_file(
        self, path: str, content: FileContent, overwrite: bool = True
    ) -> ProviderResult[CloudFile]:
        arg = {
            "path": _api_path(path),
            "mode": "overwrite" if overwrite else "add",
            "autorename": False,
            "mute": True,
        }
        result = await self._send_json(
            "POST",
            f"{DROPBOX_CONTENT_URL}/files/upload",
            "Write file",
            required=("name",),
            headers={
                "Dropbox-API-Arg": json.dumps(arg),
                "Content-Type": "application/octet-stream",
            },
            content=content.to_bytes(),
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Write failed", result.error_code)
        return ProviderResult.ok(self._to_cloud_file(result.data))

    async def delete_file(self, file_id: str) -> ProviderResult[bool]:
        result = await self._rpc("files/delete_v2", {"path": file_id})
        if not result.success:
            return ProviderResult.fail(result.error or "Delete failed", result.error_code)
        return ProviderResult.ok(True)

    async def move_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        return await self._relocate("files/move_v2", file_id, new_path)

    async def copy_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        return await self._relocate("files/copy_v2", file_id, new_path)

    async def _relocate(
        self, endpoint: str, file_id: str, new_path: str
    ) -> ProviderResult[CloudFile]:
        result = await self._rpc(
            endpoint,
            {"from_path": file_id, "to_path": _api_path(new_path), "autorename": False},
            "metadata",
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or f"{endpoint} failed", result.error_code)
        return ProviderResult.ok(self._to_cloud_file(result.data["metadata"]))

    async def create_folder(self, path: str) -> ProviderResult[CloudFile]:
        result = await self._rpc(
            "files/create_folder_v2", {"path": _api_path(path), "autorename": False}, "metadata"
        )
        if result.success and result.data is not None:
            return ProviderResult.ok(self._to_cloud_file(result.data["metadata"]))
        # path/conflict/folder: the folder is already there
        if result.error_code == ErrorCode.CONFLICT:
            return await self.get_file_by_path(path)
        return ProviderResult.fail(result.error or "Create folder failed", result.error_code)

    async def get_quota(self) -> ProviderResult[dict[str, int]]:
        result = await self._rpc("users/get_space_usage", None)
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Quota failed", result.error_code)
        body = result.data
        allocation = body.get("allocation", {})
        return ProviderResult.ok(
            {"used": int(body.get("used", 0)), "total": int(allocation.get("allocated", 0))}
        )

    async def get_account_info(self) -> ProviderResult[dict[str, str]]:
        result = await self._rpc("users/get_current_account", None)
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Account info failed", result.error_code)
        body = result.data
        return ProviderResult.ok(
            {
                "email": body.get("email", ""),
                "name": (body.get("name") or {}).get("display_name", ""),
            }
        )

    @staticmethod
    def _to_cloud_file(entry: dict[str, Any]) -> CloudFile:
        is_folder = entry.get(".tag") == "folder"
        name = entry.get("name", "")
        modified = entry.get("server_modified")
        return CloudFile(
            id=entry.get("id") or entry.get("path_lower", ""),
            name=name,
            path=entry.get("path_display") or entry.get("path_lower") or f"/{name}",
            mime_type="folder" if is_folder else _guess_mime(name),
            size=int(entry.get("size") or 0),
            checksum=entry.get("content_hash"),
            modified_at=parse_datetime(modified) if modified else None,
            is_folder=is_folder,
            provider_metadata={"rev": entry.get("rev")} if entry.get("rev") else {},
        )
