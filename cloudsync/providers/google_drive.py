"""Google Drive provider (OAuth, id-based addressing)."""

from __future__ import annotations

import base64
import json
import logging
import uuid
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
    parent_and_name,
    split_path,
)
from cloudsync.services.datetime_service import parse_datetime

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_API_URL = "https://www.googleapis.com/drive/v3"
GOOGLE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/drive.file https://www.googleapis.com/auth/userinfo.email"
)

FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,modifiedTime,createdTime,md5Checksum,parents"


def _quote(value: str) -> str:
    """Escape a literal for use inside a Drive ``q`` expression."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _is_text_mime(mime_type: str) -> bool:
    return mime_type.startswith("text/") or "json" in mime_type or "xml" in mime_type


class GoogleDriveProvider(OAuthProvider):
    """Drive addresses objects by id; paths are resolved one segment at a time."""

    provider_id = ProviderKind.GOOGLE_DRIVE
    display_name = "Google Drive"
    checksum_algorithm = "md5"

    def get_auth_url(self, redirect_uri: str, state: str) -> ProviderResult[str]:
        if not self._client_id:
            return ProviderResult.fail(
                "Google Drive client id is not configured", ErrorCode.CONFIGURATION
            )
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return ProviderResult.ok(f"{GOOGLE_AUTH_URL}?{urlencode(params)}")

    async def handle_auth_callback(
        self, code: str, redirect_uri: str
    ) -> ProviderResult[OAuthTokens]:
        return await self._token_request(
            GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )

    async def refresh_token(self, refresh_token: str) -> ProviderResult[OAuthTokens]:
        return await self._token_request(
            GOOGLE_TOKEN_URL,
            {
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "refresh_token",
            },
            previous_refresh_token=refresh_token,
        )

    # -- path resolution -----------------------------------------------------

    async def _find_child(
        self, parent_id: str, name: str, *, folders_only: bool = False
    ) -> ProviderResult[dict[str, Any]]:
        query = f"name='{_quote(name)}' and '{parent_id}' in parents and trashed=false"
        if folders_only:
            query += f" and mimeType='{FOLDER_MIME}'"
        result = await self._send_json(
            "GET",
            f"{GOOGLE_API_URL}/files",
            "Drive lookup",
            params={"q": query, "fields": f"files({FILE_FIELDS})"},
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Drive lookup failed", result.error_code)
        files = [item for item in result.data.get("files", []) if "id" in item]
        if not files:
            return ProviderResult.fail(f"Not found: {name}", ErrorCode.NOT_FOUND)
        return ProviderResult.ok(files[0])

    async def _resolve(self, path: str) -> ProviderResult[dict[str, Any]]:
        """Walk ``path`` from the Drive root and return the final item's metadata."""
        current: dict[str, Any] = {"id": "root", "name": "", "mimeType": FOLDER_MIME}
        for segment in split_path(path):
            found = await self._find_child(current["id"], segment)
            if not found.success or found.data is None:
                if found.is_not_found:
                    return ProviderResult.fail(f"Path not found: {path}", ErrorCode.NOT_FOUND)
                return found
            current = found.data
        return ProviderResult.ok(current)

    async def _ensure_folder(self, path: str) -> ProviderResult[str]:
        """Return the id of the folder at ``path``, creating missing segments."""
        parent_id = "root"
        for segment in split_path(path):
            found = await self._find_child(parent_id, segment, folders_only=True)
            if found.success and found.data is not None:
                parent_id = found.data["id"]
                continue
            if not found.is_not_found:
                return ProviderResult.fail(found.error or "Drive lookup failed", found.error_code)
            created = await self._send_json(
                "POST",
                f"{GOOGLE_API_URL}/files",
                "Create folder",
                required=("id",),
                json={"name": segment, "mimeType": FOLDER_MIME, "parents": [parent_id]},
            )
            if not created.success or created.data is None:
                return ProviderResult.fail(
                    created.error or "Create folder failed", created.error_code
                )
            parent_id = created.data["id"]
        return ProviderResult.ok(parent_id)

    # -- file operations -----------------------------------------------------

    async def list_files(
        self, path: str, cursor: str | None = None
    ) -> ProviderResult[ListFilesResult]:
        folder = await self._resolve(path)
        if not folder.success or folder.data is None:
            return ProviderResult.fail(folder.error or "List failed", folder.error_code)
        params = {
            "q": f"'{folder.data['id']}' in parents and trashed=false",
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "pageSize": "100",
        }
        if cursor:
            params["pageToken"] = cursor
        result = await self._send_json(
            "GET", f"{GOOGLE_API_URL}/files", "List files", params=params
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "List failed", result.error_code)
        body = result.data
        base = normalize_path(path)
        files = [
            self._to_cloud_file(item, f"{base.rstrip('/')}/{item.get('name', '')}")
            for item in body.get("files", [])
            if "id" in item
        ]
        next_token = body.get("nextPageToken")
        return ProviderResult.ok(
            ListFilesResult(files=files, has_more=bool(next_token), cursor=next_token)
        )

    async def get_file(self, file_id: str) -> ProviderResult[CloudFile]:
        result = await self._send_json(
            "GET",
            f"{GOOGLE_API_URL}/files/{file_id}",
            "Get file",
            required=("id",),
            params={"fields": FILE_FIELDS},
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Get file failed", result.error_code)
        item = result.data
        return ProviderResult.ok(self._to_cloud_file(item, f"/{item.get('name', '')}"))

    async def get_file_by_path(self, path: str) -> ProviderResult[CloudFile]:
        resolved = await self._resolve(path)
        if not resolved.success or resolved.data is None:
            return ProviderResult.fail(resolved.error or "Lookup failed", resolved.error_code)
        return ProviderResult.ok(self._to_cloud_file(resolved.data, normalize_path(path)))

    async def read_file(self, file_id: str) -> ProviderResult[FileContent]:
        meta = await self._send_json(
            "GET", f"{GOOGLE_API_URL}/files/{file_id}", "Read file", params={"fields": "mimeType"}
        )
        if not meta.success or meta.data is None:
            return ProviderResult.fail(meta.error or "Read failed", meta.error_code)
        mime_type = meta.data.get("mimeType") or "application/octet-stream"
        result = await self._send(
            "GET", f"{GOOGLE_API_URL}/files/{file_id}", "Read file", params={"alt": "media"}
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Read failed", result.error_code)
        raw = result.data.content
        if _is_text_mime(mime_type):
            try:
                return ProviderResult.ok(
                    FileContent(data=raw.decode("utf-8"), encoding="utf-8", mime_type=mime_type)
                )
            except UnicodeDecodeError:
                logger.warning("Drive file %s is not UTF-8 text", file_id)
        return ProviderResult.ok(
            FileContent(data=base64.b64encode(raw).decode(), encoding="base64", mime_type=mime_type)
        )

    async def write_file(
        self, path: str, content: FileContent, overwrite: bool = True
    ) -> ProviderResult[CloudFile]:
        parent_path, name = parent_and_name(path)
        if not name:
            return ProviderResult.fail("Cannot write to the root folder", ErrorCode.PROVIDER)
        parent = await self._ensure_folder(parent_path)
        if not parent.success or parent.data is None:
            return ProviderResult.fail(parent.error or "Write failed", parent.error_code)
        existing = await self._find_child(parent.data, name)
        if existing.success and existing.data is not None:
            if not overwrite:
                return ProviderResult.fail(f"File already exists: {path}", ErrorCode.CONFLICT)
            result = await self._send_json(
                "PATCH",
                f"{GOOGLE_UPLOAD_URL}/files/{existing.data['id']}",
                "Write file",
                required=("id",),
                params={"uploadType": "media", "fields": FILE_FIELDS},
                headers={"Content-Type": content.mime_type},
                content=content.to_bytes(),
            )
        elif existing.is_not_found:
            boundary = uuid.uuid4().hex
            result = await self._send_json(
                "POST",
                f"{GOOGLE_UPLOAD_URL}/files",
                "Write file",
                required=("id",),
                params={"uploadType": "multipart", "fields": FILE_FIELDS},
                headers={"Content-Type": f"multipart/related; boundary={boundary}"},
                content=self._multipart_body(boundary, name, parent.data, content),
            )
        else:
            return ProviderResult.fail(existing.error or "Write failed", existing.error_code)
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Write failed", result.error_code)
        return ProviderResult.ok(self._to_cloud_file(result.data, normalize_path(path)))

    async def delete_file(self, file_id: str) -> ProviderResult[bool]:
        result = await self._send("DELETE", f"{GOOGLE_API_URL}/files/{file_id}", "Delete file")
        if not result.success:
            return ProviderResult.fail(result.error or "Delete failed", result.error_code)
        return ProviderResult.ok(True)

    async def move_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        parent_path, name = parent_and_name(new_path)
        parent = await self._ensure_folder(parent_path)
        if not parent.success or parent.data is None:
            return ProviderResult.fail(parent.error or "Move failed", parent.error_code)
        current = await self._send_json(
            "GET", f"{GOOGLE_API_URL}/files/{file_id}", "Move file", params={"fields": "parents"}
        )
        if not current.success or current.data is None:
            return ProviderResult.fail(current.error or "Move failed", current.error_code)
        old_parents = ",".join(current.data.get("parents", []))
        result = await self._send_json(
            "PATCH",
            f"{GOOGLE_API_URL}/files/{file_id}",
            "Move file",
            required=("id",),
            params={
                "addParents": parent.data,
                "removeParents": old_parents,
                "fields": FILE_FIELDS,
            },
            json={"name": name},
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Move failed", result.error_code)
        return ProviderResult.ok(self._to_cloud_file(result.data, normalize_path(new_path)))

    async def copy_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        parent_path, name = parent_and_name(new_path)
        parent = await self._ensure_folder(parent_path)
        if not parent.success or parent.data is None:
            return ProviderResult.fail(parent.error or "Copy failed", parent.error_code)
        result = await self._send_json(
            "POST",
            f"{GOOGLE_API_URL}/files/{file_id}/copy",
            "Copy file",
            required=("id",),
            params={"fields": FILE_FIELDS},
            json={"name": name, "parents": [parent.data]},
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Copy failed", result.error_code)
        return ProviderResult.ok(self._to_cloud_file(result.data, normalize_path(new_path)))

    async def create_folder(self, path: str) -> ProviderResult[CloudFile]:
        folder = await self._ensure_folder(path)
        if not folder.success or folder.data is None:
            return ProviderResult.fail(folder.error or "Create folder failed", folder.error_code)
        _, name = parent_and_name(path)
        return ProviderResult.ok(
            CloudFile(
                id=folder.data,
                name=name,
                path=normalize_path(path),
                mime_type=FOLDER_MIME,
                is_folder=True,
            )
        )

    async def get_quota(self) -> ProviderResult[dict[str, int]]:
        result = await self._send_json(
            "GET", f"{GOOGLE_API_URL}/about", "Get quota", params={"fields": "storageQuota"}
        )
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Quota failed", result.error_code)
        quota = result.data.get("storageQuota", {})
        return ProviderResult.ok(
            {"used": int(quota.get("usage", 0)), "total": int(quota.get("limit", 0))}
        )

    async def get_account_info(self) -> ProviderResult[dict[str, str]]:
        result = await self._send_json("GET", GOOGLE_USERINFO_URL, "Get account info")
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Account info failed", result.error_code)
        body = result.data
        return ProviderResult.ok({"email": body.get("email", ""), "name": body.get("name", "")})

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _multipart_body(boundary: str, name: str, parent_id: str, content: FileContent) -> bytes:
        metadata = json.dumps({"name": name, "parents": [parent_id], "mimeType": content.mime_type})
        return b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                metadata.encode(),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {content.mime_type}\r\n\r\n".encode(),
                content.to_bytes(),
                f"\r\n--{boundary}--".encode(),
            ]
        )

    @staticmethod
    def _to_cloud_file(item: dict[str, Any], path: str) -> CloudFile:
        mime_type = item.get("mimeType") or "application/octet-stream"
        modified = item.get("modifiedTime")
        created = item.get("createdTime")
        return CloudFile(
            id=item["id"],
            name=item.get("name", ""),
            path=path,
            mime_type=mime_type,
            size=int(item.get("size") or 0),
            checksum=item.get("md5Checksum"),
            modified_at=parse_datetime(modified) if modified else None,
            created_at=parse_datetime(created) if created else None,
            is_folder=mime_type == FOLDER_MIME,
            provider_metadata={"parents": item.get("parents", [])},
        )
