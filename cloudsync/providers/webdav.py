"""WebDAV provider, reached through a trusted HTTP proxy.

The proxy accepts a JSON envelope describing the WebDAV request and answers
``{"success": bool, "statusCode": int, "data": ..., "error": str}``.
Binary bodies travel base64-encoded, flagged by ``encoding``.
"""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import unquote, urlparse

import defusedxml.ElementTree as ET
from defusedxml import DefusedXmlException

from cloudsync.providers.base import (
    CloudFile,
    CredentialAuth,
    CredentialProvider,
    ErrorCode,
    FileContent,
    ListFilesResult,
    ProviderKind,
    ProviderResult,
    error_code_for_status,
    normalize_path,
    parent_and_name,
    split_path,
)
from cloudsync.services.datetime_service import parse_http_date

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

MIME_TYPES = {
    "md": "text/markdown",
    "txt": "text/plain",
    "json": "application/json",
    "xml": "application/xml",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
}


def guess_mime_type(name: str) -> str:
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    return MIME_TYPES.get(ext, "application/octet-stream")


def _is_text_mime(mime_type: str) -> bool:
    return mime_type.startswith("text/") or "json" in mime_type or "xml" in mime_type


def server_prefix(credentials: CredentialAuth) -> str:
    """Path prefix the server puts in front of every ``href``."""
    url_path = urlparse(credentials.server_url).path.rstrip("/")
    base_path = (credentials.base_path or "").strip("/")
    return f"{url_path}/{base_path}".rstrip("/") if base_path else url_path


def parse_multistatus(xml_text: str, prefix: str = "") -> list[CloudFile]:
    """Parse a PROPFIND ``multistatus`` body into file descriptors.

    ``prefix`` is stripped from each href so paths are relative to the
    configured base path.
    """
    try:
        root = ET.fromstring(xml_text)
    except (ET.ParseError, DefusedXmlException) as exc:
        logger.warning("Rejected WebDAV multistatus response: %s", exc)
        return []

    files: list[CloudFile] = []
    for response in root.iter(f"{DAV_NS}response"):
        href = response.findtext(f"{DAV_NS}href") or ""
        prop = response.find(f"{DAV_NS}propstat/{DAV_NS}prop")
        if prop is None:
            continue
        href_path = unquote(urlparse(href).path).rstrip("/")
        if prefix and href_path.startswith(prefix):
            href_path = href_path[len(prefix) :]
        path = normalize_path(href_path)
        name = split_path(path)[-1] if split_path(path) else ""
        is_folder = prop.find(f"{DAV_NS}resourcetype/{DAV_NS}collection") is not None
        length = prop.findtext(f"{DAV_NS}getcontentlength") or "0"
        etag = prop.findtext(f"{DAV_NS}getetag")
        files.append(
            CloudFile(
                id=path,
                name=name,
                path=path,
                mime_type="folder" if is_folder else guess_mime_type(name),
                size=int(length) if length.strip().isdigit() else 0,
                checksum=etag.strip().strip('"') if etag else None,
                modified_at=parse_http_date(prop.findtext(f"{DAV_NS}getlastmodified")),
                is_folder=is_folder,
            )
        )
    return files


class WebDAVProvider(CredentialProvider):
    """WebDAV addresses objects by path; the id of a file is its path."""

    provider_id = ProviderKind.WEBDAV
    display_name = "WebDAV"
    # ETags are opaque, so content must be fetched to compare.
    checksum_algorithm = None

    def _full_url(self, path: str) -> str:
        assert self._credentials is not None
        base_url = self._credentials.server_url.rstrip("/")
        base_path = (self._credentials.base_path or "").rstrip("/")
        if base_path and not base_path.startswith("/"):
            base_path = "/" + base_path
        return f"{base_url}{base_path}{normalize_path(path)}"

    async def _dav(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: str | None = None,
        body_encoding: str = "utf-8",
    ) -> ProviderResult[dict[str, Any]]:
        if self._credentials is None:
            return ProviderResult.fail("No credentials set", ErrorCode.AUTH)
        envelope = {
            "method": method,
            "path": normalize_path(path),
            "serverUrl": self._credentials.server_url,
            "username": self._credentials.username,
            "password": self._credentials.password,
            "basePath": self._credentials.base_path,
            "headers": headers or {},
            "body": body,
            "bodyEncoding": body_encoding,
        }
        result = await self._send("POST", self._proxy_url, f"WebDAV {method}", json=envelope)
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Proxy request failed", result.error_code)
        parsed = self._json(result.data, "WebDAV proxy")
        if not parsed.success or parsed.data is None:
            return parsed
        reply = parsed.data
        if reply.get("success"):
            return ProviderResult.ok(reply)
        status = int(reply.get("statusCode") or 0)
        code = error_code_for_status(status) if status else ErrorCode.NETWORK
        return ProviderResult.fail(
            f"WebDAV {method} failed: {status} {reply.get('error') or ''}".strip(), code
        )

    async def test_connection(self) -> ProviderResult[bool]:
        result = await self._dav("PROPFIND", "/", headers={"Depth": "0"})
        if not result.success:
            return ProviderResult.fail(result.error or "Connection test failed", result.error_code)
        return ProviderResult.ok(True)

    async def _propfind(self, path: str, depth: str) -> ProviderResult[list[CloudFile]]:
        result = await self._dav("PROPFIND", path, headers={"Depth": depth})
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "PROPFIND failed", result.error_code)
        assert self._credentials is not None
        files = parse_multistatus(
            str(result.data.get("data") or ""), server_prefix(self._credentials)
        )
        return ProviderResult.ok(files)

    async def list_files(
        self, path: str, cursor: str | None = None
    ) -> ProviderResult[ListFilesResult]:
        found = await self._propfind(path, "1")
        if not found.success or found.data is None:
            return ProviderResult.fail(found.error or "List failed", found.error_code)
        own_path = normalize_path(path)
        children = [f for f in found.data if f.path != own_path]
        return ProviderResult.ok(ListFilesResult(files=children, has_more=False))

    async def get_file(self, file_id: str) -> ProviderResult[CloudFile]:
        return await self.get_file_by_path(file_id)

    async def get_file_by_path(self, path: str) -> ProviderResult[CloudFile]:
        found = await self._propfind(path, "0")
        if not found.success or found.data is None:
            return ProviderResult.fail(found.error or "Get file failed", found.error_code)
        if not found.data:
            return ProviderResult.fail(f"File not found: {path}", ErrorCode.NOT_FOUND)
        return ProviderResult.ok(found.data[0])

    async def read_file(self, file_id: str) -> ProviderResult[FileContent]:
        result = await self._dav("GET", file_id)
        if not result.success or result.data is None:
            return ProviderResult.fail(result.error or "Read failed", result.error_code)
        data = result.data.get("data") or ""
        mime_type = guess_mime_type(file_id)
        if result.data.get("encoding") == "base64":
            if _is_text_mime(mime_type):
                data = base64.b64decode(data).decode("utf-8")
                return ProviderResult.ok(FileContent(data=data, mime_type=mime_type))
            return ProviderResult.ok(FileContent(data=data, encoding="base64", mime_type=mime_type))
        return ProviderResult.ok(FileContent(data=str(data), mime_type=mime_type))

    async def write_file(
        self, path: str, content: FileContent, overwrite: bool = True
    ) -> ProviderResult[CloudFile]:
        parent_path, name = parent_and_name(path)
        if not name:
            return ProviderResult.fail("Cannot write to the root collection", ErrorCode.PROVIDER)
        if parent_path != "/":
            parent = await self.create_folder(parent_path)
            if not parent.success:
                return parent
        headers = {"Content-Type": content.mime_type}
        if not overwrite:
            headers["If-None-Match"] = "*"
        if content.encoding == "utf-8" and isinstance(content.data, str):
            result = await self._dav("PUT", path, headers=headers, body=content.data)
        else:
            encoded = base64.b64encode(content.to_bytes()).decode()
            result = await self._dav(
                "PUT", path, headers=headers, body=encoded, body_encoding="base64"
            )
        if not result.success:
            return ProviderResult.fail(result.error or "Write failed", result.error_code)
        return await self.get_file_by_path(path)

    async def delete_file(self, file_id: str) -> ProviderResult[bool]:
        result = await self._dav("DELETE", file_id)
        if not result.success:
            return ProviderResult.fail(result.error or "Delete failed", result.error_code)
        return ProviderResult.ok(True)

    async def move_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        return await self._relocate("MOVE", file_id, new_path)

    async def copy_file(self, file_id: str, new_path: str) -> ProviderResult[CloudFile]:
        return await self._relocate("COPY", file_id, new_path)

    async def _relocate(
        self, method: str, file_id: str, new_path: str
    ) -> ProviderResult[CloudFile]:
        if self._credentials is None:
            return ProviderResult.fail("No credentials set", ErrorCode.AUTH)
        result = await self._dav(
            method,
            file_id,
            headers={"Destination": self._full_url(new_path), "Overwrite": "T"},
        )
        if not result.success:
            return ProviderResult.fail(result.error or f"{method} failed", result.error_code)
        return await self.get_file_by_path(new_path)

    async def create_folder(self, path: str) -> ProviderResult[CloudFile]:
        current = ""
        for segment in split_path(path):
            current = f"{current}/{segment}"
            exists = await self.get_file_by_path(current)
            if exists.success:
                continue
            if not exists.is_not_found:
                return exists
            made = await self._dav("MKCOL", current)
            # 405 Method Not Allowed: the collection already exists
            if not made.success and " 405 " not in f"{made.error} ":
                return ProviderResult.fail(made.error or "MKCOL failed", made.error_code)
        return await self.get_file_by_path(path)
