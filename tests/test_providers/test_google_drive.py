"""Tests for the Google Drive provider against a mocked Drive API."""

from __future__ import annotations

import json
import re
from urllib.parse import parse_qs, urlparse

import httpx

from cloudsync.providers.base import ErrorCode, FileContent, compute_checksum
from cloudsync.providers.google_drive import (
    FOLDER_MIME,
    GOOGLE_TOKEN_URL,
    GoogleDriveProvider,
)
from tests.conftest import valid_tokens

_QUERY = re.compile(r"name='(?P<name>(?:[^'\\]|\\.)*)' and '(?P<parent>[^']+)' in parents")


class FakeDrive:
    """Just enough of Drive v3 to exercise path resolution and uploads."""

    def __init__(self) -> None:
        self.items: dict[str, dict[str, object]] = {}
        self.content: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self._next = 0

    def add(self, name: str, parent: str, *, folder: bool = False, data: bytes = b"") -> str:
        self._next += 1
        item_id = f"id{self._next}"
        item: dict[str, object] = {
            "id": item_id,
            "name": name,
            "mimeType": FOLDER_MIME if folder else "application/json",
            "parents": [parent],
            "modifiedTime": "2026-10-17T05:48:12.345Z",
        }
        if not folder:
            item["size"] = str(len(data))
            item["md5Checksum"] = compute_checksum(data, "md5")
            self.content[item_id] = data
        self.items[item_id] = item
        return item_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params
        if request.method == "GET" and path == "/drive/v3/files":
            match = _QUERY.search(params["q"])
            assert match is not None
            name = match["name"].replace("\\'", "'")
            found = [
                item
                for item in self.items.values()
                if item["name"] == name and match["parent"] in item["parents"]  # type: ignore[operator]
            ]
            if "mimeType='" in params["q"]:
                found = [item for item in found if item["mimeType"] == FOLDER_MIME]
            return httpx.Response(200, json={"files": found})
        if request.method == "POST" and path == "/drive/v3/files":
            body = json.loads(request.content)
            item_id = self.add(body["name"], body["parents"][0], folder=True)
            return httpx.Response(200, json=self.items[item_id])
        if request.method == "POST" and path == "/upload/drive/v3/files":
            meta_part = request.content.split(b"\r\n\r\n", 2)[1].split(b"\r\n--", 1)[0]
            metadata = json.loads(meta_part)
            data = request.content.split(b"\r\n\r\n")[2].rsplit(b"\r\n--", 1)[0]
            item_id = self.add(metadata["name"], metadata["parents"][0], data=data)
            return httpx.Response(200, json=self.items[item_id])
        file_match = re.fullmatch(r"/(upload/)?drive/v3/files/(?P<id>[^/]+)", path)
        if file_match is not None:
            item_id = file_match["id"]
            if item_id not in self.items:
                return httpx.Response(404, json={"error": {"message": "File not found"}})
            if request.method == "PATCH":
                self.content[item_id] = request.content
                self.items[item_id]["md5Checksum"] = compute_checksum(request.content, "md5")
                return httpx.Response(200, json=self.items[item_id])
            if request.method == "DELETE":
                del self.items[item_id]
                return httpx.Response(204)
            if params.get("alt") == "media":
                return httpx.Response(200, content=self.content[item_id])
            return httpx.Response(200, json=self.items[item_id])
        return httpx.Response(500, text=f"unexpected {request.method} {path}")

    def provider(self) -> GoogleDriveProvider:
        return GoogleDriveProvider(
            "client-id", "client-secret", valid_tokens(), transport=httpx.MockTransport(self.handler)
        )


class TestAuth:
    def test_auth_url(self) -> None:
        provider = GoogleDriveProvider("client-id", "client-secret")

        result = provider.get_auth_url("http://localhost:8000/api/oauth/callback", "st4te")

        assert result.data is not None
        query = parse_qs(urlparse(result.data).query)
        assert query["client_id"] == ["client-id"]
        assert query["state"] == ["st4te"]
        assert query["access_type"] == ["offline"]
        assert "drive.file" in query["scope"][0]

    def test_auth_url_requires_client_id(self) -> None:
        result = GoogleDriveProvider("", "").get_auth_url("http://x/cb", "s")
        assert result.error_code == ErrorCode.CONFIGURATION

    async def test_code_exchange(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600}
            )

        provider = GoogleDriveProvider("cid", "csecret", transport=httpx.MockTransport(handler))

        result = await provider.handle_auth_callback("the-code", "http://x/cb")

        assert result.success
        assert result.data is not None
        assert result.data.refresh_token == "rt"
        assert provider.is_authenticated()
        assert str(seen[0].url) == GOOGLE_TOKEN_URL
        form = parse_qs(seen[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]

    async def test_refresh_rejected_is_auth_error(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        )
        provider = GoogleDriveProvider("cid", "csecret", valid_tokens(), transport=transport)

        result = await provider.refresh_token("revoked")

        assert result.error_code == ErrorCode.AUTH

    async def test_refresh_keeps_refresh_token(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
        )
        provider = GoogleDriveProvider("cid", "csecret", transport=transport)

        result = await provider.refresh_token("keep-me")

        assert result.data is not None
        assert result.data.refresh_token == "keep-me"

    async def test_requests_without_tokens_fail_locally(self) -> None:
        drive = FakeDrive()
        provider = GoogleDriveProvider("cid", "csecret", transport=httpx.MockTransport(drive.handler))

        result = await provider.get_file_by_path("/Create App")

        assert result.error_code == ErrorCode.AUTH
        assert drive.requests == []


class TestFiles:
    async def test_get_file_by_path_walks_segments(self) -> None:
        drive = FakeDrive()
        app = drive.add("Create App", "root", folder=True)
        notes = drive.add("notes", app, folder=True)
        drive.add("n1.json", notes, data=b"{}")

        result = await drive.provider().get_file_by_path("/Create App/notes/n1.json")

        assert result.success
        assert result.data is not None
        assert result.data.path == "/Create App/notes/n1.json"
        assert result.data.checksum == compute_checksum(b"{}", "md5")
        assert result.data.modified_at is not None
        assert not result.data.is_folder

    async def test_missing_path_is_not_found(self) -> None:
        drive = FakeDrive()
        drive.add("Create App", "root", folder=True)

        result = await drive.provider().get_file_by_path("/Create App/notes/n1.json")

        assert result.is_not_found

    async def test_write_new_file_creates_folders(self) -> None:
        drive = FakeDrive()
        provider = drive.provider()

        result = await provider.write_file(
            "/Create App/notes/n1.json", FileContent.from_text('{"a": 1}')
        )

        assert result.success
        folders = {i["name"] for i in drive.items.values() if i["mimeType"] == FOLDER_MIME}
        assert folders == {"Create App", "notes"}
        read_back = await provider.get_file_by_path("/Create App/notes/n1.json")
        assert read_back.data is not None
        content = await provider.read_file(read_back.data.id)
        assert content.data is not None
        assert content.data.data == '{"a": 1}'

    async def test_overwrite_patches_existing(self) -> None:
        drive = FakeDrive()
        app = drive.add("Create App", "root", folder=True)
        file_id = drive.add("n1.json", app, data=b"old")
        provider = drive.provider()

        result = await provider.write_file("/Create App/n1.json", FileContent.from_text("new"))

        assert result.success
        assert drive.content[file_id] == b"new"
        assert any(r.method == "PATCH" for r in drive.requests)

    async def test_no_overwrite_conflicts(self) -> None:
        drive = FakeDrive()
        app = drive.add("Create App", "root", folder=True)
        drive.add("n1.json", app, data=b"old")

        result = await drive.provider().write_file(
            "/Create App/n1.json", FileContent.from_text("new"), overwrite=False
        )

        assert result.error_code == ErrorCode.CONFLICT

    async def test_names_with_quotes_are_escaped(self) -> None:
        drive = FakeDrive()
        drive.add("it's.json", "root", data=b"x")

        result = await drive.provider().get_file_by_path("/it's.json")

        assert result.success

    async def test_delete(self) -> None:
        drive = FakeDrive()
        file_id = drive.add("n1.json", "root", data=b"x")
        provider = drive.provider()

        assert (await provider.delete_file(file_id)).success
        assert (await provider.delete_file(file_id)).is_not_found


class TestErrors:
    async def test_server_error_is_network(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="busy"))
        provider = GoogleDriveProvider("cid", "cs", valid_tokens(), transport=transport)

        result = await provider.get_file("abc")

        assert result.error_code == ErrorCode.NETWORK

    async def test_unauthorized_is_auth(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(401, text="expired"))
        provider = GoogleDriveProvider("cid", "cs", valid_tokens(), transport=transport)

        result = await provider.test_connection()

        assert result.error_code == ErrorCode.AUTH

    async def test_connection_failure_is_network(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        provider = GoogleDriveProvider(
            "cid", "cs", valid_tokens(), transport=httpx.MockTransport(handler)
        )

        result = await provider.get_file("abc")

        assert result.error_code == ErrorCode.NETWORK

    async def test_quota_and_account(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/about"):
                return httpx.Response(
                    200, json={"storageQuota": {"usage": "10", "limit": "100"}}
                )
            return httpx.Response(200, json={"email": "me@example.com", "name": "Me"})

        provider = GoogleDriveProvider(
            "cid", "cs", valid_tokens(), transport=httpx.MockTransport(handler)
        )

        assert (await provider.get_quota()).data == {"used": 10, "total": 100}
        assert (await provider.get_account_info()).data == {"email": "me@example.com", "name": "Me"}

    async def test_html_success_body_is_provider_error(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>portal</html>")
        )
        provider = GoogleDriveProvider("cid", "cs", valid_tokens(), transport=transport)

        lookup = await provider.get_file_by_path("/a/b.json")
        account = await provider.get_account_info()
        connected = await provider.test_connection()

        assert lookup.error_code == ErrorCode.PROVIDER
        assert account.error_code == ErrorCode.PROVIDER
        assert connected.error_code == ErrorCode.PROVIDER

    async def test_created_folder_without_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={"files": []})
            return httpx.Response(200, json={"name": "a"})

        provider = GoogleDriveProvider(
            "cid", "cs", valid_tokens(), transport=httpx.MockTransport(handler)
        )

        result = await provider.write_file("/a/b.json", FileContent.from_text("{}"))

        assert result.error_code == ErrorCode.PROVIDER
        assert result.error is not None
        assert "missing id" in result.error
