"""Contract between the sync engine and local record stores."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from cloudsync.providers.base import FileContent, compute_checksum
from cloudsync.services.crypto_service import decrypt_value, encrypt_value
from cloudsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from datetime import datetime

logger = logging.getLogger(__name__)


def build_remote_path(app_folder: str, record_type: str, local_id: str) -> str:
    """Remote location of a record: ``/{app_folder}/{record_type}s/{local_id}.json``."""
    return f"/{app_folder.strip('/')}/{record_type}s/{local_id}.json"


@runtime_checkable
class RecordAdapter(Protocol):
    """What the engine needs from a local record store."""

    async def load_local_content(self, local_id: str) -> FileContent | None: ...

    async def save_local_content(self, local_id: str, content: FileContent) -> bool: ...

    async def mark_synced(self, local_id: str, at: datetime) -> None: ...


class Cipher(Protocol):
    """Encryption-at-rest capability for local record bodies."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class PlaintextCipher:
    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext


class FernetCipher:
    """Fernet encryption keyed from a passphrase."""

    def __init__(self, secret_key: str) -> None:
        self._secret_key = secret_key

    def encrypt(self, plaintext: str) -> str:
        return encrypt_value(plaintext, self._secret_key)

    def decrypt(self, ciphertext: str) -> str:
        return decrypt_value(ciphertext, self._secret_key)


@dataclass
class LocalRecord:
    """A local record as the sync layer sees it. ``content`` is ciphertext."""

    id: str
    content: str
    checksum: str
    created_at: datetime
    updated_at: datetime
    synced_at: datetime | None = None
    deleted: bool = False

    @property
    def needs_sync(self) -> bool:
        return self.synced_at is None or self.updated_at > self.synced_at


class InMemoryRecordAdapter:
    """Record store kept in memory, with bodies encrypted by ``cipher``."""

    def __init__(
        self,
        record_type: str,
        cipher: Cipher | None = None,
        *,
        mime_type: str = "application/json",
    ) -> None:
        self.record_type = record_type
        self._cipher = cipher or PlaintextCipher()
        self._mime_type = mime_type
        self._records: dict[str, LocalRecord] = {}

    def put(self, local_id: str, text: str) -> LocalRecord:
        """Create or update a record from plaintext."""
        now = now_utc()
        existing = self._records.get(local_id)
        record = LocalRecord(
            id=local_id,
            content=self._cipher.encrypt(text),
            checksum=compute_checksum(text.encode("utf-8")),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            synced_at=existing.synced_at if existing else None,
        )
        self._records[local_id] = record
        return record

    def delete(self, local_id: str) -> None:
        record = self._records.get(local_id)
        if record is not None:
            record.deleted = True
            record.updated_at = now_utc()

    def get(self, local_id: str) -> LocalRecord | None:
        return self._records.get(local_id)

    def read_text(self, local_id: str) -> str | None:
        record = self._records.get(local_id)
        if record is None or record.deleted:
            return None
        return self._cipher.decrypt(record.content)

    def records_needing_sync(self) -> list[LocalRecord]:
        return [r for r in self._records.values() if r.needs_sync]

    async def load_local_content(self, local_id: str) -> FileContent | None:
        text = self.read_text(local_id)
        if text is None:
            return None
        return FileContent.from_text(text, self._mime_type)

    async def save_local_content(self, local_id: str, content: FileContent) -> bool:
        try:
            text = content.to_bytes().decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Refusing non-text content for %s", local_id)
            return False
        record = self.put(local_id, text)
        record.synced_at = record.updated_at
        return True

    async def mark_synced(self, local_id: str, at: datetime) -> None:
        record = self._records.get(local_id)
        if record is not None:
            record.synced_at = at
