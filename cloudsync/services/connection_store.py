"""Durable storage of cloud connections with encrypted auth payloads."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from cloudsync.database import storage_session
from cloudsync.models.connection import CloudConnection
from cloudsync.providers.base import AuthMethod, CredentialAuth, OAuthTokens
from cloudsync.providers.registry import auth_method_for
from cloudsync.services.crypto_service import decrypt_json, encrypt_json
from cloudsync.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def new_connection_id(provider: str) -> str:
    return f"{provider}_{uuid.uuid4().hex}"


class ConnectionStore:
    """CRUD over ``cloud_connections``; every mutation commits before returning.

    Database failures raise StorageUnavailable.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], secret_key: str) -> None:
        self._session_factory = session_factory
        self._secret_key = secret_key

    async def create(
        self,
        user_id: str,
        provider: str,
        auth: OAuthTokens | CredentialAuth,
        *,
        display_name: str = "",
        sync_folder_path: str = "/",
        is_default: bool = False,
    ) -> CloudConnection:
        """Build and save a new connection for ``user_id``.

        Raises ValueError when the auth payload does not match the
        provider's auth family.
        """
        now = format_datetime(now_utc())
        connection = CloudConnection(
            id=new_connection_id(provider),
            user_id=user_id,
            provider=provider,
            display_name=display_name,
            auth_kind=auth_method_for(provider).value,
            auth_payload="",
            sync_folder_path=sync_folder_path,
            is_default=is_default,
            is_connected=True,
            created_at=now,
            updated_at=now,
        )
        self.write_auth(connection, auth)
        return await self.save(connection)

    async def save(self, connection: CloudConnection) -> CloudConnection:
        """Insert or update a connection.

        Setting ``is_default`` clears the flag on the user's other
        connections in the same transaction.
        """
        connection.updated_at = format_datetime(now_utc())
        async with storage_session(self._session_factory) as session:
            if connection.is_default:
                await session.execute(
                    update(CloudConnection)
                    .where(
                        CloudConnection.user_id == connection.user_id,
                        CloudConnection.id != connection.id,
                    )
                    .values(is_default=False)
                )
            merged = await session.merge(connection)
            await session.commit()
            return merged

    async def get(self, connection_id: str) -> CloudConnection | None:
        async with storage_session(self._session_factory) as session:
            return await session.get(CloudConnection, connection_id)

    async def list_for_user(self, user_id: str) -> list[CloudConnection]:
        """Return the user's connections, oldest first."""
        stmt = (
            select(CloudConnection)
            .where(CloudConnection.user_id == user_id)
            .order_by(CloudConnection.created_at, CloudConnection.id)
        )
        async with storage_session(self._session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_default(self, user_id: str) -> CloudConnection | None:
        """Return the flagged default, else the oldest connection, else None."""
        connections = await self.list_for_user(user_id)
        for connection in connections:
            if connection.is_default:
                return connection
        return connections[0] if connections else None

    async def set_default(self, user_id: str, connection_id: str) -> CloudConnection | None:
        """Make ``connection_id`` the user's default. Returns None if not found."""
        connection = await self.get(connection_id)
        if connection is None or connection.user_id != user_id:
            return None
        connection.is_default = True
        return await self.save(connection)

    async def remove(self, connection_id: str) -> bool:
        """Delete a connection. Returns True if found and deleted."""
        async with storage_session(self._session_factory) as session:
            connection = await session.get(CloudConnection, connection_id)
            if connection is None:
                return False
            await session.delete(connection)
            await session.commit()
        logger.info("Removed connection %s", connection_id)
        return True

    async def update_status(
        self, connection_id: str, *, is_connected: bool, last_error: str | None = None
    ) -> None:
        await self._update(connection_id, is_connected=is_connected, last_error=last_error)

    async def update_auth(self, connection_id: str, auth: OAuthTokens | CredentialAuth) -> None:
        """Persist a refreshed token set or new credentials."""
        await self._update(
            connection_id,
            auth_payload=encrypt_json(auth.to_dict(), self._secret_key),
            is_connected=True,
            last_error=None,
        )

    async def touch_last_sync(self, connection_id: str, at: datetime) -> None:
        await self._update(connection_id, last_sync_at=format_datetime(at))

    async def _update(self, connection_id: str, **values: object) -> None:
        values["updated_at"] = format_datetime(now_utc())
        async with storage_session(self._session_factory) as session:
            await session.execute(
                update(CloudConnection)
                .where(CloudConnection.id == connection_id)
                .values(**values)
            )
            await session.commit()

    def read_auth(self, connection: CloudConnection) -> OAuthTokens | CredentialAuth:
        """Decrypt the auth payload into the type matching the provider family.

        Raises ValueError if the payload cannot be decrypted or parsed.
        """
        payload = decrypt_json(connection.auth_payload, self._secret_key)
        if connection.auth_kind == AuthMethod.OAUTH:
            return OAuthTokens.from_dict(payload)
        return CredentialAuth.from_dict(payload)

    def write_auth(self, connection: CloudConnection, auth: OAuthTokens | CredentialAuth) -> None:
        """Encrypt ``auth`` onto ``connection``; the family must match its provider."""
        expected = auth_method_for(connection.provider)
        actual = AuthMethod.OAUTH if isinstance(auth, OAuthTokens) else AuthMethod.CREDENTIALS
        if expected != actual:
            msg = (
                f"{connection.provider} connections require {expected.value} auth, "
                f"got {actual.value}"
            )
            raise ValueError(msg)
        connection.auth_kind = actual.value
        connection.auth_payload = encrypt_json(auth.to_dict(), self._secret_key)
