"""Cloud connection model."""

from __future__ import annotations

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cloudsync.models.base import Base


class CloudConnection(Base):
    """One configured link between a user and a cloud storage backend.

    ``auth_payload`` holds either OAuth tokens or server credentials as
    Fernet-encrypted JSON; ``auth_kind`` records which of the two it is.
    """

    __tablename__ = "cloud_connections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    auth_kind: Mapped[str] = mapped_column(String, nullable=False)
    auth_payload: Mapped[str] = mapped_column(Text, nullable=False)
    sync_folder_path: Mapped[str] = mapped_column(Text, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
