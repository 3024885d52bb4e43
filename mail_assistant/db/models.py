"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mail_assistant.db.base import Base
from mail_assistant.db.types import UTCDateTime


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    One end-user mailbox (the sync identity).

    The lower-cased email address is the identity key for Gmail push
    notifications, watch registration, and SSE fan-out. Google tokens are
    stored Fernet-encrypted.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    picture: Mapped[str | None] = mapped_column(String(500), nullable=True)

    google_access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    google_refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    google_token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Gmail sync cursor and watch (users.watch) state
    last_history_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    watch_expiration: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_now_utc, nullable=False)
