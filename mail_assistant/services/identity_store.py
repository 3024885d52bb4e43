"""Identity store: per-mailbox cursor, watch state, and Google credentials."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Protocol

from sqlalchemy.orm import Session

from mail_assistant.core.encryption import decrypt_token, encrypt_token
from mail_assistant.core.exceptions import IdentityNotFound
from mail_assistant.core.structured_logging import mask_email
from mail_assistant.db.models import User

logger = logging.getLogger(__name__)

# Plain-text field name -> encrypted column
_ENCRYPTED_FIELDS = {
    "google_access_token": "google_access_token_encrypted",
    "google_refresh_token": "google_refresh_token_encrypted",
}
_PLAIN_FIELDS = {
    "last_history_id",
    "watch_expiration",
    "google_token_expires_at",
    "name",
    "picture",
}


def normalize_identity(value: str) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True)
class GoogleCredentials:
    """Decrypted Google OAuth credential pair."""

    access_token: str
    refresh_token: str
    expires_at: datetime | None = None

    def is_expired(self, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))


@dataclass(frozen=True)
class IdentityRecord:
    """Snapshot of one identity row."""

    identity: str
    last_history_id: str | None
    watch_expiration: datetime | None
    credentials: GoogleCredentials
    name: str | None = None
    picture: str | None = None


class IdentityStore(Protocol):
    def get(self, identity: str) -> IdentityRecord | None:
        """Return the identity snapshot or None when unknown."""

    def update(self, identity: str, **fields: Any) -> IdentityRecord:
        """Partially update one identity; raises IdentityNotFound."""


class SqlIdentityStore:
    """SQLAlchemy-backed identity store.

    Each call opens and closes its own session so the store can be used from
    request handlers and from detached background tasks alike. Updates touch
    exactly one row.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def _find(db: Session, identity: str) -> User | None:
        return db.query(User).filter(User.email == normalize_identity(identity)).first()

    @staticmethod
    def _to_record(user: User) -> IdentityRecord:
        return IdentityRecord(
            identity=user.email,
            last_history_id=user.last_history_id,
            watch_expiration=user.watch_expiration,
            credentials=GoogleCredentials(
                access_token=decrypt_token(user.google_access_token_encrypted),
                refresh_token=decrypt_token(user.google_refresh_token_encrypted),
                expires_at=user.google_token_expires_at,
            ),
            name=user.name,
            picture=user.picture,
        )

    def get(self, identity: str) -> IdentityRecord | None:
        with self._session() as db:
            user = self._find(db, identity)
            if user is None:
                return None
            return self._to_record(user)

    def update(self, identity: str, **fields: Any) -> IdentityRecord:
        unknown = set(fields) - _PLAIN_FIELDS - set(_ENCRYPTED_FIELDS)
        if unknown:
            raise ValueError(f"Unknown identity fields: {sorted(unknown)}")

        with self._session() as db:
            user = self._find(db, identity)
            if user is None:
                raise IdentityNotFound(normalize_identity(identity))
            for key, value in fields.items():
                if key in _ENCRYPTED_FIELDS:
                    setattr(user, _ENCRYPTED_FIELDS[key], encrypt_token(value) or None)
                else:
                    setattr(user, key, value)
            user.updated_at = datetime.now(timezone.utc)
            db.add(user)
            db.commit()
            db.refresh(user)
            logger.debug(
                "Identity %s updated: %s", mask_email(user.email), ", ".join(sorted(fields))
            )
            return self._to_record(user)

    def upsert(
        self,
        identity: str,
        *,
        access_token: str,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        name: str | None = None,
        picture: str | None = None,
    ) -> IdentityRecord:
        """Create or refresh an identity after a successful Google sign-in.

        A missing refresh token keeps the stored one (Google only returns it
        on the first consent).
        """
        email = normalize_identity(identity)
        with self._session() as db:
            user = self._find(db, email)
            if user is None:
                user = User(email=email)
                logger.info("Identity created: %s", mask_email(email))
            user.name = name if name is not None else user.name
            user.picture = picture if picture is not None else user.picture
            user.google_access_token_encrypted = encrypt_token(access_token) or None
            if refresh_token:
                user.google_refresh_token_encrypted = encrypt_token(refresh_token)
            user.google_token_expires_at = token_expires_at
            user.updated_at = datetime.now(timezone.utc)
            db.add(user)
            db.commit()
            db.refresh(user)
            return self._to_record(user)
