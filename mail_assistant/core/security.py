"""Security utilities for JWT session tokens and bearer credential verification."""

from datetime import datetime, timedelta, timezone
from typing import Protocol

import jwt

from mail_assistant.core.config import settings
from mail_assistant.core.exceptions import Unauthenticated


# =============================================================================
# Session Token (JWT bearer)
# =============================================================================

def create_session_token(
    email: str,
    name: str | None = None,
    picture: str | None = None,
    expires_in: timedelta | None = None,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET). The subject is the
    mailbox address, which is also the identity key for sync and fan-out.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": email.strip().lower(),
        "name": name,
        "picture": picture,
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=settings.JWT_EXPIRES_HOURS)),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# Bearer credential verification
# =============================================================================

class AuthVerifier(Protocol):
    def verify(self, credential: str | None) -> str:
        """Return the identity for a credential or raise Unauthenticated."""


class JWTAuthVerifier:
    """Verifies session JWTs (signature + expiry) and resolves the identity."""

    def verify(self, credential: str | None) -> str:
        if not credential:
            raise Unauthenticated("Token required")
        try:
            payload = decode_session_token(credential)
        except jwt.InvalidTokenError:
            raise Unauthenticated("Invalid token")
        identity = str(payload.get("sub") or "").strip().lower()
        if not identity:
            raise Unauthenticated("Invalid token")
        return identity


def extract_bearer_token(
    authorization: str | None,
    query_token: str | None = None,
) -> str | None:
    """Pick the credential from ``?token=`` or an ``Authorization: Bearer`` header."""
    if query_token:
        return query_token
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
