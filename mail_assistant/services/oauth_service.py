"""Google OAuth token refresh for stored mailbox credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from mail_assistant.core.config import settings

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh slightly early so a token does not expire mid-request.
_EXPIRY_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    expires_at: datetime | None
    refresh_token: str | None = None


async def refresh_gmail_token(
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> RefreshedToken | None:
    """Exchange a refresh token for a new access token. Returns None on failure."""
    if not refresh_token:
        return None

    async def _post(http: httpx.AsyncClient) -> httpx.Response:
        return await http.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=settings.GMAIL_REQUEST_TIMEOUT_SECONDS,
        )

    try:
        if client is not None:
            response = await _post(client)
        else:
            async with httpx.AsyncClient() as http:
                response = await _post(http)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Gmail token refresh failed: %s", e)
        return None

    access_token = data.get("access_token")
    if not access_token:
        logger.error("Gmail token refresh response missing access_token")
        return None

    expires_at = None
    if data.get("expires_in"):
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"])) - _EXPIRY_SKEW
        )
    return RefreshedToken(
        access_token=access_token,
        expires_at=expires_at,
        refresh_token=data.get("refresh_token"),
    )
