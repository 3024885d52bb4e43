"""Gmail REST client used by watch registration and history reconciliation.

Only the calls the sync pipeline needs live here: users.history.list,
users.watch, users.stop and users.messages.get. Mailbox CRUD (list, send,
trash, mark-read) belongs to the mail routes and is not part of this module.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Callable, Protocol

import httpx
from starlette.concurrency import run_in_threadpool

from mail_assistant.core.config import settings
from mail_assistant.core.exceptions import MailboxProviderError, StaleCursor
from mail_assistant.services import oauth_service
from mail_assistant.services.http_service import request_with_retries
from mail_assistant.services.identity_store import GoogleCredentials, IdentityRecord, IdentityStore

logger = logging.getLogger(__name__)

_GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
_GMAIL_HISTORY_URL = f"{_GMAIL_API_BASE}/history"
_GMAIL_WATCH_URL = f"{_GMAIL_API_BASE}/watch"
_GMAIL_STOP_URL = f"{_GMAIL_API_BASE}/stop"
_GMAIL_MESSAGE_GET_URL = _GMAIL_API_BASE + "/messages/{message_id}"

INBOX_LABEL = "INBOX"
UNREAD_LABEL = "UNREAD"
HISTORY_TYPES = ("messageAdded", "messageDeleted")


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class WatchRegistration:
    """Result of users.watch."""

    history_id: str
    expiration: datetime


@dataclass(frozen=True)
class EmailAddress:
    email: str
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"email": self.email, "name": self.name}


@dataclass(frozen=True)
class EmailSummary:
    """Parsed Gmail message, in the shape pushed to clients."""

    id: str
    thread_id: str | None
    subject: str
    snippet: str
    from_address: EmailAddress
    to_addresses: list[EmailAddress] = field(default_factory=list)
    cc_addresses: list[EmailAddress] = field(default_factory=list)
    date: datetime | None = None
    labels: list[str] = field(default_factory=list)
    body_text: str | None = None
    body_html: str | None = None

    @property
    def is_read(self) -> bool:
        return UNREAD_LABEL not in self.labels

    @property
    def in_inbox(self) -> bool:
        return INBOX_LABEL in self.labels

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "subject": self.subject,
            "snippet": self.snippet,
            "from_address": self.from_address.to_dict(),
            "to_addresses": [addr.to_dict() for addr in self.to_addresses],
            "cc_addresses": [addr.to_dict() for addr in self.cc_addresses],
            "date": self.date.isoformat() if self.date else None,
            "is_read": self.is_read,
            "labels": list(self.labels),
            "body_text": self.body_text,
            "body_html": self.body_html,
        }


class MailboxProvider(Protocol):
    """Remote mailbox operations the sync core depends on."""

    async def list_history_since(self, start_history_id: str) -> list[dict[str, Any]]:
        """Return history records since the cursor; raises StaleCursor when expired."""

    async def register_watch(
        self, topic_name: str, label_ids: list[str] | None = None
    ) -> WatchRegistration:
        """Register (or renew) users.watch."""

    async def stop_watch(self) -> None:
        """Stop push notifications for the mailbox."""

    async def fetch_message(self, message_id: str) -> EmailSummary:
        """Fetch one message in full."""


TokenRefreshCallback = Callable[[str, datetime | None, str | None], Any]


# =============================================================================
# Message parsing
# =============================================================================


def _get_header(headers: list[dict[str, Any]], name: str) -> str:
    wanted = name.lower()
    for header in headers:
        if str(header.get("name", "")).lower() == wanted:
            return str(header.get("value") or "")
    return ""


def _parse_addresses(raw: str) -> list[EmailAddress]:
    out: list[EmailAddress] = []
    for display, address in getaddresses([raw]) if raw else []:
        if not address:
            continue
        out.append(EmailAddress(email=address, name=display or None))
    return out


def _decode_body(data: str | None) -> str | None:
    if not data:
        return None
    # Gmail bodies are URL-safe base64 without required padding.
    padding = "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode((data + padding).encode("utf-8")).decode(
            "utf-8", errors="replace"
        )
    except (binascii.Error, ValueError):
        return None


def _extract_body(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    text_body: str | None = None
    html_body: str | None = None

    def visit(part: dict[str, Any]) -> None:
        nonlocal text_body, html_body
        mime_type = part.get("mimeType") or ""
        data = (part.get("body") or {}).get("data")
        if mime_type == "text/plain" and data:
            text_body = _decode_body(data)
        elif mime_type == "text/html" and data:
            html_body = _decode_body(data)
        for child in part.get("parts") or []:
            visit(child)

    if payload.get("parts"):
        for part in payload["parts"]:
            visit(part)
    else:
        body = _decode_body((payload.get("body") or {}).get("data"))
        if payload.get("mimeType") == "text/html":
            html_body = body
        else:
            text_body = body
    return text_body, html_body


def _parse_date(value: str, internal_date: str | None) -> datetime | None:
    if value:
        try:
            parsed = parsedate_to_datetime(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (TypeError, ValueError):
            pass
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
    return None


def parse_message(message: dict[str, Any], *, include_body: bool = True) -> EmailSummary:
    """Convert a users.messages.get payload into an EmailSummary."""
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    from_list = _parse_addresses(_get_header(headers, "From"))

    text_body = html_body = None
    if include_body:
        text_body, html_body = _extract_body(payload)

    return EmailSummary(
        id=str(message.get("id") or ""),
        thread_id=message.get("threadId"),
        subject=_get_header(headers, "Subject") or "(No Subject)",
        snippet=message.get("snippet") or "",
        from_address=from_list[0] if from_list else EmailAddress(email=""),
        to_addresses=_parse_addresses(_get_header(headers, "To")),
        cc_addresses=_parse_addresses(_get_header(headers, "Cc")),
        date=_parse_date(_get_header(headers, "Date"), message.get("internalDate")),
        labels=[str(label) for label in message.get("labelIds") or []],
        body_text=text_body,
        body_html=html_body,
    )


def parse_watch_expiration(value: object | None) -> datetime | None:
    """Gmail returns watch expiration as epoch milliseconds (string)."""
    if value is None:
        return None
    try:
        millis = int(str(value))
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        detail = (data.get("error") or {}).get("message")
    except (ValueError, AttributeError):
        detail = None
    return detail or response.text or "unknown error"


# =============================================================================
# Client
# =============================================================================


class GmailClient:
    """Gmail API client bound to one identity's credentials.

    Access tokens are refreshed when expired (or when Gmail answers 401) and
    the refreshed token is handed to ``on_token_refresh`` for persistence.
    """

    def __init__(
        self,
        credentials: GoogleCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
        timeout: float | None = None,
    ):
        self._credentials = credentials
        self._http_client = http_client
        self._on_token_refresh = on_token_refresh
        self._timeout = timeout or settings.GMAIL_REQUEST_TIMEOUT_SECONDS
        self._refresh_lock = asyncio.Lock()

    async def _refresh(self, stale_token: str) -> bool:
        """Swap ``stale_token`` for a fresh one; concurrent callers share one refresh."""
        async with self._refresh_lock:
            if self._credentials.access_token != stale_token:
                return True
            refreshed = await oauth_service.refresh_gmail_token(
                self._credentials.refresh_token, client=self._http_client
            )
            if refreshed is None:
                return False
            self._credentials = GoogleCredentials(
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token or self._credentials.refresh_token,
                expires_at=refreshed.expires_at,
            )
            if self._on_token_refresh is not None:
                result = self._on_token_refresh(
                    refreshed.access_token, refreshed.expires_at, refreshed.refresh_token
                )
                if inspect.isawaitable(result):
                    await result
            return True

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        async def do_request(http: httpx.AsyncClient) -> httpx.Response:
            return await request_with_retries(
                lambda: http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {self._credentials.access_token}"},
                    timeout=self._timeout,
                )
            )

        try:
            if self._http_client is not None:
                return await do_request(self._http_client)
            async with httpx.AsyncClient() as http:
                return await do_request(http)
        except httpx.RequestError as exc:
            raise MailboxProviderError(f"Gmail request failed: {exc}") from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if self._credentials.is_expired() and self._credentials.refresh_token:
            await self._refresh(self._credentials.access_token)

        sent_token = self._credentials.access_token
        response = await self._send(method, url, params=params, json=json)
        if response.status_code == 401 and self._credentials.refresh_token:
            if await self._refresh(sent_token):
                response = await self._send(method, url, params=params, json=json)
        return response

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        json: dict[str, Any] | None = None,
        operation: str,
    ) -> dict[str, Any]:
        response = await self._request(method, url, params=params, json=json)
        if response.status_code >= 400:
            raise MailboxProviderError(
                f"Gmail {operation} error {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            result = response.json()
        except ValueError as exc:
            raise MailboxProviderError(f"Gmail {operation} response was not JSON") from exc
        if not isinstance(result, dict):
            raise MailboxProviderError(f"Gmail {operation} response was not an object")
        return result

    async def list_history_since(self, start_history_id: str) -> list[dict[str, Any]]:
        """Collect every users.history.list page since ``start_history_id``."""
        records: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: list[tuple[str, str]] = [
                ("startHistoryId", str(start_history_id)),
                ("labelId", INBOX_LABEL),
                ("maxResults", "500"),
            ]
            params.extend(("historyTypes", history_type) for history_type in HISTORY_TYPES)
            if page_token:
                params.append(("pageToken", page_token))
            try:
                payload = await self._request_json(
                    "GET", _GMAIL_HISTORY_URL, params=params, operation="history"
                )
            except MailboxProviderError as exc:
                # 404 means startHistoryId is too old; a full sync is required.
                if exc.status_code == 404:
                    raise StaleCursor(str(start_history_id)) from exc
                raise
            records.extend(payload.get("history") or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return records

    async def register_watch(
        self, topic_name: str, label_ids: list[str] | None = None
    ) -> WatchRegistration:
        body: dict[str, Any] = {"topicName": topic_name}
        if label_ids:
            body["labelIds"] = label_ids
            body["labelFilterBehavior"] = "INCLUDE"
        payload = await self._request_json("POST", _GMAIL_WATCH_URL, json=body, operation="watch")
        history_id = payload.get("historyId")
        expiration = parse_watch_expiration(payload.get("expiration"))
        if history_id is None or expiration is None:
            raise MailboxProviderError("Gmail watch response missing historyId or expiration")
        logger.info("Gmail watch registered, historyId=%s expiration=%s", history_id, expiration)
        return WatchRegistration(history_id=str(history_id), expiration=expiration)

    async def stop_watch(self) -> None:
        await self._request_json("POST", _GMAIL_STOP_URL, operation="stop")
        logger.info("Gmail watch stopped")

    async def fetch_message(self, message_id: str) -> EmailSummary:
        payload = await self._request_json(
            "GET",
            _GMAIL_MESSAGE_GET_URL.format(message_id=message_id),
            params={"format": "full"},
            operation="message",
        )
        return parse_message(payload)


MailboxProviderFactory = Callable[[IdentityRecord], MailboxProvider]


def make_gmail_provider_factory(
    identity_store: IdentityStore,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> MailboxProviderFactory:
    """Build GmailClients whose refreshed tokens are written back to the store."""

    def factory(record: IdentityRecord) -> MailboxProvider:
        async def persist_token(
            access_token: str, expires_at: datetime | None, refresh_token: str | None
        ) -> None:
            fields: dict[str, Any] = {
                "google_access_token": access_token,
                "google_token_expires_at": expires_at,
            }
            if refresh_token:
                fields["google_refresh_token"] = refresh_token
            await run_in_threadpool(identity_store.update, record.identity, **fields)

        return GmailClient(
            record.credentials, http_client=http_client, on_token_refresh=persist_token
        )

    return factory
