"""Decode Gmail Pub/Sub push envelopes."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from mail_assistant.core.exceptions import MalformedNotification


@dataclass(frozen=True)
class PushNotification:
    """Typed view of one push delivery."""

    identity: str
    cursor_hint: str
    delivery_id: str


def _load_envelope(envelope: bytes | str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(envelope, dict):
        return envelope
    try:
        data = json.loads(envelope)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedNotification("Push envelope is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedNotification("Push envelope is not an object")
    return data


def decode_notification(envelope: bytes | str | dict[str, Any]) -> PushNotification:
    """
    Decode a Pub/Sub push body into ``(identity, cursor_hint, delivery_id)``.

    The envelope looks like::

        {"message": {"data": "<base64 JSON>", "messageId": "..."}, "subscription": "..."}

    where the inner JSON carries ``emailAddress`` and ``historyId``.

    Raises:
        MalformedNotification: missing ``message.data`` or an inner payload that
            is not base64, not UTF-8, not JSON, or lacks the required fields.
    """
    body = _load_envelope(envelope)
    message = body.get("message")
    if not isinstance(message, dict) or not message.get("data"):
        raise MalformedNotification("Invalid Pub/Sub message format")

    try:
        raw = base64.b64decode(message["data"], validate=False)
        inner = json.loads(raw.decode("utf-8"))
    except (binascii.Error, TypeError, UnicodeDecodeError, ValueError) as exc:
        raise MalformedNotification("Pub/Sub message data is not base64-encoded JSON") from exc

    if not isinstance(inner, dict):
        raise MalformedNotification("Pub/Sub message data is not an object")

    identity = str(inner.get("emailAddress") or "").strip().lower()
    history_id = inner.get("historyId")
    if not identity or history_id in (None, ""):
        raise MalformedNotification("Pub/Sub message data lacks emailAddress or historyId")

    delivery_id = message.get("messageId") or message.get("message_id") or ""
    return PushNotification(
        identity=identity,
        cursor_hint=str(history_id),
        delivery_id=str(delivery_id),
    )
