"""Webhook handler registry."""

from __future__ import annotations

from mail_assistant.services.webhooks.base import WebhookHandler
from mail_assistant.services.webhooks.gmail import GmailPushWebhookHandler

_HANDLERS: dict[str, WebhookHandler] = {
    "gmail": GmailPushWebhookHandler(),
}


def get_handler(name: str) -> WebhookHandler:
    handler = _HANDLERS.get(name)
    if not handler:
        raise KeyError(f"Unknown webhook handler: {name}")
    return handler
