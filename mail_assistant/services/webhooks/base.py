"""Webhook handler interface."""

from __future__ import annotations

from typing import Protocol

from fastapi import HTTPException, Request, Response

WebhookResult = dict | Response

MAX_PAYLOAD_BYTES = 64 * 1024  # Pub/Sub push bodies are tiny


class WebhookHandler(Protocol):
    async def handle(self, request: Request, **kwargs) -> WebhookResult:
        """Handle a webhook request."""


async def read_body_safe(request: Request, max_bytes: int = MAX_PAYLOAD_BYTES) -> bytes:
    """Read the request body, rejecting anything over ``max_bytes`` with 413."""
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > max_bytes:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(413, "Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)
