"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_email(email: str | None) -> str:
    """Mask the local part of an address for log output."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def build_log_context(
    *,
    identity: str | None = None,
    delivery_id: str | None = None,
    history_id: str | None = None,
    channel_id: str | None = None,
    event: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for use with ``extra=``."""
    context: dict[str, Any] = {}
    if identity:
        context["identity"] = mask_email(identity)
    if delivery_id:
        context["delivery_id"] = delivery_id
    if history_id:
        context["history_id"] = history_id
    if channel_id:
        context["channel_id"] = channel_id
    if event:
        context["sse_event"] = event
    return context
