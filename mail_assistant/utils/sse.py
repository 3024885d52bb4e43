"""Server-sent events helpers."""

from __future__ import annotations

import json
from typing import Any


def format_sse(event_type: str, data: dict[str, Any] | None) -> str:
    """Format a single named SSE event: ``event: <name>\\ndata: <json>\\n\\n``."""
    if "\n" in event_type or "\r" in event_type:
        raise ValueError("SSE event names cannot contain newlines")
    return f"event: {event_type}\ndata: {json.dumps(data or {}, default=str)}\n\n"


def format_sse_comment(comment: str = "ping") -> str:
    """Format a comment frame; clients ignore it, proxies see traffic."""
    return f": {comment}\n\n"


STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Content-Encoding": "identity",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # For nginx
}
