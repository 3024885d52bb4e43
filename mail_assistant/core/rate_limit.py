"""Rate limiting configuration for the mail assistant API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from mail_assistant.core.config import settings

logger = logging.getLogger(__name__)

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

# In-memory storage is per-process, which matches the single-process
# fan-out model; point RATE_LIMIT_STORAGE_URI elsewhere to share limits.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://" if IS_TESTING else settings.RATE_LIMIT_STORAGE_URI,
    enabled=not IS_TESTING,
)


def webhook_limit() -> str:
    """Per-client limit for Pub/Sub push deliveries."""
    if settings.RATE_LIMIT_WEBHOOK <= 0:
        return "1000000/minute"
    return f"{settings.RATE_LIMIT_WEBHOOK}/minute"
