"""Gmail push pipeline: decoded notification -> reconciliation -> SSE fan-out."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from mail_assistant.core.async_utils import spawn_detached
from mail_assistant.core.event_hub import EventHub
from mail_assistant.core.exceptions import IdentityNotFound, MailboxProviderError
from mail_assistant.core.structured_logging import build_log_context, mask_email
from mail_assistant.services.history_service import ChangeRecord, HistoryReconciler
from mail_assistant.services.notification_decoder import PushNotification

logger = logging.getLogger(__name__)

NEW_EMAIL_EVENT = "email:new"
SYNC_REQUIRED_EVENT = "email:sync_required"


@dataclass
class _IdentityLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class PushPipeline:
    """Processes push notifications off the request path.

    Notifications for the same identity are reconciled one at a time, in
    arrival order, so cursor writes for an identity never interleave.
    Different identities proceed concurrently.
    """

    def __init__(self, reconciler: HistoryReconciler, hub: EventHub):
        self._reconciler = reconciler
        self._hub = hub
        self._locks: dict[str, _IdentityLock] = {}

    @asynccontextmanager
    async def _identity_lock(self, identity: str) -> AsyncIterator[None]:
        entry = self._locks.get(identity)
        if entry is None:
            entry = self._locks[identity] = _IdentityLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(identity, None)

    def accept(self, notification: PushNotification) -> asyncio.Task:
        """Schedule processing as detached work and return immediately."""
        return spawn_detached(
            self.process(notification),
            name=f"gmail-push:{notification.delivery_id or notification.cursor_hint}",
        )

    async def process(self, notification: PushNotification) -> ChangeRecord | None:
        """Reconcile one notification and push the result to the identity's streams."""
        identity = notification.identity
        log_context = build_log_context(
            identity=identity,
            delivery_id=notification.delivery_id,
            history_id=notification.cursor_hint,
        )
        logger.info(
            "Gmail notification for %s, historyId: %s",
            mask_email(identity),
            notification.cursor_hint,
            extra=log_context,
        )

        async with self._identity_lock(identity):
            try:
                change = await self._reconciler.reconcile(identity, notification.cursor_hint)
            except IdentityNotFound:
                logger.info("User %s not found, notification dropped", mask_email(identity), extra=log_context)
                return None
            except MailboxProviderError:
                # Cursor untouched; the next notification retries from it.
                logger.exception("Gmail sync failed for %s", mask_email(identity), extra=log_context)
                return None

            if change.resync_required:
                await self._hub.send_to_identity(identity, SYNC_REQUIRED_EVENT, {})
            elif change.messages:
                await self._hub.send_to_identity(
                    identity,
                    NEW_EMAIL_EVENT,
                    {
                        "count": len(change.messages),
                        "emails": [message.to_dict() for message in change.messages],
                    },
                )
        return change
