"""Incremental Gmail history reconciliation.

Given the stored history cursor for an identity and the ``historyId`` carried
by a push notification, fetch the delta since the cursor, pick the messages
that newly landed in the inbox, and advance the cursor.

Two behaviours to keep in mind:

- Only the first ``max_messages`` qualifying messages are fetched per pass.
  The cursor still advances to the notification's ``historyId``, which relies
  on Gmail history being cumulative from an older cursor; a provider without
  that guarantee would drop the excess rather than defer it.
- The inbox check is repeated against the live message at fetch time, so a
  message that was moved to spam/trash after the notification is not surfaced.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from starlette.concurrency import run_in_threadpool

from mail_assistant.core.config import settings
from mail_assistant.core.exceptions import (
    IdentityNotFound,
    PartialFetchFailure,
    StaleCursor,
)
from mail_assistant.core.structured_logging import build_log_context, mask_email
from mail_assistant.services.gmail_service import (
    INBOX_LABEL,
    EmailSummary,
    MailboxProvider,
    MailboxProviderFactory,
)
from mail_assistant.services.identity_store import IdentityStore, normalize_identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeRecord:
    """Outcome of one reconciliation pass."""

    identity: str
    new_message_ids: list[str] = field(default_factory=list)
    resync_required: bool = False
    messages: list[EmailSummary] = field(default_factory=list)
    cursor: str | None = None


def extract_inbox_additions(history: list[dict[str, Any]]) -> list[str]:
    """Walk history records in order and return added inbox message ids.

    Duplicates collapse to their first position.
    """
    seen: set[str] = set()
    ordered: list[str] = []
    for record in history:
        for added in record.get("messagesAdded") or []:
            message = added.get("message") or {}
            message_id = message.get("id")
            if not message_id or message_id in seen:
                continue
            if INBOX_LABEL not in (message.get("labelIds") or []):
                continue
            seen.add(message_id)
            ordered.append(str(message_id))
    return ordered


class HistoryReconciler:
    """Turns (identity, historyId hint) into a ChangeRecord."""

    def __init__(
        self,
        identity_store: IdentityStore,
        provider_factory: MailboxProviderFactory,
        *,
        max_messages: int | None = None,
    ):
        self._store = identity_store
        self._provider_factory = provider_factory
        self._max_messages = (
            max_messages if max_messages is not None else settings.PUSH_MAX_MESSAGES_PER_SYNC
        )

    async def _fetch(
        self, provider: MailboxProvider, identity: str, message_id: str
    ) -> EmailSummary | None:
        try:
            return await provider.fetch_message(message_id)
        except Exception as exc:
            # One bad message is skipped; the pass and the cursor advance go on.
            failure = PartialFetchFailure(message_id, f"{type(exc).__name__}: {exc}")
            logger.error(
                "%s (identity %s)",
                failure,
                mask_email(identity),
                extra=build_log_context(identity=identity),
            )
            return None

    async def reconcile(self, identity: str, cursor_hint: str) -> ChangeRecord:
        """
        Fetch the history delta for ``identity`` and advance its cursor.

        Returns ``ChangeRecord(resync_required=True)`` without touching the
        stored cursor when Gmail reports the start cursor as expired.

        Raises:
            IdentityNotFound: no stored identity.
            MailboxProviderError: history listing failed for a reason other
                than staleness (cursor is not advanced).
        """
        record = await run_in_threadpool(self._store.get, identity)
        if record is None:
            raise IdentityNotFound(normalize_identity(identity))

        log_context = build_log_context(identity=record.identity, history_id=cursor_hint)
        # First sync for this identity starts from the notification itself.
        start_cursor = record.last_history_id or cursor_hint
        provider = self._provider_factory(record)

        try:
            history = await provider.list_history_since(start_cursor)
        except StaleCursor:
            logger.warning(
                "History cursor %s expired for %s, full resync required",
                start_cursor,
                mask_email(record.identity),
                extra=log_context,
            )
            return ChangeRecord(identity=record.identity, resync_required=True)

        candidates = extract_inbox_additions(history)
        batch = candidates[: max(self._max_messages, 0)]
        if len(candidates) > len(batch):
            logger.info(
                "Deferring %s of %s new messages for %s to a later pass",
                len(candidates) - len(batch),
                len(candidates),
                mask_email(record.identity),
                extra=log_context,
            )

        fetched = await asyncio.gather(
            *(self._fetch(provider, record.identity, message_id) for message_id in batch)
        )
        messages = [message for message in fetched if message is not None and message.in_inbox]

        await run_in_threadpool(self._store.update, record.identity, last_history_id=cursor_hint)
        logger.info(
            "Reconciled %s: %s history records, %s new inbox messages, cursor %s -> %s",
            mask_email(record.identity),
            len(history),
            len(messages),
            start_cursor,
            cursor_hint,
            extra=log_context,
        )
        return ChangeRecord(
            identity=record.identity,
            new_message_ids=[message.id for message in messages],
            resync_required=False,
            messages=messages,
            cursor=cursor_hint,
        )
