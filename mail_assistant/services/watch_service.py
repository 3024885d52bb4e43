"""Gmail users.watch registration with renewal avoidance."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from starlette.concurrency import run_in_threadpool

from mail_assistant.core.config import settings
from mail_assistant.core.exceptions import (
    IdentityNotFound,
    MailboxProviderError,
    WatchRegistrationFailed,
)
from mail_assistant.core.structured_logging import build_log_context, mask_email
from mail_assistant.services.gmail_service import MailboxProviderFactory
from mail_assistant.services.identity_store import IdentityStore, normalize_identity

logger = logging.getLogger(__name__)

DEFAULT_RENEW_MARGIN = timedelta(hours=1)


class WatchState(str, enum.Enum):
    UNREGISTERED = "unregistered"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


@dataclass(frozen=True)
class WatchStatus:
    kind: WatchState
    expires_at: datetime | None = None

    @property
    def needs_renewal(self) -> bool:
        return self.kind is not WatchState.ACTIVE


def watch_state(
    now: datetime,
    watch_expiration: datetime | None,
    margin: timedelta = DEFAULT_RENEW_MARGIN,
) -> WatchStatus:
    """Classify a stored watch expiration relative to ``now``.

    ACTIVE only when the watch outlives ``now + margin``; inside the margin it
    is EXPIRING_SOON, and at or past ``now`` it is EXPIRED.
    """
    if watch_expiration is None:
        return WatchStatus(WatchState.UNREGISTERED)
    if watch_expiration <= now:
        return WatchStatus(WatchState.EXPIRED, watch_expiration)
    if watch_expiration <= now + margin:
        return WatchStatus(WatchState.EXPIRING_SOON, watch_expiration)
    return WatchStatus(WatchState.ACTIVE, watch_expiration)


@dataclass(frozen=True)
class WatchResult:
    history_id: str | None
    expiration: datetime | None
    skipped: bool


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class WatchRegistrar:
    """Ensures a live Gmail watch exists for an identity."""

    def __init__(
        self,
        identity_store: IdentityStore,
        provider_factory: MailboxProviderFactory,
        *,
        topic_name: str | None = None,
        label_ids: list[str] | None = None,
        renew_margin: timedelta | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self._store = identity_store
        self._provider_factory = provider_factory
        self._topic_name = topic_name if topic_name is not None else settings.GMAIL_PUSH_TOPIC
        self._label_ids = label_ids if label_ids is not None else settings.watch_label_ids
        self._renew_margin = renew_margin or timedelta(minutes=settings.WATCH_RENEW_MARGIN_MINUTES)
        self._clock = clock

    def status(self, identity: str) -> WatchStatus:
        record = self._store.get(identity)
        if record is None:
            raise IdentityNotFound(normalize_identity(identity))
        return watch_state(self._clock(), record.watch_expiration, self._renew_margin)

    async def ensure_watch(self, identity: str) -> WatchResult:
        """Register or renew the watch unless the current one is comfortably alive.

        Raises:
            IdentityNotFound: unknown identity.
            WatchRegistrationFailed: topic not configured or Gmail rejected users.watch.
        """
        record = await run_in_threadpool(self._store.get, identity)
        if record is None:
            raise IdentityNotFound(normalize_identity(identity))

        now = self._clock()
        status = watch_state(now, record.watch_expiration, self._renew_margin)
        if status.kind is WatchState.ACTIVE:
            remaining = int((status.expires_at - now).total_seconds() // 60)
            logger.info(
                "Watch already active for %s, expiring in %s mins",
                mask_email(record.identity),
                remaining,
                extra=build_log_context(identity=record.identity),
            )
            return WatchResult(
                history_id=record.last_history_id,
                expiration=record.watch_expiration,
                skipped=True,
            )

        topic = (self._topic_name or "").strip()
        if not topic:
            raise WatchRegistrationFailed("GMAIL_PUSH_TOPIC not configured")

        provider = self._provider_factory(record)
        try:
            registration = await provider.register_watch(topic, self._label_ids)
        except MailboxProviderError as exc:
            logger.warning(
                "Watch registration failed for %s: %s",
                mask_email(record.identity),
                exc,
                extra=build_log_context(identity=record.identity),
            )
            raise WatchRegistrationFailed(str(exc)) from exc

        await run_in_threadpool(
            self._store.update,
            record.identity,
            last_history_id=registration.history_id,
            watch_expiration=registration.expiration,
        )
        logger.info(
            "Watch registered for %s (state was %s), historyId=%s",
            mask_email(record.identity),
            status.kind.value,
            registration.history_id,
            extra=build_log_context(identity=record.identity, history_id=registration.history_id),
        )
        return WatchResult(
            history_id=registration.history_id,
            expiration=registration.expiration,
            skipped=False,
        )

    async def stop_watch(self, identity: str) -> None:
        """Stop push notifications and clear the stored watch expiration.

        The history cursor is kept so a later watch can resume incrementally.
        """
        record = await run_in_threadpool(self._store.get, identity)
        if record is None:
            raise IdentityNotFound(normalize_identity(identity))

        provider = self._provider_factory(record)
        try:
            await provider.stop_watch()
        except MailboxProviderError as exc:
            raise WatchRegistrationFailed(str(exc)) from exc

        await run_in_threadpool(self._store.update, record.identity, watch_expiration=None)
        logger.info("Watch stopped for %s", mask_email(record.identity))
