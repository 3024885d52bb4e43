from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from mail_assistant.core.exceptions import (
    IdentityNotFound,
    MailboxProviderError,
    WatchRegistrationFailed,
)
from mail_assistant.services.watch_service import WatchRegistrar, WatchState, watch_state

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def test_watch_state_classification():
    assert watch_state(NOW, None).kind is WatchState.UNREGISTERED
    assert watch_state(NOW, NOW - timedelta(seconds=1)).kind is WatchState.EXPIRED
    assert watch_state(NOW, NOW).kind is WatchState.EXPIRED
    assert watch_state(NOW, NOW + timedelta(minutes=30)).kind is WatchState.EXPIRING_SOON
    assert watch_state(NOW, NOW + timedelta(hours=1)).kind is WatchState.EXPIRING_SOON
    active = watch_state(NOW, NOW + timedelta(hours=2))
    assert active.kind is WatchState.ACTIVE
    assert active.needs_renewal is False


@pytest.mark.asyncio
async def test_unregistered_identity_gets_a_watch(watch_registrar, identity_store, provider, test_identity):
    result = await watch_registrar.ensure_watch(test_identity.identity)

    assert result.skipped is False
    assert result.history_id == "5000"
    assert provider.watch_calls == [("projects/test-project/topics/gmail-push", ["INBOX"])]

    stored = identity_store.get(test_identity.identity)
    assert stored.last_history_id == "5000"
    assert stored.watch_expiration == provider.watch_expiration


@pytest.mark.asyncio
async def test_watch_valid_for_two_hours_is_skipped(identity_store, provider_factory, provider, test_identity):
    expiration = NOW + timedelta(hours=2)
    identity_store.update(test_identity.identity, watch_expiration=expiration, last_history_id="777")
    registrar = WatchRegistrar(identity_store, provider_factory, topic_name="t", clock=lambda: NOW)

    result = await registrar.ensure_watch(test_identity.identity)

    assert result.skipped is True
    assert result.history_id == "777"
    assert result.expiration == expiration
    assert provider.watch_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("remaining", [timedelta(minutes=30), timedelta(minutes=-5)])
async def test_expiring_or_expired_watch_is_renewed(
    identity_store, provider_factory, provider, test_identity, remaining
):
    identity_store.update(test_identity.identity, watch_expiration=NOW + remaining, last_history_id="777")
    registrar = WatchRegistrar(identity_store, provider_factory, topic_name="t", clock=lambda: NOW)

    result = await registrar.ensure_watch(test_identity.identity)

    assert result.skipped is False
    assert len(provider.watch_calls) == 1
    assert identity_store.get(test_identity.identity).last_history_id == "5000"


@pytest.mark.asyncio
async def test_provider_rejection_leaves_state_untouched(
    watch_registrar, identity_store, provider, test_identity
):
    provider.watch_error = MailboxProviderError("Gmail watch error 403: forbidden", status_code=403)

    with pytest.raises(WatchRegistrationFailed, match="forbidden"):
        await watch_registrar.ensure_watch(test_identity.identity)

    stored = identity_store.get(test_identity.identity)
    assert stored.last_history_id is None
    assert stored.watch_expiration is None


@pytest.mark.asyncio
async def test_missing_topic_fails_without_calling_gmail(identity_store, provider_factory, provider, test_identity):
    registrar = WatchRegistrar(identity_store, provider_factory, topic_name="")

    with pytest.raises(WatchRegistrationFailed, match="GMAIL_PUSH_TOPIC"):
        await registrar.ensure_watch(test_identity.identity)
    assert provider.watch_calls == []


@pytest.mark.asyncio
async def test_unknown_identity(watch_registrar, db):
    with pytest.raises(IdentityNotFound):
        await watch_registrar.ensure_watch("ghost@example.com")


@pytest.mark.asyncio
async def test_stop_watch_clears_expiration_but_keeps_cursor(
    watch_registrar, identity_store, provider, test_identity
):
    await watch_registrar.ensure_watch(test_identity.identity)

    await watch_registrar.stop_watch(test_identity.identity)

    stored = identity_store.get(test_identity.identity)
    assert provider.stop_calls == 1
    assert stored.watch_expiration is None
    assert stored.last_history_id == "5000"
    assert watch_registrar.status(test_identity.identity).kind is WatchState.UNREGISTERED


@pytest.mark.asyncio
async def test_ensure_watch_reads_and_writes_the_store_in_the_threadpool(
    identity_store, provider_factory, test_identity
):
    threads: list[int] = []

    class RecordingStore:
        def get(self, identity):
            threads.append(threading.get_ident())
            return identity_store.get(identity)

        def update(self, identity, **fields):
            threads.append(threading.get_ident())
            return identity_store.update(identity, **fields)

    registrar = WatchRegistrar(RecordingStore(), provider_factory, topic_name="projects/p/topics/t")

    await registrar.ensure_watch(test_identity.identity)

    assert len(threads) == 2
    assert threading.get_ident() not in threads
