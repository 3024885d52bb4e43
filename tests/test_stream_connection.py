from __future__ import annotations

import pytest

from mail_assistant.core.event_hub import EventHub
from mail_assistant.core.exceptions import Unauthenticated
from mail_assistant.core.security import JWTAuthVerifier, create_session_token
from mail_assistant.services.stream_service import ConnectionState, StreamConnection


class StaticVerifier:
    def __init__(self, identity: str | None) -> None:
        self.identity = identity

    def verify(self, credential: str | None) -> str:
        if not credential or self.identity is None:
            raise Unauthenticated("Token required" if not credential else "Invalid token")
        return self.identity


async def _never_disconnected() -> bool:
    return False


async def _disconnected() -> bool:
    return True


def test_missing_credential_closes_before_any_channel():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"))

    with pytest.raises(Unauthenticated):
        connection.authenticate(None)

    assert connection.state is ConnectionState.CLOSED
    assert connection.channel is None
    assert hub.count_connections() == 0


def test_invalid_jwt_is_rejected():
    connection = StreamConnection(EventHub(), JWTAuthVerifier())

    with pytest.raises(Unauthenticated, match="Invalid token"):
        connection.authenticate("not-a-jwt")
    assert connection.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_stream_registers_and_sends_connected_event():
    hub = EventHub()
    connection = StreamConnection(hub, JWTAuthVerifier(), heartbeat_interval=5)
    connection.authenticate(create_session_token("Alice@Example.com"))

    await connection.open()
    stream = connection.stream(_never_disconnected)
    first = await stream.__anext__()

    assert connection.state is ConnectionState.OPEN
    assert hub.get_connected_count("alice@example.com") == 1
    assert first == 'event: connected\ndata: {"email": "alice@example.com"}\n\n'
    await stream.aclose()


@pytest.mark.asyncio
async def test_idle_stream_emits_ping_comment():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"), heartbeat_interval=0.01)
    connection.authenticate("token")
    await connection.open()

    stream = connection.stream(_never_disconnected)
    await stream.__anext__()  # connected
    heartbeat = await stream.__anext__()
    await stream.aclose()

    assert heartbeat == ": ping\n\n"
    assert connection.state is ConnectionState.CLOSED
    assert hub.count_connections() == 0


@pytest.mark.asyncio
async def test_hub_events_reach_the_stream():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"), heartbeat_interval=5)
    connection.authenticate("token")
    await connection.open()
    stream = connection.stream(_never_disconnected)
    await stream.__anext__()

    await hub.send_to_identity("alice@example.com", "email:sync_required", {})
    frame = await stream.__anext__()
    await stream.aclose()

    assert frame == "event: email:sync_required\ndata: {}\n\n"


@pytest.mark.asyncio
async def test_client_disconnect_tears_down_once():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"))
    connection.authenticate("token")
    await connection.open()

    frames = [frame async for frame in connection.stream(_disconnected)]

    assert frames == []
    assert connection.state is ConnectionState.CLOSED
    assert hub.count_connections() == 0
    assert await connection.close() is False


@pytest.mark.asyncio
async def test_hub_shutdown_ends_the_stream():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"), heartbeat_interval=5)
    connection.authenticate("token")
    await connection.open()

    await hub.close_all()
    frames = [frame async for frame in connection.stream(_never_disconnected)]

    assert frames == ['event: connected\ndata: {"email": "alice@example.com"}\n\n']
    assert connection.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_close_before_open_is_idempotent():
    connection = StreamConnection(EventHub(), StaticVerifier("alice@example.com"))

    assert await connection.close() is True
    assert await connection.close() is False


@pytest.mark.asyncio
async def test_open_alone_does_not_register():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"), heartbeat_interval=5)
    connection.authenticate("token")

    await connection.open()

    assert connection.state is ConnectionState.OPEN
    assert hub.count_connections() == 0
    assert await hub.send_to_identity("alice@example.com", "email:new", {}) is False


@pytest.mark.asyncio
async def test_close_before_stream_starts_never_registers():
    hub = EventHub()
    connection = StreamConnection(hub, StaticVerifier("alice@example.com"), heartbeat_interval=5)
    connection.authenticate("token")
    await connection.open()

    await connection.close()
    frames = [frame async for frame in connection.stream(_never_disconnected)]

    assert frames == []
    assert hub.count_connections() == 0
