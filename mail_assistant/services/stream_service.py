"""Lifecycle of one server-sent event connection.

CONNECTING -> AUTHENTICATED -> OPEN -> CLOSED. Authentication failures end the
attempt before any channel exists; CLOSED is terminal and reached at most once.
Reconnects are new StreamConnection instances; nothing is replayed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator
from typing import Awaitable, Callable

from mail_assistant.core.config import settings
from mail_assistant.core.event_hub import EventHub, SSEChannel
from mail_assistant.core.exceptions import Unauthenticated
from mail_assistant.core.security import AuthVerifier
from mail_assistant.core.structured_logging import build_log_context
from mail_assistant.utils.sse import format_sse, format_sse_comment

logger = logging.getLogger(__name__)

CONNECTED_EVENT = "connected"


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    OPEN = "open"
    CLOSED = "closed"


class StreamConnection:
    def __init__(
        self,
        hub: EventHub,
        verifier: AuthVerifier,
        *,
        heartbeat_interval: float | None = None,
    ):
        self._hub = hub
        self._verifier = verifier
        self._heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.SSE_HEARTBEAT_SECONDS
        )
        self.state = ConnectionState.CONNECTING
        self.identity: str | None = None
        self.channel: SSEChannel | None = None

    def authenticate(self, credential: str | None) -> str:
        """Verify the bearer credential and resolve the identity.

        Raises:
            Unauthenticated: missing or invalid credential; the connection is closed.
        """
        if self.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"Cannot authenticate a connection in state {self.state.value}")
        try:
            identity = self._verifier.verify(credential)
        except Unauthenticated:
            self.state = ConnectionState.CLOSED
            raise
        self.identity = identity
        self.state = ConnectionState.AUTHENTICATED
        return identity

    async def open(self) -> SSEChannel:
        """Create the channel and queue the initial ``connected`` event.

        The channel joins the hub when ``stream`` starts; a response whose body
        is never iterated leaves nothing registered.
        """
        if self.state is not ConnectionState.AUTHENTICATED or self.identity is None:
            raise RuntimeError(f"Cannot open a connection in state {self.state.value}")
        channel = SSEChannel(self.identity)
        channel.send(format_sse(CONNECTED_EVENT, {"email": self.identity}))
        self.channel = channel
        self.state = ConnectionState.OPEN
        return channel

    async def stream(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield encoded frames until the client goes away or the channel closes.

        A ``: ping`` comment is emitted whenever the channel has been idle for
        the heartbeat interval. Teardown always runs on exit.
        """
        if self.channel is None:
            raise RuntimeError("Connection is not open")
        channel = self.channel
        try:
            if self.state is not ConnectionState.OPEN:
                return
            await self._hub.register(self.identity, channel)
            while True:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    frame = await channel.next_frame(timeout=self._heartbeat_interval)
                except asyncio.TimeoutError:
                    yield format_sse_comment("ping")
                    continue
                if frame is None:
                    break
                yield frame
        finally:
            if not await self.close():
                await self._hub.unregister(self.identity, channel)

    async def close(self) -> bool:
        """Tear down once; later calls are no-ops. Returns True on the first call."""
        if self.state is ConnectionState.CLOSED:
            return False
        previous = self.state
        self.state = ConnectionState.CLOSED
        if previous is ConnectionState.OPEN and self.channel is not None and self.identity:
            self.channel.close()
            await self._hub.unregister(self.identity, self.channel)
            logger.debug(
                "SSE stream closed",
                extra=build_log_context(identity=self.identity, channel_id=self.channel.channel_id),
            )
        return True
