"""
Real-time event hub for server-sent event streams.

Keeps the live SSE channels per identity (mailbox address) so that sync
results can reach every open client of that user. Delivery is best-effort
and at-most-once per channel. A channel that fails a write is closed and
dropped from the registry; nothing is queued for identities without a live
channel.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from mail_assistant.core.structured_logging import build_log_context, mask_email
from mail_assistant.utils.sse import format_sse

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_BUFFER = 100


class ChannelClosed(Exception):
    """Write attempted on a channel that is tearing down or closed."""


class Channel(Protocol):
    identity: str
    channel_id: str

    @property
    def closed(self) -> bool: ...

    def send(self, frame: str) -> None:
        """Queue one encoded frame; raises on failure."""

    def close(self) -> None:
        """Stop accepting frames and wake the reader."""


class SSEChannel:
    """One live SSE connection's outbound frame buffer.

    The HTTP response generator drains ``next_frame``; the hub writes with
    ``send``. A full buffer (slow client) counts as a failed write.
    """

    def __init__(self, identity: str, *, max_buffered: int = DEFAULT_CHANNEL_BUFFER):
        self.identity = identity
        self.channel_id = uuid.uuid4().hex
        self.created_at = datetime.now(timezone.utc)
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_buffered)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self._closed:
            raise ChannelClosed(self.channel_id)
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Sentinel wakes a reader blocked in next_frame().
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def next_frame(self, timeout: float | None = None) -> str | None:
        """Return the next frame, ``None`` once closed.

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout`` seconds.
        """
        if self._closed and self._queue.empty():
            return None
        frame = await asyncio.wait_for(self._queue.get(), timeout)
        if frame is None:
            return None
        return frame

    def __repr__(self) -> str:
        return f"SSEChannel(identity={mask_email(self.identity)!r}, id={self.channel_id})"


class EventHub:
    """Process-wide registry of identity -> live channels.

    Created once per application (see ``main.lifespan``) and injected where
    needed. Mutations and send snapshots share one lock; writes happen outside
    it against a copied snapshot, so register/unregister during a send is safe.
    """

    def __init__(self):
        self._channels: dict[str, set[Channel]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def register(self, identity: str, channel: Channel) -> None:
        """Add a channel under its identity (multiple channels per identity allowed).

        After ``close_all`` the channel is closed instead of registered.
        """
        async with self._lock:
            if self._closed:
                channel.close()
                return
            self._channels.setdefault(identity, set()).add(channel)
            count = len(self._channels[identity])
        logger.info(
            "SSE connected: %s (%s connections)",
            mask_email(identity),
            count,
            extra=build_log_context(identity=identity, channel_id=channel.channel_id),
        )

    async def unregister(self, identity: str, channel: Channel) -> bool:
        """Remove a channel; drops the identity entry once its set is empty."""
        async with self._lock:
            channels = self._channels.get(identity)
            if not channels or channel not in channels:
                return False
            channels.discard(channel)
            if not channels:
                del self._channels[identity]
        logger.info(
            "SSE disconnected: %s",
            mask_email(identity),
            extra=build_log_context(identity=identity, channel_id=channel.channel_id),
        )
        return True

    async def _snapshot(self, identity: str | None = None) -> list[Channel]:
        async with self._lock:
            if identity is not None:
                return list(self._channels.get(identity, ()))
            return [channel for channels in self._channels.values() for channel in channels]

    async def _prune(self, failed: list[Channel]) -> None:
        for channel in failed:
            channel.close()
            await self.unregister(channel.identity, channel)

    @staticmethod
    def _write(channel: Channel, frame: str, event: str) -> bool:
        if channel.closed:
            return False
        try:
            channel.send(frame)
        except Exception as exc:
            # One broken channel must not block delivery to the others.
            logger.warning(
                "SSE write failed for %r: %s",
                channel,
                exc,
                extra=build_log_context(
                    identity=channel.identity, channel_id=channel.channel_id, event=event
                ),
            )
            return False
        return True

    async def send_to_identity(self, identity: str, event: str, payload: dict[str, Any]) -> bool:
        """Write an event to every channel of ``identity``.

        Returns False when the identity has no live channel (a delivery miss,
        not an error); True otherwise, even if individual writes failed.
        """
        channels = await self._snapshot(identity)
        if not channels:
            logger.info(
                "No SSE connections for %s",
                mask_email(identity),
                extra=build_log_context(identity=identity, event=event),
            )
            return False

        frame = format_sse(event, payload)
        failed = [channel for channel in channels if not self._write(channel, frame, event)]
        await self._prune(failed)
        delivered = len(channels) - len(failed)
        logger.info(
            "SSE sent to %s: %s (%s/%s channels)",
            mask_email(identity),
            event,
            delivered,
            len(channels),
            extra=build_log_context(identity=identity, event=event),
        )
        return True

    async def broadcast(self, event: str, payload: dict[str, Any]) -> int:
        """Write an event to every channel of every identity; returns channels written."""
        frame = format_sse(event, payload)
        channels = await self._snapshot()
        failed = [channel for channel in channels if not self._write(channel, frame, event)]
        await self._prune(failed)
        return len(channels) - len(failed)

    def count_connections(self) -> int:
        """Get total number of active channels across all identities."""
        return sum(len(channels) for channels in self._channels.values())

    def count_identities(self) -> int:
        return len(self._channels)

    def get_connected_count(self, identity: str) -> int:
        """Get the number of active channels for one identity."""
        return len(self._channels.get(identity, ()))

    async def close_all(self) -> None:
        """Close every channel and empty the registry (process shutdown)."""
        async with self._lock:
            self._closed = True
            channels = [channel for group in self._channels.values() for channel in group]
            self._channels.clear()
        for channel in channels:
            channel.close()
        if channels:
            logger.info("Closed %s SSE channels on shutdown", len(channels))
