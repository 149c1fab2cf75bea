# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Per-room subscriber registry that fans transcript and status events out to
every connected viewer.

The registry is the only shared mutable state on the server. Every mutation
happens under a single lock; publish iterates a snapshot taken under that
lock, and eviction re-checks membership so a handle is released at most
once. Sink writes never block: a sink that cannot take a frame is evicted.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from .errors import SinkWriteError
from .protocol import (
    ConnectionState,
    StatusMessage,
    TranscriptEvent,
    TranscriptMessage,
    encode_message,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_SINK_SIZE: int = 256


class Sink(Protocol):
    """Write channel for one subscriber."""

    def write(self, payload: str) -> None:
        """Queue one serialized message. Raises SinkWriteError on failure."""

    def close(self) -> None:
        """Release the channel. Must be idempotent."""


class QueueSink:
    """
    In-memory write channel drained by the request handler that owns the
    subscriber's HTTP response.

    Writes are synchronous and never wait: once `max_size` frames are
    pending the consumer is considered dead and the write fails.
    """

    def __init__(self, max_size: int = DEFAULT_SINK_SIZE) -> None:
        self.max_size: int = max_size
        self.closed: bool = False
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._pending: int = 0

    def write(self, payload: str) -> None:
        if self.closed:
            raise SinkWriteError("sink is closed")
        if self._pending >= self.max_size:
            raise SinkWriteError(
                f"sink is full ({self.max_size} frames pending)")
        self._pending += 1
        self._queue.put_nowait(payload)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake a reader blocked on an empty queue
        self._queue.put_nowait(None)

    async def read(self) -> str | None:
        """Wait for the next frame. Returns None once the sink is closed."""
        payload = await self._queue.get()
        if payload is None:
            return None
        self._pending -= 1
        return payload

    @property
    def pending(self) -> int:
        """Number of frames written but not yet read."""
        return self._pending


@dataclass(eq=False)
class SubscriberHandle:
    """Server-side record of one connected viewer's live stream."""
    room_name: str
    participant: str
    connection_id: str
    sink: Sink
    liveness: threading.Event = field(default_factory=threading.Event)

    @property
    def is_alive(self) -> bool:
        """False once the handle has been released."""
        return not self.liveness.is_set()

    def release(self) -> None:
        """Close the sink and fire the abort signal."""
        self.liveness.set()
        self.sink.close()

    def __repr__(self) -> str:
        return f"SubscriberHandle({self.connection_id})"


class Broadcaster:
    """
    Room -> subscribers registry with fan-out publishing.

    Usage:
        broadcaster = Broadcaster()
        handle = broadcaster.subscribe("studio", "viewer-1")
        broadcaster.publish("studio", event)
        broadcaster.unsubscribe(handle)
    """

    def __init__(self, sink_size: int = DEFAULT_SINK_SIZE) -> None:
        self.sink_size: int = sink_size
        self._lock = threading.Lock()
        self._rooms: dict[str, set[SubscriberHandle]] = {}
        self._connection_ids = itertools.count(1)

    def subscribe(
        self,
        room: str,
        participant: str,
        sink: Sink | None = None
    ) -> SubscriberHandle:
        """
        Register a new subscriber and greet it with a "connected" status.

        Args:
            room: Room to subscribe to
            participant: Name of the subscribing participant
            sink: Write channel for the subscriber (a QueueSink by default)

        Returns:
            The handle that identifies this subscription
        """
        if not room or not participant:
            raise ValueError("room and participant must be non-empty")

        if sink is None:
            sink = QueueSink(self.sink_size)

        with self._lock:
            connection_id = f"{room}:{participant}:{next(self._connection_ids)}"
            handle = SubscriberHandle(
                room_name=room,
                participant=participant,
                connection_id=connection_id,
                sink=sink,
            )
            self._rooms.setdefault(room, set()).add(handle)
            total = len(self._rooms[room])

        greeting = StatusMessage(
            status=ConnectionState.CONNECTED.value,
            message="Connected to transcript stream",
            timestamp=now_ms(),
        )
        try:
            sink.write(encode_message(greeting))
        except SinkWriteError as e:
            logger.warning("Failed to greet %s: %s", connection_id, e)
            self._evict(handle)
            return handle

        logger.info("Subscriber connected: %s (room total: %d)",
                    connection_id, total)
        return handle

    def unsubscribe(self, handle: SubscriberHandle) -> bool:
        """
        Remove a subscriber and release its sink.

        Returns:
            True if the handle was registered, False if it was already gone
        """
        removed = self._evict(handle)
        if removed:
            logger.info("Subscriber disconnected: %s", handle.connection_id)
        return removed

    def publish(self, room: str, event: TranscriptEvent) -> int:
        """
        Send a transcript to every subscriber of a room.

        Returns:
            Number of subscribers the event was written to
        """
        message = TranscriptMessage(data=event, session_id=f"{room}:{now_ms()}")
        delivered = self._fan_out(room, encode_message(message))
        if delivered:
            logger.debug("Broadcast transcript to room %s (%d): %s",
                         room, delivered, event.text)
        return delivered

    def publish_status(
        self,
        room: str,
        status: ConnectionState | str,
        message: str | None = None
    ) -> int:
        """Send a status update to every subscriber of a room."""
        value = status.value if isinstance(status, ConnectionState) else status
        status_message = StatusMessage(
            status=value, message=message, timestamp=now_ms())
        return self._fan_out(room, encode_message(status_message))

    def _fan_out(self, room: str, payload: str) -> int:
        with self._lock:
            handles = self._rooms.get(room)
            if not handles:
                return 0
            snapshot = list(handles)

        delivered = 0
        for handle in snapshot:
            try:
                handle.sink.write(payload)
                delivered += 1
            except SinkWriteError as e:
                logger.error("Failed to send to %s: %s", handle.connection_id, e)
                self._evict(handle)
        return delivered

    def _evict(self, handle: SubscriberHandle) -> bool:
        with self._lock:
            handles = self._rooms.get(handle.room_name)
            if handles is None or handle not in handles:
                return False
            handles.discard(handle)
            if not handles:
                del self._rooms[handle.room_name]
        handle.release()
        return True

    def has_room(self, room: str) -> bool:
        """Check whether a room currently has a registry entry."""
        with self._lock:
            return room in self._rooms

    def subscriber_count(self, room: str) -> int:
        """Number of subscribers registered for a room."""
        with self._lock:
            return len(self._rooms.get(room, ()))

    @property
    def rooms(self) -> list[str]:
        """Names of rooms with at least one subscriber."""
        with self._lock:
            return list(self._rooms)

    def connection_info(self) -> dict[str, object]:
        """Snapshot of the registry for debugging."""
        with self._lock:
            room_counts = {room: len(handles) for room, handles in self._rooms.items()}
        return {
            "totalConnections": sum(room_counts.values()),
            "roomConnections": room_counts,
        }

    def close(self) -> None:
        """Release every subscriber and empty the registry."""
        with self._lock:
            handles = [h for room_handles in self._rooms.values() for h in room_handles]
            self._rooms.clear()
        for handle in handles:
            handle.release()
        if handles:
            logger.info("Broadcaster closed, released %d subscriber(s)", len(handles))
