# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Reconnecting client for a room's transcript stream.

StreamTransport keeps one logical subscription per (room, participant) and
runs it as a single asyncio task. The connection state machine:

    disconnected --connect()--> connecting --open--> connected
    connecting/connected --transport error--> reconnecting   (attempts < max)
    reconnecting --fixed delay--> connecting
    connecting/connected --transport error--> error          (attempts == max)
    connected --clean close / disconnect()--> disconnected
    error/disconnected --connect()--> connecting             (attempts reset)

Every frame is decoded once into a tagged message; frames that fail to
decode are logged and dropped without touching the connection state.
Consumers register a single handler that receives the typed events below,
synchronously with the transition or frame that caused them.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

from .config import StreamSettings
from .connections import ConnectionFactory, StreamConnection, make_connection_factory
from .errors import CapacityError, ParseError, TransportError
from .protocol import (
    ClientMessage,
    ConnectionState,
    ServerResponse,
    StatusMessage,
    TranscriptEvent,
    TranscriptMessage,
    decode_frame,
    now_ms,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChanged:
    """The connection state machine moved."""
    previous: ConnectionState
    current: ConnectionState
    error: str | None = None


@dataclass(frozen=True)
class StatusEvent:
    """Emitted once each time the stream opens."""
    status: ConnectionState
    message: str
    timestamp: int


@dataclass(frozen=True)
class TranscriptReceived:
    """A transcript frame arrived."""
    event: TranscriptEvent
    session_id: str


@dataclass(frozen=True)
class RemoteStatus:
    """The server pushed a status frame (greeting, agent started/stopped)."""
    message: StatusMessage


@dataclass(frozen=True)
class ServerReply:
    """The server answered a control message (WebSocket only)."""
    response: ServerResponse


TransportEvent = Union[StateChanged, StatusEvent, TranscriptReceived, RemoteStatus, ServerReply]
EventHandler = Callable[[TransportEvent], None]


class StreamTransport:
    """
    Reconnecting subscriber for one room.

    Usage:
        transport = StreamTransport("studio", "viewer-1",
                                    base_url="http://127.0.0.1:8000")
        transport.on_event(handle_event)
        await transport.connect()
        ...
        await transport.disconnect()
    """

    def __init__(
        self,
        room: str,
        participant: str,
        connection_factory: ConnectionFactory | None = None,
        *,
        base_url: str = "http://127.0.0.1:8000",
        transport: str = "sse",
        auto_reconnect: bool = True,
        reconnect_interval: float = 3.0,
        max_reconnect_attempts: int = 5,
        buffer_size: int | None = None
    ) -> None:
        """
        Initialize the transport. Nothing is opened until connect().

        Args:
            room: Room to subscribe to
            participant: Name of this viewer
            connection_factory: Builds a connection for (room, participant);
                defaults to the kind named by `transport` against `base_url`
            base_url: Server base URL used by the default factory
            transport: "sse" or "ws", used by the default factory
            auto_reconnect: Retry after transport errors
            reconnect_interval: Fixed delay in seconds before each retry
            max_reconnect_attempts: Retries before giving up in the error state
            buffer_size: Max transcripts kept in history (None = unbounded)
        """
        self.room: str = room
        self.participant: str = participant
        self.auto_reconnect: bool = auto_reconnect
        self.reconnect_interval: float = reconnect_interval
        self.max_reconnect_attempts: int = max_reconnect_attempts
        self.buffer_size: int | None = buffer_size
        self._connection_factory: ConnectionFactory = (
            connection_factory or make_connection_factory(base_url, transport)
        )

        self.state: ConnectionState = ConnectionState.DISCONNECTED
        self.reconnect_attempts: int = 0
        self.last_error: str | None = None
        self.transcripts: list[TranscriptEvent] = []
        self.last_transcript: TranscriptEvent | None = None

        self._handler: EventHandler | None = None
        self._task: asyncio.Task[None] | None = None
        self._connection: StreamConnection | None = None
        self._state_event: asyncio.Event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        room: str,
        participant: str,
        settings: StreamSettings,
        connection_factory: ConnectionFactory | None = None
    ) -> 'StreamTransport':
        """Build a transport from the stream section of the config."""
        return cls(
            room,
            participant,
            connection_factory,
            base_url=settings["url"],
            transport=settings["transport"],
            auto_reconnect=settings["auto_reconnect"],
            reconnect_interval=settings["reconnect_interval_ms"] / 1000,
            max_reconnect_attempts=settings["max_reconnect_attempts"],
            buffer_size=settings.get("buffer_size"),
        )

    def on_event(self, handler: EventHandler | None) -> None:
        """Register the event handler, replacing any previous one."""
        self._handler = handler

    async def connect(self, room: str | None = None, participant: str | None = None) -> None:
        """
        Open the subscription.

        A no-op while connecting or connected. From any other state this
        resets the reconnect counter, cancels a pending reconnect wait and
        starts connecting immediately.

        Args:
            room: Replaces the configured room if given
            participant: Replaces the configured participant if given
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        room = self.room if room is None else room
        participant = self.participant if participant is None else participant
        if not room or not participant:
            raise ValueError("room and participant must be non-empty")
        self.room = room
        self.participant = participant

        await self._cancel_task()
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            # Another connect() won while the old task was shutting down
            return
        self.reconnect_attempts = 0
        self.last_error = None
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(
            self._run(), name=f"stream-{self.room}-{self.participant}")

    async def disconnect(self) -> None:
        """
        Close the subscription and return to the disconnected state.

        Safe in every state, including while waiting to reconnect. No event
        is delivered after this returns other than the final transition.
        """
        await self._cancel_task()
        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close()
        self.reconnect_attempts = 0
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def send_control(self, action: str) -> bool:
        """
        Send a control action (start, stop, pause, resume, clear).

        Returns:
            True if sent; False when not connected or the connection is
            one-way
        """
        connection = self._connection
        if (self.state != ConnectionState.CONNECTED or connection is None
                or not connection.bidirectional):
            logger.warning("Stream not connected over WebSocket, cannot send control message")
            return False
        return await connection.send(
            ClientMessage(type="control", action=action, timestamp=now_ms()))

    def clear_transcripts(self) -> None:
        """Forget all received transcripts."""
        self.transcripts = []
        self.last_transcript = None

    async def wait_for_state(
        self,
        *states: ConnectionState,
        timeout: float | None = None
    ) -> ConnectionState:
        """
        Wait until the transport is in one of the given states.

        Raises:
            asyncio.TimeoutError: If the timeout expires first
        """
        async def _wait() -> ConnectionState:
            while self.state not in states:
                await self._state_event.wait()
            return self.state

        return await asyncio.wait_for(_wait(), timeout)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.state == ConnectionState.CONNECTING

    @property
    def is_reconnecting(self) -> bool:
        return self.state == ConnectionState.RECONNECTING

    @property
    def can_reconnect(self) -> bool:
        """Whether automatic retries remain."""
        return self.reconnect_attempts < self.max_reconnect_attempts

    async def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        # A handler running inside the task cannot wait for it
        if task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        """Connection loop; one iteration per connection attempt."""
        while True:
            connection = self._connection_factory(self.room, self.participant)
            self._connection = connection
            try:
                await connection.open()
                self._on_open()
                async for payload in connection.frames():
                    self._handle_payload(payload)
            except TransportError as e:
                error: Exception = e
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Unexpected stream failure: %s", e, exc_info=True)
                error = TransportError(str(e))
            else:
                logger.info("Stream closed cleanly: %s/%s", self.room, self.participant)
                self._set_state(ConnectionState.DISCONNECTED)
                return
            finally:
                await connection.close()
                if self._connection is connection:
                    self._connection = None

            self.last_error = str(error)
            logger.warning("Stream error (%s/%s): %s", self.room, self.participant, error)

            if not self.auto_reconnect:
                self._set_state(ConnectionState.ERROR)
                return

            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self.last_error = str(CapacityError(
                    f"Gave up after {self.reconnect_attempts} reconnect attempts: {error}"))
                self._set_state(ConnectionState.ERROR)
                return

            self.reconnect_attempts += 1
            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(self.reconnect_interval)
            self._set_state(ConnectionState.CONNECTING)

    def _on_open(self) -> None:
        self.reconnect_attempts = 0
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Stream connection opened: %s/%s", self.room, self.participant)
        self._emit(StatusEvent(
            status=ConnectionState.CONNECTED,
            message="Connected to transcript stream",
            timestamp=now_ms(),
        ))

    def _handle_payload(self, payload: str) -> None:
        try:
            message = decode_frame(payload)
        except ParseError as e:
            logger.error("Error parsing stream message: %s", e)
            self.last_error = "Failed to parse message from server"
            return

        if isinstance(message, TranscriptMessage):
            self._record(message.data)
            self._emit(TranscriptReceived(event=message.data, session_id=message.session_id))
        elif isinstance(message, StatusMessage):
            if message.status == ConnectionState.ERROR.value:
                self.last_error = message.message or "Server reported an error"
            self._emit(RemoteStatus(message=message))
        else:
            if message.type == "error":
                self.last_error = message.message
            self._emit(ServerReply(response=message))

    def _record(self, event: TranscriptEvent) -> None:
        self.transcripts.append(event)
        if self.buffer_size is not None and len(self.transcripts) > self.buffer_size:
            del self.transcripts[:len(self.transcripts) - self.buffer_size]
        self.last_transcript = event
        self.last_error = None

    def _set_state(self, state: ConnectionState) -> None:
        previous = self.state
        if previous == state:
            return
        self.state = state
        logger.debug("Stream state: %s -> %s", previous.value, state.value)
        # Wake waiters, then arm a fresh event for the next transition
        self._state_event.set()
        self._state_event = asyncio.Event()
        error = self.last_error if state == ConnectionState.ERROR else None
        self._emit(StateChanged(previous=previous, current=state, error=error))

    def _emit(self, event: TransportEvent) -> None:
        if self._handler is None:
            return
        try:
            self._handler(event)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Stream event handler failed: %s", e, exc_info=True)
