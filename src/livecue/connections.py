# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Client-side stream connections.

A connection opens one subscription to a room and yields the raw JSON
payload of every frame the server sends. Two implementations are provided:

- SSEConnection: a long-lived GET on the event-stream endpoint
- WebSocketConnection: the bidirectional endpoint, which also accepts
  control messages from the client

Any failure to open, or any drop of an open stream, is raised as
TransportError; the StreamTransport decides whether to retry.
"""

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

import aiohttp

from .errors import TransportError
from .protocol import ClientMessage, encode_message, now_ms

logger = logging.getLogger(__name__)

SSE_PATH: str = "/api/transcripts.sse"
WS_PATH: str = "/api/transcripts.ws"

# Seconds allowed for the TCP connect; open streams have no total timeout
CONNECT_TIMEOUT: float = 10.0


class StreamConnection(ABC):
    """One open subscription to a room's event stream."""

    # True if the connection can carry client -> server control messages
    bidirectional: bool = False

    @abstractmethod
    async def open(self) -> None:
        """Open the connection. Raises TransportError on failure."""

    @abstractmethod
    def frames(self) -> AsyncIterator[str]:
        """
        Yield the JSON payload of each received frame in arrival order.

        Returns normally when the server closes the stream cleanly and
        raises TransportError when the stream is dropped.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once; never raises."""

    async def send(self, message: ClientMessage) -> bool:
        """Send a control message. Returns False if unsupported or not open."""
        return False


ConnectionFactory = Callable[[str, str], StreamConnection]


def _timeout() -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT)


class SSEConnection(StreamConnection):
    """Event-stream subscription over a long-lived HTTP GET."""

    def __init__(
        self,
        base_url: str,
        room: str,
        participant: str,
        session: aiohttp.ClientSession | None = None
    ) -> None:
        self.url: str = base_url.rstrip("/") + SSE_PATH
        self.room: str = room
        self.participant: str = participant
        self._session: aiohttp.ClientSession | None = session
        self._owns_session: bool = session is None
        self._response: aiohttp.ClientResponse | None = None

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=_timeout())
        try:
            response = await self._session.get(
                self.url,
                params={"room": self.room, "participant": self.participant},
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Failed to open SSE connection: {e}") from e

        if response.status != 200:
            body = await response.text()
            response.release()
            raise TransportError(
                f"SSE endpoint returned {response.status}: {body.strip()}")

        self._response = response
        logger.debug("SSE connection opened: %s", self.url)

    async def frames(self) -> AsyncIterator[str]:
        if self._response is None:
            raise TransportError("SSE connection is not open")

        data_lines: list[str] = []
        # Set when a line of the current event could not be decoded
        corrupt = False
        try:
            async for raw_line in self._response.content:
                try:
                    line = raw_line.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError as e:
                    logger.warning("Dropping SSE event with undecodable data: %s", e)
                    corrupt = True
                    continue
                if not line:
                    # Blank line dispatches the event
                    if data_lines and not corrupt:
                        yield "\n".join(data_lines)
                    data_lines = []
                    corrupt = False
                    continue
                if line.startswith(":"):
                    # Comment / keep-alive
                    continue
                field_name, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if field_name == "data":
                    data_lines.append(value)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"SSE stream dropped: {e}") from e

        raise TransportError("SSE stream closed by server")

    async def close(self) -> None:
        if self._response is not None:
            self._response.close()
            self._response = None
        if self._owns_session and self._session is not None:
            with contextlib.suppress(Exception):
                await self._session.close()
            self._session = None


class WebSocketConnection(StreamConnection):
    """Bidirectional subscription over a WebSocket."""

    bidirectional = True

    def __init__(
        self,
        base_url: str,
        room: str,
        participant: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0
    ) -> None:
        url = base_url.rstrip("/") + WS_PATH
        if url.startswith("http"):
            url = "ws" + url[len("http"):]
        self.url: str = url
        self.room: str = room
        self.participant: str = participant
        self.heartbeat: float | None = heartbeat
        self._session: aiohttp.ClientSession | None = session
        self._owns_session: bool = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closing: bool = False

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=_timeout())
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                params={"room": self.room, "participant": self.participant},
                heartbeat=self.heartbeat,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Failed to open WebSocket connection: {e}") from e

        logger.debug("WebSocket connection opened: %s", self.url)
        await self.send(ClientMessage(
            type="subscribe",
            timestamp=now_ms(),
            room_name=self.room,
            participant_name=self.participant,
        ))

    async def frames(self) -> AsyncIterator[str]:
        if self._ws is None:
            raise TransportError("WebSocket connection is not open")

        ws = self._ws
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"WebSocket error: {ws.exception()}")

        if self._closing or ws.close_code == aiohttp.WSCloseCode.OK:
            return
        raise TransportError(f"WebSocket closed with code {ws.close_code}")

    async def send(self, message: ClientMessage) -> bool:
        if self._ws is None or self._ws.closed:
            return False
        try:
            await self._ws.send_str(encode_message(message))
            return True
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning("Failed to send %s message: %s", message.type, e)
            return False

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            if not self._ws.closed:
                await self.send(ClientMessage(type="unsubscribe", timestamp=now_ms()))
                with contextlib.suppress(Exception):
                    await self._ws.close(code=aiohttp.WSCloseCode.OK, message=b"Normal closure")
            self._ws = None
        if self._owns_session and self._session is not None:
            with contextlib.suppress(Exception):
                await self._session.close()
            self._session = None


def make_connection_factory(
    base_url: str,
    transport: str = "sse",
    session: aiohttp.ClientSession | None = None
) -> ConnectionFactory:
    """
    Build a factory producing connections of the requested kind.

    Args:
        base_url: Server base URL (e.g., "http://127.0.0.1:8000")
        transport: "sse" or "ws"
        session: Optional shared aiohttp session

    Returns:
        A callable taking (room, participant) and returning a new connection
    """
    if transport == "sse":
        return lambda room, participant: SSEConnection(base_url, room, participant, session)
    if transport == "ws":
        return lambda room, participant: WebSocketConnection(base_url, room, participant, session)
    raise ValueError(f"Unknown transport: {transport}. Choose 'sse' or 'ws'")
