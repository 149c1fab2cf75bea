# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
End-to-end tests: StreamTransport over real SSE and WebSocket connections
against the aiohttp host.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable

import pytest
from aiohttp import test_utils, web

from livecue.connections import SSEConnection, WebSocketConnection, make_connection_factory
from livecue.errors import TransportError
from livecue.protocol import (
    ConnectionState,
    StatusMessage,
    TranscriptEvent,
    TranscriptMessage,
    sse_frame,
)
from livecue.server import WebServer
from livecue.transport import (
    RemoteStatus,
    ServerReply,
    StateChanged,
    StatusEvent,
    StreamTransport,
    TranscriptReceived,
)


@contextlib.asynccontextmanager
async def serving(server: WebServer) -> AsyncIterator[str]:
    """Run the server and yield its base URL."""
    test_server = test_utils.TestServer(server.app)
    await test_server.start_server()
    try:
        yield str(test_server.make_url("/")).rstrip("/")
    finally:
        await server.stop()
        await test_server.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


def transcript(text: str, is_final: bool = True) -> TranscriptEvent:
    return TranscriptEvent(text=text, is_final=is_final, timestamp=1, participant_identity="agent")


def make_transport(base_url: str, kind: str) -> tuple[StreamTransport, list]:
    transport = StreamTransport(
        "studio", "viewer", base_url=base_url, transport=kind, reconnect_interval=0.05)
    events: list = []
    transport.on_event(events.append)
    return transport, events


def received_texts(events: list) -> list[str]:
    return [e.event.text for e in events if isinstance(e, TranscriptReceived)]


@pytest.mark.parametrize("kind", ["sse", "ws"])
@pytest.mark.asyncio
async def test_transcripts_delivered_in_order(kind):
    server = WebServer()
    async with serving(server) as base_url:
        transport, events = make_transport(base_url, kind)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=3)
        # The greeting proves the server side has subscribed
        await wait_until(lambda: any(isinstance(e, RemoteStatus) for e in events))

        for n in range(5):
            server.broadcaster.publish("studio", transcript(f"line {n}"))
        await wait_until(lambda: len(received_texts(events)) == 5)

        assert received_texts(events) == [f"line {n}" for n in range(5)]
        assert len([e for e in events if isinstance(e, StatusEvent)]) == 1
        await transport.disconnect()
        assert transport.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_websocket_control_reply():
    server = WebServer()
    async with serving(server) as base_url:
        transport, events = make_transport(base_url, "ws")
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=3)

        assert await transport.send_control("pause") is True
        await wait_until(lambda: any(
            isinstance(e, ServerReply) and e.response.type == "ack" for e in events))
        await transport.disconnect()


@pytest.mark.asyncio
async def test_sse_cannot_send_control():
    server = WebServer()
    async with serving(server) as base_url:
        transport, _ = make_transport(base_url, "sse")
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=3)
        assert await transport.send_control("pause") is False
        await transport.disconnect()


@pytest.mark.asyncio
async def test_unsubscribe_on_disconnect():
    server = WebServer()
    async with serving(server) as base_url:
        transport, events = make_transport(base_url, "sse")
        await transport.connect()
        await wait_until(lambda: any(isinstance(e, RemoteStatus) for e in events))
        assert server.broadcaster.subscriber_count("studio") == 1

        await transport.disconnect()
        # The server notices the dropped client on a later write
        for _ in range(100):
            if not server.broadcaster.has_room("studio"):
                break
            server.broadcaster.publish("studio", transcript("anyone there?"))
            await asyncio.sleep(0.02)
        assert not server.broadcaster.has_room("studio")


@pytest.mark.parametrize("kind", ["sse", "ws"])
@pytest.mark.asyncio
async def test_reconnects_after_server_drops_subscribers(kind):
    server = WebServer()
    async with serving(server) as base_url:
        transport, events = make_transport(base_url, kind)
        await transport.connect()
        await wait_until(lambda: server.broadcaster.subscriber_count("studio") == 1)

        server.broadcaster.close()
        await transport.wait_for_state(ConnectionState.RECONNECTING, timeout=3)
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=3)
        await wait_until(lambda: server.broadcaster.subscriber_count("studio") == 1)

        assert len([e for e in events if isinstance(e, StatusEvent)]) == 2
        await transport.disconnect()


@pytest.mark.asyncio
async def test_sse_open_rejected_with_missing_participant():
    server = WebServer()
    async with serving(server) as base_url:
        connection = SSEConnection(base_url, "studio", "")
        with pytest.raises(TransportError, match="400"):
            await connection.open()
        await connection.close()


@pytest.mark.asyncio
async def test_open_fails_without_server():
    connection = WebSocketConnection("http://127.0.0.1:9", "studio", "viewer")
    with pytest.raises(TransportError):
        await connection.open()
    await connection.close()


def test_factory_kinds():
    factory = make_connection_factory("http://example.test", "ws")
    connection = factory("studio", "viewer")
    assert isinstance(connection, WebSocketConnection)
    assert connection.url == "ws://example.test/api/transcripts.ws"
    assert connection.bidirectional

    connection = make_connection_factory("http://example.test/", "sse")("studio", "viewer")
    assert isinstance(connection, SSEConnection)
    assert connection.url == "http://example.test/api/transcripts.sse"

    with pytest.raises(ValueError):
        make_connection_factory("http://example.test", "carrier-pigeon")


@pytest.mark.asyncio
async def test_undecodable_sse_event_dropped():
    """Bytes that are not UTF-8 cost one event, not the connection."""
    release = asyncio.Event()

    async def handler(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(sse_frame(
            StatusMessage(status="connected", timestamp=1, message="hello")).encode())
        await response.write(b"data: \xff\xfe not text\n\n")
        await response.write(sse_frame(
            TranscriptMessage(data=transcript("after the bad one"), session_id="s1")).encode())
        await release.wait()
        return response

    app = web.Application()
    app.router.add_get("/api/transcripts.sse", handler)
    test_server = test_utils.TestServer(app)
    await test_server.start_server()
    try:
        base_url = str(test_server.make_url("/")).rstrip("/")
        transport, events = make_transport(base_url, "sse")
        await transport.connect()
        await wait_until(lambda: received_texts(events) == ["after the bad one"])

        assert transport.state == ConnectionState.CONNECTED
        states = [e.current for e in events if isinstance(e, StateChanged)]
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        await transport.disconnect()
    finally:
        release.set()
        await test_server.close()
