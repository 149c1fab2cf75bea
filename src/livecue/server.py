# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
HTTP host for the transcript stream.

Serves the event stream (SSE), the bidirectional WebSocket stream, a test
publish endpoint, connection info and the agent lifecycle endpoints. The
server owns one Broadcaster and one AgentManager for its whole lifetime.
"""

import asyncio
import contextlib
import logging
from typing import Any

from aiohttp import WSCloseCode, web

from . import debug_log
from .agent import DEFAULT_IDENTITY, AgentManager, AgentResult, SourceFactory
from .broadcaster import DEFAULT_SINK_SIZE, Broadcaster, QueueSink
from .connections import SSE_PATH, WS_PATH
from .errors import ParseError
from .protocol import (
    CONTROL_ACTIONS,
    ClientMessage,
    ServerResponse,
    TranscriptEvent,
    decode_client_message,
    encode_message,
    now_ms,
    sse_frame,
)

logger = logging.getLogger(__name__)

# Seconds of silence before an SSE comment is sent to detect dead clients
SSE_KEEPALIVE: float = 15.0

TEST_PARTICIPANT: str = "test-agent"
TEST_CONFIDENCE: float = 0.9


class WebServer:
    """
    Serves the transcript stream and manages subscriber connections.

    Usage:
        server = WebServer(port=8000, room="studio", source_factory=make_source)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8000,
        room: str = "default",
        source_factory: SourceFactory | None = None,
        participant_identity: str = DEFAULT_IDENTITY,
        sink_size: int = DEFAULT_SINK_SIZE
    ) -> None:
        """
        Args:
            host: Interface to bind
            port: Port to bind
            room: Room the capture agent publishes into
            source_factory: Builds the agent's speech source; without one the
                agent endpoints report that no agent is configured
            participant_identity: Identity stamped on the agent's transcripts
            sink_size: Frames buffered per subscriber before it is dropped
        """
        self.host: str = host
        self.port: int = port
        self.app: web.Application = web.Application()
        self.runner: web.AppRunner | None = None
        self.websockets: set[web.WebSocketResponse] = set()

        self.broadcaster: Broadcaster = Broadcaster(sink_size)
        self.agent_manager: AgentManager | None = None
        if source_factory is not None:
            self.agent_manager = AgentManager(
                self.broadcaster, room, source_factory, participant_identity)

        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get(SSE_PATH, self._handle_sse)
        self.app.router.add_get(WS_PATH, self._handle_websocket)
        self.app.router.add_post('/api/test-transcript', self._handle_test_transcript)
        self.app.router.add_get('/api/connections', self._handle_connections)
        self.app.router.add_post('/api/agent/start', self._handle_agent_start)
        self.app.router.add_post('/api/agent/stop', self._handle_agent_stop)
        self.app.router.add_get('/api/agent/status', self._handle_agent_status)

    @staticmethod
    def _subscription_params(request: web.Request) -> tuple[str, str] | None:
        room = request.query.get("room")
        participant = request.query.get("participant")
        if not room or not participant:
            return None
        return room, participant

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        """Stream a room's events as server-sent events."""
        params = self._subscription_params(request)
        if params is None:
            return web.Response(status=400, text="Missing room or participant parameter")
        room, participant = params

        response = web.StreamResponse(headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Headers": "Cache-Control",
        })
        await response.prepare(request)

        sink = QueueSink(self.broadcaster.sink_size)
        handle = self.broadcaster.subscribe(room, participant, sink)
        try:
            while handle.is_alive:
                try:
                    payload = await asyncio.wait_for(sink.read(), SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if payload is None:
                    break
                await response.write(sse_frame(payload).encode("utf-8"))
        except ConnectionResetError:
            logger.debug("SSE client went away: %s", handle.connection_id)
        finally:
            self.broadcaster.unsubscribe(handle)

        return response

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        """Stream a room's events over a WebSocket and answer control messages."""
        params = self._subscription_params(request)
        if params is None:
            return web.Response(status=400, text="Missing room or participant parameter")
        room, participant = params

        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        sink = QueueSink(self.broadcaster.sink_size)
        handle = self.broadcaster.subscribe(room, participant, sink)
        self.websockets.add(ws)
        forwarder = asyncio.create_task(self._forward(sink, ws))
        logger.info("WebSocket connected: %s. Total: %d",
                    handle.connection_id, len(self.websockets))

        try:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    reply = await self._handle_client_message(msg.data)
                    await ws.send_str(encode_message(reply))
                elif msg.type == web.WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
        except ConnectionResetError:
            logger.debug("WebSocket client went away: %s", handle.connection_id)
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder
            self.broadcaster.unsubscribe(handle)
            self.websockets.discard(ws)
            logger.info("WebSocket disconnected: %s. Total: %d",
                        handle.connection_id, len(self.websockets))

        return ws

    async def _forward(self, sink: QueueSink, ws: web.WebSocketResponse) -> None:
        """Copy frames from a subscriber's sink to its WebSocket."""
        try:
            while True:
                payload = await sink.read()
                if payload is None:
                    break
                await ws.send_str(payload)
        except ConnectionResetError:
            return
        # Sink released by eviction or shutdown; not a normal closure, so
        # clients will try to reconnect
        await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Subscriber released")

    async def _handle_client_message(self, raw: str) -> ServerResponse:
        """Decode one client message and build the reply."""
        try:
            message = decode_client_message(raw)
        except ParseError as e:
            logger.warning("Bad WebSocket message: %s", e)
            text = str(e)
            if not text.startswith("Unknown message type"):
                text = "Invalid message format"
            return ServerResponse(type="error", message=text, timestamp=now_ms())

        if message.type == "subscribe":
            return ServerResponse(
                type="success", message="Subscribed to transcript updates", timestamp=now_ms())
        if message.type == "unsubscribe":
            return ServerResponse(
                type="success", message="Unsubscribed from transcript updates", timestamp=now_ms())
        return await self._handle_control(message)

    async def _handle_control(self, message: ClientMessage) -> ServerResponse:
        """Apply a control action; start and stop drive the agent."""
        action = message.action
        if action not in CONTROL_ACTIONS:
            return ServerResponse(
                type="error", message=f"Unknown control action: {action}", timestamp=now_ms())

        if action in ("start", "stop"):
            if self.agent_manager is None:
                return ServerResponse(
                    type="error", message="No agent configured", timestamp=now_ms())
            if action == "start":
                result = await self.agent_manager.start()
            else:
                result = await self.agent_manager.stop()
            return ServerResponse(
                type="success" if result.success else "error",
                message=result.message,
                timestamp=now_ms(),
            )

        return ServerResponse(
            type="ack", message=f"Control action '{action}' processed", timestamp=now_ms())

    async def _handle_test_transcript(self, request: web.Request) -> web.Response:
        """Publish a transcript from a form post, for manual testing."""
        data = await request.post()
        room = str(data.get("roomName", "") or "")
        text = str(data.get("text", "") or "")
        is_final = data.get("isFinal") == "true"
        if not room or not text:
            return web.json_response({"error": "Missing roomName or text"}, status=400)

        event = TranscriptEvent(
            text=text,
            is_final=is_final,
            timestamp=now_ms(),
            participant_identity=TEST_PARTICIPANT,
            confidence=TEST_CONFIDENCE,
        )
        delivered = self.broadcaster.publish(room, event)
        debug_log.log_broadcast(room, "test", delivered, text)
        return web.json_response({
            "success": True,
            "message": f"Broadcast transcript to room {room}",
            "delivered": delivered,
            "transcript": event.to_dict(),
        })

    async def _handle_connections(self, request: web.Request) -> web.Response:
        """Report subscriber counts."""
        return web.json_response(self.broadcaster.connection_info())

    def _agent_response(self, result: AgentResult, failure_status: int = 400) -> web.Response:
        status = 200 if result.success else failure_status
        return web.json_response(result.to_dict(), status=status)

    def _no_agent(self) -> web.Response:
        body: dict[str, Any] = {"success": False, "message": "No agent configured"}
        return web.json_response(body, status=500)

    async def _handle_agent_start(self, request: web.Request) -> web.Response:
        if self.agent_manager is None:
            return self._no_agent()
        # Starting twice is a client error, anything else a server failure
        already_running = self.agent_manager.is_running
        result = await self.agent_manager.start()
        return self._agent_response(result, 400 if already_running else 500)

    async def _handle_agent_stop(self, request: web.Request) -> web.Response:
        if self.agent_manager is None:
            return self._no_agent()
        was_running = self.agent_manager.is_running
        result = await self.agent_manager.stop()
        return self._agent_response(result, 500 if was_running else 400)

    async def _handle_agent_status(self, request: web.Request) -> web.Response:
        if self.agent_manager is None:
            return self._no_agent()
        return web.json_response({
            "success": True,
            "status": self.agent_manager.status().to_dict(),
        })

    async def start(self) -> None:
        """Start the web server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site: web.TCPSite = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info("Web server running at http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Stop the agent, release every subscriber and stop the server."""
        if self.agent_manager is not None and self.agent_manager.is_running:
            await self.agent_manager.stop()

        # Ends every SSE and WebSocket handler loop
        self.broadcaster.close()
        for ws in list(self.websockets):
            with contextlib.suppress(Exception):
                await ws.close()
        self.websockets.clear()

        if self.runner:
            await self.runner.cleanup()
            self.runner = None
