# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Tests for the reconnecting StreamTransport.

Connections are replaced by scripted fakes, so these tests exercise the
state machine without any network:
- connect idempotence
- the reconnect bound
- frame order and parse-error isolation
- disconnect from every state
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import pytest

from livecue.connections import StreamConnection
from livecue.errors import TransportError
from livecue.protocol import (
    ClientMessage,
    ConnectionState,
    StatusMessage,
    TranscriptEvent,
    TranscriptMessage,
    encode_message,
)
from livecue.transport import (
    RemoteStatus,
    StateChanged,
    StatusEvent,
    StreamTransport,
    TranscriptReceived,
)


@dataclass
class Plan:
    """What one connection attempt does."""
    frames: tuple[str, ...] = ()
    # "hold" keeps the stream open, "drop" fails it, "clean" ends it
    end: str = "hold"
    fail_open: bool = False


class FakeConnection(StreamConnection):
    """Connection that plays back a Plan."""

    def __init__(self, plan: Plan, bidirectional: bool) -> None:
        self.plan = plan
        self.bidirectional = bidirectional
        self.close_count = 0
        self.sent: list[ClientMessage] = []
        self._closed = asyncio.Event()

    async def open(self) -> None:
        if self.plan.fail_open:
            raise TransportError("connection refused")

    async def frames(self) -> AsyncIterator[str]:
        for payload in self.plan.frames:
            yield payload
        if self.plan.end == "drop":
            raise TransportError("stream dropped")
        if self.plan.end == "hold":
            await self._closed.wait()

    async def send(self, message: ClientMessage) -> bool:
        self.sent.append(message)
        return True

    async def close(self) -> None:
        self.close_count += 1
        self._closed.set()


class FakeFactory:
    """Hands out one FakeConnection per attempt, following a list of plans."""

    def __init__(self, plans: list[Plan], default: Plan | None = None,
                 bidirectional: bool = False) -> None:
        self.plans = list(plans)
        self.default = default or Plan(fail_open=True)
        self.bidirectional = bidirectional
        self.connections: list[FakeConnection] = []

    def __call__(self, room: str, participant: str) -> FakeConnection:
        plan = self.plans.pop(0) if self.plans else self.default
        connection = FakeConnection(plan, self.bidirectional)
        self.connections.append(connection)
        return connection


def transcript_frame(text: str, is_final: bool = True) -> str:
    event = TranscriptEvent(
        text=text, is_final=is_final, timestamp=1, participant_identity="agent")
    return encode_message(TranscriptMessage(data=event, session_id="studio:1"))


def make_transport(factory: FakeFactory, **kwargs) -> tuple[StreamTransport, list]:
    kwargs.setdefault("reconnect_interval", 0)
    transport = StreamTransport("studio", "viewer", factory, **kwargs)
    events: list = []
    transport.on_event(events.append)
    return transport, events


def states(events: list) -> list[ConnectionState]:
    return [e.current for e in events if isinstance(e, StateChanged)]


def texts(events: list) -> list[str]:
    return [e.event.text for e in events if isinstance(e, TranscriptReceived)]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


class TestConnect:
    """Opening and closing the subscription."""

    @pytest.mark.asyncio
    async def test_connect_opens_and_emits_status_once(self):
        transport, events = make_transport(FakeFactory([Plan()]))
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)

        assert states(events) == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        status_events = [e for e in events if isinstance(e, StatusEvent)]
        assert len(status_events) == 1
        assert status_events[0].status == ConnectionState.CONNECTED
        assert transport.is_connected
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        factory = FakeFactory([Plan()])
        transport, events = make_transport(factory)
        await transport.connect()
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)
        await transport.connect()

        assert len(factory.connections) == 1
        assert states(events) == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_connect_requires_room_and_participant(self):
        transport, _ = make_transport(FakeFactory([]))
        with pytest.raises(ValueError):
            await transport.connect(room="")
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_replaces_subscription(self):
        factory = FakeFactory([Plan()])
        transport, _ = make_transport(factory)
        await transport.connect(room="lobby", participant="bob")
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)
        assert (transport.room, transport.participant) == ("lobby", "bob")
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_clean_close_disconnects(self):
        transport, events = make_transport(FakeFactory([Plan(end="clean")]))
        await transport.connect()
        await transport.wait_for_state(ConnectionState.DISCONNECTED, timeout=2)
        assert states(events) == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_disconnect_closes_connection(self):
        factory = FakeFactory([Plan()])
        transport, events = make_transport(factory)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)
        await transport.disconnect()

        assert transport.state == ConnectionState.DISCONNECTED
        assert factory.connections[0].close_count >= 1
        assert states(events)[-1] == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_when_idle_is_safe(self):
        transport, events = make_transport(FakeFactory([]))
        await transport.disconnect()
        assert transport.state == ConnectionState.DISCONNECTED
        assert events == []


class TestReconnect:
    """Retry behaviour after transport errors."""

    @pytest.mark.asyncio
    async def test_reconnect_bound(self):
        factory = FakeFactory([])  # every attempt fails to open
        transport, events = make_transport(factory, max_reconnect_attempts=5)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.ERROR, timeout=2)
        await asyncio.sleep(0.05)

        seen = states(events)
        assert seen.count(ConnectionState.RECONNECTING) == 5
        assert seen[-1] == ConnectionState.ERROR
        # Initial attempt plus five retries, nothing after the error
        assert len(factory.connections) == 6
        assert transport.reconnect_attempts == 5
        assert not transport.can_reconnect
        assert "5 reconnect attempts" in transport.last_error
        error_event = [e for e in events if isinstance(e, StateChanged)][-1]
        assert error_event.error == transport.last_error

    @pytest.mark.asyncio
    async def test_no_auto_reconnect_goes_to_error(self):
        factory = FakeFactory([])
        transport, events = make_transport(factory, auto_reconnect=False)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.ERROR, timeout=2)

        assert ConnectionState.RECONNECTING not in states(events)
        assert transport.last_error == "connection refused"
        assert len(factory.connections) == 1

    @pytest.mark.asyncio
    async def test_successful_open_resets_attempts(self):
        factory = FakeFactory([Plan(fail_open=True), Plan(end="drop"), Plan()])
        transport, events = make_transport(factory)
        await transport.connect()
        await wait_until(lambda: len(factory.connections) == 3 and transport.is_connected)

        assert transport.reconnect_attempts == 0
        assert transport.last_error is None
        assert len([e for e in events if isinstance(e, StatusEvent)]) == 2
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_connect_from_error_resets_attempts(self):
        factory = FakeFactory([], default=Plan(fail_open=True))
        transport, _ = make_transport(factory, max_reconnect_attempts=1)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.ERROR, timeout=2)

        factory.default = Plan()
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)
        assert transport.reconnect_attempts == 0
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_while_waiting_to_reconnect(self):
        factory = FakeFactory([])
        transport, events = make_transport(factory, reconnect_interval=10)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.RECONNECTING, timeout=2)

        await transport.disconnect()
        event_count = len(events)
        await asyncio.sleep(0.05)

        assert transport.state == ConnectionState.DISCONNECTED
        assert transport.reconnect_attempts == 0
        assert len(events) == event_count
        assert len(factory.connections) == 1

    @pytest.mark.asyncio
    async def test_manual_connect_skips_reconnect_wait(self):
        factory = FakeFactory([Plan(fail_open=True), Plan()])
        transport, _ = make_transport(factory, reconnect_interval=10)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.RECONNECTING, timeout=2)

        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        assert len(factory.connections) == 2
        await transport.disconnect()


class TestFrames:
    """Frame delivery."""

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        frames = tuple(transcript_frame(f"line {n}") for n in range(10))
        transport, events = make_transport(FakeFactory([Plan(frames=frames)]))
        await transport.connect()
        await wait_until(lambda: len(texts(events)) == 10)

        assert texts(events) == [f"line {n}" for n in range(10)]
        assert [t.text for t in transport.transcripts] == texts(events)
        assert transport.last_transcript.text == "line 9"
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frame_isolated(self):
        frames = (transcript_frame("before"), "{not json", transcript_frame("after"))
        transport, events = make_transport(FakeFactory([Plan(frames=frames)]))
        await transport.connect()
        await wait_until(lambda: len(texts(events)) == 2)

        assert texts(events) == ["before", "after"]
        assert transport.is_connected
        assert states(events) == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frame_records_error(self):
        frames = (transcript_frame("ok"), '{"type": "mystery"}')
        transport, events = make_transport(FakeFactory([Plan(frames=frames)]))
        await transport.connect()
        await wait_until(lambda: transport.last_error is not None)

        assert transport.last_error == "Failed to parse message from server"
        assert transport.is_connected
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_buffer_size_drops_oldest(self):
        frames = tuple(transcript_frame(f"line {n}") for n in range(5))
        transport, events = make_transport(FakeFactory([Plan(frames=frames)]), buffer_size=2)
        await transport.connect()
        await wait_until(lambda: len(texts(events)) == 5)

        assert [t.text for t in transport.transcripts] == ["line 3", "line 4"]
        transport.clear_transcripts()
        assert transport.transcripts == []
        assert transport.last_transcript is None
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_status_frames_do_not_change_state(self):
        status = encode_message(StatusMessage(
            status="disconnected", timestamp=1, message="Teleprompter agent stopped"))
        transport, events = make_transport(FakeFactory([Plan(frames=(status,))]))
        await transport.connect()
        await wait_until(lambda: any(isinstance(e, RemoteStatus) for e in events))

        remote = [e for e in events if isinstance(e, RemoteStatus)][0]
        assert remote.message.message == "Teleprompter agent stopped"
        assert transport.is_connected
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self):
        frames = (transcript_frame("one"), transcript_frame("two"))
        transport = StreamTransport("studio", "viewer", FakeFactory([Plan(frames=frames)]))
        received: list[str] = []

        def handler(event):
            if isinstance(event, TranscriptReceived):
                received.append(event.event.text)
                raise RuntimeError("handler bug")

        transport.on_event(handler)
        await transport.connect()
        await wait_until(lambda: len(received) == 2)
        assert transport.is_connected
        await transport.disconnect()


class TestSendControl:
    """Client -> server control messages."""

    @pytest.mark.asyncio
    async def test_not_sent_when_disconnected(self):
        transport, _ = make_transport(FakeFactory([]))
        assert await transport.send_control("pause") is False

    @pytest.mark.asyncio
    async def test_not_sent_over_one_way_connection(self):
        transport, _ = make_transport(FakeFactory([Plan()]))
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)
        assert await transport.send_control("pause") is False
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_sent_over_bidirectional_connection(self):
        factory = FakeFactory([Plan()], bidirectional=True)
        transport, _ = make_transport(factory)
        await transport.connect()
        await transport.wait_for_state(ConnectionState.CONNECTED, timeout=2)

        assert await transport.send_control("pause") is True
        sent = factory.connections[0].sent
        assert [(m.type, m.action) for m in sent] == [("control", "pause")]
        await transport.disconnect()
