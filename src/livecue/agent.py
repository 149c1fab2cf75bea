# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Capture agent and its lifecycle manager.

The TeleprompterAgent reads a speech source and publishes every result into
the Broadcaster for one room. The AgentManager owns at most one agent at a
time and walks it through an explicit lifecycle:

    stopped --start()--> starting --ok--> running --stop()--> stopping --> stopped
                         running --source ends--> stopped
                         running --source fails--> failed
                         starting/stopping --failure--> failed --start()--> starting

Start and stop report their outcome as an AgentResult instead of raising,
and lifecycle events go to a single registered handler.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from . import debug_log
from .broadcaster import Broadcaster
from .protocol import ConnectionState, TranscriptEvent, now_ms
from .speech_source import SpeechResult, SpeechSource

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY: str = "livecue-agent"


class TeleprompterAgent:
    """
    Publishes one speech source into one room.

    Usage:
        agent = TeleprompterAgent(broadcaster, "studio", source)
        await agent.start()
        ...
        await agent.stop()
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        room: str,
        source: SpeechSource,
        participant_identity: str = DEFAULT_IDENTITY,
        on_finished: Callable[['TeleprompterAgent', str | None], None] | None = None
    ) -> None:
        """
        Args:
            broadcaster: Where transcripts are published
            room: Room to publish into
            source: Speech source to read
            participant_identity: Identity stamped on every transcript
            on_finished: Called with (agent, error) when the source ends or
                fails on its own; error is None for a normal end. Not called
                after stop().
        """
        self.broadcaster: Broadcaster = broadcaster
        self.room: str = room
        self.source: SpeechSource = source
        self.participant_identity: str = participant_identity
        self.on_finished: Callable[[TeleprompterAgent, str | None], None] | None = on_finished
        self.error: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        """True while the publishing task is running."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the speech source and begin publishing."""
        if self._task is not None:
            return
        await self.source.open()
        self.error = None
        self.broadcaster.publish_status(
            self.room, ConnectionState.CONNECTED, "Teleprompter agent started")
        self._task = asyncio.create_task(self._run(), name=f"agent-{self.room}")
        logger.info("Teleprompter agent started for room %s", self.room)

    async def stop(self) -> None:
        """Stop publishing and release the speech source."""
        task = self._task
        self._task = None
        if task is None:
            return
        # A task that already finished has announced its own end
        finished = task.done()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await self.source.close()
        if not finished:
            self.broadcaster.publish_status(
                self.room, ConnectionState.DISCONNECTED, "Teleprompter agent stopped")
        logger.info("Teleprompter agent stopped for room %s", self.room)

    async def _run(self) -> None:
        error: str | None = None
        try:
            async for result in self.source.results():
                self.send_transcript(result)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            error = str(e)
            self.error = error
            logger.error("Speech source failed: %s", e, exc_info=True)
            self.broadcaster.publish_status(
                self.room, ConnectionState.ERROR, f"Speech source failed: {e}")
        else:
            logger.info("Speech source for room %s finished", self.room)
            self.broadcaster.publish_status(
                self.room, ConnectionState.DISCONNECTED, "Teleprompter agent stopped")

        try:
            await self.source.close()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Failed to close speech source: %s", e)

        if self.on_finished is not None:
            self.on_finished(self, error)

    def send_transcript(self, result: SpeechResult) -> int:
        """
        Publish one recognition result to the room.

        Empty results are skipped. A failure is announced to the room as an
        error status rather than raised.

        Returns:
            Number of subscribers the transcript reached
        """
        text = result.text.strip()
        if not text:
            return 0
        try:
            event = TranscriptEvent(
                text=text,
                is_final=result.is_final,
                timestamp=now_ms(),
                participant_identity=self.participant_identity,
                confidence=result.confidence,
                word_timestamps=tuple(result.words) if result.words else None,
            )
            delivered = self.broadcaster.publish(self.room, event)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Failed to send transcript: %s", e)
            self.broadcaster.publish_status(
                self.room, ConnectionState.ERROR, f"Failed to send transcript: {e}")
            return 0

        debug_log.log_broadcast(
            self.room, "final" if result.is_final else "interim", delivered, text)
        return delivered


class AgentState(str, Enum):
    """Lifecycle state of the managed agent."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentStatus:
    """Snapshot of the manager's state."""
    state: AgentState
    running: bool
    last_started: int | None = None
    last_stopped: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "lastStarted": self.last_started,
            "lastStopped": self.last_stopped,
            "error": self.error,
        }


@dataclass(frozen=True)
class AgentResult:
    """Outcome of a start or stop request."""
    success: bool
    message: str
    status: AgentStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "status": self.status.to_dict(),
        }


@dataclass(frozen=True)
class AgentStarted:
    room: str
    timestamp: int


@dataclass(frozen=True)
class AgentStopped:
    room: str
    timestamp: int


@dataclass(frozen=True)
class AgentFailed:
    room: str
    error: str
    timestamp: int


AgentEvent = Union[AgentStarted, AgentStopped, AgentFailed]
SourceFactory = Callable[[], SpeechSource]


class AgentManager:
    """
    Owns the lifecycle of the room's capture agent.

    A fresh speech source is built from `source_factory` on every start, so
    a stopped or failed agent can always be started again.
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        room: str,
        source_factory: SourceFactory,
        participant_identity: str = DEFAULT_IDENTITY
    ) -> None:
        self.broadcaster: Broadcaster = broadcaster
        self.room: str = room
        self.source_factory: SourceFactory = source_factory
        self.participant_identity: str = participant_identity

        self.state: AgentState = AgentState.STOPPED
        self.agent: TeleprompterAgent | None = None
        self.last_started: int | None = None
        self.last_stopped: int | None = None
        self.error: str | None = None
        self._handler: Callable[[AgentEvent], None] | None = None

    def on_event(self, handler: Callable[[AgentEvent], None] | None) -> None:
        """Register the lifecycle event handler, replacing any previous one."""
        self._handler = handler

    @property
    def is_running(self) -> bool:
        return self.state == AgentState.RUNNING

    def status(self) -> AgentStatus:
        """Current lifecycle snapshot."""
        error = self.error
        if error is None and self.agent is not None:
            # The source may have failed after a successful start
            error = self.agent.error
        return AgentStatus(
            state=self.state,
            running=self.is_running,
            last_started=self.last_started,
            last_stopped=self.last_stopped,
            error=error,
        )

    async def start(self) -> AgentResult:
        """Start the agent. Fails without side effects if it is already up."""
        if self.state in (AgentState.STARTING, AgentState.RUNNING, AgentState.STOPPING):
            return AgentResult(False, "Agent is already running", self.status())

        self.state = AgentState.STARTING
        self.error = None
        agent = TeleprompterAgent(
            self.broadcaster, self.room, self.source_factory(), self.participant_identity,
            on_finished=self._on_agent_finished)
        try:
            await agent.start()
        except Exception as e:  # pylint: disable=broad-exception-caught
            return self._fail(f"Failed to start agent: {e}")

        self.agent = agent
        self.state = AgentState.RUNNING
        self.last_started = now_ms()
        self._emit(AgentStarted(room=self.room, timestamp=self.last_started))
        return AgentResult(True, "TeleprompterAgent started successfully", self.status())

    async def stop(self) -> AgentResult:
        """Stop the running agent."""
        if self.state != AgentState.RUNNING or self.agent is None:
            return AgentResult(False, "Agent is not running", self.status())

        self.state = AgentState.STOPPING
        agent = self.agent
        try:
            await agent.stop()
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.agent = None
            return self._fail(f"Failed to stop agent: {e}")

        self.agent = None
        self.state = AgentState.STOPPED
        self.last_stopped = now_ms()
        self._emit(AgentStopped(room=self.room, timestamp=self.last_stopped))
        return AgentResult(True, "TeleprompterAgent stopped successfully", self.status())

    def _on_agent_finished(self, agent: TeleprompterAgent, error: str | None) -> None:
        # Ignore agents already replaced or being stopped
        if agent is not self.agent or self.state != AgentState.RUNNING:
            return
        self.agent = None
        if error is not None:
            self._fail(f"Speech source failed: {error}")
            return
        self.state = AgentState.STOPPED
        self.last_stopped = now_ms()
        logger.info("Agent for room %s stopped: speech source finished", self.room)
        self._emit(AgentStopped(room=self.room, timestamp=self.last_stopped))

    def _fail(self, message: str) -> AgentResult:
        logger.error(message)
        self.state = AgentState.FAILED
        self.error = message
        self._emit(AgentFailed(room=self.room, error=message, timestamp=now_ms()))
        return AgentResult(False, message, self.status())

    def _emit(self, event: AgentEvent) -> None:
        if self._handler is None:
            return
        try:
            self._handler(event)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Agent event handler failed: %s", e, exc_info=True)
