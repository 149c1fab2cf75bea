# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Transcript data model and wire messages.

Every frame that crosses the network is one of the tagged message classes
below. Frames are decoded exactly once, at the transport boundary, and
anything that does not decode into a known variant raises ParseError.

Server -> client frames:
- {"type": "transcript", "data": TranscriptEvent, "sessionId": str}
- {"type": "status", "status": str, "message"?: str, "timestamp": int}
- {"type": "success" | "error" | "ack", "message": str, "timestamp": int,
   "requestId"?: str}                       (WebSocket only)

Client -> server frames (WebSocket only):
- {"type": "subscribe" | "unsubscribe" | "control", "roomName"?: str,
   "participantName"?: str, "action"?: str, "timestamp": int}
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from .errors import ParseError


class ConnectionState(str, Enum):
    """Connection state of a client stream."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


# Status frames may also announce that the agent is ready
STATUS_VALUES: frozenset[str] = frozenset(
    [state.value for state in ConnectionState] + ["ready"])

RESPONSE_TYPES: frozenset[str] = frozenset(["success", "error", "ack"])
CLIENT_MESSAGE_TYPES: frozenset[str] = frozenset(
    ["subscribe", "unsubscribe", "control"])
CONTROL_ACTIONS: frozenset[str] = frozenset(
    ["start", "stop", "pause", "resume", "clear"])


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class WordTimestamp:
    """Timing of a single recognized word."""
    word: str
    start_time: float
    end_time: float
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "word": self.word,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'WordTimestamp':
        if not isinstance(data, dict):
            raise ParseError(f"word timestamp must be an object, got {type(data).__name__}")
        try:
            return cls(
                word=str(data["word"]),
                start_time=float(data["startTime"]),
                end_time=float(data["endTime"]),
                confidence=float(data["confidence"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"invalid word timestamp: {e}") from e


@dataclass(frozen=True)
class TranscriptEvent:
    """One recognized utterance segment, interim or final."""
    text: str
    is_final: bool
    timestamp: int  # milliseconds since the epoch
    participant_identity: str
    confidence: float | None = None
    word_timestamps: tuple[WordTimestamp, ...] | None = None

    def __post_init__(self) -> None:
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(
                f"confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "text": self.text,
            "isFinal": self.is_final,
            "timestamp": self.timestamp,
            "participantIdentity": self.participant_identity,
        }
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.word_timestamps is not None:
            data["wordTimestamps"] = [w.to_dict() for w in self.word_timestamps]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> 'TranscriptEvent':
        if not isinstance(data, dict):
            raise ParseError("transcript data must be an object")
        try:
            text = data["text"]
            is_final = data["isFinal"]
            timestamp = data["timestamp"]
            participant = data["participantIdentity"]
        except KeyError as e:
            raise ParseError(f"transcript data missing field {e}") from e

        if not isinstance(text, str) or not isinstance(is_final, bool):
            raise ParseError("transcript text/isFinal have the wrong type")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            raise ParseError("transcript timestamp must be a number")

        confidence = data.get("confidence")
        if confidence is not None and not isinstance(confidence, (int, float)):
            raise ParseError("transcript confidence must be a number")

        words_raw = data.get("wordTimestamps")
        words: tuple[WordTimestamp, ...] | None = None
        if words_raw is not None:
            if not isinstance(words_raw, list):
                raise ParseError("wordTimestamps must be a list")
            words = tuple(WordTimestamp.from_dict(w) for w in words_raw)

        try:
            return cls(
                text=text,
                is_final=is_final,
                timestamp=int(timestamp),
                participant_identity=str(participant),
                confidence=float(confidence) if confidence is not None else None,
                word_timestamps=words,
            )
        except ValueError as e:
            raise ParseError(str(e)) from e


@dataclass(frozen=True)
class TranscriptMessage:
    """A transcript pushed to subscribers of a room."""
    data: TranscriptEvent
    session_id: str
    type: Literal["transcript"] = field(default="transcript", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data.to_dict(), "sessionId": self.session_id}


@dataclass(frozen=True)
class StatusMessage:
    """A connection or agent status announcement."""
    status: str
    timestamp: int
    message: str | None = None
    type: Literal["status"] = field(default="status", init=False)

    def __post_init__(self) -> None:
        if self.status not in STATUS_VALUES:
            raise ValueError(f"unknown status: {self.status}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.message is not None:
            data["message"] = self.message
        data["timestamp"] = self.timestamp
        return data


@dataclass(frozen=True)
class ServerResponse:
    """Server reply to a WebSocket control message."""
    type: str  # "success", "error" or "ack"
    message: str
    timestamp: int
    request_id: str | None = None

    def __post_init__(self) -> None:
        if self.type not in RESPONSE_TYPES:
            raise ValueError(f"unknown response type: {self.type}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.request_id is not None:
            data["requestId"] = self.request_id
        return data


@dataclass(frozen=True)
class ClientMessage:
    """Control message sent by a WebSocket client."""
    type: str  # "subscribe", "unsubscribe" or "control"
    timestamp: int
    room_name: str | None = None
    participant_name: str | None = None
    action: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.room_name is not None:
            data["roomName"] = self.room_name
        if self.participant_name is not None:
            data["participantName"] = self.participant_name
        if self.action is not None:
            data["action"] = self.action
        data["timestamp"] = self.timestamp
        return data


StreamMessage = Union[TranscriptMessage, StatusMessage, ServerResponse]


def encode_message(message: StreamMessage | ClientMessage) -> str:
    """Serialize a message to its JSON text."""
    return json.dumps(message.to_dict())


def sse_frame(message: StreamMessage | str) -> str:
    """Frame a message, or its already serialized JSON, for an event stream."""
    payload = message if isinstance(message, str) else encode_message(message)
    return f"data: {payload}\n\n"


def _load_object(payload: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except (ValueError, TypeError) as e:
        raise ParseError(f"frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("frame is not a JSON object")
    return data


def _int_field(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ParseError(f"frame field '{key}' must be a number")
    return int(value)


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(f"frame field '{key}' must be a string")
    return value


def decode_frame(payload: str | bytes) -> StreamMessage:
    """
    Decode a server -> client frame.

    Args:
        payload: The JSON text of one frame (without SSE framing)

    Returns:
        The decoded message variant

    Raises:
        ParseError: If the payload is not a recognized, well-formed message
    """
    data = _load_object(payload)
    msg_type = data.get("type")

    if msg_type == "transcript":
        session_id = data.get("sessionId")
        if not isinstance(session_id, str):
            raise ParseError("transcript frame missing sessionId")
        return TranscriptMessage(
            data=TranscriptEvent.from_dict(data.get("data")),
            session_id=session_id,
        )

    if msg_type == "status":
        status = data.get("status")
        if status not in STATUS_VALUES:
            raise ParseError(f"unknown status value: {status!r}")
        return StatusMessage(
            status=status,
            timestamp=_int_field(data, "timestamp"),
            message=_optional_str(data, "message"),
        )

    if msg_type in RESPONSE_TYPES:
        message = data.get("message")
        if not isinstance(message, str):
            raise ParseError("server response missing message")
        return ServerResponse(
            type=msg_type,
            message=message,
            timestamp=_int_field(data, "timestamp"),
            request_id=_optional_str(data, "requestId"),
        )

    raise ParseError(f"Unknown message type: {msg_type}")


def decode_client_message(payload: str | bytes) -> ClientMessage:
    """
    Decode a client -> server control message.

    Raises:
        ParseError: On invalid JSON or an unknown message type
    """
    data = _load_object(payload)
    msg_type = data.get("type")
    if msg_type not in CLIENT_MESSAGE_TYPES:
        raise ParseError(f"Unknown message type: {msg_type}")

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        # Older clients omit the timestamp; stamp it on arrival
        timestamp = now_ms()

    return ClientMessage(
        type=msg_type,
        timestamp=int(timestamp),
        room_name=_optional_str(data, "roomName"),
        participant_name=_optional_str(data, "participantName"),
        action=_optional_str(data, "action"),
    )
