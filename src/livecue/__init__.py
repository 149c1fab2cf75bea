"""
livecue - Live transcript delivery with script following.

A capture agent publishes speech transcripts into per-room streams, and
viewers follow those streams to keep a script's reading position in step
with the speaker.
"""

__version__ = "0.1.0"

from .alignment import Sentence, align, split_sentences
from .broadcaster import Broadcaster, QueueSink, SubscriberHandle
from .cursor import CursorUpdate, ScriptCursor
from .protocol import ConnectionState, TranscriptEvent, WordTimestamp
from .server import WebServer
from .teleprompter import Teleprompter
from .transport import StreamTransport

__all__ = [
    "Broadcaster",
    "QueueSink",
    "SubscriberHandle",
    "StreamTransport",
    "ConnectionState",
    "TranscriptEvent",
    "WordTimestamp",
    "Sentence",
    "align",
    "split_sentences",
    "ScriptCursor",
    "CursorUpdate",
    "Teleprompter",
    "WebServer",
]
