# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Base interface for speech sources feeding the capture agent.

A speech source turns speech (from a microphone, a file, a remote STT
service...) into a stream of interim and final recognition results.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from .alignment import split_sentences
from .protocol import WordTimestamp


@dataclass
class SpeechResult:
    """A recognition result from any speech source."""

    text: str
    is_final: bool
    confidence: float | None = None
    words: list[WordTimestamp] | None = None

    def __repr__(self) -> str:
        status: str = "final" if self.is_final else "interim"
        return f"SpeechResult({status}: '{self.text}')"


class SpeechSource(ABC):
    """Base interface for speech sources."""

    @abstractmethod
    async def open(self) -> None:
        """Acquire the underlying device or service."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying device or service. Safe to call twice."""

    @abstractmethod
    def results(self) -> AsyncIterator[SpeechResult]:
        """
        Yield recognition results as they become available.

        The iterator ends when the source is exhausted or closed.
        """


class ScriptedSpeechSource(SpeechSource):
    """
    Replays fixed lines as if they were being spoken.

    Each line is emitted as a growing series of interim results, one word at
    a time, followed by a final result for the whole line. Useful for demos
    and for exercising viewers without a microphone.
    """

    def __init__(
        self,
        lines: Sequence[str],
        word_delay: float = 0.25,
        interim: bool = True,
        confidence: float = 0.9
    ) -> None:
        """
        Args:
            lines: Utterances to replay, in order
            word_delay: Seconds between successive words
            interim: Emit interim results before each final one
            confidence: Confidence attached to final results
        """
        self.lines: list[str] = [line for line in lines if line.strip()]
        self.word_delay: float = word_delay
        self.interim: bool = interim
        self.confidence: float = confidence
        self._closed: bool = True

    @classmethod
    def from_script(cls, script_text: str, **kwargs) -> 'ScriptedSpeechSource':
        """Replay a script one sentence per utterance."""
        return cls([s.text for s in split_sentences(script_text)], **kwargs)

    async def open(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    async def results(self) -> AsyncIterator[SpeechResult]:
        for line in self.lines:
            words = line.split()
            if self.interim:
                for i in range(1, len(words)):
                    if self._closed:
                        return
                    await asyncio.sleep(self.word_delay)
                    yield SpeechResult(" ".join(words[:i]), is_final=False)
            if self._closed:
                return
            await asyncio.sleep(self.word_delay)
            yield SpeechResult(line, is_final=True, confidence=self.confidence)
