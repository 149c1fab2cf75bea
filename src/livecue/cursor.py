# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Script reading position.

Holds the segmented script and the index of the highlighted sentence. Only
final transcripts (through the aligner) and explicit user jumps move it.
"""

import logging
from dataclasses import dataclass

from . import debug_log
from .alignment import MATCH_THRESHOLD, Sentence, align, split_sentences
from .protocol import TranscriptEvent

logger = logging.getLogger(__name__)


@dataclass
class CursorUpdate:
    """Outcome of feeding one transcript to the cursor."""
    previous_index: int
    current_index: int
    match_index: int | None = None
    # False for interim transcripts, which never run alignment
    aligned: bool = False

    @property
    def moved(self) -> bool:
        """Whether the cursor changed position."""
        return self.current_index != self.previous_index


class ScriptCursor:
    """
    Tracks which sentence of a script the speaker is reading.

    Invariant: 0 <= current_index <= sentence_count. An index equal to
    sentence_count means the script has been read to the end and nothing is
    highlighted; alignment never moves the cursor there, only jump_to can.
    """

    sentences: list[Sentence]
    current_index: int

    def __init__(self, script_text: str = "", threshold: float = MATCH_THRESHOLD) -> None:
        """
        Initialize the cursor.

        Args:
            script_text: The script to follow
            threshold: Minimum alignment score for a sentence match
        """
        self.threshold: float = threshold
        self.script_text: str = ""
        self.sentences = []
        self.current_index = 0
        self.set_script(script_text)

    def set_script(self, script_text: str) -> None:
        """Replace the script, rebuilding all sentences and resetting to 0."""
        self.script_text = script_text
        self.sentences = split_sentences(script_text)
        self.current_index = 0
        logger.debug("Script loaded: %d sentences", len(self.sentences))

    def reset(self) -> None:
        """Return to the first sentence."""
        self.current_index = 0

    def jump_to(self, index: int) -> None:
        """Manually move to a sentence. The index is clamped into range."""
        old_index = self.current_index
        self.current_index = max(0, min(index, self.sentence_count))
        debug_log.log_cursor_move(old_index, self.current_index, "manual")

    def update(self, event: TranscriptEvent) -> CursorUpdate:
        """
        Feed a transcript to the cursor.

        Interim transcripts are display-only and leave the cursor alone.
        For a final transcript matching sentence m, the cursor moves to m + 1
        unless that would run past the last sentence or is where it already
        is.

        Args:
            event: The received transcript

        Returns:
            What happened to the cursor
        """
        previous = self.current_index
        if not event.is_final or not self.sentences:
            return CursorUpdate(previous_index=previous, current_index=previous)

        match = align(self.sentences, self.current_index, event.text, self.threshold)
        debug_log.log_alignment(event.text, self.current_index, match)

        if match is not None:
            next_index = match + 1
            if next_index < self.sentence_count and next_index != self.current_index:
                self.current_index = next_index
                debug_log.log_cursor_move(previous, next_index, "aligned")
            else:
                logger.debug(
                    "No advancement needed (%s)",
                    "end of script" if next_index >= self.sentence_count
                    else "already at position")

        return CursorUpdate(
            previous_index=previous,
            current_index=self.current_index,
            match_index=match,
            aligned=True,
        )

    @property
    def sentence_count(self) -> int:
        """Number of sentences in the script."""
        return len(self.sentences)

    @property
    def current_sentence(self) -> Sentence | None:
        """The highlighted sentence, or None at the end of the script."""
        if 0 <= self.current_index < self.sentence_count:
            return self.sentences[self.current_index]
        return None

    @property
    def at_end(self) -> bool:
        """True in the terminal end-of-script state."""
        return self.current_index >= self.sentence_count

    @property
    def progress(self) -> float:
        """Fraction of the script before the cursor (0.0 to 1.0)."""
        if not self.sentences:
            return 0.0
        return self.current_index / self.sentence_count
