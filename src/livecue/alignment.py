# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Speech-to-script alignment.

Maps a final transcript onto the sentence of the script the speaker is most
likely reading. The score of a sentence is the fraction of its words that
appear anywhere in the transcript, so a partial or noisy transcript still
finds its sentence as long as half the words came through.

Everything here is pure and synchronous.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass

# Fraction of a sentence's words that must appear in the transcript
MATCH_THRESHOLD: float = 0.5

# A run of sentence-ending punctuation followed by whitespace
_SENTENCE_END: re.Pattern[str] = re.compile(r'([.!?]+\s+)')


@dataclass(frozen=True)
class Sentence:
    """One sentence of the script."""
    index: int
    text: str

    @property
    def tokens(self) -> list[str]:
        """Lowercased whitespace-separated words of the sentence."""
        return tokenize(self.text)


def tokenize(text: str) -> list[str]:
    """Lowercase and split on whitespace, dropping empty tokens.

    Punctuation stays attached to its word, so "there." and "there" are
    different tokens.
    """
    return text.lower().split()


def split_sentences(script_text: str) -> list[Sentence]:
    """
    Segment script text into sentences.

    A sentence ends at a run of '.', '!' or '?' followed by whitespace; the
    punctuation stays with the sentence it ends. Trailing text without
    terminal punctuation becomes the last sentence.

    Args:
        script_text: The full script

    Returns:
        Sentences in script order, indexed contiguously from 0
    """
    if not script_text or not script_text.strip():
        return []

    parts = _SENTENCE_END.split(script_text)
    texts: list[str] = []
    # re.split with a capture group alternates text, separator, text, ...
    for i in range(0, len(parts), 2):
        separator = parts[i + 1] if i + 1 < len(parts) else ""
        sentence = (parts[i] + separator).strip()
        if sentence:
            texts.append(sentence)

    return [Sentence(index=i, text=text) for i, text in enumerate(texts)]


def score(sentence: Sentence | str, transcript_words: set[str]) -> float:
    """
    Fraction of the sentence's words present in the transcript.

    Args:
        sentence: Sentence to score
        transcript_words: Token set of the transcript

    Returns:
        Score in [0, 1]; 0 for a sentence with no words
    """
    text = sentence.text if isinstance(sentence, Sentence) else sentence
    sentence_words = tokenize(text)
    if not sentence_words:
        return 0.0
    matches = sum(1 for word in sentence_words if word in transcript_words)
    return matches / len(sentence_words)


def align(
    sentences: Sequence[Sentence | str],
    current_index: int,
    transcript_text: str,
    threshold: float = MATCH_THRESHOLD
) -> int | None:
    """
    Find the sentence a transcript corresponds to.

    The current sentence and the one after it are checked first and win at
    `score >= threshold`. Otherwise the whole script is scanned and the
    highest score strictly above the threshold wins, the lowest index
    breaking ties.

    Args:
        sentences: The script's sentences in order
        current_index: Index of the sentence currently highlighted
        transcript_text: Final transcript text
        threshold: Minimum score for a match

    Returns:
        Index of the matching sentence, or None if nothing matches
    """
    transcript_words = set(tokenize(transcript_text))
    if not transcript_words:
        return None

    for candidate in (current_index, current_index + 1):
        if 0 <= candidate < len(sentences):
            if score(sentences[candidate], transcript_words) >= threshold:
                return candidate

    best_match: int | None = None
    best_score = threshold
    for i, sentence in enumerate(sentences):
        sentence_score = score(sentence, transcript_words)
        if sentence_score > best_score:
            best_score = sentence_score
            best_match = i

    return best_match
