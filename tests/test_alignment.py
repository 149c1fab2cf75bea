# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Tests for sentence segmentation and transcript alignment.
"""

import unittest

from livecue.alignment import Sentence, align, score, split_sentences, tokenize

SCRIPT = ["Hello there.", "How are you today?"]


class TestSplitSentences(unittest.TestCase):
    """Sentence segmentation."""

    def test_basic_split(self):
        sentences = split_sentences("Hello there. How are you today? I am fine!")
        self.assertEqual([s.text for s in sentences],
                         ["Hello there.", "How are you today?", "I am fine!"])
        self.assertEqual([s.index for s in sentences], [0, 1, 2])

    def test_punctuation_runs_stay_with_sentence(self):
        sentences = split_sentences("Really?! Yes... Go on.")
        self.assertEqual([s.text for s in sentences], ["Really?!", "Yes...", "Go on."])

    def test_trailing_text_without_punctuation(self):
        sentences = split_sentences("First one. And then")
        self.assertEqual([s.text for s in sentences], ["First one.", "And then"])

    def test_punctuation_without_whitespace_does_not_split(self):
        sentences = split_sentences("Version 1.2 is out. Enjoy")
        self.assertEqual([s.text for s in sentences], ["Version 1.2 is out.", "Enjoy"])

    def test_empty(self):
        self.assertEqual(split_sentences(""), [])
        self.assertEqual(split_sentences("   \n "), [])

    def test_newlines_separate(self):
        sentences = split_sentences("One.\nTwo.\n\nThree.")
        self.assertEqual([s.text for s in sentences], ["One.", "Two.", "Three."])


class TestScore(unittest.TestCase):
    """Per-sentence scoring."""

    def test_tokenize_keeps_punctuation(self):
        self.assertEqual(tokenize("  Hello   There. "), ["hello", "there."])

    def test_fraction_of_sentence_words(self):
        words = set(tokenize("hello there"))
        self.assertEqual(score("Hello there.", words), 0.5)
        self.assertEqual(score(Sentence(0, "Hello there"), words), 1.0)

    def test_empty_sentence_scores_zero(self):
        self.assertEqual(score("", {"hello"}), 0.0)


class TestAlign(unittest.TestCase):
    """Alignment of final transcripts to sentences."""

    def test_match_current_sentence(self):
        self.assertEqual(align(SCRIPT, 0, "hello there"), 0)

    def test_match_last_sentence(self):
        self.assertEqual(align(SCRIPT, 1, "how are you today"), 1)

    def test_no_match(self):
        self.assertIsNone(align(SCRIPT, 0, "completely unrelated words"))

    def test_empty_transcript(self):
        self.assertIsNone(align(SCRIPT, 0, "   "))

    def test_next_sentence_checked_before_scan(self):
        self.assertEqual(align(SCRIPT, 0, "how are you"), 1)

    def test_scan_requires_strictly_above_threshold(self):
        script = ["Hello there.", "Something else.", "Another line here."]
        # Only sentence 0 scores, at exactly the threshold, and it is not
        # the current or next sentence
        self.assertIsNone(align(script, 2, "hello there"))
        self.assertEqual(align(script, 2, "hello there."), 0)

    def test_scan_ties_keep_lowest_index(self):
        script = ["red blue", "zero one", "two three", "red blue"]
        self.assertEqual(align(script, 1, "red blue"), 0)

    def test_current_index_out_of_range(self):
        self.assertEqual(align(SCRIPT, 2, "hello there."), 0)

    def test_accepts_sentence_objects(self):
        sentences = split_sentences(" ".join(SCRIPT))
        self.assertEqual(align(sentences, 0, "hello there"), 0)

    def test_custom_threshold(self):
        self.assertIsNone(align(SCRIPT, 0, "hello there", threshold=0.75))


if __name__ == "__main__":
    unittest.main()
