"""
Tests for deterministic text post-processing.
"""

from adaptive_ocr.postprocess import postprocess_text


class TestPostprocess:

    def test_ligatures_and_quotes_are_folded(self):
        assert postprocess_text("ﬁnance “report” isn’t") == 'finance "report" isn\'t'

    def test_nfc_normalization(self):
        assert postprocess_text("cafe\u0301") == "caf\u00e9"

    def test_control_characters_are_removed(self):
        assert postprocess_text("abc\x0cdef\x00") == "abcdef"

    def test_spaces_are_collapsed_and_lines_stripped(self):
        assert postprocess_text("a    b\t\tc   \nnext  ") == "a b c\nnext"

    def test_dehyphenation_across_lines(self):
        assert postprocess_text("the exam-\nple shows") == "the example shows"

    def test_capitalised_hyphenation_is_kept(self):
        assert postprocess_text("Jean-\nPaul") == "Jean-\nPaul"

    def test_blank_line_runs_are_collapsed(self):
        assert postprocess_text("a\n\n\n\n\nb") == "a\n\nb"
        assert postprocess_text("a\n\nb") == "a\n\nb"

    def test_placeholder_is_preserved(self):
        text = "Name:   [REDACTED]   [REDACTED]  \nSSN [REDACTED]"
        assert postprocess_text(text) == "Name: [REDACTED] [REDACTED]\nSSN [REDACTED]"

    def test_custom_placeholder_is_not_rewritten(self):
        placeholder = "“MASK”"
        assert postprocess_text("x “MASK” y", placeholder=placeholder) == "x “MASK” y"

    def test_idempotent(self):
        text = "ﬁrst  line\n\n\n\nsec-\nond"
        once = postprocess_text(text)
        assert postprocess_text(once) == once

    def test_empty_text(self):
        assert postprocess_text("") == ""
