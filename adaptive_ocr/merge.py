"""
Line-level merge of recognition passes and redaction placeholder insertion.
"""

import re
from dataclasses import dataclass
from itertools import zip_longest
from typing import List, Optional, Sequence, Tuple

from .types import WordBox

# Punctuation that commonly appears in real text, as opposed to recognition debris
CLEAN_PUNCTUATION = set(".,;:!?'\"()-/&%$#@")


@dataclass
class MergeResult:
    text: str
    lines_from_pass1: int = 0
    lines_from_pass2: int = 0


def line_quality(line: str) -> float:
    """
    Text-quality signal for one line.

    Alphanumeric character count weighted by the share of "clean" characters
    (alphanumerics, spaces and ordinary punctuation). Debris such as ``~|^``
    and stray symbols lowers the score; longer legible lines raise it.
    """
    stripped = line.strip()
    if not stripped:
        return 0.0
    alnum = sum(1 for ch in stripped if ch.isalnum())
    clean = sum(
        1 for ch in stripped if ch.isalnum() or ch.isspace() or ch in CLEAN_PUNCTUATION
    )
    return alnum * (clean / len(stripped))


def choose_line(pass1_line: str, pass2_line: str) -> Tuple[str, int]:
    """Pick the better line. Returns the line and the pass it came from."""
    if line_quality(pass2_line) > line_quality(pass1_line):
        return pass2_line, 2
    # Exact ties keep the unmodified baseline
    return pass1_line, 1


def merge_passes(pass1_text: str, pass2_text: Optional[str]) -> MergeResult:
    """
    Deterministic line-by-line merge of two recognition passes.

    Lines are paired by position; when one pass produced more lines the
    extra lines compete against empty lines.
    """
    if pass2_text is None:
        return MergeResult(text=pass1_text, lines_from_pass1=len(pass1_text.splitlines()))

    merged = []
    from_pass1 = from_pass2 = 0
    for line1, line2 in zip_longest(
        pass1_text.splitlines(), pass2_text.splitlines(), fillvalue=""
    ):
        line, source = choose_line(line1, line2)
        merged.append(line)
        if source == 1:
            from_pass1 += 1
        else:
            from_pass2 += 1

    return MergeResult(
        text="\n".join(merged),
        lines_from_pass1=from_pass1,
        lines_from_pass2=from_pass2,
    )


def _search_window_end(text: str, cursor: int) -> int:
    # A word is looked for on the current line and the next one only
    first = text.find("\n", cursor)
    if first == -1:
        return len(text)
    second = text.find("\n", first + 1)
    return len(text) if second == -1 else second


def _word_pattern(word: str) -> "re.Pattern":
    return re.compile(r"(?<!\w)" + re.escape(word) + r"(?!\w)")


def _find_word(text: str, word: str, cursor: int) -> Optional[Tuple[int, int]]:
    match = _word_pattern(word).search(text, cursor, _search_window_end(text, cursor))
    if match is None:
        return None
    return match.start(), match.end()


def _last_char(parts: Sequence[str]) -> str:
    for part in reversed(parts):
        if part:
            return part[-1]
    return ""


def _region_start(
    text: str, words: Sequence[WordBox], redacted: Sequence[bool], cursor: int
) -> int:
    """
    Start of the line holding the first locatable unredacted word of a region.

    Searched over the rest of the text, since a region can begin anywhere
    after the previous one.
    """
    for word, hit in zip(words, redacted):
        if hit or not word.text:
            continue
        match = _word_pattern(word.text).search(text, cursor)
        if match is not None:
            return max(cursor, text.rfind("\n", cursor, match.start()) + 1)
    return cursor


def apply_redaction_placeholders(
    text: str,
    words: Sequence[WordBox],
    redacted: Sequence[bool],
    placeholder: str = "[REDACTED]",
    regions: Optional[Sequence[int]] = None,
) -> Tuple[str, int]:
    """
    Replace redacted words in the merged text with the placeholder token.

    Words are walked in reading order with a cursor over the text. A word
    found as a whole token at or after the cursor advances it; a redacted
    word that cannot be located in the text (typically because the bar
    itself produced no characters) gets the placeholder inserted at the
    cursor, which is its original reading position.

    When the words come from separate page regions, ``regions`` gives the
    region of each word. The cursor jumps to each new region's first line
    before its words are walked.

    Returns:
        Tuple of (text, placeholders inserted)
    """
    parts: List[str] = []
    cursor = 0
    inserted = 0
    current_region = None

    for i, (word, hit) in enumerate(zip(words, redacted)):
        if regions is not None and regions[i] != current_region:
            current_region = regions[i]
            region_end = i
            while region_end < len(words) and regions[region_end] == current_region:
                region_end += 1
            region_start = _region_start(
                text, words[i:region_end], redacted[i:region_end], cursor
            )
            parts.append(text[cursor:region_start])
            cursor = region_start

        location = _find_word(text, word.text, cursor) if word.text else None
        if location is not None:
            start, end = location
            parts.append(text[cursor:start])
            parts.append(placeholder if hit else text[start:end])
            inserted += int(hit)
            cursor = end
        elif hit:
            last = _last_char(parts)
            if last and not last.isspace():
                parts.append(" ")
            parts.append(placeholder)
            if cursor < len(text) and not text[cursor].isspace():
                parts.append(" ")
            inserted += 1

    parts.append(text[cursor:])
    return "".join(parts), inserted
