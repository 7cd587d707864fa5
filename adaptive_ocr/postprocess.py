"""
Deterministic text corrections applied after merging and redaction.
"""

import re
import unicodedata
from typing import Optional

LIGATURES = {
    "ﬀ": "ff",
    "ﬁ": "fi",
    "ﬂ": "fl",
    "ﬃ": "ffi",
    "ﬄ": "ffl",
    "ﬅ": "st",
    "ﬆ": "st",
}

QUOTES = {
    "‘": "'",
    "’": "'",
    "‚": "'",
    "‛": "'",
    "“": '"',
    "”": '"',
    "„": '"',
    "‟": '"',
    "′": "'",
    "″": '"',
}

_TRANSLATION = str.maketrans({**LIGATURES, **QUOTES})

# Private-use code point standing in for the placeholder while rewriting
_PLACEHOLDER_MARK = "\ue000"

# Control characters other than tab and newline
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_MULTI_SPACE = re.compile(r"[ \t]{2,}")
# word-\nword, only when both sides are lowercase letters
_HYPHEN_BREAK = re.compile(r"([a-z])-\n([a-z])")
# Three or more blank lines
_BLANK_RUNS = re.compile(r"\n{4,}")


def postprocess_text(text: str, placeholder: Optional[str] = "[REDACTED]") -> str:
    """
    Normalize recognized text.

    Applies NFC normalization, ligature and smart-quote folding, control
    character removal, space collapsing, trailing whitespace stripping,
    de-hyphenation across line breaks and blank-line collapsing. The
    redaction placeholder is never altered.
    """
    if not text:
        return text

    if placeholder:
        text = text.replace(placeholder, _PLACEHOLDER_MARK)

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = unicodedata.normalize("NFC", text)
    text = text.translate(_TRANSLATION)
    text = _CONTROL_CHARS.sub("", text)
    text = _MULTI_SPACE.sub(" ", text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    text = _HYPHEN_BREAK.sub(r"\1\2", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    text = text.strip("\n")

    if placeholder:
        text = text.replace(_PLACEHOLDER_MARK, placeholder)
    return text
