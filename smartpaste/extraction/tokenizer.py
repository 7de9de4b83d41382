"""Script-aware tokenizer for bilingual notification text.

Tokens are literal substrings of the input.  Arabic-indic digits are mapped
to ASCII one character for one character before matching, so offsets found
on the normalized text are valid offsets into the original.
"""

from __future__ import annotations

import re
from typing import Iterator

from ..models import PositionedToken

CONTEXT_WINDOW = 2

# U+0660..U+0669 and U+06F0..U+06F9, plus the Arabic decimal and
# thousands separators
_DIGIT_TABLE = {ord("٠") + i: str(i) for i in range(10)}
_DIGIT_TABLE.update({ord("۰") + i: str(i) for i in range(10)})
_DIGIT_TABLE[ord("٫")] = "."
_DIGIT_TABLE[ord("٬")] = ","

# Alternation order matters: masked account numbers before plain numbers.
_TOKEN_RE = re.compile(
    r"(?P<masked>[*xX•]{2,}\d+)"
    r"|(?P<number>\d+(?:[.,]\d+)*)"
    r"|(?P<word>[^\W\d_]+)"
    r"|(?P<symbol>[$€£¥﷼])"
)

_HAS_DIGIT = re.compile(r"\d")


def normalize_digits(text: str) -> str:
    """Map Arabic-indic digits and separators to ASCII (length-preserving)."""
    return text.translate(_DIGIT_TABLE)


def _iter_spans(text: str) -> Iterator[tuple[int, int, str]]:
    """Yield ``(start, end, kind)`` for every token of ``text``."""
    for m in _TOKEN_RE.finditer(normalize_digits(text)):
        yield m.start(), m.end(), m.lastgroup or "word"


def context_word(token: str) -> str:
    """Generalize a token for context comparison: case-folded, digits -> ``#``."""
    if _HAS_DIGIT.search(normalize_digits(token)):
        return "#"
    return token.casefold()


def tokenize(text: str) -> list[str]:
    """Ordered, case-folded token strings of ``text``."""
    if not text:
        return []
    return [text[s:e].casefold() for s, e, _ in _iter_spans(text)]


def tokenize_positioned(text: str, window: int = CONTEXT_WINDOW) -> list[PositionedToken]:
    if not text:
        return []
    spans = list(_iter_spans(text))
    words = [context_word(text[s:e]) for s, e, _ in spans]
    out: list[PositionedToken] = []
    for i, (start, end, _) in enumerate(spans):
        out.append(PositionedToken(
            token=text[start:end],
            position=start,
            context_before=words[max(0, i - window):i],
            context_after=words[i + 1:i + 1 + window],
        ))
    return out


def context_around(text: str, start: int, end: int, window: int = CONTEXT_WINDOW) -> tuple[list[str], list[str]]:
    """Context words immediately before ``start`` and after ``end``."""
    before: list[str] = []
    after: list[str] = []
    for s, e, _ in _iter_spans(text):
        if e <= start:
            before.append(context_word(text[s:e]))
        elif s >= end:
            after.append(context_word(text[s:e]))
            if len(after) >= window:
                break
    return before[-window:] if window else [], after


def make_token(text: str, start: int, end: int) -> PositionedToken:
    """Build a :class:`PositionedToken` for ``text[start:end]``."""
    before, after = context_around(text, start, end)
    return PositionedToken(token=text[start:end], position=start, context_before=before, context_after=after)


def word_spans(text: str) -> list[tuple[int, int, str]]:
    """``(start, end, kind)`` of every token; ``kind`` is masked/number/word/symbol."""
    if not text:
        return []
    return list(_iter_spans(text))
