"""Structural hashing: reduce a message to its template skeleton.

Messages produced by the same bank template differ only in amounts, dates,
account numbers and merchant names.  Replacing those spans with
placeholders leaves a skeleton that is identical across the whole family:

    "You spent $50 at The Coffee Shop on 03/15/2024"
    "You spent $75 at The Coffee Shop on 04/01/2024"
        -> "you spent {currency}{amount} at the {vendor} on {date}"

The hash is FNV-1a (64 bit) over the skeleton: stable across processes and
platforms, not cryptographic.  Two messages sharing a hash are only
candidates for the same template; callers verify field positions before
trusting a match.
"""

from __future__ import annotations

import logging
import re
import unicodedata

from ..extraction.dates import find_date_spans
from ..extraction.fields import (
    extract_account_tokens,
    extract_amount_tokens,
    extract_currency_tokens,
    extract_vendor_tokens,
)
from ..extraction.tokenizer import normalize_digits

logger = logging.getLogger(__name__)

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_SMART_PUNCTUATION = str.maketrans({
    "‘": "'", "’": "'", "‚": "'", "‛": "'",
    "“": '"', "”": '"', "„": '"',
    "\u2013": "-", "\u2014": "-", "\u2212": "-",
    "\u00a0": " ", "\u200f": "", "\u200e": "", "\u200b": "",
    "،": ",", "؛": ";",
})

_DIGIT_RUN_RE = re.compile(r"\d+(?:[.,]\d+)*")
_WHITESPACE_RE = re.compile(r"\s+")


def _role_spans(message: str) -> list[tuple[int, int, str]]:
    """Placeholder spans, highest priority first wins on overlap."""
    spans: list[tuple[int, int, str]] = []

    def add(start: int, end: int, label: str) -> None:
        if any(start < e and s < end for s, e, _ in spans):
            return
        spans.append((start, end, label))

    for s, e in find_date_spans(message):
        add(s, e, "{date}")
    for tok in extract_account_tokens(message):
        if any(c.isdigit() for c in normalize_digits(tok.token)):
            add(tok.position, tok.end, "{account}")
    for tok in extract_currency_tokens(message):
        add(tok.position, tok.end, "{currency}")
    for tok in extract_amount_tokens(message):
        add(tok.position, tok.end, "{amount}")
    vendor = extract_vendor_tokens(message)
    if vendor:
        add(vendor[0].position, vendor[-1].end, "{vendor}")
    return sorted(spans)


def template_structure(message: str) -> str:
    """Return the generalized skeleton of ``message``.

    1. Replace date, account, currency, amount and vendor spans
    2. Replace any remaining digit runs with ``{num}``
    3. NFKC, smart punctuation to ASCII, case-fold, collapse whitespace
    """
    if not message or not message.strip():
        return ""
    text = normalize_digits(message)
    out: list[str] = []
    cursor = 0
    for start, end, label in _role_spans(message):
        out.append(text[cursor:start])
        out.append(label)
        cursor = end
    out.append(text[cursor:])
    skeleton = "".join(out)

    skeleton = _DIGIT_RUN_RE.sub("{num}", skeleton)
    skeleton = unicodedata.normalize("NFKC", skeleton).translate(_SMART_PUNCTUATION)
    skeleton = _WHITESPACE_RE.sub(" ", skeleton.casefold()).strip()
    return skeleton


def fnv1a_64(data: str) -> str:
    h = _FNV_OFFSET
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK64
    return f"{h:016x}"


def compute_template_hash(message: str) -> str:
    """16-hex-char structural fingerprint of ``message``."""
    skeleton = template_structure(message)
    digest = fnv1a_64(skeleton)
    logger.debug("[HASH] %s <- %r", digest, skeleton[:80])
    return digest
