"""Per-field extractors: text in, candidate spans out.

Every ``extract_*`` function is pure and returns ``list[PositionedToken]``
in message order.  A pattern failure yields ``[]`` for that extractor only;
nothing here raises.
"""

from __future__ import annotations

import functools
import logging
import re
from typing import Callable, Optional

from ..models import PositionedToken
from .dates import find_date_spans
from .keywords import find_type_keyword
from .tokenizer import make_token, normalize_digits, word_spans

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Currency tables
# ---------------------------------------------------------------------------

CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "﷼": "SAR"}

CURRENCY_CODES = (
    "SAR", "EGP", "USD", "AED", "BHD", "KWD", "QAR", "OMR", "JOD", "EUR", "GBP", "INR",
)

CURRENCY_NAMES = {
    "sr": "SAR", "riyal": "SAR", "riyals": "SAR", "ريال": "SAR", "ر.س": "SAR", "رس": "SAR",
    "dollar": "USD", "dollars": "USD", "دولار": "USD",
    "pound": "EGP", "pounds": "EGP", "جنيه": "EGP", "ج.م": "EGP",
    "dirham": "AED", "dirhams": "AED", "درهم": "AED", "د.إ": "AED",
    "dinar": "BHD", "dinars": "BHD", "دينار": "BHD",
    "euro": "EUR", "euros": "EUR", "يورو": "EUR",
}

_CURRENCY_WORDS = sorted(
    list(CURRENCY_CODES) + list(CURRENCY_NAMES), key=len, reverse=True,
)
_CURRENCY_RE = re.compile(
    r"[$€£¥﷼]"
    r"|(?<![^\W\d_])(?:" + "|".join(re.escape(w) for w in _CURRENCY_WORDS) + r")(?![^\W\d_])",
    re.IGNORECASE,
)

# ---------------------------------------------------------------------------
# Amount / account patterns
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(r"(?<![\d.,])(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?(?![\d])")
_TIME_RE = re.compile(r"(?<!\d)\d{1,2}:\d{2}(?::\d{2})?(?!\d)")
_AMOUNT_KEYWORD_RE = re.compile(
    r"(?<![^\W\d_])(?:amount|amt|of|for|total|value|مبلغ|بمبلغ|قيمة|بقيمة)(?![^\W\d_])[\s:]*$",
    re.IGNORECASE,
)
_REFERENCE_DIGITS = 9

_MASKED_RE = re.compile(r"[*xX•]{2,}\d{2,}")
_ACCOUNT_KEYWORD_RE = re.compile(
    r"(?<![^\W\d_])(?:account|acct|a/c|card|بطاقة|حساب)(?![^\W\d_])"
    r"\s*(?:no\.?|number|num|ending(?:\s+(?:in|with))?|رقم|منتهية\s+ب)?\s*[:#]?\s*"
    r"(?P<num>[*xX•]*\d{3,})",
    re.IGNORECASE,
)
_ENDING_RE = re.compile(r"(?<![^\W\d_])ending(?:\s+(?:in|with))?\s*(?P<num>\d{3,})", re.IGNORECASE)
_NAMED_ACCOUNT_RE = re.compile(
    r"(?<![^\W\d_])(?P<name>[A-Za-z]+)\s+(?:account|acct|card)(?![^\W\d_])",
    re.IGNORECASE,
)
_NAMED_ACCOUNT_SKIP = {
    "your", "the", "my", "this", "that", "a", "an", "from", "to", "by", "with",
    "of", "on", "in", "at", "same", "bank", "new",
}

# ---------------------------------------------------------------------------
# Vendor patterns
# ---------------------------------------------------------------------------

_VENDOR_KEYWORD_RE = re.compile(
    r"(?<![^\W\d_])(?:at|from|to|vendor|merchant|لدى|عند|من|إلى|الى)(?![^\W\d_])\s*:?\s*",
    re.IGNORECASE,
)
VENDOR_STOP_WORDS = {
    "on", "for", "with", "using", "via", "ref", "reference", "date", "card", "account",
    "acct", "in", "at", "from", "to", "your", "balance", "bal", "available", "avail",
    "is", "was", "has", "been", "by", "dated", "txn", "trx",
    "في", "بتاريخ", "رصيد", "الرصيد", "بطاقة", "عبر", "رقم", "حساب", "بمبلغ", "مبلغ", "على",
}
_VENDOR_LEADING_SKIP = {"the"}
_VENDOR_MAX_WORDS = 6
_VENDOR_GAP_RE = re.compile(r"[ \t'’&\-]*")


def _never_raises(fn: Callable[..., list]) -> Callable[..., list]:
    """Turn a pattern failure inside an extractor into an empty result."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (re.error, ValueError, IndexError):
            logger.debug("[EXTRACT] %s failed, treating as no match", fn.__name__, exc_info=True)
            return []

    return wrapper


def _overlaps(start: int, end: int, spans: list[tuple[int, int]]) -> bool:
    return any(start < e and s < end for s, e in spans)


# ---------------------------------------------------------------------------
# Currency
# ---------------------------------------------------------------------------


def resolve_currency(token: str) -> Optional[str]:
    """Map a currency symbol, code or name to its ISO code."""
    if not token:
        return None
    token = token.strip()
    if token in CURRENCY_SYMBOLS:
        return CURRENCY_SYMBOLS[token]
    if token.upper() in CURRENCY_CODES:
        return token.upper()
    return CURRENCY_NAMES.get(token.casefold())


def _currency_spans(text: str) -> list[tuple[int, int]]:
    return [(m.start(), m.end()) for m in _CURRENCY_RE.finditer(text)]


@_never_raises
def extract_currency_tokens(text: str) -> list[PositionedToken]:
    if not text:
        return []
    return [make_token(text, s, e) for s, e in _currency_spans(text)]


def detect_currency(text: str) -> Optional[str]:
    """ISO code of the first currency mentioned in ``text``."""
    for tok in extract_currency_tokens(text):
        code = resolve_currency(tok.token)
        if code:
            return code
    return None


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


def _numeric_account_spans(norm: str) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    for pattern in (_ACCOUNT_KEYWORD_RE, _ENDING_RE):
        for m in pattern.finditer(norm):
            s, e = m.span("num")
            if not _overlaps(s, e, spans):
                spans.append((s, e))
    for m in _MASKED_RE.finditer(norm):
        if not _overlaps(m.start(), m.end(), spans):
            spans.append((m.start(), m.end()))
    return sorted(spans)


@_never_raises
def extract_account_tokens(text: str) -> list[PositionedToken]:
    """Masked numbers, keyword-adjacent digit groups and ``<name> account`` words."""
    if not text:
        return []
    norm = normalize_digits(text)
    spans = _numeric_account_spans(norm)
    for m in _NAMED_ACCOUNT_RE.finditer(norm):
        if m.group("name").casefold() in _NAMED_ACCOUNT_SKIP:
            continue
        s, e = m.span("name")
        if not _overlaps(s, e, spans):
            spans.append((s, e))
    return [make_token(text, s, e) for s, e in sorted(spans)]


# ---------------------------------------------------------------------------
# Date
# ---------------------------------------------------------------------------


@_never_raises
def extract_date_tokens(text: str) -> list[PositionedToken]:
    if not text:
        return []
    return [make_token(text, s, e) for s, e in find_date_spans(text)]


# ---------------------------------------------------------------------------
# Amount
# ---------------------------------------------------------------------------


def _currency_adjacent(norm: str, start: int, end: int, currency: list[tuple[int, int]]) -> bool:
    for cs, ce in currency:
        if ce <= start and start - ce <= 2 and not norm[ce:start].strip():
            return True
        if end <= cs and cs - end <= 2 and not norm[end:cs].strip():
            return True
    return False


@_never_raises
def extract_amount_tokens(text: str) -> list[PositionedToken]:
    """Candidate amounts, best tier first.

    Tier 1: numbers next to a currency symbol, code or name.
    Tier 2: numbers after an amount keyword, or with a decimal part.
    Tier 3: any other number.
    Numbers inside dates, times and account numbers are never amounts,
    and neither is zero.
    """
    if not text:
        return []
    norm = normalize_digits(text)
    excluded = find_date_spans(text)
    excluded += [(m.start(), m.end()) for m in _TIME_RE.finditer(norm)]
    excluded += _numeric_account_spans(norm)
    currency = _currency_spans(norm)

    tiers: tuple[list[tuple[int, int]], ...] = ([], [], [])
    for m in _NUMBER_RE.finditer(norm):
        start, end = m.span()
        if _overlaps(start, end, excluded):
            continue
        if not parse_amount(m.group()):
            # a zero is never a transaction amount
            continue
        if _currency_adjacent(norm, start, end, currency):
            tiers[0].append((start, end))
            continue
        glued = start > 0 and norm[start - 1].isalpha()
        if glued or norm[end:end + 1] == "%":
            continue
        digits = m.group().replace(",", "").split(".")[0]
        if len(digits) >= _REFERENCE_DIGITS:
            continue
        if "." in m.group() or _AMOUNT_KEYWORD_RE.search(norm[max(0, start - 20):start]):
            tiers[1].append((start, end))
        else:
            tiers[2].append((start, end))

    for spans in tiers:
        if spans:
            return [make_token(text, s, e) for s, e in spans]
    return []


def parse_amount(token: str) -> Optional[float]:
    """Read a numeric amount from a token such as ``1,250.00`` or ``٥٠٫٧٥``."""
    if token is None:
        return None
    text = normalize_digits(str(token)).strip()
    text = re.sub(r"[^\d.,\-]", "", text)
    if not re.search(r"\d", text):
        return None
    negative = text.startswith("-")
    text = text.lstrip("-")
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if len(tail) == 3 or head.count(","):
            text = text.replace(",", "")
        else:
            text = f"{head.replace(',', '')}.{tail}"
    try:
        value = float(text)
    except ValueError:
        return None
    return -value if negative else value


def has_currency_amount(text: str) -> bool:
    """True when some number in ``text`` sits next to a currency marker."""
    if not text:
        return False
    norm = normalize_digits(text)
    try:
        currency = _currency_spans(norm)
        return any(
            _currency_adjacent(norm, m.start(), m.end(), currency)
            for m in _NUMBER_RE.finditer(norm)
        )
    except re.error:
        logger.debug("[EXTRACT] Currency amount check failed", exc_info=True)
        return False


def first_amount(text: str) -> Optional[float]:
    for tok in extract_amount_tokens(text):
        value = parse_amount(tok.token)
        if value:
            return value
    return None


def has_amount(text: str) -> bool:
    return bool(extract_amount_tokens(text))


# ---------------------------------------------------------------------------
# Vendor
# ---------------------------------------------------------------------------


@_never_raises
def extract_vendor_tokens(text: str) -> list[PositionedToken]:
    """Words of the first ``at|from|to <name>`` span, one token per word."""
    if not text:
        return []
    norm = normalize_digits(text)
    spans = word_spans(text)
    for m in _VENDOR_KEYWORD_RE.finditer(norm):
        picked: list[tuple[int, int]] = []
        cursor = m.end()
        for start, end, kind in spans:
            if start < m.end():
                continue
            gap = norm[cursor:start]
            if not _VENDOR_GAP_RE.fullmatch(gap) and picked:
                break
            if not picked and gap.strip(" \t:"):
                break
            word = norm[start:end].casefold()
            if kind != "word" or word in VENDOR_STOP_WORDS:
                break
            cursor = end
            if not picked and word in _VENDOR_LEADING_SKIP:
                continue
            picked.append((start, end))
            if len(picked) >= _VENDOR_MAX_WORDS:
                break
        if picked:
            return [make_token(text, s, e) for s, e in picked]
    return []


def span_text(text: str, tokens: list[PositionedToken]) -> str:
    """The stretch of ``text`` covered by ``tokens`` (first start to last end)."""
    if not tokens:
        return ""
    ordered = sorted(tokens, key=lambda t: t.position)
    if ordered[0].position < 0:
        return " ".join(t.token for t in ordered)
    return text[ordered[0].position:ordered[-1].end]


# ---------------------------------------------------------------------------
# Type
# ---------------------------------------------------------------------------


@_never_raises
def extract_type_tokens(text: str) -> list[PositionedToken]:
    found = find_type_keyword(text)
    if not found:
        return []
    _, start, end = found
    return [make_token(text, start, end)]
