"""Date span detection and ISO normalisation.

Handles the shapes that show up in bank SMS:

    15/03/2024, 15-03-24, 15.03.2024     numeric, day or month first
    2024-03-15                           ISO
    15 Mar 2024, Mar 15, 2024, 15 مارس   month names (English, Arabic)
    today, yesterday, 3 days ago, اليوم, أمس

Ambiguous numeric dates (both parts <= 12) follow ``day_first``; when one
part is > 12 it can only be the day.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Optional

from dateutil import parser as date_parser

from .tokenizer import normalize_digits

logger = logging.getLogger(__name__)

_EN_MONTHS = (
    r"(?:january|february|march|april|may|june|july|august|september|october"
    r"|november|december|jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|nov|dec)(?![a-z])\.?"
)

_AR_MONTHS = {
    "يناير": "january",
    "فبراير": "february",
    "مارس": "march",
    "أبريل": "april",
    "ابريل": "april",
    "إبريل": "april",
    "مايو": "may",
    "يونيو": "june",
    "يوليو": "july",
    "أغسطس": "august",
    "اغسطس": "august",
    "سبتمبر": "september",
    "أكتوبر": "october",
    "اكتوبر": "october",
    "نوفمبر": "november",
    "ديسمبر": "december",
}
_AR_MONTH_ALT = "|".join(sorted(_AR_MONTHS, key=len, reverse=True))

DATE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("iso", re.compile(r"(?<!\d)\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}(?!\d)")),
    ("numeric", re.compile(r"(?<![\d/.\-])\d{1,2}[/\-.]\d{1,2}[/\-.](?:\d{4}|\d{2})(?![\d/])")),
    ("day_month", re.compile(
        rf"(?<!\d)\d{{1,2}}(?:st|nd|rd|th)?[\s\-]*{_EN_MONTHS}(?:[\s,\-]*\d{{4}}|[\s\-]+\d{{2}}(?!\d))?",
        re.IGNORECASE,
    )),
    ("month_day", re.compile(
        rf"\b{_EN_MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s*\d{{4}})?(?!\d)",
        re.IGNORECASE,
    )),
    ("arabic", re.compile(rf"(?<!\d)\d{{1,2}}\s*(?:{_AR_MONTH_ALT})(?:\s*\d{{4}})?")),
    ("relative", re.compile(
        r"\b(?:today|yesterday|\d+\s+days?\s+ago)\b|(?:اليوم|أمس|امس)",
        re.IGNORECASE,
    )),
]

_DAYS_AGO_RE = re.compile(r"(\d+)\s+days?\s+ago", re.IGNORECASE)
_NUMERIC_PARTS_RE = re.compile(r"\d+")


def find_date_spans(text: str) -> list[tuple[int, int]]:
    """Non-overlapping ``(start, end)`` spans of dates in ``text``.

    Earlier patterns in :data:`DATE_PATTERNS` win on overlap.
    """
    if not text:
        return []
    norm = normalize_digits(text)
    spans: list[tuple[int, int]] = []
    for label, pattern in DATE_PATTERNS:
        try:
            matches = list(pattern.finditer(norm))
        except re.error:
            logger.debug("[EXTRACT] Date pattern %s failed", label, exc_info=True)
            continue
        for m in matches:
            start, end = m.start(), m.end()
            # trailing separators picked up by the optional year group
            while end > start and norm[end - 1] in " ,-":
                end -= 1
            if any(start < e and s < end for s, e in spans):
                continue
            spans.append((start, end))
    return sorted(spans)


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 2000 + year if year < 50 else 1900 + year


def _numeric_date(span: str, day_first: bool) -> Optional[date]:
    parts = [int(p) for p in _NUMERIC_PARTS_RE.findall(span)]
    if len(parts) != 3:
        return None
    if len(_NUMERIC_PARTS_RE.findall(span)[0]) == 4:
        year, month, day = parts
    else:
        a, b, year = parts
        year = _expand_year(year)
        if a > 12:
            day, month = a, b
        elif b > 12:
            month, day = a, b
        elif day_first:
            day, month = a, b
        else:
            month, day = a, b
    try:
        return date(year, month, day)
    except ValueError:
        return None


def numeric_date_order(span: str) -> Optional[bool]:
    """Day-first (True) or month-first (False) for an unambiguous numeric date.

    ``None`` when ``span`` is not a day/month/year numeric date or when
    both leading parts are <= 12.
    """
    text = normalize_digits(span or "").strip()
    if not re.fullmatch(r"[\d/\-.]+", text):
        return None
    parts = _NUMERIC_PARTS_RE.findall(text)
    if len(parts) != 3 or len(parts[0]) == 4:
        return None
    a, b = int(parts[0]), int(parts[1])
    if a > 12 >= b:
        return True
    if b > 12 >= a:
        return False
    return None


def normalize_date(
    span: str,
    reference: Optional[date] = None,
    day_first: bool = True,
) -> Optional[str]:
    """Turn a date span into ``YYYY-MM-DD``; ``None`` if it cannot be read.

    Parameters
    ----------
    span:
        Text found by :func:`find_date_spans` (or any free-form date).
    reference:
        "Today" for relative expressions and the default year for
        month-name dates without one.
    day_first:
        Tie-breaker for ambiguous numeric dates.
    """
    if not span or not span.strip():
        return None
    reference = reference or date.today()
    text = normalize_digits(span).strip()
    lower = text.casefold()

    if lower in ("today", "اليوم"):
        return reference.isoformat()
    if lower in ("yesterday", "أمس", "امس"):
        return (reference - timedelta(days=1)).isoformat()
    m = _DAYS_AGO_RE.fullmatch(lower)
    if m:
        return (reference - timedelta(days=int(m.group(1)))).isoformat()

    if re.fullmatch(r"[\d/\-. ]+", text):
        parsed = _numeric_date(text, day_first)
        return parsed.isoformat() if parsed else None

    for ar, en in _AR_MONTHS.items():
        if ar in text:
            text = text.replace(ar, f" {en} ")
    text = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", text, flags=re.IGNORECASE)
    try:
        default = datetime(reference.year, reference.month, reference.day)
        parsed_dt = date_parser.parse(text, dayfirst=day_first, default=default, fuzzy=True)
    except (ValueError, OverflowError):
        logger.debug("[EXTRACT] Could not parse date %r", span)
        return None
    return parsed_dt.date().isoformat()
