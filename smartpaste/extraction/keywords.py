"""Bilingual transaction-type keywords.

The earliest keyword in a message decides its type: "Salary credited ...
transfer ref" is income, "Transfer sent ... fee charged" is a transfer.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from ..models import TransactionType

logger = logging.getLogger(__name__)

TYPE_KEYWORDS: dict[TransactionType, tuple[str, ...]] = {
    TransactionType.EXPENSE: (
        "purchase", "pos", "mada", "spent", "paid", "debited", "charged",
        "atm withdrawal", "withdrawal", "withdrawn", "fuel", "food", "market",
        "شراء", "خصم", "مدفوعات", "سحب", "بطاقة",
    ),
    TransactionType.INCOME: (
        "salary", "deposit", "deposited", "credited", "received", "refund", "bonus",
        "commission", "incentive",
        "حوالة واردة", "دفعة", "راتب", "إيداع", "ايداع", "استرداد",
    ),
    TransactionType.TRANSFER: (
        "transfer", "transferred", "sent to", "sent", "bank to bank", "wallet", "iban",
        "تحويل", "نقل", "ارسال", "إرسال", "حوالة صادرة",
    ),
}


def _keyword_pattern(keywords: Iterable[str]) -> Optional[re.Pattern[str]]:
    """Whole-word alternation over ``keywords``; ``None`` if it cannot compile."""
    words = sorted({k.strip() for k in keywords if k and k.strip()}, key=len, reverse=True)
    if not words:
        return None
    alt = "|".join(r"\s+".join(re.escape(part) for part in w.split()) for w in words)
    try:
        return re.compile(rf"(?<![^\W\d_])(?:{alt})(?![^\W\d_])", re.IGNORECASE)
    except re.error:
        logger.warning("[EXTRACT] Keyword pattern failed to compile", exc_info=True)
        return None


_TYPE_PATTERNS = {t: _keyword_pattern(words) for t, words in TYPE_KEYWORDS.items()}


def find_type_keyword(text: str) -> Optional[tuple[TransactionType, int, int]]:
    """Earliest type keyword in ``text`` as ``(type, start, end)``."""
    if not text:
        return None
    best: Optional[tuple[TransactionType, int, int]] = None
    for txn_type, pattern in _TYPE_PATTERNS.items():
        if pattern is None:
            continue
        m = pattern.search(text)
        if m and (best is None or m.start() < best[1]):
            best = (txn_type, m.start(), m.end())
    return best


def infer_type(text: str) -> Optional[TransactionType]:
    found = find_type_keyword(text)
    return found[0] if found else None


def find_keywords(text: str, keywords: Iterable[str]) -> list[tuple[int, int]]:
    """Spans of any of ``keywords`` in ``text`` (whole words, case-insensitive)."""
    pattern = _keyword_pattern(keywords)
    if pattern is None or not text:
        return []
    return [(m.start(), m.end()) for m in pattern.finditer(text)]
