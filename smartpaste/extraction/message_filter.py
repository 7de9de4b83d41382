"""Cheap pre-filter: does a message look like a financial notification?

A message qualifies only when it has a financial keyword, a
currency-adjacent amount and a date.  OTPs and promotional texts usually
miss at least one of the three.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .dates import find_date_spans
from .fields import has_currency_amount
from .keywords import TYPE_KEYWORDS, find_keywords

DEFAULT_FINANCIAL_KEYWORDS: tuple[str, ...] = (
    "amount", "balance", "card", "account", "debit", "credit", "purchase",
    "مبلغ", "حوالة", "رصيد", "بطاقة", "شراء", "تحويل", "دفع", "إيداع",
) + tuple(k for words in TYPE_KEYWORDS.values() for k in words)


def is_financial_message(text: str, keywords: Optional[Iterable[str]] = None) -> bool:
    """True iff ``text`` has a financial keyword, a currency amount and a date.

    Parameters
    ----------
    text:
        Raw message.
    keywords:
        Replaces :data:`DEFAULT_FINANCIAL_KEYWORDS` when given (for example
        user-managed keyword lists).
    """
    if not text or not text.strip():
        return False
    if not find_keywords(text, keywords or DEFAULT_FINANCIAL_KEYWORDS):
        return False
    if not has_currency_amount(text):
        return False
    return bool(find_date_spans(text))
