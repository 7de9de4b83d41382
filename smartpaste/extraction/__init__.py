"""Tokenizer and heuristic field extractors for bilingual bank SMS."""

from .dates import find_date_spans, normalize_date, numeric_date_order
from .fields import (
    detect_currency,
    extract_account_tokens,
    extract_amount_tokens,
    extract_currency_tokens,
    extract_date_tokens,
    extract_type_tokens,
    extract_vendor_tokens,
    first_amount,
    has_amount,
    parse_amount,
    resolve_currency,
    span_text,
)
from .keywords import TYPE_KEYWORDS, infer_type
from .message_filter import is_financial_message
from .tokenizer import normalize_digits, tokenize, tokenize_positioned

__all__ = [
    "TYPE_KEYWORDS",
    "detect_currency",
    "extract_account_tokens",
    "extract_amount_tokens",
    "extract_currency_tokens",
    "extract_date_tokens",
    "extract_type_tokens",
    "extract_vendor_tokens",
    "find_date_spans",
    "first_amount",
    "has_amount",
    "infer_type",
    "is_financial_message",
    "normalize_date",
    "normalize_digits",
    "numeric_date_order",
    "parse_amount",
    "resolve_currency",
    "span_text",
    "tokenize",
    "tokenize_positioned",
]
