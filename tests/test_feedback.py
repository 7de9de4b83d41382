"""Tests for the manual-annotation loop.

Run from repo root:
    python -m pytest tests/test_feedback.py -v
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

MSG_A = "You spent $50 at The Coffee Shop on 03/15/2024"
MSG_B = "You spent $75 at The Coffee Shop on 04/01/2024"
NOW = datetime(2024, 4, 2, 9, 0, tzinfo=timezone.utc)


def _run(coro):
    """Helper to run an async function from sync test code."""
    return asyncio.run(coro)


def _cascade():
    from smartpaste.parsing.cascade import MatchingCascade
    from smartpaste.parsing.template_store import LearnedTemplateStore
    from smartpaste.storage import InMemoryAdapter

    store = LearnedTemplateStore(InMemoryAdapter(), clock=lambda: NOW)
    return MatchingCascade(store, today=lambda: date(2024, 4, 2))


# ── Test 1: build_annotation_request ──────────────────────────────────────

def test_fallback_request_asks_to_confirm():
    """A fallback draft becomes a request with a readable interpretation."""
    from smartpaste.parsing.feedback import build_annotation_request

    cascade = _cascade()
    result = _run(cascade.resolve(MSG_A, "BANK"))
    request = build_annotation_request(result, MSG_A, "BANK", failure_tracker=cascade.failure_tracker)

    assert request["raw_text"] == MSG_A
    assert request["sender_hint"] == "BANK"
    assert request["template_hash"] == result.template_hash
    assert request["origin"] == "fallback"
    assert request["reason"] == "fallback"
    assert request["confidence"] == 0.3
    assert request["our_interpretation"] == "Expense of 50.00 USD at Coffee Shop on 2024-03-15"
    assert request["question"] == "Is this expense of 50.00 USD correct?"
    assert request["draft"]["amount"] == -50
    assert request["rejections"] == 0


def test_rejected_template_reason():
    """Requests for a template past the rejection threshold say so."""
    from smartpaste.parsing.feedback import build_annotation_request

    cascade = _cascade()
    result = _run(cascade.resolve(MSG_A, "BANK"))
    for _ in range(3):
        cascade.report_rejection(result, "BANK")
    request = build_annotation_request(result, MSG_A, "BANK", failure_tracker=cascade.failure_tracker)
    assert request["reason"] == "template_rejected"
    assert request["rejections"] == 3


def test_request_without_draft():
    from smartpaste.parsing.feedback import build_annotation_request

    result = _run(_cascade().resolve("Your OTP is ready"))
    request = build_annotation_request(result, "Your OTP is ready")
    assert request["draft"] is None
    assert request["origin"] is None
    assert request["reason"] == "no_match"
    assert request["our_interpretation"] == "No transaction found"


# ── Test 2: resolve_annotation ────────────────────────────────────────────

def test_confirmed_annotation_teaches_store():
    """Confirming the draft learns it; the next same-shape message resolves structurally."""
    from smartpaste.models import ConfirmationSource, Origin
    from smartpaste.parsing.feedback import build_annotation_request, resolve_annotation

    cascade = _cascade()
    result = _run(cascade.resolve(MSG_A, "BANK"))
    request = build_annotation_request(result, MSG_A, "BANK")
    entry = resolve_annotation(cascade.store, request, "confirmed")

    assert entry is not None
    assert entry.confirmation_history[-1].source is ConfirmationSource.USER_EXPLICIT
    assert entry.confirmed_fields.vendor == "Coffee Shop"
    assert entry.confirmed_fields.amount == -50
    assert _run(cascade.resolve(MSG_B, "BANK")).origin is Origin.STRUCTURE


def test_corrected_annotation_uses_correction():
    from smartpaste.models import TransactionType
    from smartpaste.parsing.feedback import build_annotation_request, resolve_annotation

    cascade = _cascade()
    result = _run(cascade.resolve(MSG_A))
    request = build_annotation_request(result, MSG_A)
    entry = resolve_annotation(
        cascade.store, request, "corrected",
        {"type": "income", "amount": 50, "currency": "USD", "vendor": "Coffee Shop"},
    )
    assert entry.confirmed_fields.type is TransactionType.INCOME
    assert entry.confirmed_fields.amount == 50


def test_skipped_and_invalid_responses():
    from smartpaste.parsing.feedback import build_annotation_request, resolve_annotation

    cascade = _cascade()
    request = build_annotation_request(_run(cascade.resolve(MSG_A)), MSG_A)
    assert resolve_annotation(cascade.store, request, "skipped") is None
    assert len(cascade.store) == 0

    with pytest.raises(ValueError):
        resolve_annotation(cascade.store, request, "maybe")
    with pytest.raises(ValueError):
        resolve_annotation(cascade.store, request, "corrected")
