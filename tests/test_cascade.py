"""Tests for the four-stage matching cascade.

Run from repo root:
    python -m pytest tests/test_cascade.py -v
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

MSG_A = "You spent $50 at The Coffee Shop on 03/15/2024"
MSG_B = "You spent $75 at The Coffee Shop on 04/01/2024"

CONFIRMED_A = {
    "type": "expense",
    "amount": 50,
    "vendor": "Coffee Shop",
    "account": "Checking",
    "currency": "USD",
}

NOW = datetime(2024, 4, 2, 9, 0, tzinfo=timezone.utc)
TODAY = date(2024, 4, 2)


def _run(coro):
    """Helper to run an async function from sync test code."""
    return asyncio.run(coro)


def _cascade(extractor=None, config=None, **kwargs):
    from smartpaste.parsing.cascade import MatchingCascade
    from smartpaste.parsing.template_store import LearnedTemplateStore
    from smartpaste.storage import InMemoryAdapter

    store = LearnedTemplateStore(InMemoryAdapter(), config, clock=lambda: NOW)
    return MatchingCascade(store, extractor=extractor, config=config, today=lambda: TODAY, **kwargs)


class _SpyExtractor:
    """Statistical extractor double that records calls."""

    def __init__(self, result=None, error=None):
        self.result = result or {}
        self.error = error
        self.calls = []
        self.resets = 0

    def __call__(self, text, high_accuracy):
        self.calls.append((text, high_accuracy))
        if self.error is not None:
            raise self.error
        return self.result

    def reset(self):
        self.resets += 1


# ── Test 1: Worked scenarios ───────────────────────────────────────────────

def test_scenario_a_empty_store_falls_back():
    """Empty store: the heuristic stage produces a signed expense draft."""
    from smartpaste.models import Origin, ParseStatus, TransactionType

    result = _run(_cascade().resolve(MSG_A))

    assert result.origin is Origin.FALLBACK
    assert result.draft.amount == -50
    assert result.draft.currency == "USD"
    assert result.draft.type is TransactionType.EXPENSE
    assert result.draft.vendor == "Coffee Shop"
    assert result.draft.date == "2024-03-15"
    assert result.confidence == 0.3
    assert result.match.matched is False
    assert result.should_train is True
    assert result.status is ParseStatus.FAILED


def test_scenario_b_structure_stage_after_learning():
    """Same template, new amount: STRUCTURE stage with re-extracted amount."""
    from smartpaste.models import Origin, ParseStatus

    cascade = _cascade()
    cascade.store.learn_from_transaction(MSG_A, CONFIRMED_A)
    result = _run(cascade.resolve(MSG_B))

    assert result.origin is Origin.STRUCTURE
    assert result.draft.amount == -75
    assert abs(result.draft.amount) != 50
    assert result.draft.vendor == "Coffee Shop"
    assert result.draft.from_account == "Checking"
    assert result.draft.currency == "USD"
    assert result.draft.date == "2024-04-01"
    assert result.match.matched is True
    assert result.match.entry is not None
    assert result.should_train is False
    assert result.status is ParseStatus.SUCCESS
    assert result.field_confidences["amount"] == 1.0


def test_scenario_c_no_amount():
    """No amount-like token: no draft, whatever the store holds."""
    cascade = _cascade(extractor=_SpyExtractor({"amount": 10}))
    cascade.store.learn_from_transaction(MSG_A, CONFIRMED_A)

    for msg in ("Your OTP is ready", "Thank you for shopping at The Coffee Shop"):
        result = _run(cascade.resolve(msg))
        assert result.match.matched is False
        assert result.draft is None
        assert result.origin is None
    assert cascade.stages[2].calls == 0


def test_empty_message():
    result = _run(_cascade().resolve("   "))
    assert result.draft is None
    assert result.match.matched is False
    assert result.template_hash == ""


# ── Test 2: Template stage and short-circuit ───────────────────────────────

def test_template_stage_exact_repeat():
    """Resubmitting a confirmed message resolves at TEMPLATE."""
    from smartpaste.models import Origin

    cascade = _cascade()
    cascade.store.learn_from_transaction(MSG_A, CONFIRMED_A)
    result = _run(cascade.resolve(MSG_A))

    assert result.origin is Origin.TEMPLATE
    assert result.draft.amount == -50
    assert result.draft.vendor == "Coffee Shop"
    assert result.draft.from_account == "Checking"
    assert result.confidence == 1.0


def test_learned_match_never_reaches_extractor():
    """A template or structure match short-circuits later stages."""
    spy = _SpyExtractor({"amount": 999, "type": "income"})
    cascade = _cascade(extractor=spy)
    cascade.store.learn_from_transaction(MSG_A, CONFIRMED_A)

    _run(cascade.resolve(MSG_A))
    _run(cascade.resolve(MSG_B))
    assert spy.calls == []
    assert cascade.stages[2].calls == 0


def test_stage_order_with_custom_stages():
    """The first Matched wins; later stages are never run."""
    from smartpaste.models import Origin, TransactionDraft, TransactionType
    from smartpaste.parsing.cascade import Matched, NotMatched

    seen = []

    class _Stage:
        def __init__(self, origin, outcome):
            self.origin = origin
            self.outcome = outcome

        async def run(self, ctx):
            seen.append(self.origin)
            return self.outcome

    draft = TransactionDraft(
        amount=20, currency="SAR", type=TransactionType.INCOME, date="2024-04-02", origin=Origin.STRUCTURE,
    )
    stages = [
        _Stage(Origin.TEMPLATE, NotMatched("nope")),
        _Stage(Origin.STRUCTURE, Matched(draft, 0.9)),
        _Stage(Origin.FALLBACK, NotMatched("unreachable")),
    ]
    result = _run(_cascade(stages=stages).resolve("Deposit of SAR 20"))

    assert seen == [Origin.TEMPLATE, Origin.STRUCTURE]
    assert result.origin is Origin.STRUCTURE
    assert result.draft.amount == 20


# ── Test 3: Statistical stage ──────────────────────────────────────────────

def test_ml_stage_used_when_no_template():
    """Extractor output becomes an ml draft, signed by type."""
    from smartpaste.models import Origin, ParseStatus, TransactionType

    spy = _SpyExtractor({"amount": "120.5", "currency": "SAR", "type": "income", "vendor": "Employer"})
    result = _run(_cascade(extractor=spy).resolve("Received SAR 120.5 from Employer"))

    assert result.origin is Origin.ML
    assert result.draft.amount == 120.5
    assert result.draft.type is TransactionType.INCOME
    assert result.draft.currency == "SAR"
    assert result.draft.vendor == "Employer"
    assert result.confidence == 0.65
    assert result.match.matched is False
    assert result.should_train is False
    assert result.status is ParseStatus.PARTIAL
    assert spy.calls == [("Received SAR 120.5 from Employer", False)]


def test_ml_expense_amount_is_negative():
    from smartpaste.models import Origin

    spy = _SpyExtractor({"amount": 80, "type": "expense"})
    result = _run(_cascade(extractor=spy).resolve("Card purchase 80.00 at Jarir"))
    assert result.origin is Origin.ML
    assert result.draft.amount == -80


def test_ml_high_accuracy_for_long_messages():
    spy = _SpyExtractor({"amount": 10})
    long_msg = "Purchase of SAR 10 " + "x" * 200
    _run(_cascade(extractor=spy).resolve(long_msg))
    assert spy.calls[0][1] is True


def test_ml_exception_falls_through_and_resets():
    """A raising extractor is reset and the fallback stage answers."""
    from smartpaste.models import Origin

    spy = _SpyExtractor(error=RuntimeError("model crashed"))
    result = _run(_cascade(extractor=spy).resolve(MSG_A))
    assert result.origin is Origin.FALLBACK
    assert result.draft.amount == -50
    assert spy.resets == 1


def test_ml_timeout_falls_through():
    from smartpaste.config import LearningConfig
    from smartpaste.models import Origin

    resets = []

    async def slow(text, high_accuracy):
        await asyncio.sleep(5)
        return {"amount": 1}

    slow.reset = lambda: resets.append(True)
    config = LearningConfig(ml_timeout_seconds=0.05)
    result = _run(_cascade(extractor=slow, config=config).resolve(MSG_A))
    assert result.origin is Origin.FALLBACK
    assert resets == [True]


def test_ml_self_cancellation_falls_through():
    """Cancellation raised by the extractor itself is contained."""
    from smartpaste.models import Origin

    async def cancelled(text, high_accuracy):
        raise asyncio.CancelledError()

    result = _run(_cascade(extractor=cancelled).resolve(MSG_A))
    assert result.origin is Origin.FALLBACK


def test_caller_cancellation_propagates():
    """Cancelling the resolving task still cancels it."""

    async def slow(text, high_accuracy):
        await asyncio.sleep(5)

    async def main():
        task = asyncio.create_task(_cascade(extractor=slow).resolve(MSG_A))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    _run(main())


def test_ml_empty_result_falls_through():
    from smartpaste.models import Origin

    spy = _SpyExtractor({"vendor": "", "amount": None})
    result = _run(_cascade(extractor=spy).resolve(MSG_A))
    assert result.origin is Origin.FALLBACK
    assert len(spy.calls) == 1


# ── Test 4: Rejections, filter and usage ───────────────────────────────────

def test_rejections_force_annotation():
    """After enough rejections, even a confident match asks for training."""
    from smartpaste.config import LearningConfig
    from smartpaste.models import Origin

    cascade = _cascade(config=LearningConfig(failure_threshold=2))
    cascade.store.learn_from_transaction(MSG_A, CONFIRMED_A, "BANK")

    first = _run(cascade.resolve(MSG_B, "BANK"))
    assert first.should_train is False
    assert cascade.report_rejection(first, "BANK") == 1
    assert cascade.report_rejection(first, "bank") == 2

    again = _run(cascade.resolve(MSG_B, "BANK"))
    assert again.origin is Origin.STRUCTURE
    assert again.should_train is True

    cascade.store.learn_from_transaction(MSG_B, dict(CONFIRMED_A, amount=75), "BANK")
    assert _run(cascade.resolve(MSG_B, "BANK")).should_train is False


def test_financial_filter():
    from smartpaste.config import LearningConfig
    from smartpaste.models import Origin

    cascade = _cascade(config=LearningConfig(require_financial_message=True))
    assert _run(cascade.resolve("Win 500 points today, visit our site")).draft is None
    assert _run(cascade.resolve(MSG_A)).origin is Origin.FALLBACK


def test_usage_log_records_resolutions():
    from smartpaste.parsing.structure_hash import compute_template_hash
    from smartpaste.parsing.usage import TemplateUsageLog
    from smartpaste.storage import InMemoryAdapter

    usage = TemplateUsageLog(InMemoryAdapter(), clock=lambda: NOW)
    cascade = _cascade(usage_log=usage)
    _run(cascade.resolve(MSG_A))
    cascade.store.learn_from_transaction(MSG_A, CONFIRMED_A)
    _run(cascade.resolve(MSG_B))

    record = usage.get(compute_template_hash(MSG_A))
    assert record.usage_count == 2
    assert record.fallback_count == 1
    assert record.success_count == 1


def test_resolve_sync():
    from smartpaste.models import Origin

    result = _cascade().resolve_sync(MSG_A)
    assert result.origin is Origin.FALLBACK


def test_transfer_keeps_sign():
    from smartpaste.models import TransactionType

    result = _run(_cascade().resolve("Transfer of SAR 200 sent to Ahmed on 02/03/2024"))
    assert result.draft.type is TransactionType.TRANSFER
    assert result.draft.amount == 200


# ── Test 5: Several amounts in one message ─────────────────────────────────

FEE_MSG = "Fee SAR 2.50 charged. Purchase SAR 150.00 at Jarir on 05/03/2024"
CONFIRMED_FEE = {"type": "expense", "amount": 150, "currency": "SAR", "vendor": "Jarir"}


def test_template_stage_takes_learned_amount_not_fee():
    from smartpaste.models import Origin

    cascade = _cascade()
    cascade.store.learn_from_transaction(FEE_MSG, CONFIRMED_FEE)
    result = _run(cascade.resolve(FEE_MSG))

    assert result.origin is Origin.TEMPLATE
    assert result.draft.amount == -150
    assert result.confidence == 1.0


def test_structure_stage_takes_learned_amount_not_fee():
    from smartpaste.models import Origin

    cascade = _cascade()
    cascade.store.learn_from_transaction(FEE_MSG, CONFIRMED_FEE)
    result = _run(cascade.resolve("Fee SAR 3.75 charged. Purchase SAR 99.00 at Jarir on 06/03/2024"))

    assert result.origin is Origin.STRUCTURE
    assert result.draft.amount == -99
    assert result.draft.vendor == "Jarir"
    assert result.draft.date == "2024-03-06"


# ── Test 6: Zero amounts ───────────────────────────────────────────────────

def test_zero_amount_gives_no_draft():
    """A zero is not an amount: no stage produces an expense of -0.0."""
    result = _run(_cascade().resolve("You spent $0.00 at The Coffee Shop on 03/15/2024"))
    assert result.draft is None
    assert result.origin is None


def test_ml_zero_amount_falls_through():
    """An extractor answering 0 is ignored; the fallback reads the real amount."""
    from smartpaste.models import Origin

    spy = _SpyExtractor({"amount": 0, "type": "expense"})
    result = _run(_cascade(extractor=spy).resolve("Card purchase 80.00 at Jarir"))

    assert len(spy.calls) == 1
    assert result.origin is Origin.FALLBACK
    assert result.draft.amount == -80
    assert result.draft.amount < 0


# ── Test 7: Category rules for unexplained drafts ──────────────────────────

def _rules():
    from smartpaste.parsing.category_rules import CategoryRuleBank
    from smartpaste.storage import InMemoryAdapter

    return CategoryRuleBank(InMemoryAdapter(), clock=lambda: NOW)


def test_fallback_draft_uses_vendor_rule():
    from smartpaste.models import Origin

    rules = _rules()
    rules.add_vendor("Coffee Shop", "expense", "Food", "Coffee")
    result = _run(_cascade(rule_bank=rules).resolve(MSG_A))

    assert result.origin is Origin.FALLBACK
    assert result.draft.category == "Food"
    assert result.draft.subcategory == "Coffee"
    assert result.field_confidences["category"] == 0.3


def test_fallback_income_default_category():
    result = _run(_cascade(rule_bank=_rules()).resolve("Salary of SAR 5000 credited on 01/03/2024"))
    assert result.draft.category == "Earnings"
    assert result.draft.subcategory == "Benefits"


def test_no_rule_bank_stays_uncategorized():
    result = _run(_cascade().resolve("Salary of SAR 5000 credited on 01/03/2024"))
    assert result.draft.category == "Uncategorized"


def test_ml_draft_uses_keyword_rule():
    from smartpaste.models import Origin

    rules = _rules()
    rules.add_keyword("jarir", {"category": "Shopping", "subcategory": "Books"})
    spy = _SpyExtractor({"amount": 80, "type": "expense"})
    result = _run(_cascade(extractor=spy, rule_bank=rules).resolve("Card purchase 80.00 at Jarir"))

    assert result.origin is Origin.ML
    assert result.draft.category == "Shopping"
    assert result.draft.subcategory == "Books"
    assert result.field_confidences["category"] == 0.3


def test_confirmation_teaches_rules():
    """Learning a categorised transaction lets a new shape from that vendor inherit it."""
    from smartpaste.models import Origin
    from smartpaste.parsing.cascade import MatchingCascade
    from smartpaste.parsing.template_store import LearnedTemplateStore
    from smartpaste.storage import InMemoryAdapter

    rules = _rules()
    store = LearnedTemplateStore(InMemoryAdapter(), rule_bank=rules, clock=lambda: NOW)
    cascade = MatchingCascade(store, today=lambda: TODAY)
    store.learn_from_transaction(MSG_A, dict(CONFIRMED_A, category="Food", subcategory="Coffee"), "BANK")

    result = _run(cascade.resolve("Card payment of USD 12.00 to Coffee Shop", "OTHER"))
    assert result.origin is Origin.FALLBACK
    assert result.draft.vendor == "Coffee Shop"
    assert result.draft.category == "Food"
    assert result.draft.subcategory == "Coffee"
    assert rules.sender_rule("bank").category == "Food"
