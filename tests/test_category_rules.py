"""Tests for the category rule bank.

Run from repo root:
    python -m pytest tests/test_category_rules.py -v
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

NOW = datetime(2024, 4, 2, 9, 0, tzinfo=timezone.utc)


def _bank(adapter=None, **kwargs):
    from smartpaste.parsing.category_rules import CategoryRuleBank
    from smartpaste.storage import InMemoryAdapter

    return CategoryRuleBank(adapter or InMemoryAdapter(), clock=lambda: NOW, **kwargs)


def _confirmed(**overrides):
    from smartpaste.models import ConfirmedFields

    data = {"type": "expense", "amount": -25, "category": "Food", "subcategory": "Coffee", "vendor": "Starbucks"}
    data.update(overrides)
    return ConfirmedFields.from_dict(data)


# ── Test 1: Vendor rules ───────────────────────────────────────────────────

def test_learn_vendor_and_sender_rules():
    bank = _bank()
    bank.learn(_confirmed(), " STC Pay ")

    vendors = bank.vendor_rules()
    assert vendors["Starbucks"].category == "Food"
    assert vendors["Starbucks"].subcategory == "Coffee"
    assert vendors["Starbucks"].user is True
    assert bank.sender_rule("stc pay").category == "Food"


def test_uncategorized_confirmation_learns_nothing():
    bank = _bank()
    bank.learn(_confirmed(category="Uncategorized"), "BANK")
    assert bank.vendor_rules() == {}
    assert bank.sender_rule("BANK") is None


def test_fuzzy_vendor_match():
    """A near spelling reuses the rule; an unrelated name does not."""
    bank = _bank()
    bank.add_vendor("Starbucks", "expense", "Food", "Coffee")

    name, rule = bank.match_vendor("STARBUCK")
    assert name == "Starbucks"
    assert rule.category == "Food"
    assert bank.match_vendor("Panda") is None
    assert bank.match_vendor("") is None


def test_substring_vendor_match():
    """A longer merchant string containing a known vendor still matches."""
    bank = _bank()
    bank.add_vendor("Jarir", "expense", "Shopping", "Books")
    name, _ = bank.match_vendor("Jarir Bookstore Riyadh")
    assert name == "Jarir"


def test_add_vendor_keeps_existing_unless_overwrite():
    bank = _bank()
    assert bank.add_vendor("Jarir", "expense", "Shopping", "Books") is True
    assert bank.add_vendor("jarir", "expense", "Education") is False
    assert bank.vendor_rules()["Jarir"].category == "Shopping"
    assert bank.add_vendor("jarir", "expense", "Education", overwrite=True) is True
    assert list(bank.vendor_rules()) == ["jarir"]
    assert bank.add_vendor("  ", "expense", "Food") is False
    assert bank.add_vendor("Panda", "expense", "Uncategorized") is False


# ── Test 2: Inference ──────────────────────────────────────────────────────

def test_infer_from_vendor_rule():
    bank = _bank()
    bank.add_vendor("Starbucks", "expense", "Food", "Coffee")
    inferred = bank.infer("Purchase SAR 25 at Starbucks on 01/04/2024", {"type": "expense"})
    assert inferred == {"category": "Food", "subcategory": "Coffee"}


def test_vendor_rule_needs_matching_type():
    """An income message never takes an expense vendor's category."""
    bank = _bank()
    bank.add_vendor("Starbucks", "expense", "Food", "Coffee")
    inferred = bank.infer("Refund SAR 25 from Starbucks", {"type": "income", "vendor": "Starbucks"})
    assert inferred == {"category": "Earnings", "subcategory": "Benefits"}


def test_keyword_rules_and_sender_context():
    from smartpaste.models import TransactionType

    bank = _bank()
    bank.add_keyword("netflix", {"category": "Entertainment", "subcategory": "Streaming"})
    bank.add_keyword("fee", {"category": "Bank Fees", "fromAccount": "Current"}, sender_context="ALRAJHI")

    inferred = bank.infer("Paid SAR 45 to NETFLIX.COM", {"type": TransactionType.EXPENSE})
    assert inferred["category"] == "Entertainment"
    assert inferred["subcategory"] == "Streaming"

    assert bank.infer("Fee SAR 5 charged", {}, "alrajhi") == {"category": "Bank Fees", "from_account": "Current"}
    assert "category" not in bank.infer("Fee SAR 5 charged", {}, "SNB")
    # whole words only
    assert bank.infer("Coffee SAR 5", {}, "alrajhi") == {}


def test_knowns_are_never_overridden():
    bank = _bank()
    bank.add_keyword("netflix", {"category": "Entertainment", "vendor": "Netflix"})
    inferred = bank.infer("Netflix SAR 45", {"category": "Bills", "vendor": "NFLX"})
    assert inferred == {}


def test_sender_rule_when_nothing_else_applies():
    bank = _bank()
    bank.learn(_confirmed(category="Transport", subcategory="Taxi", vendor=None), "CAREEM")
    assert bank.infer("Trip fare SAR 23", {"type": "expense"}, "careem") == {
        "category": "Transport", "subcategory": "Taxi",
    }
    assert bank.infer("Trip fare SAR 23", {"type": "expense"}, "UBER") == {}


def test_add_keyword_validation():
    bank = _bank()
    with pytest.raises(ValueError):
        bank.add_keyword("  ", {"category": "Food"})
    with pytest.raises(ValueError):
        bank.add_keyword("coffee", {"colour": "brown"})

    rule = bank.add_keyword("coffee", {"category": "Food"})
    rule = bank.add_keyword("Coffee", {"subcategory": "Coffee"})
    assert rule.mapping_count == 2
    assert rule.mappings == {"category": "Food", "subcategory": "Coffee"}
    assert bank.delete_keyword("COFFEE") is True
    assert bank.delete_keyword("coffee") is False
    assert bank.keyword_rules() == []


# ── Test 3: Persistence ────────────────────────────────────────────────────

def test_rules_persist_under_own_key():
    from smartpaste.parsing.category_rules import RULES_KEY
    from smartpaste.storage import InMemoryAdapter

    adapter = InMemoryAdapter()
    first = _bank(adapter)
    first.add_keyword("netflix", {"category": "Entertainment"}, sender_context="STC")
    first.learn(_confirmed(), "BANK")

    stored = json.loads(adapter.get(RULES_KEY))
    assert stored["schemaVersion"] == 2
    assert stored["payload"]["keywords"][0]["mappings"] == [{"field": "category", "value": "Entertainment"}]

    second = _bank(adapter)
    assert second.keyword_rules()[0].sender_context == "STC"
    assert second.vendor_rules()["Starbucks"].category == "Food"
    assert second.sender_rule("bank").subcategory == "Coffee"


def test_autosave_off_and_clear():
    from smartpaste.parsing.category_rules import RULES_KEY
    from smartpaste.storage import InMemoryAdapter

    adapter = InMemoryAdapter()
    bank = _bank(adapter, autosave=False)
    bank.learn(_confirmed(), "BANK")
    assert adapter.get(RULES_KEY) is None
    bank.save()
    assert adapter.get(RULES_KEY) is not None

    bank.clear()
    assert adapter.get(RULES_KEY) is None
    assert bank.vendor_rules() == {}


def test_corrupt_rules_are_skipped():
    from smartpaste.parsing.category_rules import RULES_KEY
    from smartpaste.storage import InMemoryAdapter, envelope

    adapter = InMemoryAdapter()
    adapter.set(RULES_KEY, envelope.wrap({
        "keywords": [{"mappings": []}, {"keyword": "fee", "mappings": [{"field": "category", "value": "Fees"}]}],
        "vendors": {"Bad": {"type": "gift", "category": "X"}, "Panda": {"type": "expense", "category": "Groceries"}},
        "senders": {"bank": {}},
    }))
    bank = _bank(adapter)
    assert [r.keyword for r in bank.keyword_rules()] == ["fee"]
    assert list(bank.vendor_rules()) == ["Panda"]
    assert bank.sender_rule("bank") is None

    adapter.set(RULES_KEY, "{not json")
    assert _bank(adapter).vendor_rules() == {}
