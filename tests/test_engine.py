"""End-to-end tests through LearningEngine.

Run from repo root:
    python -m pytest tests/test_engine.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone

MSG_A = "You spent $50 at The Coffee Shop on 03/15/2024"
MSG_B = "You spent $75 at The Coffee Shop on 04/01/2024"
NOW = datetime(2024, 4, 2, 9, 0, tzinfo=timezone.utc)


def test_import_package():
    """Top-level package exposes the public API."""
    from smartpaste import LearnedTemplateStore, LearningConfig, LearningEngine, MatchingCascade

    assert callable(LearningEngine)
    assert callable(LearnedTemplateStore)
    assert callable(MatchingCascade)
    assert LearningConfig().enabled is True


def test_learning_loop_on_disk(tmp_path, monkeypatch):
    """Fallback, annotate, reopen, and the next message resolves structurally."""
    from smartpaste import LearningEngine
    from smartpaste.models import Origin

    for name in ("MAX_ENTRIES", "ENABLED", "DAY_FIRST"):
        monkeypatch.delenv(f"SMARTPASTE_{name}", raising=False)

    path = tmp_path / "store.json"
    engine = LearningEngine.open(path, clock=lambda: NOW)
    first = engine.resolve_sync(MSG_A, "BANK")
    assert first.origin is Origin.FALLBACK
    assert first.should_train is True

    request = engine.annotation_request(first, MSG_A, "BANK")
    engine.resolve_annotation(
        request, "corrected",
        {"type": "expense", "amount": 50, "vendor": "Coffee Shop", "account": "Checking", "currency": "USD"},
    )

    reopened = LearningEngine.open(path, clock=lambda: NOW)
    second = reopened.resolve_sync(MSG_B, "BANK")
    assert second.origin is Origin.STRUCTURE
    assert second.draft.amount == -75
    assert second.draft.vendor == "Coffee Shop"
    assert second.draft.from_account == "Checking"

    stats = reopened.template_stats("30d")
    assert stats.total_templates == 1
    assert stats.total_success == 1
    assert stats.total_fallback == 1


def test_update_config_and_clear():
    from smartpaste import InMemoryAdapter, LearningEngine
    from smartpaste.config import load_config

    adapter = InMemoryAdapter()
    engine = LearningEngine(adapter, clock=lambda: NOW)
    engine.learn(MSG_A, {"type": "expense", "amount": 50, "currency": "USD"})

    engine.update_config(enabled=False, failure_threshold=5)
    assert load_config(adapter, use_env=False).enabled is False
    assert engine.failure_tracker.threshold == 5
    assert engine.learn(MSG_B, {"type": "expense", "amount": 75}) is None
    assert engine.resolve_sync(MSG_A).origin.value == "fallback"

    engine.clear()
    assert len(engine.store) == 0
    assert engine.usage_log.all() == []


def test_update_config_keeps_env_overrides_unsaved(monkeypatch):
    from smartpaste import InMemoryAdapter, LearningEngine
    from smartpaste.config import load_config
    from smartpaste.parsing.usage import USAGE_KEY

    monkeypatch.setenv("SMARTPASTE_MAX_ENTRIES", "7")
    adapter = InMemoryAdapter()
    engine = LearningEngine(adapter, clock=lambda: NOW)
    assert engine.config.max_entries == 7

    engine.update_config(failure_threshold=4)
    stored = load_config(adapter, use_env=False)
    assert stored.max_entries == 200
    assert stored.failure_threshold == 4
    assert engine.config.max_entries == 7

    engine.update_config(save_automatically=False)
    assert engine.usage_log.autosave is False
    assert engine.rule_bank.autosave is False
    engine.resolve_sync(MSG_A)
    assert adapter.get(USAGE_KEY) is None


def test_engine_learns_and_clears_category_rules():
    from smartpaste import InMemoryAdapter, LearningEngine
    from smartpaste.parsing.category_rules import RULES_KEY

    adapter = InMemoryAdapter()
    engine = LearningEngine(adapter, clock=lambda: NOW)
    engine.learn(
        MSG_A,
        {"type": "expense", "amount": 50, "currency": "USD", "category": "Food", "vendor": "Coffee Shop"},
        "BANK",
    )
    assert engine.rule_bank.vendor_rules()["Coffee Shop"].category == "Food"
    assert adapter.get(RULES_KEY) is not None

    reopened = LearningEngine(adapter, clock=lambda: NOW)
    assert reopened.rule_bank.sender_rule("BANK").category == "Food"

    engine.clear()
    assert engine.rule_bank.vendor_rules() == {}
    assert adapter.get(RULES_KEY) is None
