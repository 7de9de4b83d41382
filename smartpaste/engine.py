"""One handle wiring the store, cascade, trackers and stats together.

Usage::

    engine = LearningEngine.open("~/.smartpaste/store.json")
    result = engine.resolve_sync(sms, sender_hint="STCPAY")
    if result.should_train:
        request = engine.annotation_request(result, sms, "STCPAY")
        ...
    engine.learn(sms, confirmed_fields, sender_hint="STCPAY")
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .config import LearningConfig, load_config, save_config
from .models import CascadeResult, ConfirmationSource, ConfirmedFields, FieldTokenMap, LearnedEntry, utcnow
from .parsing.cascade import MatchingCascade
from .parsing.category_rules import CategoryRuleBank
from .parsing.failure_tracker import FailureTracker
from .parsing.feedback import build_annotation_request, resolve_annotation
from .parsing.statistical import StatisticalExtractor
from .parsing.stats import StatsAggregator, TemplateStats
from .parsing.template_store import LearnedTemplateStore
from .parsing.usage import TemplateUsageLog
from .storage.adapters import JsonFileAdapter

logger = logging.getLogger(__name__)


class LearningEngine:
    def __init__(
        self,
        adapter: Any,
        config: Optional[LearningConfig] = None,
        *,
        extractor: Optional[StatisticalExtractor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.adapter = adapter
        # what is persisted, without environment overrides
        self._stored_config = config or load_config(adapter, use_env=False)
        self.config = config or LearningConfig.from_env(self._stored_config)
        self._clock = clock or utcnow
        self.failure_tracker = FailureTracker(self.config.failure_threshold)
        self.rule_bank = CategoryRuleBank(adapter, autosave=self.config.save_automatically, clock=self._clock)
        self.store = LearnedTemplateStore(
            adapter,
            self.config,
            failure_tracker=self.failure_tracker,
            rule_bank=self.rule_bank,
            clock=self._clock,
        )
        self.usage_log = TemplateUsageLog(
            adapter,
            autosave=self.config.save_automatically,
            max_records=self.config.max_entries * 5,
            clock=self._clock,
        )
        self.cascade = MatchingCascade(
            self.store,
            extractor=extractor,
            failure_tracker=self.failure_tracker,
            usage_log=self.usage_log,
            rule_bank=self.rule_bank,
            config=self.config,
            today=lambda: self._clock().date(),
        )
        self.stats = StatsAggregator(self.store, self.usage_log, self.config, clock=self._clock)

    @classmethod
    def open(cls, path: Union[str, Path], **kwargs: Any) -> "LearningEngine":
        """Engine persisted to a JSON file at ``path``."""
        return cls(JsonFileAdapter(Path(path).expanduser()), **kwargs)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, message: str, sender_hint: Optional[str] = None) -> CascadeResult:
        return await self.cascade.resolve(message, sender_hint)

    def resolve_sync(self, message: str, sender_hint: Optional[str] = None) -> CascadeResult:
        return self.cascade.resolve_sync(message, sender_hint)

    def report_rejection(self, result: CascadeResult, sender_hint: Optional[str] = None) -> int:
        return self.cascade.report_rejection(result, sender_hint)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn(
        self,
        message: str,
        confirmed: Union[ConfirmedFields, dict[str, Any]],
        sender_hint: Optional[str] = "",
        field_token_map: Optional[FieldTokenMap] = None,
        *,
        source: ConfirmationSource = ConfirmationSource.USER_EXPLICIT,
    ) -> Optional[LearnedEntry]:
        return self.store.learn_from_transaction(
            message, confirmed, sender_hint, field_token_map, source=source,
        )

    def annotation_request(
        self, result: CascadeResult, message: str, sender_hint: Optional[str] = None,
    ) -> dict[str, Any]:
        return build_annotation_request(result, message, sender_hint, failure_tracker=self.failure_tracker)

    def resolve_annotation(
        self,
        request: dict[str, Any],
        response: str,
        correction: Optional[dict[str, Any]] = None,
        *,
        field_token_map: Optional[FieldTokenMap] = None,
    ) -> Optional[LearnedEntry]:
        return resolve_annotation(self.store, request, response, correction, field_token_map=field_token_map)

    def clear(self) -> None:
        """Wipe learned templates, usage counters and category rules (explicit user action)."""
        self.store.clear_learned_entries()
        self.usage_log.clear()
        self.rule_bank.clear()

    def save(self) -> None:
        self.store.save()
        self.usage_log.save()
        self.rule_bank.save()

    # ------------------------------------------------------------------
    # Config / stats
    # ------------------------------------------------------------------

    def template_stats(self, window: Union[str, timedelta, None] = "30d") -> TemplateStats:
        return self.stats.compute(window)

    def update_config(self, **changes: Any) -> LearningConfig:
        """Apply option changes, persist them and push them to every component.

        Only the stored options plus ``changes`` are written back; values
        that came from ``SMARTPASTE_*`` environment overrides stay out of
        the store.
        """
        self._stored_config = replace(self._stored_config, **changes)
        save_config(self.adapter, self._stored_config)
        self.config = replace(self.config, **changes)
        self.store.config = self.config
        self.cascade.config = self.config
        self.stats.config = self.config
        self.failure_tracker.threshold = self.config.failure_threshold
        self.usage_log.autosave = self.config.save_automatically
        self.rule_bank.autosave = self.config.save_automatically
        logger.info("[CONFIG] Updated %s", sorted(changes))
        return self.config
