"""Matching cascade: one message in, one resolution out.

Stages run in strict order and the first ``Matched`` wins:

  Stage 1  TEMPLATE   exact learned template (positional token match)
  Stage 2  STRUCTURE  learned template of the same shape, fields re-extracted
  Stage 3  ML         external statistical extractor (guarded, may be absent)
  Stage 4  FALLBACK   bare amount regex + bilingual type keywords

Drafts from stages 3 and 4 get category, subcategory (and any other field
they could not read) from the category rule bank when one is wired in.

Stages 1, 2 and 4 never suspend; stage 3 is the only awaited call.  A
message with no amount-like token never reaches any stage.

The cascade only reads the template store.  The store learns when the
caller confirms a draft, which closes the loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Optional, Protocol, Union

from ..config import LearningConfig
from ..extraction.dates import normalize_date
from ..extraction.fields import (
    detect_currency,
    extract_account_tokens,
    extract_date_tokens,
    extract_vendor_tokens,
    first_amount,
    has_amount,
    parse_amount,
    resolve_currency,
    span_text,
)
from ..extraction.keywords import infer_type
from ..extraction.message_filter import is_financial_message
from ..models import (
    CascadeResult,
    LearnedEntry,
    MatchResult,
    Origin,
    ParseStatus,
    TransactionDraft,
    TransactionType,
    signed_amount,
    utcnow,
)
from .category_rules import CategoryRuleBank
from .failure_tracker import FailureTracker
from .statistical import ML_CONFIDENCE, StatisticalExtractor, high_accuracy_mode, run_extractor
from .structure_hash import compute_template_hash
from .template_store import LearnedTemplateStore
from .usage import TemplateUsageLog

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
TRAIN_BELOW_CONFIDENCE = 0.4
SUCCESS_CONFIDENCE = 0.8
PARTIAL_CONFIDENCE = 0.4

DRAFT_FIELDS = ("amount", "currency", "date", "type", "category", "subcategory", "vendor", "from_account")


# ---------------------------------------------------------------------------
# Stage protocol
# ---------------------------------------------------------------------------


@dataclass
class Matched:
    draft: TransactionDraft
    confidence: float
    entry: Optional[LearnedEntry] = None


@dataclass
class NotMatched:
    reason: str
    confidence: float = 0.0


StageOutcome = Union[Matched, NotMatched]


@dataclass
class StageContext:
    message: str
    sender_hint: str
    template_hash: str
    reference_date: date
    config: LearningConfig
    notes: dict[str, Any] = field(default_factory=dict)


class Stage(Protocol):
    origin: Origin

    async def run(self, ctx: StageContext) -> StageOutcome: ...


# ---------------------------------------------------------------------------
# Draft helpers
# ---------------------------------------------------------------------------


def _message_date(ctx: StageContext, day_first: Optional[bool] = None) -> Optional[str]:
    if day_first is None:
        day_first = ctx.config.day_first
    for tok in extract_date_tokens(ctx.message):
        iso = normalize_date(tok.token, ctx.reference_date, day_first)
        if iso:
            return iso
    return None


def _message_vendor(message: str) -> str:
    return span_text(message, extract_vendor_tokens(message))


def _message_account(message: str) -> str:
    tokens = extract_account_tokens(message)
    return tokens[0].token if tokens else ""


def _confidences(values: dict[str, Any], confidence: float) -> dict[str, float]:
    return {
        name: (confidence if values.get(name) not in (None, "", "Uncategorized") else 0.0)
        for name in DRAFT_FIELDS
    }


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class TemplateStage:
    """Stage 1: reuse a confirmed message the new one (almost) repeats."""

    origin = Origin.TEMPLATE

    def __init__(self, store: LearnedTemplateStore) -> None:
        self.store = store

    async def run(self, ctx: StageContext) -> StageOutcome:
        result = self.store.find_best_match(ctx.message, ctx.sender_hint)
        if not result.matched or result.entry is None:
            return NotMatched("no template above threshold", result.confidence)

        entry = result.entry
        confirmed = entry.confirmed_fields
        amount = abs(confirmed.amount)
        if entry.field_token_map.amount:
            amount = self.store.amount_for(entry, ctx.message)
            if amount is None:
                return NotMatched("learned amount position not found", result.confidence)
        date_iso = _message_date(ctx, self.store.day_first_for(entry))
        draft = TransactionDraft(
            amount=amount,
            currency=confirmed.currency or detect_currency(ctx.message) or ctx.config.default_currency,
            type=confirmed.type,
            date=date_iso or ctx.reference_date.isoformat(),
            origin=self.origin,
            vendor=confirmed.vendor or _message_vendor(ctx.message),
            title=confirmed.vendor or "",
            from_account=confirmed.account,
            category=confirmed.category or "Uncategorized",
            subcategory=confirmed.subcategory or "Uncategorized",
            person=confirmed.person,
        )
        values = {
            "amount": draft.amount,
            "currency": draft.currency,
            "date": date_iso,
            "type": draft.type,
            "category": draft.category,
            "subcategory": draft.subcategory,
            "vendor": draft.vendor,
            "from_account": draft.from_account,
        }
        draft.field_confidences = _confidences(values, result.confidence)
        return Matched(draft, result.confidence, entry)


class StructureStage:
    """Stage 2: a confirmed message of the same shape, fields re-read."""

    origin = Origin.STRUCTURE

    def __init__(self, store: LearnedTemplateStore) -> None:
        self.store = store

    async def run(self, ctx: StageContext) -> StageOutcome:
        match = self.store.match_using_template_structure(ctx.message, ctx.sender_hint)
        if match is None:
            return NotMatched("no verified structural candidate")
        if match.confidence < ctx.config.min_confidence_threshold:
            return NotMatched("structural candidate below threshold", match.confidence)
        values = match.fields
        if values.get("amount") is None:
            return NotMatched("structural candidate without amount", match.confidence)

        vendor = values.get("vendor") or ""
        draft = TransactionDraft(
            amount=values["amount"],
            currency=values.get("currency") or detect_currency(ctx.message) or ctx.config.default_currency,
            type=values["type"],
            date=values.get("date") or ctx.reference_date.isoformat(),
            origin=self.origin,
            vendor=vendor,
            title=vendor,
            from_account=values.get("from_account") or "",
            category=values.get("category") or "Uncategorized",
            subcategory=values.get("subcategory") or "Uncategorized",
            person=values.get("person"),
            field_confidences={name: match.field_confidences.get(name, 0.0) for name in DRAFT_FIELDS},
        )
        return Matched(draft, match.confidence, match.entry)


class StatisticalStage:
    """Stage 3: the external extractor, when one is configured."""

    origin = Origin.ML

    def __init__(
        self,
        extractor: Optional[StatisticalExtractor],
        rules: Optional[CategoryRuleBank] = None,
    ) -> None:
        self.extractor = extractor
        self.rules = rules
        self.calls = 0

    async def run(self, ctx: StageContext) -> StageOutcome:
        if self.extractor is None:
            return NotMatched("no statistical extractor configured")
        if not has_amount(ctx.message):
            return NotMatched("no amount-like token")

        self.calls += 1
        found = await run_extractor(
            self.extractor,
            ctx.message,
            high_accuracy=high_accuracy_mode(ctx.message, ctx.config.ml_high_accuracy),
            timeout=ctx.config.ml_timeout_seconds,
        )
        if not found:
            return NotMatched("extractor produced nothing")

        raw_amount = found.get("amount")
        amount = float(raw_amount) if isinstance(raw_amount, (int, float)) else parse_amount(str(raw_amount or ""))
        if not amount:
            return NotMatched("extractor returned no amount")

        confidences: dict[str, float] = {name: 0.0 for name in DRAFT_FIELDS}
        confidences["amount"] = ML_CONFIDENCE

        currency = resolve_currency(str(found.get("currency") or ""))
        if currency is None and len(str(found.get("currency") or "")) == 3:
            currency = str(found["currency"]).upper()
        if currency:
            confidences["currency"] = ML_CONFIDENCE
        else:
            currency = detect_currency(ctx.message)
            confidences["currency"] = FALLBACK_CONFIDENCE if currency else 0.0

        txn_type = _coerce_type(found.get("type"))
        if txn_type is not None:
            confidences["type"] = ML_CONFIDENCE
        else:
            txn_type = infer_type(ctx.message)
            confidences["type"] = FALLBACK_CONFIDENCE if txn_type else 0.0

        date_iso = None
        if found.get("date"):
            date_iso = normalize_date(str(found["date"]), ctx.reference_date, ctx.config.day_first)
        if date_iso:
            confidences["date"] = ML_CONFIDENCE
        else:
            date_iso = _message_date(ctx)
            confidences["date"] = FALLBACK_CONFIDENCE if date_iso else 0.0

        vendor = str(found.get("vendor") or "")
        account = str(found.get("account") or "")
        confidences["vendor"] = ML_CONFIDENCE if vendor else 0.0
        confidences["from_account"] = ML_CONFIDENCE if account else 0.0

        inferred = _infer_indirect(self.rules, ctx, {"type": txn_type, "vendor": vendor, "from_account": account})
        if txn_type is None and _coerce_type(inferred.get("type")) is not None:
            txn_type = _coerce_type(inferred["type"])
            confidences["type"] = FALLBACK_CONFIDENCE
        for name, current in (("vendor", vendor), ("from_account", account)):
            if not current and inferred.get(name):
                confidences[name] = FALLBACK_CONFIDENCE
        vendor = vendor or inferred.get("vendor", "")
        account = account or inferred.get("from_account", "")
        for name in ("category", "subcategory"):
            confidences[name] = FALLBACK_CONFIDENCE if inferred.get(name) else 0.0

        draft = TransactionDraft(
            amount=abs(amount),
            currency=currency or ctx.config.default_currency,
            type=txn_type or TransactionType.EXPENSE,
            date=date_iso or ctx.reference_date.isoformat(),
            origin=self.origin,
            vendor=vendor,
            title=vendor,
            from_account=account,
            category=inferred.get("category") or "Uncategorized",
            subcategory=inferred.get("subcategory") or "Uncategorized",
            field_confidences=confidences,
        )
        return Matched(draft, ML_CONFIDENCE)


class FallbackStage:
    """Stage 4: last-resort heuristics; succeeds whenever an amount exists."""

    origin = Origin.FALLBACK

    def __init__(self, rules: Optional[CategoryRuleBank] = None) -> None:
        self.rules = rules

    async def run(self, ctx: StageContext) -> StageOutcome:
        amount = first_amount(ctx.message)
        if amount is None:
            return NotMatched("no numeric amount")
        currency = detect_currency(ctx.message)
        txn_type = infer_type(ctx.message)
        date_iso = _message_date(ctx)
        vendor = _message_vendor(ctx.message)
        account = _message_account(ctx.message)

        inferred = _infer_indirect(self.rules, ctx, {"type": txn_type, "vendor": vendor, "from_account": account})
        txn_type = txn_type or _coerce_type(inferred.get("type"))
        vendor = vendor or inferred.get("vendor", "")
        account = account or inferred.get("from_account", "")

        values = {
            "amount": amount,
            "currency": currency,
            "date": date_iso,
            "type": txn_type,
            "category": inferred.get("category"),
            "subcategory": inferred.get("subcategory"),
            "vendor": vendor,
            "from_account": account,
        }
        draft = TransactionDraft(
            amount=abs(amount),
            currency=currency or ctx.config.default_currency,
            type=txn_type or TransactionType.EXPENSE,
            date=date_iso or ctx.reference_date.isoformat(),
            origin=self.origin,
            vendor=vendor,
            title=vendor,
            from_account=account,
            category=inferred.get("category") or "Uncategorized",
            subcategory=inferred.get("subcategory") or "Uncategorized",
            field_confidences=_confidences(values, FALLBACK_CONFIDENCE),
        )
        return Matched(draft, FALLBACK_CONFIDENCE)


def _infer_indirect(
    rules: Optional[CategoryRuleBank],
    ctx: StageContext,
    knowns: dict[str, Any],
) -> dict[str, str]:
    """Rule-bank values for the fields the stage could not read itself."""
    if rules is None:
        return {}
    return rules.infer(ctx.message, knowns, ctx.sender_hint)


def _coerce_type(value: Any) -> Optional[TransactionType]:
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(str(value or "").strip().lower())
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------


def _status(confidence: float) -> ParseStatus:
    if confidence >= SUCCESS_CONFIDENCE:
        return ParseStatus.SUCCESS
    if confidence >= PARTIAL_CONFIDENCE:
        return ParseStatus.PARTIAL
    return ParseStatus.FAILED


class MatchingCascade:
    """Resolve SMS text into a :class:`TransactionDraft`.

    Usage::

        cascade = MatchingCascade(store, extractor=my_ner)
        result = await cascade.resolve(sms, sender_hint="ALRAJHI")
        if result.should_train:
            ...  # route to manual annotation
    """

    def __init__(
        self,
        store: LearnedTemplateStore,
        *,
        extractor: Optional[StatisticalExtractor] = None,
        failure_tracker: Optional[FailureTracker] = None,
        usage_log: Optional[TemplateUsageLog] = None,
        rule_bank: Optional[CategoryRuleBank] = None,
        config: Optional[LearningConfig] = None,
        stages: Optional[list[Stage]] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.store = store
        self.config = config or store.config
        self.failure_tracker = failure_tracker or store.failure_tracker or FailureTracker(
            self.config.failure_threshold
        )
        if store.failure_tracker is None:
            store.failure_tracker = self.failure_tracker
        self.usage_log = usage_log
        self.rule_bank = rule_bank if rule_bank is not None else store.rule_bank
        self._today = today or (lambda: utcnow().date())
        self.stages: list[Stage] = stages if stages is not None else [
            TemplateStage(store),
            StructureStage(store),
            StatisticalStage(extractor, self.rule_bank),
            FallbackStage(self.rule_bank),
        ]

    async def resolve(self, message: str, sender_hint: Optional[str] = None) -> CascadeResult:
        """Run the stages in order and post-process the first match.

        Returns
        -------
        CascadeResult
            ``draft`` is ``None`` when the message is empty, has no
            amount, or fails the optional financial-message filter.
            ``match.matched`` is true only at or above the configured
            confidence threshold; ml and fallback drafts come back
            unmatched with ``should_train`` set.
        """
        if not message or not message.strip():
            return CascadeResult(match=MatchResult(entry=None, confidence=0.0, matched=False))

        sender = (sender_hint or "").strip()
        template_hash = compute_template_hash(message)
        empty = CascadeResult(
            match=MatchResult(entry=None, confidence=0.0, matched=False),
            template_hash=template_hash,
        )
        if self.config.require_financial_message and not is_financial_message(message):
            logger.debug("[CASCADE] Not a financial message, skipping")
            return empty
        if not has_amount(message):
            logger.debug("[CASCADE] No amount-like token, no transaction")
            return empty

        ctx = StageContext(
            message=message,
            sender_hint=sender,
            template_hash=template_hash,
            reference_date=self._today(),
            config=self.config,
        )

        chosen: Optional[Matched] = None
        origin: Optional[Origin] = None
        skipped: list[str] = []
        for stage in self.stages:
            outcome = await stage.run(ctx)
            if isinstance(outcome, Matched):
                chosen, origin = outcome, stage.origin
                break
            skipped.append(f"{stage.origin.value}: {outcome.reason}")

        if self.usage_log is not None:
            self.usage_log.record_resolution(template_hash, origin)

        if chosen is None or origin is None:
            logger.info("[CASCADE] No stage matched (%s)", "; ".join(skipped))
            empty.match.should_train = True
            return empty

        draft = chosen.draft
        draft.amount = signed_amount(draft.type, draft.amount)
        confidence = round(max(0.0, min(1.0, chosen.confidence)), 4)
        should_train = (
            origin is Origin.FALLBACK
            or confidence < TRAIN_BELOW_CONFIDENCE
            or self.failure_tracker.needs_annotation(template_hash, sender)
        )
        fallback_template = None
        if origin not in (Origin.TEMPLATE, Origin.STRUCTURE):
            fallback_template = self.store.get_template(template_hash)

        match = MatchResult(
            entry=chosen.entry,
            confidence=confidence,
            matched=confidence >= self.config.min_confidence_threshold,
            should_train=should_train,
            fallback_template=fallback_template,
        )
        logger.info(
            "[CASCADE] Resolved via %s (confidence=%.2f, should_train=%s, skipped=%d)",
            origin.value, confidence, should_train, len(skipped),
        )
        return CascadeResult(
            match=match,
            draft=draft,
            origin=origin,
            template_hash=template_hash,
            status=_status(confidence),
        )

    def resolve_sync(self, message: str, sender_hint: Optional[str] = None) -> CascadeResult:
        """Blocking wrapper around :meth:`resolve` for non-async callers."""
        return asyncio.run(self.resolve(message, sender_hint))

    def report_rejection(self, result: CascadeResult, sender_hint: Optional[str] = None) -> int:
        """The user discarded or edited away a draft; returns the new count."""
        if not result.template_hash:
            return 0
        count = self.failure_tracker.record_rejection(result.template_hash, sender_hint)
        if self.usage_log is not None:
            self.usage_log.record_failure(result.template_hash)
        return count
