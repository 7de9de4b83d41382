"""Learned template store: confirmed messages and the shapes they came in.

Every message a human confirms becomes a :class:`LearnedEntry` keyed by its
structural hash.  The store answers two questions for the cascade:

1. ``find_best_match``: has the user confirmed (nearly) this exact message
   before?  Scored on where the confirmed field tokens sit, not on word
   overlap.
2. ``match_using_template_structure``: has the user confirmed a message of
   this *shape*?  Field roles are re-extracted from the new message so that
   changing amounts and dates still resolve.

Writes happen only in :meth:`LearnedTemplateStore.learn_from_transaction`
and :meth:`LearnedTemplateStore.clear_learned_entries`, under a per-store
lock.

Storage keys: ``smartpaste.learned_entries``, ``smartpaste.structure_templates``
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional, Union

from ..config import LearningConfig
from ..extraction.dates import normalize_date, numeric_date_order
from ..extraction.fields import (
    extract_account_tokens,
    extract_amount_tokens,
    extract_currency_tokens,
    extract_date_tokens,
    extract_type_tokens,
    extract_vendor_tokens,
    parse_amount,
    resolve_currency,
    span_text,
)
from ..extraction.tokenizer import context_around, make_token, normalize_digits, tokenize
from ..models import (
    FIELD_SLOTS,
    ConfirmationEvent,
    ConfirmationSource,
    ConfirmedFields,
    FieldTokenMap,
    LearnedEntry,
    MatchResult,
    PositionedToken,
    StructureTemplate,
    signed_amount,
    utcnow,
)
from ..storage import envelope
from .category_rules import CategoryRuleBank
from .failure_tracker import FailureTracker
from .structure_hash import compute_template_hash, template_structure

logger = logging.getLogger(__name__)

ENTRIES_KEY = "smartpaste.learned_entries"
STRUCTURES_KEY = "smartpaste.structure_templates"

SENDER_BONUS = 0.1
HISTORY_BONUS = 0.05
FULL_CREDIT_CONFIRMATIONS = 5
RECENCY_HORIZON_DAYS = 90
_AMOUNT_TOLERANCE = 0.005

# Weight of one confirmation towards entry confidence; user-explicit comes
# from LearningConfig.user_confirmation_weight
_SOURCE_WEIGHT = {
    ConfirmationSource.AUTO: 0.5,
    ConfirmationSource.SYSTEM: 0.25,
    ConfirmationSource.SYSTEM_MIGRATION: 0.25,
}

# Slots matched as one multi-word span rather than token by token
_SPAN_SLOTS = ("vendor", "title")

_DEFAULT_KEYS = ("type", "category", "subcategory", "currency", "account", "vendor")


@dataclass
class StructureMatch:
    """Outcome of a verified structural lookup."""

    entry: LearnedEntry
    confidence: float
    fields: dict[str, Any]
    field_confidences: dict[str, float] = field(default_factory=dict)
    verified_roles: list[str] = field(default_factory=list)
    template: Optional[StructureTemplate] = None


# ---------------------------------------------------------------------------
# Token position helpers
# ---------------------------------------------------------------------------


def _same_sender(a: Optional[str], b: Optional[str]) -> bool:
    a = (a or "").strip().casefold()
    b = (b or "").strip().casefold()
    return bool(a) and a == b


def _occurrence_pattern(token: str) -> Optional[re.Pattern[str]]:
    text = normalize_digits(token)
    if not text:
        return None
    head = r"(?<![^\W_])" if text[0].isalnum() else ""
    tail = r"(?![^\W_])" if text[-1].isalnum() else ""
    try:
        return re.compile(head + re.escape(text) + tail, re.IGNORECASE)
    except re.error:
        logger.debug("[STORE] Could not build pattern for %r", token, exc_info=True)
        return None


def _found_compatible(message: str, norm: str, stored: PositionedToken) -> bool:
    """Is ``stored`` present in ``message`` with the same neighbour on one side?"""
    pattern = _occurrence_pattern(stored.token)
    if pattern is None:
        return False
    for m in pattern.finditer(norm):
        if stored.position < 0:
            # legacy token without context: presence is enough
            return True
        before, after = context_around(message, m.start(), m.end())
        if stored.context_before[-1:] == before[-1:] or stored.context_after[:1] == after[:1]:
            return True
    return False


def _groups(slot: str, tokens: list[PositionedToken]) -> list[list[PositionedToken]]:
    if not tokens:
        return []
    if slot in _SPAN_SLOTS:
        return [sorted(tokens, key=lambda t: t.position)]
    return [[t] for t in tokens]


def _no_tokens(text: str) -> list[PositionedToken]:
    return []


_ROLE_EXTRACTORS: dict[str, Callable[[str], list[PositionedToken]]] = {
    "amount": extract_amount_tokens,
    "currency": extract_currency_tokens,
    "vendor": extract_vendor_tokens,
    "account": extract_account_tokens,
    "date": extract_date_tokens,
    "type": extract_type_tokens,
    "title": _no_tokens,
}


def _ordinal(group: list[PositionedToken], candidates: list[list[PositionedToken]]) -> int:
    """Index of ``group`` among the extractor's candidates, -1 if absent."""
    head = group[0]
    for i, candidate in enumerate(candidates):
        if head.position >= 0 and candidate[0].position == head.position:
            return i
        if head.position < 0 and candidate[0].token == head.token:
            return i
    return -1


def _group_score(stored: list[PositionedToken], fresh: list[PositionedToken], same_ordinal: bool) -> float:
    """Alignment of a fresh group with a stored one; 0 when incompatible.

    Compatible means the same neighbour on both sides, or the same ordinal
    among the role's candidates plus the same neighbour on one side.
    """
    if stored[0].position < 0:
        # legacy token without context
        return 1.0 if same_ordinal else 0.0
    before = stored[0].context_before[-1:] == fresh[0].context_before[-1:]
    after = stored[-1].context_after[:1] == fresh[-1].context_after[:1]
    if not (before and after) and not (same_ordinal and (before or after)):
        return 0.0
    score = float(before + after + same_ordinal)
    # the full context window breaks ties between equally placed candidates
    score += 0.25 * (stored[0].context_before == fresh[0].context_before)
    score += 0.25 * (stored[-1].context_after == fresh[-1].context_after)
    return score


def best_aligned_group(
    role: str,
    stored_tokens: list[PositionedToken],
    stored_message: str,
    message: str,
    fresh_tokens: Optional[list[PositionedToken]] = None,
) -> Optional[list[PositionedToken]]:
    """The group of ``message`` that sits where ``stored_tokens`` sat.

    Every fresh candidate of ``role`` is scored against every stored group
    and the highest scorer wins; ``None`` when nothing is compatible.
    """
    stored_groups = _groups(role, stored_tokens)
    if not stored_groups:
        return None
    extractor = _ROLE_EXTRACTORS[role]
    stored_candidates = _groups(role, extractor(stored_message))
    if fresh_tokens is None:
        fresh_tokens = extractor(message)
    fresh_groups = _groups(role, fresh_tokens)

    best: Optional[list[PositionedToken]] = None
    best_score = 0.0
    for stored in stored_groups:
        index = _ordinal(stored, stored_candidates)
        for i, fresh in enumerate(fresh_groups):
            same_ordinal = role in _SPAN_SLOTS or (index >= 0 and i == index)
            score = _group_score(stored, fresh, same_ordinal)
            if score > best_score:
                best, best_score = fresh, score
    return best


def _proven_day_first(tokens: list[PositionedToken]) -> Optional[bool]:
    for tok in tokens:
        order = numeric_date_order(tok.token)
        if order is not None:
            return order
    return None


def _literal_tokens(message: str, phrase: str) -> list[PositionedToken]:
    """Per-word tokens of the first whole-word occurrence of ``phrase``."""
    words = [w for w in re.split(r"\s+", phrase.strip()) if w]
    if not words:
        return []
    try:
        pattern = re.compile(
            r"(?<![^\W_])" + r"\s+".join(re.escape(w) for w in words) + r"(?![^\W_])",
            re.IGNORECASE,
        )
    except re.error:
        return []
    m = pattern.search(message)
    if not m:
        return []
    return [
        make_token(message, m.start() + w.start(), m.start() + w.end())
        for w in re.finditer(r"\S+", m.group())
    ]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class LearnedTemplateStore:
    """Bounded bank of confirmed messages, persisted through an adapter.

    Usage::

        store = LearnedTemplateStore(InMemoryAdapter(), LearningConfig())
        store.learn_from_transaction(msg, {"type": "expense", "amount": 50, ...})
        result = store.find_best_match(msg)
    """

    def __init__(
        self,
        adapter: Any,
        config: Optional[LearningConfig] = None,
        *,
        failure_tracker: Optional[FailureTracker] = None,
        rule_bank: Optional[CategoryRuleBank] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.adapter = adapter
        self.config = config or LearningConfig()
        self.failure_tracker = failure_tracker
        self.rule_bank = rule_bank
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._entries: list[LearnedEntry] = []
        self._structures: dict[str, StructureTemplate] = {}
        self.reload()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """(Re)read entries and structure templates from the adapter."""
        entries = self._load_entries()
        structures = self._load_structures()
        with self._lock:
            self._entries = entries
            self._structures = structures
        logger.debug("[STORE] Loaded %d entries, %d structures", len(entries), len(structures))

    def _load_entries(self) -> list[LearnedEntry]:
        try:
            version, payload = envelope.unwrap(self.adapter.get(ENTRIES_KEY))
        except envelope.UnsupportedSchemaError:
            logger.error("[STORE] Learned entries were written by a newer version, ignoring them")
            return []
        except ValueError:
            logger.warning("[STORE] Learned entries unreadable, starting empty", exc_info=True)
            return []
        if not isinstance(payload, list):
            return []

        entries: list[LearnedEntry] = []
        skipped = 0
        for item in payload:
            try:
                data = item
                if version == 1:
                    data = envelope.migrate_v1_entry(item)
                    if not data.get("templateHash") and data.get("rawMessage"):
                        data["templateHash"] = compute_template_hash(data["rawMessage"])
                entries.append(LearnedEntry.from_dict(data))
            except (KeyError, TypeError, ValueError, AttributeError):
                skipped += 1
                logger.warning("[STORE] Skipping corrupt learned entry", exc_info=True)
        if version == 1:
            logger.info("[STORE] Migrated %d schema-1 entries", len(entries))
        if skipped:
            logger.warning("[STORE] %d stored entries could not be read", skipped)
        return entries

    def _load_structures(self) -> dict[str, StructureTemplate]:
        try:
            _, payload = envelope.unwrap(self.adapter.get(STRUCTURES_KEY))
        except ValueError:
            logger.warning("[STORE] Structure templates unreadable, starting empty", exc_info=True)
            return {}
        structures: dict[str, StructureTemplate] = {}
        for item in payload or []:
            try:
                tpl = StructureTemplate.from_dict(item)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("[STORE] Skipping corrupt structure template", exc_info=True)
                continue
            structures[tpl.hash] = tpl
        return structures

    def save(self) -> None:
        with self._lock:
            now = self._clock()
            self.adapter.set(ENTRIES_KEY, envelope.wrap([e.to_dict() for e in self._entries], now=now))
            self.adapter.set(
                STRUCTURES_KEY,
                envelope.wrap([t.to_dict() for t in self._structures.values()], now=now),
            )
        logger.debug("[STORE] Saved %d entries", len(self._entries))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def entries(self) -> list[LearnedEntry]:
        with self._lock:
            return list(self._entries)

    def structure_templates(self) -> list[StructureTemplate]:
        with self._lock:
            return list(self._structures.values())

    def get_template(self, template_hash: str) -> Optional[StructureTemplate]:
        with self._lock:
            return self._structures.get(template_hash)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def day_first_for(self, entry: LearnedEntry) -> bool:
        """Date order proven by ``entry``'s confirmed message, else the configured one."""
        tpl = self.get_template(entry.template_hash)
        if tpl is not None and tpl.day_first is not None:
            return tpl.day_first
        proven = _proven_day_first(entry.field_token_map.date)
        return self.config.day_first if proven is None else proven

    def amount_for(self, entry: LearnedEntry, message: str) -> Optional[float]:
        """Amount of ``message`` read at the position ``entry`` learned.

        ``None`` when no amount candidate of ``message`` is compatible with
        the stored amount token.
        """
        group = best_aligned_group("amount", entry.field_token_map.amount, entry.raw_message, message)
        if group is None:
            return None
        value = parse_amount(group[0].token)
        return abs(value) if value else None

    # ------------------------------------------------------------------
    # Exact-template lookup
    # ------------------------------------------------------------------

    def _history_bonus(self, entry: LearnedEntry, now: datetime) -> float:
        frequency = min(1.0, entry.confirmation_count / FULL_CREDIT_CONFIRMATIONS)
        age_days = max(0.0, (now - entry.last_confirmed_at).total_seconds() / 86400)
        recency = max(0.0, 1.0 - age_days / RECENCY_HORIZON_DAYS)
        return HISTORY_BONUS * (0.5 * frequency + 0.5 * recency)

    def score_entry(self, entry: LearnedEntry, message: str, sender_hint: Optional[str] = None) -> float:
        """Positional match score of ``entry`` against ``message`` in [0, 1]."""
        norm = normalize_digits(message)
        slot_scores: list[float] = []
        for _, tokens in entry.field_token_map.items():
            if not tokens:
                continue
            found = sum(1 for t in tokens if _found_compatible(message, norm, t))
            slot_scores.append(found / len(tokens))
        if not slot_scores:
            return 0.0
        score = sum(slot_scores) / len(slot_scores)
        if score <= 0:
            return 0.0
        if _same_sender(sender_hint, entry.sender_hint):
            score += SENDER_BONUS
        score += self._history_bonus(entry, self._clock())
        return min(1.0, score)

    def find_best_match(self, message: str, sender_hint: Optional[str] = None) -> MatchResult:
        if not self.config.enabled or not message or not message.strip():
            return MatchResult(entry=None, confidence=0.0, matched=False)

        best: Optional[LearnedEntry] = None
        best_score = 0.0
        for entry in self.entries():
            score = self.score_entry(entry, message, sender_hint)
            if score > best_score or (
                best is not None and score == best_score and score > 0
                and entry.last_confirmed_at > best.last_confirmed_at
            ):
                best, best_score = entry, score

        best_score = round(best_score, 4)
        if best is not None and best_score >= self.config.min_confidence_threshold:
            logger.debug("[STORE] Template match %s (%.2f)", best.id, best_score)
            return MatchResult(entry=best, confidence=best_score, matched=True)
        return MatchResult(entry=None, confidence=best_score, matched=False)

    # ------------------------------------------------------------------
    # Structural lookup
    # ------------------------------------------------------------------

    def match_using_template_structure(
        self,
        message: str,
        sender_hint: Optional[str] = None,
    ) -> Optional[StructureMatch]:
        """Best verified entry sharing ``message``'s structural hash.

        Returns ``None`` when no entry shares the hash or none survives
        verification (the amount role must re-extract at a compatible
        position).  The returned score may still be below the threshold;
        the caller decides.
        """
        if not self.config.enabled or not message or not message.strip():
            return None
        template_hash = compute_template_hash(message)
        candidates = [e for e in self.entries() if e.template_hash == template_hash]
        if not candidates:
            return None

        fresh = {role: extractor(message) for role, extractor in _ROLE_EXTRACTORS.items()}

        best: Optional[StructureMatch] = None
        best_key: tuple = ()
        for entry in candidates:
            roles = entry.field_token_map.filled_slots()
            if not roles:
                continue
            matched_groups: dict[str, list[PositionedToken]] = {}
            for role in roles:
                group = best_aligned_group(
                    role, entry.field_token_map.slot(role), entry.raw_message, message, fresh[role],
                )
                if group is not None:
                    matched_groups[role] = group
            if "amount" in roles and "amount" not in matched_groups:
                logger.debug("[STORE] Hash %s shared but amount position differs", template_hash)
                continue
            if "amount" not in roles:
                if not fresh["amount"]:
                    continue
                matched_groups.setdefault("amount", fresh["amount"][:1])

            score = round(sum(1 for r in roles if r in matched_groups) / len(roles), 4)
            key = (score, _same_sender(sender_hint, entry.sender_hint), entry.last_confirmed_at)
            if best is None or key > best_key:
                best = self._structure_match(message, entry, matched_groups, fresh, score)
                best_key = key

        if best is not None:
            best.template = self.get_template(template_hash)
            logger.debug("[STORE] Structure candidate %s (%.2f)", best.entry.id, best.confidence)
        return best

    def _structure_match(
        self,
        message: str,
        entry: LearnedEntry,
        matched: dict[str, list[PositionedToken]],
        fresh: dict[str, list[PositionedToken]],
        score: float,
    ) -> StructureMatch:
        confirmed = entry.confirmed_fields
        carried_conf = entry.confidence if entry.confidence is not None else score
        values: dict[str, Any] = {
            "type": confirmed.type,
            "category": confirmed.category,
            "subcategory": confirmed.subcategory or "Uncategorized",
            "person": confirmed.person,
        }
        confidences: dict[str, float] = {
            "type": carried_conf,
            "category": carried_conf,
            "subcategory": carried_conf,
        }

        amount_group = matched.get("amount") or []
        amount = parse_amount(amount_group[0].token) if amount_group else None
        values["amount"] = abs(amount) if amount is not None else None
        confidences["amount"] = score if amount is not None else 0.0

        currency = None
        if "currency" in matched:
            currency = resolve_currency(matched["currency"][0].token)
        values["currency"] = currency or confirmed.currency or None
        confidences["currency"] = score if currency else (carried_conf if confirmed.currency else 0.0)

        date_group = matched.get("date") or fresh["date"]
        values["date"] = (
            normalize_date(date_group[0].token, self._clock().date(), self.day_first_for(entry))
            if date_group else None
        )
        confidences["date"] = score if values["date"] else 0.0

        for role, confirmed_value, key in (
            ("vendor", confirmed.vendor or "", "vendor"),
            ("account", confirmed.account or "", "from_account"),
        ):
            stored = entry.field_token_map.slot(role)
            if not stored:
                # the template never located this role: carry the confirmed value
                values[key] = confirmed_value
                confidences[key] = carried_conf if confirmed_value else 0.0
                continue
            group = matched.get(role)
            if not group:
                fallback = fresh[role]
                values[key] = span_text(message, fallback) if fallback else confirmed_value
                confidences[key] = 0.3 if fallback else (carried_conf if confirmed_value else 0.0)
                continue
            fresh_text = span_text(message, group)
            stored_text = span_text(entry.raw_message, stored)
            stored_words = set(tokenize(stored_text))
            if fresh_text.casefold() == stored_text.casefold() or stored_words <= set(tokenize(fresh_text)):
                values[key] = confirmed_value or fresh_text
            else:
                values[key] = fresh_text
            confidences[key] = score

        return StructureMatch(
            entry=entry,
            confidence=score,
            fields=values,
            field_confidences=confidences,
            verified_roles=sorted(matched),
        )

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def derive_field_token_map(self, message: str, confirmed: ConfirmedFields) -> FieldTokenMap:
        """Intersect extractor output with the values the user confirmed."""
        fmap = FieldTokenMap()
        target = abs(confirmed.amount)
        for tok in extract_amount_tokens(message):
            value = parse_amount(tok.token)
            if value is not None and abs(abs(value) - target) <= _AMOUNT_TOLERANCE:
                fmap.amount = [tok]
                break

        if confirmed.currency:
            fmap.currency = [
                t for t in extract_currency_tokens(message)
                if resolve_currency(t.token) == confirmed.currency
            ][:1]

        if confirmed.vendor:
            words = set(tokenize(confirmed.vendor))
            fmap.vendor = [t for t in extract_vendor_tokens(message) if t.token.casefold() in words]
            if not fmap.vendor:
                fmap.vendor = _literal_tokens(message, confirmed.vendor)

        if confirmed.account:
            account_words = set(tokenize(confirmed.account))
            account_digits = re.sub(r"\D", "", normalize_digits(confirmed.account))
            for tok in extract_account_tokens(message):
                digits = re.sub(r"\D", "", normalize_digits(tok.token))
                if tok.token.casefold() in account_words or (
                    digits and account_digits and account_digits.endswith(digits)
                ):
                    fmap.account.append(tok)
            if not fmap.account:
                fmap.account = _literal_tokens(message, confirmed.account)

        fmap.date = extract_date_tokens(message)
        return fmap

    def _event_weight(self, source: ConfirmationSource) -> float:
        if source is ConfirmationSource.USER_EXPLICIT:
            return self.config.user_confirmation_weight
        return _SOURCE_WEIGHT[source]

    def _recompute_confidence(self, entry: LearnedEntry) -> None:
        weight = sum(self._event_weight(e.source) for e in entry.confirmation_history)
        entry.confidence = round(1.0 - 0.5 ** weight, 4)

    def learn_from_transaction(
        self,
        message: str,
        confirmed: Union[ConfirmedFields, dict[str, Any]],
        sender_hint: Optional[str] = "",
        field_token_map: Optional[FieldTokenMap] = None,
        *,
        source: ConfirmationSource = ConfirmationSource.USER_EXPLICIT,
    ) -> Optional[LearnedEntry]:
        """Record a confirmed transaction and return its (new or updated) entry.

        Parameters
        ----------
        message:
            The raw SMS the transaction was derived from.
        confirmed:
            Final field values; ``type`` and ``amount`` are required.  The
            amount is re-signed to match the type.
        sender_hint:
            Sender identifier, used for the match bonus and failure counts.
        field_token_map:
            Explicit token annotations (manual annotation flow).  When
            omitted the map is derived from the extractors.  An explicit map
            for an existing hash supersedes that entry; its confirmation
            history carries over.
        source:
            Who confirmed; weighs the confidence update.

        Returns ``None`` when learning is disabled, or when
        ``validation_required`` is set and the confirmation is automatic.
        Raises ``ValueError`` for an empty message or invalid fields.
        """
        if not message or not message.strip():
            raise ValueError("cannot learn from an empty message")
        fields = confirmed if isinstance(confirmed, ConfirmedFields) else ConfirmedFields.from_dict(confirmed)
        if not self.config.enabled:
            logger.info("[STORE] Learning disabled, ignoring confirmation")
            return None
        if self.config.validation_required and source is ConfirmationSource.AUTO:
            logger.info("[STORE] Automatic confirmation ignored, validation required")
            return None

        amount = signed_amount(fields.type, fields.amount)
        if amount == 0:
            raise ValueError("confirmed amount must be non-zero")
        fields = replace(fields, amount=amount, currency=(fields.currency or "").upper())
        sender = (sender_hint or "").strip()

        template_hash = compute_template_hash(message)
        fmap = field_token_map or self.derive_field_token_map(message, fields)
        now = self._clock()
        event = ConfirmationEvent(timestamp=now, source=source)

        with self._lock:
            existing = next((e for e in self._entries if e.template_hash == template_hash), None)
            if existing is None:
                entry = LearnedEntry(
                    raw_message=message,
                    sender_hint=sender,
                    template_hash=template_hash,
                    structure_signature=template_structure(message),
                    confirmed_fields=fields,
                    field_token_map=fmap,
                    tokens=tokenize(message),
                    timestamp=now,
                    user_confirmed=True,
                    confirmation_history=[event],
                )
                self._entries.append(entry)
                action = "new"
            elif field_token_map is not None:
                entry = LearnedEntry(
                    raw_message=message,
                    sender_hint=sender or existing.sender_hint,
                    template_hash=template_hash,
                    structure_signature=template_structure(message),
                    confirmed_fields=fields,
                    field_token_map=fmap,
                    tokens=tokenize(message),
                    timestamp=now,
                    user_confirmed=True,
                    confirmation_history=list(existing.confirmation_history) + [event],
                )
                self._entries[self._entries.index(existing)] = entry
                action = "superseded"
            else:
                entry = existing
                entry.confirmation_history.append(event)
                action = "confirmed"
            self._recompute_confidence(entry)
            event.confidence = entry.confidence
            self._upsert_structure(entry, now)
            evicted = self._evict()

        if self.failure_tracker is not None:
            self.failure_tracker.reset(template_hash, sender)
        if self.rule_bank is not None:
            self.rule_bank.learn(fields, sender)
        if self.config.save_automatically:
            self.save()

        logger.info(
            "[STORE] Learned %s entry %s (hash=%s, confirmations=%d, confidence=%.2f, evicted=%d)",
            action, entry.id, template_hash, entry.confirmation_count, entry.confidence or 0.0, evicted,
        )
        return entry

    def _upsert_structure(self, entry: LearnedEntry, now: datetime) -> None:
        defaults = {
            key: value for key, value in entry.confirmed_fields.to_dict().items()
            if key in _DEFAULT_KEYS and value not in (None, "")
        }
        current = self._structures.get(entry.template_hash)
        fields = entry.field_token_map.filled_slots()
        day_first = _proven_day_first(entry.field_token_map.date)
        if current is None:
            self._structures[entry.template_hash] = StructureTemplate(
                hash=entry.template_hash,
                structure=entry.structure_signature or template_structure(entry.raw_message),
                fields=fields,
                default_values=defaults,
                created_at=now,
                day_first=day_first,
            )
            return
        current.fields = [f for f in FIELD_SLOTS if f in current.fields or f in fields]
        current.default_values.update(defaults)
        if day_first is not None:
            current.day_first = day_first

    def _evict(self) -> int:
        """Drop least-recently-confirmed entries above ``max_entries``."""
        evicted = 0
        while len(self._entries) > self.config.max_entries:
            oldest = min(self._entries, key=lambda e: (e.last_confirmed_at, e.timestamp))
            self._entries.remove(oldest)
            evicted += 1
            logger.info("[STORE] Evicted entry %s (last confirmed %s)", oldest.id, oldest.last_confirmed_at)
            if not any(e.template_hash == oldest.template_hash for e in self._entries):
                self._structures.pop(oldest.template_hash, None)
        return evicted

    def clear_learned_entries(self) -> None:
        """Irreversibly wipe every learned entry and structure template."""
        with self._lock:
            count = len(self._entries)
            self._entries = []
            self._structures = {}
            self.adapter.delete(ENTRIES_KEY)
            self.adapter.delete(STRUCTURES_KEY)
        logger.warning("[STORE] Cleared %d learned entries", count)
