"""Category rule bank: indirect fields for drafts no template explains.

When a message resolves at the statistical or heuristic stage nothing
learned says what the money was for.  This bank fills the gaps from three
kinds of rule, in order:

1. Keyword rules: a whole word in the message maps to field values
   (optionally only for one sender).
2. Vendor rules: a known merchant, matched fuzzily, maps to
   type/category/subcategory.  Only applied when the type agrees.
3. Sender rules: everything from this sender lands in one category.

Income that is still uncategorised after that gets Earnings > Benefits.

Vendor and sender rules are learned from every confirmed transaction;
keyword rules are added explicitly.

Storage key: ``smartpaste.category_rules``
"""

from __future__ import annotations

import logging
import re
import threading
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from rapidfuzz import fuzz

from ..extraction.fields import extract_vendor_tokens, span_text
from ..models import ConfirmedFields, TransactionType, parse_timestamp, utcnow
from ..storage import envelope

logger = logging.getLogger(__name__)

RULES_KEY = "smartpaste.category_rules"

# fuzz.ratio score (0-100) a vendor name needs to reuse a vendor rule
VENDOR_MATCH_CUTOFF = 70

INCOME_DEFAULT_CATEGORY = "Earnings"
INCOME_DEFAULT_SUBCATEGORY = "Benefits"

RULE_FIELDS = ("type", "category", "subcategory", "from_account", "vendor")

_UNSET = ("", "Uncategorized")
_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")


def normalize_name(text: str) -> str:
    """NFC, zero-width characters removed, case-folded and trimmed."""
    return _ZERO_WIDTH_RE.sub("", unicodedata.normalize("NFC", text or "")).casefold().strip()


def _contains_word(text: str, phrase: str) -> bool:
    words = phrase.split()
    if not words:
        return False
    pattern = r"(?<![^\W_])" + r"\s+".join(re.escape(w) for w in words) + r"(?![^\W_])"
    return re.search(pattern, text) is not None


def _is_set(value: Optional[str]) -> bool:
    return bool(value) and value not in _UNSET


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass
class KeywordRule:
    keyword: str
    mappings: dict[str, str]
    mapping_count: int = 0
    last_updated: Optional[datetime] = None
    sender_context: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "keyword": self.keyword,
            "mappings": [{"field": k, "value": v} for k, v in self.mappings.items()],
            "mappingCount": self.mapping_count,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }
        if self.sender_context:
            data["senderContext"] = self.sender_context
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeywordRule":
        mappings = {
            _field_name(str(m["field"])): str(m["value"])
            for m in data.get("mappings") or []
            if m.get("value")
        }
        return cls(
            keyword=str(data["keyword"]),
            mappings=mappings,
            mapping_count=int(data.get("mappingCount") or 0),
            last_updated=parse_timestamp(data["lastUpdated"]) if data.get("lastUpdated") else None,
            sender_context=data.get("senderContext") or None,
        )


@dataclass
class VendorRule:
    type: TransactionType
    category: str
    subcategory: str = ""
    user: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "category": self.category,
            "subcategory": self.subcategory,
        }
        if self.user:
            data["user"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VendorRule":
        return cls(
            type=TransactionType(str(data["type"]).lower()),
            category=str(data["category"]),
            subcategory=str(data.get("subcategory") or ""),
            user=bool(data.get("user", False)),
        )


@dataclass
class SenderRule:
    category: str
    subcategory: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "subcategory": self.subcategory}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SenderRule":
        return cls(category=str(data["category"]), subcategory=str(data.get("subcategory") or ""))


def _field_name(name: str) -> str:
    # the mobile client stores camelCase field names
    return "from_account" if name == "fromAccount" else name


@dataclass
class _Rules:
    keywords: list[KeywordRule] = field(default_factory=list)
    vendors: dict[str, VendorRule] = field(default_factory=dict)
    senders: dict[str, SenderRule] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Bank
# ---------------------------------------------------------------------------


class CategoryRuleBank:
    """Keyword, vendor and sender rules persisted through a key-value adapter.

    Usage::

        rules = CategoryRuleBank(InMemoryAdapter())
        rules.add_vendor("Jarir", "expense", "Shopping", "Books")
        rules.infer("Purchase SAR 80 at Jarir Bookstore", {"type": "expense"})
        # {"category": "Shopping", "subcategory": "Books"}
    """

    def __init__(
        self,
        adapter: Any,
        *,
        autosave: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._adapter = adapter
        self.autosave = autosave
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._rules = _Rules()
        self.reload()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def reload(self) -> None:
        try:
            _, payload = envelope.unwrap(self._adapter.get(RULES_KEY))
        except ValueError:
            logger.warning("[RULES] Stored rules unreadable, starting empty", exc_info=True)
            payload = None
        payload = payload if isinstance(payload, dict) else {}

        rules = _Rules()
        for item in payload.get("keywords") or []:
            try:
                rules.keywords.append(KeywordRule.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("[RULES] Skipping corrupt keyword rule: %r", item)
        for name, item in (payload.get("vendors") or {}).items():
            try:
                rules.vendors[name] = VendorRule.from_dict(item)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("[RULES] Skipping corrupt vendor rule for %r", name)
        for sender, item in (payload.get("senders") or {}).items():
            try:
                rules.senders[sender] = SenderRule.from_dict(item)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("[RULES] Skipping corrupt sender rule for %r", sender)
        with self._lock:
            self._rules = rules

    def save(self) -> None:
        with self._lock:
            payload = {
                "keywords": [r.to_dict() for r in self._rules.keywords],
                "vendors": {name: r.to_dict() for name, r in self._rules.vendors.items()},
                "senders": {name: r.to_dict() for name, r in self._rules.senders.items()},
            }
        self._adapter.set(RULES_KEY, envelope.wrap(payload, now=self._clock()))

    def clear(self) -> None:
        with self._lock:
            self._rules = _Rules()
        self._adapter.delete(RULES_KEY)
        logger.info("[RULES] Cleared category rules")

    def _changed(self) -> None:
        if self.autosave:
            self.save()

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def add_keyword(
        self,
        keyword: str,
        mappings: dict[str, str],
        *,
        sender_context: Optional[str] = None,
    ) -> KeywordRule:
        """Add or extend the rule for ``keyword``; later mappings win per field."""
        keyword = keyword.strip()
        if not keyword:
            raise ValueError("keyword must be non-empty")
        cleaned = {_field_name(k): str(v).strip() for k, v in mappings.items() if v and str(v).strip()}
        unknown = set(cleaned) - set(RULE_FIELDS)
        if unknown:
            raise ValueError(f"unknown rule fields: {sorted(unknown)}")

        with self._lock:
            rule = next(
                (r for r in self._rules.keywords
                 if r.keyword.casefold() == keyword.casefold() and r.sender_context == sender_context),
                None,
            )
            if rule is None:
                rule = KeywordRule(keyword=keyword, mappings={}, sender_context=sender_context)
                self._rules.keywords.append(rule)
            rule.mappings.update(cleaned)
            rule.mapping_count += 1
            rule.last_updated = self._clock()
        self._changed()
        return rule

    def delete_keyword(self, keyword: str) -> bool:
        with self._lock:
            before = len(self._rules.keywords)
            self._rules.keywords = [
                r for r in self._rules.keywords if r.keyword.casefold() != keyword.strip().casefold()
            ]
            removed = len(self._rules.keywords) != before
        if removed:
            self._changed()
        return removed

    def add_vendor(
        self,
        name: str,
        txn_type: Any,
        category: str,
        subcategory: str = "",
        *,
        user: bool = True,
        overwrite: bool = False,
    ) -> bool:
        """Map a vendor name to a category; returns ``False`` when nothing changed."""
        name = name.strip()
        if not name or not _is_set(category):
            return False
        rule = VendorRule(
            type=TransactionType(str(getattr(txn_type, "value", txn_type)).lower()),
            category=category,
            subcategory=subcategory or "",
            user=user,
        )
        with self._lock:
            existing = self._find_vendor_key(name)
            if existing is not None and not overwrite:
                return False
            if existing is not None and existing != name:
                del self._rules.vendors[existing]
            self._rules.vendors[name] = rule
        self._changed()
        return True

    def learn(self, confirmed: ConfirmedFields, sender_hint: Optional[str] = None) -> None:
        """Record vendor and sender rules from a confirmed transaction."""
        if not _is_set(confirmed.category):
            return
        subcategory = confirmed.subcategory if _is_set(confirmed.subcategory) else ""
        changed = False
        with self._lock:
            if confirmed.vendor and confirmed.vendor.strip():
                name = confirmed.vendor.strip()
                existing = self._find_vendor_key(name)
                if existing is not None and existing != name:
                    del self._rules.vendors[existing]
                self._rules.vendors[name] = VendorRule(
                    type=confirmed.type,
                    category=confirmed.category,
                    subcategory=subcategory,
                    user=True,
                )
                changed = True
            sender = normalize_name(sender_hint or "")
            if sender:
                self._rules.senders[sender] = SenderRule(confirmed.category, subcategory)
                changed = True
        if changed:
            logger.debug("[RULES] Learned %s > %s", confirmed.category, subcategory or "-")
            self._changed()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _find_vendor_key(self, name: str) -> Optional[str]:
        target = normalize_name(name)
        for key in self._rules.vendors:
            if normalize_name(key) == target:
                return key
        return None

    def keyword_rules(self) -> list[KeywordRule]:
        with self._lock:
            return list(self._rules.keywords)

    def vendor_rules(self) -> dict[str, VendorRule]:
        with self._lock:
            return dict(self._rules.vendors)

    def sender_rule(self, sender_hint: Optional[str]) -> Optional[SenderRule]:
        with self._lock:
            return self._rules.senders.get(normalize_name(sender_hint or ""))

    def match_vendor(self, vendor: str) -> Optional[tuple[str, VendorRule]]:
        """Closest vendor rule for ``vendor``: fuzzy first, then substring."""
        text = normalize_name(vendor)
        if not text:
            return None
        vendors = self.vendor_rules()
        best: Optional[str] = None
        best_score = 0.0
        for name in vendors:
            score = fuzz.ratio(text, normalize_name(name))
            if score >= VENDOR_MATCH_CUTOFF and score > best_score:
                best, best_score = name, score
        if best is None:
            for name in vendors:
                key = normalize_name(name)
                if key and _contains_word(text, key):
                    best = name
                    break
        if best is None:
            return None
        logger.debug("[RULES] Vendor %r matched rule %r (%.0f)", vendor, best, best_score)
        return best, vendors[best]

    def infer(
        self,
        message: str,
        knowns: Optional[dict[str, Any]] = None,
        sender_hint: Optional[str] = None,
    ) -> dict[str, str]:
        """Values for the indirect fields ``knowns`` leaves empty.

        Parameters
        ----------
        message:
            Raw SMS text.
        knowns:
            Field values already settled by the caller (``type``, ``vendor``,
            ``from_account``, ...).  These are never overridden.
        sender_hint:
            Sender identifier, for sender-scoped keyword rules and sender
            rules.

        Returns only the fields it could infer, as strings.
        """
        settled: dict[str, str] = {}
        for key, value in (knowns or {}).items():
            # enums (TransactionType) compare by value
            text = str(getattr(value, "value", value) or "")
            if _is_set(text):
                settled[key] = text
        knowns = settled
        sender = normalize_name(sender_hint or "")
        text = normalize_name(f"{message or ''} {knowns.get('vendor', '')}")
        inferred: dict[str, str] = {}

        rules = sorted(self.keyword_rules(), key=lambda r: r.mapping_count, reverse=True)
        for rule in rules:
            if rule.sender_context and normalize_name(rule.sender_context) != sender:
                continue
            if not _contains_word(text, normalize_name(rule.keyword)):
                continue
            for name, value in rule.mappings.items():
                if name not in knowns and name not in inferred:
                    inferred[name] = value

        def missing(name: str) -> bool:
            return name not in knowns and name not in inferred

        txn_type = inferred.get("type") or knowns.get("type")
        if missing("category") or missing("subcategory"):
            vendor = knowns.get("vendor") or inferred.get("vendor") or span_text(
                message, extract_vendor_tokens(message),
            )
            found = self.match_vendor(vendor) if vendor else None
            if found is not None:
                _, rule = found
                if not txn_type or rule.type.value == txn_type:
                    if missing("category"):
                        inferred["category"] = rule.category
                    if missing("subcategory") and rule.subcategory:
                        inferred["subcategory"] = rule.subcategory

        if missing("category"):
            sender_rule = self.sender_rule(sender)
            if sender_rule is not None:
                inferred["category"] = sender_rule.category
                if missing("subcategory") and sender_rule.subcategory:
                    inferred["subcategory"] = sender_rule.subcategory

        if txn_type == TransactionType.INCOME.value and missing("category") and missing("subcategory"):
            inferred["category"] = INCOME_DEFAULT_CATEGORY
            inferred["subcategory"] = INCOME_DEFAULT_SUBCATEGORY

        if inferred:
            logger.debug("[RULES] Inferred %s", sorted(inferred))
        return inferred
