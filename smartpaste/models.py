"""Records shared by the extractors, the template store and the cascade.

On-disk keys are camelCase so stores written by the mobile client load
unchanged; attribute names are snake_case.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Origin(str, Enum):
    """Which cascade stage produced a draft."""

    TEMPLATE = "template"
    STRUCTURE = "structure"
    ML = "ml"
    FALLBACK = "fallback"


class TransactionType(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"


class ConfirmationSource(str, Enum):
    AUTO = "auto"
    USER_EXPLICIT = "user-explicit"
    SYSTEM = "system"
    SYSTEM_MIGRATION = "system-migration"


class ParseStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


FIELD_SLOTS = ("amount", "currency", "vendor", "account", "date", "type", "title")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        # epoch milliseconds from the mobile client
        ts = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _iso(ts: datetime) -> str:
    return ts.isoformat()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass
class PositionedToken:
    """A literal substring of a message plus its neighbouring tokens."""

    token: str
    position: int
    context_before: list[str] = field(default_factory=list)
    context_after: list[str] = field(default_factory=list)

    @property
    def end(self) -> int:
        return self.position + len(self.token)

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "position": self.position,
            "contextBefore": list(self.context_before),
            "contextAfter": list(self.context_after),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PositionedToken":
        if isinstance(data, str):
            # legacy maps stored bare token strings
            return cls(token=data, position=-1)
        return cls(
            token=str(data["token"]),
            position=int(data.get("position", -1)),
            context_before=[str(t) for t in data.get("contextBefore") or []],
            context_after=[str(t) for t in data.get("contextAfter") or []],
        )


@dataclass
class FieldTokenMap:
    """Which tokens of a confirmed message carried which field."""

    amount: list[PositionedToken] = field(default_factory=list)
    currency: list[PositionedToken] = field(default_factory=list)
    vendor: list[PositionedToken] = field(default_factory=list)
    account: list[PositionedToken] = field(default_factory=list)
    date: list[PositionedToken] = field(default_factory=list)
    type: list[PositionedToken] = field(default_factory=list)
    title: list[PositionedToken] = field(default_factory=list)

    def slot(self, name: str) -> list[PositionedToken]:
        if name not in FIELD_SLOTS:
            raise KeyError(name)
        return getattr(self, name)

    def items(self) -> list[tuple[str, list[PositionedToken]]]:
        return [(name, getattr(self, name)) for name in FIELD_SLOTS]

    def filled_slots(self) -> list[str]:
        return [name for name, tokens in self.items() if tokens]

    def is_empty(self) -> bool:
        return not self.filled_slots()

    def to_dict(self) -> dict[str, Any]:
        return {name: [t.to_dict() for t in tokens] for name, tokens in self.items()}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "FieldTokenMap":
        data = data or {}
        return cls(**{
            name: [PositionedToken.from_dict(t) for t in data.get(name) or []]
            for name in FIELD_SLOTS
        })


# ---------------------------------------------------------------------------
# Learned entries
# ---------------------------------------------------------------------------


@dataclass
class ConfirmedFields:
    type: TransactionType
    amount: float
    category: str = "Uncategorized"
    subcategory: Optional[str] = None
    account: str = ""
    currency: str = ""
    person: Optional[str] = None
    vendor: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "amount": self.amount,
            "category": self.category,
            "account": self.account,
            "currency": self.currency,
        }
        for key in ("subcategory", "person", "vendor"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfirmedFields":
        if data.get("type") in (None, "") or data.get("amount") in (None, ""):
            raise ValueError("confirmed fields need both type and amount")
        return cls(
            type=TransactionType(str(data["type"]).lower()),
            amount=float(data["amount"]),
            category=data.get("category") or "Uncategorized",
            subcategory=data.get("subcategory"),
            account=data.get("account") or data.get("fromAccount") or "",
            currency=(data.get("currency") or "").upper(),
            person=data.get("person"),
            vendor=data.get("vendor"),
        )


@dataclass
class ConfirmationEvent:
    timestamp: datetime
    source: ConfirmationSource
    confidence: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": _iso(self.timestamp), "source": self.source.value}
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfirmationEvent":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            source=ConfirmationSource(data.get("source", "auto")),
            confidence=data.get("confidence"),
        )


@dataclass
class LearnedEntry:
    raw_message: str
    sender_hint: str
    template_hash: str
    confirmed_fields: ConfirmedFields
    field_token_map: FieldTokenMap
    tokens: list[str] = field(default_factory=list)
    structure_signature: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    confidence: Optional[float] = None
    user_confirmed: bool = True
    confirmation_history: list[ConfirmationEvent] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def last_confirmed_at(self) -> datetime:
        if self.confirmation_history:
            return max(e.timestamp for e in self.confirmation_history)
        return self.timestamp

    @property
    def confirmation_count(self) -> int:
        return len(self.confirmation_history)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "rawMessage": self.raw_message,
            "senderHint": self.sender_hint,
            "templateHash": self.template_hash,
            "confirmedFields": self.confirmed_fields.to_dict(),
            "tokens": list(self.tokens),
            "fieldTokenMap": self.field_token_map.to_dict(),
            "timestamp": _iso(self.timestamp),
            "userConfirmed": self.user_confirmed,
            "confirmationHistory": [e.to_dict() for e in self.confirmation_history],
        }
        if self.structure_signature is not None:
            data["structureSignature"] = self.structure_signature
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LearnedEntry":
        """Rebuild an entry; raises ``KeyError``/``ValueError`` on bad data."""
        entry = cls(
            id=str(data["id"]),
            raw_message=str(data["rawMessage"]),
            sender_hint=str(data.get("senderHint") or ""),
            template_hash=str(data["templateHash"]),
            structure_signature=data.get("structureSignature"),
            confirmed_fields=ConfirmedFields.from_dict(data["confirmedFields"]),
            tokens=[str(t) for t in data.get("tokens") or []],
            field_token_map=FieldTokenMap.from_dict(data.get("fieldTokenMap")),
            timestamp=parse_timestamp(data["timestamp"]),
            confidence=data.get("confidence"),
            user_confirmed=bool(data.get("userConfirmed", True)),
            confirmation_history=[
                ConfirmationEvent.from_dict(e) for e in data.get("confirmationHistory") or []
            ],
        )
        if entry.user_confirmed and not sign_matches(entry.confirmed_fields.type, entry.confirmed_fields.amount):
            raise ValueError(f"entry {entry.id} amount sign does not match type")
        return entry


@dataclass
class StructureTemplate:
    hash: str
    structure: str
    fields: list[str] = field(default_factory=list)
    default_values: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    # day/month order proven by a confirmed date; None until one is unambiguous
    day_first: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hash": self.hash,
            "structure": self.structure,
            "fields": list(self.fields),
            "defaultValues": dict(self.default_values),
            "createdAt": _iso(self.created_at),
        }
        if self.day_first is not None:
            data["dayFirst"] = self.day_first
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StructureTemplate":
        day_first = data.get("dayFirst")
        return cls(
            hash=str(data["hash"]),
            structure=str(data["structure"]),
            fields=[str(f) for f in data.get("fields") or []],
            default_values=dict(data.get("defaultValues") or {}),
            created_at=parse_timestamp(data["createdAt"]),
            day_first=bool(day_first) if day_first is not None else None,
        )


# ---------------------------------------------------------------------------
# Cascade output
# ---------------------------------------------------------------------------


@dataclass
class TransactionDraft:
    amount: float
    currency: str
    type: TransactionType
    date: str
    origin: Origin
    vendor: str = ""
    title: str = ""
    from_account: str = ""
    category: str = "Uncategorized"
    subcategory: str = "Uncategorized"
    person: Optional[str] = None
    source: str = "derived"
    field_confidences: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "type": self.type.value,
            "date": self.date,
            "vendor": self.vendor,
            "title": self.title,
            "fromAccount": self.from_account,
            "category": self.category,
            "subcategory": self.subcategory,
            "person": self.person,
            "source": self.source,
            "origin": self.origin.value,
            "fieldConfidences": dict(self.field_confidences),
        }


@dataclass
class MatchResult:
    entry: Optional[LearnedEntry] = None
    confidence: float = 0.0
    matched: bool = False
    should_train: Optional[bool] = None
    fallback_template: Optional[StructureTemplate] = None


@dataclass
class CascadeResult:
    match: MatchResult
    draft: Optional[TransactionDraft] = None
    origin: Optional[Origin] = None
    template_hash: str = ""
    status: ParseStatus = ParseStatus.FAILED

    @property
    def confidence(self) -> float:
        return self.match.confidence

    @property
    def should_train(self) -> bool:
        return bool(self.match.should_train)

    @property
    def field_confidences(self) -> dict[str, float]:
        return self.draft.field_confidences if self.draft else {}


# ---------------------------------------------------------------------------
# Sign rules
# ---------------------------------------------------------------------------


def sign_matches(txn_type: TransactionType, amount: float) -> bool:
    if txn_type is TransactionType.EXPENSE:
        return amount < 0
    if txn_type is TransactionType.INCOME:
        return amount > 0
    return True


def signed_amount(txn_type: TransactionType, amount: float) -> float:
    """Expense amounts are negative, income positive; transfers keep their sign."""
    if txn_type is TransactionType.EXPENSE:
        return -abs(amount)
    if txn_type is TransactionType.INCOME:
        return abs(amount)
    return amount
