"""Manual-annotation loop for drafts the engine cannot vouch for.

When the cascade sets ``should_train`` (fallback stage, low confidence, or a
template that keeps getting rejected), the UI asks a human to annotate the
message.  :func:`build_annotation_request` produces what that screen shows;
:func:`resolve_annotation` feeds the human's answer back into the store as a
``user-explicit`` confirmation.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..models import CascadeResult, ConfirmationSource, FieldTokenMap, LearnedEntry, Origin, TransactionDraft
from .failure_tracker import FailureTracker
from .template_store import LearnedTemplateStore

logger = logging.getLogger(__name__)

RESPONSES = ("confirmed", "corrected", "skipped")


def build_annotation_request(
    result: CascadeResult,
    message: str,
    sender_hint: Optional[str] = None,
    *,
    failure_tracker: Optional[FailureTracker] = None,
) -> dict[str, Any]:
    """Describe a cascade result for the annotation screen.

    Returns a dict with ``raw_text``, ``sender_hint``, ``template_hash``,
    ``our_interpretation``, ``draft``, ``confidence``, ``origin``,
    ``reason``, ``question`` and ``rejections``.
    """
    draft = result.draft
    rejections = failure_tracker.count(result.template_hash, sender_hint) if failure_tracker else 0
    return {
        "raw_text": message,
        "sender_hint": sender_hint or "",
        "template_hash": result.template_hash,
        "our_interpretation": _describe_interpretation(draft),
        "draft": draft.to_dict() if draft else None,
        "confidence": result.confidence,
        "origin": result.origin.value if result.origin else None,
        "reason": _reason(result, rejections, failure_tracker),
        "question": _build_question(draft),
        "rejections": rejections,
    }


def resolve_annotation(
    store: LearnedTemplateStore,
    request: dict[str, Any],
    response: str,
    correction: Optional[dict[str, Any]] = None,
    *,
    field_token_map: Optional[FieldTokenMap] = None,
) -> Optional[LearnedEntry]:
    """Apply the human's answer to an annotation request.

    Parameters
    ----------
    store:
        Template store to learn into.
    request:
        Dict from :func:`build_annotation_request`.
    response:
        One of ``"confirmed"``, ``"corrected"``, ``"skipped"``.
    correction:
        For ``"corrected"``, the fields the user entered (``type`` and
        ``amount`` at least).
    field_token_map:
        Tokens the user highlighted for each field, if the annotation
        screen collected them.

    Returns the learned entry, or ``None`` when skipped.
    """
    if response not in RESPONSES:
        raise ValueError(f"response must be one of {RESPONSES}, got {response!r}")
    if response == "skipped":
        logger.info("[FEEDBACK] Annotation skipped for %s", request.get("template_hash"))
        return None

    if response == "corrected":
        if not correction:
            raise ValueError("a corrected annotation needs the corrected fields")
        fields = correction
    else:
        draft = request.get("draft")
        if not draft:
            raise ValueError("nothing to confirm: the request carries no draft")
        fields = {
            "type": draft["type"],
            "amount": draft["amount"],
            "category": draft.get("category"),
            "subcategory": draft.get("subcategory"),
            "account": draft.get("fromAccount"),
            "currency": draft.get("currency"),
            "vendor": draft.get("vendor") or None,
            "person": draft.get("person"),
        }

    entry = store.learn_from_transaction(
        request["raw_text"],
        fields,
        request.get("sender_hint") or "",
        field_token_map,
        source=ConfirmationSource.USER_EXPLICIT,
    )
    logger.info("[FEEDBACK] Resolved annotation (%s) for %s", response, request.get("template_hash"))
    return entry


# ---------------------------------------------------------------------------
# Human-readable description builders
# ---------------------------------------------------------------------------


def _describe_interpretation(draft: Optional[TransactionDraft]) -> str:
    if draft is None:
        return "No transaction found"
    parts = [f"{draft.type.value.title()} of {abs(draft.amount):,.2f} {draft.currency}"]
    if draft.vendor:
        parts.append(f"at {draft.vendor}")
    if draft.date:
        parts.append(f"on {draft.date}")
    return " ".join(parts)


def _reason(result: CascadeResult, rejections: int, tracker: Optional[FailureTracker]) -> str:
    if tracker is not None and rejections >= tracker.threshold:
        return "template_rejected"
    if result.origin is Origin.FALLBACK:
        return "fallback"
    if result.draft is None:
        return "no_match"
    return "low_confidence"


def _build_question(draft: Optional[TransactionDraft]) -> str:
    if draft is None:
        return "Which part of this message is the amount?"
    if not draft.vendor:
        return "Who was this transaction with?"
    if draft.origin is Origin.FALLBACK:
        return f"Is this {draft.type.value} of {abs(draft.amount):,.2f} {draft.currency} correct?"
    return "Does this transaction look correct?"
