"""Template health scoring.

Assigns a 0–100 score and a lifecycle status to each structural template
based on its usage ledger:

- candidate   fewer than 3 recorded uses, not enough data to judge
- learning    success rate >= 50, or not yet used 5 times
- ready       success rate >= 80 over at least 5 uses; safe to auto-apply
- deprecated  success rate < 50; the template should be retrained

A failure reported in the last 7 days costs up to 10 points, fading
linearly with age.

This module does NOT read storage itself; callers pass in the
:class:`~smartpaste.parsing.usage.TemplateUsage` records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from ..models import utcnow
from .usage import TemplateUsage

READY_SCORE = 80.0
LEARNING_SCORE = 50.0
MIN_USAGE_FOR_READY = 5
MIN_USAGE_FOR_EVALUATION = 3
RECENT_FAILURE_DAYS = 7
MAX_RECENCY_PENALTY = 10.0


class TemplateStatus(str, Enum):
    CANDIDATE = "candidate"
    LEARNING = "learning"
    READY = "ready"
    DEPRECATED = "deprecated"


@dataclass(frozen=True)
class TemplateHealth:
    score: float
    status: TemplateStatus
    recommendation: str


def compute_template_confidence(
    usage: Optional[TemplateUsage],
    *,
    now: Optional[datetime] = None,
) -> TemplateHealth:
    """Score a template from its usage record.

    Parameters
    ----------
    usage:
        Ledger record for the template hash, or ``None`` if the cascade has
        never seen it.
    now:
        Reference time for the recent-failure penalty.

    Returns
    -------
    TemplateHealth
        ``score`` in [0, 100], ``status`` and a short recommendation.
    """
    if usage is None:
        return TemplateHealth(0.0, TemplateStatus.CANDIDATE, "New template, needs usage data")

    uses = usage.usage_count
    if uses < MIN_USAGE_FOR_EVALUATION:
        return TemplateHealth(
            50.0,
            TemplateStatus.CANDIDATE,
            f"Needs {MIN_USAGE_FOR_EVALUATION - uses} more uses to evaluate",
        )

    total = usage.success_count + usage.fallback_count
    success_rate = usage.success_count / total * 100 if total else 50.0
    score = max(0.0, min(100.0, success_rate - _recency_penalty(usage, now or utcnow())))

    if score >= READY_SCORE and uses >= MIN_USAGE_FOR_READY:
        return TemplateHealth(score, TemplateStatus.READY, "Template is reliable and ready for auto-apply")
    if score >= LEARNING_SCORE:
        return TemplateHealth(score, TemplateStatus.LEARNING, "Template needs more successful uses or manual review")
    return TemplateHealth(score, TemplateStatus.DEPRECATED, "Template has too many failures, consider retraining")


def _recency_penalty(usage: TemplateUsage, now: datetime) -> float:
    if usage.last_failure_at is None:
        return 0.0
    days = (now - usage.last_failure_at).total_seconds() / 86400
    if days >= RECENT_FAILURE_DAYS:
        return 0.0
    return max(0.0, MAX_RECENCY_PENALTY - days)


def should_auto_apply(usage: Optional[TemplateUsage], *, now: Optional[datetime] = None) -> bool:
    health = compute_template_confidence(usage, now=now)
    return health.status is TemplateStatus.READY and health.score >= READY_SCORE


def get_stale_templates(
    template_hashes: Iterable[str],
    usage: dict[str, TemplateUsage],
    days: int = 90,
    *,
    now: Optional[datetime] = None,
) -> list[str]:
    """Hashes not used within ``days``; a template never used is stale."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    stale: list[str] = []
    for template_hash in template_hashes:
        record = usage.get(template_hash)
        if record is None or record.last_used_at is None or record.last_used_at < cutoff:
            stale.append(template_hash)
    return stale
