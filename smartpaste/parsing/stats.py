"""Read-only reporting over the learned templates and the usage ledger.

Recomputed from scratch on every call (O(entries x fields)); nothing is
cached between calls.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import pandas as pd

from ..config import LearningConfig
from ..models import FIELD_SLOTS, utcnow
from .template_health import TemplateStatus, compute_template_confidence, get_stale_templates
from .template_store import LearnedTemplateStore
from .usage import TemplateUsageLog

logger = logging.getLogger(__name__)

WINDOWS = {"7d": 7, "30d": 30, "90d": 90}
MOST_USED_LIMIT = 10
TOP_FIELDS_LIMIT = 20


@dataclass
class FieldStat:
    coverage: float
    avg_usage: float


@dataclass
class TemplateStats:
    window_days: Optional[float]
    total_templates: int = 0
    ready_templates: int = 0
    stale_templates: int = 0
    total_success: int = 0
    total_fallback: int = 0
    efficiency: float = 100.0
    learning_coverage: float = 0.0
    average_fields: float = 0.0
    average_usage: float = 0.0
    field_stats: dict[str, FieldStat] = field(default_factory=dict)
    top_fields: list[tuple[str, int]] = field(default_factory=list)
    most_used: list[dict[str, Any]] = field(default_factory=list)
    newest_created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["newest_created_at"] = self.newest_created_at.isoformat() if self.newest_created_at else None
        return data


def _window_days(window: Union[str, timedelta, None]) -> Optional[float]:
    if window is None:
        return None
    if isinstance(window, timedelta):
        return window.total_seconds() / 86400
    if window not in WINDOWS:
        raise ValueError(f"window must be one of {sorted(WINDOWS)} or a timedelta, got {window!r}")
    return float(WINDOWS[window])


class StatsAggregator:
    def __init__(
        self,
        store: LearnedTemplateStore,
        usage_log: Optional[TemplateUsageLog] = None,
        config: Optional[LearningConfig] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.usage_log = usage_log
        self.config = config or store.config
        self._clock = clock or utcnow

    def _entries_frame(self) -> pd.DataFrame:
        usage = {u.template_hash: u for u in self.usage_log.all()} if self.usage_log else {}
        rows: list[dict[str, Any]] = []
        for entry in self.store.entries():
            record = usage.get(entry.template_hash)
            row: dict[str, Any] = {
                "template_hash": entry.template_hash,
                "entry_id": entry.id,
                "vendor": entry.confirmed_fields.vendor or "",
                "created_at": entry.timestamp,
                "last_confirmed_at": entry.last_confirmed_at,
                "confirmations": entry.confirmation_count,
                "usage_count": record.usage_count if record else 0,
                "success_count": record.success_count if record else 0,
                "last_used_at": record.last_used_at if record else None,
            }
            for slot, tokens in entry.field_token_map.items():
                row[f"has_{slot}"] = bool(tokens)
            rows.append(row)
        columns = [
            "template_hash", "entry_id", "vendor", "created_at", "last_confirmed_at",
            "confirmations", "usage_count", "success_count", "last_used_at",
        ] + [f"has_{slot}" for slot in FIELD_SLOTS]
        df = pd.DataFrame(rows, columns=columns)
        for col in ("created_at", "last_confirmed_at", "last_used_at"):
            df[col] = pd.to_datetime(df[col], utc=True)
        return df

    def _usage_frame(self) -> pd.DataFrame:
        records = self.usage_log.all() if self.usage_log else []
        df = pd.DataFrame(
            [
                {
                    "template_hash": u.template_hash,
                    "usage_count": u.usage_count,
                    "success_count": u.success_count,
                    "fallback_count": u.fallback_count,
                    "last_used_at": u.last_used_at,
                }
                for u in records
            ],
            columns=["template_hash", "usage_count", "success_count", "fallback_count", "last_used_at"],
        )
        df["last_used_at"] = pd.to_datetime(df["last_used_at"], utc=True)
        return df

    def compute(self, window: Union[str, timedelta, None] = "30d") -> TemplateStats:
        """Aggregate stats for templates active within ``window``.

        Parameters
        ----------
        window:
            ``"7d"``, ``"30d"``, ``"90d"``, a ``timedelta``, or ``None``
            for all time.  A template is in the window when it was
            confirmed or used inside it; if nothing is, all templates are
            reported.

        Returns
        -------
        TemplateStats
        """
        days = _window_days(window)
        now = self._clock()
        entries = self._entries_frame()
        usage = self._usage_frame()

        if days is not None:
            cutoff = pd.Timestamp(now - timedelta(days=days))
            in_window = (entries["last_confirmed_at"] >= cutoff) | (entries["last_used_at"] >= cutoff)
            if in_window.any():
                entries = entries[in_window]
            usage = usage[usage["last_used_at"] >= cutoff]

        stats = TemplateStats(window_days=days)
        stats.total_success = int(usage["success_count"].sum())
        stats.total_fallback = int(usage["fallback_count"].sum())
        attempts = stats.total_success + stats.total_fallback
        stats.efficiency = round(stats.total_success / attempts * 100, 2) if attempts else 100.0

        learned_hashes = set(entries["template_hash"])
        if len(usage):
            stats.learning_coverage = round(float(usage["template_hash"].isin(list(learned_hashes)).mean() * 100), 2)

        if entries.empty:
            logger.debug("[STATS] No learned templates")
            return stats

        stats.total_templates = len(entries)
        slot_cols = [f"has_{slot}" for slot in FIELD_SLOTS]
        stats.average_fields = round(float(entries[slot_cols].sum(axis=1).mean()), 2)
        stats.average_usage = round(float(entries["usage_count"].mean()), 2)
        stats.newest_created_at = entries["created_at"].max().to_pydatetime()

        usage_records = {u.template_hash: u for u in self.usage_log.all()} if self.usage_log else {}
        statuses = [
            compute_template_confidence(usage_records.get(h), now=now).status
            for h in entries["template_hash"]
        ]
        stats.ready_templates = sum(1 for s in statuses if s is TemplateStatus.READY)
        stats.stale_templates = len(get_stale_templates(
            entries["template_hash"], usage_records, self.config.stale_after_days, now=now,
        ))

        for slot in FIELD_SLOTS:
            mask = entries[f"has_{slot}"].astype(bool)
            coverage = float(mask.mean() * 100)
            avg_usage = float(entries.loc[mask, "usage_count"].mean()) if mask.any() else 0.0
            stats.field_stats[slot] = FieldStat(
                coverage=round(coverage, 2),
                avg_usage=round(avg_usage, 2),
            )
        counts = entries[slot_cols].sum().sort_values(ascending=False, kind="stable")
        stats.top_fields = [
            (col.removeprefix("has_"), int(n)) for col, n in counts.items() if n > 0
        ][:TOP_FIELDS_LIMIT]

        ranked = entries.sort_values(
            ["usage_count", "confirmations", "last_confirmed_at"], ascending=False, kind="stable",
        ).head(MOST_USED_LIMIT)
        stats.most_used = [
            {
                "template_hash": row.template_hash,
                "entry_id": row.entry_id,
                "vendor": row.vendor,
                "usage_count": int(row.usage_count),
                "success_count": int(row.success_count),
                "confirmations": int(row.confirmations),
            }
            for row in ranked.itertuples(index=False)
        ]

        logger.info(
            "[STATS] window=%s templates=%d ready=%d efficiency=%.1f%%",
            window, stats.total_templates, stats.ready_templates, stats.efficiency,
        )
        return stats
