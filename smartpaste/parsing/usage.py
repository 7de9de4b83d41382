"""Per-template usage ledger.

Records what the cascade did with every message, keyed by structural hash:
how often the hash was seen, how often a learned template resolved it
(success) and how often the cascade had to fall back to the statistical or
heuristic stages (fallback).  Rejections reported by the user land here as
``last_failure_at``.

Kept under its own storage key so that the learned-template store is only
ever written by learning and clearing.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from ..models import Origin, parse_timestamp, utcnow
from ..storage import envelope

logger = logging.getLogger(__name__)

USAGE_KEY = "smartpaste.template_usage"

_LEARNED_ORIGINS = (Origin.TEMPLATE, Origin.STRUCTURE)


@dataclass
class TemplateUsage:
    template_hash: str
    usage_count: int = 0
    success_count: int = 0
    fallback_count: int = 0
    failure_count: int = 0
    first_seen_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        def iso(ts: Optional[datetime]) -> Optional[str]:
            return ts.isoformat() if ts else None

        return {
            "templateHash": self.template_hash,
            "usageCount": self.usage_count,
            "successCount": self.success_count,
            "fallbackCount": self.fallback_count,
            "failureCount": self.failure_count,
            "firstSeenAt": iso(self.first_seen_at),
            "lastUsedAt": iso(self.last_used_at),
            "lastFailureAt": iso(self.last_failure_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TemplateUsage":
        def ts(key: str) -> Optional[datetime]:
            return parse_timestamp(data[key]) if data.get(key) else None

        return cls(
            template_hash=str(data["templateHash"]),
            usage_count=int(data.get("usageCount", 0)),
            success_count=int(data.get("successCount", 0)),
            fallback_count=int(data.get("fallbackCount", 0)),
            failure_count=int(data.get("failureCount", 0)),
            first_seen_at=ts("firstSeenAt"),
            last_used_at=ts("lastUsedAt"),
            last_failure_at=ts("lastFailureAt"),
        )


class TemplateUsageLog:
    """Thread-safe usage counters persisted through a key-value adapter."""

    def __init__(
        self,
        adapter: Any,
        *,
        autosave: bool = True,
        max_records: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._adapter = adapter
        self.autosave = autosave
        self._max_records = max_records
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._records: dict[str, TemplateUsage] = {}
        self.reload()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def reload(self) -> None:
        records: dict[str, TemplateUsage] = {}
        try:
            _, payload = envelope.unwrap(self._adapter.get(USAGE_KEY))
        except ValueError:
            logger.warning("[USAGE] Stored usage log unreadable, starting empty", exc_info=True)
            payload = None
        for item in payload or []:
            try:
                usage = TemplateUsage.from_dict(item)
            except (KeyError, TypeError, ValueError):
                logger.warning("[USAGE] Skipping corrupt usage record: %r", item)
                continue
            records[usage.template_hash] = usage
        with self._lock:
            self._records = records

    def save(self) -> None:
        with self._lock:
            payload = [u.to_dict() for u in self._records.values()]
        self._adapter.set(USAGE_KEY, envelope.wrap(payload, now=self._clock()))

    def clear(self) -> None:
        with self._lock:
            self._records = {}
        self._adapter.delete(USAGE_KEY)
        logger.info("[USAGE] Cleared usage log")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _record(self, template_hash: str) -> TemplateUsage:
        usage = self._records.get(template_hash)
        if usage is None:
            usage = TemplateUsage(template_hash=template_hash, first_seen_at=self._clock())
            self._records[template_hash] = usage
        return usage

    def _evict(self) -> None:
        overflow = len(self._records) - self._max_records
        if overflow <= 0:
            return
        oldest = sorted(
            self._records.values(),
            key=lambda u: u.last_used_at or u.first_seen_at or self._clock(),
        )[:overflow]
        for usage in oldest:
            del self._records[usage.template_hash]

    def record_resolution(self, template_hash: str, origin: Optional[Origin]) -> TemplateUsage:
        """Count one cascade run for ``template_hash``.

        Resolutions by a learned template (template or structure stage)
        count as successes; anything else counts as a fallback.
        """
        with self._lock:
            usage = self._record(template_hash)
            usage.usage_count += 1
            usage.last_used_at = self._clock()
            if origin in _LEARNED_ORIGINS:
                usage.success_count += 1
            else:
                usage.fallback_count += 1
            self._evict()
        if self.autosave:
            self.save()
        return usage

    def record_failure(self, template_hash: str) -> TemplateUsage:
        with self._lock:
            usage = self._record(template_hash)
            usage.failure_count += 1
            usage.last_failure_at = self._clock()
        if self.autosave:
            self.save()
        logger.debug("[USAGE] Failure recorded for %s", template_hash)
        return usage

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, template_hash: str) -> Optional[TemplateUsage]:
        with self._lock:
            return self._records.get(template_hash)

    def all(self) -> list[TemplateUsage]:
        with self._lock:
            return list(self._records.values())
