"""Rejection counts per (template hash, sender).

When a template keeps producing drafts the user throws away, the sender has
probably changed its message format.  After ``threshold`` rejections the
caller should route the next message to manual annotation; learning the
template again clears the count.

In-memory only: counts reset with the process.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 3


def _key(template_hash: str, sender_hint: Optional[str]) -> tuple[str, str]:
    return template_hash, (sender_hint or "").strip().casefold()


class FailureTracker:
    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self._counts: dict[tuple[str, str], int] = defaultdict(int)
        self._lock = threading.Lock()

    def record_rejection(self, template_hash: str, sender_hint: Optional[str] = None) -> int:
        """Count one rejection; returns the new count."""
        key = _key(template_hash, sender_hint)
        with self._lock:
            self._counts[key] += 1
            count = self._counts[key]
        if count == self.threshold:
            logger.info(
                "[FAILURES] Template %s for sender %r reached %d rejections, annotation needed",
                template_hash, key[1], count,
            )
        return count

    def count(self, template_hash: str, sender_hint: Optional[str] = None) -> int:
        with self._lock:
            return self._counts.get(_key(template_hash, sender_hint), 0)

    def needs_annotation(self, template_hash: str, sender_hint: Optional[str] = None) -> bool:
        return self.count(template_hash, sender_hint) >= self.threshold

    def reset(self, template_hash: str, sender_hint: Optional[str] = None) -> None:
        with self._lock:
            removed = self._counts.pop(_key(template_hash, sender_hint), 0)
        if removed:
            logger.debug("[FAILURES] Reset %s (was %d)", template_hash, removed)

    def snapshot(self) -> dict[tuple[str, str], int]:
        with self._lock:
            return dict(self._counts)
