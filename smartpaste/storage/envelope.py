"""Versioned envelope around persisted payloads.

Schema history:

    1  bare JSON list of entries (mobile client, no envelope)
    2  ``{"schemaVersion": 2, "savedAt": ..., "payload": ...}``

Version 1 entries carried ``fieldTokenMap`` slots as lists of bare strings
and no confirmation history; :func:`migrate_v1_entry` fills both in.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


class UnsupportedSchemaError(ValueError):
    """Stored data was written by a newer schema than this build knows."""


def wrap(payload: Any, *, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return json.dumps(
        {"schemaVersion": SCHEMA_VERSION, "savedAt": now.isoformat(), "payload": payload},
        ensure_ascii=False,
    )


def unwrap(raw: Optional[str]) -> tuple[int, Any]:
    """Return ``(version, payload)`` for a stored value.

    ``None`` or an empty string reads as ``(SCHEMA_VERSION, None)``.
    Raises ``ValueError`` for undecodable data and
    :class:`UnsupportedSchemaError` for versions from the future.
    """
    if not raw:
        return SCHEMA_VERSION, None
    data = json.loads(raw)
    if isinstance(data, list):
        return 1, data
    if not isinstance(data, dict) or "schemaVersion" not in data:
        raise ValueError("stored value is neither a list nor an envelope")
    version = int(data["schemaVersion"])
    if version > SCHEMA_VERSION:
        raise UnsupportedSchemaError(f"schema version {version} is newer than {SCHEMA_VERSION}")
    return version, data.get("payload")


def migrate_v1_entry(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a schema-1 entry dict up to schema 2."""
    migrated = dict(data)
    ts = migrated.get("timestamp") or datetime.now(timezone.utc).isoformat()
    if isinstance(ts, (int, float)):
        ts = datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc).isoformat()
    migrated["timestamp"] = ts

    history = list(migrated.get("confirmationHistory") or [])
    history.append({
        "timestamp": ts,
        "source": "system-migration",
        "confidence": migrated.get("confidence"),
    })
    migrated["confirmationHistory"] = history

    # schema 1 stored unsigned amounts
    confirmed = dict(migrated.get("confirmedFields") or {})
    try:
        amount = abs(float(confirmed["amount"]))
    except (KeyError, TypeError, ValueError):
        amount = None
    txn_type = str(confirmed.get("type") or "").lower()
    if amount is not None and txn_type in ("expense", "income"):
        confirmed["amount"] = -amount if txn_type == "expense" else amount
        migrated["confirmedFields"] = confirmed

    fmap = migrated.get("fieldTokenMap") or {}
    migrated["fieldTokenMap"] = {
        slot: [t if isinstance(t, dict) else {"token": str(t), "position": -1} for t in tokens or []]
        for slot, tokens in fmap.items()
        if isinstance(tokens, list)
    }
    return migrated
