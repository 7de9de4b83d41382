"""Learning engine options.

A plain options record.  Stored values are shallow-merged over the defaults
so that a config saved by an older build keeps working when new options are
added.  Environment variables prefixed with ``SMARTPASTE_`` override both.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Optional

logger = logging.getLogger(__name__)

CONFIG_KEY = "smartpaste.learning_config"
ENV_PREFIX = "SMARTPASTE_"

# camelCase keys used on disk -> attribute names
_STORED_NAMES = {
    "enabled": "enabled",
    "maxEntries": "max_entries",
    "minConfidenceThreshold": "min_confidence_threshold",
    "saveAutomatically": "save_automatically",
    "validationRequired": "validation_required",
    "userConfirmationWeight": "user_confirmation_weight",
    "defaultCurrency": "default_currency",
    "failureThreshold": "failure_threshold",
    "mlTimeoutSeconds": "ml_timeout_seconds",
    "mlHighAccuracy": "ml_high_accuracy",
    "dayFirst": "day_first",
    "staleAfterDays": "stale_after_days",
    "requireFinancialMessage": "require_financial_message",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class LearningConfig:
    enabled: bool = True
    max_entries: int = 200
    min_confidence_threshold: float = 0.75
    save_automatically: bool = True
    validation_required: bool = False
    user_confirmation_weight: float = 1.0
    default_currency: str = "SAR"
    failure_threshold: int = 3
    ml_timeout_seconds: float = 5.0
    ml_high_accuracy: bool = False
    day_first: bool = True
    stale_after_days: int = 90
    require_financial_message: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_confidence_threshold <= 1.0:
            raise ValueError(
                f"min_confidence_threshold must be in [0, 1], got {self.min_confidence_threshold}"
            )
        if self.max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {self.max_entries}")
        if self.user_confirmation_weight <= 0:
            raise ValueError("user_confirmation_weight must be positive")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.ml_timeout_seconds <= 0:
            raise ValueError("ml_timeout_seconds must be positive")
        if len(self.default_currency) != 3:
            raise ValueError(f"default_currency must be an ISO code, got {self.default_currency!r}")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "LearningConfig":
        """Shallow-merge ``data`` over the defaults.

        Accepts either the camelCase keys written by :func:`save_config` or
        the attribute names.  Unknown keys are ignored.
        """
        known = {f.name: f for f in fields(cls)}
        overrides: dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = _STORED_NAMES.get(key, key)
            if name not in known or value is None:
                continue
            overrides[name] = _coerce(known[name].type, value, name)
        return cls(**overrides)

    @classmethod
    def from_env(cls, base: Optional["LearningConfig"] = None) -> "LearningConfig":
        """Apply ``SMARTPASTE_*`` environment overrides on top of ``base``."""
        base = base or cls()
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.type, raw, f.name)
        if overrides:
            logger.info("[CONFIG] Environment overrides: %s", sorted(overrides))
        return replace(base, **overrides)

    def to_dict(self) -> dict[str, Any]:
        attrs = asdict(self)
        return {stored: attrs[name] for stored, name in _STORED_NAMES.items()}


def _coerce(type_name: Any, value: Any, name: str) -> Any:
    """Convert a stored or environment value to the option's declared type."""
    type_name = str(type_name)
    if type_name == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"Invalid boolean for {name}: {value!r}")
    try:
        if type_name == "int":
            return int(value)
        if type_name == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {name}: {value!r}") from exc
    return str(value).strip().upper() if name == "default_currency" else str(value)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def load_config(adapter: Any, *, use_env: bool = True) -> LearningConfig:
    """Read the stored config through ``adapter``, falling back to defaults."""
    raw = adapter.get(CONFIG_KEY)
    stored: dict[str, Any] = {}
    if raw:
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                stored = parsed
            else:
                logger.warning("[CONFIG] Stored config is not an object, using defaults")
        except json.JSONDecodeError:
            logger.warning("[CONFIG] Stored config is not valid JSON, using defaults", exc_info=True)
    config = LearningConfig.from_dict(stored)
    return LearningConfig.from_env(config) if use_env else config


def save_config(adapter: Any, config: LearningConfig) -> None:
    adapter.set(CONFIG_KEY, json.dumps(config.to_dict()))
    logger.debug("[CONFIG] Saved learning config")
