"""SMS-to-transaction extraction and learning engine.

Turns bilingual (Latin/Arabic) bank and payment notifications into
transaction drafts, and learns recurring message templates from user
confirmations.  Everything runs locally; nothing here touches the network.
"""

from .config import LearningConfig, load_config, save_config
from .engine import LearningEngine
from .models import (
    CascadeResult,
    ConfirmationEvent,
    ConfirmationSource,
    ConfirmedFields,
    FieldTokenMap,
    LearnedEntry,
    MatchResult,
    Origin,
    ParseStatus,
    PositionedToken,
    StructureTemplate,
    TransactionDraft,
    TransactionType,
)
from .parsing.cascade import MatchingCascade
from .parsing.category_rules import CategoryRuleBank
from .parsing.failure_tracker import FailureTracker
from .parsing.structure_hash import compute_template_hash
from .parsing.template_store import LearnedTemplateStore
from .storage.adapters import InMemoryAdapter, JsonFileAdapter

__version__ = "0.1.0"

__all__ = [
    "CascadeResult",
    "CategoryRuleBank",
    "ConfirmationEvent",
    "ConfirmationSource",
    "ConfirmedFields",
    "FailureTracker",
    "FieldTokenMap",
    "InMemoryAdapter",
    "JsonFileAdapter",
    "LearnedEntry",
    "LearnedTemplateStore",
    "LearningConfig",
    "LearningEngine",
    "MatchResult",
    "MatchingCascade",
    "Origin",
    "ParseStatus",
    "PositionedToken",
    "StructureTemplate",
    "TransactionDraft",
    "TransactionType",
    "compute_template_hash",
    "load_config",
    "save_config",
]
