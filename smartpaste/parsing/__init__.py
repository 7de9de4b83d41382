"""Learning layer: structural hashing, template store, cascade and reporting.

- Structural hashing so recurring bank templates collapse to one key
- Locally persisted store of confirmed messages
- Four-stage matching cascade (template, structure, ml, fallback)
- Category rule bank (keyword, vendor and sender rules) for unexplained drafts
- Rejection tracking and the manual-annotation loop
- Usage ledger, template health and stats
"""

from .cascade import FallbackStage, Matched, MatchingCascade, NotMatched, StatisticalStage, StructureStage, TemplateStage
from .category_rules import CategoryRuleBank
from .failure_tracker import FailureTracker
from .structure_hash import compute_template_hash, template_structure
from .template_store import LearnedTemplateStore, StructureMatch

# Feedback, usage, health and stats (use: from smartpaste.parsing.stats import StatsAggregator)

__all__ = [
    "CategoryRuleBank",
    "FailureTracker",
    "FallbackStage",
    "LearnedTemplateStore",
    "Matched",
    "MatchingCascade",
    "NotMatched",
    "StatisticalStage",
    "StructureMatch",
    "StructureStage",
    "TemplateStage",
    "compute_template_hash",
    "template_structure",
]
