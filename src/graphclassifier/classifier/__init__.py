"""Rule matching and scoring components.

This package provides the classification pipeline pieces:
- Thread input/output models
- Rule models and pattern validation
- Condition evaluation and the Semantic Matcher protocol
- Pattern matcher producing match witnesses
- Scorer aggregating witnesses into labels and confidence
"""

from graphclassifier.classifier.conditions import Binding, ConditionEvaluator, SemanticMatcher
from graphclassifier.classifier.matcher import MatchWitness, PatternMatcher
from graphclassifier.classifier.models import (
    ClassificationResult,
    EmailMessage,
    EmailThread,
    Label,
    Participant,
)
from graphclassifier.classifier.rules import (
    ClassificationRule,
    EdgeTemplate,
    NodeTemplate,
    RuleCondition,
    RuleDraft,
    RulePattern,
    RuleUpdate,
    parse_rule_draft,
    validate_pattern,
)
from graphclassifier.classifier.scorer import Aggregation, RuleContribution, aggregate

__all__ = [
    # Models
    "ClassificationResult",
    "EmailMessage",
    "EmailThread",
    "Label",
    "Participant",
    # Rules
    "ClassificationRule",
    "EdgeTemplate",
    "NodeTemplate",
    "RuleCondition",
    "RuleDraft",
    "RulePattern",
    "RuleUpdate",
    "parse_rule_draft",
    "validate_pattern",
    # Conditions
    "Binding",
    "ConditionEvaluator",
    "SemanticMatcher",
    # Matcher
    "MatchWitness",
    "PatternMatcher",
    # Scorer
    "Aggregation",
    "RuleContribution",
    "aggregate",
]
