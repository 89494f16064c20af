"""Scoring and aggregation of match witnesses into one classification.

Each rule contributes its best witness. Rules whose best score is zero (the
structure matched but no condition held) do not contribute labels or
confidence. Confidence is the priority-weighted mean of contributing scores.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from graphclassifier.classifier.matcher import MatchWitness
from graphclassifier.classifier.models import Label

NO_MATCH_REASONING = "No classification rules matched this thread."


@dataclass(frozen=True, slots=True)
class RuleContribution:
    """The best witness of one contributing rule with its effective priority."""

    witness: MatchWitness
    priority: float

    @property
    def score(self) -> float:
        return self.witness.raw_score


@dataclass(frozen=True, slots=True)
class Aggregation:
    """Combined outcome of all rules for one thread."""

    labels: list[Label]
    confidence: float
    reasoning: str
    contributions: list[RuleContribution]


def best_witnesses(witnesses: Iterable[MatchWitness]) -> list[MatchWitness]:
    """Highest-scoring witness per rule; ties keep the first seen."""
    best: dict[str, MatchWitness] = {}
    for witness in witnesses:
        current = best.get(witness.rule_id)
        if current is None or witness.raw_score > current.raw_score:
            best[witness.rule_id] = witness
    return list(best.values())


def _join_entities(entities: tuple[str, ...]) -> str:
    if len(entities) == 1:
        return entities[0]
    return f"{', '.join(entities[:-1])} and {entities[-1]}"


def explain(witness: MatchWitness) -> str:
    """One reasoning sentence for a contributing rule."""
    sentence = f"Rule '{witness.rule.name}' matched ({round(witness.raw_score * 100)}%)"
    if witness.entities:
        sentence += f" via {_join_entities(witness.entities)}"
    return sentence + "."


def aggregate(witnesses: Iterable[MatchWitness], default_priority: float = 1.0) -> Aggregation:
    """Combine witnesses from all rules into labels, confidence and reasoning.

    Args:
        witnesses: Witnesses from every rule matched against one thread
        default_priority: Weight for rules without an explicit priority

    Returns:
        Aggregation (no labels and confidence 0.0 when nothing contributes)
    """
    contributions = [
        RuleContribution(
            witness=witness,
            priority=witness.rule.priority if witness.rule.priority is not None
            else default_priority,
        )
        for witness in best_witnesses(witnesses)
        if witness.raw_score > 0
    ]
    if not contributions:
        return Aggregation(labels=[], confidence=0.0, reasoning=NO_MATCH_REASONING,
                           contributions=[])

    contributions.sort(key=lambda c: (-c.score, c.witness.rule.name))

    total_priority = sum(c.priority for c in contributions)
    weighted = sum(c.priority * c.score for c in contributions)
    confidence = min(max(weighted / total_priority, 0.0), 1.0) if total_priority > 0 else 0.0

    # label id -> (best score carrying it, label)
    labels: dict[str, tuple[float, Label]] = {}
    for contribution in contributions:
        for label in contribution.witness.rule.labels:
            if label.id not in labels or contribution.score > labels[label.id][0]:
                labels[label.id] = (contribution.score, label)
    ordered = sorted(labels.values(), key=lambda item: (-item[0], item[1].name))

    return Aggregation(
        labels=[label for _, label in ordered],
        confidence=confidence,
        reasoning=" ".join(explain(c.witness) for c in contributions),
        contributions=contributions,
    )
