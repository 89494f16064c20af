"""Tests for witness scoring and aggregation."""

from datetime import UTC, datetime

import pytest
from factories import label, subject_rule

from graphclassifier.classifier.matcher import MatchWitness
from graphclassifier.classifier.rules import ClassificationRule, parse_rule_draft
from graphclassifier.classifier.scorer import (
    NO_MATCH_REASONING,
    aggregate,
    best_witnesses,
    explain,
)

NOW = datetime(2025, 3, 1, tzinfo=UTC)


def _rule(rule_id: str, name: str, labels: list[dict], **extra) -> ClassificationRule:
    draft = parse_rule_draft(subject_rule(name, "x", labels, **extra))
    return ClassificationRule(**draft.model_dump(), id=rule_id, created_at=NOW, updated_at=NOW)


def _witness(
    rule: ClassificationRule, score: float, entities: tuple[str, ...] = ()
) -> MatchWitness:
    return MatchWitness(
        rule=rule,
        node_bindings={},
        edge_bindings={},
        entities=entities,
        satisfied=round(score * 4),
        total=4,
        raw_score=score,
    )


class TestBestWitnesses:
    def test_keeps_highest_score_per_rule(self):
        rule = _rule("r1", "Clients", [label("L1", "Clients")])
        low, high = _witness(rule, 0.25), _witness(rule, 0.75)
        assert best_witnesses([low, high]) == [high]

    def test_ties_keep_first(self):
        rule = _rule("r1", "Clients", [label("L1", "Clients")])
        first = _witness(rule, 0.5, ("company:Acme",))
        second = _witness(rule, 0.5, ("company:Globex",))
        assert best_witnesses([first, second]) == [first]


class TestAggregate:
    def test_no_witnesses(self):
        outcome = aggregate([])
        assert outcome.labels == []
        assert outcome.confidence == 0.0
        assert outcome.reasoning == NO_MATCH_REASONING

    def test_zero_score_rules_do_not_contribute(self):
        rule = _rule("r1", "Clients", [label("L1", "Clients")])
        outcome = aggregate([_witness(rule, 0.0)])
        assert outcome.labels == []
        assert outcome.confidence == 0.0
        assert outcome.reasoning == NO_MATCH_REASONING

    def test_confidence_is_mean_with_default_priority(self):
        a = _rule("a", "Alpha", [label("L1", "One")])
        b = _rule("b", "Beta", [label("L2", "Two")])
        outcome = aggregate([_witness(a, 1.0), _witness(b, 0.5)])
        assert outcome.confidence == pytest.approx(0.75)

    def test_priority_weights_confidence(self):
        a = _rule("a", "Alpha", [label("L1", "One")], priority=3)
        b = _rule("b", "Beta", [label("L2", "Two")])
        outcome = aggregate([_witness(a, 1.0), _witness(b, 0.5)])
        assert outcome.confidence == pytest.approx((3 * 1.0 + 1 * 0.5) / 4)

    def test_default_priority_applies_to_rules_without_one(self):
        a = _rule("a", "Alpha", [label("L1", "One")], priority=2)
        b = _rule("b", "Beta", [label("L2", "Two")])
        outcome = aggregate([_witness(a, 1.0), _witness(b, 0.5)], default_priority=2.0)
        assert outcome.confidence == pytest.approx(0.75)

    def test_labels_deduplicated_by_id_and_ordered_by_score(self):
        a = _rule("a", "Alpha", [label("L1", "Shared"), label("L2", "Low")])
        b = _rule("b", "Beta", [label("L1", "Shared"), label("L3", "High")])
        outcome = aggregate([_witness(a, 0.5), _witness(b, 1.0)])
        assert [lbl.id for lbl in outcome.labels] == ["L3", "L1", "L2"]

    def test_equal_scores_order_labels_by_name(self):
        a = _rule("a", "Alpha", [label("L9", "Zulu")])
        b = _rule("b", "Beta", [label("L8", "Alpha")])
        outcome = aggregate([_witness(a, 1.0), _witness(b, 1.0)])
        assert [lbl.name for lbl in outcome.labels] == ["Alpha", "Zulu"]

    def test_reasoning_lists_rules_by_score(self):
        a = _rule("a", "Alpha", [label("L1", "One")])
        b = _rule("b", "Beta", [label("L2", "Two")])
        outcome = aggregate(
            [_witness(a, 0.5), _witness(b, 1.0, ("person:jane@acme.com",))]
        )
        assert outcome.reasoning == (
            "Rule 'Beta' matched (100%) via person:jane@acme.com. "
            "Rule 'Alpha' matched (50%)."
        )
        assert [c.witness.rule_id for c in outcome.contributions] == ["b", "a"]


class TestExplain:
    def test_multiple_entities(self):
        rule = _rule("r1", "Client Escalation", [label("L1", "Escalation")])
        witness = _witness(
            rule, 0.75, ("person:jane@acme.com", "company:Acme", "project:Phoenix")
        )
        assert explain(witness) == (
            "Rule 'Client Escalation' matched (75%) via "
            "person:jane@acme.com, company:Acme and project:Phoenix."
        )

    def test_no_entities(self):
        rule = _rule("r1", "Invoices", [label("L1", "Finance")])
        assert explain(_witness(rule, 1.0)) == "Rule 'Invoices' matched (100%)."
