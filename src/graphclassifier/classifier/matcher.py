"""Pattern matcher: binds a rule's template graph to a thread's entity graph.

This is small-pattern subgraph matching with conditions, not general
subgraph isomorphism. Patterns hold at most a handful of templates, so a
backtracking search over candidate nodes, pruned by kind, template
constraints and edge checks, stays cheap on thread graphs of tens of nodes.

Algorithm:
1. Collect candidates per node template (kind, optional name, min_weight).
2. Order templates by selectivity: exact constraints first, then fewest
   candidates, then declaration order.
3. Extend a partial binding one template at a time; a node is accepted only
   if every edge template between already-bound templates has a graph edge
   of the same kind connecting the bound nodes, and every unbound neighbour
   keeps at least one adjacent candidate. Bindings are injective.
4. Evaluate every condition on each complete binding;
   raw_score = satisfied / total, or 1.0 for a pattern without conditions.

A template with no binding means the rule does not match at all: missing
structure is never partially scored. Each complete binding yields its own
MatchWitness; deduplication happens in the scorer.

Usage:
    from graphclassifier.classifier.matcher import PatternMatcher

    matcher = PatternMatcher.from_config(config.matching, semantic_matcher)
    witnesses = await matcher.match(rule, graph, thread)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from graphclassifier.classifier.conditions import Binding, ConditionEvaluator, SemanticMatcher
from graphclassifier.core.logging import get_logger
from graphclassifier.graph.text import normalize_name

if TYPE_CHECKING:
    from graphclassifier.classifier.models import EmailThread
    from graphclassifier.classifier.rules import (
        ClassificationRule,
        EdgeTemplate,
        NodeTemplate,
        RulePattern,
    )
    from graphclassifier.config_schema import MatchingConfig
    from graphclassifier.graph.models import EntityGraph, GraphEdge, GraphNode

logger = get_logger(__name__)

DEFAULT_AI_MATCH_THRESHOLD = 0.7
DEFAULT_MAX_WITNESSES = 50
SEARCH_YIELD_INTERVAL = 256


@dataclass(frozen=True, slots=True)
class MatchWitness:
    """One concrete binding of a rule's template to a thread's entity graph.

    Attributes:
        rule: The matched rule
        node_bindings: Node template id -> graph node id (declaration order)
        edge_bindings: Edge template id -> graph edge id
        entities: 'kind:identity' of each bound node (declaration order)
        satisfied: Conditions satisfied by this binding
        total: Conditions in the pattern
        raw_score: satisfied / total (1.0 when total is 0)
    """

    rule: ClassificationRule
    node_bindings: dict[str, str]
    edge_bindings: dict[str, str]
    entities: tuple[str, ...]
    satisfied: int
    total: int
    raw_score: float

    @property
    def rule_id(self) -> str:
        return self.rule.id


# (node template id -> node, edge template id -> edge)
_Assignment = tuple[dict[str, "GraphNode"], dict[str, "GraphEdge"]]


def _node_fits(template: NodeTemplate, node: GraphNode) -> bool:
    if node.weight < template.min_weight:
        return False
    if template.name is None:
        return True
    wanted = normalize_name(template.name)
    if normalize_name(node.name) == wanted:
        return True
    return node.kind == "person" and normalize_name(str(node.properties.get("email", ""))) == wanted


def _connecting_edge(graph: EntityGraph, template: EdgeTemplate, source: str, target: str):
    edges = graph.edges_between(source, target, template.kind)
    if not edges and not template.directed:
        edges = graph.edges_between(target, source, template.kind)
    return edges[0] if edges else None


class PatternMatcher:
    """Matches one rule's pattern against one entity graph.

    Attributes:
        _evaluator: Condition evaluator (owns the Semantic Matcher)
        _default_ai_threshold: ai_match cutoff for rules without their own
        _max_witnesses: Cap on complete bindings per rule per graph
    """

    def __init__(
        self,
        evaluator: ConditionEvaluator | None = None,
        default_ai_threshold: float = DEFAULT_AI_MATCH_THRESHOLD,
        max_witnesses: int = DEFAULT_MAX_WITNESSES,
    ):
        self._evaluator = evaluator or ConditionEvaluator()
        self._default_ai_threshold = default_ai_threshold
        self._max_witnesses = max_witnesses

    @classmethod
    def from_config(
        cls,
        config: MatchingConfig,
        semantic_matcher: SemanticMatcher | None = None,
    ) -> PatternMatcher:
        """Create a matcher from the `matching` config section."""
        evaluator = ConditionEvaluator(
            semantic_matcher=semantic_matcher,
            regex_timeout=config.regex_timeout_seconds,
            semantic_timeout=config.semantic_timeout_seconds,
        )
        return cls(
            evaluator=evaluator,
            default_ai_threshold=config.ai_match_threshold,
            max_witnesses=config.max_witnesses_per_rule,
        )

    async def match(
        self,
        rule: ClassificationRule,
        graph: EntityGraph,
        thread: EmailThread,
    ) -> list[MatchWitness]:
        """Find every binding of the rule's pattern and score it.

        Returns:
            One witness per complete binding (empty if the structure is absent)
        """
        pattern = rule.pattern
        assignments = await self.find_bindings(pattern, graph)
        if not assignments:
            return []

        threshold = (
            rule.ai_match_threshold
            if rule.ai_match_threshold is not None
            else self._default_ai_threshold
        )
        total = len(pattern.conditions)
        similarity_cache: dict[tuple[str, str], float | None] = {}
        witnesses: list[MatchWitness] = []

        for nodes, edges in assignments:
            binding = Binding(thread=thread, graph=graph, nodes=nodes, edges=edges)
            satisfied = 0
            for condition in pattern.conditions:
                if await self._evaluator.evaluate(condition, binding, threshold, similarity_cache):
                    satisfied += 1

            witnesses.append(
                MatchWitness(
                    rule=rule,
                    node_bindings={t.id: nodes[t.id].id for t in pattern.nodes},
                    edge_bindings={t.id: edges[t.id].id for t in pattern.edges},
                    entities=tuple(nodes[t.id].describe() for t in pattern.nodes),
                    satisfied=satisfied,
                    total=total,
                    raw_score=satisfied / total if total else 1.0,
                )
            )

        logger.debug(
            "rule_matched",
            rule_id=rule.id,
            witnesses=len(witnesses),
            best_score=max(w.raw_score for w in witnesses),
        )
        return witnesses

    async def find_bindings(self, pattern: RulePattern, graph: EntityGraph) -> list[_Assignment]:
        """Enumerate complete, injective template bindings (structure only).

        Binding a template narrows the candidates of its unbound neighbours to
        nodes adjacent through the connecting edge kind, so a missing relation
        fails as soon as one endpoint is bound. The search yields to the event
        loop every SEARCH_YIELD_INTERVAL expansions so a caller's timeout or
        cancellation can stop it.
        """
        if not pattern.nodes:
            return [({}, {})]

        domains: dict[str, list[GraphNode]] = {
            template.id: [node for node in graph.nodes_of_kind(template.kind)
                          if _node_fits(template, node)]
            for template in pattern.nodes
        }
        if any(not nodes for nodes in domains.values()):
            return []

        order = self._selectivity_order(pattern, domains)
        position = {template.id: i for i, template in enumerate(order)}

        # Edge templates become checkable once their later endpoint is bound
        checks: dict[str, list[EdgeTemplate]] = {template.id: [] for template in order}
        touching: dict[str, list[EdgeTemplate]] = {template.id: [] for template in order}
        for edge in pattern.edges:
            later = max(edge.source, edge.target, key=position.__getitem__)
            checks[later].append(edge)
            touching[edge.source].append(edge)
            if edge.target != edge.source:
                touching[edge.target].append(edge)

        results: list[_Assignment] = []
        nodes: dict[str, GraphNode] = {}
        edges: dict[str, GraphEdge] = {}
        used: set[str] = set()
        expansions = 0

        async def extend(depth: int) -> bool:
            """Return False once the witness cap is reached."""
            nonlocal expansions
            if depth == len(order):
                results.append((dict(nodes), dict(edges)))
                return len(results) < self._max_witnesses

            template = order[depth]
            for node in domains[template.id]:
                if node.id in used:
                    continue
                expansions += 1
                if expansions % SEARCH_YIELD_INTERVAL == 0:
                    await asyncio.sleep(0)
                nodes[template.id] = node
                bound_edges = self._bind_edges(graph, checks[template.id], nodes)
                narrowed = None
                if bound_edges is not None:
                    narrowed = self._forward_check(
                        graph, template.id, node, touching[template.id], nodes, domains
                    )
                if narrowed is not None:
                    saved = {template_id: domains[template_id] for template_id in narrowed}
                    domains.update(narrowed)
                    used.add(node.id)
                    edges.update(bound_edges)
                    keep_going = await extend(depth + 1)
                    used.discard(node.id)
                    for edge_id in bound_edges:
                        del edges[edge_id]
                    domains.update(saved)
                    if not keep_going:
                        del nodes[template.id]
                        return False
                del nodes[template.id]
            return True

        if not await extend(0):
            logger.info("witness_cap_reached", cap=self._max_witnesses)
        return results

    @staticmethod
    def _selectivity_order(
        pattern: RulePattern,
        candidates: dict[str, list[GraphNode]],
    ) -> list[NodeTemplate]:
        exact = {
            condition.field.partition(".")[0]
            for condition in pattern.conditions
            if condition.operator == "equals"
        }

        def key(indexed: tuple[int, NodeTemplate]) -> tuple[int, int, int]:
            index, template = indexed
            has_exact = template.name is not None or template.id in exact
            return (0 if has_exact else 1, len(candidates[template.id]), index)

        return [template for _, template in sorted(enumerate(pattern.nodes), key=key)]

    @staticmethod
    def _bind_edges(
        graph: EntityGraph,
        templates: list[EdgeTemplate],
        nodes: dict[str, GraphNode],
    ) -> dict[str, GraphEdge] | None:
        bound: dict[str, GraphEdge] = {}
        for template in templates:
            edge = _connecting_edge(
                graph, template, nodes[template.source].id, nodes[template.target].id
            )
            if edge is None:
                return None
            bound[template.id] = edge
        return bound

    @staticmethod
    def _forward_check(
        graph: EntityGraph,
        template_id: str,
        node: GraphNode,
        templates: list[EdgeTemplate],
        nodes: dict[str, GraphNode],
        domains: dict[str, list[GraphNode]],
    ) -> dict[str, list[GraphNode]] | None:
        """Narrow unbound neighbours of a just-bound template.

        Returns:
            Narrowed domains by template id, or None if one became empty
        """
        narrowed: dict[str, list[GraphNode]] = {}
        for template in templates:
            outgoing = template.source == template_id
            other = template.target if outgoing else template.source
            if other in nodes:
                continue
            kept = [
                candidate
                for candidate in narrowed.get(other, domains[other])
                if candidate.id != node.id
                and _connecting_edge(
                    graph,
                    template,
                    node.id if outgoing else candidate.id,
                    candidate.id if outgoing else node.id,
                )
                is not None
            ]
            if not kept:
                return None
            narrowed[other] = kept
        return narrowed
