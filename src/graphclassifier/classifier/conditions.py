"""Condition evaluation for rule patterns.

Resolves condition field paths against a binding (thread attributes, bound
nodes, bound edges) and applies the condition operator. The operator set is
closed and validated at rule-save time, so dispatch is a plain table lookup.

Every evaluation failure degrades to "not satisfied": a regex that times out
or a Semantic Matcher that raises lowers the rule's score instead of failing
classification. Cancellation is never swallowed so per-thread deadlines still
apply.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol

import regex

from graphclassifier.classifier.rules import THREAD_NAMESPACE
from graphclassifier.core.logging import get_logger

if TYPE_CHECKING:
    from graphclassifier.classifier.models import EmailThread
    from graphclassifier.classifier.rules import RuleCondition
    from graphclassifier.graph.models import EntityGraph, GraphEdge, GraphNode

logger = get_logger(__name__)

DEFAULT_REGEX_TIMEOUT = 1.0


class SemanticMatcher(Protocol):
    """External collaborator scoring how well text matches a concept."""

    async def similarity(self, text: str, concept: str) -> float:
        """Return similarity in [0, 1]."""
        ...


@dataclass(frozen=True, slots=True)
class Binding:
    """The values a condition can see for one candidate match."""

    thread: EmailThread
    graph: EntityGraph
    nodes: Mapping[str, GraphNode]
    edges: Mapping[str, GraphEdge]


def _as_values(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list | tuple | set | frozenset):
        return [str(item) for item in value]
    return [str(value)]


def _thread_values(attr: str, binding: Binding) -> list[str]:
    thread = binding.thread
    if attr == "subject":
        return [thread.subject]
    if attr == "body":
        bodies = [message.body for message in thread.messages if message.body]
        return ["\n\n".join(bodies)] if bodies else [thread.snippet]
    if attr == "snippet":
        return [thread.snippet]
    if attr == "labels":
        return [label.name for label in thread.labels]
    people = binding.graph.nodes_of_kind("person")
    if attr == "participants":
        return [str(node.properties.get("email", node.name)) for node in people]
    if attr == "domains":
        domains = {node.properties.get("domain") for node in people}
        return sorted(str(domain) for domain in domains if domain)
    return []


def resolve_field(path: str, binding: Binding) -> list[str]:
    """Resolve a condition field path to the candidate string values.

    Multi-valued fields (labels, participants, roles) yield one entry per value.
    Unknown paths resolve to no values, which never satisfy a condition.
    """
    namespace, _, attr = path.partition(".")

    if namespace == THREAD_NAMESPACE:
        return _thread_values(attr, binding)

    node = binding.nodes.get(namespace)
    if node is not None:
        if attr == "id":
            return [node.id]
        if attr == "name":
            return [node.name]
        if attr == "kind":
            return [node.kind]
        if attr == "weight":
            return [str(node.weight)]
        return _as_values(node.properties.get(attr))

    edge = binding.edges.get(namespace)
    if edge is not None:
        if attr in ("id", "kind", "source", "target"):
            return [getattr(edge, attr)]
        if attr == "weight":
            return [str(edge.properties.get("weight", 1))]
        return _as_values(edge.properties.get(attr))

    return []


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


@lru_cache(maxsize=512)
def _compile(pattern: str) -> regex.Pattern:
    return regex.compile(pattern)


def _equals(value: str, expected: str, timeout: float) -> bool:
    return value == expected


def _contains(value: str, expected: str, timeout: float) -> bool:
    return expected.casefold() in value.casefold()


def _regex_search(value: str, pattern: str, timeout: float) -> bool:
    try:
        return _compile(pattern).search(value, timeout=timeout) is not None
    except (regex.error, TimeoutError) as e:
        logger.warning(
            "condition_evaluation_failed",
            operator="regex",
            pattern=pattern[:100],
            error=str(e),
            error_type=type(e).__name__,
        )
        return False


_TEXT_OPERATORS: dict[str, Callable[[str, str, float], bool]] = {
    "equals": _equals,
    "contains": _contains,
    "regex": _regex_search,
}


class ConditionEvaluator:
    """Evaluates RuleConditions against bindings.

    Attributes:
        _semantic: Semantic Matcher collaborator (None = ai_match never satisfied)
        _regex_timeout: Seconds allowed per regex search
        _semantic_timeout: Seconds allowed per similarity call (None = unbounded)
    """

    def __init__(
        self,
        semantic_matcher: SemanticMatcher | None = None,
        regex_timeout: float = DEFAULT_REGEX_TIMEOUT,
        semantic_timeout: float | None = None,
    ):
        self._semantic = semantic_matcher
        self._regex_timeout = regex_timeout
        self._semantic_timeout = semantic_timeout

    async def evaluate(
        self,
        condition: RuleCondition,
        binding: Binding,
        ai_threshold: float,
        similarity_cache: dict[tuple[str, str], float | None],
    ) -> bool:
        """Whether any resolved value satisfies the condition.

        Args:
            condition: Condition to check
            binding: Thread, graph and bound template values
            ai_threshold: Similarity cutoff for ai_match
            similarity_cache: Per-match cache of (text, concept) -> score
        """
        values = resolve_field(condition.field, binding)
        if not values:
            return False

        if condition.operator == "ai_match":
            for value in values:
                score = await self._similarity(value, condition.value, similarity_cache)
                if score is not None and score >= ai_threshold:
                    return True
            return False

        operator = _TEXT_OPERATORS[condition.operator]
        return any(operator(value, condition.value, self._regex_timeout) for value in values)

    async def _similarity(
        self,
        text: str,
        concept: str,
        cache: dict[tuple[str, str], float | None],
    ) -> float | None:
        key = (text, concept)
        if key in cache:
            return cache[key]

        score: float | None = None
        if self._semantic is None:
            logger.debug("semantic_matcher_not_configured", concept=concept[:50])
        else:
            try:
                call = self._semantic.similarity(text, concept)
                if self._semantic_timeout is not None:
                    raw = await asyncio.wait_for(call, timeout=self._semantic_timeout)
                else:
                    raw = await call
                score = float(raw)
                if math.isnan(score):
                    score = None
                else:
                    score = min(max(score, 0.0), 1.0)
            except Exception as e:
                # Collaborator failures only fail this condition
                logger.warning(
                    "condition_evaluation_failed",
                    operator="ai_match",
                    concept=concept[:50],
                    error=str(e),
                    error_type=type(e).__name__,
                )

        cache[key] = score
        return score
