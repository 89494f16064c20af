"""Classification rule models and pattern validation.

A rule pattern is a small template graph (node and edge templates) plus leaf
conditions evaluated against the nodes a template binds to. Patterns are
validated before they reach the Rule Store, so the matcher can assume every
edge references declared templates and every regex compiles.

Condition field paths address one of three namespaces:
- thread.<attr>: attributes of the thread itself (subject, body, ...)
- <node template id>.<attr>: properties of the bound graph node
- <edge template id>.<attr>: properties of the bound graph edge

Usage:
    from graphclassifier.classifier.rules import parse_rule_draft, validate_pattern

    draft = parse_rule_draft(yaml_data)   # raises InvalidRuleError
    validate_pattern(draft.pattern)        # raises InvalidRuleError
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

import regex
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from graphclassifier.classifier.models import Label
from graphclassifier.core.errors import InvalidRuleError

NodeKind = Literal["person", "project", "topic", "company"]
EdgeKind = Literal["employed-by", "co-participant", "mentions"]
ConditionOperator = Literal["equals", "contains", "regex", "ai_match"]
PatternType = Literal["graph", "text", "regex", "ai"]

# Patterns stay small so backtracking over candidate bindings is cheap
MAX_PATTERN_NODES = 8
MAX_PATTERN_EDGES = 16
MAX_PATTERN_CONDITIONS = 32

THREAD_NAMESPACE = "thread"

THREAD_FIELDS = frozenset({"subject", "body", "snippet", "labels", "participants", "domains"})

_COMMON_NODE_FIELDS = frozenset({"id", "name", "kind", "weight"})

NODE_FIELDS: dict[str, frozenset[str]] = {
    "person": _COMMON_NODE_FIELDS
    | {"email", "domain", "display_name", "roles", "message_count"},
    "company": _COMMON_NODE_FIELDS | {"domain"},
    "project": _COMMON_NODE_FIELDS | {"term", "sources"},
    "topic": _COMMON_NODE_FIELDS | {"term", "sources"},
}

EDGE_FIELDS = frozenset({"id", "kind", "weight", "source", "target"})


class NodeTemplate(BaseModel):
    """A node the pattern requires in the entity graph.

    Attributes:
        id: Template id, referenced by edges and condition field paths
        kind: Graph node kind to bind
        name: Optional exact (case-insensitive) node name constraint
        min_weight: Minimum mention weight of the bound node
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: NodeKind
    name: str | None = None
    min_weight: int = Field(default=1, ge=1)


class EdgeTemplate(BaseModel):
    """A relation the pattern requires between two node templates."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    kind: EdgeKind
    directed: bool = True


class RuleCondition(BaseModel):
    """A leaf predicate evaluated against a bound field."""

    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: str


class RulePattern(BaseModel):
    """Template graph plus leaf conditions."""

    model_config = ConfigDict(frozen=True)

    type: PatternType = "graph"
    nodes: list[NodeTemplate] = Field(default_factory=list)
    edges: list[EdgeTemplate] = Field(default_factory=list)
    conditions: list[RuleCondition] = Field(default_factory=list)

    def vocabulary_terms(self) -> dict[str, str]:
        """Project/topic names this pattern needs the graph builder to recognise.

        Returns:
            Mapping of term -> node kind
        """
        return {
            node.name: node.kind
            for node in self.nodes
            if node.kind in ("project", "topic") and node.name
        }


class RuleDraft(BaseModel):
    """User-authored rule content, before the store assigns id and timestamps."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    pattern: RulePattern = Field(default_factory=RulePattern)
    labels: list[Label] = Field(default_factory=list)
    is_active: bool = True
    priority: float | None = Field(default=None, gt=0, le=100)
    ai_match_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class RuleUpdate(BaseModel):
    """Partial rule update; unset fields keep their stored value."""

    model_config = ConfigDict(frozen=True)

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    pattern: RulePattern | None = None
    labels: list[Label] | None = None
    is_active: bool | None = None
    priority: float | None = Field(default=None, gt=0, le=100)
    ai_match_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class ClassificationRule(RuleDraft):
    """A stored rule.

    Attributes:
        id: Stable rule id (unique in the store)
        version: Incremented on every update
        created_at: Creation time (UTC)
        updated_at: Last mutation time (UTC), strictly increasing
        deleted_at: Set when the rule was soft-deleted
    """

    id: str
    version: int = 1
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @property
    def is_available(self) -> bool:
        """Whether the matcher should see this rule."""
        return self.is_active and self.deleted_at is None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def format_field_path(loc: tuple[Any, ...]) -> str:
    """Render a Pydantic error location as a rule field path.

    Pattern fields are reported relative to the pattern, so
    ('pattern', 'conditions', 0, 'value') becomes 'conditions[0].value'.
    """
    parts = list(loc)
    if parts and parts[0] == "pattern" and len(parts) > 1:
        parts = parts[1:]

    path = ""
    for part in parts:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def _invalid_rule(error: ValidationError) -> InvalidRuleError:
    first = error.errors()[0]
    return InvalidRuleError(format_field_path(tuple(first["loc"])), first["msg"])


def parse_rule_draft(data: dict[str, Any] | RuleDraft) -> RuleDraft:
    """Validate raw rule data and its pattern.

    Raises:
        InvalidRuleError: On the first structural or pattern problem
    """
    if isinstance(data, RuleDraft):
        draft = data
    else:
        try:
            draft = RuleDraft.model_validate(data)
        except ValidationError as e:
            raise _invalid_rule(e) from e
    validate_pattern(draft.pattern)
    return draft


def parse_rule_update(data: dict[str, Any] | RuleUpdate) -> RuleUpdate:
    """Validate a partial update payload (pattern validated on merge)."""
    if isinstance(data, RuleUpdate):
        return data
    try:
        return RuleUpdate.model_validate(data)
    except ValidationError as e:
        raise _invalid_rule(e) from e


def validate_pattern(pattern: RulePattern) -> None:
    """Check that a pattern is internally consistent.

    - node and edge template ids are non-empty, dot-free and unique
    - every edge references declared node templates
    - every condition field resolves against a known namespace
    - regex condition values compile

    Raises:
        InvalidRuleError: Naming the first offending field
    """
    if len(pattern.nodes) > MAX_PATTERN_NODES:
        raise InvalidRuleError("nodes", f"at most {MAX_PATTERN_NODES} node templates allowed")
    if len(pattern.edges) > MAX_PATTERN_EDGES:
        raise InvalidRuleError("edges", f"at most {MAX_PATTERN_EDGES} edge templates allowed")
    if len(pattern.conditions) > MAX_PATTERN_CONDITIONS:
        raise InvalidRuleError(
            "conditions", f"at most {MAX_PATTERN_CONDITIONS} conditions allowed"
        )

    seen_ids: set[str] = set()
    node_kinds: dict[str, str] = {}

    for i, node in enumerate(pattern.nodes):
        _check_template_id(node.id, f"nodes[{i}].id", seen_ids)
        seen_ids.add(node.id)
        node_kinds[node.id] = node.kind
        if node.name is not None and not node.name.strip():
            raise InvalidRuleError(f"nodes[{i}].name", "name cannot be blank when set")

    edge_ids: set[str] = set()
    for i, edge in enumerate(pattern.edges):
        _check_template_id(edge.id, f"edges[{i}].id", seen_ids)
        seen_ids.add(edge.id)
        edge_ids.add(edge.id)
        for end in ("source", "target"):
            ref = getattr(edge, end)
            if ref not in node_kinds:
                raise InvalidRuleError(
                    f"edges[{i}].{end}", f"references undeclared node template '{ref}'"
                )
        if edge.source == edge.target:
            raise InvalidRuleError(f"edges[{i}].target", "edge cannot connect a template to itself")

    for i, condition in enumerate(pattern.conditions):
        _check_field_path(condition.field, f"conditions[{i}].field", node_kinds, edge_ids)
        _check_condition_value(condition, f"conditions[{i}].value")


def _check_template_id(template_id: str, field: str, seen: set[str]) -> None:
    if not template_id or not template_id.strip():
        raise InvalidRuleError(field, "template id cannot be empty")
    if "." in template_id:
        raise InvalidRuleError(field, "template id cannot contain '.'")
    if template_id == THREAD_NAMESPACE:
        raise InvalidRuleError(field, f"'{THREAD_NAMESPACE}' is reserved")
    if template_id in seen:
        raise InvalidRuleError(field, f"duplicate template id '{template_id}'")


def _check_field_path(
    path: str,
    field: str,
    node_kinds: dict[str, str],
    edge_ids: set[str],
) -> None:
    namespace, _, attr = path.partition(".")
    if not namespace or not attr:
        raise InvalidRuleError(field, f"'{path}' must look like '<namespace>.<attribute>'")

    if namespace == THREAD_NAMESPACE:
        allowed = THREAD_FIELDS
    elif namespace in node_kinds:
        allowed = NODE_FIELDS[node_kinds[namespace]]
    elif namespace in edge_ids:
        allowed = EDGE_FIELDS
    else:
        raise InvalidRuleError(field, f"'{namespace}' is not a declared template")

    if attr not in allowed:
        raise InvalidRuleError(
            field,
            f"unknown attribute '{attr}' for '{namespace}' (expected one of: "
            f"{', '.join(sorted(allowed))})",
        )


def _check_condition_value(condition: RuleCondition, field: str) -> None:
    if condition.operator != "equals" and not condition.value:
        raise InvalidRuleError(field, f"{condition.operator} requires a non-empty value")
    if condition.operator == "regex":
        try:
            regex.compile(condition.value)
        except regex.error as e:
            raise InvalidRuleError(field, f"invalid regular expression: {e}") from e
