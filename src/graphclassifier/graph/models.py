"""Per-thread entity graph.

Nodes and edges live in an arena keyed by id; edges store endpoint ids rather
than node references. A graph is built for one classification call and
discarded afterwards.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class GraphNode:
    """A person/project/topic/company inferred from a thread."""

    id: str
    kind: str
    name: str
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def weight(self) -> int:
        """Mention count (1 for a single occurrence)."""
        return int(self.properties.get("weight", 1))

    def describe(self) -> str:
        """Short 'kind:identity' label used in reasoning text."""
        if self.kind == "person":
            return f"person:{self.properties.get('email', self.name)}"
        return f"{self.kind}:{self.name}"


@dataclass(frozen=True, slots=True)
class GraphEdge:
    """A directed relation record between two nodes.

    Undirected relations are stored as two records sharing one id.
    """

    id: str
    source: str
    target: str
    kind: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class EntityGraph:
    """Arena of nodes and edges with kind and adjacency indexes."""

    nodes: dict[str, GraphNode] = field(default_factory=dict)
    edges: list[GraphEdge] = field(default_factory=list)
    _by_kind: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    _out: dict[tuple[str, str], list[GraphEdge]] = field(
        default_factory=lambda: defaultdict(list)
    )

    def add_node(self, node: GraphNode) -> None:
        """Insert a node.

        Raises:
            ValueError: If a node with the same id already exists
        """
        if node.id in self.nodes:
            raise ValueError(f"Duplicate node id: {node.id}")
        self.nodes[node.id] = node
        self._by_kind[node.kind].append(node.id)

    def add_edge(self, edge: GraphEdge) -> None:
        """Insert an edge record.

        Raises:
            ValueError: If either endpoint is not in this graph
        """
        for endpoint in (edge.source, edge.target):
            if endpoint not in self.nodes:
                raise ValueError(f"Edge {edge.id} references unknown node {endpoint}")
        self.edges.append(edge)
        self._out[(edge.source, edge.target)].append(edge)

    def nodes_of_kind(self, kind: str) -> list[GraphNode]:
        """Nodes of one kind, in insertion order."""
        return [self.nodes[node_id] for node_id in self._by_kind.get(kind, [])]

    def edges_between(self, source: str, target: str, kind: str | None = None) -> list[GraphEdge]:
        """Edge records from source to target, optionally filtered by kind."""
        edges = self._out.get((source, target), [])
        if kind is None:
            return list(edges)
        return [edge for edge in edges if edge.kind == kind]

    def is_empty(self) -> bool:
        return not self.nodes

    def __len__(self) -> int:
        return len(self.nodes)
