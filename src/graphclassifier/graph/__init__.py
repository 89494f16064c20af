"""Per-thread entity graphs.

Usage:
    from graphclassifier.graph import EntityGraphBuilder

    builder = EntityGraphBuilder.from_config(config.graph)
    graph = builder.build(thread)
    people = graph.nodes_of_kind("person")
"""

from graphclassifier.graph.builder import EntityGraphBuilder, order_messages
from graphclassifier.graph.models import EntityGraph, GraphEdge, GraphNode

__all__ = [
    "EntityGraph",
    "EntityGraphBuilder",
    "GraphEdge",
    "GraphNode",
    "order_messages",
]
