"""Entity graph builder.

Turns a raw thread into a typed graph of candidate entities and relations:

- person: one per distinct participant address (name from first occurrence)
- company: one per organisation domain (personal-mail domains excluded)
- project/topic: one per vocabulary term mentioned in subject or bodies

Edges:
- employed-by: person -> company, inferred from the address domain
- co-participant: person <-> person, one relation per pair stored as two
  directed records sharing an id
- mentions: person -> project/topic, from the sender of the text that
  mentions the term (the thread subject is attributed to the first sender)

Repeated mentions raise a node's `weight` instead of creating duplicates.
Node ids are deterministic so classifying the same thread twice yields the
same graph.

Usage:
    from graphclassifier.graph.builder import EntityGraphBuilder

    builder = EntityGraphBuilder.from_config(config.graph)
    graph = builder.build(thread, vocabulary={"Phoenix": "project"})
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from itertools import combinations
from typing import TYPE_CHECKING

from graphclassifier.config_schema import DEFAULT_PERSONAL_DOMAINS
from graphclassifier.core.logging import get_logger
from graphclassifier.graph.models import EntityGraph, GraphEdge, GraphNode
from graphclassifier.graph.text import (
    company_name_from_domain,
    count_term,
    extract_domain,
    normalize_email,
    normalize_name,
    normalize_subject,
)

if TYPE_CHECKING:
    from graphclassifier.classifier.models import EmailMessage, EmailThread, Participant
    from graphclassifier.config_schema import GraphConfig

logger = get_logger(__name__)

TERM_KINDS = ("project", "topic")


@dataclass
class _PersonRecord:
    """Mutable accumulator for one participant while scanning the thread."""

    email: str
    display_name: str
    roles: set[str] = field(default_factory=set)
    message_count: int = 0
    appearances: int = 0

    @property
    def node_id(self) -> str:
        return f"person:{self.email}"


@dataclass
class _TermRecord:
    """Mutable accumulator for one vocabulary term."""

    term: str
    kind: str
    weight: int = 0
    sources: set[str] = field(default_factory=set)
    by_speaker: dict[str, int] = field(default_factory=dict)

    @property
    def node_id(self) -> str:
        return f"{self.kind}:{normalize_name(self.term)}"


def _sort_key(indexed: tuple[int, EmailMessage]) -> tuple[int, datetime, int]:
    index, message = indexed
    ts = message.timestamp
    if ts is None:
        return (1, datetime.min.replace(tzinfo=UTC), index)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return (0, ts, index)


def order_messages(messages: Iterable[EmailMessage]) -> list[EmailMessage]:
    """Messages by timestamp ascending; undated messages keep their order at the end."""
    return [message for _, message in sorted(enumerate(messages), key=_sort_key)]


class EntityGraphBuilder:
    """Builds per-thread entity graphs.

    `build` is total: any unexpected input problem yields an empty graph.

    Attributes:
        _personal_domains: Domains that never produce company nodes
        _company_aliases: Domain -> company name overrides
        _base_vocabulary: Configured term -> kind entries
    """

    def __init__(
        self,
        personal_domains: Iterable[str] | None = None,
        company_aliases: Mapping[str, str] | None = None,
        vocabulary: Mapping[str, str] | None = None,
    ):
        domains = DEFAULT_PERSONAL_DOMAINS if personal_domains is None else personal_domains
        self._personal_domains = frozenset(d.lower() for d in domains)
        self._company_aliases = dict(company_aliases or {})
        self._base_vocabulary = dict(vocabulary or {})

    @classmethod
    def from_config(cls, config: GraphConfig) -> EntityGraphBuilder:
        """Create a builder from the `graph` config section."""
        vocabulary = {term: "project" for term in config.vocabulary.projects}
        vocabulary.update({term: "topic" for term in config.vocabulary.topics})
        return cls(
            personal_domains=config.personal_domains,
            company_aliases=config.company_aliases,
            vocabulary=vocabulary,
        )

    def build(
        self,
        thread: EmailThread,
        vocabulary: Mapping[str, str] | None = None,
    ) -> EntityGraph:
        """Build the entity graph for one thread.

        Args:
            thread: Thread to analyse (not mutated)
            vocabulary: Extra term -> kind entries, typically from a rule snapshot

        Returns:
            EntityGraph (empty for empty or malformed threads)
        """
        try:
            return self._build(thread, self._merge_vocabulary(vocabulary))
        except Exception as e:
            logger.warning(
                "graph_build_failed",
                thread_id=getattr(thread, "id", None),
                error=str(e),
                error_type=type(e).__name__,
            )
            return EntityGraph()

    def _merge_vocabulary(self, extra: Mapping[str, str] | None) -> list[tuple[str, str]]:
        merged: dict[tuple[str, str], str] = {}
        for source in (self._base_vocabulary, extra or {}):
            for term, kind in source.items():
                if kind not in TERM_KINDS or not normalize_name(term):
                    continue
                merged.setdefault((kind, normalize_name(term)), term.strip())
        return [(merged[key], key[0]) for key in sorted(merged)]

    def _build(self, thread: EmailThread, vocabulary: list[tuple[str, str]]) -> EntityGraph:
        graph = EntityGraph()
        messages = order_messages(thread.messages)

        people = self._collect_people(thread, messages)
        for person in people.values():
            graph.add_node(
                GraphNode(
                    id=person.node_id,
                    kind="person",
                    name=person.display_name,
                    properties={
                        "email": person.email,
                        "domain": extract_domain(person.email),
                        "display_name": person.display_name,
                        "roles": sorted(person.roles),
                        "message_count": person.message_count,
                        "weight": max(person.appearances, 1),
                    },
                )
            )

        self._add_companies(graph, people)
        self._add_co_participants(graph, people, messages)
        self._add_terms(graph, thread, messages, vocabulary, people)

        logger.debug(
            "entity_graph_built",
            thread_id=thread.id,
            nodes=len(graph.nodes),
            edges=len(graph.edges),
        )
        return graph

    def _collect_people(
        self,
        thread: EmailThread,
        messages: list[EmailMessage],
    ) -> dict[str, _PersonRecord]:
        people: dict[str, _PersonRecord] = {}

        def seen(participant: Participant | None, role: str) -> _PersonRecord | None:
            if participant is None:
                return None
            email = normalize_email(participant.email)
            if not email:
                return None
            record = people.get(email)
            if record is None:
                record = _PersonRecord(email=email, display_name=participant.name.strip() or email)
                people[email] = record
            record.roles.add(role)
            return record

        for participant in thread.participants:
            seen(participant, participant.type)

        for message in messages:
            on_message: set[str] = set()
            sender = seen(message.sender, "from")
            if sender is not None:
                sender.message_count += 1
                on_message.add(sender.email)
            for role, recipients in (("to", message.to), ("cc", message.cc), ("bcc", message.bcc)):
                for recipient in recipients:
                    record = seen(recipient, role)
                    if record is not None:
                        on_message.add(record.email)
            for email in on_message:
                people[email].appearances += 1

        return people

    def _add_companies(self, graph: EntityGraph, people: dict[str, _PersonRecord]) -> None:
        names: dict[str, str] = {}
        employees: dict[str, list[str]] = {}
        domains: dict[str, list[str]] = {}

        for person in people.values():
            domain = extract_domain(person.email)
            if not domain or domain in self._personal_domains:
                continue
            name = company_name_from_domain(domain, self._company_aliases)
            key = normalize_name(name)
            if not key:
                continue
            company_id = f"company:{key}"
            if company_id not in names:
                names[company_id] = name
                employees[company_id] = []
                domains[company_id] = []
            employees[company_id].append(person.node_id)
            if domain not in domains[company_id]:
                domains[company_id].append(domain)

        for company_id, name in names.items():
            graph.add_node(
                GraphNode(
                    id=company_id,
                    kind="company",
                    name=name,
                    properties={
                        "domain": domains[company_id][0],
                        "domains": domains[company_id],
                        "weight": len(employees[company_id]),
                    },
                )
            )
            for person_id in employees[company_id]:
                graph.add_edge(
                    GraphEdge(
                        id=f"employed-by:{person_id}->{company_id}",
                        source=person_id,
                        target=company_id,
                        kind="employed-by",
                        properties={"weight": 1},
                    )
                )

    def _add_co_participants(
        self,
        graph: EntityGraph,
        people: dict[str, _PersonRecord],
        messages: list[EmailMessage],
    ) -> None:
        shared: dict[tuple[str, str], int] = {}
        for message in messages:
            emails = {
                normalize_email(p.email)
                for p in ([message.sender] if message.sender else []) + message.recipients()
            }
            emails.discard("")
            for a, b in combinations(sorted(emails), 2):
                shared[(a, b)] = shared.get((a, b), 0) + 1

        for a, b in combinations(sorted(people), 2):
            id_a, id_b = people[a].node_id, people[b].node_id
            edge_id = f"co-participant:{id_a}|{id_b}"
            properties = {"weight": max(shared.get((a, b), 0), 1)}
            for source, target in ((id_a, id_b), (id_b, id_a)):
                graph.add_edge(
                    GraphEdge(
                        id=edge_id,
                        source=source,
                        target=target,
                        kind="co-participant",
                        properties=properties,
                    )
                )

    def _add_terms(
        self,
        graph: EntityGraph,
        thread: EmailThread,
        messages: list[EmailMessage],
        vocabulary: list[tuple[str, str]],
        people: dict[str, _PersonRecord],
    ) -> None:
        if not vocabulary:
            return

        first_sender = None
        for message in messages:
            if message.sender is not None and normalize_email(message.sender.email):
                first_sender = normalize_email(message.sender.email)
                break

        # (text, source, speaker email)
        units: list[tuple[str, str, str | None]] = [(thread.subject, "subject", first_sender)]
        thread_subject = normalize_subject(thread.subject)
        for message in messages:
            speaker = normalize_email(message.sender.email) if message.sender else ""
            if message.subject and normalize_subject(message.subject) != thread_subject:
                units.append((message.subject, "subject", speaker or None))
            units.append((message.body, "body", speaker or None))
        if not messages and thread.snippet:
            units.append((thread.snippet, "body", None))

        for term, kind in vocabulary:
            record = _TermRecord(term=term, kind=kind)
            for text, source, speaker in units:
                hits = count_term(text, term)
                if not hits:
                    continue
                record.weight += hits
                record.sources.add(source)
                if speaker and speaker in people:
                    record.by_speaker[speaker] = record.by_speaker.get(speaker, 0) + hits
            if not record.weight:
                continue

            graph.add_node(
                GraphNode(
                    id=record.node_id,
                    kind=kind,
                    name=term,
                    properties={
                        "term": term,
                        "sources": sorted(record.sources),
                        "weight": record.weight,
                    },
                )
            )
            for speaker, hits in record.by_speaker.items():
                person_id = people[speaker].node_id
                graph.add_edge(
                    GraphEdge(
                        id=f"mentions:{person_id}->{record.node_id}",
                        source=person_id,
                        target=record.node_id,
                        kind="mentions",
                        properties={"weight": hits},
                    )
                )
