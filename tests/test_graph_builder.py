"""Tests for entity graph construction and text helpers.

Tests cover:
- Person deduplication by normalized address
- Company inference from domains (aliases, personal domains)
- co-participant, employed-by and mentions edges
- Vocabulary term weights and speaker attribution
- Determinism, message ordering, and totality on bad input
"""

from types import SimpleNamespace

from factories import escalation_thread, make_message, make_thread

from graphclassifier.config_schema import GraphConfig
from graphclassifier.graph.builder import EntityGraphBuilder, order_messages
from graphclassifier.graph.text import (
    company_name_from_domain,
    count_term,
    normalize_email,
    normalize_name,
    normalize_subject,
)


def _builder(**vocab) -> EntityGraphBuilder:
    return EntityGraphBuilder.from_config(
        GraphConfig(
            company_aliases={"acme-corp.io": "Acme"},
            vocabulary={"projects": vocab.get("projects", ["Phoenix"]), "topics": []},
        )
    )


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


class TestTextHelpers:
    def test_normalize_name_collapses_whitespace(self):
        assert normalize_name("  Jane   DOE ") == "jane doe"

    def test_normalize_email_rejects_invalid(self):
        assert normalize_email(" Jane@ACME.com ") == "jane@acme.com"
        assert normalize_email("not-an-address") == ""
        assert normalize_email("@acme.com") == ""

    def test_normalize_subject_strips_prefixes(self):
        assert normalize_subject("RE: Fwd: Budget") == "budget"

    def test_company_name_from_domain(self):
        assert company_name_from_domain("acme.com") == "Acme"
        assert company_name_from_domain("mail.acme.co.uk") == "Acme"
        assert company_name_from_domain("big-corp.io") == "Big Corp"
        assert company_name_from_domain("acme-corp.io", {"acme-corp.io": "Acme"}) == "Acme"

    def test_count_term_whole_words_only(self):
        text = "Phoenix, phoenix and PHOENIX. Not Phoenixes."
        assert count_term(text, "Phoenix") == 3

    def test_count_term_empty_inputs(self):
        assert count_term("", "Phoenix") == 0
        assert count_term("Phoenix", "  ") == 0


# ---------------------------------------------------------------------------
# People and companies
# ---------------------------------------------------------------------------


class TestPeopleAndCompanies:
    def test_person_nodes_deduplicated_by_address(self):
        thread = make_thread(
            messages=[
                make_message("Jane@Acme.com", ["bob@client.com"], sender_name="Jane Doe"),
                make_message("jane@acme.com", ["BOB@client.com"], minutes=5),
            ]
        )
        graph = _builder().build(thread)

        people = graph.nodes_of_kind("person")
        assert [p.id for p in people] == ["person:jane@acme.com", "person:bob@client.com"]
        jane = graph.nodes["person:jane@acme.com"]
        assert jane.name == "Jane Doe"
        assert jane.properties["message_count"] == 2
        assert jane.weight == 2
        assert jane.properties["roles"] == ["from"]

    def test_company_inferred_from_domain(self):
        graph = _builder().build(escalation_thread())

        acme = graph.nodes["company:acme"]
        assert acme.name == "Acme"
        assert acme.properties["domain"] == "acme.com"
        assert graph.edges_between("person:jane@acme.com", "company:acme", "employed-by")

    def test_personal_domains_produce_no_company(self):
        thread = make_thread(messages=[make_message("someone@gmail.com", ["jane@acme.com"])])
        graph = _builder().build(thread)

        assert [c.id for c in graph.nodes_of_kind("company")] == ["company:acme"]
        assert not graph.edges_between("person:someone@gmail.com", "company:acme")

    def test_alias_domains_merge_into_one_company(self):
        thread = make_thread(
            messages=[make_message("jane@acme.com", ["ops@acme-corp.io", "x@other.net"])]
        )
        graph = _builder().build(thread)

        acme = graph.nodes["company:acme"]
        assert acme.weight == 2
        assert acme.properties["domains"] == ["acme.com", "acme-corp.io"]
        assert graph.edges_between("person:ops@acme-corp.io", "company:acme", "employed-by")

    def test_co_participant_edges_in_both_directions(self):
        graph = _builder().build(escalation_thread())

        forward = graph.edges_between(
            "person:jane@acme.com", "person:me@example.org", "co-participant"
        )
        backward = graph.edges_between(
            "person:me@example.org", "person:jane@acme.com", "co-participant"
        )
        assert len(forward) == 1 and len(backward) == 1
        assert forward[0].id == backward[0].id
        assert forward[0].properties["weight"] == 2


# ---------------------------------------------------------------------------
# Vocabulary terms
# ---------------------------------------------------------------------------


class TestVocabulary:
    def test_project_weight_counts_all_mentions(self):
        graph = _builder().build(escalation_thread())

        phoenix = graph.nodes["project:phoenix"]
        assert phoenix.name == "Phoenix"
        assert phoenix.weight == 3
        assert phoenix.properties["sources"] == ["body", "subject"]

    def test_mentions_edges_attributed_to_speakers(self):
        graph = _builder().build(escalation_thread())

        jane = graph.edges_between("person:jane@acme.com", "project:phoenix", "mentions")
        me = graph.edges_between("person:me@example.org", "project:phoenix", "mentions")
        # Jane sent the first message, so the thread subject counts for her
        assert jane[0].properties["weight"] == 2
        assert me[0].properties["weight"] == 1

    def test_unmentioned_terms_create_no_nodes(self):
        graph = _builder(projects=["Atlas"]).build(escalation_thread())
        assert graph.nodes_of_kind("project") == []

    def test_extra_vocabulary_from_rules(self):
        graph = _builder(projects=[]).build(
            escalation_thread(), vocabulary={"rollout": "topic"}
        )
        assert graph.nodes["topic:rollout"].weight == 2

    def test_snippet_used_when_thread_has_no_messages(self):
        thread = make_thread(subject="", snippet="Phoenix kickoff notes")
        graph = _builder().build(thread)
        assert graph.nodes["project:phoenix"].weight == 1
        assert graph.nodes_of_kind("person") == []


# ---------------------------------------------------------------------------
# Determinism and robustness
# ---------------------------------------------------------------------------


class TestRobustness:
    def test_empty_thread_yields_empty_graph(self):
        graph = _builder().build(make_thread(subject=""))
        assert graph.is_empty()
        assert graph.edges == []

    def test_build_is_deterministic(self):
        thread = escalation_thread()
        first = _builder().build(thread)
        second = _builder().build(thread)

        assert list(first.nodes) == list(second.nodes)
        assert [e.id for e in first.edges] == [e.id for e in second.edges]

    def test_thread_is_not_mutated(self):
        thread = escalation_thread()
        before = thread.model_dump()
        _builder().build(thread)
        assert thread.model_dump() == before

    def test_malformed_input_yields_empty_graph(self):
        broken = SimpleNamespace(id="broken", subject="", participants=[], messages=None)
        graph = _builder().build(broken)
        assert graph.is_empty()

    def test_order_messages_by_timestamp_undated_last(self):
        late = make_message("a@x.com", [], minutes=10, msg_id="late")
        early = make_message("a@x.com", [], minutes=0, msg_id="early")
        undated = {**make_message("a@x.com", [], msg_id="undated"), "timestamp": None}
        thread = make_thread(messages=[undated, late, early])

        ordered = order_messages(thread.messages)
        assert [m.id for m in ordered] == ["early", "late", "undated"]
