"""Tests for the classification orchestrator.

Tests cover:
- Single-thread classification end to end against a real Rule Store
- Timeouts, malformed input and internal failures as ThreadClassificationError
- Bulk ordering, per-item isolation, cancellation and the bulk timeout
- Snapshot isolation from rule edits made during a batch
- Long pattern searches stopped by the per-thread and bulk timeouts
- Batch and thread ids visible to log context in every worker
- Rule Store failures as EngineUnavailableError
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import (
    FakeSemanticMatcher,
    co_participant_cycle_rule,
    escalation_rule,
    escalation_thread,
    label,
    make_message,
    make_thread,
    make_thread_dict,
    misdirected_team_rule,
    split_team_graph,
    subject_rule,
    wide_thread,
)

from graphclassifier.classifier.models import ClassificationResult
from graphclassifier.config_schema import AppConfig
from graphclassifier.core.errors import (
    DatabaseError,
    EngineUnavailableError,
    ThreadClassificationError,
    ThreadErrorKind,
)
from graphclassifier.core.logging import get_correlation_id, get_thread_id, set_correlation_id
from graphclassifier.db.store import RuleStore
from graphclassifier.engine.orchestrator import ClassificationEngine
from graphclassifier.graph.builder import EntityGraphBuilder


def _ai_rule(name: str = "Escalation Tone", concept: str = "escalation") -> dict:
    return {
        "name": name,
        "labels": [label("L_AI", name)],
        "pattern": {
            "type": "ai",
            "conditions": [{"field": "thread.body", "operator": "ai_match", "value": concept}],
        },
    }


class EventSettingMatcher(FakeSemanticMatcher):
    """Sets an event on the given similarity call (1-based)."""

    def __init__(self, event: asyncio.Event, on_call: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.event = event
        self.on_call = on_call

    async def similarity(self, text: str, concept: str) -> float:
        if len(self.calls) + 1 == self.on_call:
            self.event.set()
        return await super().similarity(text, concept)


class StallingMatcher(FakeSemanticMatcher):
    """Hangs only on texts containing a marker."""

    def __init__(self, marker: str, **kwargs):
        super().__init__(**kwargs)
        self.marker = marker

    async def similarity(self, text: str, concept: str) -> float:
        if self.marker in text:
            await asyncio.sleep(5)
        return await super().similarity(text, concept)


class ContextRecordingMatcher(FakeSemanticMatcher):
    """Records the logging correlation and thread ids visible to each call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.correlation_ids: list[str | None] = []
        self.thread_ids: list[str | None] = []

    async def similarity(self, text: str, concept: str) -> float:
        self.correlation_ids.append(get_correlation_id())
        self.thread_ids.append(get_thread_id())
        return await super().similarity(text, concept)


class SplitTeamBuilder(EntityGraphBuilder):
    """Builds a bipartite people graph for the thread with id 'wide'."""

    def build(self, thread, vocabulary=None):
        if thread.id == "wide":
            return split_team_graph()
        return super().build(thread, vocabulary=vocabulary)


# ---------------------------------------------------------------------------
# Single thread
# ---------------------------------------------------------------------------


class TestClassifyThread:
    async def test_escalation_scenario(self, store: RuleStore):
        await store.create_rule(escalation_rule(), rule_id="escalation")
        engine = ClassificationEngine(store)

        result = await engine.classify_thread(escalation_thread())

        assert result.thread_id == "thread-esc"
        assert [(lbl.id, lbl.name) for lbl in result.labels] == [("Label_12", "Escalation")]
        assert result.confidence == 1.0
        assert result.reasoning == (
            "Rule 'Client Escalation' matched (100%) via person:jane@acme.com and company:Acme."
        )

    async def test_accepts_raw_dict(self, store: RuleStore):
        await store.create_rule(subject_rule("Invoices", "invoice", [label("L1", "Finance")]))
        engine = ClassificationEngine(store)

        result = await engine.classify_thread(make_thread_dict(subject="Invoice #42"))

        assert [lbl.name for lbl in result.labels] == ["Finance"]

    async def test_reclassification_is_idempotent(self, store: RuleStore):
        await store.create_rule(escalation_rule())
        engine = ClassificationEngine(store)
        thread = escalation_thread()

        first = await engine.classify_thread(thread)
        second = await engine.classify_thread(thread)

        assert first.model_dump(exclude={"applied_at"}) == second.model_dump(
            exclude={"applied_at"}
        )

    async def test_no_rules_yields_empty_result(self, store: RuleStore):
        engine = ClassificationEngine(store)
        result = await engine.classify_thread(escalation_thread())

        assert result.labels == []
        assert result.confidence == 0.0
        assert result.reasoning == "No classification rules matched this thread."

    async def test_inactive_rules_are_ignored(self, store: RuleStore):
        await store.create_rule(escalation_rule(is_active=False))
        result = await ClassificationEngine(store).classify_thread(escalation_thread())
        assert result.labels == []

    async def test_missing_id_is_malformed(self, store: RuleStore):
        engine = ClassificationEngine(store)
        with pytest.raises(ThreadClassificationError) as exc_info:
            await engine.classify_thread({"subject": "no id"})
        assert exc_info.value.kind == ThreadErrorKind.MALFORMED_THREAD
        assert exc_info.value.thread_id is None

    async def test_malformed_messages_keep_thread_id(self, store: RuleStore):
        engine = ClassificationEngine(store)
        with pytest.raises(ThreadClassificationError) as exc_info:
            await engine.classify_thread({"id": "t-bad", "messages": "not a list"})
        assert exc_info.value.kind == ThreadErrorKind.MALFORMED_THREAD
        assert exc_info.value.thread_id == "t-bad"

    async def test_slow_semantic_matcher_times_out(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        engine = ClassificationEngine(
            store, semantic_matcher=FakeSemanticMatcher({"escalation": 1.0}, delay=5)
        )

        with pytest.raises(ThreadClassificationError) as exc_info:
            await engine.classify_thread(escalation_thread(), timeout=0.05)

        assert exc_info.value.kind == ThreadErrorKind.TIMEOUT
        assert exc_info.value.thread_id == "thread-esc"

    async def test_configured_timeout_applies_by_default(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        config = AppConfig(engine={"thread_timeout_seconds": 0.05})
        engine = ClassificationEngine(
            store,
            config=config,
            semantic_matcher=FakeSemanticMatcher({"escalation": 1.0}, delay=5),
        )

        with pytest.raises(ThreadClassificationError) as exc_info:
            await engine.classify_thread(escalation_thread())
        assert exc_info.value.kind == ThreadErrorKind.TIMEOUT

    async def test_explicit_none_timeout_is_unbounded(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        config = AppConfig(engine={"thread_timeout_seconds": 0.01})
        engine = ClassificationEngine(
            store,
            config=config,
            semantic_matcher=FakeSemanticMatcher({"escalation": 1.0}, delay=0.05),
        )

        result = await engine.classify_thread(escalation_thread(), timeout=None)
        assert result.confidence == 1.0

    async def test_unexpected_failure_is_internal(self, store: RuleStore):
        builder = MagicMock()
        builder.build.side_effect = RuntimeError("boom")
        engine = ClassificationEngine(store, builder=builder)

        with pytest.raises(ThreadClassificationError) as exc_info:
            await engine.classify_thread(escalation_thread())
        assert exc_info.value.kind == ThreadErrorKind.INTERNAL

    async def test_store_failure_is_engine_unavailable(self):
        broken_store = AsyncMock()
        broken_store.snapshot.side_effect = DatabaseError("disk gone")
        engine = ClassificationEngine(broken_store)

        with pytest.raises(EngineUnavailableError):
            await engine.classify_thread(escalation_thread())


# ---------------------------------------------------------------------------
# Bulk
# ---------------------------------------------------------------------------


class TestClassifyBulk:
    async def test_results_in_input_order(self, store: RuleStore):
        await store.create_rule(subject_rule("Invoices", "invoice", [label("L1", "Finance")]))
        engine = ClassificationEngine(store)
        threads = [
            make_thread(thread_id=f"t{i}", subject="Invoice" if i % 2 else "Lunch")
            for i in range(10)
        ]

        batch = await engine.classify_bulk(threads, concurrency=3)

        assert [item.thread_id for item in batch.items] == [f"t{i}" for i in range(10)]
        assert [bool(item.labels) for item in batch.items] == [i % 2 == 1 for i in range(10)]
        assert not batch.cancelled
        assert not batch.timed_out
        assert batch.errors == []

    async def test_bad_items_do_not_affect_siblings(self, store: RuleStore):
        await store.create_rule(escalation_rule())
        engine = ClassificationEngine(store)

        batch = await engine.classify_bulk(
            [escalation_thread("a"), {"id": ""}, "not a thread", make_thread_dict("d")],
            concurrency=2,
        )

        assert isinstance(batch.items[0], ClassificationResult)
        assert batch.items[0].confidence == 1.0
        assert batch.items[1].kind == ThreadErrorKind.MALFORMED_THREAD
        assert batch.items[2].kind == ThreadErrorKind.MALFORMED_THREAD
        assert isinstance(batch.items[3], ClassificationResult)
        assert len(batch.results) == 2
        assert len(batch.errors) == 2

    async def test_empty_input(self, store: RuleStore):
        batch = await ClassificationEngine(store).classify_bulk([])
        assert batch.items == []
        assert batch.batch_id

    async def test_concurrency_must_be_positive(self, store: RuleStore):
        with pytest.raises(ValueError):
            await ClassificationEngine(store).classify_bulk([escalation_thread()], concurrency=0)

    async def test_per_thread_timeout_is_isolated(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        await store.create_rule(subject_rule("Invoices", "invoice", [label("L1", "Finance")]))
        engine = ClassificationEngine(
            store, semantic_matcher=StallingMatcher("ON HOLD", scores={"escalation": 1.0})
        )
        stuck = make_thread(
            thread_id="stuck",
            subject="Invoice 7",
            messages=[make_message("bob@globex.com", ["me@example.org"], body="ON HOLD")],
        )

        batch = await engine.classify_bulk(
            [escalation_thread("a"), stuck, escalation_thread("c")],
            concurrency=3,
            thread_timeout=0.2,
        )

        assert isinstance(batch.items[0], ClassificationResult)
        assert batch.items[1].kind == ThreadErrorKind.TIMEOUT
        assert batch.items[1].thread_id == "stuck"
        assert isinstance(batch.items[2], ClassificationResult)
        assert [lbl.id for lbl in batch.items[0].labels] == ["L_AI"]
        assert [lbl.id for lbl in batch.items[2].labels] == ["L_AI"]
        assert not batch.timed_out
        assert not batch.cancelled

    async def test_long_pattern_search_times_out_alone(self, store: RuleStore):
        await store.create_rule(escalation_rule())
        await store.create_rule(co_participant_cycle_rule())
        engine = ClassificationEngine(store, builder=SplitTeamBuilder())

        started = time.monotonic()
        batch = await engine.classify_bulk(
            [wide_thread(), escalation_thread("small")],
            concurrency=2,
            thread_timeout=0.5,
            bulk_timeout=10,
        )
        elapsed = time.monotonic() - started

        assert batch.items[0].kind == ThreadErrorKind.TIMEOUT
        assert batch.items[0].thread_id == "wide"
        assert isinstance(batch.items[1], ClassificationResult)
        assert [lbl.id for lbl in batch.items[1].labels] == ["Label_12"]
        assert not batch.timed_out
        assert elapsed < 3.0

    async def test_bulk_timeout_stops_long_pattern_search(self, store: RuleStore):
        await store.create_rule(co_participant_cycle_rule())
        engine = ClassificationEngine(store, builder=SplitTeamBuilder())

        started = time.monotonic()
        batch = await engine.classify_bulk(
            [wide_thread(), wide_thread("wide-2")],
            concurrency=1,
            thread_timeout=None,
            bulk_timeout=0.5,
        )

        assert batch.timed_out
        assert [item.kind for item in batch.items] == [
            ThreadErrorKind.TIMEOUT,
            ThreadErrorKind.CANCELLED,
        ]
        assert time.monotonic() - started < 3.0

    async def test_misdirected_edge_on_wide_thread_is_fast(self, store: RuleStore):
        await store.create_rule(escalation_rule())
        await store.create_rule(misdirected_team_rule())
        engine = ClassificationEngine(store)

        batch = await engine.classify_bulk(
            [wide_thread(), escalation_thread("small")],
            concurrency=2,
            thread_timeout=0.5,
            bulk_timeout=1.0,
        )

        assert not batch.timed_out
        assert batch.errors == []
        assert batch.items[0].labels == []
        assert [lbl.id for lbl in batch.items[1].labels] == ["Label_12"]

    async def test_pre_set_cancel_dispatches_nothing(self, store: RuleStore):
        await store.create_rule(escalation_rule())
        cancel = asyncio.Event()
        cancel.set()

        batch = await ClassificationEngine(store).classify_bulk(
            [escalation_thread("a"), escalation_thread("b")], cancel_event=cancel
        )

        assert batch.cancelled
        assert [item.kind for item in batch.items] == [
            ThreadErrorKind.CANCELLED,
            ThreadErrorKind.CANCELLED,
        ]

    async def test_cancel_mid_batch_finishes_current_thread(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        cancel = asyncio.Event()
        matcher = EventSettingMatcher(cancel, scores={"escalation": 1.0})
        engine = ClassificationEngine(store, semantic_matcher=matcher)

        batch = await engine.classify_bulk(
            [escalation_thread(f"t{i}") for i in range(4)],
            concurrency=1,
            cancel_event=cancel,
        )

        assert batch.cancelled
        assert isinstance(batch.items[0], ClassificationResult)
        assert [item.kind for item in batch.items[1:]] == [ThreadErrorKind.CANCELLED] * 3

    async def test_cancel_during_last_thread_is_not_cancelled(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        cancel = asyncio.Event()
        matcher = EventSettingMatcher(cancel, on_call=2, scores={"escalation": 1.0})
        engine = ClassificationEngine(store, semantic_matcher=matcher)

        batch = await engine.classify_bulk(
            [escalation_thread("a"), escalation_thread("b")],
            concurrency=1,
            cancel_event=cancel,
        )

        assert cancel.is_set()
        assert not batch.cancelled
        assert len(batch.results) == 2

    async def test_bulk_timeout_marks_in_flight_and_pending(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        engine = ClassificationEngine(
            store, semantic_matcher=FakeSemanticMatcher({"escalation": 1.0}, delay=5)
        )

        batch = await engine.classify_bulk(
            [escalation_thread(f"t{i}") for i in range(3)],
            concurrency=1,
            thread_timeout=None,
            bulk_timeout=0.1,
        )

        assert batch.timed_out
        assert [item.kind for item in batch.items] == [
            ThreadErrorKind.TIMEOUT,
            ThreadErrorKind.CANCELLED,
            ThreadErrorKind.CANCELLED,
        ]
        assert batch.items[0].thread_id == "t0"

    async def test_snapshot_taken_at_dispatch(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        engine = ClassificationEngine(
            store, semantic_matcher=FakeSemanticMatcher({"escalation": 1.0}, delay=0.05)
        )

        run = asyncio.create_task(
            engine.classify_bulk([escalation_thread(f"t{i}") for i in range(3)], concurrency=1)
        )
        await asyncio.sleep(0.01)
        await store.create_rule(subject_rule("Urgent", "urgent", [label("L_URG", "Urgent")]))
        batch = await run

        for item in batch.items:
            assert [lbl.id for lbl in item.labels] == ["L_AI"]

        after = await engine.classify_thread(escalation_thread())
        assert {lbl.id for lbl in after.labels} == {"L_AI", "L_URG"}

    async def test_store_failure_is_engine_unavailable(self):
        broken_store = AsyncMock()
        broken_store.snapshot.side_effect = DatabaseError("disk gone")

        with pytest.raises(EngineUnavailableError):
            await ClassificationEngine(broken_store).classify_bulk([escalation_thread()])

    async def test_batch_id_used_as_correlation_id(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        matcher = ContextRecordingMatcher(scores={"escalation": 1.0})
        engine = ClassificationEngine(store, semantic_matcher=matcher)
        set_correlation_id("outer-request")

        try:
            batch = await engine.classify_bulk(
                [escalation_thread("a"), escalation_thread("b")], concurrency=2
            )
            assert matcher.correlation_ids == [batch.batch_id, batch.batch_id]
            assert get_correlation_id() == "outer-request"
        finally:
            set_correlation_id(None)

    async def test_thread_id_bound_per_worker(self, store: RuleStore):
        await store.create_rule(_ai_rule())
        matcher = ContextRecordingMatcher(scores={"escalation": 1.0})
        engine = ClassificationEngine(store, semantic_matcher=matcher)

        await engine.classify_bulk(
            [escalation_thread("a"), escalation_thread("b"), escalation_thread("c")],
            concurrency=2,
        )
        single = await engine.classify_thread(escalation_thread("solo"))

        assert sorted(matcher.thread_ids) == ["a", "b", "c", "solo"]
        assert single.thread_id == "solo"
        assert get_thread_id() is None
