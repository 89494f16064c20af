"""Classification orchestrator for single threads and bulk batches.

Pipeline per thread:
1. Validate the input (EmailThread or raw dict)
2. Build the entity graph (vocabulary includes terms named by the rules)
3. Match every active rule from the snapshot against the graph
4. Aggregate witnesses into a ClassificationResult

Bulk runs take one Rule Store snapshot at dispatch time and hand it to a
fixed-size pool of worker tasks pulling thread indices from a queue. Each
input slot ends up holding either a ClassificationResult or a
ThreadClassificationError, in input order, so one bad thread never affects
its siblings.

Each bulk run generates a UUID4 classification_batch_id for log correlation.
Worker tasks inherit it through the logging contextvar, and each thread's
classification binds its thread_id there as well.

Usage:
    from graphclassifier.engine.orchestrator import ClassificationEngine

    engine = ClassificationEngine(rule_store, config=app_config)
    result = await engine.classify_thread(thread)
    batch = await engine.classify_bulk(threads, concurrency=4)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import ValidationError

from graphclassifier.classifier.matcher import PatternMatcher
from graphclassifier.classifier.models import ClassificationResult, EmailThread
from graphclassifier.classifier.scorer import aggregate
from graphclassifier.config_schema import AppConfig
from graphclassifier.core.errors import (
    DatabaseError,
    EngineUnavailableError,
    ThreadClassificationError,
    ThreadErrorKind,
)
from graphclassifier.core.logging import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    thread_context,
)
from graphclassifier.graph.builder import EntityGraphBuilder

if TYPE_CHECKING:
    from graphclassifier.classifier.conditions import SemanticMatcher
    from graphclassifier.db.store import RuleSnapshot, RuleStore

logger = get_logger(__name__)


class _Default(Enum):
    CONFIGURED = "configured"


# Timeout argument meaning "use the value from config.engine"
CONFIGURED = _Default.CONFIGURED

Timeout = float | None | Literal[_Default.CONFIGURED]
ThreadInput = EmailThread | Mapping[str, Any]
SlotResult = ClassificationResult | ThreadClassificationError


@dataclass
class BulkClassificationResult:
    """Outcome of one bulk run.

    Attributes:
        batch_id: classification_batch_id used in logs
        items: One entry per input thread, in input order
        cancelled: The cancel signal left at least one thread undispatched
        timed_out: The bulk timeout expired
        duration_ms: Wall time of the run
    """

    batch_id: str
    items: list[SlotResult] = field(default_factory=list)
    cancelled: bool = False
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def results(self) -> list[ClassificationResult]:
        return [item for item in self.items if isinstance(item, ClassificationResult)]

    @property
    def errors(self) -> list[ThreadClassificationError]:
        return [item for item in self.items if isinstance(item, ThreadClassificationError)]


def _thread_id_of(thread: Any) -> str | None:
    if isinstance(thread, EmailThread):
        return thread.id
    if isinstance(thread, Mapping):
        value = thread.get("id")
        return value if isinstance(value, str) and value else None
    return None


def coerce_thread(thread: ThreadInput) -> EmailThread:
    """Validate a raw thread payload.

    Raises:
        ThreadClassificationError: kind MALFORMED_THREAD if validation fails
    """
    if isinstance(thread, EmailThread):
        return thread
    thread_id = _thread_id_of(thread)
    if not isinstance(thread, Mapping):
        raise ThreadClassificationError(
            f"Expected a thread object, got {type(thread).__name__}",
            thread_id=thread_id,
            kind=ThreadErrorKind.MALFORMED_THREAD,
        )
    try:
        return EmailThread.model_validate(dict(thread))
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "thread"
        raise ThreadClassificationError(
            f"Malformed thread: {location}: {first['msg']}",
            thread_id=thread_id,
            kind=ThreadErrorKind.MALFORMED_THREAD,
        ) from e


class ClassificationEngine:
    """Classifies threads against the rules in a RuleStore.

    Attributes:
        _store: Rule Store (read only through snapshots)
        _config: Application configuration
        _builder: Entity Graph Builder
        _matcher: Pattern Matcher (owns the Semantic Matcher)
    """

    def __init__(
        self,
        rule_store: RuleStore,
        config: AppConfig | None = None,
        semantic_matcher: SemanticMatcher | None = None,
        builder: EntityGraphBuilder | None = None,
    ):
        self._store = rule_store
        self._config = config or AppConfig()
        self._builder = builder or EntityGraphBuilder.from_config(self._config.graph)
        self._matcher = PatternMatcher.from_config(self._config.matching, semantic_matcher)

    @property
    def config(self) -> AppConfig:
        return self._config

    async def _load_snapshot(self) -> RuleSnapshot:
        try:
            return await self._store.snapshot()
        except DatabaseError as e:
            logger.error("rule_snapshot_failed", error=str(e))
            raise EngineUnavailableError(f"Rule Store is unavailable: {e}") from e

    def _resolve(self, value: Timeout, configured: float | None) -> float | None:
        return configured if value is CONFIGURED else value

    # =========================================================================
    # Single thread
    # =========================================================================

    async def classify_thread(
        self,
        thread: ThreadInput,
        timeout: Timeout = CONFIGURED,
    ) -> ClassificationResult:
        """Classify one thread against the current rules.

        Args:
            thread: EmailThread or raw dict payload
            timeout: Seconds allowed (None = unbounded, default from config)

        Returns:
            ClassificationResult (empty labels with confidence 0.0 if nothing matched)

        Raises:
            ThreadClassificationError: On timeout or malformed input
            EngineUnavailableError: If the Rule Store cannot be read
        """
        parsed = coerce_thread(thread)
        snapshot = await self._load_snapshot()
        timeout = self._resolve(timeout, self._config.engine.thread_timeout_seconds)
        return await self._classify_bounded(parsed, snapshot, timeout)

    async def _classify_bounded(
        self,
        thread: EmailThread,
        snapshot: RuleSnapshot,
        timeout: float | None,
    ) -> ClassificationResult:
        with thread_context(thread.id):
            try:
                if timeout is None:
                    return await self._classify(thread, snapshot)
                return await asyncio.wait_for(self._classify(thread, snapshot), timeout=timeout)
            except TimeoutError as e:
                logger.warning(
                    "thread_classification_timeout", thread_id=thread.id, timeout=timeout
                )
                raise ThreadClassificationError(
                    f"Classifying thread {thread.id} exceeded {timeout}s",
                    thread_id=thread.id,
                    kind=ThreadErrorKind.TIMEOUT,
                ) from e
            except ThreadClassificationError:
                raise
            except Exception as e:
                logger.exception("thread_classification_failed", thread_id=thread.id)
                raise ThreadClassificationError(
                    f"Classifying thread {thread.id} failed: {e}",
                    thread_id=thread.id,
                    kind=ThreadErrorKind.INTERNAL,
                ) from e

    async def _classify(self, thread: EmailThread, snapshot: RuleSnapshot) -> ClassificationResult:
        graph = self._builder.build(thread, vocabulary=snapshot.vocabulary)

        witnesses = []
        for rule in snapshot.rules:
            witnesses.extend(await self._matcher.match(rule, graph, thread))

        outcome = aggregate(witnesses, default_priority=self._config.scoring.default_priority)

        logger.info(
            "thread_classified",
            thread_id=thread.id,
            rules=len(snapshot),
            contributing_rules=len(outcome.contributions),
            labels=[label.id for label in outcome.labels],
            confidence=round(outcome.confidence, 3),
        )
        return ClassificationResult(
            thread_id=thread.id,
            labels=outcome.labels,
            confidence=outcome.confidence,
            reasoning=outcome.reasoning,
            applied_at=datetime.now(UTC),
        )

    # =========================================================================
    # Bulk
    # =========================================================================

    async def classify_bulk(
        self,
        threads: Iterable[ThreadInput],
        concurrency: int | None = None,
        thread_timeout: Timeout = CONFIGURED,
        bulk_timeout: Timeout = CONFIGURED,
        cancel_event: asyncio.Event | None = None,
    ) -> BulkClassificationResult:
        """Classify many threads with bounded concurrency.

        Args:
            threads: EmailThreads or raw dict payloads
            concurrency: Worker count (default from config)
            thread_timeout: Per-thread bound (None = unbounded, default from config)
            bulk_timeout: Whole-run bound (None = unbounded, default from config)
            cancel_event: When set, workers finish their current thread and stop

        Returns:
            BulkClassificationResult with one slot per input, in input order

        Raises:
            EngineUnavailableError: If the Rule Store cannot be read
            ValueError: If concurrency is less than 1
        """
        workers_wanted = concurrency if concurrency is not None else self._config.engine.concurrency
        if workers_wanted < 1:
            raise ValueError(f"concurrency must be at least 1, got {workers_wanted}")
        thread_timeout = self._resolve(thread_timeout, self._config.engine.thread_timeout_seconds)
        bulk_timeout = self._resolve(bulk_timeout, self._config.engine.bulk_timeout_seconds)
        cancel_event = cancel_event or asyncio.Event()

        batch_id = str(uuid.uuid4())
        previous_correlation_id = get_correlation_id()
        set_correlation_id(batch_id)
        start_time = time.monotonic()

        try:
            inputs = list(threads)
            snapshot = await self._load_snapshot()

            logger.info(
                "bulk_classification_start",
                threads=len(inputs),
                concurrency=workers_wanted,
                rules=len(snapshot),
                thread_timeout=thread_timeout,
                bulk_timeout=bulk_timeout,
            )

            slots: list[SlotResult | None] = [None] * len(inputs)
            queue: asyncio.Queue[int] = asyncio.Queue()
            for index in range(len(inputs)):
                queue.put_nowait(index)
            # worker number -> index of the thread it is classifying
            in_flight: dict[int, int] = {}

            async def worker(number: int) -> None:
                while not cancel_event.is_set():
                    try:
                        index = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    in_flight[number] = index
                    slots[index] = await self._classify_slot(
                        inputs[index], snapshot, thread_timeout
                    )
                    del in_flight[number]

            tasks = [
                asyncio.create_task(worker(number))
                for number in range(min(workers_wanted, len(inputs)))
            ]
            timed_out = False
            try:
                if tasks:
                    _, pending = await asyncio.wait(tasks, timeout=bulk_timeout)
                    if pending:
                        timed_out = True
                        for task in pending:
                            task.cancel()
                        await asyncio.gather(*pending, return_exceptions=True)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()

            for index in in_flight.values():
                slots[index] = ThreadClassificationError(
                    f"Bulk classification exceeded {bulk_timeout}s",
                    thread_id=_thread_id_of(inputs[index]),
                    kind=ThreadErrorKind.TIMEOUT,
                )
            # Only undispatched threads are still empty here
            cancelled = cancel_event.is_set() and any(slot is None for slot in slots)
            items: list[SlotResult] = [
                slot
                if slot is not None
                else ThreadClassificationError(
                    "Thread was not dispatched before the batch stopped",
                    thread_id=_thread_id_of(inputs[index]),
                    kind=ThreadErrorKind.CANCELLED,
                )
                for index, slot in enumerate(slots)
            ]

            result = BulkClassificationResult(
                batch_id=batch_id,
                items=items,
                cancelled=cancelled,
                timed_out=timed_out,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            logger.info(
                "bulk_classification_complete",
                threads=len(items),
                classified=len(result.results),
                failed=len(result.errors),
                cancelled=cancelled,
                timed_out=timed_out,
                duration_ms=result.duration_ms,
            )
            return result
        finally:
            set_correlation_id(previous_correlation_id)

    async def _classify_slot(
        self,
        thread: ThreadInput,
        snapshot: RuleSnapshot,
        timeout: float | None,
    ) -> SlotResult:
        """Classify one bulk item, returning failures instead of raising."""
        try:
            parsed = coerce_thread(thread)
            return await self._classify_bounded(parsed, snapshot, timeout)
        except ThreadClassificationError as e:
            logger.warning(
                "bulk_item_failed",
                thread_id=e.thread_id,
                kind=e.kind.value,
                error=str(e),
            )
            return e
