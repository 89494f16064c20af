"""JSON API routes for rule management and classification.

All responses use the {success, data, error} envelope. Domain exceptions
propagate to the handlers in web.errors, which pick the status code.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field

from graphclassifier.classifier.models import ClassificationResult
from graphclassifier.core.errors import RuleNotFoundError
from graphclassifier.core.logging import get_logger
from graphclassifier.db.store import RuleStore
from graphclassifier.engine.orchestrator import CONFIGURED, ClassificationEngine
from graphclassifier.web.app import VERSION
from graphclassifier.web.dependencies import get_engine, get_store
from graphclassifier.web.errors import envelope

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class ClassifyThreadRequest(BaseModel):
    """Request body for classifying one thread.

    The thread stays a raw object so malformed threads are reported by the
    engine as malformed_thread rather than as a generic request error.
    """

    thread: dict[str, Any]
    timeout_seconds: float | None = Field(default=None, gt=0)


class ClassifyBulkRequest(BaseModel):
    """Request body for bulk classification.

    Omitted timeouts fall back to config; an explicit null means unbounded.
    """

    threads: list[Any]
    concurrency: int | None = Field(default=None, ge=1, le=64)
    thread_timeout_seconds: float | None = Field(default=None, gt=0)
    bulk_timeout_seconds: float | None = Field(default=None, gt=0)


def _result_data(result: ClassificationResult) -> dict[str, Any]:
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(store: RuleStore = Depends(get_store)):
    """Health check endpoint for Docker and monitoring."""
    snapshot = await store.snapshot()
    return envelope(
        {
            "status": "healthy",
            "active_rules": len(snapshot),
            "version": VERSION,
        }
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@api_router.get("/rules")
async def list_rules(active_only: bool = False, store: RuleStore = Depends(get_store)):
    """List non-deleted rules in creation order."""
    rules = await store.list_rules(active_only=active_only)
    return envelope([rule.model_dump(mode="json") for rule in rules])


@api_router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, store: RuleStore = Depends(get_store)):
    """Fetch one rule."""
    rule = await store.get_rule(rule_id)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return envelope(rule.model_dump(mode="json"))


@api_router.post("/rules", status_code=201)
async def create_rule(
    body: dict[str, Any] = Body(...),  # noqa: B008
    store: RuleStore = Depends(get_store),
):
    """Validate and store a new rule. An optional 'id' picks the rule id."""
    data = dict(body)
    rule_id = data.pop("id", None)
    rule = await store.create_rule(data, rule_id=str(rule_id) if rule_id else None)
    return envelope(rule.model_dump(mode="json"))


@api_router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    body: dict[str, Any] = Body(...),  # noqa: B008
    store: RuleStore = Depends(get_store),
):
    """Apply a partial update to a rule."""
    rule = await store.update_rule(rule_id, body)
    return envelope(rule.model_dump(mode="json"))


@api_router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, store: RuleStore = Depends(get_store)):
    """Soft-delete a rule."""
    await store.delete_rule(rule_id)
    return envelope(None)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@api_router.post("/classify/thread")
async def classify_thread(
    body: ClassifyThreadRequest,
    engine: ClassificationEngine = Depends(get_engine),
):
    """Classify one thread. Labels are returned, never applied."""
    timeout = body.timeout_seconds if "timeout_seconds" in body.model_fields_set else CONFIGURED
    result = await engine.classify_thread(body.thread, timeout=timeout)
    return envelope(_result_data(result))


@api_router.post("/classify/bulk")
async def classify_bulk(
    body: ClassifyBulkRequest,
    engine: ClassificationEngine = Depends(get_engine),
):
    """Classify many threads; per-thread failures are reported in place."""
    fields = body.model_fields_set
    batch = await engine.classify_bulk(
        body.threads,
        concurrency=body.concurrency,
        thread_timeout=(
            body.thread_timeout_seconds if "thread_timeout_seconds" in fields else CONFIGURED
        ),
        bulk_timeout=body.bulk_timeout_seconds if "bulk_timeout_seconds" in fields else CONFIGURED,
    )

    results = []
    for item in batch.items:
        if isinstance(item, ClassificationResult):
            results.append({"status": "ok", "result": _result_data(item)})
        else:
            results.append({"status": "error", "error": item.to_dict()})

    return envelope(
        {
            "batch_id": batch.batch_id,
            "results": results,
            "cancelled": batch.cancelled,
            "timed_out": batch.timed_out,
            "duration_ms": batch.duration_ms,
        }
    )
