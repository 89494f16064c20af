"""Classification orchestration for single threads and bulk batches."""

from graphclassifier.engine.orchestrator import (
    CONFIGURED,
    BulkClassificationResult,
    ClassificationEngine,
    coerce_thread,
)

__all__ = [
    "CONFIGURED",
    "BulkClassificationResult",
    "ClassificationEngine",
    "coerce_thread",
]
