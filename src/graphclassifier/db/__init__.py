"""Rule Store persistence layer.

This module provides SQLite-backed rule storage with async operations.

Usage:
    from graphclassifier.db import RuleStore

    store = RuleStore("data/rules.db")
    await store.initialize()

    rule = await store.create_rule({"name": "Escalations", "labels": [...], "pattern": {...}})
    snapshot = await store.snapshot()
"""

from graphclassifier.db.models import SCHEMA_VERSION, init_database, verify_schema
from graphclassifier.db.store import RuleSnapshot, RuleStore

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "RuleSnapshot",
    "RuleStore",
]
