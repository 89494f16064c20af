"""Rule Store with CRUD operations and immutable snapshots.

Rules are persisted in SQLite via aiosqlite. Writers serialize on an
asyncio.Lock held only for a single mutation; readers never take it.
The classification engine reads rules exclusively through `snapshot()`,
which returns an immutable view, so in-flight classifications are insulated
from concurrent rule edits and a new batch picks up the latest rules.

Usage:
    from graphclassifier.db.store import RuleStore

    store = RuleStore("data/rules.db")
    await store.initialize()

    rule = await store.create_rule({"name": "Escalations", "pattern": {...}})
    await store.update_rule(rule.id, {"is_active": False})
    snapshot = await store.snapshot()
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import ValidationError

from graphclassifier.classifier.rules import (
    ClassificationRule,
    RuleDraft,
    RuleUpdate,
    format_field_path,
    parse_rule_draft,
    parse_rule_update,
    validate_pattern,
)
from graphclassifier.core.errors import DatabaseError, InvalidRuleError, RuleNotFoundError
from graphclassifier.core.logging import get_logger
from graphclassifier.db.models import init_database

logger = get_logger(__name__)

_RULE_COLUMNS = (
    "id, name, description, pattern_json, labels_json, is_active, priority, "
    "ai_match_threshold, version, created_at, updated_at, deleted_at"
)


@dataclass(frozen=True, slots=True)
class RuleSnapshot:
    """Immutable view of the available rules at one point in time.

    Attributes:
        rules: Active, non-deleted rules in creation order
        taken_at: When the snapshot was read
    """

    rules: tuple[ClassificationRule, ...]
    taken_at: datetime

    @property
    def vocabulary(self) -> dict[str, str]:
        """Project/topic terms named by the rules' node templates (term -> kind)."""
        terms: dict[str, str] = {}
        for rule in self.rules:
            for term, kind in rule.pattern.vocabulary_terms().items():
                terms.setdefault(term, kind)
        return terms

    def __len__(self) -> int:
        return len(self.rules)


def _next_timestamp(previous: datetime | None = None) -> datetime:
    """Current UTC time, forced strictly after `previous`."""
    now = datetime.now(UTC)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class RuleStore:
    """Persistent store for classification rules.

    Attributes:
        db_path: Path to the SQLite database file
        _write_lock: Serializes create/update/delete
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _row_to_rule(row: aiosqlite.Row) -> ClassificationRule:
        return ClassificationRule(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            pattern=json.loads(row["pattern_json"]),
            labels=json.loads(row["labels_json"]),
            is_active=bool(row["is_active"]),
            priority=row["priority"],
            ai_match_threshold=row["ai_match_threshold"],
            version=row["version"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            deleted_at=_parse_dt(row["deleted_at"]),
        )

    @staticmethod
    def _rule_params(rule: ClassificationRule) -> tuple[Any, ...]:
        return (
            rule.id,
            rule.name,
            rule.description,
            json.dumps(rule.pattern.model_dump(mode="json")),
            json.dumps([label.model_dump(mode="json") for label in rule.labels]),
            1 if rule.is_active else 0,
            rule.priority,
            rule.ai_match_threshold,
            rule.version,
            rule.created_at.isoformat(),
            rule.updated_at.isoformat(),
            rule.deleted_at.isoformat() if rule.deleted_at else None,
        )

    async def _fetch_rule(
        self,
        db: aiosqlite.Connection,
        rule_id: str,
        include_deleted: bool = False,
    ) -> ClassificationRule | None:
        query = f"SELECT {_RULE_COLUMNS} FROM rules WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        cursor = await db.execute(query, (rule_id,))
        row = await cursor.fetchone()
        return self._row_to_rule(row) if row else None

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_rule(
        self,
        draft: RuleDraft | dict[str, Any],
        rule_id: str | None = None,
    ) -> ClassificationRule:
        """Validate and store a new rule.

        Args:
            draft: Rule content (RuleDraft or raw dict)
            rule_id: Optional caller-chosen id (a UUID4 is generated otherwise)

        Returns:
            The stored rule with id, version and timestamps

        Raises:
            InvalidRuleError: If validation fails or the id is taken (nothing written)
            DatabaseError: If the insert fails
        """
        draft = parse_rule_draft(draft)
        rule_id = rule_id or str(uuid.uuid4())
        if not rule_id.strip():
            raise InvalidRuleError("id", "rule id cannot be empty")

        async with self._write_lock:
            try:
                async with self._db() as db:
                    if await self._fetch_rule(db, rule_id, include_deleted=True):
                        raise InvalidRuleError("id", f"rule id '{rule_id}' already exists")

                    now = _next_timestamp()
                    rule = ClassificationRule(
                        **draft.model_dump(),
                        id=rule_id,
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                    await db.execute(
                        f"INSERT INTO rules ({_RULE_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        self._rule_params(rule),
                    )
                    await db.commit()

            except aiosqlite.Error as e:
                logger.error("Failed to create rule", rule_id=rule_id, error=str(e))
                raise DatabaseError(f"Failed to create rule: {e}") from e

        logger.info(
            "rule_created",
            rule_id=rule.id,
            rule_name=rule.name,
            nodes=len(rule.pattern.nodes),
            conditions=len(rule.pattern.conditions),
        )
        return rule

    async def update_rule(
        self,
        rule_id: str,
        changes: RuleUpdate | dict[str, Any],
    ) -> ClassificationRule:
        """Apply a partial update to an existing rule.

        Bumps `version` and sets `updated_at` strictly after its previous value.

        Raises:
            RuleNotFoundError: If the rule does not exist or was deleted
            InvalidRuleError: If the merged rule fails validation (nothing written)
            DatabaseError: If the update fails
        """
        changes = parse_rule_update(changes)

        async with self._write_lock:
            try:
                async with self._db() as db:
                    current = await self._fetch_rule(db, rule_id)
                    if current is None:
                        raise RuleNotFoundError(rule_id)

                    merged = current.model_dump()
                    merged.update(changes.model_dump(exclude_unset=True))
                    merged["version"] = current.version + 1
                    merged["updated_at"] = _next_timestamp(current.updated_at)
                    try:
                        rule = ClassificationRule.model_validate(merged)
                    except ValidationError as e:
                        first = e.errors()[0]
                        raise InvalidRuleError(
                            format_field_path(tuple(first["loc"])), first["msg"]
                        ) from e
                    validate_pattern(rule.pattern)

                    # params: id, name .. version, created_at, updated_at, deleted_at
                    params = self._rule_params(rule)
                    cursor = await db.execute(
                        """
                        UPDATE rules SET
                            name = ?, description = ?, pattern_json = ?, labels_json = ?,
                            is_active = ?, priority = ?, ai_match_threshold = ?,
                            version = ?, updated_at = ?
                        WHERE id = ? AND version = ?
                        """,
                        (*params[1:9], params[10], rule_id, current.version),
                    )
                    if cursor.rowcount != 1:
                        raise DatabaseError(
                            f"Rule {rule_id} changed during update (expected version "
                            f"{current.version})"
                        )
                    await db.commit()

            except aiosqlite.Error as e:
                logger.error("Failed to update rule", rule_id=rule_id, error=str(e))
                raise DatabaseError(f"Failed to update rule: {e}") from e

        logger.info("rule_updated", rule_id=rule_id, version=rule.version)
        return rule

    async def get_rule(self, rule_id: str) -> ClassificationRule | None:
        """Get a rule by id.

        Returns:
            The rule, or None if it does not exist or was deleted
        """
        try:
            async with self._db() as db:
                return await self._fetch_rule(db, rule_id)
        except aiosqlite.Error as e:
            logger.error("Failed to get rule", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to get rule: {e}") from e

    async def list_rules(self, active_only: bool = False) -> list[ClassificationRule]:
        """List non-deleted rules in creation order.

        Args:
            active_only: Only include rules with is_active set

        Rows that no longer parse are skipped and logged.
        """
        query = f"SELECT {_RULE_COLUMNS} FROM rules WHERE deleted_at IS NULL"
        if active_only:
            query += " AND is_active = 1"
        # Creation order
        query += " ORDER BY rowid"

        try:
            async with self._db() as db:
                cursor = await db.execute(query)
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("Failed to list rules", error=str(e))
            raise DatabaseError(f"Failed to list rules: {e}") from e

        rules: list[ClassificationRule] = []
        for row in rows:
            try:
                rules.append(self._row_to_rule(row))
            except (ValidationError, ValueError) as e:
                logger.error("stored_rule_unreadable", rule_id=row["id"], error=str(e))
        return rules

    async def delete_rule(self, rule_id: str) -> None:
        """Soft-delete a rule.

        The rule disappears from get/list/snapshot immediately. Results that
        were produced with it are unaffected since they embed label data.

        Raises:
            RuleNotFoundError: If the rule does not exist or was already deleted
            DatabaseError: If the update fails
        """
        async with self._write_lock:
            try:
                async with self._db() as db:
                    current = await self._fetch_rule(db, rule_id)
                    if current is None:
                        raise RuleNotFoundError(rule_id)

                    now = _next_timestamp(current.updated_at)
                    await db.execute(
                        """
                        UPDATE rules SET deleted_at = ?, updated_at = ?, version = version + 1
                        WHERE id = ?
                        """,
                        (now.isoformat(), now.isoformat(), rule_id),
                    )
                    await db.commit()

            except aiosqlite.Error as e:
                logger.error("Failed to delete rule", rule_id=rule_id, error=str(e))
                raise DatabaseError(f"Failed to delete rule: {e}") from e

        logger.info("rule_deleted", rule_id=rule_id)

    async def snapshot(self) -> RuleSnapshot:
        """Read the currently available rules as one immutable snapshot.

        Raises:
            DatabaseError: If the store cannot be read
        """
        rules = await self.list_rules(active_only=True)
        return RuleSnapshot(rules=tuple(rules), taken_at=datetime.now(UTC))
