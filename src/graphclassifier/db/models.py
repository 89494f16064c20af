"""SQLite database schema and initialization for the Rule Store.

Tables:
- rules: one row per classification rule (pattern and labels as JSON)

Usage:
    from graphclassifier.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/rules.db")
"""

import stat
from pathlib import Path

import aiosqlite

from graphclassifier.core.errors import DatabaseError
from graphclassifier.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- User-authored classification rules
CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,                    -- Stable rule id
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    pattern_json TEXT NOT NULL,             -- RulePattern (nodes, edges, conditions)
    labels_json TEXT NOT NULL,              -- Target labels embedded in results
    is_active INTEGER DEFAULT 1,
    priority REAL,                          -- NULL = configured default weight
    ai_match_threshold REAL,                -- NULL = configured default cutoff
    version INTEGER DEFAULT 1,              -- Incremented on every update
    created_at TEXT NOT NULL,               -- ISO-8601 UTC, microsecond precision
    updated_at TEXT NOT NULL,               -- Strictly increasing per rule
    deleted_at TEXT                         -- Soft delete marker
);

-- Index for listing available rules
CREATE INDEX IF NOT EXISTS idx_rules_available ON rules(deleted_at, is_active);

-- Key-value metadata (schema version)
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the database with the complete schema.

    Creates all tables and indexes if they don't exist. Safe to call
    multiple times.

    Raises:
        DatabaseError: If initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.execute(
                "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            await db.commit()

        # Rule definitions can embed customer names; owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has the expected tables."""
    required_tables = ["rules", "store_meta"]

    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(required_tables) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False
            return True

    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False
