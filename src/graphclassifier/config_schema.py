"""Pydantic configuration schema for the graph rule classifier.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and reload.

Usage:
    from graphclassifier.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Free-mail providers whose domains never produce company nodes
DEFAULT_PERSONAL_DOMAINS = [
    "gmail.com",
    "googlemail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "live.com",
    "icloud.com",
    "me.com",
    "aol.com",
    "proton.me",
    "protonmail.com",
    "gmx.com",
]


class EngineConfig(BaseModel):
    """Classification orchestrator configuration."""

    concurrency: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Worker pool width for bulk classification",
    )
    thread_timeout_seconds: float | None = Field(
        default=30.0,
        gt=0,
        description="Upper bound for classifying a single thread (None = unbounded)",
    )
    bulk_timeout_seconds: float | None = Field(
        default=300.0,
        gt=0,
        description="Upper bound for a whole bulk classification (None = unbounded)",
    )


class VocabularyConfig(BaseModel):
    """Project and topic terms recognised in every thread.

    Rule templates contribute further terms at snapshot time.
    """

    projects: list[str] = Field(default_factory=list, description="Project names")
    topics: list[str] = Field(default_factory=list, description="Topic keywords or phrases")

    @field_validator("projects", "topics")
    @classmethod
    def validate_terms(cls, v: list[str]) -> list[str]:
        """Reject blank vocabulary terms."""
        for term in v:
            if not term or not term.strip():
                raise ValueError("Vocabulary terms cannot be empty")
        return v


class GraphConfig(BaseModel):
    """Entity graph builder configuration."""

    personal_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PERSONAL_DOMAINS),
        description="Mail domains that never produce company nodes",
    )
    company_aliases: dict[str, str] = Field(
        default_factory=dict,
        description="Domain -> company display name overrides (e.g. 'acme-corp.io': 'Acme')",
    )
    vocabulary: VocabularyConfig = Field(default_factory=VocabularyConfig)

    @field_validator("personal_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        """Lowercase domains so lookups are case-insensitive."""
        return [d.strip().lower() for d in v if d and d.strip()]

    @field_validator("company_aliases")
    @classmethod
    def normalize_alias_keys(cls, v: dict[str, str]) -> dict[str, str]:
        """Lowercase alias domains."""
        return {domain.strip().lower(): name for domain, name in v.items()}


class MatchingConfig(BaseModel):
    """Pattern matcher configuration."""

    ai_match_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Default similarity cutoff for ai_match conditions",
    )
    regex_timeout_seconds: float = Field(
        default=1.0,
        gt=0,
        le=10,
        description="Timeout for a single regex condition evaluation",
    )
    semantic_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Timeout for one Semantic Matcher call (None = bounded by thread timeout)",
    )
    max_witnesses_per_rule: int = Field(
        default=50,
        ge=1,
        le=10000,
        description="Stop enumerating bindings for a rule after this many witnesses",
    )


class ScoringConfig(BaseModel):
    """Scorer & aggregator configuration."""

    default_priority: float = Field(
        default=1.0,
        gt=0,
        le=100,
        description="Rule weight used when a rule does not set a priority",
    )


class RuleStoreConfig(BaseModel):
    """Rule Store persistence configuration."""

    db_path: str = Field(
        default="data/rules.db",
        description="Path to the SQLite rule database",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Log output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(default=True, description="JSON logs (False = console)")


class AppConfig(BaseModel):
    """Root configuration schema for the graph rule classifier.

    If validation fails on startup, the application exits with a clear error.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    rule_store: RuleStoreConfig = Field(default_factory=RuleStoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
