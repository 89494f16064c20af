"""Custom exception types for the graph rule classifier.

Error messages state what failed, where, and why. Exceptions carry structured
attributes so the HTTP layer and CLI can render them without parsing strings.
"""

from __future__ import annotations

from enum import StrEnum


class ClassifierError(Exception):
    """Base exception for all graph rule classifier errors."""

    pass


class ConfigValidationError(ClassifierError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(ClassifierError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(ClassifierError):
    """Raised when SQLite operations fail."""

    pass


class InvalidRuleError(ClassifierError):
    """Raised when a rule definition fails structural or compilation validation.

    Nothing is written to the Rule Store when this is raised.

    Attributes:
        field: Path of the offending field relative to the pattern
            (e.g. 'conditions[0].value', 'edges[1].target')
        reason: Why the field was rejected
    """

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid rule field '{field}': {reason}")
        self.field = field
        self.reason = reason


class RuleNotFoundError(ClassifierError):
    """Raised when updating or deleting a rule id that is not in the store."""

    def __init__(self, rule_id: str):
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id


class EngineUnavailableError(ClassifierError):
    """Raised when the Rule Store cannot be read.

    Fatal for the current classification call. The engine does not retry;
    reclassification is side-effect free so callers may retry freely.
    """

    pass


class ThreadErrorKind(StrEnum):
    """Why a single thread failed to classify."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    MALFORMED_THREAD = "malformed_thread"
    INTERNAL = "internal"


class ThreadClassificationError(ClassifierError):
    """Raised (single mode) or returned in place of a result (bulk mode).

    Attributes:
        thread_id: ID of the thread that failed, if known
        kind: Failure category
    """

    def __init__(
        self,
        message: str,
        thread_id: str | None = None,
        kind: ThreadErrorKind = ThreadErrorKind.INTERNAL,
    ):
        super().__init__(message)
        self.thread_id = thread_id
        self.kind = kind

    def to_dict(self) -> dict[str, str | None]:
        """Convert to a JSON-friendly dict for API responses."""
        return {
            "thread_id": self.thread_id,
            "kind": self.kind.value,
            "message": str(self),
        }
