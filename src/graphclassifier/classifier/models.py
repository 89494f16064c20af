"""Input and output models for thread classification.

Threads arrive pre-fetched from the Mail Gateway collaborator; the engine
never mutates them. ClassificationResult is returned to the caller, who
decides whether and when to apply its labels.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ParticipantType = Literal["from", "to", "cc", "bcc"]
LabelType = Literal["system", "user", "custom"]


class Participant(BaseModel):
    """An address on a thread or message."""

    model_config = ConfigDict(frozen=True)

    email: str = ""
    name: str = ""
    type: ParticipantType = "to"


class EmailMessage(BaseModel):
    """A single message within a thread.

    The sender is serialized as 'from' to match the mail gateway payload.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    sender: Participant | None = Field(default=None, alias="from")
    to: list[Participant] = Field(default_factory=list)
    cc: list[Participant] = Field(default_factory=list)
    bcc: list[Participant] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    timestamp: datetime | None = None

    def recipients(self) -> list[Participant]:
        """All recipients in to, cc, bcc order."""
        return [*self.to, *self.cc, *self.bcc]


class Label(BaseModel):
    """A mail label; deduplicated by id."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    type: LabelType = "user"
    color: str | None = None


class EmailThread(BaseModel):
    """Input unit to classify."""

    model_config = ConfigDict(frozen=True)

    id: str
    subject: str = ""
    participants: list[Participant] = Field(default_factory=list)
    messages: list[EmailMessage] = Field(default_factory=list)
    labels: list[Label] = Field(default_factory=list)
    snippet: str = ""
    last_updated: datetime | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Thread ids must be non-empty."""
        if not v or not v.strip():
            raise ValueError("Thread id cannot be empty")
        return v


class ClassificationResult(BaseModel):
    """Final output for one thread.

    Labels embed their full data rather than referencing rules, so results
    stay valid after the rules that produced them are edited or deleted.
    """

    model_config = ConfigDict(frozen=True)

    thread_id: str
    labels: list[Label] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    applied_at: datetime
