"""
DeadLetterEntry model representing a permanently failed delivery.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .canonical_event import CanonicalEvent, utcnow

DeadLetterStatus = Literal["pending", "resolved", "abandoned"]
FailureKind = Literal["retryable", "terminal"]


class DeliveryFailure(BaseModel):
    """
    Summary of an exhausted delivery, handed from the retry controller to the
    dead letter store.

    Attributes:
        reason: Last error message, preserved verbatim
        kind: "terminal" for data errors, "retryable" when the budget ran out
        attempts: Number of warehouse attempts made
        first_failed_at: When the first attempt failed
        exhausted_at: When the controller gave up
    """

    reason: str
    kind: FailureKind
    attempts: int = Field(..., ge=0)
    first_failed_at: datetime = Field(default_factory=utcnow)
    exhausted_at: datetime = Field(default_factory=utcnow)


class DeadLetterEntry(BaseModel):
    """
    Durable record of an event that exhausted its delivery budget.

    Attributes:
        event_id: Canonical event ID (primary key)
        event: The original canonical event
        failure_reason: Last error message, verbatim
        failure_kind: Whether the last failure was terminal or transient
        attempt_count: Attempts made by the last delivery
        first_failed_at: When delivery first failed
        attempts_exhausted_at: When the last delivery was given up
        status: pending, resolved or abandoned
        reprocess_count: Reprocessing runs that failed again
        last_reprocessed_at: Time of the last reprocessing attempt
        resolved_at: When a re-delivery succeeded
        abandoned_at: When the entry was abandoned
        abandoned_by: Actor that abandoned it (operator or ceiling)
        operator_note: Free-text note left with the abandonment
    """

    event_id: str = Field(..., min_length=1)
    event: CanonicalEvent
    failure_reason: str
    failure_kind: FailureKind = "retryable"
    attempt_count: int = Field(default=0, ge=0)
    first_failed_at: datetime = Field(default_factory=utcnow)
    attempts_exhausted_at: datetime = Field(default_factory=utcnow)
    status: DeadLetterStatus = "pending"
    reprocess_count: int = Field(default=0, ge=0)
    last_reprocessed_at: datetime | None = None
    resolved_at: datetime | None = None
    abandoned_at: datetime | None = None
    abandoned_by: str | None = None
    operator_note: str | None = None

    @property
    def cursor(self) -> tuple[datetime, str]:
        """Keyset position of this entry in the pending listing."""
        return (self.first_failed_at, self.event_id)

    class Config:
        json_schema_extra = {
            "example": {
                "event_id": "3f1c0e0b9a...",
                "failure_reason": "value out of range for column rep_count",
                "failure_kind": "terminal",
                "attempt_count": 1,
                "status": "pending",
                "reprocess_count": 0,
            }
        }
