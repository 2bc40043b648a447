"""
DeliveryAttempt model representing in-flight retry state for one event.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .canonical_event import utcnow


class DeliveryAttempt(BaseModel):
    """
    Retry schedule of an event whose warehouse write is failing transiently.

    Created on the first retryable failure, updated on each retry, deleted on
    success and converted into a dead letter on exhaustion.

    Attributes:
        event_id: Canonical event ID
        attempt_count: Number of attempts made so far
        next_attempt_at: Earliest time of the next attempt
        last_error: Message of the most recent failure
        first_failed_at: When the first attempt failed
        updated_at: Last state change
    """

    event_id: str = Field(..., min_length=1)
    attempt_count: int = Field(..., ge=1)
    next_attempt_at: datetime
    last_error: str
    first_failed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
