"""
ProcessingLog model representing one step of an event's delivery history.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .canonical_event import utcnow


class ProcessingLog(BaseModel):
    """
    Audit entry for pseudonymization and warehouse delivery.

    Attributes:
        log_id: Auto-increment primary key
        event_id: Canonical event ID
        target_table: Warehouse table the record was destined for
        status: success, retrying, failed or duplicate
        error_message: Failure message, if any
        attempt_count: Attempts made when the entry was written
        processing_started_at: When processing of the event began
        processing_completed_at: When this step finished
        created_at: When the entry was recorded
    """

    log_id: int | None = None
    event_id: str = Field(..., min_length=1)
    target_table: str
    status: Literal["success", "retrying", "failed", "duplicate"]
    error_message: str | None = None
    attempt_count: int = Field(default=0, ge=0)
    processing_started_at: datetime
    processing_completed_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
