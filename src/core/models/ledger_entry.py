"""
LedgerEntry model recording that an event has been applied to the warehouse.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .canonical_event import utcnow


class LedgerEntry(BaseModel):
    """
    One row per applied event ID.

    Attributes:
        event_id: Canonical event ID
        status: Always "done"; absence of a row means "not yet applied"
        applied_at: When the ledger was advanced
    """

    event_id: str = Field(..., min_length=1)
    status: Literal["done"] = "done"
    applied_at: datetime = Field(default_factory=utcnow)
