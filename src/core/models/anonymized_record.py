"""
AnonymizedRecord model representing the pseudonymized warehouse row.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .canonical_event import utcnow


class AnonymizedRecord(BaseModel):
    """
    Write-once artifact produced by the pseudonymization transformer.

    Attributes:
        event_id: Canonical event ID, used for ledger bookkeeping only and
            never written to the warehouse row
        identity_hash: Keyed one-way hash of the owner identity
        record_key: Keyed hash of the record identity and revision
        payload: Allowlisted and generalized business data
        created_at: When the completion happened
        synced_at: When the record was produced for the warehouse
        checksum: Fingerprint of the payload for duplicate detection
    """

    event_id: str = Field(..., min_length=1, exclude=True)
    identity_hash: str = Field(..., min_length=32)
    record_key: str = Field(..., min_length=32)
    payload: dict[str, Any]
    created_at: datetime
    synced_at: datetime = Field(default_factory=utcnow)
    checksum: str

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "identity_hash": "9b1f...e2",
                "record_key": "c04d...7a",
                "payload": {
                    "category": "squat",
                    "rep_count": 12,
                    "device": {"platform": "ios", "model_class": "phone"},
                },
                "created_at": "2026-01-01T00:00:00Z",
                "checksum": "5e88...",
            }
        }
