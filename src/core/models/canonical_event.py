"""
Completion notifications and the canonical events derived from them.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

# Unit separator keeps ("ab", "c") and ("a", "bc") from colliding
_ID_SEPARATOR = "\x1f"
_ID_NAMESPACE = "activity-completion/v1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_event_id(owner_id: str, record_id: str, revision: int) -> str:
    """
    Derive a stable event ID for one logical completion.

    The same (owner, record, revision) always yields the same ID, so a
    re-delivered notification is recognised downstream as the same event.

    Args:
        owner_id: Owner identity reference
        record_id: Source record identity
        revision: Monotonic completion revision

    Returns:
        64-character hexadecimal SHA-256 digest
    """
    material = _ID_SEPARATOR.join([_ID_NAMESPACE, owner_id, record_id, str(revision)])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class CompletionNotification(BaseModel):
    """
    A "record completed" notification from the source-of-record feed.

    Attributes:
        owner_id: Opaque owner reference (personal identifier)
        record_id: Identity of the completed record
        revision: Monotonic completion revision of the record
        status: Record status at notification time
        payload: Business data of the record
        completed_at: When the record reached its current status
    """

    owner_id: str
    record_id: str = Field(..., min_length=1)
    revision: int = Field(default=0, ge=0)
    status: str = "completed"
    payload: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=utcnow)

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


class CanonicalEvent(BaseModel):
    """
    One completed activity record destined for the warehouse.

    Attributes:
        event_id: Deterministic ID of the logical completion
        source_identity: Owner reference; never persisted downstream in cleartext
        record_id: Source record identity
        revision: Completion revision
        payload: Business data without personal identifiers
        created_at: When the completion happened
    """

    event_id: str = Field(..., min_length=1)
    source_identity: str
    record_id: str = Field(..., min_length=1)
    revision: int = Field(default=0, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_notification(cls, notification: CompletionNotification) -> "CanonicalEvent":
        """Build the canonical event for a completion notification."""
        return cls(
            event_id=derive_event_id(
                notification.owner_id, notification.record_id, notification.revision
            ),
            source_identity=notification.owner_id,
            record_id=notification.record_id,
            revision=notification.revision,
            payload=dict(notification.payload),
            created_at=notification.completed_at,
        )

    @property
    def partition_key(self) -> str:
        """Key that keeps one owner's events in order on the transport."""
        return self.source_identity

    class Config:
        json_schema_extra = {
            "example": {
                "event_id": "3f1c0e0b9a...",
                "source_identity": "u1",
                "record_id": "r1",
                "revision": 1,
                "payload": {
                    "category": "squat",
                    "rep_count": 12,
                    "average_score": 87.5,
                },
                "created_at": "2026-01-01T00:00:00Z",
            }
        }
