"""
Core data models for the activity warehouse sync.

All models use Pydantic for runtime validation and type safety.
"""

from .anonymized_record import AnonymizedRecord
from .canonical_event import CanonicalEvent, CompletionNotification, derive_event_id, utcnow
from .dead_letter_entry import DeadLetterEntry, DeliveryFailure
from .delivery_attempt import DeliveryAttempt
from .ledger_entry import LedgerEntry
from .processing_log import ProcessingLog

__all__ = [
    "CompletionNotification",
    "CanonicalEvent",
    "AnonymizedRecord",
    "DeliveryAttempt",
    "DeliveryFailure",
    "DeadLetterEntry",
    "LedgerEntry",
    "ProcessingLog",
    "derive_event_id",
    "utcnow",
]
