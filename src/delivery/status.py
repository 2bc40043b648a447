"""
Processing status lookup for operators.
"""

from typing import Any, Literal

from .attempts import DeliveryAttemptStore
from .dead_letter import DeadLetterStore
from .ledger import IdempotencyLedger

ProcessingStatus = Literal["done", "retrying", "dead_lettered", "abandoned", "unknown"]


class DeliveryStatusService:
    """Answers "where is event X" from the ledger, dead letters and retry state."""

    def __init__(
        self,
        ledger: IdempotencyLedger,
        dead_letters: DeadLetterStore,
        attempt_store: DeliveryAttemptStore,
    ):
        self.ledger = ledger
        self.dead_letters = dead_letters
        self.attempt_store = attempt_store

    def status(self, event_id: str) -> ProcessingStatus:
        """
        Current processing status of an event.

        The ledger wins: an event that was applied is ``done`` even if an old
        dead letter entry for it still exists.
        """
        if self.ledger.is_done(event_id):
            return "done"

        entry = self.dead_letters.get(event_id)
        if entry is not None:
            if entry.status == "pending":
                return "dead_lettered"
            if entry.status == "abandoned":
                return "abandoned"
            return "done"

        if self.attempt_store.get(event_id) is not None:
            return "retrying"
        return "unknown"

    def describe(self, event_id: str) -> dict[str, Any]:
        """Status plus whatever detail the stores hold for the event."""
        details: dict[str, Any] = {"event_id": event_id, "status": self.status(event_id)}

        ledger_entry = self.ledger.get(event_id)
        if ledger_entry is not None:
            details["applied_at"] = ledger_entry.applied_at.isoformat()

        attempt = self.attempt_store.get(event_id)
        if attempt is not None:
            details["attempt_count"] = attempt.attempt_count
            details["next_attempt_at"] = attempt.next_attempt_at.isoformat()
            details["last_error"] = attempt.last_error

        entry = self.dead_letters.get(event_id)
        if entry is not None:
            details["dead_letter"] = entry.model_dump(mode="json", exclude={"event"})
        return details
