"""
Delivery pipeline: ledger check, pseudonymization, warehouse write, ledger advance.

The same path serves live workers and the dead letter reprocessor.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Literal

from src.core.errors import DeliveryError
from src.core.models import CanonicalEvent, DeliveryAttempt, DeliveryFailure, utcnow
from src.core.pseudonymization import PseudonymizationTransformer
from src.observability import metrics
from src.observability.lineage import ProcessingLogTracker
from src.observability.logger import get_logger
from src.warehouse.upsert import WarehouseWriter

from .attempts import DeliveryAttemptStore
from .dead_letter import DeadLetterStore
from .ledger import IdempotencyLedger
from .retry import DeliveryOutcome, RetryController, RetryPolicy

logger = get_logger(__name__)

Outcome = Literal["delivered", "duplicate", "dead_lettered"]


@dataclass
class DeliveryResult:
    """
    Result of delivering one event.

    Attributes:
        event_id: Canonical event ID
        outcome: delivered, duplicate (ledger already done) or dead_lettered
        attempts: Warehouse attempts made
        error: Last failure message for dead-lettered events
    """

    event_id: str
    outcome: Outcome
    attempts: int = 0
    error: str | None = None


class DeliveryPipeline:
    """
    Applies canonical events to the warehouse exactly once in effect.

    Usage:
        pipeline = DeliveryPipeline(transformer, writer, ledger, attempts, dead_letters)
        result = pipeline.deliver(event)
    """

    def __init__(
        self,
        transformer: PseudonymizationTransformer,
        writer: WarehouseWriter,
        ledger: IdempotencyLedger,
        attempt_store: DeliveryAttemptStore,
        dead_letters: DeadLetterStore,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = time.sleep,
        tracker: ProcessingLogTracker | None = None,
    ):
        self.transformer = transformer
        self.writer = writer
        self.ledger = ledger
        self.attempt_store = attempt_store
        self.dead_letters = dead_letters
        self.clock = clock
        self.tracker = tracker or ProcessingLogTracker(target_table=writer.table)
        self.controller = RetryController(attempt_store, policy, clock=clock, sleep=sleep)

    def deliver(
        self,
        event: CanonicalEvent,
        controller: RetryController | None = None,
        on_exhausted: Callable[[DeliveryFailure], Any] | None = None,
        resume: bool = True,
    ) -> DeliveryResult:
        """
        Deliver one event through the retry controller.

        Args:
            event: Canonical event
            controller: Retry controller to use (defaults to the live policy)
            on_exhausted: Replaces the dead letter append on exhaustion
            resume: Continue persisted attempt state

        Returns:
            DeliveryResult

        Raises:
            StateStoreError: If ledger, attempt or dead letter state cannot be
                written. The event must not be acked in that case.
        """
        started_at = self.clock()

        if self.ledger.is_done(event.event_id):
            return self._duplicate(event, started_at)

        def write() -> None:
            record = self.transformer.transform(event)
            self.writer.write_batch([record])

        def on_success() -> None:
            self.ledger.mark_done(event.event_id)

        def exhausted(failure: DeliveryFailure) -> None:
            if on_exhausted is not None:
                on_exhausted(failure)
            else:
                self.dead_letters.append(event, failure)

        def on_retry(attempt: DeliveryAttempt, error: DeliveryError) -> None:
            self.tracker.track(
                event.event_id, "retrying", started_at,
                attempt_count=attempt.attempt_count, error_message=str(error),
            )

        try:
            outcome = (controller or self.controller).run(
                event.event_id, write, on_success, exhausted, on_retry=on_retry, resume=resume,
            )
        finally:
            self.tracker.flush()

        return self._finish(event, outcome, started_at)

    def process_batch(self, events: Iterable[CanonicalEvent]) -> list[DeliveryResult]:
        """
        Deliver a batch of events.

        Duplicates inside the batch and events already in the ledger are
        skipped with one ledger lookup. Every remaining event goes through
        ``deliver`` on its own, so each one gets exactly its retry budget and
        a bad record cannot sink the rest of the batch.

        Args:
            events: Canonical events in transport order

        Returns:
            One DeliveryResult per distinct event ID
        """
        started_at = self.clock()
        unique: dict[str, CanonicalEvent] = {}
        for event in events:
            unique.setdefault(event.event_id, event)

        done = self.ledger.done_ids(unique.keys())
        results = [self._duplicate(unique[event_id], started_at) for event_id in unique if event_id in done]

        for event_id, event in unique.items():
            if event_id not in done:
                results.append(self.deliver(event))
        self.tracker.flush()
        return results

    def _duplicate(self, event: CanonicalEvent, started_at: datetime) -> DeliveryResult:
        logger.debug(f"Event {event.event_id} already applied, skipping", extra={"event_id": event.event_id})
        metrics.increment_counter(metrics.deliveries_total, outcome="duplicate")
        self.tracker.track(event.event_id, "duplicate", started_at)
        return DeliveryResult(event_id=event.event_id, outcome="duplicate")

    def _finish(self, event: CanonicalEvent, outcome: DeliveryOutcome, started_at: datetime) -> DeliveryResult:
        if outcome.succeeded:
            metrics.increment_counter(metrics.deliveries_total, outcome="delivered")
            self.tracker.track(event.event_id, "success", started_at, attempt_count=outcome.attempts)
            result = DeliveryResult(event_id=event.event_id, outcome="delivered", attempts=outcome.attempts)
        else:
            metrics.increment_counter(metrics.deliveries_total, outcome="dead_lettered")
            reason = outcome.failure.reason if outcome.failure else None
            self.tracker.track(
                event.event_id, "failed", started_at,
                attempt_count=outcome.attempts, error_message=reason,
            )
            result = DeliveryResult(
                event_id=event.event_id, outcome="dead_lettered",
                attempts=outcome.attempts, error=reason,
            )
        self.tracker.flush()
        return result
