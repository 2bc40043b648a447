"""
Scheduled dead letter reprocessor.

Each sweep takes the sweep lease, reads one bounded page of pending entries
after the saved cursor and feeds them back through the delivery pipeline with
a fresh attempt counter. Entries that keep failing are abandoned once they
reach the reprocessing ceiling.
"""

import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

from src.core.config import ReprocessSettings
from src.core.errors import DeadLetterNotFoundError, StateStoreError
from src.core.models import DeadLetterEntry, DeliveryFailure, utcnow
from src.observability import metrics
from src.observability.alerts import AlertSink, LoggingAlertSink, OperatorAlert
from src.observability.logger import get_logger, log_operation

from .dead_letter import DeadLetterStore
from .lease import SweepLease
from .pipeline import DeliveryPipeline
from .retry import RetryController, RetryPolicy

logger = get_logger(__name__)

CEILING_ACTOR = "reprocess-ceiling"

EntryOutcome = Literal["resolved", "failed", "abandoned"]


@dataclass
class SweepReport:
    """Summary of one sweep run."""

    started_at: datetime
    acquired: bool = True
    processed: int = 0
    resolved: int = 0
    failed: int = 0
    abandoned: int = 0
    budget_exhausted: bool = False
    lease_lost: bool = False
    cursor_wrapped: bool = False
    pending_after: int = 0
    event_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "acquired": self.acquired,
            "processed": self.processed,
            "resolved": self.resolved,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "budget_exhausted": self.budget_exhausted,
            "lease_lost": self.lease_lost,
            "cursor_wrapped": self.cursor_wrapped,
            "pending_after": self.pending_after,
        }


class DeadLetterReprocessor:
    """
    Re-feeds pending dead letters through the delivery pipeline.

    Only one sweep runs at a time across processes (lease, renewed after each
    entry). A sweep stops at the end of its page or when its time budget runs
    out, saving the cursor so the next sweep resumes after the last processed
    entry. A sweep that loses its lease stops without touching the cursor.
    """

    def __init__(
        self,
        pipeline: DeliveryPipeline,
        dead_letters: DeadLetterStore,
        lease: SweepLease,
        settings: ReprocessSettings | None = None,
        alerts: AlertSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        holder: str | None = None,
    ):
        self.pipeline = pipeline
        self.dead_letters = dead_letters
        self.lease = lease
        self.settings = settings or ReprocessSettings()
        self.alerts = alerts or LoggingAlertSink()
        self.clock = clock
        self.monotonic = monotonic
        self.holder = holder or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.controller = RetryController(
            pipeline.attempt_store,
            RetryPolicy.from_settings(self.settings),
            clock=clock,
            sleep=sleep,
        )

    def sweep(self) -> SweepReport:
        """
        Run one sweep.

        Returns:
            SweepReport (``acquired`` is False when another runner holds the lease)
        """
        report = SweepReport(started_at=self.clock())

        if not self.lease.acquire(self.holder, self.settings.lease_ttl_seconds):
            logger.info("Dead letter sweep skipped, lease held by another runner")
            metrics.increment_counter(metrics.reprocess_sweeps_total, result="skipped")
            report.acquired = False
            return report

        try:
            with log_operation("Dead letter sweep", logger=logger, page_size=self.settings.page_size):
                self._sweep_page(report)
        finally:
            self.lease.release(self.holder)

        report.pending_after = self.dead_letters.count_pending()
        metrics.set_gauge(metrics.dead_letter_pending, report.pending_after)
        metrics.increment_counter(metrics.reprocess_sweeps_total, result=_sweep_result(report))
        self._check_growth(report.pending_after)
        return report

    def reprocess_one(self, event_id: str) -> EntryOutcome:
        """
        Force reprocessing of a single entry, outside the sweep schedule.

        Raises:
            DeadLetterNotFoundError: If no entry exists for ``event_id``
        """
        entry = self.dead_letters.get(event_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"No dead letter entry for event {event_id}")
        if entry.status == "resolved":
            return "resolved"

        logger.info(f"Operator reprocess of {event_id}", extra={"event_id": event_id})
        return self._reprocess(entry)

    def _sweep_page(self, report: SweepReport) -> None:
        deadline = self.monotonic() + self.settings.time_budget_seconds
        cursor = self.lease.load_cursor()
        page = self.dead_letters.list_pending(self.settings.page_size, after=cursor)

        for entry in page:
            if self.monotonic() >= deadline:
                report.budget_exhausted = True
                logger.warning(
                    f"Sweep time budget exhausted after {report.processed} entries",
                    extra={"processed": report.processed},
                )
                break

            outcome = self._reprocess(entry)
            report.processed += 1
            report.event_ids.append(entry.event_id)
            setattr(report, outcome, getattr(report, outcome) + 1)
            cursor = entry.cursor

            if not self.lease.acquire(self.holder, self.settings.lease_ttl_seconds):
                # Another runner owns the lease and the cursor now
                report.lease_lost = True
                logger.warning(
                    f"Sweep lease lost after {report.processed} entries, stopping",
                    extra={"processed": report.processed},
                )
                return

        if not report.budget_exhausted and len(page) < self.settings.page_size:
            cursor = None
            report.cursor_wrapped = True

        self.lease.save_cursor(cursor)

    def _reprocess(self, entry: DeadLetterEntry) -> EntryOutcome:
        event_id = entry.event_id
        ceiling_hit: list[DeadLetterEntry] = []

        def on_exhausted(failure: DeliveryFailure) -> None:
            updated = self.dead_letters.record_reprocess_failure(event_id, failure.reason)
            if updated.status == "pending" and updated.reprocess_count >= self.settings.max_reprocess_sweeps:
                ceiling_hit.append(updated)

        result = self.pipeline.deliver(
            entry.event,
            controller=self.controller,
            on_exhausted=on_exhausted,
            resume=False,
        )

        if result.outcome in ("delivered", "duplicate"):
            self.dead_letters.mark_resolved(event_id)
            logger.info(f"Dead letter {event_id} resolved", extra={"event_id": event_id})
            return "resolved"

        if ceiling_hit:
            self._abandon_at_ceiling(ceiling_hit[0])
            return "abandoned"
        return "failed"

    def _abandon_at_ceiling(self, entry: DeadLetterEntry) -> None:
        note = (
            f"Abandoned after {entry.reprocess_count} failed reprocessing sweeps; "
            f"last error: {entry.failure_reason}"
        )
        self.dead_letters.mark_abandoned(entry.event_id, note, actor=CEILING_ACTOR)
        self.alerts.emit(
            OperatorAlert(
                kind="dead_letter_abandoned",
                message=f"Dead letter {entry.event_id} abandoned at the reprocessing ceiling",
                event_id=entry.event_id,
                details={
                    "reprocess_count": entry.reprocess_count,
                    "failure_kind": entry.failure_kind,
                    "failure_reason": entry.failure_reason,
                },
            )
        )

    def _check_growth(self, pending: int) -> None:
        threshold = self.settings.dead_letter_alert_threshold
        if pending > threshold:
            self.alerts.emit(
                OperatorAlert(
                    kind="dead_letter_growth",
                    message=f"{pending} dead letters pending (threshold {threshold})",
                    details={"pending": pending, "threshold": threshold},
                )
            )

    def run_forever(self, stop: Callable[[], bool], wait: Callable[[float], Any] = time.sleep) -> None:
        """Sweep every ``interval_seconds`` until ``stop()`` returns True."""
        while not stop():
            try:
                self.sweep()
            except StateStoreError as e:
                logger.error(f"Dead letter sweep failed, retrying next interval: {e}")
            wait(self.settings.interval_seconds)


def _sweep_result(report: SweepReport) -> str:
    if report.lease_lost:
        return "lease_lost"
    if report.budget_exhausted:
        return "budget_exhausted"
    return "completed"
