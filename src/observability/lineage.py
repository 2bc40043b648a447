"""
Processing audit trail.

This module provides a ProcessingLogTracker that records one entry per
delivery step of an event (success, retrying, failed, duplicate) and
writes them to the processing_log table in batches.
"""

import threading
from datetime import datetime

import psycopg

from src.core.models import ProcessingLog, utcnow
from src.observability.logger import get_logger
from src.warehouse.audit import insert_processing_logs_batch
from src.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)


class ProcessingLogTracker:
    """
    Buffers processing log entries and flushes them to the state database.

    The audit trail is best effort: a failed flush is logged and the entries
    are dropped, delivery itself is never failed by it.

    Usage:
        tracker = ProcessingLogTracker(pool)
        tracker.track(event_id, "success", started_at=start, attempt_count=1)
        tracker.flush()
    """

    def __init__(
        self,
        pool: DatabaseConnectionPool | None = None,
        target_table: str = "activity_records",
        batch_size: int = 100
    ):
        """
        Initialize processing log tracker.

        Args:
            pool: State database pool (None keeps entries in memory only)
            target_table: Warehouse table recorded on each entry
            batch_size: Number of entries to buffer before auto-flush
        """
        self.pool = pool
        self.target_table = target_table
        self.batch_size = batch_size
        self._pending_logs: list[ProcessingLog] = []
        self.history: list[ProcessingLog] = []
        self._lock = threading.Lock()

    def track(
        self,
        event_id: str,
        status: str,
        started_at: datetime,
        attempt_count: int = 0,
        error_message: str | None = None,
    ) -> ProcessingLog:
        """
        Record one processing step.

        Args:
            event_id: Canonical event ID
            status: success, retrying, failed or duplicate
            started_at: When processing of the event began
            attempt_count: Attempts made so far
            error_message: Failure message, if any

        Returns:
            ProcessingLog model instance
        """
        entry = ProcessingLog(
            event_id=event_id,
            target_table=self.target_table,
            status=status,
            error_message=error_message,
            attempt_count=attempt_count,
            processing_started_at=started_at,
            processing_completed_at=utcnow(),
        )
        with self._lock:
            self._pending_logs.append(entry)
            if self.pool is None:
                self.history.append(entry)
            should_flush = len(self._pending_logs) >= self.batch_size

        if should_flush:
            self.flush()

        return entry

    @property
    def pending(self) -> int:
        return len(self._pending_logs)

    def flush(self) -> int:
        """
        Write all pending entries to the database.

        Returns:
            Number of entries written (0 on failure)
        """
        with self._lock:
            entries = list(self._pending_logs)
            self._pending_logs.clear()

        if not entries or self.pool is None:
            return len(entries)

        try:
            return insert_processing_logs_batch(self.pool, entries)
        except psycopg.Error as e:
            logger.warning(
                f"Failed to flush {len(entries)} processing log entries: {e}",
                extra={"dropped_entries": len(entries)},
            )
            return 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.flush()
        return False
