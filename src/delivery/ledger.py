"""
Idempotency ledger.

One row per event ID that has been applied to the warehouse. The ledger is
advanced only after a successful warehouse write, and the transport is acked
only after the ledger write succeeds.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Iterable

import psycopg

from src.core.errors import LedgerWriteError, StateStoreError
from src.core.models import LedgerEntry, utcnow
from src.observability import metrics
from src.observability.logger import get_logger
from src.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)


class IdempotencyLedger(ABC):
    """Record of event IDs already applied to the warehouse."""

    @abstractmethod
    def get(self, event_id: str) -> LedgerEntry | None:
        pass

    def is_done(self, event_id: str) -> bool:
        return self.get(event_id) is not None

    @abstractmethod
    def done_ids(self, event_ids: Iterable[str]) -> set[str]:
        """Subset of ``event_ids`` that already have a done entry."""
        pass

    @abstractmethod
    def mark_done(self, event_id: str) -> bool:
        """
        Atomically record an event as applied.

        Returns:
            True if this call made the transition, False if it was already done

        Raises:
            LedgerWriteError: If the ledger could not be written
        """
        pass


class InMemoryLedger(IdempotencyLedger):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: dict[str, LedgerEntry] = {}
        self._lock = threading.Lock()

    def get(self, event_id: str) -> LedgerEntry | None:
        with self._lock:
            return self._entries.get(event_id)

    def done_ids(self, event_ids: Iterable[str]) -> set[str]:
        with self._lock:
            return {event_id for event_id in event_ids if event_id in self._entries}

    def mark_done(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._entries:
                metrics.increment_counter(metrics.ledger_duplicates_total)
                return False
            self._entries[event_id] = LedgerEntry(event_id=event_id, applied_at=self.clock())
            return True

    def __len__(self) -> int:
        return len(self._entries)


class PostgresLedger(IdempotencyLedger):
    """
    Ledger stored in the ``delivery_ledger`` table.

    ``mark_done`` is a conditional insert, so two workers racing on the same
    event ID cannot both observe a transition.
    """

    def __init__(self, pool: DatabaseConnectionPool, clock: Callable[[], datetime] = utcnow):
        self.pool = pool
        self.clock = clock

    def get(self, event_id: str) -> LedgerEntry | None:
        try:
            rows = self.pool.execute_query(
                "SELECT event_id, status, applied_at FROM delivery_ledger WHERE event_id = %s",
                (event_id,),
            )
        except psycopg.Error as e:
            raise StateStoreError(f"Ledger lookup failed for {event_id}: {e}") from e
        return LedgerEntry(**rows[0]) if rows else None

    def done_ids(self, event_ids: Iterable[str]) -> set[str]:
        ids = list(event_ids)
        if not ids:
            return set()
        try:
            rows = self.pool.execute_query(
                "SELECT event_id FROM delivery_ledger WHERE event_id = ANY(%s)",
                (ids,),
            )
        except psycopg.Error as e:
            raise StateStoreError(f"Ledger lookup failed: {e}") from e
        return {row["event_id"] for row in rows}

    def mark_done(self, event_id: str) -> bool:
        try:
            inserted = self.pool.execute_command(
                """
                INSERT INTO delivery_ledger (event_id, status, applied_at)
                VALUES (%s, 'done', %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (event_id, self.clock()),
            )
        except psycopg.Error as e:
            logger.error(
                f"Ledger write failed for event {event_id}: {e}",
                extra={"event_id": event_id},
            )
            raise LedgerWriteError(f"Ledger write failed for {event_id}: {e}") from e

        if inserted == 0:
            metrics.increment_counter(metrics.ledger_duplicates_total)
        return inserted == 1
