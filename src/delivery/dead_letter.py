"""
Dead letter store.

Durable home of events whose delivery was given up. Entries are never
deleted; they leave the pending set only by being resolved (a later delivery
succeeded) or abandoned (an operator or the reprocessing ceiling gave up).
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

import psycopg
from psycopg.types.json import Jsonb

from src.core.errors import DeadLetterNotFoundError, InvalidTransitionError, StateStoreError
from src.core.models import CanonicalEvent, DeadLetterEntry, DeliveryFailure, utcnow
from src.observability import metrics
from src.observability.logger import get_logger
from src.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)

Cursor = tuple[datetime, str]


class DeadLetterStore(ABC):
    """Append-mostly store of exhausted deliveries."""

    @abstractmethod
    def append(self, event: CanonicalEvent, failure: DeliveryFailure) -> DeadLetterEntry:
        """
        Record an exhausted delivery.

        Idempotent on event ID: a re-append refreshes the failure details of
        the existing entry and never creates a second one. Status is unchanged.
        """
        pass

    @abstractmethod
    def get(self, event_id: str) -> DeadLetterEntry | None:
        pass

    @abstractmethod
    def list_pending(self, limit: int, after: Cursor | None = None) -> list[DeadLetterEntry]:
        """
        Pending entries ordered by (first_failed_at, event_id).

        Args:
            limit: Page size
            after: Keyset cursor; only entries strictly after it are returned
        """
        pass

    @abstractmethod
    def list_entries(self, status: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        pass

    @abstractmethod
    def mark_resolved(self, event_id: str) -> DeadLetterEntry:
        pass

    @abstractmethod
    def mark_abandoned(self, event_id: str, operator_note: str, actor: str) -> DeadLetterEntry:
        pass

    @abstractmethod
    def record_reprocess_failure(self, event_id: str, reason: str) -> DeadLetterEntry:
        """Count a failed reprocessing run and keep the latest reason."""
        pass

    @abstractmethod
    def pending_for_identity(self, source_identity: str) -> list[DeadLetterEntry]:
        pass

    @abstractmethod
    def statistics(self) -> dict[str, int]:
        """Entry counts by status (pending, resolved, abandoned)."""
        pass

    def count_pending(self) -> int:
        return self.statistics().get("pending", 0)

    def _record_append(self, entry: DeadLetterEntry, failure: DeliveryFailure) -> None:
        metrics.increment_counter(metrics.dead_letter_appends_total, kind=failure.kind)
        logger.error(
            f"Event {entry.event_id} dead-lettered after {failure.attempts} attempt(s): {failure.reason}",
            extra={
                "event_id": entry.event_id,
                "failure_kind": failure.kind,
                "attempt_count": failure.attempts,
            },
        )


def _require_actor(actor: str) -> None:
    if not actor or not actor.strip():
        raise ValueError("An actor is required to abandon a dead letter entry")


class InMemoryDeadLetterStore(DeadLetterStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: dict[str, DeadLetterEntry] = {}
        self._lock = threading.Lock()

    def append(self, event: CanonicalEvent, failure: DeliveryFailure) -> DeadLetterEntry:
        with self._lock:
            existing = self._entries.get(event.event_id)
            if existing is None:
                entry = DeadLetterEntry(
                    event_id=event.event_id,
                    event=event,
                    failure_reason=failure.reason,
                    failure_kind=failure.kind,
                    attempt_count=failure.attempts,
                    first_failed_at=failure.first_failed_at,
                    attempts_exhausted_at=failure.exhausted_at,
                )
            else:
                entry = existing.model_copy(
                    update={
                        "failure_reason": failure.reason,
                        "failure_kind": failure.kind,
                        "attempt_count": failure.attempts,
                        "first_failed_at": min(existing.first_failed_at, failure.first_failed_at),
                        "attempts_exhausted_at": failure.exhausted_at,
                    }
                )
            self._entries[event.event_id] = entry
        self._record_append(entry, failure)
        return entry

    def get(self, event_id: str) -> DeadLetterEntry | None:
        with self._lock:
            return self._entries.get(event_id)

    def list_pending(self, limit: int, after: Cursor | None = None) -> list[DeadLetterEntry]:
        with self._lock:
            pending = sorted(
                (e for e in self._entries.values() if e.status == "pending"),
                key=lambda e: e.cursor,
            )
        if after is not None:
            pending = [e for e in pending if e.cursor > after]
        return pending[:limit]

    def list_entries(self, status: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.cursor)
        if status is not None:
            entries = [e for e in entries if e.status == status]
        return entries[:limit]

    def mark_resolved(self, event_id: str) -> DeadLetterEntry:
        with self._lock:
            entry = self._get_or_raise(event_id)
            if entry.status == "resolved":
                return entry
            entry = entry.model_copy(update={"status": "resolved", "resolved_at": self.clock()})
            self._entries[event_id] = entry
        metrics.increment_counter(metrics.dead_letter_transitions_total, status="resolved")
        return entry

    def mark_abandoned(self, event_id: str, operator_note: str, actor: str) -> DeadLetterEntry:
        _require_actor(actor)
        with self._lock:
            entry = self._get_or_raise(event_id)
            if entry.status == "abandoned":
                return entry
            if entry.status != "pending":
                raise InvalidTransitionError(f"Cannot abandon {event_id}: status is {entry.status}")
            entry = entry.model_copy(
                update={
                    "status": "abandoned",
                    "abandoned_at": self.clock(),
                    "abandoned_by": actor,
                    "operator_note": operator_note,
                }
            )
            self._entries[event_id] = entry
        metrics.increment_counter(metrics.dead_letter_transitions_total, status="abandoned")
        return entry

    def record_reprocess_failure(self, event_id: str, reason: str) -> DeadLetterEntry:
        with self._lock:
            entry = self._get_or_raise(event_id)
            now = self.clock()
            entry = entry.model_copy(
                update={
                    "failure_reason": reason,
                    "reprocess_count": entry.reprocess_count + 1,
                    "last_reprocessed_at": now,
                    "attempts_exhausted_at": now,
                }
            )
            self._entries[event_id] = entry
        return entry

    def pending_for_identity(self, source_identity: str) -> list[DeadLetterEntry]:
        with self._lock:
            return [
                e for e in self._entries.values()
                if e.status == "pending" and e.event.source_identity == source_identity
            ]

    def statistics(self) -> dict[str, int]:
        counts = {"pending": 0, "resolved": 0, "abandoned": 0}
        with self._lock:
            for entry in self._entries.values():
                counts[entry.status] += 1
        return counts

    def _get_or_raise(self, event_id: str) -> DeadLetterEntry:
        entry = self._entries.get(event_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"No dead letter entry for event {event_id}")
        return entry


class PostgresDeadLetterStore(DeadLetterStore):
    """Dead letters in the ``dead_letter_entry`` table."""

    _COLUMNS = """
        event_id, event, failure_reason, failure_kind, attempt_count,
        first_failed_at, attempts_exhausted_at, status, reprocess_count,
        last_reprocessed_at, resolved_at, abandoned_at, abandoned_by, operator_note
    """

    def __init__(self, pool: DatabaseConnectionPool, clock: Callable[[], datetime] = utcnow):
        self.pool = pool
        self.clock = clock

    def append(self, event: CanonicalEvent, failure: DeliveryFailure) -> DeadLetterEntry:
        rows = self._query(
            f"""
            INSERT INTO dead_letter_entry (
                event_id, event, failure_reason, failure_kind, attempt_count,
                first_failed_at, attempts_exhausted_at
            )
            VALUES (%(event_id)s, %(event)s, %(reason)s, %(kind)s, %(attempts)s,
                    %(first_failed_at)s, %(exhausted_at)s)
            ON CONFLICT (event_id) DO UPDATE SET
                failure_reason = EXCLUDED.failure_reason,
                failure_kind = EXCLUDED.failure_kind,
                attempt_count = EXCLUDED.attempt_count,
                first_failed_at = LEAST(dead_letter_entry.first_failed_at, EXCLUDED.first_failed_at),
                attempts_exhausted_at = EXCLUDED.attempts_exhausted_at
            RETURNING {self._COLUMNS}
            """,
            {
                "event_id": event.event_id,
                "event": Jsonb(event.model_dump(mode="json")),
                "reason": failure.reason,
                "kind": failure.kind,
                "attempts": failure.attempts,
                "first_failed_at": failure.first_failed_at,
                "exhausted_at": failure.exhausted_at,
            },
            write=True,
        )
        entry = self._to_entry(rows[0])
        self._record_append(entry, failure)
        return entry

    def get(self, event_id: str) -> DeadLetterEntry | None:
        rows = self._query(
            f"SELECT {self._COLUMNS} FROM dead_letter_entry WHERE event_id = %(event_id)s",
            {"event_id": event_id},
        )
        return self._to_entry(rows[0]) if rows else None

    def list_pending(self, limit: int, after: Cursor | None = None) -> list[DeadLetterEntry]:
        if after is None:
            rows = self._query(
                f"""
                SELECT {self._COLUMNS} FROM dead_letter_entry
                WHERE status = 'pending'
                ORDER BY first_failed_at, event_id
                LIMIT %(limit)s
                """,
                {"limit": limit},
            )
        else:
            rows = self._query(
                f"""
                SELECT {self._COLUMNS} FROM dead_letter_entry
                WHERE status = 'pending'
                  AND (first_failed_at, event_id) > (%(after_ts)s, %(after_id)s)
                ORDER BY first_failed_at, event_id
                LIMIT %(limit)s
                """,
                {"limit": limit, "after_ts": after[0], "after_id": after[1]},
            )
        return [self._to_entry(row) for row in rows]

    def list_entries(self, status: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        rows = self._query(
            f"""
            SELECT {self._COLUMNS} FROM dead_letter_entry
            WHERE %(status)s::text IS NULL OR status = %(status)s
            ORDER BY first_failed_at, event_id
            LIMIT %(limit)s
            """,
            {"status": status, "limit": limit},
        )
        return [self._to_entry(row) for row in rows]

    def mark_resolved(self, event_id: str) -> DeadLetterEntry:
        rows = self._query(
            f"""
            UPDATE dead_letter_entry
            SET status = 'resolved', resolved_at = %(now)s
            WHERE event_id = %(event_id)s AND status IN ('pending', 'abandoned')
            RETURNING {self._COLUMNS}
            """,
            {"event_id": event_id, "now": self.clock()},
            write=True,
        )
        if rows:
            metrics.increment_counter(metrics.dead_letter_transitions_total, status="resolved")
            return self._to_entry(rows[0])
        return self._existing_or_raise(event_id)

    def mark_abandoned(self, event_id: str, operator_note: str, actor: str) -> DeadLetterEntry:
        _require_actor(actor)
        rows = self._query(
            f"""
            UPDATE dead_letter_entry
            SET status = 'abandoned', abandoned_at = %(now)s,
                abandoned_by = %(actor)s, operator_note = %(note)s
            WHERE event_id = %(event_id)s AND status = 'pending'
            RETURNING {self._COLUMNS}
            """,
            {"event_id": event_id, "now": self.clock(), "actor": actor, "note": operator_note},
            write=True,
        )
        if rows:
            metrics.increment_counter(metrics.dead_letter_transitions_total, status="abandoned")
            return self._to_entry(rows[0])

        entry = self._existing_or_raise(event_id)
        if entry.status != "abandoned":
            raise InvalidTransitionError(f"Cannot abandon {event_id}: status is {entry.status}")
        return entry

    def record_reprocess_failure(self, event_id: str, reason: str) -> DeadLetterEntry:
        rows = self._query(
            f"""
            UPDATE dead_letter_entry
            SET failure_reason = %(reason)s,
                reprocess_count = reprocess_count + 1,
                last_reprocessed_at = %(now)s,
                attempts_exhausted_at = %(now)s
            WHERE event_id = %(event_id)s
            RETURNING {self._COLUMNS}
            """,
            {"event_id": event_id, "reason": reason, "now": self.clock()},
            write=True,
        )
        if not rows:
            raise DeadLetterNotFoundError(f"No dead letter entry for event {event_id}")
        return self._to_entry(rows[0])

    def pending_for_identity(self, source_identity: str) -> list[DeadLetterEntry]:
        rows = self._query(
            f"""
            SELECT {self._COLUMNS} FROM dead_letter_entry
            WHERE status = 'pending' AND event ->> 'source_identity' = %(identity)s
            ORDER BY first_failed_at, event_id
            """,
            {"identity": source_identity},
        )
        return [self._to_entry(row) for row in rows]

    def statistics(self) -> dict[str, int]:
        rows = self._query(
            "SELECT status, COUNT(*) AS entry_count FROM dead_letter_entry GROUP BY status",
            {},
        )
        counts = {"pending": 0, "resolved": 0, "abandoned": 0}
        counts.update({row["status"]: row["entry_count"] for row in rows})
        return counts

    def _existing_or_raise(self, event_id: str) -> DeadLetterEntry:
        entry = self.get(event_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"No dead letter entry for event {event_id}")
        return entry

    def _query(self, sql: str, params: dict[str, Any], write: bool = False) -> list[dict]:
        try:
            with self.pool.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall() if cur.description else []
                if write:
                    conn.commit()
                return rows
        except psycopg.Error as e:
            logger.error(f"Dead letter store operation failed: {e}")
            raise StateStoreError(f"Dead letter store unavailable: {e}") from e

    @staticmethod
    def _to_entry(row: dict[str, Any]) -> DeadLetterEntry:
        data = dict(row)
        data["event"] = CanonicalEvent.model_validate(data["event"])
        return DeadLetterEntry(**data)
