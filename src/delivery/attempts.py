"""
Durable retry state.

The retry controller persists a DeliveryAttempt after every retryable
failure so that a restarted worker resumes the same schedule.
"""

import threading
from abc import ABC, abstractmethod

import psycopg

from src.core.errors import StateStoreError
from src.core.models import DeliveryAttempt
from src.warehouse.connection import DatabaseConnectionPool


class DeliveryAttemptStore(ABC):
    """Storage for in-flight retry schedules, keyed by event ID."""

    @abstractmethod
    def get(self, event_id: str) -> DeliveryAttempt | None:
        pass

    @abstractmethod
    def save(self, attempt: DeliveryAttempt) -> None:
        pass

    @abstractmethod
    def delete(self, event_id: str) -> None:
        pass

    @abstractmethod
    def list_all(self, limit: int = 100) -> list[DeliveryAttempt]:
        pass


class InMemoryAttemptStore(DeliveryAttemptStore):
    def __init__(self):
        self._attempts: dict[str, DeliveryAttempt] = {}
        self._lock = threading.Lock()

    def get(self, event_id: str) -> DeliveryAttempt | None:
        with self._lock:
            return self._attempts.get(event_id)

    def save(self, attempt: DeliveryAttempt) -> None:
        with self._lock:
            self._attempts[attempt.event_id] = attempt

    def delete(self, event_id: str) -> None:
        with self._lock:
            self._attempts.pop(event_id, None)

    def list_all(self, limit: int = 100) -> list[DeliveryAttempt]:
        with self._lock:
            attempts = sorted(self._attempts.values(), key=lambda a: a.next_attempt_at)
        return attempts[:limit]


class PostgresAttemptStore(DeliveryAttemptStore):
    """Retry state in the ``delivery_attempt`` table."""

    _COLUMNS = "event_id, attempt_count, next_attempt_at, last_error, first_failed_at, updated_at"

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def get(self, event_id: str) -> DeliveryAttempt | None:
        try:
            rows = self.pool.execute_query(
                f"SELECT {self._COLUMNS} FROM delivery_attempt WHERE event_id = %s",
                (event_id,),
            )
        except psycopg.Error as e:
            raise StateStoreError(f"Attempt lookup failed for {event_id}: {e}") from e
        return DeliveryAttempt(**rows[0]) if rows else None

    def save(self, attempt: DeliveryAttempt) -> None:
        try:
            self.pool.execute_command(
                f"""
                INSERT INTO delivery_attempt ({self._COLUMNS})
                VALUES (%(event_id)s, %(attempt_count)s, %(next_attempt_at)s,
                        %(last_error)s, %(first_failed_at)s, %(updated_at)s)
                ON CONFLICT (event_id) DO UPDATE SET
                    attempt_count = EXCLUDED.attempt_count,
                    next_attempt_at = EXCLUDED.next_attempt_at,
                    last_error = EXCLUDED.last_error,
                    updated_at = EXCLUDED.updated_at
                """,
                attempt.model_dump(),
            )
        except psycopg.Error as e:
            raise StateStoreError(f"Attempt save failed for {attempt.event_id}: {e}") from e

    def delete(self, event_id: str) -> None:
        try:
            self.pool.execute_command("DELETE FROM delivery_attempt WHERE event_id = %s", (event_id,))
        except psycopg.Error as e:
            raise StateStoreError(f"Attempt delete failed for {event_id}: {e}") from e

    def list_all(self, limit: int = 100) -> list[DeliveryAttempt]:
        rows = self.pool.execute_query(
            f"SELECT {self._COLUMNS} FROM delivery_attempt ORDER BY next_attempt_at LIMIT %s",
            (limit,),
        )
        return [DeliveryAttempt(**row) for row in rows]
