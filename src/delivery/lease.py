"""
Single-runner lease and resumable cursor for the dead letter sweep.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable

import psycopg

from src.core.errors import StateStoreError
from src.core.models import utcnow
from src.warehouse.connection import DatabaseConnectionPool

Cursor = tuple[datetime, str]


class SweepLease(ABC):
    """
    Time-bounded exclusive lease plus the sweep's saved cursor.

    A lease that is not released (crashed holder) expires after its TTL.
    """

    @abstractmethod
    def acquire(self, holder: str, ttl_seconds: float) -> bool:
        """Take the lease if it is free, expired or already held by ``holder``."""
        pass

    @abstractmethod
    def release(self, holder: str) -> None:
        pass

    @abstractmethod
    def load_cursor(self) -> Cursor | None:
        pass

    @abstractmethod
    def save_cursor(self, cursor: Cursor | None) -> None:
        pass


class InMemorySweepLease(SweepLease):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.holder: str | None = None
        self.lease_until: datetime | None = None
        self.cursor: Cursor | None = None
        self._lock = threading.Lock()

    def acquire(self, holder: str, ttl_seconds: float) -> bool:
        with self._lock:
            now = self.clock()
            free = self.holder is None or self.lease_until is None or self.lease_until < now
            if not free and self.holder != holder:
                return False
            self.holder = holder
            self.lease_until = now + timedelta(seconds=ttl_seconds)
            return True

    def release(self, holder: str) -> None:
        with self._lock:
            if self.holder == holder:
                self.holder = None
                self.lease_until = None

    def load_cursor(self) -> Cursor | None:
        return self.cursor

    def save_cursor(self, cursor: Cursor | None) -> None:
        self.cursor = cursor


class PostgresSweepLease(SweepLease):
    """Lease row in the ``sweep_state`` table."""

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        name: str = "dead-letter-reprocessor",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.name = name
        self.clock = clock

    def acquire(self, holder: str, ttl_seconds: float) -> bool:
        now = self.clock()
        acquired = self._execute(
            """
            INSERT INTO sweep_state (name, holder, lease_until, updated_at)
            VALUES (%(name)s, %(holder)s, %(until)s, %(now)s)
            ON CONFLICT (name) DO UPDATE SET
                holder = EXCLUDED.holder,
                lease_until = EXCLUDED.lease_until,
                updated_at = EXCLUDED.updated_at
            WHERE sweep_state.holder IS NULL
               OR sweep_state.lease_until IS NULL
               OR sweep_state.lease_until < %(now)s
               OR sweep_state.holder = EXCLUDED.holder
            """,
            {
                "name": self.name,
                "holder": holder,
                "until": now + timedelta(seconds=ttl_seconds),
                "now": now,
            },
        )
        return acquired == 1

    def release(self, holder: str) -> None:
        self._execute(
            """
            UPDATE sweep_state SET holder = NULL, lease_until = NULL, updated_at = %(now)s
            WHERE name = %(name)s AND holder = %(holder)s
            """,
            {"name": self.name, "holder": holder, "now": self.clock()},
        )

    def load_cursor(self) -> Cursor | None:
        try:
            rows = self.pool.execute_query(
                "SELECT cursor_ts, cursor_id FROM sweep_state WHERE name = %s",
                (self.name,),
            )
        except psycopg.Error as e:
            raise StateStoreError(f"Cannot read sweep cursor: {e}") from e
        if not rows or rows[0]["cursor_ts"] is None:
            return None
        return (rows[0]["cursor_ts"], rows[0]["cursor_id"])

    def save_cursor(self, cursor: Cursor | None) -> None:
        self._execute(
            """
            INSERT INTO sweep_state (name, cursor_ts, cursor_id, updated_at)
            VALUES (%(name)s, %(ts)s, %(id)s, %(now)s)
            ON CONFLICT (name) DO UPDATE SET
                cursor_ts = EXCLUDED.cursor_ts,
                cursor_id = EXCLUDED.cursor_id,
                updated_at = EXCLUDED.updated_at
            """,
            {
                "name": self.name,
                "ts": cursor[0] if cursor else None,
                "id": cursor[1] if cursor else None,
                "now": self.clock(),
            },
        )

    def _execute(self, sql: str, params: dict) -> int:
        try:
            return self.pool.execute_command(sql, params)
        except psycopg.Error as e:
            raise StateStoreError(f"Sweep state update failed: {e}") from e
