"""
Idempotent upsert operations for anonymized warehouse rows.

Implements INSERT ... ON CONFLICT DO UPDATE keyed by (identity_hash, record_key)
so a duplicate delivery of the same event leaves the warehouse unchanged.
"""

import json
import threading
from abc import ABC, abstractmethod
from collections import Counter
from functools import partial
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from src.core.errors import TerminalDeliveryError, map_db_error
from src.core.models import AnonymizedRecord
from src.observability import metrics
from src.observability.logger import get_logger
from src.utils.validation import sanitize_sql_identifier

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

_dumps = partial(json.dumps, default=str, sort_keys=True)


class WarehouseWriter(ABC):
    """
    Writes anonymized records to the warehouse.

    Implementations must make a repeated write of the same record a no-op,
    and must raise ``RetryableDeliveryError`` or ``TerminalDeliveryError``
    rather than driver exceptions.
    """

    table: str = "activity_records"

    @abstractmethod
    def write_batch(self, records: list[AnonymizedRecord]) -> int:
        """
        Upsert records in a single transaction.

        Args:
            records: Anonymized records

        Returns:
            Number of rows inserted or changed (duplicates count as 0)
        """
        pass

    def write(self, record: AnonymizedRecord) -> int:
        return self.write_batch([record])

    @abstractmethod
    def erase_identity(self, identity_hash: str) -> int:
        """Delete every row of one pseudonymized identity. Returns rows deleted."""
        pass

    @abstractmethod
    def statistics(self) -> dict[str, Any]:
        """Aggregate counts: total_rows, distinct_identities, rows_by_category."""
        pass


class PostgresWarehouseWriter(WarehouseWriter):
    """
    Warehouse writer backed by a PostgreSQL table.

    Every call runs in one transaction with a bounded statement timeout; a
    timeout surfaces as ``WarehouseTimeoutError``.
    """

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        table: str = "activity_records",
        statement_timeout_ms: int | None = None,
    ):
        """
        Initialize warehouse writer.

        Args:
            pool: Warehouse connection pool
            table: Target table
            statement_timeout_ms: Per-call timeout (defaults to the pool's)
        """
        self.pool = pool
        self.table = sanitize_sql_identifier(table, "table")
        self.statement_timeout_ms = statement_timeout_ms

    def write_batch(self, records: list[AnonymizedRecord]) -> int:
        if not records:
            return 0

        query = f"""
            INSERT INTO {self.table} (
                identity_hash, record_key, payload, created_at, synced_at, checksum
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (identity_hash, record_key) DO UPDATE SET
                payload = EXCLUDED.payload,
                created_at = EXCLUDED.created_at,
                synced_at = EXCLUDED.synced_at,
                checksum = EXCLUDED.checksum
            WHERE {self.table}.checksum IS DISTINCT FROM EXCLUDED.checksum
        """

        try:
            data_tuples = [
                (
                    record.identity_hash,
                    record.record_key,
                    Jsonb(record.payload, dumps=_dumps),
                    record.created_at,
                    record.synced_at,
                    record.checksum,
                )
                for record in records
            ]

            applied = 0
            with metrics.track_duration(metrics.warehouse_write_duration_seconds, table=self.table):
                with self.pool.transaction(self.statement_timeout_ms) as cur:
                    for params in data_tuples:
                        cur.execute(query, params)
                        applied += max(cur.rowcount, 0)
        except psycopg.Error as e:
            error = map_db_error(e)
            logger.warning(
                f"Warehouse write of {len(records)} record(s) failed: {e}",
                extra={"retryable": error.retryable, "batch_size": len(records)},
            )
            raise error from e
        except (TypeError, ValueError) as e:
            raise TerminalDeliveryError(f"Record payload cannot be serialized: {e}") from e

        mode = "bulk" if len(records) > 1 else "single"
        metrics.increment_counter(metrics.warehouse_writes_total, applied, table=self.table, mode=mode)
        if applied < len(records):
            metrics.increment_counter(
                metrics.upsert_conflicts_total, len(records) - applied, table=self.table
            )
        return applied

    def erase_identity(self, identity_hash: str) -> int:
        try:
            with self.pool.transaction(self.statement_timeout_ms) as cur:
                cur.execute(f"DELETE FROM {self.table} WHERE identity_hash = %s", (identity_hash,))
                return cur.rowcount
        except psycopg.Error as e:
            raise map_db_error(e) from e

    def statistics(self) -> dict[str, Any]:
        totals = self.pool.execute_query(
            f"""
            SELECT COUNT(*) AS total_rows,
                   COUNT(DISTINCT identity_hash) AS distinct_identities
            FROM {self.table}
            """
        )
        by_category = self.pool.execute_query(
            f"""
            SELECT COALESCE(category, 'unknown') AS category, COUNT(*) AS row_count
            FROM {self.table}
            GROUP BY 1
            ORDER BY 2 DESC
            """
        )
        return {
            "total_rows": totals[0]["total_rows"],
            "distinct_identities": totals[0]["distinct_identities"],
            "rows_by_category": {r["category"]: r["row_count"] for r in by_category},
        }

    def fetch(self, identity_hash: str, record_key: str) -> dict[str, Any] | None:
        """Read one warehouse row, or None."""
        rows = self.pool.execute_query(
            f"""
            SELECT identity_hash, record_key, payload, created_at, synced_at, checksum
            FROM {self.table}
            WHERE identity_hash = %s AND record_key = %s
            """,
            (identity_hash, record_key),
        )
        return rows[0] if rows else None


class InMemoryWarehouseWriter(WarehouseWriter):
    """Dictionary-backed writer with the same upsert semantics. Used for local runs and tests."""

    def __init__(self, table: str = "activity_records"):
        self.table = table
        self.rows: dict[tuple[str, str], AnonymizedRecord] = {}
        self.write_calls = 0
        self._lock = threading.Lock()

    def write_batch(self, records: list[AnonymizedRecord]) -> int:
        if not records:
            return 0
        applied = 0
        with self._lock:
            self.write_calls += 1
            for record in records:
                key = (record.identity_hash, record.record_key)
                existing = self.rows.get(key)
                if existing is not None and existing.checksum == record.checksum:
                    continue
                self.rows[key] = record
                applied += 1
        return applied

    def erase_identity(self, identity_hash: str) -> int:
        with self._lock:
            keys = [key for key in self.rows if key[0] == identity_hash]
            for key in keys:
                del self.rows[key]
        return len(keys)

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            records = list(self.rows.values())
        categories = Counter(str(r.payload.get("category", "unknown")) for r in records)
        return {
            "total_rows": len(records),
            "distinct_identities": len({r.identity_hash for r in records}),
            "rows_by_category": dict(categories.most_common()),
        }
