"""
Processing log operations.

This module provides functions to insert and query processing log entries,
the per-event audit trail of pseudonymization and warehouse delivery.
"""

from typing import Any

import psycopg

from src.core.models import ProcessingLog
from src.observability.logger import get_logger
from src.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)


def insert_processing_logs_batch(
    pool: DatabaseConnectionPool,
    logs: list[ProcessingLog]
) -> int:
    """
    Insert multiple processing log entries in batch.

    Args:
        pool: State database connection pool
        logs: List of ProcessingLog model instances

    Returns:
        count: Number of entries inserted

    Raises:
        psycopg.DatabaseError: If batch insert fails
    """
    if not logs:
        return 0

    insert_sql = """
        INSERT INTO processing_log (
            event_id,
            target_table,
            status,
            error_message,
            attempt_count,
            processing_started_at,
            processing_completed_at,
            created_at
        ) VALUES (
            %(event_id)s,
            %(target_table)s,
            %(status)s,
            %(error_message)s,
            %(attempt_count)s,
            %(processing_started_at)s,
            %(processing_completed_at)s,
            %(created_at)s
        );
    """

    try:
        with pool.get_connection() as conn:
            with conn.cursor() as cur:
                params = [
                    log.model_dump(exclude={"log_id"})
                    for log in logs
                ]
                cur.executemany(insert_sql, params)
            conn.commit()

        logger.debug(f"Inserted {len(logs)} processing log entries in batch")
        return len(logs)

    except psycopg.DatabaseError as e:
        logger.error(f"Failed to insert processing logs batch: {e}")
        raise


def query_processing_logs(
    pool: DatabaseConnectionPool,
    event_id: str,
    limit: int = 100
) -> list[dict[str, Any]]:
    """
    Query processing log entries for one event, oldest first.

    Args:
        pool: State database connection pool
        event_id: Canonical event ID
        limit: Maximum number of entries to return

    Returns:
        List of log entries as dictionaries
    """
    query_sql = """
        SELECT
            log_id,
            event_id,
            target_table,
            status,
            error_message,
            attempt_count,
            processing_started_at,
            processing_completed_at,
            created_at
        FROM processing_log
        WHERE event_id = %(event_id)s
        ORDER BY created_at ASC, log_id ASC
        LIMIT %(limit)s;
    """

    try:
        return pool.execute_query(query_sql, {"event_id": event_id, "limit": limit})
    except psycopg.DatabaseError as e:
        logger.error(f"Failed to query processing logs for event {event_id}: {e}")
        raise


def get_processing_summary(pool: DatabaseConnectionPool) -> dict[str, int]:
    """
    Count processing log entries by status.

    Returns:
        Mapping of status to entry count
    """
    rows = pool.execute_query(
        "SELECT status, COUNT(*) AS entry_count FROM processing_log GROUP BY status"
    )
    return {r["status"]: r["entry_count"] for r in rows}
