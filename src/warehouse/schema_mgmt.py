"""
Schema management for the sync state database and the warehouse.

Holds the DDL for every table the sync owns. All statements are idempotent
(``IF NOT EXISTS``) so ``create_all`` can run on every deployment.
"""

from src.utils.validation import sanitize_sql_identifier

from .connection import DatabaseConnectionPool

STATE_TABLES = (
    "delivery_ledger",
    "delivery_attempt",
    "dead_letter_entry",
    "event_outbox",
    "sweep_state",
    "processing_log",
)

STATE_DDL = [
    """
    CREATE TABLE IF NOT EXISTS delivery_ledger (
        event_id    TEXT PRIMARY KEY,
        status      TEXT NOT NULL DEFAULT 'done' CHECK (status = 'done'),
        applied_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delivery_attempt (
        event_id         TEXT PRIMARY KEY,
        attempt_count    INTEGER NOT NULL CHECK (attempt_count >= 1),
        next_attempt_at  TIMESTAMPTZ NOT NULL,
        last_error       TEXT NOT NULL,
        first_failed_at  TIMESTAMPTZ NOT NULL,
        updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dead_letter_entry (
        event_id               TEXT PRIMARY KEY,
        event                  JSONB NOT NULL,
        failure_reason         TEXT NOT NULL,
        failure_kind           TEXT NOT NULL CHECK (failure_kind IN ('retryable', 'terminal')),
        attempt_count          INTEGER NOT NULL DEFAULT 0,
        first_failed_at        TIMESTAMPTZ NOT NULL,
        attempts_exhausted_at  TIMESTAMPTZ NOT NULL,
        status                 TEXT NOT NULL DEFAULT 'pending'
                               CHECK (status IN ('pending', 'resolved', 'abandoned')),
        reprocess_count        INTEGER NOT NULL DEFAULT 0,
        last_reprocessed_at    TIMESTAMPTZ,
        resolved_at            TIMESTAMPTZ,
        abandoned_at           TIMESTAMPTZ,
        abandoned_by           TEXT,
        operator_note          TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_dead_letter_pending
        ON dead_letter_entry (first_failed_at, event_id)
        WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS event_outbox (
        seq             BIGSERIAL PRIMARY KEY,
        event_id        TEXT NOT NULL UNIQUE,
        partition_key   TEXT NOT NULL,
        partition_hash  INTEGER NOT NULL,
        event           JSONB NOT NULL,
        enqueued_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
        claimed_until   TIMESTAMPTZ,
        delivery_count  INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_event_outbox_partition
        ON event_outbox (partition_hash, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS sweep_state (
        name          TEXT PRIMARY KEY,
        holder        TEXT,
        lease_until   TIMESTAMPTZ,
        cursor_ts     TIMESTAMPTZ,
        cursor_id     TEXT,
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_log (
        log_id                   BIGSERIAL PRIMARY KEY,
        event_id                 TEXT NOT NULL,
        target_table             TEXT NOT NULL,
        status                   TEXT NOT NULL
                                 CHECK (status IN ('success', 'retrying', 'failed', 'duplicate')),
        error_message            TEXT,
        attempt_count            INTEGER NOT NULL DEFAULT 0,
        processing_started_at    TIMESTAMPTZ NOT NULL,
        processing_completed_at  TIMESTAMPTZ NOT NULL,
        created_at               TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_processing_log_event
        ON processing_log (event_id, created_at)
    """,
]


def warehouse_ddl(table: str = "activity_records") -> list[str]:
    """DDL of the anonymized warehouse table."""
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            identity_hash  CHAR(64) NOT NULL,
            record_key     CHAR(64) NOT NULL,
            payload        JSONB NOT NULL,
            category       TEXT GENERATED ALWAYS AS (payload ->> 'category') STORED,
            created_at     TIMESTAMPTZ NOT NULL,
            synced_at      TIMESTAMPTZ NOT NULL,
            checksum       CHAR(64) NOT NULL,
            PRIMARY KEY (identity_hash, record_key)
        )
        """,
        f"""
        CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table} (created_at)
        """,
    ]


class SchemaManager:
    """
    Creates and inspects the tables owned by the sync.

    Handles:
    - State tables (ledger, attempts, dead letters, outbox, sweep state, processing log)
    - The anonymized warehouse table
    """

    def __init__(
        self,
        state_pool: DatabaseConnectionPool,
        warehouse_pool: DatabaseConnectionPool | None = None,
        warehouse_table: str = "activity_records",
    ):
        """
        Initialize schema manager.

        Args:
            state_pool: Pool of the sync state database
            warehouse_pool: Pool of the warehouse (defaults to the state pool)
            warehouse_table: Name of the anonymized table
        """
        self.state_pool = state_pool
        self.warehouse_pool = warehouse_pool or state_pool
        self.warehouse_table = sanitize_sql_identifier(warehouse_table, "warehouse_table")

    def create_state_tables(self) -> None:
        self._run(self.state_pool, STATE_DDL)

    def create_warehouse_tables(self) -> None:
        self._run(self.warehouse_pool, warehouse_ddl(self.warehouse_table))

    def create_all(self) -> None:
        """Create every table and index, skipping those that already exist."""
        self.create_state_tables()
        self.create_warehouse_tables()

    def missing_tables(self) -> list[str]:
        """
        Names of expected tables that do not exist yet.

        Returns:
            List of table names, empty when the schema is complete
        """
        expected = [(self.state_pool, name) for name in STATE_TABLES]
        expected.append((self.warehouse_pool, self.warehouse_table))

        missing = []
        for pool, name in expected:
            rows = pool.execute_query("SELECT to_regclass(%s) AS oid", (name,))
            if not rows or rows[0]["oid"] is None:
                missing.append(name)
        return missing

    def _run(self, pool: DatabaseConnectionPool, statements: list[str]) -> None:
        with pool.get_connection() as conn:
            with conn.cursor() as cur:
                for statement in statements:
                    cur.execute(statement)
            conn.commit()
