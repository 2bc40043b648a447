"""
Integration tests for the PostgreSQL warehouse writer.

Requires Docker (testcontainers).
"""

import pytest

from src.core.errors import TerminalDeliveryError, WarehouseTimeoutError
from src.warehouse.upsert import PostgresWarehouseWriter

pytestmark = pytest.mark.integration


@pytest.fixture
def writer(clean_db):
    return PostgresWarehouseWriter(clean_db)


def test_insert_and_fetch(writer, transformer, make_event):
    record = transformer.transform(make_event(payload={"category": "squat", "rep_count": 12, "email": "x@y.z"}))

    assert writer.write_batch([record]) == 1

    row = writer.fetch(record.identity_hash, record.record_key)
    assert row["payload"] == {"category": "squat", "rep_count": 12}
    assert row["checksum"] == record.checksum


def test_duplicate_write_is_noop(writer, transformer, make_event, fake_clock):
    """Test that the same record written twice leaves one unchanged row"""
    record = transformer.transform(make_event())
    writer.write_batch([record])
    first = writer.fetch(record.identity_hash, record.record_key)

    fake_clock.advance(60)
    again = transformer.transform(make_event())

    assert writer.write_batch([again]) == 0
    assert writer.fetch(record.identity_hash, record.record_key)["synced_at"] == first["synced_at"]
    assert writer.statistics()["total_rows"] == 1


def test_changed_payload_updates(writer, transformer, make_event):
    writer.write_batch([transformer.transform(make_event(payload={"category": "squat"}))])

    updated = transformer.transform(make_event(payload={"category": "lunge"}))
    assert writer.write_batch([updated]) == 1
    assert writer.fetch(updated.identity_hash, updated.record_key)["payload"] == {"category": "lunge"}


def test_bulk_write_and_statistics(writer, transformer, make_event):
    records = [
        transformer.transform(make_event(owner_id="u1", record_id="r1", payload={"category": "squat"})),
        transformer.transform(make_event(owner_id="u1", record_id="r2", payload={"category": "squat"})),
        transformer.transform(make_event(owner_id="u2", record_id="r1", payload={"category": "plank"})),
    ]

    assert writer.write_batch(records) == 3

    stats = writer.statistics()
    assert stats["total_rows"] == 3
    assert stats["distinct_identities"] == 2
    assert stats["rows_by_category"] == {"squat": 2, "plank": 1}


def test_erase_identity(writer, transformer, make_event):
    writer.write_batch(
        [
            transformer.transform(make_event(owner_id="u1", record_id="r1")),
            transformer.transform(make_event(owner_id="u2", record_id="r1")),
        ]
    )

    assert writer.erase_identity(transformer.hash_identity("u1")) == 1
    assert writer.statistics()["distinct_identities"] == 1


def test_statement_timeout_is_retryable(clean_db, transformer, make_event):
    """Test that a write blocked on a row lock surfaces as a warehouse timeout"""
    writer = PostgresWarehouseWriter(clean_db, statement_timeout_ms=200)
    record = transformer.transform(make_event())
    writer.write_batch([record])
    changed = transformer.transform(make_event(payload={"category": "lunge"}))

    with clean_db.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM activity_records WHERE identity_hash = %s FOR UPDATE",
                (record.identity_hash,),
            )
            with pytest.raises(WarehouseTimeoutError):
                writer.write_batch([changed])
        conn.rollback()


def test_missing_table_is_terminal(clean_db, transformer, make_event):
    writer = PostgresWarehouseWriter(clean_db, table="no_such_table")

    with pytest.raises(TerminalDeliveryError):
        writer.write_batch([transformer.transform(make_event())])


def test_unsafe_table_name_rejected(clean_db):
    with pytest.raises(ValueError):
        PostgresWarehouseWriter(clean_db, table="records; DROP TABLE x")
