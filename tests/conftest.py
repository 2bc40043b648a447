"""
Pytest configuration and fixtures for activity-warehouse-sync tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

import pytest
from testcontainers.postgres import PostgresContainer

from src.core.errors import DeliveryError
from src.core.models import AnonymizedRecord, CanonicalEvent, CompletionNotification
from src.core.pseudonymization import PseudonymizationTransformer
from src.observability.alerts import RecordingAlertSink
from src.warehouse.connection import DatabaseConnectionPool
from src.warehouse.schema_mgmt import STATE_TABLES, SchemaManager
from src.warehouse.upsert import InMemoryWarehouseWriter


TEST_KEY = b"unit-test-pseudonymization-key-0123456789"


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# TIME FIXTURES
# =======================

class FakeClock:
    """
    Controllable wall clock, sleep and monotonic timer.

    ``sleep`` records the requested delay and advances the clock, so retry
    schedules run instantly but still observe the passage of time.
    """

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.elapsed += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def monotonic(self) -> float:
        return self.elapsed


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =======================
# DOMAIN FIXTURES
# =======================

@pytest.fixture(scope="session")
def secret_key() -> bytes:
    return TEST_KEY


@pytest.fixture
def transformer(secret_key, fake_clock) -> PseudonymizationTransformer:
    return PseudonymizationTransformer(secret_key, clock=fake_clock)


@pytest.fixture
def make_event() -> Callable[..., CanonicalEvent]:
    """
    Factory for canonical events.

    Returns:
        Callable taking owner_id, record_id, revision and payload overrides
    """

    def _make(
        owner_id: str = "u1",
        record_id: str = "r1",
        revision: int = 1,
        payload: dict | None = None,
    ) -> CanonicalEvent:
        notification = CompletionNotification(
            owner_id=owner_id,
            record_id=record_id,
            revision=revision,
            payload=payload if payload is not None else {"category": "squat", "rep_count": 12},
            completed_at=datetime(2026, 1, 1, 11, 0, tzinfo=timezone.utc),
        )
        return CanonicalEvent.from_notification(notification)

    return _make


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


class FlakyWarehouseWriter(InMemoryWarehouseWriter):
    """
    In-memory writer that raises a scripted error on its first N calls.

    ``fail_times=None`` fails forever.
    """

    def __init__(self, error: DeliveryError, fail_times: int | None = 1):
        super().__init__()
        self.error = error
        self.fail_times = fail_times
        self.calls = 0

    def write_batch(self, records: list[AnonymizedRecord]) -> int:
        self.calls += 1
        if self.fail_times is None or self.calls <= self.fail_times:
            raise self.error
        return super().write_batch(records)


@pytest.fixture
def flaky_writer() -> Callable[..., FlakyWarehouseWriter]:
    return FlakyWarehouseWriter


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_pipeline",
        password="test_password",
        dbname="test_sync"
    ) as postgres:
        # Wait for container to be ready
        postgres.get_connection_url()
        yield postgres


@pytest.fixture(scope="session")
def state_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Open a pool on the test container and create every table.

    State tables and the warehouse table share one database in tests.
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_sync",
        user="test_pipeline",
        password="test_password",
        min_size=1,
        max_size=8,
        name="test",
    )
    pool.open()
    SchemaManager(pool).create_all()

    yield pool

    pool.close()


@pytest.fixture(scope="function")
def clean_db(state_pool) -> DatabaseConnectionPool:
    """
    Provide a clean database by truncating all tables before each test

    Returns:
        Pool on the emptied database
    """
    tables = ", ".join(STATE_TABLES + ("activity_records",))
    state_pool.execute_command(f"TRUNCATE TABLE {tables} RESTART IDENTITY")
    return state_pool
