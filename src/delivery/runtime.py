"""
Wiring of the sync components from settings.

``SyncRuntime.from_settings`` builds the Postgres-backed runtime used by the
CLIs; ``SyncRuntime.in_memory`` builds the same graph on in-memory stores.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from src.core.config import PipelineSettings, ReprocessSettings, WorkerSettings
from src.core.errors import ConfigurationError
from src.core.models import utcnow
from src.core.pseudonymization import FieldPolicy, FieldPolicyLoader, PseudonymizationTransformer
from src.observability.alerts import AlertSink, LoggingAlertSink
from src.observability.lineage import ProcessingLogTracker
from src.streaming.publisher import EventPublisher
from src.streaming.transport import (
    EventTransport,
    InMemoryTransport,
    KafkaEventTransport,
    PostgresOutboxTransport,
)
from src.streaming.worker import WorkerPool
from src.warehouse.connection import DatabaseConnectionPool
from src.warehouse.upsert import InMemoryWarehouseWriter, PostgresWarehouseWriter, WarehouseWriter

from .attempts import DeliveryAttemptStore, InMemoryAttemptStore, PostgresAttemptStore
from .dead_letter import DeadLetterStore, InMemoryDeadLetterStore, PostgresDeadLetterStore
from .erasure import OwnerErasureService
from .lease import InMemorySweepLease, PostgresSweepLease, SweepLease
from .ledger import IdempotencyLedger, InMemoryLedger, PostgresLedger
from .pipeline import DeliveryPipeline
from .reprocess import DeadLetterReprocessor
from .retry import RetryPolicy
from .status import DeliveryStatusService


@dataclass
class SyncRuntime:
    """Every long-lived component of one sync process."""

    transformer: PseudonymizationTransformer
    writer: WarehouseWriter
    ledger: IdempotencyLedger
    attempt_store: DeliveryAttemptStore
    dead_letters: DeadLetterStore
    lease: SweepLease
    transport: EventTransport
    pipeline: DeliveryPipeline
    publisher: EventPublisher
    reprocessor: DeadLetterReprocessor
    status: DeliveryStatusService
    erasure: OwnerErasureService
    worker_settings: WorkerSettings = field(default_factory=WorkerSettings)
    pools: list[DatabaseConnectionPool] = field(default_factory=list)

    def worker_pool(self) -> WorkerPool:
        return WorkerPool(
            self.transport,
            self.pipeline,
            partitions=self.worker_settings.partitions,
            claim_batch_size=self.worker_settings.claim_batch_size,
            poll_interval_seconds=self.worker_settings.poll_interval_seconds,
        )

    def close(self) -> None:
        self.pipeline.tracker.flush()
        self.transport.close()
        for pool in self.pools:
            pool.close()

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        secret_key: bytes,
        alerts: AlertSink | None = None,
    ) -> "SyncRuntime":
        """
        Open both database pools and build the Postgres-backed runtime.

        Raises:
            ConfigurationError: If the key or field policy is invalid
        """
        try:
            policy = FieldPolicyLoader(settings.field_policy_path).load() if settings.field_policy_path else FieldPolicy()
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Invalid field policy: {e}") from e
        transformer = PseudonymizationTransformer(secret_key, field_policy=policy)

        state_pool = DatabaseConnectionPool.from_settings(settings.state_db, name="state")
        warehouse_pool = DatabaseConnectionPool.from_settings(settings.warehouse_db, name="warehouse")
        state_pool.open()
        try:
            warehouse_pool.open()
        except Exception:
            state_pool.close()
            raise

        writer = PostgresWarehouseWriter(warehouse_pool, table=settings.warehouse_table)
        worker = settings.worker
        if worker.transport == "kafka":
            transport: EventTransport = KafkaEventTransport(
                worker.kafka_bootstrap_servers, worker.kafka_topic, worker.kafka_group_id
            )
        elif worker.transport == "memory":
            transport = InMemoryTransport(worker.visibility_timeout_seconds)
        else:
            transport = PostgresOutboxTransport(state_pool, worker.visibility_timeout_seconds)

        runtime = cls._assemble(
            transformer=transformer,
            writer=writer,
            ledger=PostgresLedger(state_pool),
            attempt_store=PostgresAttemptStore(state_pool),
            dead_letters=PostgresDeadLetterStore(state_pool),
            lease=PostgresSweepLease(state_pool),
            transport=transport,
            policy=RetryPolicy.from_settings(settings.retry),
            reprocess_settings=settings.reprocess,
            worker_settings=worker,
            tracker=ProcessingLogTracker(state_pool, target_table=settings.warehouse_table),
            alerts=alerts or LoggingAlertSink(),
        )
        runtime.pools = [state_pool, warehouse_pool]
        return runtime

    @classmethod
    def in_memory(
        cls,
        secret_key: bytes,
        policy: RetryPolicy | None = None,
        reprocess_settings: ReprocessSettings | None = None,
        worker_settings: WorkerSettings | None = None,
        alerts: AlertSink | None = None,
        writer: WarehouseWriter | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> "SyncRuntime":
        """Runtime on in-memory stores with injectable time."""
        return cls._assemble(
            transformer=PseudonymizationTransformer(secret_key, clock=clock),
            writer=writer or InMemoryWarehouseWriter(),
            ledger=InMemoryLedger(clock),
            attempt_store=InMemoryAttemptStore(),
            dead_letters=InMemoryDeadLetterStore(clock),
            lease=InMemorySweepLease(clock),
            transport=InMemoryTransport(clock=clock),
            policy=policy,
            reprocess_settings=reprocess_settings or ReprocessSettings(),
            worker_settings=worker_settings or WorkerSettings(transport="memory"),
            tracker=None,
            alerts=alerts or LoggingAlertSink(),
            clock=clock,
            sleep=sleep,
            monotonic=monotonic,
        )

    @classmethod
    def _assemble(
        cls,
        transformer: PseudonymizationTransformer,
        writer: WarehouseWriter,
        ledger: IdempotencyLedger,
        attempt_store: DeliveryAttemptStore,
        dead_letters: DeadLetterStore,
        lease: SweepLease,
        transport: EventTransport,
        policy: RetryPolicy | None,
        reprocess_settings: ReprocessSettings,
        worker_settings: WorkerSettings,
        tracker: ProcessingLogTracker | None,
        alerts: AlertSink,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> "SyncRuntime":
        pipeline = DeliveryPipeline(
            transformer, writer, ledger, attempt_store, dead_letters,
            policy=policy, clock=clock, sleep=sleep, tracker=tracker,
        )
        return cls(
            transformer=transformer,
            writer=writer,
            ledger=ledger,
            attempt_store=attempt_store,
            dead_letters=dead_letters,
            lease=lease,
            transport=transport,
            pipeline=pipeline,
            publisher=EventPublisher(
                transport,
                max_attempts=worker_settings.publish_max_attempts,
                retry_delay_seconds=worker_settings.publish_retry_delay_seconds,
                alerts=alerts,
                sleep=sleep,
            ),
            reprocessor=DeadLetterReprocessor(
                pipeline, dead_letters, lease,
                settings=reprocess_settings, alerts=alerts,
                clock=clock, monotonic=monotonic, sleep=sleep,
            ),
            status=DeliveryStatusService(ledger, dead_letters, attempt_store),
            erasure=OwnerErasureService(transformer, writer, dead_letters, transport),
            worker_settings=worker_settings,
        )
