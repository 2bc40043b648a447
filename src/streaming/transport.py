"""
Durable, per-key ordered transports for canonical events.

A transport accepts events from the publisher and hands them to delivery
workers. Delivery is at-least-once: an event that is claimed but never acked
becomes visible again after the visibility timeout (outbox) or is re-read
from the last committed offset (Kafka).
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable

import psycopg
from kafka import KafkaConsumer, KafkaProducer, TopicPartition
from kafka.errors import KafkaError
from psycopg.types.json import Jsonb

from src.core.errors import TransportError
from src.core.models import CanonicalEvent, utcnow
from src.observability.logger import get_logger
from src.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)


def key_hash(key: str) -> int:
    """Stable non-negative 31-bit hash of a partition key."""
    return int(hashlib.sha256(key.encode("utf-8")).hexdigest()[:8], 16) & 0x7FFFFFFF


def partition_for(key: str, partitions: int) -> int:
    return key_hash(key) % partitions


class EventTransport(ABC):
    """Queue of canonical events, ordered per partition key."""

    name: str = "transport"

    @abstractmethod
    def enqueue(self, event: CanonicalEvent) -> bool:
        """
        Durably enqueue an event.

        Returns:
            True if newly enqueued, False if the event ID was already queued

        Raises:
            TransportError: If the transport rejected the event
        """
        pass

    @abstractmethod
    def claim(self, partition: int, partitions: int, limit: int) -> list[CanonicalEvent]:
        """Claim up to ``limit`` events of one partition, in order."""
        pass

    @abstractmethod
    def ack(self, event_id: str) -> None:
        """Mark a claimed event as fully handled."""
        pass

    def discard_owner(self, owner_id: str) -> int:
        """Drop queued events of one owner. Returns the number removed."""
        return 0

    def pending_count(self) -> int:
        return 0

    def close(self) -> None:
        pass


class InMemoryTransport(EventTransport):
    """Process-local transport for local runs and tests."""

    name = "memory"

    def __init__(
        self,
        visibility_timeout_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self.clock = clock
        # event_id -> [event, claimed_until]
        self._queue: OrderedDict[str, list[Any]] = OrderedDict()
        self._lock = threading.Lock()
        self.fail_next_enqueues = 0

    def enqueue(self, event: CanonicalEvent) -> bool:
        with self._lock:
            if self.fail_next_enqueues > 0:
                self.fail_next_enqueues -= 1
                raise TransportError("in-memory transport unavailable")
            if event.event_id in self._queue:
                return False
            self._queue[event.event_id] = [event, None]
            return True

    def claim(self, partition: int, partitions: int, limit: int) -> list[CanonicalEvent]:
        now = self.clock()
        claimed = []
        with self._lock:
            for item in self._queue.values():
                if len(claimed) >= limit:
                    break
                event, claimed_until = item
                if partition_for(event.partition_key, partitions) != partition:
                    continue
                if claimed_until is not None and claimed_until >= now:
                    continue
                item[1] = now + self.visibility_timeout
                claimed.append(event)
        return claimed

    def ack(self, event_id: str) -> None:
        with self._lock:
            self._queue.pop(event_id, None)

    def discard_owner(self, owner_id: str) -> int:
        with self._lock:
            ids = [eid for eid, (event, _) in self._queue.items() if event.source_identity == owner_id]
            for event_id in ids:
                del self._queue[event_id]
        return len(ids)

    def pending_count(self) -> int:
        return len(self._queue)

    def events(self) -> list[CanonicalEvent]:
        with self._lock:
            return [item[0] for item in self._queue.values()]


class PostgresOutboxTransport(EventTransport):
    """
    Transactional outbox in the ``event_outbox`` table.

    Workers claim rows of their partition with ``FOR UPDATE SKIP LOCKED``
    and hide them for the visibility timeout; ``ack`` deletes the row.
    """

    name = "postgres"

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        visibility_timeout_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self.clock = clock

    def enqueue(self, event: CanonicalEvent) -> bool:
        try:
            inserted = self.pool.execute_command(
                """
                INSERT INTO event_outbox (event_id, partition_key, partition_hash, event, enqueued_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.partition_key,
                    key_hash(event.partition_key),
                    Jsonb(event.model_dump(mode="json")),
                    self.clock(),
                ),
            )
        except psycopg.Error as e:
            raise TransportError(f"Outbox enqueue failed for {event.event_id}: {e}") from e
        return inserted == 1

    def claim(self, partition: int, partitions: int, limit: int) -> list[CanonicalEvent]:
        now = self.clock()
        query = """
            WITH next AS (
                SELECT seq FROM event_outbox
                WHERE partition_hash %% %(partitions)s = %(partition)s
                  AND (claimed_until IS NULL OR claimed_until < %(now)s)
                ORDER BY seq
                LIMIT %(limit)s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE event_outbox o
            SET claimed_until = %(until)s, delivery_count = o.delivery_count + 1
            FROM next
            WHERE o.seq = next.seq
            RETURNING o.seq, o.event
        """
        try:
            with self.pool.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        query,
                        {
                            "partitions": partitions,
                            "partition": partition,
                            "now": now,
                            "until": now + self.visibility_timeout,
                            "limit": limit,
                        },
                    )
                    rows = cur.fetchall()
                conn.commit()
        except psycopg.Error as e:
            raise TransportError(f"Outbox claim failed for partition {partition}: {e}") from e

        rows.sort(key=lambda row: row["seq"])
        return [CanonicalEvent.model_validate(row["event"]) for row in rows]

    def ack(self, event_id: str) -> None:
        try:
            self.pool.execute_command("DELETE FROM event_outbox WHERE event_id = %s", (event_id,))
        except psycopg.Error as e:
            raise TransportError(f"Outbox ack failed for {event_id}: {e}") from e

    def discard_owner(self, owner_id: str) -> int:
        try:
            return self.pool.execute_command(
                "DELETE FROM event_outbox WHERE partition_key = %s", (owner_id,)
            )
        except psycopg.Error as e:
            raise TransportError(f"Outbox purge failed: {e}") from e

    def pending_count(self) -> int:
        rows = self.pool.execute_query("SELECT COUNT(*) AS pending FROM event_outbox")
        return rows[0]["pending"]


class KafkaEventTransport(EventTransport):
    """
    Kafka topic keyed by owner identity.

    Kafka keeps per-key order inside a topic partition and the consumer
    group spreads topic partitions over workers. Offsets are committed only
    when every event of the previous poll has been acked; otherwise the
    consumer seeks back so unacked events are redelivered.
    """

    name = "kafka"

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        send_timeout_seconds: float = 10.0,
        poll_timeout_ms: int = 1000,
        producer: KafkaProducer | None = None,
        consumer_factory: Callable[[], KafkaConsumer] | None = None,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.send_timeout_seconds = send_timeout_seconds
        self.poll_timeout_ms = poll_timeout_ms
        self._producer = producer
        self._consumer_factory = consumer_factory or self._default_consumer
        self._consumers: dict[int, KafkaConsumer] = {}
        # worker partition -> {event_id: [(TopicPartition, offset), ...]}
        # A republished event can appear more than once in one poll.
        self._outstanding: dict[int, dict[str, list[tuple[TopicPartition, int]]]] = {}
        self._owner_of: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def producer(self) -> KafkaProducer:
        if self._producer is None:
            self._producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                acks="all",
                key_serializer=lambda k: k.encode("utf-8"),
                value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            )
        return self._producer

    def _default_consumer(self) -> KafkaConsumer:
        return KafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_interval_ms=30 * 60 * 1000,
            value_deserializer=lambda x: json.loads(x.decode("utf-8")),
        )

    def enqueue(self, event: CanonicalEvent) -> bool:
        try:
            future = self.producer.send(
                self.topic,
                key=event.partition_key,
                value=event.model_dump(mode="json"),
            )
            future.get(timeout=self.send_timeout_seconds)
        except KafkaError as e:
            raise TransportError(f"Kafka send failed for {event.event_id}: {e}") from e
        return True

    def claim(self, partition: int, partitions: int, limit: int) -> list[CanonicalEvent]:
        consumer = self._consumer(partition)
        try:
            self._rewind_unacked(partition, consumer)
            batches = consumer.poll(timeout_ms=self.poll_timeout_ms, max_records=limit)
        except KafkaError as e:
            raise TransportError(f"Kafka poll failed: {e}") from e

        events = []
        with self._lock:
            outstanding = self._outstanding.setdefault(partition, {})
            for topic_partition, records in batches.items():
                for record in records:
                    event = CanonicalEvent.model_validate(record.value)
                    outstanding.setdefault(event.event_id, []).append((topic_partition, record.offset))
                    self._owner_of[event.event_id] = partition
                    events.append(event)
        return events

    def ack(self, event_id: str) -> None:
        with self._lock:
            partition = self._owner_of.pop(event_id, None)
            if partition is None:
                return
            outstanding = self._outstanding.get(partition, {})
            outstanding.pop(event_id, None)
            ready = not outstanding
        if ready:
            try:
                self._consumers[partition].commit()
            except KafkaError as e:
                raise TransportError(f"Kafka commit failed: {e}") from e

    def close(self) -> None:
        for consumer in self._consumers.values():
            consumer.close()
        self._consumers.clear()
        if self._producer is not None:
            self._producer.flush()
            self._producer.close()

    def _consumer(self, partition: int) -> KafkaConsumer:
        # KafkaConsumer is not thread-safe: one per worker
        with self._lock:
            consumer = self._consumers.get(partition)
            if consumer is None:
                consumer = self._consumer_factory()
                self._consumers[partition] = consumer
            return consumer

    def _rewind_unacked(self, partition: int, consumer: KafkaConsumer) -> None:
        with self._lock:
            outstanding = self._outstanding.get(partition)
            if not outstanding:
                return
            earliest: dict[TopicPartition, int] = {}
            for event_id, positions in outstanding.items():
                for topic_partition, offset in positions:
                    earliest[topic_partition] = min(offset, earliest.get(topic_partition, offset))
                self._owner_of.pop(event_id, None)
            outstanding.clear()

        for topic_partition, offset in earliest.items():
            logger.info(
                f"Rewinding {topic_partition.topic}[{topic_partition.partition}] to {offset} for redelivery"
            )
            consumer.seek(topic_partition, offset)
