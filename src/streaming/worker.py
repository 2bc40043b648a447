"""
Delivery workers.

A WorkerPool runs one DeliveryWorker per hash partition of the owner
identity. Worker i only claims partition i of N, so one owner's events are
handled in order and a slow warehouse call stalls only its own partition.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from src.core.errors import SyncError
from src.delivery.pipeline import DeliveryPipeline
from src.observability import metrics
from src.observability.logger import get_logger

from .transport import EventTransport

logger = get_logger(__name__)


class DeliveryWorker:
    """Claims events of one partition, delivers them and acks the transport."""

    def __init__(
        self,
        partition: int,
        partitions: int,
        transport: EventTransport,
        pipeline: DeliveryPipeline,
        claim_batch_size: int = 50,
        poll_interval_seconds: float = 1.0,
    ):
        if not 0 <= partition < partitions:
            raise ValueError(f"partition must be in [0, {partitions}), got {partition}")
        self.partition = partition
        self.partitions = partitions
        self.transport = transport
        self.pipeline = pipeline
        self.claim_batch_size = claim_batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.delivered = 0

    def run_once(self) -> int:
        """
        Claim and process one batch.

        Events are acked only after the pipeline has finished with them (the
        ledger is written or the dead letter is stored). If the pipeline
        raises, nothing is acked and the transport will redeliver.

        Returns:
            Number of events acked
        """
        events = self.transport.claim(self.partition, self.partitions, self.claim_batch_size)
        if not events:
            return 0

        results = self.pipeline.process_batch(events)
        for result in results:
            self.transport.ack(result.event_id)
        self.delivered += len(results)
        return len(results)

    def run(self, stop_event: threading.Event) -> int:
        """Process batches until ``stop_event`` is set. Returns events acked."""
        threading.current_thread().name = f"delivery-worker-{self.partition}"
        logger.info(f"Worker {self.partition}/{self.partitions} started")

        while not stop_event.is_set():
            try:
                processed = self.run_once()
            except SyncError as e:
                metrics.record_error(e, component="worker")
                logger.error(
                    f"Worker {self.partition} batch failed, events will be redelivered: {e}",
                    extra={"partition": self.partition},
                )
                processed = 0

            if processed == 0:
                stop_event.wait(self.poll_interval_seconds)

        logger.info(f"Worker {self.partition} stopped after {self.delivered} events")
        return self.delivered


class WorkerPool:
    """
    Runs N partition workers on a thread pool.

    Usage:
        pool = WorkerPool(transport, pipeline, partitions=4)
        pool.start()
        ...
        pool.stop()
    """

    def __init__(
        self,
        transport: EventTransport,
        pipeline: DeliveryPipeline,
        partitions: int = 4,
        claim_batch_size: int = 50,
        poll_interval_seconds: float = 1.0,
    ):
        self.transport = transport
        self.pipeline = pipeline
        self.partitions = partitions
        self.workers = [
            DeliveryWorker(
                partition=i,
                partitions=partitions,
                transport=transport,
                pipeline=pipeline,
                claim_batch_size=claim_batch_size,
                poll_interval_seconds=poll_interval_seconds,
            )
            for i in range(partitions)
        ]
        self.stop_event = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []

    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Worker pool already started")
        self.stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.partitions, thread_name_prefix="delivery-worker"
        )
        self._futures = [self._executor.submit(w.run, self.stop_event) for w in self.workers]
        logger.info(f"Started {self.partitions} delivery workers on transport '{self.transport.name}'")

    def drain(self) -> int:
        """Process every partition once in the calling thread. Returns events acked."""
        return sum(worker.run_once() for worker in self.workers)

    def stop(self, timeout_seconds: float | None = None) -> dict[str, Any]:
        """
        Signal workers to stop and wait for in-flight batches to finish.

        Returns:
            Summary with per-worker delivered counts
        """
        self.stop_event.set()
        delivered = []
        for future in self._futures:
            delivered.append(future.result(timeout=timeout_seconds))
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._futures = []
        logger.info(f"Worker pool stopped, {sum(delivered)} events delivered")
        return {"partitions": self.partitions, "delivered": delivered}
