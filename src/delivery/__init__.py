"""
Warehouse delivery: idempotency ledger, retry controller, dead letters and
the dead letter reprocessor.

The process wiring lives in ``src.delivery.runtime`` and is imported from
there directly.
"""

from .attempts import DeliveryAttemptStore, InMemoryAttemptStore, PostgresAttemptStore
from .dead_letter import DeadLetterStore, InMemoryDeadLetterStore, PostgresDeadLetterStore
from .lease import InMemorySweepLease, PostgresSweepLease, SweepLease
from .ledger import IdempotencyLedger, InMemoryLedger, PostgresLedger
from .pipeline import DeliveryPipeline, DeliveryResult
from .reprocess import DeadLetterReprocessor, SweepReport
from .retry import DeliveryOutcome, DeliveryState, RetryController, RetryPolicy
from .status import DeliveryStatusService

__all__ = [
    "DeliveryAttemptStore",
    "InMemoryAttemptStore",
    "PostgresAttemptStore",
    "DeadLetterStore",
    "InMemoryDeadLetterStore",
    "PostgresDeadLetterStore",
    "SweepLease",
    "InMemorySweepLease",
    "PostgresSweepLease",
    "IdempotencyLedger",
    "InMemoryLedger",
    "PostgresLedger",
    "DeliveryPipeline",
    "DeliveryResult",
    "DeadLetterReprocessor",
    "SweepReport",
    "DeliveryOutcome",
    "DeliveryState",
    "RetryController",
    "RetryPolicy",
    "DeliveryStatusService",
]
