"""
Bounded exponential-backoff retry controller.

Per event the controller moves through::

    ATTEMPTING -> SUCCESS
    ATTEMPTING -> RETRYING -> ATTEMPTING ...
    ATTEMPTING -> EXHAUSTED

Only retryable failures consume the retry budget. A terminal failure goes to
EXHAUSTED immediately. Attempt state is written to a DeliveryAttemptStore
after every retryable failure so a restarted worker resumes the schedule.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from src.core.config import ReprocessSettings, RetrySettings
from src.core.errors import DeliveryError
from src.core.models import DeliveryAttempt, DeliveryFailure, utcnow
from src.observability import metrics
from src.observability.logger import get_logger

from .attempts import DeliveryAttemptStore

logger = get_logger(__name__)


class DeliveryState(str, Enum):
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule.

    The delay after failed attempt n (before attempt n+1) is
    ``min(base_delay_seconds * 2 ** (n - 1), max_delay_seconds)``.
    """

    max_attempts: int = 10
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds <= 0 or self.max_delay_seconds <= 0:
            raise ValueError("delays must be positive")

    def delay_after(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    def schedule(self) -> list[float]:
        """Every delay a fully failing delivery waits, in order."""
        return [self.delay_after(n) for n in range(1, self.max_attempts)]

    @classmethod
    def from_settings(cls, settings: RetrySettings | ReprocessSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
        )


@dataclass
class DeliveryOutcome:
    """
    Final state of one controller run.

    Attributes:
        event_id: Canonical event ID
        state: SUCCESS or EXHAUSTED
        attempts: Attempts made, including those before a restart
        failure: Exhaustion summary handed to the dead letter hook
        delays: Backoff delays waited during this run
    """

    event_id: str
    state: DeliveryState
    attempts: int
    failure: DeliveryFailure | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == DeliveryState.SUCCESS


class RetryController:
    """
    Drives one event's delivery to SUCCESS or EXHAUSTED.

    Clock and sleep are injected so schedules can be tested without timers.
    """

    def __init__(
        self,
        attempt_store: DeliveryAttemptStore,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.attempt_store = attempt_store
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.sleep = sleep

    def run(
        self,
        event_id: str,
        operation: Callable[[], Any],
        on_success: Callable[[], Any],
        on_exhausted: Callable[[DeliveryFailure], Any],
        on_retry: Callable[[DeliveryAttempt, DeliveryError], Any] | None = None,
        resume: bool = True,
    ) -> DeliveryOutcome:
        """
        Attempt ``operation`` until it succeeds or the budget is exhausted.

        Args:
            event_id: Canonical event ID
            operation: The warehouse write; raises DeliveryError on failure
            on_success: Runs after a successful attempt, before state is cleared
            on_exhausted: Runs with the failure summary, before state is cleared
            on_retry: Observer called after each retryable failure is recorded
            resume: Continue a persisted schedule (False starts from zero)

        Returns:
            DeliveryOutcome in state SUCCESS or EXHAUSTED

        Raises:
            Any exception from the hooks or the attempt store. Attempt state
            is left in place so a later run can resume.
        """
        previous = self.attempt_store.get(event_id) if resume else None
        if not resume:
            self.attempt_store.delete(event_id)

        attempt_count = previous.attempt_count if previous else 0
        first_failed_at = previous.first_failed_at if previous else None
        last_error: DeliveryError | None = None
        delays: list[float] = []

        if previous is not None:
            logger.info(
                f"Resuming delivery of {event_id} after {attempt_count} attempt(s)",
                extra={"event_id": event_id, "attempt_count": attempt_count},
            )
            if attempt_count >= self.policy.max_attempts:
                # Crashed between the last failure and the exhaustion hook
                return self._exhaust(
                    event_id,
                    DeliveryError(previous.last_error),
                    "retryable",
                    attempt_count,
                    first_failed_at,
                    on_exhausted,
                    delays,
                )
            wait = (previous.next_attempt_at - self.clock()).total_seconds()
            if wait > 0:
                self.sleep(wait)
                delays.append(wait)

        while True:
            attempt_count += 1
            try:
                operation()
            except DeliveryError as e:
                last_error = e
            else:
                metrics.increment_counter(metrics.delivery_attempts_total, result="success")
                on_success()
                self.attempt_store.delete(event_id)
                return DeliveryOutcome(
                    event_id=event_id,
                    state=DeliveryState.SUCCESS,
                    attempts=attempt_count,
                    delays=delays,
                )

            now = self.clock()
            first_failed_at = first_failed_at or now

            if not last_error.retryable:
                metrics.increment_counter(metrics.delivery_attempts_total, result="terminal")
                return self._exhaust(
                    event_id, last_error, "terminal", attempt_count,
                    first_failed_at, on_exhausted, delays,
                )

            metrics.increment_counter(metrics.delivery_attempts_total, result="retryable")
            if attempt_count >= self.policy.max_attempts:
                return self._exhaust(
                    event_id, last_error, "retryable", attempt_count,
                    first_failed_at, on_exhausted, delays,
                )

            delay = self.policy.delay_after(attempt_count)
            attempt = DeliveryAttempt(
                event_id=event_id,
                attempt_count=attempt_count,
                next_attempt_at=now + timedelta(seconds=delay),
                last_error=str(last_error),
                first_failed_at=first_failed_at,
                updated_at=now,
            )
            self.attempt_store.save(attempt)
            if on_retry is not None:
                on_retry(attempt, last_error)

            logger.warning(
                f"Attempt {attempt_count}/{self.policy.max_attempts} for {event_id} failed, "
                f"retrying in {delay:.1f}s: {last_error}",
                extra={"event_id": event_id, "attempt_count": attempt_count, "delay_seconds": delay},
            )
            metrics.observe_histogram(metrics.retry_delay_seconds, delay)
            self.sleep(delay)
            delays.append(delay)

    def _exhaust(
        self,
        event_id: str,
        error: DeliveryError,
        kind: str,
        attempts: int,
        first_failed_at: datetime | None,
        on_exhausted: Callable[[DeliveryFailure], Any],
        delays: list[float],
    ) -> DeliveryOutcome:
        now = self.clock()
        failure = DeliveryFailure(
            reason=str(error),
            kind=kind,
            attempts=attempts,
            first_failed_at=first_failed_at or now,
            exhausted_at=now,
        )
        logger.error(
            f"Delivery of {event_id} exhausted after {attempts} attempt(s) ({kind}): {error}",
            extra={"event_id": event_id, "attempt_count": attempts, "failure_kind": kind},
        )
        on_exhausted(failure)
        self.attempt_store.delete(event_id)
        return DeliveryOutcome(
            event_id=event_id,
            state=DeliveryState.EXHAUSTED,
            attempts=attempts,
            failure=failure,
            delays=delays,
        )
