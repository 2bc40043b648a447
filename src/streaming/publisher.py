"""
Completion event publisher.

Turns "record completed" notifications into canonical events and enqueues
them on the durable transport. Publishing never waits on the warehouse.
"""

import time
from typing import Any, Callable

from src.core.errors import PublishError, TransportError
from src.core.models import CanonicalEvent, CompletionNotification
from src.observability import metrics
from src.observability.alerts import AlertSink, OperatorAlert
from src.observability.logger import get_logger

from .transport import EventTransport

logger = get_logger(__name__)

COMPLETED = "completed"


class EventPublisher:
    """
    Publishes canonical events for completed records.

    Enqueue failures are retried a small fixed number of times. After that the
    failure is reported to ``on_failure`` (the collaborator's failure channel)
    and raised as PublishError; an event is never dropped silently.
    """

    def __init__(
        self,
        transport: EventTransport,
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.2,
        on_failure: Callable[[CanonicalEvent, Exception], Any] | None = None,
        alerts: AlertSink | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        """
        Initialize the publisher.

        Args:
            transport: Durable transport
            max_attempts: Enqueue attempts before giving up
            retry_delay_seconds: Fixed delay between enqueue attempts
            on_failure: Failure channel for unrecoverable enqueue errors
            alerts: Optional operator alert sink
            sleep: Injected sleep
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.transport = transport
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.on_failure = on_failure
        self.alerts = alerts
        self.sleep = sleep

    def publish(self, notification: CompletionNotification) -> CanonicalEvent:
        """
        Derive the canonical event for a completion and enqueue it.

        Publishing the same completion twice yields the same event ID.

        Raises:
            PublishError: If the transport rejected the event on every attempt
        """
        event = CanonicalEvent.from_notification(notification)

        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                newly_queued = self.transport.enqueue(event)
            except TransportError as e:
                last_error = e
                metrics.increment_counter(
                    metrics.publish_failures_total, transport=self.transport.name, final="false"
                )
                logger.warning(
                    f"Enqueue attempt {attempt}/{self.max_attempts} for {event.event_id} failed: {e}",
                    extra={"event_id": event.event_id},
                )
                if attempt < self.max_attempts:
                    self.sleep(self.retry_delay_seconds)
                continue

            metrics.increment_counter(metrics.events_published_total, transport=self.transport.name)
            logger.info(
                f"Published event {event.event_id}" + ("" if newly_queued else " (already queued)"),
                extra={"event_id": event.event_id, "revision": event.revision},
            )
            return event

        self._report_failure(event, last_error)
        raise PublishError(
            f"Could not enqueue event {event.event_id} after {self.max_attempts} attempts: {last_error}",
            event_id=event.event_id,
        ) from last_error

    def handle_created(self, notification: CompletionNotification) -> CanonicalEvent | None:
        """A record created already completed is published; anything else is ignored."""
        if notification.status != COMPLETED:
            return None
        return self.publish(notification)

    def handle_updated(
        self,
        previous_status: str | None,
        notification: CompletionNotification,
    ) -> CanonicalEvent | None:
        """Publish only on a transition from a non-completed status into completed."""
        if notification.status != COMPLETED or previous_status == COMPLETED:
            return None
        return self.publish(notification)

    def _report_failure(self, event: CanonicalEvent, error: Exception | None) -> None:
        metrics.increment_counter(
            metrics.publish_failures_total, transport=self.transport.name, final="true"
        )
        logger.error(
            f"Giving up on publishing {event.event_id}: {error}",
            extra={"event_id": event.event_id},
        )
        if self.on_failure is not None:
            self.on_failure(event, error)
        if self.alerts is not None:
            self.alerts.emit(
                OperatorAlert(
                    kind="publish_failed",
                    message=f"Event {event.event_id} could not be enqueued",
                    event_id=event.event_id,
                    details={"error": str(error)},
                )
            )
