"""
Operator-facing alert signals.

The sync only produces alerts; routing them to a pager, chat channel or
ticketing system is the job of an AlertSink implementation.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.core.models import utcnow
from src.observability.logger import get_logger

AlertKind = Literal["dead_letter_abandoned", "dead_letter_growth", "publish_failed"]


class OperatorAlert(BaseModel):
    """
    A signal that needs operator attention.

    Attributes:
        kind: What happened
        message: Human readable summary
        event_id: Related event, if any
        details: Extra structured context
        raised_at: When the alert was raised
    """

    kind: AlertKind
    message: str
    event_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    raised_at: datetime = Field(default_factory=utcnow)


class AlertSink(ABC):
    """Destination for operator alerts."""

    @abstractmethod
    def emit(self, alert: OperatorAlert) -> None:
        """Deliver one alert."""
        pass


class LoggingAlertSink(AlertSink):
    """
    Writes alerts to the structured log at CRITICAL level, where log-based
    alerting rules pick them up.
    """

    def __init__(self, logger_name: str = "activity-warehouse-sync.alerts"):
        self.logger = get_logger(logger_name)

    def emit(self, alert: OperatorAlert) -> None:
        self.logger.critical(
            alert.message,
            extra={
                "alert_kind": alert.kind,
                "event_id": alert.event_id,
                "alert_details": alert.details,
            },
        )


class RecordingAlertSink(AlertSink):
    """Keeps alerts in memory; used for dry runs and tests."""

    def __init__(self):
        self.alerts: list[OperatorAlert] = []

    def emit(self, alert: OperatorAlert) -> None:
        self.alerts.append(alert)

    def of_kind(self, kind: AlertKind) -> list[OperatorAlert]:
        return [a for a in self.alerts if a.kind == kind]
