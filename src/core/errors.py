"""
Exception hierarchy for the activity warehouse sync.

Delivery errors carry a ``retryable`` flag so the retry controller can decide
between backing off and dead-lettering without inspecting driver exceptions.
"""


class SyncError(Exception):
    """Base error for the sync pipeline."""

    pass


class ConfigurationError(SyncError):
    """Invalid or missing configuration. Fatal at startup."""

    pass


class PublishError(SyncError):
    """An event could not be enqueued on the transport after bounded retries."""

    def __init__(self, message: str, event_id: str | None = None):
        super().__init__(message)
        self.event_id = event_id


class TransportError(SyncError):
    """The durable transport rejected an enqueue, claim or ack."""

    pass


class DeadLetterNotFoundError(SyncError):
    """No dead letter entry exists for the requested event ID."""

    pass


class InvalidTransitionError(SyncError):
    """A dead letter entry cannot move to the requested status."""

    pass


class DeliveryError(SyncError):
    """Base error for warehouse delivery failures."""

    retryable: bool = False


class RetryableDeliveryError(DeliveryError):
    """Transient infrastructure failure (network, timeout, throttling)."""

    retryable = True


class WarehouseTimeoutError(RetryableDeliveryError):
    """A warehouse call exceeded its statement or connection timeout."""

    pass


class StateStoreError(RetryableDeliveryError):
    """The sync's own state database (attempts, dead letters, lease) failed."""

    pass


class LedgerWriteError(StateStoreError):
    """The warehouse write succeeded but the ledger could not be advanced."""

    pass


class TerminalDeliveryError(DeliveryError):
    """Permanent data error (schema violation, rejected record). Never retried."""

    retryable = False


class InvalidEventError(TerminalDeliveryError):
    """The canonical event itself cannot be transformed."""

    pass


def map_db_error(e: Exception) -> DeliveryError:
    """
    Classify a psycopg exception into a delivery error.

    Timeouts are checked before generic operational errors because
    ``QueryCanceled`` is itself an ``OperationalError``.
    """
    import psycopg
    import psycopg.errors as E

    if isinstance(e, (E.QueryCanceled, E.LockNotAvailable)):
        return WarehouseTimeoutError(str(e))
    if isinstance(
        e,
        (
            E.SerializationFailure,
            E.DeadlockDetected,
            E.TooManyConnections,
            E.AdminShutdown,
            E.CannotConnectNow,
        ),
    ):
        return RetryableDeliveryError(str(e))
    if isinstance(e, psycopg.OperationalError):
        return RetryableDeliveryError(str(e))
    if isinstance(
        e,
        (
            psycopg.DataError,
            psycopg.IntegrityError,
            E.UndefinedColumn,
            E.UndefinedTable,
            E.DatatypeMismatch,
        ),
    ):
        return TerminalDeliveryError(str(e))
    if isinstance(e, psycopg.InterfaceError):
        return RetryableDeliveryError(str(e))
    return RetryableDeliveryError(str(e))
