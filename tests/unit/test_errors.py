"""
Unit tests for the delivery error hierarchy and psycopg error classification.
"""

import psycopg
import psycopg.errors as E
import pytest

from src.core.errors import (
    DeliveryError,
    InvalidEventError,
    LedgerWriteError,
    RetryableDeliveryError,
    StateStoreError,
    TerminalDeliveryError,
    WarehouseTimeoutError,
    map_db_error,
)


class TestHierarchy:
    def test_retryable_flags(self):
        assert RetryableDeliveryError("x").retryable
        assert WarehouseTimeoutError("x").retryable
        assert LedgerWriteError("x").retryable
        assert not TerminalDeliveryError("x").retryable
        assert not InvalidEventError("x").retryable

    def test_ledger_error_is_state_store_error(self):
        assert issubclass(LedgerWriteError, StateStoreError)
        assert issubclass(StateStoreError, DeliveryError)


class TestMapDbError:
    """Tests for map_db_error"""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (E.QueryCanceled("canceling statement due to statement timeout"), WarehouseTimeoutError),
            (E.LockNotAvailable("lock timeout"), WarehouseTimeoutError),
            (E.SerializationFailure("could not serialize"), RetryableDeliveryError),
            (E.DeadlockDetected("deadlock"), RetryableDeliveryError),
            (psycopg.OperationalError("connection refused"), RetryableDeliveryError),
            (psycopg.InterfaceError("connection closed"), RetryableDeliveryError),
            (E.NotNullViolation("null value"), TerminalDeliveryError),
            (E.NumericValueOutOfRange("out of range"), TerminalDeliveryError),
            (E.UndefinedColumn("column does not exist"), TerminalDeliveryError),
        ],
    )
    def test_classification(self, error, expected):
        mapped = map_db_error(error)

        assert type(mapped) is expected
        assert str(mapped) == str(error)

    def test_unknown_errors_are_retryable(self):
        assert map_db_error(psycopg.Error("mystery")).retryable
