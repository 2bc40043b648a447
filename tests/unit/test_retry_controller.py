"""
Unit tests for the bounded exponential-backoff retry controller.

Time is driven by the FakeClock fixture, so full ten-attempt schedules run
instantly while still observing every delay.
"""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from src.core.errors import (
    LedgerWriteError,
    RetryableDeliveryError,
    TerminalDeliveryError,
    WarehouseTimeoutError,
)
from src.core.models import DeliveryAttempt
from src.delivery.attempts import InMemoryAttemptStore
from src.delivery.retry import DeliveryState, RetryController, RetryPolicy


class Operation:
    """Callable that fails a scripted number of times before succeeding."""

    def __init__(self, error=None, failures=0):
        self.error = error
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise self.error


@pytest.fixture
def store():
    return InMemoryAttemptStore()


@pytest.fixture
def controller(store, fake_clock):
    return RetryController(store, RetryPolicy(), clock=fake_clock, sleep=fake_clock.sleep)


class TestRetryPolicy:
    """Tests for the backoff schedule"""

    def test_default_schedule(self):
        """Test delays double from 1s and are capped at 300s"""
        assert RetryPolicy().schedule() == [1, 2, 4, 8, 16, 32, 64, 128, 256]

    def test_cap(self):
        policy = RetryPolicy()
        assert policy.delay_after(9) == 256
        assert policy.delay_after(10) == 300
        assert policy.delay_after(20) == 300

    def test_custom_schedule(self):
        policy = RetryPolicy(max_attempts=4, base_delay_seconds=0.5, max_delay_seconds=1.5)
        assert policy.schedule() == [0.5, 1.0, 1.5]

    def test_single_attempt_has_no_delays(self):
        assert RetryPolicy(max_attempts=1).schedule() == []

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_seconds=0)

    @given(
        st.integers(min_value=1, max_value=40),
        st.floats(min_value=0.01, max_value=10),
        st.floats(min_value=0.01, max_value=600),
    )
    def test_property_delay_bounded_and_nondecreasing(self, attempt, base, cap):
        """Property test: delays never exceed the cap and never shrink"""
        policy = RetryPolicy(base_delay_seconds=base, max_delay_seconds=cap)

        assert 0 < policy.delay_after(attempt) <= cap
        assert policy.delay_after(attempt + 1) >= policy.delay_after(attempt)

    @given(st.integers(min_value=1, max_value=30))
    def test_property_schedule_length(self, max_attempts):
        """Property test: n attempts wait n - 1 times"""
        assert len(RetryPolicy(max_attempts=max_attempts).schedule()) == max_attempts - 1


class TestRetryController:
    """Tests for RetryController.run"""

    def test_success_first_attempt(self, controller, store):
        succeeded = []
        outcome = controller.run("e1", Operation(), lambda: succeeded.append(True), pytest.fail)

        assert outcome.state == DeliveryState.SUCCESS
        assert outcome.succeeded
        assert outcome.attempts == 1
        assert outcome.delays == []
        assert succeeded == [True]
        assert store.get("e1") is None

    def test_retry_then_success(self, controller, store, fake_clock):
        """Test that retryable failures back off and then succeed"""
        operation = Operation(RetryableDeliveryError("network blip"), failures=2)

        outcome = controller.run("e1", operation, lambda: None, pytest.fail)

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert fake_clock.sleeps == [1, 2]
        assert store.get("e1") is None

    def test_exhaustion_follows_exact_schedule(self, controller, store, fake_clock):
        """Test ten attempts with delays 1, 2, 4 ... 256 before giving up"""
        exhausted = []
        operation = Operation(WarehouseTimeoutError("statement timeout"), failures=None)

        outcome = controller.run("e1", operation, pytest.fail, exhausted.append)

        assert outcome.state == DeliveryState.EXHAUSTED
        assert outcome.attempts == 10
        assert operation.calls == 10
        assert fake_clock.sleeps == [1, 2, 4, 8, 16, 32, 64, 128, 256]
        assert len(exhausted) == 1
        failure = exhausted[0]
        assert failure.kind == "retryable"
        assert failure.attempts == 10
        assert failure.reason == "statement timeout"
        assert failure.exhausted_at - failure.first_failed_at == timedelta(seconds=511)
        assert store.get("e1") is None

    def test_terminal_failure_skips_retries(self, controller, store, fake_clock):
        """Test that a data error is dead-lettered after one attempt"""
        exhausted = []
        operation = Operation(TerminalDeliveryError("invalid input syntax"), failures=None)

        outcome = controller.run("e1", operation, pytest.fail, exhausted.append)

        assert outcome.state == DeliveryState.EXHAUSTED
        assert outcome.attempts == 1
        assert fake_clock.sleeps == []
        assert exhausted[0].kind == "terminal"
        assert exhausted[0].reason == "invalid input syntax"
        assert store.get("e1") is None

    def test_attempt_state_persisted_between_attempts(self, controller, store, fake_clock):
        """Test that each retryable failure is written before sleeping"""
        seen = []

        def on_retry(attempt, error):
            stored = store.get("e1")
            seen.append((stored.attempt_count, stored.next_attempt_at - fake_clock.now, stored.last_error))

        operation = Operation(RetryableDeliveryError("down"), failures=2)
        controller.run("e1", operation, lambda: None, pytest.fail, on_retry=on_retry)

        assert seen == [
            (1, timedelta(seconds=1), "down"),
            (2, timedelta(seconds=2), "down"),
        ]

    def test_resume_after_restart(self, store, fake_clock):
        """Test that a new controller continues a persisted schedule"""
        store.save(
            DeliveryAttempt(
                event_id="e1",
                attempt_count=3,
                next_attempt_at=fake_clock.now + timedelta(seconds=4),
                last_error="down",
                first_failed_at=fake_clock.now - timedelta(seconds=3),
            )
        )
        restarted = RetryController(store, RetryPolicy(), clock=fake_clock, sleep=fake_clock.sleep)
        operation = Operation(RetryableDeliveryError("still down"), failures=1)

        outcome = restarted.run("e1", operation, lambda: None, pytest.fail)

        assert outcome.succeeded
        assert outcome.attempts == 5
        # remaining wait, then the delay after the fourth attempt
        assert fake_clock.sleeps == [4, 8]

    def test_resume_keeps_first_failure_time(self, store, fake_clock):
        first_failed = fake_clock.now - timedelta(minutes=10)
        store.save(
            DeliveryAttempt(
                event_id="e1",
                attempt_count=9,
                next_attempt_at=fake_clock.now,
                last_error="down",
                first_failed_at=first_failed,
            )
        )
        exhausted = []
        controller = RetryController(store, RetryPolicy(), clock=fake_clock, sleep=fake_clock.sleep)

        controller.run("e1", Operation(RetryableDeliveryError("down"), None), pytest.fail, exhausted.append)

        assert exhausted[0].attempts == 10
        assert exhausted[0].first_failed_at == first_failed

    def test_resume_past_budget_exhausts_without_attempt(self, store, fake_clock):
        """Test a crash between the last failure and the dead letter write"""
        store.save(
            DeliveryAttempt(
                event_id="e1",
                attempt_count=10,
                next_attempt_at=fake_clock.now,
                last_error="down",
            )
        )
        exhausted = []
        operation = Operation()
        controller = RetryController(store, RetryPolicy(), clock=fake_clock, sleep=fake_clock.sleep)

        outcome = controller.run("e1", operation, pytest.fail, exhausted.append)

        assert outcome.state == DeliveryState.EXHAUSTED
        assert operation.calls == 0
        assert exhausted[0].reason == "down"
        assert store.get("e1") is None

    def test_resume_false_starts_from_zero(self, store, fake_clock):
        store.save(
            DeliveryAttempt(
                event_id="e1",
                attempt_count=7,
                next_attempt_at=fake_clock.now + timedelta(seconds=60),
                last_error="down",
            )
        )
        controller = RetryController(store, RetryPolicy(), clock=fake_clock, sleep=fake_clock.sleep)

        outcome = controller.run("e1", Operation(), lambda: None, pytest.fail, resume=False)

        assert outcome.attempts == 1
        assert fake_clock.sleeps == []

    def test_hook_failure_keeps_state(self, controller, store):
        """Test that a failed ledger write leaves the schedule for a later run"""

        def on_success():
            raise LedgerWriteError("ledger unavailable")

        operation = Operation(RetryableDeliveryError("down"), failures=1)

        with pytest.raises(LedgerWriteError):
            controller.run("e1", operation, on_success, pytest.fail)

        assert store.get("e1").attempt_count == 1
