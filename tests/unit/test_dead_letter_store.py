"""
Unit tests for the in-memory dead letter store.

The PostgreSQL store is held to the same behaviour in
tests/integration/test_postgres_state_stores.py.
"""

from datetime import timedelta

import pytest

from src.core.errors import DeadLetterNotFoundError, InvalidTransitionError
from src.core.models import DeliveryFailure
from src.delivery.dead_letter import InMemoryDeadLetterStore


@pytest.fixture
def store(fake_clock):
    return InMemoryDeadLetterStore(clock=fake_clock)


def failure_at(clock, offset_seconds=0, reason="warehouse down", kind="retryable", attempts=10):
    first = clock.now + timedelta(seconds=offset_seconds)
    return DeliveryFailure(
        reason=reason,
        kind=kind,
        attempts=attempts,
        first_failed_at=first,
        exhausted_at=first + timedelta(seconds=511),
    )


class TestAppend:
    """Tests for DeadLetterStore.append"""

    def test_append_creates_pending_entry(self, store, make_event, fake_clock):
        event = make_event()
        failure = failure_at(fake_clock)

        entry = store.append(event, failure)

        assert entry.event_id == event.event_id
        assert entry.event == event
        assert entry.status == "pending"
        assert entry.failure_reason == "warehouse down"
        assert entry.failure_kind == "retryable"
        assert entry.attempt_count == 10
        assert entry.first_failed_at == failure.first_failed_at
        assert entry.attempts_exhausted_at == failure.exhausted_at
        assert store.get(event.event_id) == entry

    def test_reappend_refreshes_failure(self, store, make_event, fake_clock):
        """Test that a second exhaustion updates the entry instead of duplicating it"""
        event = make_event()
        first = store.append(event, failure_at(fake_clock, 0, reason="timeout"))

        second = store.append(event, failure_at(fake_clock, 60, reason="constraint", kind="terminal", attempts=1))

        assert second.failure_reason == "constraint"
        assert second.failure_kind == "terminal"
        assert second.attempt_count == 1
        assert second.first_failed_at == first.first_failed_at
        assert store.statistics() == {"pending": 1, "resolved": 0, "abandoned": 0}

    def test_reappend_does_not_reopen(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))
        store.mark_abandoned(event.event_id, "bad data", actor="operator")

        entry = store.append(event, failure_at(fake_clock, 10))

        assert entry.status == "abandoned"


class TestListing:
    """Tests for keyset pagination over pending entries"""

    def test_pending_ordered_by_first_failure(self, store, make_event, fake_clock):
        late = make_event(record_id="late")
        early = make_event(record_id="early")
        store.append(late, failure_at(fake_clock, 30))
        store.append(early, failure_at(fake_clock, 10))

        pending = store.list_pending(limit=10)

        assert [e.event_id for e in pending] == [early.event_id, late.event_id]

    def test_keyset_after_cursor(self, store, make_event, fake_clock):
        events = [make_event(record_id=f"r{i}") for i in range(5)]
        for i, event in enumerate(events):
            store.append(event, failure_at(fake_clock, i))

        first_page = store.list_pending(limit=2)
        second_page = store.list_pending(limit=2, after=first_page[-1].cursor)
        third_page = store.list_pending(limit=2, after=second_page[-1].cursor)

        ids = [e.event_id for e in first_page + second_page + third_page]
        assert ids == [e.event_id for e in events]
        assert len(third_page) == 1

    def test_ties_broken_by_event_id(self, store, make_event, fake_clock):
        a, b = make_event(record_id="a"), make_event(record_id="b")
        store.append(a, failure_at(fake_clock))
        store.append(b, failure_at(fake_clock))

        pending = store.list_pending(limit=1)
        rest = store.list_pending(limit=5, after=pending[0].cursor)

        assert len(rest) == 1
        assert sorted([pending[0].event_id, rest[0].event_id]) == sorted([a.event_id, b.event_id])
        assert pending[0].event_id < rest[0].event_id

    def test_resolved_and_abandoned_not_pending(self, store, make_event, fake_clock):
        a, b, c = (make_event(record_id=r) for r in "abc")
        for event in (a, b, c):
            store.append(event, failure_at(fake_clock))
        store.mark_resolved(a.event_id)
        store.mark_abandoned(b.event_id, "duplicate source row", actor="operator")

        assert [e.event_id for e in store.list_pending(limit=10)] == [c.event_id]
        assert store.count_pending() == 1
        assert [e.event_id for e in store.list_entries(status="resolved")] == [a.event_id]
        assert len(store.list_entries()) == 3

    def test_pending_for_identity(self, store, make_event, fake_clock):
        mine = make_event(owner_id="u1")
        theirs = make_event(owner_id="u2")
        store.append(mine, failure_at(fake_clock))
        store.append(theirs, failure_at(fake_clock))

        assert [e.event_id for e in store.pending_for_identity("u1")] == [mine.event_id]


class TestTransitions:
    """Tests for resolve / abandon"""

    def test_resolve(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))

        entry = store.mark_resolved(event.event_id)

        assert entry.status == "resolved"
        assert entry.resolved_at == fake_clock.now

    def test_resolve_is_idempotent(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))
        first = store.mark_resolved(event.event_id)
        fake_clock.advance(60)

        again = store.mark_resolved(event.event_id)

        assert again.resolved_at == first.resolved_at

    def test_resolve_abandoned_entry(self, store, make_event, fake_clock):
        """Test that a later successful delivery can still close an abandoned entry"""
        event = make_event()
        store.append(event, failure_at(fake_clock))
        store.mark_abandoned(event.event_id, "giving up", actor="operator")

        assert store.mark_resolved(event.event_id).status == "resolved"

    def test_abandon_records_actor_and_note(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))

        entry = store.mark_abandoned(event.event_id, "source record deleted", actor="alice")

        assert entry.status == "abandoned"
        assert entry.abandoned_by == "alice"
        assert entry.operator_note == "source record deleted"
        assert entry.abandoned_at == fake_clock.now

    def test_abandon_requires_actor(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))

        with pytest.raises(ValueError):
            store.mark_abandoned(event.event_id, "note", actor="  ")

    def test_abandon_resolved_rejected(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))
        store.mark_resolved(event.event_id)

        with pytest.raises(InvalidTransitionError):
            store.mark_abandoned(event.event_id, "note", actor="operator")

    def test_abandon_is_idempotent(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))
        store.mark_abandoned(event.event_id, "first", actor="alice")

        entry = store.mark_abandoned(event.event_id, "second", actor="bob")

        assert entry.abandoned_by == "alice"
        assert entry.operator_note == "first"

    def test_unknown_entry(self, store):
        with pytest.raises(DeadLetterNotFoundError):
            store.mark_resolved("0" * 64)
        with pytest.raises(DeadLetterNotFoundError):
            store.mark_abandoned("0" * 64, "note", actor="operator")
        with pytest.raises(DeadLetterNotFoundError):
            store.record_reprocess_failure("0" * 64, "boom")

    def test_record_reprocess_failure(self, store, make_event, fake_clock):
        event = make_event()
        store.append(event, failure_at(fake_clock))
        fake_clock.advance(300)

        entry = store.record_reprocess_failure(event.event_id, "still down")

        assert entry.reprocess_count == 1
        assert entry.failure_reason == "still down"
        assert entry.last_reprocessed_at == fake_clock.now
        assert entry.status == "pending"
        assert store.record_reprocess_failure(event.event_id, "again").reprocess_count == 2
