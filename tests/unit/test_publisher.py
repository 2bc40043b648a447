"""
Unit tests for the completion event publisher.
"""

import pytest

from src.core.errors import PublishError
from src.core.models import CompletionNotification, derive_event_id
from src.streaming.publisher import EventPublisher
from src.streaming.transport import InMemoryTransport


@pytest.fixture
def transport(fake_clock):
    return InMemoryTransport(clock=fake_clock)


@pytest.fixture
def publisher(transport, fake_clock, alerts):
    return EventPublisher(transport, max_attempts=3, retry_delay_seconds=0.2, alerts=alerts, sleep=fake_clock.sleep)


def completion(status="completed", revision=1, owner_id="u1", record_id="r1"):
    return CompletionNotification(
        owner_id=owner_id,
        record_id=record_id,
        revision=revision,
        status=status,
        payload={"category": "squat"},
    )


class TestPublish:
    """Tests for EventPublisher.publish"""

    def test_publish_enqueues_canonical_event(self, publisher, transport):
        event = publisher.publish(completion())

        assert event.event_id == derive_event_id("u1", "r1", 1)
        assert transport.events() == [event]

    def test_republish_same_completion_is_one_event(self, publisher, transport):
        """Test that a repeated notification maps to the same queued event"""
        first = publisher.publish(completion())
        second = publisher.publish(completion())

        assert first.event_id == second.event_id
        assert transport.pending_count() == 1

    def test_new_revision_is_new_event(self, publisher, transport):
        publisher.publish(completion(revision=1))
        publisher.publish(completion(revision=2))

        assert transport.pending_count() == 2

    def test_transient_enqueue_failure_retried(self, publisher, transport, fake_clock):
        transport.fail_next_enqueues = 2

        event = publisher.publish(completion())

        assert transport.events() == [event]
        assert fake_clock.sleeps == [0.2, 0.2]

    def test_enqueue_failure_surfaces(self, transport, fake_clock, alerts):
        """Test that an event is never dropped silently"""
        reported = []
        publisher = EventPublisher(
            transport,
            max_attempts=3,
            on_failure=lambda event, error: reported.append((event.event_id, str(error))),
            alerts=alerts,
            sleep=fake_clock.sleep,
        )
        transport.fail_next_enqueues = 3

        with pytest.raises(PublishError) as exc_info:
            publisher.publish(completion())

        expected_id = derive_event_id("u1", "r1", 1)
        assert exc_info.value.event_id == expected_id
        assert reported == [(expected_id, "in-memory transport unavailable")]
        assert [a.event_id for a in alerts.of_kind("publish_failed")] == [expected_id]
        assert transport.pending_count() == 0

    def test_max_attempts_validated(self, transport):
        with pytest.raises(ValueError):
            EventPublisher(transport, max_attempts=0)


class TestLifecycleHooks:
    """Tests for the created / updated hooks"""

    def test_created_completed_publishes(self, publisher, transport):
        assert publisher.handle_created(completion()) is not None
        assert transport.pending_count() == 1

    def test_created_not_completed_ignored(self, publisher, transport):
        assert publisher.handle_created(completion(status="in_progress")) is None
        assert transport.pending_count() == 0

    def test_transition_into_completed_publishes(self, publisher, transport):
        event = publisher.handle_updated("in_progress", completion())

        assert event is not None
        assert transport.pending_count() == 1

    def test_update_while_completed_ignored(self, publisher, transport):
        """Test that edits to an already completed record do not republish"""
        assert publisher.handle_updated("completed", completion()) is None
        assert transport.pending_count() == 0

    def test_update_to_other_status_ignored(self, publisher, transport):
        assert publisher.handle_updated("draft", completion(status="in_progress")) is None
        assert transport.pending_count() == 0

    def test_unknown_previous_status_publishes(self, publisher, transport):
        assert publisher.handle_updated(None, completion()) is not None
