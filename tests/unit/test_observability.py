"""
Unit tests for metrics, alerts, the processing log tracker and logging helpers.
"""

import json
import logging
from datetime import datetime, timezone

import psycopg
import pytest

from src.observability import lineage, metrics
from src.observability.alerts import LoggingAlertSink, OperatorAlert, RecordingAlertSink
from src.observability.lineage import ProcessingLogTracker
from src.observability.logger import CustomJsonFormatter, identity_ref, log_operation

STARTED = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestMetrics:
    """Tests for the metric helpers"""

    def test_counter_with_labels(self):
        before = metrics.REGISTRY.get_sample_value("sync_deliveries_total", {"outcome": "delivered"}) or 0.0

        metrics.increment_counter(metrics.deliveries_total, outcome="delivered")

        assert metrics.REGISTRY.get_sample_value("sync_deliveries_total", {"outcome": "delivered"}) == before + 1

    def test_gauge(self):
        metrics.set_gauge(metrics.dead_letter_pending, 7)
        assert metrics.REGISTRY.get_sample_value("sync_dead_letter_pending") == 7

    def test_record_error(self):
        labels = {"error_type": "ValueError", "component": "test"}
        before = metrics.REGISTRY.get_sample_value("sync_errors_total", labels) or 0.0

        metrics.record_error(ValueError("x"), component="test")

        assert metrics.REGISTRY.get_sample_value("sync_errors_total", labels) == before + 1

    def test_exposition(self):
        body = metrics.generate_metrics().decode("utf-8")
        assert "sync_deliveries_total" in body
        assert metrics.get_content_type().startswith("text/plain")

    def test_track_duration(self):
        with metrics.track_duration(metrics.warehouse_write_duration_seconds, table="unit_test"):
            pass
        count = metrics.REGISTRY.get_sample_value(
            "sync_warehouse_write_duration_seconds_count", {"table": "unit_test"}
        )
        assert count >= 1


class TestAlerts:
    def test_recording_sink(self):
        sink = RecordingAlertSink()
        sink.emit(OperatorAlert(kind="dead_letter_growth", message="150 pending"))
        sink.emit(OperatorAlert(kind="publish_failed", message="enqueue failed", event_id="e1"))

        assert [a.event_id for a in sink.of_kind("publish_failed")] == ["e1"]
        assert len(sink.alerts) == 2

    def test_logging_sink_logs_critical(self, caplog):
        sink = LoggingAlertSink("test-alerts")
        sink.logger.propagate = True

        with caplog.at_level(logging.CRITICAL, logger="test-alerts"):
            sink.emit(OperatorAlert(kind="dead_letter_abandoned", message="abandoned", event_id="e1"))

        [record] = caplog.records
        assert record.levelno == logging.CRITICAL
        assert record.alert_kind == "dead_letter_abandoned"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            OperatorAlert(kind="something_else", message="x")


class TestProcessingLogTracker:
    """Tests for ProcessingLogTracker"""

    def test_in_memory_history(self):
        tracker = ProcessingLogTracker()

        entry = tracker.track("e1", "retrying", STARTED, attempt_count=1, error_message="down")

        assert tracker.history == [entry]
        assert entry.target_table == "activity_records"
        assert tracker.flush() == 1
        assert tracker.pending == 0

    def test_auto_flush_at_batch_size(self, monkeypatch):
        written = []
        monkeypatch.setattr(lineage, "insert_processing_logs_batch", lambda pool, entries: written.append(entries) or len(entries))
        tracker = ProcessingLogTracker(pool=object(), batch_size=2)

        tracker.track("e1", "success", STARTED)
        assert written == []
        tracker.track("e2", "success", STARTED)

        assert [len(batch) for batch in written] == [2]
        assert tracker.pending == 0

    def test_flush_failure_is_dropped(self, monkeypatch):
        def broken(pool, entries):
            raise psycopg.OperationalError("state db down")

        monkeypatch.setattr(lineage, "insert_processing_logs_batch", broken)
        tracker = ProcessingLogTracker(pool=object())
        tracker.track("e1", "failed", STARTED)

        assert tracker.flush() == 0
        assert tracker.pending == 0

    def test_context_manager_flushes(self, monkeypatch):
        written = []
        monkeypatch.setattr(lineage, "insert_processing_logs_batch", lambda pool, entries: written.extend(entries) or len(entries))

        with ProcessingLogTracker(pool=object()) as tracker:
            tracker.track("e1", "duplicate", STARTED)

        assert [e.event_id for e in written] == ["e1"]


class TestLogging:
    def test_identity_ref(self):
        assert identity_ref("0123456789abcdef") == "01234567..."

    def test_json_formatter_fields(self):
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(message)s")
        record = logging.LogRecord("sync.test", logging.INFO, __file__, 1, "hello", None, None)

        payload = json.loads(formatter.format(record))

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["service"] == "activity-warehouse-sync"
        assert payload["logger"] == "sync.test"

    def test_log_operation_success_and_failure(self, caplog):
        logger = logging.getLogger("sync.test.operation")

        with caplog.at_level(logging.INFO, logger="sync.test.operation"):
            with log_operation("Sweep", logger=logger, page_size=10):
                pass
            with pytest.raises(RuntimeError):
                with log_operation("Sweep", logger=logger):
                    raise RuntimeError("boom")

        messages = [r.getMessage() for r in caplog.records]
        assert messages == ["Starting: Sweep", "Completed: Sweep", "Starting: Sweep", "Failed: Sweep"]
        assert caplog.records[1].status == "success"
        assert caplog.records[3].error_type == "RuntimeError"
