"""Tests for the observability module.

Tests for metrics collection, logging configuration and operation timing.
"""
import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from notegraph.observability import (MetricsCollector, configure_logging,
                                     is_logging_configured, metrics,
                                     timed_operation)


@pytest.fixture
def package_logger():
    """Restore the package logger's handlers and level after the test."""
    log = logging.getLogger("notegraph")
    handlers, level = list(log.handlers), log.level
    yield log
    for handler in log.handlers:
        if handler not in handlers:
            handler.close()
    log.handlers = handlers
    log.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_record_success_and_failure(self):
        collector = MetricsCollector()
        collector.record_operation("process_item", 10.0, success=True)
        collector.record_operation("process_item", 30.0, success=False, error="boom")

        data = collector.get_metrics()["process_item"]
        assert data["count"] == 2
        assert data["success_count"] == 1
        assert data["error_count"] == 1
        assert data["success_rate"] == 0.5
        assert data["avg_duration_ms"] == 20.0
        assert data["min_duration_ms"] == 10.0
        assert data["max_duration_ms"] == 30.0
        assert data["last_error"] == "boom"
        assert data["last_error_time"] is not None

    def test_summary(self):
        collector = MetricsCollector()
        assert collector.get_summary()["overall_success_rate"] == 1.0

        collector.record_operation("a", 1.0, success=True)
        collector.record_operation("b", 1.0, success=False)
        summary = collector.get_summary()

        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5
        assert set(summary["operations_tracked"]) == {"a", "b"}

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("a", 1.0, success=True)
        collector.reset()
        assert collector.get_metrics() == {}

    def test_save_without_file(self):
        assert MetricsCollector().save_metrics() is False

    def test_save_metrics(self, tmp_path):
        metrics_file = tmp_path / "metrics" / "metrics.json"
        collector = MetricsCollector(metrics_file=metrics_file)
        collector.record_operation("process_pending", 5.0, success=True)

        assert collector.save_metrics() is True
        data = json.loads(metrics_file.read_text())
        assert data["operations"]["process_pending"]["count"] == 1

    def test_auto_save(self, tmp_path):
        metrics_file = tmp_path / "metrics.json"
        collector = MetricsCollector(metrics_file=metrics_file, auto_save_interval=2)
        collector.record_operation("a", 1.0, success=True)
        assert not metrics_file.exists()
        collector.record_operation("a", 1.0, success=True)
        assert metrics_file.exists()


class TestTimedOperation:
    """Tests for the timed_operation context manager."""

    def test_records_success(self):
        metrics.reset()
        with timed_operation("unit_op", item_id="x") as op:
            op["status"] = "ready"
            assert len(op["correlation_id"]) == 8

        data = metrics.get_metrics()["unit_op"]
        assert data["count"] == 1
        assert data["success_count"] == 1

    def test_records_failure_and_reraises(self):
        metrics.reset()
        with pytest.raises(RuntimeError):
            with timed_operation("failing_op"):
                raise RuntimeError("exploded")

        data = metrics.get_metrics()["failing_op"]
        assert data["error_count"] == 1
        assert data["last_error"] == "exploded"


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_creates_rotating_log_file(self, tmp_path, package_logger):
        log_dir = configure_logging(log_dir=tmp_path / "logs", console=False)

        assert log_dir == tmp_path / "logs"
        assert is_logging_configured()
        rotating = [h for h in package_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) >= 1

        logging.getLogger("notegraph.services.item_processor").info("hello from a module")
        for handler in rotating:
            handler.flush()
        assert "hello from a module" in (log_dir / "notegraph.log").read_text()

    def test_idempotent(self, tmp_path, package_logger):
        configure_logging(log_dir=tmp_path, console=False)
        before = len(package_logger.handlers)
        configure_logging(log_dir=tmp_path, console=False)
        assert len(package_logger.handlers) == before

    def test_level_applied(self, tmp_path, package_logger):
        configure_logging(log_dir=tmp_path, level=logging.WARNING, console=False)
        assert package_logger.level == logging.WARNING
