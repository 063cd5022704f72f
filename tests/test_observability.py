"""Tests for the observability module.

Tests for metrics collection, logging configuration, and error sanitization.
"""
import logging
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from typenote_mcp.observability import (
    MetricsCollector,
    _sanitize_error_message,
    configure_logging,
    metrics,
    timed_operation,
    traced,
)


class TestErrorMessageSanitization:
    """Tests for error message sanitization."""

    def test_sanitize_none_returns_none(self):
        assert _sanitize_error_message(None) is None

    def test_sanitize_simple_message(self):
        assert _sanitize_error_message("Simple error") == "Simple error"

    def test_sanitize_removes_home_directory(self):
        home = str(Path.home())
        result = _sanitize_error_message(f"{home}/vault/note.md: Permission denied")
        if home != "/":
            assert home not in result
            assert result.startswith("~/vault/note.md")

    def test_sanitize_removes_newlines(self):
        result = _sanitize_error_message("Line 1\nLine 2\rLine 3")
        assert result == "Line 1 Line 2 Line 3"

    def test_sanitize_collapses_whitespace(self):
        assert _sanitize_error_message("  a   b\t\tc  ") == "a b c"

    def test_sanitize_truncates_long_messages(self):
        result = _sanitize_error_message("a" * 300)
        assert len(result) == 200
        assert result.endswith("...")

    def test_sanitize_custom_max_length(self):
        result = _sanitize_error_message("a" * 100, max_length=50)
        assert len(result) == 50


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_record_success_and_failure(self):
        collector = MetricsCollector()
        collector.record_operation("search_notes", 10.0, True)
        collector.record_operation("search_notes", 30.0, False, error="bad\nregex")

        data = collector.get_metrics()["search_notes"]
        assert data["count"] == 2
        assert data["success_count"] == 1
        assert data["error_count"] == 1
        assert data["avg_duration_ms"] == 20.0
        assert data["min_duration_ms"] == 10.0
        assert data["max_duration_ms"] == 30.0
        assert data["last_error"] == "bad regex"
        assert data["last_error_time"] is not None

    def test_summary(self):
        collector = MetricsCollector()
        collector.record_operation("a", 1.0, True)
        collector.record_operation("b", 1.0, False, error="x")

        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5
        assert set(summary["operations_tracked"]) == {"a", "b"}

    def test_empty_summary(self):
        assert MetricsCollector().get_summary()["overall_success_rate"] == 1.0

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("a", 1.0, True)
        collector.reset()
        assert collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation and traced."""

    def setup_method(self):
        metrics.reset()

    def test_records_success(self):
        with timed_operation("rename_note", note_id="general/a") as op:
            op["links_updated"] = 2
            assert "correlation_id" in op

        assert metrics.get_metrics()["rename_note"]["success_count"] == 1

    def test_records_error_and_reraises(self):
        with pytest.raises(RuntimeError):
            with timed_operation("link_notes"):
                raise RuntimeError("boom")

        data = metrics.get_metrics()["link_notes"]
        assert data["error_count"] == 1
        assert data["last_error"] == "boom"

    def test_traced_decorator(self):
        @traced("list_things")
        def list_things(query=None):
            return [1, 2, 3]

        assert list_things(query="x") == [1, 2, 3]
        assert metrics.get_metrics()["list_things"]["count"] == 1

    def test_traced_defaults_to_function_name(self):
        @traced()
        def compute():
            return 42

        assert compute() == 42
        assert "compute" in metrics.get_metrics()


class TestConfigureLogging:
    """Tests for persistent logging setup."""

    def test_creates_log_file(self):
        package_logger = logging.getLogger("typenote_mcp")
        original_handlers = list(package_logger.handlers)
        original_level = package_logger.level
        with tempfile.TemporaryDirectory() as log_dir:
            try:
                path = configure_logging(log_dir=log_dir, console=False)
                logging.getLogger("typenote_mcp.test").info("hello log")

                assert path == Path(log_dir)
                log_file = Path(log_dir) / "typenote.log"
                for handler in package_logger.handlers:
                    handler.flush()
                assert log_file.exists()
                assert "hello log" in log_file.read_text(encoding="utf-8")
            finally:
                for handler in list(package_logger.handlers):
                    if handler not in original_handlers:
                        handler.close()
                        package_logger.removeHandler(handler)
                package_logger.setLevel(original_level)

    def test_no_duplicate_file_handlers(self):
        package_logger = logging.getLogger("typenote_mcp")
        original_handlers = list(package_logger.handlers)
        with tempfile.TemporaryDirectory() as log_dir:
            try:
                configure_logging(log_dir=log_dir, console=False)
                configure_logging(log_dir=log_dir, console=False)
                file_handlers = [
                    h for h in package_logger.handlers
                    if isinstance(h, RotatingFileHandler)
                    and h not in original_handlers
                ]
                assert len(file_handlers) == 1
            finally:
                for handler in list(package_logger.handlers):
                    if handler not in original_handlers:
                        handler.close()
                        package_logger.removeHandler(handler)
