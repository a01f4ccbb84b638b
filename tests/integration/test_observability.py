"""
Integration tests for storesync/observability.py

Tests structured logging, correlation IDs, and metrics collection.
"""
import logging
import json
import pytest
import time as time_module

from storesync.observability import (
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    get_log_context,
    Timer,
    MetricsCollector,
    StructuredFormatter,
    HumanReadableFormatter,
    setup_logging,
)


def _record(msg="hello", **extra):
    record = logging.LogRecord("storesync.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationId:
    """Tests for correlation ID management."""

    def test_generate_correlation_id_not_empty(self):
        """Generated ID is not empty."""
        cid = generate_correlation_id()
        assert cid is not None
        assert len(cid) == 8

    def test_context_sets_and_restores(self):
        """The ID and bound context only exist inside the block."""
        assert get_correlation_id() is None
        with correlation_context("run-1", store_id="42") as cid:
            assert cid == "run-1"
            assert get_correlation_id() == "run-1"
            assert get_log_context() == {"store_id": "42"}
        assert get_correlation_id() is None
        assert get_log_context() == {}

    def test_nested_context_merges(self):
        with correlation_context(store_id="42"):
            with correlation_context(phase="snapshot"):
                assert get_log_context() == {"store_id": "42", "phase": "snapshot"}
            assert get_log_context() == {"store_id": "42"}


class TestFormatters:
    """Tests for log formatters."""

    def test_structured_formatter(self):
        """JSON output carries correlation ID, context and extras."""
        formatter = StructuredFormatter()
        with correlation_context("abc", store_id="42"):
            line = formatter.format(_record(batch_type="search_upsert"))

        entry = json.loads(line)
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "abc"
        assert entry["store_id"] == "42"
        assert entry["batch_type"] == "search_upsert"

    def test_human_formatter(self):
        formatter = HumanReadableFormatter()
        with correlation_context("abc"):
            line = formatter.format(_record(duration_ms=1.5))

        assert "[abc]" in line
        assert "hello" in line
        assert "duration_ms" in line

    def test_setup_logging_quiets_httpx(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging("DEBUG", json_format=True)
            assert logging.getLogger("httpx").level == logging.WARNING
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestTimer:
    """Tests for Timer context manager."""

    def test_measures_elapsed_time(self):
        """Timer measures elapsed time correctly."""
        with Timer("test_operation") as timer:
            time_module.sleep(0.05)

        assert timer.elapsed_ms >= 45  # At least 45ms
        assert timer.elapsed_ms < 1000

    def test_warns_over_threshold(self, caplog):
        logger = logging.getLogger("storesync.test.timer")
        with caplog.at_level(logging.DEBUG, logger="storesync.test.timer"):
            with Timer("slow_call", logger, warn_threshold_ms=0):
                time_module.sleep(0.001)

        assert caplog.records[-1].levelno == logging.WARNING
        assert caplog.records[-1].getMessage() == "slow_call completed"


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_record_call(self):
        """Counts calls by outcome per key."""
        metrics = MetricsCollector()
        metrics.record_call("source", success=True, duration_ms=10)
        metrics.record_call("source", success=False, duration_ms=30)
        metrics.increment("source", "circuit_breaker_trips")

        stats = metrics.get_stats()["source"]
        assert stats["total_requests"] == 2
        assert stats["successful_requests"] == 1
        assert stats["failed_requests"] == 1
        assert stats["circuit_breaker_trips"] == 1
        assert stats["timing"]["avg_ms"] == 20
        assert stats["timing"]["p95_ms"] is None

    def test_sample_limit(self):
        metrics = MetricsCollector(max_samples=5)
        for i in range(10):
            metrics.record_timing("search_upsert", i)

        timing = metrics.get_stats()["search_upsert"]["timing"]
        assert timing["count"] == 5
        assert timing["min_ms"] == 5

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.increment("search", "batches")
        metrics.reset()
        assert metrics.get_stats() == {}
