"""
Integration tests for storesync/batching.py

Tests priority ordering, flush triggers, settlement and adaptive sizing.
"""
import asyncio
import pytest

from storesync.batching import BatchProcessor
from storesync.config import BatchConfig
from storesync.exceptions import BatchExecutionError
from storesync.models import BatchExecutionResult, BatchType, CallOptions, Priority
from storesync.observability import MetricsCollector

HIGH = CallOptions(priority=Priority.HIGH)
LOW = CallOptions(priority=Priority.LOW)


class RecordingExecutor:
    """Executor that records each batch and settles operations as told."""

    def __init__(self, fail: bool = False, leave_unsettled: bool = False, reject=()):
        self.fail = fail
        self.leave_unsettled = leave_unsettled
        self.reject = set(reject)
        self.batches = []

    async def __call__(self, operations):
        self.batches.append([op.data for op in operations])
        if self.fail:
            raise RuntimeError("index unavailable")
        for op in operations:
            if op.data in self.reject:
                op.reject(ValueError(f"rejected {op.data}"))
            elif not self.leave_unsettled:
                op.fulfill(f"done:{op.data}")
        return BatchExecutionResult(success=not self.reject, batch_size=len(operations))


def _config(**overrides) -> BatchConfig:
    values = {
        "max_batch_size": 10,
        "min_batch_size": 2,
        "flush_interval_ms": 1000,
        "max_wait_time_ms": 5000,
        "concurrent_batches": 1,
        "adaptive_sizing": False,
    }
    values.update(overrides)
    return BatchConfig(**values)


class TestOrdering:
    """Tests for priority dispatch order."""

    @pytest.mark.asyncio
    async def test_high_priority_first(self):
        """A(normal), B(high), C(normal) flush as [B, A, C]."""
        executor = RecordingExecutor()
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(max_batch_size=3), executor)

        futures = [
            processor.submit("A"),
            processor.submit("B", HIGH),
            processor.submit("C"),
        ]
        results = await asyncio.gather(*futures)

        assert executor.batches == [["B", "A", "C"]]
        assert results == ["done:A", "done:B", "done:C"]

    @pytest.mark.asyncio
    async def test_low_priority_last(self):
        executor = RecordingExecutor()
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(), executor)

        futures = [processor.submit("L", LOW), processor.submit("N"), processor.submit("H", HIGH)]
        await asyncio.gather(*futures)

        assert executor.batches == [["H", "N", "L"]]


class TestFlushTriggers:
    """Tests for size, timer and max-wait flushes."""

    @pytest.mark.asyncio
    async def test_timer_flush(self):
        """Normal-priority items flush together after the interval."""
        executor = RecordingExecutor()
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(flush_interval_ms=10), executor)

        results = await asyncio.gather(processor.add("x"), processor.add("y"))

        assert results == ["done:x", "done:y"]
        assert executor.batches == [["x", "y"]]

    @pytest.mark.asyncio
    async def test_size_flush_and_drain(self):
        """Full batches flush immediately; drain flushes the remainder."""
        executor = RecordingExecutor()
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(max_batch_size=3), executor)

        futures = [processor.submit(i) for i in range(7)]
        await processor.drain()

        assert [len(batch) for batch in executor.batches] == [3, 3, 1]
        assert all(f.done() for f in futures)
        assert processor.pending == 0

    @pytest.mark.asyncio
    async def test_max_wait_bounds_timer(self):
        """The flush timer never exceeds the oldest item's remaining wait."""
        executor = RecordingExecutor()
        processor = BatchProcessor(
            BatchType.SEARCH_UPSERT,
            _config(flush_interval_ms=10000, max_wait_time_ms=30),
            executor,
        )

        result = await asyncio.wait_for(processor.add("x"), timeout=1.0)
        assert result == "done:x"

    @pytest.mark.asyncio
    async def test_flush_requests_coalesce(self):
        """Many high-priority submissions in one tick produce one batch."""
        executor = RecordingExecutor()
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(max_batch_size=50), executor)

        futures = [processor.submit(i, HIGH) for i in range(20)]
        await asyncio.gather(*futures)

        assert len(executor.batches) == 1
        assert executor.batches[0] == list(range(20))


class TestSettlement:
    """Tests that every operation is settled exactly once."""

    @pytest.mark.asyncio
    async def test_executor_exception_rejects_batch(self):
        executor = RecordingExecutor(fail=True)
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(), executor)

        results = await asyncio.gather(
            processor.add("a", HIGH), processor.add("b", HIGH), return_exceptions=True
        )

        for result in results:
            assert isinstance(result, BatchExecutionError)
            assert isinstance(result.__cause__, RuntimeError)
            assert result.batch_type == "search_upsert"

    @pytest.mark.asyncio
    async def test_unsettled_operations_rejected(self):
        executor = RecordingExecutor(leave_unsettled=True)
        processor = BatchProcessor(BatchType.SOURCE_FETCH, _config(), executor)

        with pytest.raises(BatchExecutionError, match="did not settle"):
            await processor.add("a", HIGH)

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        """A rejected operation does not fail its neighbours."""
        executor = RecordingExecutor(reject={"bad"})
        metrics = MetricsCollector()
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(), executor, metrics=metrics)

        results = await asyncio.gather(
            processor.add("good", HIGH), processor.add("bad", HIGH), return_exceptions=True
        )

        assert results[0] == "done:good"
        assert isinstance(results[1], ValueError)
        stats = processor.get_stats()
        assert stats["operations_processed"] == 2
        assert stats["operations_failed"] == 1
        counters = metrics.get_stats()["search_upsert"]
        assert counters["batches"] == 1
        assert counters["failed_operations"] == 1

    @pytest.mark.asyncio
    async def test_close_rejects_queued(self):
        executor = RecordingExecutor()
        processor = BatchProcessor(BatchType.SEARCH_DELETE, _config(), executor)

        future = processor.submit("queued")
        await processor.close()

        with pytest.raises(BatchExecutionError, match="closed"):
            await future
        with pytest.raises(BatchExecutionError):
            processor.submit("late")
        assert executor.batches == []


class TestAdaptiveSizing:
    """Tests for adaptive batch sizing."""

    @pytest.mark.asyncio
    async def test_shrinks_on_error_and_grows_back(self):
        executor = RecordingExecutor(fail=True)
        processor = BatchProcessor(
            BatchType.SEARCH_UPSERT,
            _config(max_batch_size=8, min_batch_size=2, adaptive_sizing=True),
            executor,
        )

        with pytest.raises(BatchExecutionError):
            await processor.add("a", HIGH)
        assert processor.current_batch_size == 4

        with pytest.raises(BatchExecutionError):
            await processor.add("b", HIGH)
        assert processor.current_batch_size == 2

        with pytest.raises(BatchExecutionError):
            await processor.add("c", HIGH)
        assert processor.current_batch_size == 2  # floor

        executor.fail = False
        await processor.add("d", HIGH)
        assert processor.current_batch_size == 3

    @pytest.mark.asyncio
    async def test_fixed_size_when_disabled(self):
        executor = RecordingExecutor(fail=True)
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, _config(max_batch_size=8), executor)

        with pytest.raises(BatchExecutionError):
            await processor.add("a", HIGH)
        assert processor.current_batch_size == 8
