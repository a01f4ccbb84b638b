"""
Priority batch processor.

Accumulates individual operations into priority-ordered batches and hands
each batch to a pluggable executor. One processor exists per batch type.

Flush triggers:
- queue reaches the current batch size
- any queued operation has HIGH priority
- the oldest operation has waited max_wait_time_ms
- otherwise a timer armed for flush_interval_ms
"""
import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol

from storesync.config import BatchConfig
from storesync.exceptions import BatchExecutionError
from storesync.models import (
    BatchExecutionResult,
    BatchOperation,
    BatchType,
    CallOptions,
    Priority,
)
from storesync.observability import get_logger, MetricsCollector

logger = get_logger(__name__)


class BatchExecutor(Protocol):
    """
    Executes one batch.

    Implementations settle every operation individually (fulfill/reject)
    and isolate failures per partition so unrelated operations still succeed.
    """

    async def __call__(self, operations: List[BatchOperation]) -> BatchExecutionResult:
        ...


class BatchProcessor:
    """
    Queue + flush scheduler for one batch type.

    Usage:
        processor = BatchProcessor(BatchType.SEARCH_UPSERT, config, executor)
        result = await processor.add(item, CallOptions(priority=Priority.HIGH))
    """

    def __init__(
        self,
        batch_type: BatchType,
        config: BatchConfig,
        executor: BatchExecutor,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.batch_type = batch_type
        self.config = config
        self._executor = executor
        self.metrics = metrics or MetricsCollector()

        self._queue: List[BatchOperation] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_scheduled = False
        self._processing = False
        self._closed = False
        self._current_batch_size = config.max_batch_size

        # Stats for monitoring
        self.batches_processed = 0
        self.operations_processed = 0
        self.operations_failed = 0

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def current_batch_size(self) -> int:
        return self._current_batch_size

    # ─── Submission ──────────────────────────────────────────────────────────

    def submit(self, data: Any, options: Optional[CallOptions] = None) -> asyncio.Future:
        """
        Enqueue an operation and return the future its batch will settle.

        Must be called from inside a running event loop.
        """
        if self._closed:
            raise BatchExecutionError(self.batch_type.value, "Batch processor is closed")

        options = options or CallOptions()
        loop = asyncio.get_running_loop()
        operation = BatchOperation(
            data=data,
            future=loop.create_future(),
            priority=options.priority,
            metadata=dict(options.metadata),
        )

        self._queue.append(operation)
        self._queue.sort(key=lambda op: op.sort_key)
        self._schedule_flush()
        return operation.future

    async def add(self, data: Any, options: Optional[CallOptions] = None) -> Any:
        """Submit an operation and wait for its result."""
        return await self.submit(data, options)

    # ─── Scheduling ──────────────────────────────────────────────────────────

    def _schedule_flush(self) -> None:
        if not self._queue or self._closed:
            return

        self._cancel_timer()
        loop = asyncio.get_running_loop()
        now = loop.time()

        if self._should_flush_now(now):
            self._request_flush()
        else:
            self._timer = loop.call_later(self._timer_delay(now), self._request_flush)

    def _should_flush_now(self, now: float) -> bool:
        if len(self._queue) >= self._current_batch_size:
            return True
        if any(op.priority == Priority.HIGH for op in self._queue):
            return True
        return self._oldest_age(now) >= self.config.max_wait_time_ms / 1000

    def _timer_delay(self, now: float) -> float:
        remaining_wait = self.config.max_wait_time_ms / 1000 - self._oldest_age(now)
        return max(0.0, min(self.config.flush_interval_ms / 1000, remaining_wait))

    def _oldest_age(self, now: float) -> float:
        return now - min(op.timestamp for op in self._queue)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _request_flush(self) -> None:
        """Start a flush on the next loop tick, coalescing concurrent requests."""
        self._timer = None
        if self._processing or self._flush_scheduled:
            return
        self._flush_scheduled = True
        self._flush_task = asyncio.get_running_loop().create_task(self._flush())

    # ─── Execution ───────────────────────────────────────────────────────────

    async def _flush(self) -> None:
        self._flush_scheduled = False
        if self._processing or not self._queue:
            return

        self._processing = True
        try:
            size = min(len(self._queue), self._current_batch_size)
            batch = self._queue[:size]
            del self._queue[:size]
            await self._execute_batch(batch)
        finally:
            self._processing = False
            if self._queue:
                self._schedule_flush()

    async def _execute_batch(self, batch: List[BatchOperation]) -> BatchExecutionResult:
        logger.info(
            f"Processing {self.batch_type.value} batch: {len(batch)} operations",
            extra={"batch_type": self.batch_type.value, "pending": len(self._queue)},
        )
        start = time.perf_counter()

        try:
            result = await self._executor(batch)
        except Exception as e:
            logger.error(f"Batch execution failed for {self.batch_type.value}: {e}", exc_info=True)
            error = BatchExecutionError(
                self.batch_type.value,
                f"Batch execution failed for {self.batch_type.value}",
                str(e),
            )
            error.__cause__ = e
            for op in batch:
                op.reject(error)
            result = BatchExecutionResult(success=False, errors=[error], batch_size=len(batch))

        result.execution_time_ms = result.execution_time_ms or (time.perf_counter() - start) * 1000

        unsettled = [op for op in batch if not op.settled]
        if unsettled:
            logger.warning(
                f"Executor for {self.batch_type.value} left {len(unsettled)} operations unsettled"
            )
            error = BatchExecutionError(
                self.batch_type.value, "Executor did not settle operation"
            )
            for op in unsettled:
                op.reject(error)

        failed = sum(
            1 for op in batch
            if not op.future.cancelled() and op.future.exception() is not None
        )
        self.batches_processed += 1
        self.operations_processed += len(batch)
        self.operations_failed += failed
        self.metrics.increment(self.batch_type.value, "batches")
        self.metrics.increment(self.batch_type.value, "operations", len(batch))
        if failed:
            self.metrics.increment(self.batch_type.value, "failed_operations", failed)
        self.metrics.record_timing(self.batch_type.value, result.execution_time_ms)

        self._adapt_batch_size(result, failed)
        return result

    def _adapt_batch_size(self, result: BatchExecutionResult, failed: int) -> None:
        """Shrink after errors or slow batches, grow back after clean ones."""
        if not self.config.adaptive_sizing:
            return

        current = self._current_batch_size
        slow = result.execution_time_ms > self.config.flush_interval_ms
        if failed or result.errors or slow:
            new_size = max(self.config.min_batch_size, current // 2)
        else:
            new_size = min(self.config.max_batch_size, current + max(1, current // 4))

        if new_size != current:
            logger.debug(
                f"Adaptive batch size for {self.batch_type.value}: {current} -> {new_size}"
            )
            self._current_batch_size = new_size

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Flush everything queued and wait for in-flight batches."""
        while True:
            self._cancel_timer()
            task = self._flush_task
            if task is not None and not task.done():
                await task
                continue
            if not self._queue:
                return
            await self._flush()

    async def close(self) -> None:
        """Stop accepting work and reject anything still queued."""
        self._closed = True
        self._cancel_timer()
        task = self._flush_task
        if task is not None and not task.done():
            await task

        if self._queue:
            error = BatchExecutionError(self.batch_type.value, "Batch processor closed")
            for op in self._queue:
                op.reject(error)
            logger.warning(f"Rejected {len(self._queue)} queued {self.batch_type.value} operations on close")
            self._queue.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "batch_type": self.batch_type.value,
            "pending": len(self._queue),
            "processing": self._processing,
            "current_batch_size": self._current_batch_size,
            "batches_processed": self.batches_processed,
            "operations_processed": self.operations_processed,
            "operations_failed": self.operations_failed,
        }
