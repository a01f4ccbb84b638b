"""
Rate-limiting batch manager.

Single choke point for outbound traffic: one rate limiter per target system
and one batch processor per batch type, created lazily on first use.

Usage:
    manager = create_manager(config, search_index=search, source_client_factory=factory)

    store = await manager.execute_with_rate_limit(TargetSystem.SOURCE, client.get_store)
    await manager.add_to_batch(BatchType.SEARCH_UPSERT, SearchUpsertItem(ns, doc))

    await manager.close()
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar, Union

from storesync.batching import BatchExecutor, BatchProcessor
from storesync.config import AppConfig, BatchConfig, TargetSystemProfile
from storesync.exceptions import UnknownBatchTypeError, UnknownTargetSystemError
from storesync.executors import (
    SearchDeleteExecutor,
    SearchUpsertExecutor,
    SourceClientFactory,
    SourceFetchExecutor,
)
from storesync.models import BatchType, CallOptions, RateLimitStatus, TargetSystem
from storesync.observability import get_logger, MetricsCollector
from storesync.resilience import APIRateLimiter
from storesync.search_index import SearchIndexClient

logger = get_logger(__name__)

T = TypeVar("T")


class RateLimitingBatchManager:
    """
    Composes per-system rate limiters and per-batch-type processors.

    Constructed explicitly with its configuration; there is no global
    instance. Executors are registered per batch type before first use.
    """

    def __init__(
        self,
        profiles: Mapping[TargetSystem, TargetSystemProfile],
        batch_configs: Mapping[BatchType, BatchConfig],
        metrics: Optional[MetricsCollector] = None,
    ):
        self.profiles: Dict[TargetSystem, TargetSystemProfile] = dict(profiles)
        self.batch_configs: Dict[BatchType, BatchConfig] = dict(batch_configs)
        self.metrics = metrics or MetricsCollector()
        self._limiters: Dict[TargetSystem, APIRateLimiter] = {}
        self._processors: Dict[BatchType, BatchProcessor] = {}
        self._executors: Dict[BatchType, BatchExecutor] = {}
        self._closed = False

    # ─── Registration ────────────────────────────────────────────────────────

    def register_executor(self, batch_type: BatchType, executor: BatchExecutor) -> None:
        """Register the executor for a batch type (before its first submission)."""
        batch_type = self._coerce_batch_type(batch_type)
        if batch_type not in self.batch_configs:
            raise UnknownBatchTypeError(batch_type.value)
        if batch_type in self._processors:
            raise ValueError(f"Batch type {batch_type.value} is already in use")
        self._executors[batch_type] = executor
        logger.debug(f"Registered executor for {batch_type.value}")

    @staticmethod
    def _coerce_system(system: Union[TargetSystem, str]) -> TargetSystem:
        try:
            return TargetSystem(system)
        except ValueError:
            raise UnknownTargetSystemError(str(system))

    @staticmethod
    def _coerce_batch_type(batch_type: Union[BatchType, str]) -> BatchType:
        try:
            return BatchType(batch_type)
        except ValueError:
            raise UnknownBatchTypeError(str(batch_type))

    def _limiter(self, system: Union[TargetSystem, str]) -> APIRateLimiter:
        system = self._coerce_system(system)
        limiter = self._limiters.get(system)
        if limiter is None:
            profile = self.profiles.get(system)
            if profile is None:
                raise UnknownTargetSystemError(system.value)
            limiter = APIRateLimiter(profile, metrics=self.metrics)
            self._limiters[system] = limiter
        return limiter

    def _processor(self, batch_type: Union[BatchType, str]) -> BatchProcessor:
        batch_type = self._coerce_batch_type(batch_type)
        processor = self._processors.get(batch_type)
        if processor is None:
            executor = self._executors.get(batch_type)
            config = self.batch_configs.get(batch_type)
            if executor is None or config is None:
                raise UnknownBatchTypeError(batch_type.value)
            processor = BatchProcessor(batch_type, config, executor, metrics=self.metrics)
            self._processors[batch_type] = processor
        return processor

    # ─── Public API ──────────────────────────────────────────────────────────

    async def execute_with_rate_limit(
        self,
        system: Union[TargetSystem, str],
        operation: Callable[[], Awaitable[T]],
        options: Optional[CallOptions] = None,
    ) -> T:
        """
        Run one operation under the target system's rate limit.

        Raises:
            UnknownTargetSystemError: No profile for the system
            CircuitOpenError: Circuit open, operation not attempted
            RetryExhaustedError: Every attempt failed
        """
        return await self._limiter(system).execute(operation, options)

    def submit_to_batch(
        self,
        batch_type: Union[BatchType, str],
        item: Any,
        options: Optional[CallOptions] = None,
    ) -> asyncio.Future:
        """Enqueue an item and return the future its batch will settle."""
        return self._processor(batch_type).submit(item, options)

    async def add_to_batch(
        self,
        batch_type: Union[BatchType, str],
        item: Any,
        options: Optional[CallOptions] = None,
    ) -> Any:
        """
        Enqueue an item and wait for its batch to settle it.

        Raises:
            UnknownBatchTypeError: No executor registered for the batch type
        """
        return await self.submit_to_batch(batch_type, item, options)

    def get_rate_limit_status(self, system: Union[TargetSystem, str]) -> Optional[RateLimitStatus]:
        """Status for a system, or None if it is unknown or has not been called yet."""
        try:
            system = self._coerce_system(system)
        except UnknownTargetSystemError:
            return None
        limiter = self._limiters.get(system)
        return limiter.get_status() if limiter else None

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot of call metrics, limiter status and batch queues."""
        return {
            "metrics": self.metrics.get_stats(),
            "rate_limits": {
                system.value: limiter.get_status().to_dict()
                for system, limiter in self._limiters.items()
            },
            "batches": {
                batch_type.value: processor.get_stats()
                for batch_type, processor in self._processors.items()
            },
        }

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Flush every batch queue and wait for in-flight batches."""
        for processor in list(self._processors.values()):
            await processor.drain()

    async def close(self, drain: bool = True) -> None:
        """Stop all processors, optionally flushing queued work first."""
        if self._closed:
            return
        self._closed = True
        if drain:
            await self.drain()
        for processor in self._processors.values():
            await processor.close()
        logger.info("Rate-limiting batch manager closed")


def create_manager(
    app_config: Optional[AppConfig] = None,
    search_index: Optional[SearchIndexClient] = None,
    source_client_factory: Optional[SourceClientFactory] = None,
    metrics: Optional[MetricsCollector] = None,
) -> RateLimitingBatchManager:
    """
    Build a manager with the default executors wired in.

    Search batch types are registered when a search index is given, the
    source-fetch batch type when a client factory is given.
    """
    if app_config is None:
        from storesync.config import config as app_config

    rate_limits = app_config.rate_limits
    manager = RateLimitingBatchManager(rate_limits.profiles, rate_limits.batches, metrics=metrics)

    if search_index is not None:
        manager.register_executor(
            BatchType.SEARCH_UPSERT,
            SearchUpsertExecutor(manager, search_index, rate_limits.batches[BatchType.SEARCH_UPSERT]),
        )
        manager.register_executor(
            BatchType.SEARCH_DELETE,
            SearchDeleteExecutor(manager, search_index, rate_limits.batches[BatchType.SEARCH_DELETE]),
        )

    if source_client_factory is not None:
        manager.register_executor(
            BatchType.SOURCE_FETCH,
            SourceFetchExecutor(manager, source_client_factory),
        )

    return manager
