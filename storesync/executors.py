"""
Batch executors for the default batch types.

Search executors partition a batch by namespace and make one index call
per namespace, so a failing tenant index does not fail another tenant's
operations. The source-fetch executor runs every request on its own.
All outbound calls go through the manager's rate limiter.
"""
import asyncio
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Tuple, TYPE_CHECKING

from storesync.config import BatchConfig
from storesync.models import (
    BatchExecutionResult,
    BatchOperation,
    CallOptions,
    Priority,
    SearchDeleteItem,
    SearchUpsertItem,
    SourceFetchRequest,
    TargetSystem,
)
from storesync.observability import get_logger
from storesync.search_index import SearchIndexClient
from storesync.source_client import StoreAPIClient

if TYPE_CHECKING:
    from storesync.manager import RateLimitingBatchManager

logger = get_logger(__name__)

SourceClientFactory = Callable[[str, str], StoreAPIClient]


def group_by_namespace(operations: List[BatchOperation]) -> "OrderedDict[str, List[BatchOperation]]":
    """Partition operations by target namespace, keeping dispatch order."""
    groups: "OrderedDict[str, List[BatchOperation]]" = OrderedDict()
    for op in operations:
        groups.setdefault(op.data.namespace, []).append(op)
    return groups


def _group_priority(operations: List[BatchOperation]) -> Priority:
    return min((op.priority for op in operations), key=lambda p: p.rank)


class _NamespaceExecutor:
    """Runs one rate-limited search call per namespace group."""

    action = "write"

    def __init__(
        self,
        manager: "RateLimitingBatchManager",
        search_index: SearchIndexClient,
        config: BatchConfig,
    ):
        self.manager = manager
        self.search_index = search_index
        self.config = config

    def _call(self, namespace: str, operations: List[BatchOperation]) -> Callable[[], Awaitable[Any]]:
        raise NotImplementedError

    def _result_for(self, namespace: str, op: BatchOperation) -> Any:
        raise NotImplementedError

    async def __call__(self, operations: List[BatchOperation]) -> BatchExecutionResult:
        start = time.perf_counter()
        groups = group_by_namespace(operations)
        semaphore = asyncio.Semaphore(self.config.concurrent_batches)

        async def run_group(namespace: str, group: List[BatchOperation]) -> Tuple[str, Any]:
            async with semaphore:
                try:
                    await self.manager.execute_with_rate_limit(
                        TargetSystem.SEARCH,
                        self._call(namespace, group),
                        CallOptions(priority=_group_priority(group)),
                    )
                except Exception as e:
                    logger.error(
                        f"Search {self.action} failed for {namespace}: {e}",
                        extra={"namespace": namespace, "operations": len(group)},
                    )
                    for op in group:
                        op.reject(e)
                    return namespace, e

                for op in group:
                    op.fulfill(self._result_for(namespace, op))
                return namespace, None

        outcomes = await asyncio.gather(*(run_group(ns, group) for ns, group in groups.items()))
        errors = [error for _, error in outcomes if error is not None]

        return BatchExecutionResult(
            success=not errors,
            results=[ns for ns, error in outcomes if error is None],
            errors=errors,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            batch_size=len(operations),
        )


class SearchUpsertExecutor(_NamespaceExecutor):
    """Upserts documents, one index call per namespace."""

    action = "upsert"

    def _call(self, namespace, operations):
        documents = [op.data.document for op in operations]
        return lambda: self.search_index.upsert_documents(namespace, documents)

    def _result_for(self, namespace: str, op: BatchOperation) -> Dict[str, Any]:
        item: SearchUpsertItem = op.data
        return {"namespace": namespace, "id": item.document.get("id")}


class SearchDeleteExecutor(_NamespaceExecutor):
    """Deletes documents by ID, one index call per namespace."""

    action = "delete"

    def _call(self, namespace, operations):
        ids = [op.data.document_id for op in operations]
        return lambda: self.search_index.delete_documents(namespace, ids)

    def _result_for(self, namespace: str, op: BatchOperation) -> Dict[str, Any]:
        item: SearchDeleteItem = op.data
        return {"namespace": namespace, "id": item.document_id}


class SourceFetchExecutor:
    """
    Runs each source fetch through the manager individually.

    Concurrency is bounded by the source profile's max_concurrent gate;
    one HTTP client is opened per tenant in the batch.
    """

    def __init__(
        self,
        manager: "RateLimitingBatchManager",
        client_factory: SourceClientFactory,
    ):
        self.manager = manager
        self.client_factory = client_factory

    async def __call__(self, operations: List[BatchOperation]) -> BatchExecutionResult:
        start = time.perf_counter()
        clients: Dict[Tuple[str, str], StoreAPIClient] = {}
        for op in operations:
            request: SourceFetchRequest = op.data
            key = (request.store_id, request.access_token)
            if key not in clients:
                clients[key] = self.client_factory(request.store_id, request.access_token)

        async def run_one(op: BatchOperation) -> Any:
            request: SourceFetchRequest = op.data
            client = clients[(request.store_id, request.access_token)]
            try:
                result = await self.manager.execute_with_rate_limit(
                    TargetSystem.SOURCE,
                    lambda: client.fetch(request.resource, request.params),
                    CallOptions(priority=op.priority),
                )
            except Exception as e:
                op.reject(e)
                return e
            op.fulfill(result)
            return None

        try:
            outcomes = await asyncio.gather(*(run_one(op) for op in operations))
        finally:
            for client in clients.values():
                await client.close()

        errors = [e for e in outcomes if e is not None]
        if errors:
            logger.warning(f"{len(errors)}/{len(operations)} source fetches failed")

        return BatchExecutionResult(
            success=not errors,
            errors=errors,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            batch_size=len(operations),
        )
