"""
Sync service for keeping the primary store and search index in sync with the source API.

Pulls one tenant's store row and its products / orders / customers page by
page through the rate-limiting manager, upserts them into DuckDB and queues
search documents on the SEARCH_UPSERT batch type.

Features:
- Per-page saves: progress survives a failure on a later page
- Sync timestamps per entity type (read by the consistency checker)
- Observability: correlation IDs and timing metrics
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from storesync.exceptions import CircuitOpenError, RetryExhaustedError, SyncError
from storesync.executors import SourceClientFactory
from storesync.manager import RateLimitingBatchManager
from storesync.models import (
    BatchType,
    DataType,
    Discrepancy,
    DiscrepancyType,
    SearchDeleteItem,
    SearchUpsertItem,
    StoreSystem,
    TargetSystem,
)
from storesync.observability import correlation_context, get_logger, Timer
from storesync.search_index import SearchIndexClient
from storesync.source_client import StoreAPIClient
from storesync.store import PrimaryStore

logger = get_logger(__name__)

DEFAULT_ENTITIES = DataType.indexed()


class SyncService:
    """
    Service for syncing one tenant from the source API.

    Usage:
        service = SyncService(manager, store, search_index)
        stats = await service.sync_entities("123", "token")
    """

    def __init__(
        self,
        manager: RateLimitingBatchManager,
        primary_store: PrimaryStore,
        search_index: Optional[SearchIndexClient] = None,
        source_client_factory: Optional[SourceClientFactory] = None,
    ):
        self.manager = manager
        self.primary_store = primary_store
        self.search_index = search_index
        self.source_client_factory = source_client_factory or StoreAPIClient

    async def _source_runner(self, operation):
        return await self.manager.execute_with_rate_limit(TargetSystem.SOURCE, operation)

    async def sync_store(self, client: StoreAPIClient) -> Dict[str, Any]:
        """Refresh the tenant's store row and stamp last_sync_at."""
        store = await self.manager.execute_with_rate_limit(TargetSystem.SOURCE, client.get_store)
        await self.primary_store.upsert_store(
            client.store_id,
            {**store, "last_sync_at": datetime.now(timezone.utc).isoformat()},
        )
        return store

    async def sync_entity(self, client: StoreAPIClient, data_type: DataType) -> Dict[str, int]:
        """
        Sync one entity type page by page.

        Returns:
            {"synced": n, "indexed": n, "index_failed": n}
        """
        entity = DataType(data_type).value
        store_id = client.store_id
        namespace = self.search_index.namespace(store_id, entity) if self.search_index else None
        stats = {"synced": 0, "indexed": 0, "index_failed": 0}
        pending: List[asyncio.Future] = []

        logger.info(f"Syncing {entity}...", extra={"store_id": store_id})
        try:
            async for page in client.paginate(entity, runner=self._source_runner):
                # Save each page immediately to preserve progress
                stats["synced"] += await self.primary_store.upsert_records(entity, store_id, page)
                if namespace:
                    pending.extend(
                        self.manager.submit_to_batch(
                            BatchType.SEARCH_UPSERT, SearchUpsertItem(namespace, dict(record))
                        )
                        for record in page
                    )
        finally:
            # Saved pages are indexed even when a later page fails
            await self._collect_index_results(pending, stats, entity, namespace)

        await self.primary_store.set_last_sync_time(store_id, entity)
        return stats

    async def _collect_index_results(
        self,
        pending: List[asyncio.Future],
        stats: Dict[str, int],
        entity: str,
        namespace: Optional[str],
    ) -> None:
        if not pending:
            return
        outcomes = await asyncio.gather(*pending, return_exceptions=True)
        failures = [o for o in outcomes if isinstance(o, BaseException)]
        stats["indexed"] = len(outcomes) - len(failures)
        stats["index_failed"] = len(failures)
        if failures:
            logger.warning(
                f"{len(failures)} {entity} documents failed to index: {failures[0]}",
                extra={"namespace": namespace},
            )

    async def remove_records(self, store_id: str, data_type: DataType, ids: List[str]) -> Dict[str, int]:
        """
        Delete records from the primary store and their search documents.

        Used to prune records that no longer exist in the source API.

        Returns:
            {"removed": n, "unindexed": n, "unindex_failed": n}
        """
        entity = DataType(data_type).value
        if DataType(data_type) not in DEFAULT_ENTITIES:
            raise ValueError(f"Cannot remove entity type: {entity}")
        ids = [str(i) for i in ids]
        stats = {"removed": 0, "unindexed": 0, "unindex_failed": 0}
        if not ids:
            return stats

        stats["removed"] = await self.primary_store.delete_records(entity, store_id, ids)
        if self.search_index:
            namespace = self.search_index.namespace(store_id, entity)
            outcomes = await asyncio.gather(
                *(
                    self.manager.submit_to_batch(BatchType.SEARCH_DELETE, SearchDeleteItem(namespace, i))
                    for i in ids
                ),
                return_exceptions=True,
            )
            failures = [o for o in outcomes if isinstance(o, BaseException)]
            stats["unindexed"] = len(outcomes) - len(failures)
            stats["unindex_failed"] = len(failures)
            if failures:
                logger.warning(f"{len(failures)} {entity} documents failed to unindex: {failures[0]}")

        logger.info(f"Removed {stats['removed']} {entity} for store {store_id}")
        return stats

    async def prune_orphans(self, store_id: str, discrepancies: List[Discrepancy]) -> Dict[str, Dict[str, int]]:
        """Remove primary store records a consistency check found missing from the source API."""
        orphaned: Dict[str, List[str]] = {}
        for d in discrepancies:
            if d.type == DiscrepancyType.ORPHANED and d.system == StoreSystem.PRIMARY:
                orphaned.setdefault(d.entity, []).append(d.entity_id)

        stats = {}
        for entity, ids in orphaned.items():
            stats[entity] = await self.remove_records(store_id, DataType(entity), ids)
        return stats

    async def sync_entities(
        self,
        store_id: str,
        access_token: str,
        data_types: Optional[List[DataType]] = None,
        include_store: bool = True,
    ) -> Dict[str, Any]:
        """
        Sync the store row and the given entity types for one tenant.

        Args:
            store_id: Tenant ID
            access_token: Tenant's source API token
            data_types: Entity types to sync (default: products, orders, customers)
            include_store: Also refresh the store row

        Returns:
            Dict with per-entity statistics
        """
        data_types = [DataType(t) for t in (data_types or DEFAULT_ENTITIES)]
        stats: Dict[str, Any] = {}

        with correlation_context(store_id=str(store_id), sync_type="entities"):
            logger.info(
                f"Starting sync for store {store_id}",
                extra={"data_types": [t.value for t in data_types]},
            )
            client = self.source_client_factory(str(store_id), access_token)
            try:
                with Timer("sync_entities", logger, warn_threshold_ms=60000):
                    if include_store:
                        await self.sync_store(client)
                        stats["store"] = 1
                    for data_type in data_types:
                        if data_type not in DEFAULT_ENTITIES:
                            raise ValueError(f"Cannot sync entity type: {data_type.value}")
                        stats[data_type.value] = await self.sync_entity(client, data_type)
            except CircuitOpenError as e:
                logger.warning(f"Sync skipped, source circuit open: {e}")
                raise
            except RetryExhaustedError as e:
                logger.error(
                    f"Sync failed after {e.attempts} attempt(s): {e}",
                    extra={"circuit_open": e.circuit_open},
                    exc_info=True,
                )
                raise
            except SyncError as e:
                logger.error(f"Sync error: {e}", exc_info=True)
                raise
            finally:
                await client.close()

            logger.info(f"Sync complete: {stats}")
        return stats
