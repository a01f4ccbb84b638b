"""
Meilisearch async wrapper for per-tenant search namespaces.

Each tenant entity type lives in its own index (``store-{store_id}-{entity}``),
so one tenant can be re-indexed or dropped without touching another.
The meilisearch client is synchronous; every call runs in the default
thread pool executor.
"""
import asyncio
import math
from typing import Optional, List, Dict, Any, Callable, TypeVar
from datetime import datetime, date

import meilisearch
from meilisearch.errors import MeilisearchApiError, MeilisearchCommunicationError, MeilisearchError

from storesync.config import SearchConfig
from storesync.exceptions import SearchIndexError
from storesync.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DOCUMENT_BATCH_SIZE = 1000


def _sanitize_for_json(obj: Any) -> Any:
    """Sanitize a value for JSON serialization (handle NaN, Infinity, dates)."""
    if obj is None:
        return None
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_sanitize_for_json(v) for v in obj]
    return obj


def _document_count(stats: Any) -> int:
    # Older clients return a dict, newer ones an IndexStats object
    if isinstance(stats, dict):
        return int(stats.get("numberOfDocuments", 0))
    return int(getattr(stats, "number_of_documents", 0) or 0)


def _is_index_not_found(error: MeilisearchApiError) -> bool:
    return getattr(error, "code", None) == "index_not_found" or "index_not_found" in str(error)


class SearchIndexClient:
    """Async wrapper for the Meilisearch client, one index per namespace."""

    def __init__(self, url: str, master_key: str, namespace_prefix: str = "store"):
        self.url = url
        self.master_key = master_key
        self.namespace_prefix = namespace_prefix
        self._client: Optional[meilisearch.Client] = None

    @classmethod
    def from_config(cls, settings: SearchConfig) -> "SearchIndexClient":
        return cls(settings.url, settings.master_key, settings.namespace_prefix)

    @property
    def client(self) -> meilisearch.Client:
        """Lazy-initialize Meilisearch client."""
        if self._client is None:
            self._client = meilisearch.Client(self.url, self.master_key or None)
        return self._client

    def namespace(self, store_id: str, entity: str) -> str:
        """Index UID for one tenant entity type."""
        return f"{self.namespace_prefix}-{store_id}-{entity}"

    async def _run(self, namespace: Optional[str], action: str, fn: Callable[[], T]) -> T:
        """Run a blocking client call in the executor, mapping client errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except MeilisearchApiError as e:
            raise SearchIndexError(f"Search index {action} failed", str(e), namespace=namespace) from e
        except MeilisearchCommunicationError as e:
            raise SearchIndexError(
                f"Search index unreachable during {action}", str(e), namespace=namespace
            ) from e
        except MeilisearchError as e:
            raise SearchIndexError(f"Search index {action} failed", str(e), namespace=namespace) from e

    async def health_check(self) -> dict:
        """Check Meilisearch health status."""
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.client.health)
        except Exception as e:
            logger.warning(f"Meilisearch health check failed: {e}")
            return {"status": "unavailable", "error": str(e)}

    async def upsert_documents(self, namespace: str, documents: List[Dict[str, Any]]) -> int:
        """
        Add or replace documents in a namespace.

        Args:
            namespace: Index UID
            documents: Documents with an ``id`` field

        Returns:
            Number of documents submitted
        """
        if not documents:
            return 0

        index = self.client.index(namespace)
        documents = [_sanitize_for_json(doc) for doc in documents]

        total = 0
        for i in range(0, len(documents), DOCUMENT_BATCH_SIZE):
            batch = documents[i:i + DOCUMENT_BATCH_SIZE]
            await self._run(
                namespace,
                "upsert",
                lambda b=batch: index.add_documents(b, primary_key="id"),
            )
            total += len(batch)

        logger.info(f"Indexed {total} documents to {namespace}")
        return total

    async def delete_documents(self, namespace: str, document_ids: List[str]) -> int:
        """Delete documents by ID. Returns number of IDs submitted."""
        if not document_ids:
            return 0

        index = self.client.index(namespace)
        ids = list(document_ids)
        await self._run(namespace, "delete", lambda: index.delete_documents(ids))
        logger.info(f"Deleted {len(ids)} documents from {namespace}")
        return len(ids)

    async def count_documents(self, namespace: str) -> int:
        """Document count for a namespace; a namespace that does not exist counts as empty."""
        index = self.client.index(namespace)
        loop = asyncio.get_running_loop()
        try:
            stats = await loop.run_in_executor(None, index.get_stats)
        except MeilisearchApiError as e:
            if _is_index_not_found(e):
                return 0
            raise SearchIndexError("Search index stats failed", str(e), namespace=namespace) from e
        except MeilisearchCommunicationError as e:
            raise SearchIndexError(
                "Search index unreachable during stats", str(e), namespace=namespace
            ) from e
        return _document_count(stats)
