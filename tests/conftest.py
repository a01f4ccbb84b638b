"""
Pytest configuration and shared fixtures.
"""
import pytest
from typing import Dict, List, Any

from storesync.config import BatchConfig, SourceAPIConfig, TargetSystemProfile
from storesync.exceptions import SearchIndexError
from storesync.manager import RateLimitingBatchManager
from storesync.models import BatchType, TargetSystem
from storesync.source_client import StoreAPIClient


@pytest.fixture
def make_profile():
    """Factory for fast rate limit profiles (no pacing, 1ms backoff)."""
    def _make(**overrides) -> TargetSystemProfile:
        values = {
            "name": "test",
            "requests_per_second": 1000,
            "requests_per_minute": 60000,
            "burst_allowance": 0,
            "max_concurrent": 10,
            "retry_attempts": 0,
            "backoff_multiplier": 2,
            "circuit_breaker_threshold": 5,
            "circuit_breaker_timeout_ms": 60000,
            "backoff_base_ms": 1,
        }
        values.update(overrides)
        return TargetSystemProfile(**values)
    return _make


@pytest.fixture
def fast_profiles(make_profile) -> Dict[TargetSystem, TargetSystemProfile]:
    """Source and search profiles that never make tests wait."""
    return {
        TargetSystem.SOURCE: make_profile(name="source"),
        TargetSystem.SEARCH: make_profile(name="search"),
    }


@pytest.fixture
def fast_batch_config() -> BatchConfig:
    """Small batches flushed within a few milliseconds."""
    return BatchConfig(
        max_batch_size=10,
        min_batch_size=2,
        flush_interval_ms=10,
        max_wait_time_ms=50,
        concurrent_batches=2,
        adaptive_sizing=False,
    )


@pytest.fixture
def fast_batch_configs(fast_batch_config) -> Dict[BatchType, BatchConfig]:
    return {batch_type: fast_batch_config for batch_type in BatchType}


@pytest.fixture
def raw_store() -> Dict[str, Any]:
    """Store payload from the source API."""
    return {
        "id": 123456,
        "name": {"es": "Tienda Demo", "pt": "Loja Demo"},
        "url": "demo.mitiendanube.com",
        "main_currency": "ARS",
        "email": "owner@example.com",
        "country": "AR",
    }


@pytest.fixture
def raw_product() -> Dict[str, Any]:
    """Product payload from the source API."""
    return {
        "id": 1001,
        "name": {"es": "Remera Negra"},
        "published": True,
        "updated_at": "2026-01-10T14:30:00+0000",
        "variants": [
            {"sku": "REM-NEG-S", "price": "2500.00", "stock": 4},
            {"sku": "REM-NEG-M", "price": "2500.00", "stock": 6},
        ],
    }


@pytest.fixture
def raw_order() -> Dict[str, Any]:
    """Order payload from the source API."""
    return {
        "id": 5001,
        "number": 101,
        "status": "open",
        "total": "5000.00",
        "currency": "ARS",
        "customer": {"id": 77, "email": "buyer@example.com"},
        "created_at": "2026-01-10T14:35:00+0000",
        "updated_at": "2026-01-10T15:00:00+0000",
    }


@pytest.fixture
def raw_customer() -> Dict[str, Any]:
    """Customer payload from the source API."""
    return {
        "id": 77,
        "name": "Ana Pérez",
        "email": "buyer@example.com",
        "total_spent": "12500.50",
        "updated_at": "2026-01-09T10:00:00+0000",
    }


@pytest.fixture
def products() -> List[Dict[str, Any]]:
    """Five normalized products."""
    return [
        {
            "id": str(i),
            "name": f"Product {i}",
            "sku": f"SKU-{i}",
            "price": 100.0 * i,
            "stock": i,
            "published": True,
            "updated_at": "2026-01-10T14:30:00+00:00",
        }
        for i in range(1, 6)
    ]


class StubSourceClient(StoreAPIClient):
    """StoreAPIClient answering from canned payloads instead of HTTP."""

    def __init__(self, store_id: str, access_token: str, api: "StubSourceAPI"):
        super().__init__(
            store_id,
            access_token,
            SourceAPIConfig(base_url="https://api.test/v1", page_size=2),
        )
        self.api = api

    async def _request(self, method, endpoint, params=None):
        self.api.requests.append((endpoint, dict(params or {})))
        if self.api.error is not None and (params or {}).get("page", 1) >= self.api.error_from_page:
            raise self.api.error
        payload = self.api.payloads.get(endpoint)
        if endpoint == "store":
            return payload
        page, per_page = params["page"], params["per_page"]
        return (payload or [])[(page - 1) * per_page:page * per_page]


class StubSourceAPI:
    """Canned source API shared by every client it creates."""

    def __init__(self, payloads: Dict[str, Any]):
        self.payloads = payloads
        self.error = None
        self.error_from_page = 1
        self.requests = []
        self.clients = []

    def factory(self, store_id: str, access_token: str) -> StubSourceClient:
        client = StubSourceClient(store_id, access_token, self)
        self.clients.append(client)
        return client


class FakeSearchIndex:
    """In-memory stand-in for SearchIndexClient."""

    def __init__(self):
        self.counts: Dict[str, int] = {}
        self.failing = set()
        self.upserts = []
        self.deletes = []

    def namespace(self, store_id: str, entity: str) -> str:
        return f"store-{store_id}-{entity}"

    async def upsert_documents(self, namespace, documents):
        if namespace in self.failing:
            raise SearchIndexError("Search index upsert failed", namespace=namespace)
        self.upserts.append((namespace, list(documents)))
        self.counts[namespace] = self.counts.get(namespace, 0) + len(documents)
        return len(documents)

    async def delete_documents(self, namespace, document_ids):
        if namespace in self.failing:
            raise SearchIndexError("Search index delete failed", namespace=namespace)
        self.deletes.append((namespace, list(document_ids)))
        return len(document_ids)

    async def count_documents(self, namespace):
        if namespace in self.failing:
            raise SearchIndexError("Search index stats failed", namespace=namespace)
        return self.counts.get(namespace, 0)


@pytest.fixture
def raw_products(raw_product) -> List[Dict[str, Any]]:
    """Five product payloads from the source API."""
    return [
        dict(raw_product, id=1000 + i, name={"es": f"Product {i}"})
        for i in range(1, 6)
    ]


@pytest.fixture
def source_api(raw_store, raw_products) -> StubSourceAPI:
    return StubSourceAPI({
        "store": raw_store,
        "products": raw_products,
        "orders": [],
        "customers": [],
    })


@pytest.fixture
def search_index() -> FakeSearchIndex:
    return FakeSearchIndex()


@pytest.fixture
def manager(fast_profiles, fast_batch_configs) -> RateLimitingBatchManager:
    """Manager with fast profiles and no executors registered."""
    return RateLimitingBatchManager(fast_profiles, fast_batch_configs)
