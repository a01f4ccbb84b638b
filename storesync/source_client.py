"""
Async HTTP client for the source e-commerce API (Tienda Nube style REST).

One client per tenant: the store ID is part of every URL and the access
token goes in the ``Authentication`` header.

The client makes exactly one HTTP attempt per call. Retries, pacing and
circuit breaking belong to the rate-limiting manager wrapping each call.

Usage:
    async with StoreAPIClient(store_id, access_token) as client:
        store = await client.get_store()
        products = await client.fetch_all("products", runner=source_runner)
"""
from datetime import datetime
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx

from storesync.config import SourceAPIConfig
from storesync.exceptions import SourceAPIError, SourceConnectionError, SourceDataError
from storesync.observability import get_logger, get_correlation_id, Timer

logger = get_logger(__name__)

DEFAULT_LANGUAGE = "es"
RESOURCES = ("store", "products", "orders", "customers")

# Runs one page request; the manager's execute_with_rate_limit bound to SOURCE
PageRunner = Callable[[Callable[[], Awaitable[Any]]], Awaitable[Any]]


async def _run_directly(operation: Callable[[], Awaitable[Any]]) -> Any:
    return await operation()


# ═══════════════════════════════════════════════════════════════════════════════
# NORMALIZATION
# ═══════════════════════════════════════════════════════════════════════════════

def localized(value: Any, language: str = DEFAULT_LANGUAGE) -> Optional[str]:
    """
    Collapse a multilingual field ({"es": "...", "pt": "..."}) to one string.

    Falls back to the first non-empty translation.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        if value.get(language):
            return str(value[language])
        for text in value.values():
            if text:
                return str(text)
        return None
    return str(value)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _parse_timestamp(value: Any) -> Optional[str]:
    """Normalize API timestamps (``2024-01-10T14:30:00+0000``) to ISO 8601."""
    if not value:
        return None
    text = str(value)
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
        try:
            return datetime.strptime(text, fmt).isoformat()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
    except ValueError:
        return text


def normalize_store(data: Dict[str, Any]) -> Dict[str, Any]:
    """Store record in primary-store shape."""
    return {
        "id": str(data.get("id", "")),
        "name": localized(data.get("name")),
        "domain": data.get("url") or data.get("url_with_protocol") or data.get("original_domain"),
        "currency": data.get("main_currency") or data.get("currency"),
        "email": data.get("email"),
        "country": data.get("country"),
    }


def normalize_product(data: Dict[str, Any]) -> Dict[str, Any]:
    """Product record in primary-store shape. Price and stock come from the first variant."""
    variants = data.get("variants") or []
    first = variants[0] if variants else {}
    stock = None
    if variants and all(v.get("stock") is not None for v in variants):
        stock = sum(_to_int(v.get("stock")) or 0 for v in variants)

    return {
        "id": str(data.get("id", "")),
        "name": localized(data.get("name")),
        "sku": first.get("sku"),
        "price": _to_float(first.get("price")),
        "stock": stock,
        "published": bool(data.get("published", True)),
        "updated_at": _parse_timestamp(data.get("updated_at")),
    }


def normalize_order(data: Dict[str, Any]) -> Dict[str, Any]:
    """Order record in primary-store shape."""
    customer = data.get("customer") or {}
    return {
        "id": str(data.get("id", "")),
        "number": data.get("number"),
        "status": data.get("status"),
        "total": _to_float(data.get("total")),
        "currency": data.get("currency"),
        "customer_email": customer.get("email") or data.get("contact_email"),
        "created_at": _parse_timestamp(data.get("created_at")),
        "updated_at": _parse_timestamp(data.get("updated_at")),
    }


def normalize_customer(data: Dict[str, Any]) -> Dict[str, Any]:
    """Customer record in primary-store shape."""
    return {
        "id": str(data.get("id", "")),
        "name": data.get("name"),
        "email": data.get("email"),
        "total_spent": _to_float(data.get("total_spent")),
        "updated_at": _parse_timestamp(data.get("updated_at")),
    }


NORMALIZERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "store": normalize_store,
    "products": normalize_product,
    "orders": normalize_order,
    "customers": normalize_customer,
}


# ═══════════════════════════════════════════════════════════════════════════════
# CLIENT
# ═══════════════════════════════════════════════════════════════════════════════

class StoreAPIClient:
    """
    Async HTTP client for one tenant of the source API.

    Usage:
        async with StoreAPIClient("123", "token") as client:
            page = await client.get_products(page=1)

        # Or with manual lifecycle:
        client = StoreAPIClient("123", "token")
        await client.connect()
        try:
            store = await client.get_store()
        finally:
            await client.close()
    """

    def __init__(
        self,
        store_id: str,
        access_token: str,
        settings: Optional[SourceAPIConfig] = None,
    ):
        """
        Initialize source API client.

        Args:
            store_id: Tenant (store) ID, part of every URL
            access_token: OAuth access token for the tenant
            settings: Base URL, user agent, timeout and paging defaults
        """
        if not store_id:
            raise ValueError("store_id is required")
        if not access_token:
            raise ValueError("access_token is required")

        self.store_id = str(store_id)
        self.access_token = access_token
        self.settings = settings or SourceAPIConfig()
        self.base_url = f"{self.settings.base_url.rstrip('/')}/{self.store_id}"
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth."""
        return {
            "Authentication": f"bearer {self.access_token}",
            "User-Agent": self.settings.user_agent,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.settings.request_timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                ),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "StoreAPIClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Execute a single HTTP request.

        Raises:
            SourceConnectionError: Network/timeout errors
            SourceAPIError: API returned error response
            SourceDataError: Response body is not JSON
        """
        if not self._client:
            await self.connect()

        url = f"{self.base_url}/{endpoint}"

        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"source_{endpoint}", logger):
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    headers=request_headers if request_headers else None,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": self.settings.request_timeout},
            )
            raise SourceConnectionError(
                f"Request timeout after {self.settings.request_timeout}s",
                retry_after=5,
            ) from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise SourceConnectionError(str(e)) from e

        if response.status_code >= 400:
            error_text = response.text[:500]
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={"endpoint": endpoint, "status_code": response.status_code},
            )
            raise SourceAPIError(
                f"API returned {response.status_code}",
                details=error_text,
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SourceDataError(
                f"Invalid JSON from {endpoint}", details=str(e), expected="json"
            ) from e

    async def _get_list(self, resource: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        payload = await self._request("GET", resource, params=params)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise SourceDataError(
                f"Unexpected response for {resource}",
                expected="list",
                got=type(payload).__name__,
            )
        return [NORMALIZERS[resource](item) for item in payload]

    # ═══════════════════════════════════════════════════════════════════════════
    # RESOURCE METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_store(self) -> Dict[str, Any]:
        """Get the tenant's store information."""
        payload = await self._request("GET", "store")
        if not isinstance(payload, dict):
            raise SourceDataError(
                "Unexpected response for store",
                expected="object",
                got=type(payload).__name__,
            )
        return normalize_store(payload)

    async def get_products(self, page: int = 1, per_page: int = None, **params: Any) -> List[Dict[str, Any]]:
        """Get one page of products."""
        return await self.fetch_page("products", page, per_page, **params)

    async def get_orders(self, page: int = 1, per_page: int = None, **params: Any) -> List[Dict[str, Any]]:
        """Get one page of orders."""
        return await self.fetch_page("orders", page, per_page, **params)

    async def get_customers(self, page: int = 1, per_page: int = None, **params: Any) -> List[Dict[str, Any]]:
        """Get one page of customers."""
        return await self.fetch_page("customers", page, per_page, **params)

    async def fetch_page(
        self,
        resource: str,
        page: int = 1,
        per_page: int = None,
        **params: Any,
    ) -> List[Dict[str, Any]]:
        """
        Fetch one page of a list resource.

        Args:
            resource: products, orders or customers
            page: 1-based page number
            per_page: Page size (defaults to settings.page_size)
            params: Extra filters (updated_at_min, status, ...)
        """
        if resource not in NORMALIZERS or resource == "store":
            raise ValueError(f"Unknown list resource: {resource}")
        query = {k: v for k, v in params.items() if v is not None}
        query["page"] = page
        query["per_page"] = per_page or self.settings.page_size
        return await self._get_list(resource, query)

    async def fetch(self, resource: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Dispatch by resource name (used by the batched source-fetch executor)."""
        if resource == "store":
            return await self.get_store()
        return await self.fetch_page(resource, **(params or {}))

    # ═══════════════════════════════════════════════════════════════════════════
    # PAGINATION HELPERS
    # ═══════════════════════════════════════════════════════════════════════════

    async def paginate(
        self,
        resource: str,
        params: Optional[Dict[str, Any]] = None,
        page_size: int = None,
        max_pages: int = None,
        runner: Optional[PageRunner] = None,
    ) -> AsyncGenerator[List[Dict[str, Any]], None]:
        """
        Paginate through a list resource.

        Each page request is handed to ``runner`` so a caller can put it
        under a rate limit; without one the request runs directly.

        Yields:
            List of normalized records per page
        """
        page_size = page_size or self.settings.page_size
        max_pages = max_pages or self.settings.max_pages
        runner = runner or _run_directly
        params = dict(params or {})

        for page in range(1, max_pages + 1):
            batch = await runner(
                lambda page=page: self.fetch_page(resource, page, page_size, **params)
            )

            if not batch:
                break

            yield batch

            if len(batch) < page_size:
                break

    async def fetch_all(
        self,
        resource: str,
        params: Optional[Dict[str, Any]] = None,
        page_size: int = None,
        max_pages: int = None,
        runner: Optional[PageRunner] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a list resource."""
        all_items: List[Dict[str, Any]] = []
        async for batch in self.paginate(resource, params, page_size, max_pages, runner):
            all_items.extend(batch)
        logger.debug(f"Fetched {len(all_items)} {resource} for store {self.store_id}")
        return all_items
