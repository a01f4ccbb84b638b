"""
DuckDB primary store for synchronized tenant data.

Holds one row per tenant store, the synchronized products / orders /
customers, per-entity sync timestamps and the insert-only history of
consistency check reports.

DuckDB connections are not thread-safe: every query runs on a single
worker thread behind an asyncio lock, off the event loop.
"""
import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, TypeVar, Union

import duckdb
import pandas as pd

from storesync.exceptions import QueryTimeoutError, StorageError
from storesync.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

IN_MEMORY = ":memory:"
DEFAULT_QUERY_TIMEOUT = 30.0

# Synchronized entity tables and their data columns (after store_id)
ENTITY_COLUMNS: Dict[str, List[str]] = {
    "products": ["id", "name", "sku", "price", "stock", "published", "updated_at"],
    "orders": ["id", "number", "status", "total", "currency", "customer_email", "created_at", "updated_at"],
    "customers": ["id", "name", "email", "total_spent", "updated_at"],
}

# Non-VARCHAR entity columns, cast explicitly when loading from staging
COLUMN_TYPES: Dict[str, str] = {
    "price": "DOUBLE",
    "stock": "INTEGER",
    "published": "BOOLEAN",
    "total": "DOUBLE",
    "total_spent": "DOUBLE",
}

STORE_FIELDS = ("name", "domain", "currency", "email", "country", "last_sync_at")

SCHEMA_SQL = """
-- One row per tenant store
CREATE TABLE IF NOT EXISTS stores (
    store_id VARCHAR PRIMARY KEY,
    name VARCHAR,
    domain VARCHAR,
    currency VARCHAR,
    email VARCHAR,
    country VARCHAR,
    last_sync_at VARCHAR,
    created_at VARCHAR,
    updated_at VARCHAR
);

CREATE TABLE IF NOT EXISTS products (
    store_id VARCHAR NOT NULL,
    id VARCHAR NOT NULL,
    name VARCHAR,
    sku VARCHAR,
    price DOUBLE,
    stock INTEGER,
    published BOOLEAN,
    updated_at VARCHAR,
    synced_at VARCHAR,
    PRIMARY KEY (store_id, id)
);

CREATE TABLE IF NOT EXISTS orders (
    store_id VARCHAR NOT NULL,
    id VARCHAR NOT NULL,
    number VARCHAR,
    status VARCHAR,
    total DOUBLE,
    currency VARCHAR,
    customer_email VARCHAR,
    created_at VARCHAR,
    updated_at VARCHAR,
    synced_at VARCHAR,
    PRIMARY KEY (store_id, id)
);

CREATE TABLE IF NOT EXISTS customers (
    store_id VARCHAR NOT NULL,
    id VARCHAR NOT NULL,
    name VARCHAR,
    email VARCHAR,
    total_spent DOUBLE,
    updated_at VARCHAR,
    synced_at VARCHAR,
    PRIMARY KEY (store_id, id)
);

-- Per-entity sync timestamps (ISO 8601 values)
CREATE TABLE IF NOT EXISTS sync_metadata (
    store_id VARCHAR NOT NULL,
    key VARCHAR NOT NULL,
    value VARCHAR,
    updated_at VARCHAR,
    PRIMARY KEY (store_id, key)
);

-- Consistency check reports (insert-only, one row per run)
CREATE SEQUENCE IF NOT EXISTS consistency_checks_seq START 1;
CREATE TABLE IF NOT EXISTS consistency_checks (
    id INTEGER PRIMARY KEY DEFAULT nextval('consistency_checks_seq'),
    store_id VARCHAR NOT NULL,
    check_level VARCHAR NOT NULL,
    overall_score INTEGER NOT NULL,
    system_scores VARCHAR,
    discrepancies VARCHAR,
    statistics VARCHAR,
    execution_time_ms DOUBLE,
    recommendations VARCHAR,
    auto_repairs_performed VARCHAR,
    needs_attention BOOLEAN,
    next_check_suggested VARCHAR,
    created_at VARCHAR
);

CREATE INDEX IF NOT EXISTS idx_consistency_checks_store ON consistency_checks(store_id);
"""

_JSON_COLUMNS = ("system_scores", "discrepancies", "statistics", "recommendations", "auto_repairs_performed")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows_to_dicts(cursor: duckdb.DuckDBPyConnection, rows: List[tuple]) -> List[Dict[str, Any]]:
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


def _records_frame(store_id: str, columns: List[str], records: List[Dict[str, Any]]) -> pd.DataFrame:
    """Staging DataFrame with NaN replaced by None so DuckDB stores NULLs."""
    synced_at = _now_iso()
    rows = [
        {"store_id": store_id, **{col: record.get(col) for col in columns}, "synced_at": synced_at}
        for record in records
    ]
    df = pd.DataFrame(rows, columns=["store_id", *columns, "synced_at"]).astype(object)
    df["id"] = df["id"].astype(str)
    return df.where(pd.notna(df), None)


class PrimaryStore:
    """
    Async-compatible DuckDB store for tenant data.

    Features:
    - Persistent storage, or ``:memory:`` for tests
    - Idempotent bulk upserts (DataFrame staging)
    - Per-entity sync timestamps
    - Insert-only consistency report history
    - Thread offloading to avoid blocking asyncio event loop
    """

    def __init__(
        self,
        db_path: Union[Path, str] = IN_MEMORY,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ):
        self.db_path = db_path
        self.query_timeout = query_timeout
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()  # Serializes all database access

        # Thread pool for offloading blocking DB operations
        self._executor: Optional[ThreadPoolExecutor] = None

        # Stats for monitoring
        self._total_queries = 0

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == IN_MEMORY

    async def connect(self) -> None:
        """Initialize database connection, schema, and thread pool."""
        async with self._lock:
            if self._connection is not None:
                return

            if not self.is_memory:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            try:
                self._connection = duckdb.connect(str(self.db_path))
                self._connection.execute(SCHEMA_SQL)
            except duckdb.Error as e:
                raise StorageError("Failed to open primary store", str(e)) from e

            # Single worker - DuckDB requires serialized access
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duckdb")
            logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection and thread pool."""
        async with self._lock:
            if self._executor:
                self._executor.shutdown(wait=True)
                self._executor = None

            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    async def __aenter__(self) -> "PrimaryStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_connection_info(self) -> Dict[str, Any]:
        """Get connection info for monitoring."""
        return {
            "status": "active" if self._connection else "not_initialized",
            "total_queries": self._total_queries,
            "db_path": str(self.db_path),
        }

    @asynccontextmanager
    async def connection(self):
        """Get database connection, connecting on first use."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    # ─── Query Execution with Timeout ────────────────────────────────────────

    async def _run(self, fn: Callable[[duckdb.DuckDBPyConnection], T], label: str, timeout: float = None) -> T:
        """
        Run ``fn(conn)`` on the DuckDB worker thread.

        Raises:
            QueryTimeoutError: If the call exceeds timeout
            StorageError: On any DuckDB error
        """
        timeout = timeout or self.query_timeout
        async with self.connection() as conn:
            self._total_queries += 1
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._executor, fn, conn),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                raise QueryTimeoutError(label, timeout, "Query failed")
            except duckdb.Error as e:
                raise StorageError(f"Primary store query failed: {label}", str(e)) from e

    async def _fetch_one(self, query: str, params: list = None) -> Optional[Dict[str, Any]]:
        def _query(conn):
            cursor = conn.execute(query, params or [])
            row = cursor.fetchone()
            return _rows_to_dicts(cursor, [row])[0] if row else None

        return await self._run(_query, query)

    async def _fetch_all(self, query: str, params: list = None) -> List[Dict[str, Any]]:
        def _query(conn):
            cursor = conn.execute(query, params or [])
            return _rows_to_dicts(cursor, cursor.fetchall())

        return await self._run(_query, query)

    async def _transaction(self, fn: Callable[[duckdb.DuckDBPyConnection], T], label: str) -> T:
        """Run ``fn(conn)`` inside BEGIN/COMMIT, rolling back on error."""
        def _tx(conn):
            conn.execute("BEGIN TRANSACTION")
            try:
                result = fn(conn)
                conn.execute("COMMIT")
                return result
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return await self._run(_tx, label)

    # ═══════════════════════════════════════════════════════════════════════════
    # STORES
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_store(self, store_id: str) -> Optional[Dict[str, Any]]:
        """Get the tenant's store row, or None."""
        return await self._fetch_one("SELECT * FROM stores WHERE store_id = ?", [str(store_id)])

    async def upsert_store(self, store_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace the tenant's store row."""
        existing = await self.get_store(store_id)
        now = _now_iso()
        values = {field: data.get(field) for field in STORE_FIELDS}
        if existing and values["last_sync_at"] is None:
            values["last_sync_at"] = existing.get("last_sync_at")
        created_at = existing["created_at"] if existing else now

        def _upsert(conn):
            conn.execute(
                """
                INSERT OR REPLACE INTO stores
                    (store_id, name, domain, currency, email, country, last_sync_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [str(store_id), *(values[f] for f in STORE_FIELDS), created_at, now],
            )

        await self._transaction(_upsert, "upsert_store")
        logger.info(f"Upserted store {store_id}")

    async def update_store_fields(self, store_id: str, **fields: Any) -> bool:
        """
        Update selected columns of a store row.

        Returns:
            False if the store does not exist
        """
        unknown = set(fields) - set(STORE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown store fields: {sorted(unknown)}")
        if not fields:
            return False

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [*fields.values(), _now_iso(), str(store_id)]

        def _update(conn):
            exists = conn.execute("SELECT 1 FROM stores WHERE store_id = ?", [str(store_id)]).fetchone()
            if not exists:
                return False
            conn.execute(f"UPDATE stores SET {assignments}, updated_at = ? WHERE store_id = ?", params)
            return True

        return await self._transaction(_update, "update_store_fields")

    # ═══════════════════════════════════════════════════════════════════════════
    # ENTITIES (products / orders / customers)
    # ═══════════════════════════════════════════════════════════════════════════

    def _columns(self, entity: str) -> List[str]:
        if entity not in ENTITY_COLUMNS:
            raise ValueError(f"Unknown entity: {entity}")
        return ENTITY_COLUMNS[entity]

    async def upsert_records(self, entity: str, store_id: str, records: List[Dict[str, Any]]) -> int:
        """
        Insert or replace entity records for one tenant (idempotent).

        Uses DataFrame bulk insert, like the rest of the warehouse loads.

        Returns:
            Number of records upserted
        """
        columns = self._columns(entity)
        records = [r for r in records if r.get("id") not in (None, "")]
        if not records:
            return 0

        df = _records_frame(str(store_id), columns, records)
        column_list = ", ".join(["store_id", *columns, "synced_at"])
        select_list = ", ".join(
            f"CAST({col} AS {COLUMN_TYPES.get(col, 'VARCHAR')}) AS {col}"
            for col in ["store_id", *columns, "synced_at"]
        )

        def _upsert(conn):
            conn.register("stg_records", df)
            try:
                conn.execute(
                    f"INSERT OR REPLACE INTO {entity} ({column_list}) "
                    f"SELECT {select_list} FROM stg_records"
                )
            finally:
                conn.unregister("stg_records")
            return len(df)

        count = await self._transaction(_upsert, f"upsert_{entity}")
        logger.info(f"Upserted {count} {entity} to DuckDB", extra={"store_id": str(store_id)})
        return count

    async def get_records(self, entity: str, store_id: str) -> List[Dict[str, Any]]:
        """All records of an entity type for one tenant, ordered by ID."""
        columns = ", ".join(self._columns(entity))
        return await self._fetch_all(
            f"SELECT {columns}, synced_at FROM {entity} WHERE store_id = ? ORDER BY id",
            [str(store_id)],
        )

    async def count_records(self, entity: str, store_id: str) -> int:
        self._columns(entity)
        row = await self._fetch_one(f"SELECT COUNT(*) AS n FROM {entity} WHERE store_id = ?", [str(store_id)])
        return int(row["n"]) if row else 0

    async def delete_records(self, entity: str, store_id: str, ids: List[str]) -> int:
        """Delete records by ID. Returns number of IDs submitted."""
        self._columns(entity)
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))

        def _delete(conn):
            conn.execute(
                f"DELETE FROM {entity} WHERE store_id = ? AND id IN ({placeholders})",
                [str(store_id), *(str(i) for i in ids)],
            )
            return len(ids)

        return await self._transaction(_delete, f"delete_{entity}")

    async def upsert_products(self, store_id: str, products: List[Dict[str, Any]]) -> int:
        return await self.upsert_records("products", store_id, products)

    async def upsert_orders(self, store_id: str, orders: List[Dict[str, Any]]) -> int:
        return await self.upsert_records("orders", store_id, orders)

    async def upsert_customers(self, store_id: str, customers: List[Dict[str, Any]]) -> int:
        return await self.upsert_records("customers", store_id, customers)

    async def get_products(self, store_id: str) -> List[Dict[str, Any]]:
        return await self.get_records("products", store_id)

    async def get_orders(self, store_id: str) -> List[Dict[str, Any]]:
        return await self.get_records("orders", store_id)

    async def get_customers(self, store_id: str) -> List[Dict[str, Any]]:
        return await self.get_records("customers", store_id)

    # ═══════════════════════════════════════════════════════════════════════════
    # SYNC METADATA
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_last_sync_time(self, store_id: str, key: str) -> Optional[datetime]:
        """Get last sync timestamp for one tenant entity type."""
        row = await self._fetch_one(
            "SELECT value FROM sync_metadata WHERE store_id = ? AND key = ?",
            [str(store_id), f"last_sync_{key}"],
        )
        if row and row["value"]:
            return datetime.fromisoformat(row["value"])
        return None

    async def set_last_sync_time(self, store_id: str, key: str, timestamp: datetime = None) -> None:
        """Update last sync timestamp."""
        timestamp = timestamp or datetime.now(timezone.utc)

        def _set(conn):
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_metadata (store_id, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                [str(store_id), f"last_sync_{key}", timestamp.isoformat(), _now_iso()],
            )

        await self._run(_set, "set_last_sync_time")

    # ═══════════════════════════════════════════════════════════════════════════
    # CONSISTENCY REPORTS
    # ═══════════════════════════════════════════════════════════════════════════

    async def insert_consistency_check(self, record: Dict[str, Any]) -> int:
        """
        Persist one consistency check report (insert-only).

        Args:
            record: Row from ConsistencyCheckResult.to_record()

        Returns:
            Report ID
        """
        params = [
            record["store_id"],
            record["check_level"],
            record["overall_score"],
            *(json.dumps(record.get(col), default=str) for col in _JSON_COLUMNS[:3]),
            record.get("execution_time_ms"),
            *(json.dumps(record.get(col), default=str) for col in _JSON_COLUMNS[3:]),
            record.get("needs_attention"),
            record.get("next_check_suggested"),
            record.get("created_at") or _now_iso(),
        ]

        def _insert(conn):
            row = conn.execute(
                """
                INSERT INTO consistency_checks
                    (store_id, check_level, overall_score, system_scores, discrepancies, statistics,
                     execution_time_ms, recommendations, auto_repairs_performed, needs_attention,
                     next_check_suggested, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                params,
            ).fetchone()
            return int(row[0])

        return await self._transaction(_insert, "insert_consistency_check")

    async def get_consistency_checks(self, store_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent consistency reports for a tenant, newest first."""
        rows = await self._fetch_all(
            "SELECT * FROM consistency_checks WHERE store_id = ? ORDER BY id DESC LIMIT ?",
            [str(store_id), int(limit)],
        )
        for row in rows:
            for col in _JSON_COLUMNS:
                if row.get(col) is not None:
                    row[col] = json.loads(row[col])
        return rows
