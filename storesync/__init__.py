"""
Sync core for the multi-tenant store dashboard.

This package keeps a tenant's data consistent across the source e-commerce
API, the DuckDB primary store and the Meilisearch index:
- resilience: Per-target rate limiter and circuit breaker
- batching: Priority batch queues with adaptive sizing
- manager: Composition of limiters and batch processors
- consistency: Cross-system consistency checks and scoring
- config: Centralized configuration

Heavier modules (store, search_index, consistency) are imported explicitly.
"""

# Import in dependency order
from storesync.exceptions import (
    SyncError,
    TargetSystemError,
    CircuitOpenError,
    OperationTimeoutError,
    RetryExhaustedError,
    UnknownTargetSystemError,
    UnknownBatchTypeError,
    BatchExecutionError,
    SourceError,
    SourceConnectionError,
    SourceAPIError,
    SourceDataError,
    SearchIndexError,
    StorageError,
    QueryTimeoutError,
    ConfigurationError,
)

from storesync.models import (
    BatchType,
    CallOptions,
    CheckLevel,
    DataType,
    Priority,
    Severity,
    TargetSystem,
)

from storesync.config import config

__all__ = [
    # Exceptions
    "SyncError",
    "TargetSystemError",
    "CircuitOpenError",
    "OperationTimeoutError",
    "RetryExhaustedError",
    "UnknownTargetSystemError",
    "UnknownBatchTypeError",
    "BatchExecutionError",
    "SourceError",
    "SourceConnectionError",
    "SourceAPIError",
    "SourceDataError",
    "SearchIndexError",
    "StorageError",
    "QueryTimeoutError",
    "ConfigurationError",
    # Models
    "BatchType",
    "CallOptions",
    "CheckLevel",
    "DataType",
    "Priority",
    "Severity",
    "TargetSystem",
    # Config
    "config",
]
