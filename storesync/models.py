"""
Domain models for the synchronization core.

Provides type-safe enums and dataclasses shared by the rate limiter,
batch processor, manager and consistency checker.
"""
import asyncio
import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class TargetSystem(str, Enum):
    """External dependencies with their own rate limits."""
    SOURCE = "source"  # E-commerce platform API
    SEARCH = "search"  # Search index service
    LLM = "llm"        # Language-model API


class BatchType(str, Enum):
    """Categories of homogeneous operations sharing one queue and executor."""
    SEARCH_UPSERT = "search_upsert"
    SEARCH_DELETE = "search_delete"
    SOURCE_FETCH = "source_fetch"


class Priority(str, Enum):
    """Request priority for batching."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, lower is served first."""
        return {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}[self]


class StoreSystem(str, Enum):
    """The three stores kept consistent."""
    SOURCE = "source"
    PRIMARY = "primary"
    SEARCH = "search"

    @property
    def display_name(self) -> str:
        names = {
            StoreSystem.SOURCE: "source API",
            StoreSystem.PRIMARY: "primary store",
            StoreSystem.SEARCH: "search index",
        }
        return names[self]


class DataType(str, Enum):
    """Entity types a consistency check can examine, in check order."""
    STORE = "store"
    PRODUCTS = "products"
    ORDERS = "orders"
    CUSTOMERS = "customers"
    ANALYTICS = "analytics"

    @classmethod
    def indexed(cls) -> List["DataType"]:
        """Entity types that have a search index namespace."""
        return [cls.PRODUCTS, cls.ORDERS, cls.CUSTOMERS]


class CheckLevel(str, Enum):
    """
    Consistency check depth.

    - BASIC: existence and count checks
    - STANDARD: field-level comparison and validation
    - COMPREHENSIVE: deep comparison of every entity type and index counts
    """
    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class DiscrepancyType(str, Enum):
    MISSING = "missing"
    OUTDATED = "outdated"
    CORRUPT = "corrupt"
    ORPHANED = "orphaned"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ═══════════════════════════════════════════════════════════════════════════════
# RATE LIMITING & BATCHING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CallOptions:
    """Per-call options for rate-limited calls and batch submissions."""
    priority: Priority = Priority.NORMAL
    timeout: Optional[float] = None  # seconds
    retries: Optional[int] = None    # overrides profile retry_attempts
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RateLimitStatus:
    """Point-in-time snapshot of one target system's limiter."""
    api: str
    requests_in_window: int
    remaining_requests: int
    reset_time: float
    circuit_state: str
    circuit_breaker_open: bool
    average_latency_ms: float
    success_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "api": self.api,
            "requests_in_window": self.requests_in_window,
            "remaining_requests": self.remaining_requests,
            "reset_time": self.reset_time,
            "circuit_state": self.circuit_state,
            "circuit_breaker_open": self.circuit_breaker_open,
            "average_latency_ms": self.average_latency_ms,
            "success_rate": self.success_rate,
        }


_sequence = itertools.count()


@dataclass
class BatchOperation:
    """
    A unit of work submitted to a batch type.

    The future is settled exactly once, through fulfill() or reject().
    """
    data: Any
    future: asyncio.Future
    priority: Priority = Priority.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=lambda: asyncio.get_running_loop().time())
    sequence: int = field(default_factory=lambda: next(_sequence))

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.priority.rank, self.sequence)

    @property
    def settled(self) -> bool:
        return self.future.done()

    def fulfill(self, result: Any) -> bool:
        """Resolve the caller's future. Returns False if already settled."""
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def reject(self, error: BaseException) -> bool:
        """Reject the caller's future. Returns False if already settled."""
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True


@dataclass
class BatchExecutionResult:
    """Outcome of one executor call."""
    success: bool
    results: List[Any] = field(default_factory=list)
    errors: List[BaseException] = field(default_factory=list)
    execution_time_ms: float = 0.0
    batch_size: int = 0


@dataclass(frozen=True)
class SearchUpsertItem:
    """Document to upsert into a search namespace."""
    namespace: str
    document: Dict[str, Any]


@dataclass(frozen=True)
class SearchDeleteItem:
    """Document ID to delete from a search namespace."""
    namespace: str
    document_id: str


@dataclass(frozen=True)
class SourceFetchRequest:
    """A read against the source API for one tenant."""
    store_id: str
    access_token: str
    resource: str  # store, products, orders, customers
    params: Dict[str, Any] = field(default_factory=dict, hash=False)


# ═══════════════════════════════════════════════════════════════════════════════
# CONSISTENCY CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Discrepancy:
    """One detected mismatch between two of the three stores."""
    type: DiscrepancyType
    severity: Severity
    system: StoreSystem       # where the anomaly was found
    counterpart: StoreSystem  # system it was compared against
    entity: str
    entity_id: str
    description: str
    suggested_action: str
    expected_value: Any = None
    actual_value: Any = None
    last_sync_at: Optional[str] = None
    auto_repairable: bool = False

    @property
    def systems(self) -> frozenset:
        return frozenset((self.system, self.counterpart))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "system": self.system.value,
            "counterpart": self.counterpart.value,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "description": self.description,
            "expected_value": self.expected_value,
            "actual_value": self.actual_value,
            "last_sync_at": self.last_sync_at,
            "suggested_action": self.suggested_action,
            "auto_repairable": self.auto_repairable,
        }


@dataclass
class ConsistencyCheckOptions:
    level: CheckLevel = CheckLevel.STANDARD
    data_types: List[DataType] = field(
        default_factory=lambda: [DataType.STORE, DataType.PRODUCTS, DataType.ORDERS]
    )
    auto_repair: bool = False
    generate_report: bool = True
    max_discrepancies: int = 100


@dataclass
class SystemSnapshot:
    """
    State collected from the three stores for one tenant.

    Values are None when a system was not queried for that entity type.
    Search entries are document counts per namespace.
    """
    source_store: Optional[Dict[str, Any]] = None
    primary_store: Optional[Dict[str, Any]] = None
    source: Dict[DataType, Optional[List[Dict[str, Any]]]] = field(default_factory=dict)
    primary: Dict[DataType, Optional[List[Dict[str, Any]]]] = field(default_factory=dict)
    search: Dict[DataType, Optional[int]] = field(default_factory=dict)
    sync_times: Dict[str, Optional[datetime]] = field(default_factory=dict)


@dataclass
class ConsistencyCheckResult:
    """Result of one consistency check run. Read-only once persisted."""
    store_id: str
    check_level: CheckLevel
    overall_score: int
    system_scores: Dict[str, int]
    discrepancies: List[Discrepancy]
    statistics: Dict[str, Any]
    execution_time_ms: float
    recommendations: List[str]
    auto_repairs_performed: List[str]
    needs_attention: bool
    next_check_suggested: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def count_by_severity(self, severity: Severity) -> int:
        return sum(1 for d in self.discrepancies if d.severity == severity)

    def to_record(self) -> Dict[str, Any]:
        """Row for the consistency_checks table."""
        return {
            "store_id": self.store_id,
            "check_level": self.check_level.value,
            "overall_score": self.overall_score,
            "system_scores": self.system_scores,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "statistics": self.statistics,
            "execution_time_ms": round(self.execution_time_ms, 2),
            "recommendations": self.recommendations,
            "auto_repairs_performed": self.auto_repairs_performed,
            "needs_attention": self.needs_attention,
            "next_check_suggested": self.next_check_suggested.isoformat(),
            "created_at": self.created_at.isoformat(),
        }
