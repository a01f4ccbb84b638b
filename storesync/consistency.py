"""
Consistency checker across the source API, primary store and search index.

One checker run audits one tenant:

    INIT -> SNAPSHOT -> CHECK[store] -> CHECK[products] -> CHECK[orders]
         -> CHECK[customers] -> CHECK[analytics] -> SCORE -> PERSIST -> DONE

Entity types not listed in the options are skipped. Every source and
search call goes through the rate-limiting manager; primary store reads
are local. Data mismatches never raise: they become Discrepancy records.
Only a failure to collect the snapshot produces an error result.

Check levels:
- BASIC: existence and count checks
- STANDARD: field-level comparison and validation (products)
- COMPREHENSIVE: field-level checks for every entity type plus index counts
"""
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from storesync.config import ConsistencyPolicy
from storesync.executors import SourceClientFactory
from storesync.manager import RateLimitingBatchManager
from storesync.models import (
    CheckLevel,
    ConsistencyCheckOptions,
    ConsistencyCheckResult,
    DataType,
    Discrepancy,
    DiscrepancyType,
    Severity,
    StoreSystem,
    SystemSnapshot,
    TargetSystem,
)
from storesync.observability import correlation_context, get_logger, Timer
from storesync.search_index import SearchIndexClient
from storesync.source_client import StoreAPIClient
from storesync.store import PrimaryStore

logger = get_logger(__name__)

FULL_SYNC_THRESHOLD = 70
PAIR_SCORE_THRESHOLD = 80

# Fields compared between source and primary records
COMPARED_FIELDS: Dict[DataType, Tuple[str, ...]] = {
    DataType.PRODUCTS: ("name", "price"),
    DataType.ORDERS: ("status", "total"),
    DataType.CUSTOMERS: ("name", "email"),
}

# Field that must be non-empty for a primary record to be structurally valid
REQUIRED_FIELDS: Dict[DataType, Tuple[str, ...]] = {
    DataType.PRODUCTS: ("id", "name"),
    DataType.ORDERS: ("id",),
    DataType.CUSTOMERS: ("id",),
}

# Numeric fields that must be non-negative when present
NUMERIC_FIELDS: Dict[DataType, Tuple[str, ...]] = {
    DataType.PRODUCTS: ("price", "stock"),
    DataType.ORDERS: ("total",),
    DataType.CUSTOMERS: ("total_spent",),
}


class CheckPhase(str, Enum):
    INIT = "init"
    SNAPSHOT = "snapshot"
    CHECK = "check"
    SCORE = "score"
    PERSIST = "persist"
    DONE = "done"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _comparable(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    if isinstance(value, str):
        stripped = value.strip()
        try:
            return round(float(stripped), 2)
        except ValueError:
            return stripped
    return value


def _differs(expected: Any, actual: Any) -> bool:
    return _comparable(expected) != _comparable(actual)


def _structure_errors(data_type: DataType, record: Dict[str, Any]) -> List[str]:
    """Structural validation of one primary-store record."""
    problems = []
    for name in REQUIRED_FIELDS.get(data_type, ()):
        value = record.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            problems.append(f"{name} is empty")
    for name in NUMERIC_FIELDS.get(data_type, ()):
        value = record.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            problems.append(f"{name} is not numeric")
        elif value < 0:
            problems.append(f"{name} is negative")
    email = record.get("email")
    if data_type == DataType.CUSTOMERS and email and "@" not in str(email):
        problems.append("email is malformed")
    return problems


class SyncConsistencyChecker:
    """
    Audits one tenant across the three stores.

    Usage:
        checker = SyncConsistencyChecker(store_id, token, manager, store, search)
        result = await checker.execute_check()
    """

    def __init__(
        self,
        store_id: str,
        access_token: str,
        manager: RateLimitingBatchManager,
        primary_store: PrimaryStore,
        search_index: SearchIndexClient,
        source_client_factory: Optional[SourceClientFactory] = None,
        options: Optional[ConsistencyCheckOptions] = None,
        policy: Optional[ConsistencyPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store_id = str(store_id)
        self.access_token = access_token
        self.manager = manager
        self.primary_store = primary_store
        self.search_index = search_index
        self.source_client_factory = source_client_factory or StoreAPIClient
        self.options = options or ConsistencyCheckOptions()
        self.policy = policy or ConsistencyPolicy()
        self._clock = clock

        self.phase = CheckPhase.INIT
        self.phase_history: List[str] = []
        self._discrepancies: List[Discrepancy] = []
        self._dropped = 0
        self._auto_repairs: List[str] = []
        self._entity_counts: Dict[str, int] = {}

    @property
    def level(self) -> CheckLevel:
        return self.options.level

    def _enter(self, phase: CheckPhase, detail: Optional[str] = None) -> None:
        self.phase = phase
        label = f"{phase.value}[{detail}]" if detail else phase.value
        self.phase_history.append(label)
        logger.info(f"Consistency check phase: {label}", extra={"phase": label})

    def _checks(self, data_type: DataType) -> bool:
        return data_type in self.options.data_types

    # ═══════════════════════════════════════════════════════════════════════════
    # ENTRY POINT
    # ═══════════════════════════════════════════════════════════════════════════

    async def execute_check(self) -> ConsistencyCheckResult:
        """Run one consistency check and return its result."""
        start = time.perf_counter()
        self._discrepancies = []
        self._dropped = 0
        self._auto_repairs = []
        self._entity_counts = {}
        self.phase_history = []

        with correlation_context(store_id=self.store_id, check_level=self.level.value):
            self._enter(CheckPhase.INIT)
            logger.info(
                f"Starting {self.level.value} consistency check for store {self.store_id}",
                extra={"data_types": [t.value for t in self.options.data_types]},
            )

            self._enter(CheckPhase.SNAPSHOT)
            try:
                with Timer("consistency_snapshot", logger, warn_threshold_ms=10000):
                    snapshot = await self.collect_snapshot()
            except Exception as e:
                logger.error(f"Consistency check failed while collecting snapshots: {e}", exc_info=True)
                result = self._failure_result(e, start)
                self._enter(CheckPhase.DONE)
                return result

            for data_type in DataType:
                if not self._checks(data_type):
                    continue
                self._enter(CheckPhase.CHECK, data_type.value)
                await self._check_data_type(data_type, snapshot)

            self._enter(CheckPhase.SCORE)
            result = self._build_result(start)

            if self.options.generate_report:
                self._enter(CheckPhase.PERSIST)
                await self._persist(result)

            self._enter(CheckPhase.DONE)
            logger.info(
                f"Consistency check completed: {result.overall_score}% consistency",
                extra={
                    "discrepancies": len(result.discrepancies),
                    "needs_attention": result.needs_attention,
                },
            )
            return result

    # ═══════════════════════════════════════════════════════════════════════════
    # SNAPSHOT
    # ═══════════════════════════════════════════════════════════════════════════

    def _source_entities(self) -> List[DataType]:
        fetch_lists = self.level != CheckLevel.BASIC or self._checks(DataType.STORE)
        entities = []
        if self._checks(DataType.PRODUCTS) and fetch_lists:
            entities.append(DataType.PRODUCTS)
        if self.level == CheckLevel.COMPREHENSIVE:
            entities.extend(t for t in (DataType.ORDERS, DataType.CUSTOMERS) if self._checks(t))
        return entities

    def _analytics_entities(self) -> List[DataType]:
        checked = [t for t in DataType.indexed() if self._checks(t)]
        return checked or DataType.indexed()

    def _primary_entities(self) -> List[DataType]:
        entities = {t for t in DataType.indexed() if self._checks(t)}
        if self._checks(DataType.ANALYTICS):
            entities.update(self._analytics_entities())
        return [t for t in DataType.indexed() if t in entities]

    async def collect_snapshot(self) -> SystemSnapshot:
        """
        Collect current state from all three systems.

        Raises whatever the underlying clients raise; the caller turns
        that into an error result.
        """
        snapshot = SystemSnapshot()

        snapshot.primary_store = await self.primary_store.get_store(self.store_id)
        for data_type in self._primary_entities():
            snapshot.primary[data_type] = await self.primary_store.get_records(data_type.value, self.store_id)
            snapshot.sync_times[data_type.value] = await self.primary_store.get_last_sync_time(
                self.store_id, data_type.value
            )

        source_entities = self._source_entities()
        if self._checks(DataType.STORE) or source_entities:
            client = self.source_client_factory(self.store_id, self.access_token)
            try:
                if self._checks(DataType.STORE):
                    snapshot.source_store = await self.manager.execute_with_rate_limit(
                        TargetSystem.SOURCE, client.get_store
                    )
                for data_type in source_entities:
                    snapshot.source[data_type] = await client.fetch_all(
                        data_type.value, runner=self._source_runner
                    )
            finally:
                await client.close()

        for data_type in DataType.indexed():
            if not self._checks(data_type):
                continue
            namespace = self.search_index.namespace(self.store_id, data_type.value)
            snapshot.search[data_type] = await self.manager.execute_with_rate_limit(
                TargetSystem.SEARCH,
                lambda namespace=namespace: self.search_index.count_documents(namespace),
            )

        logger.info("System snapshots collected successfully")
        return snapshot

    async def _source_runner(self, operation):
        return await self.manager.execute_with_rate_limit(TargetSystem.SOURCE, operation)

    # ═══════════════════════════════════════════════════════════════════════════
    # CHECKS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _check_data_type(self, data_type: DataType, snapshot: SystemSnapshot) -> None:
        if data_type == DataType.STORE:
            await self._check_store(snapshot)
        elif data_type == DataType.ANALYTICS:
            self._check_analytics(snapshot)
        else:
            self._check_entities(data_type, snapshot)

    def _last_sync(self, snapshot: SystemSnapshot) -> Optional[str]:
        if snapshot.primary_store:
            return snapshot.primary_store.get("last_sync_at")
        return None

    async def _check_store(self, snapshot: SystemSnapshot) -> None:
        primary = snapshot.primary_store
        source = snapshot.source_store
        self._entity_counts[DataType.STORE.value] = 1 if primary else 0

        if not primary:
            self._add(Discrepancy(
                type=DiscrepancyType.MISSING,
                severity=Severity.CRITICAL,
                system=StoreSystem.PRIMARY,
                counterpart=StoreSystem.SOURCE,
                entity="store",
                entity_id=self.store_id,
                description="Store record missing in primary store",
                suggested_action="Re-run store creation process",
            ))
            return

        last_sync = primary.get("last_sync_at")

        if source and self.level != CheckLevel.BASIC:
            for field_name, source_field, label in (
                ("name", "name", "name"),
                ("currency", "currency", "currency"),
            ):
                expected = source.get(source_field)
                if expected is not None and _differs(expected, primary.get(field_name)):
                    self._add(Discrepancy(
                        type=DiscrepancyType.OUTDATED,
                        severity=Severity.MEDIUM,
                        system=StoreSystem.PRIMARY,
                        counterpart=StoreSystem.SOURCE,
                        entity="store",
                        entity_id=self.store_id,
                        description=f"Store {label} mismatch between source API and primary store",
                        expected_value=expected,
                        actual_value=primary.get(field_name),
                        last_sync_at=last_sync,
                        suggested_action="Update store information in primary store",
                    ))

            expected_domain = source.get("domain")
            if expected_domain is not None and _differs(expected_domain, primary.get("domain")):
                discrepancy = Discrepancy(
                    type=DiscrepancyType.OUTDATED,
                    severity=Severity.LOW,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity="store",
                    entity_id=self.store_id,
                    description="Store domain mismatch between source API and primary store",
                    expected_value=expected_domain,
                    actual_value=primary.get("domain"),
                    last_sync_at=last_sync,
                    suggested_action="Update store domain in primary store",
                    auto_repairable=True,
                )
                if self._add(discrepancy):
                    await self._auto_repair(discrepancy)

        synced_at = _parse_time(last_sync)
        if synced_at is not None:
            days = (self._clock() - synced_at).total_seconds() / 86400
            if days > self.policy.staleness_days:
                self._add(Discrepancy(
                    type=DiscrepancyType.OUTDATED,
                    severity=Severity.MEDIUM,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity="store",
                    entity_id=self.store_id,
                    description=f"Store data not synced for {round(days)} days",
                    last_sync_at=last_sync,
                    suggested_action="Run manual sync to refresh store data",
                ))

    def _field_level(self, data_type: DataType) -> bool:
        if data_type == DataType.PRODUCTS:
            return self.level != CheckLevel.BASIC
        return self.level == CheckLevel.COMPREHENSIVE

    def _check_entities(self, data_type: DataType, snapshot: SystemSnapshot) -> None:
        entity = data_type.value
        source = snapshot.source.get(data_type)
        primary = snapshot.primary.get(data_type) or []
        indexed = snapshot.search.get(data_type)
        last_sync = self._last_sync(snapshot)

        upstream = source if source is not None else primary
        self._entity_counts[entity] = max(len(upstream), len(primary))

        index_missing = bool(upstream) and not indexed
        if index_missing:
            origin = StoreSystem.SOURCE if source is not None else StoreSystem.PRIMARY
            self._add(Discrepancy(
                type=DiscrepancyType.MISSING,
                severity=Severity.HIGH,
                system=StoreSystem.SEARCH,
                counterpart=StoreSystem.PRIMARY,
                entity=entity,
                entity_id=self.store_id,
                description=(
                    f"Found {len(upstream)} {entity} in {origin.display_name} "
                    f"but no documents in search index"
                ),
                expected_value=len(upstream),
                actual_value=indexed or 0,
                last_sync_at=last_sync,
                suggested_action=f"Re-index {entity} in search index",
            ))

        if source is not None and self._field_level(data_type):
            self._compare_records(data_type, source, primary, last_sync)

        if self.level == CheckLevel.COMPREHENSIVE and indexed is not None and not index_missing:
            self._compare_index_count(data_type, len(primary), indexed, last_sync)

    def _compare_records(
        self,
        data_type: DataType,
        source: List[Dict[str, Any]],
        primary: List[Dict[str, Any]],
        last_sync: Optional[str],
    ) -> None:
        entity = data_type.value
        primary_by_id = {str(r.get("id")): r for r in primary}
        source_ids = {str(r.get("id")) for r in source}

        corrupt_ids = set()
        for record in primary:
            problems = _structure_errors(data_type, record)
            if problems:
                record_id = str(record.get("id"))
                corrupt_ids.add(record_id)
                self._add(Discrepancy(
                    type=DiscrepancyType.CORRUPT,
                    severity=Severity.HIGH,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity=entity,
                    entity_id=record_id,
                    description=f"{entity[:-1].capitalize()} {record_id} failed validation: {', '.join(problems)}",
                    actual_value={k: record.get(k) for k in COMPARED_FIELDS[data_type]},
                    last_sync_at=last_sync,
                    suggested_action=f"Re-sync {entity} from source API",
                ))

        for record in source:
            record_id = str(record.get("id"))
            stored = primary_by_id.get(record_id)
            if stored is None:
                self._add(Discrepancy(
                    type=DiscrepancyType.MISSING,
                    severity=Severity.HIGH,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity=entity,
                    entity_id=record_id,
                    description=f"{entity[:-1].capitalize()} {record_id} missing in primary store",
                    expected_value={k: record.get(k) for k in COMPARED_FIELDS[data_type]},
                    last_sync_at=last_sync,
                    suggested_action=f"Sync {entity} from source API",
                ))
                continue
            if record_id in corrupt_ids:
                continue

            mismatched = [
                name for name in COMPARED_FIELDS[data_type]
                if _differs(record.get(name), stored.get(name))
            ]
            if mismatched:
                self._add(Discrepancy(
                    type=DiscrepancyType.OUTDATED,
                    severity=Severity.MEDIUM,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity=entity,
                    entity_id=record_id,
                    description=(
                        f"{entity[:-1].capitalize()} {record_id} {', '.join(mismatched)} "
                        f"mismatch between source API and primary store"
                    ),
                    expected_value={name: record.get(name) for name in mismatched},
                    actual_value={name: stored.get(name) for name in mismatched},
                    last_sync_at=stored.get("synced_at") or last_sync,
                    suggested_action=f"Update {entity} in primary store",
                ))

        for record_id in primary_by_id:
            if record_id not in source_ids:
                self._add(Discrepancy(
                    type=DiscrepancyType.ORPHANED,
                    severity=Severity.MEDIUM,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity=entity,
                    entity_id=record_id,
                    description=f"{entity[:-1].capitalize()} {record_id} no longer exists in source API",
                    last_sync_at=last_sync,
                    suggested_action=f"Remove orphaned {entity} from primary store",
                ))

    def _compare_index_count(
        self,
        data_type: DataType,
        primary_count: int,
        indexed: int,
        last_sync: Optional[str],
    ) -> None:
        entity = data_type.value
        if indexed < primary_count:
            self._add(Discrepancy(
                type=DiscrepancyType.OUTDATED,
                severity=Severity.MEDIUM,
                system=StoreSystem.SEARCH,
                counterpart=StoreSystem.PRIMARY,
                entity=entity,
                entity_id=self.store_id,
                description=f"Search index has {indexed} {entity}, primary store has {primary_count}",
                expected_value=primary_count,
                actual_value=indexed,
                last_sync_at=last_sync,
                suggested_action=f"Re-index {entity} in search index",
            ))
        elif indexed > primary_count:
            self._add(Discrepancy(
                type=DiscrepancyType.ORPHANED,
                severity=Severity.LOW,
                system=StoreSystem.SEARCH,
                counterpart=StoreSystem.PRIMARY,
                entity=entity,
                entity_id=self.store_id,
                description=f"Search index has {indexed - primary_count} more {entity} than primary store",
                expected_value=primary_count,
                actual_value=indexed,
                last_sync_at=last_sync,
                suggested_action=f"Remove stale {entity} documents from search index",
            ))

    def _check_analytics(self, snapshot: SystemSnapshot) -> None:
        examined = 0
        for data_type in self._analytics_entities():
            source = snapshot.source.get(data_type)
            upstream = source if source is not None else snapshot.primary.get(data_type)
            if not upstream:
                continue
            examined += 1

            entity = data_type.value
            synced_at = snapshot.sync_times.get(entity)
            if synced_at is None:
                self._add(Discrepancy(
                    type=DiscrepancyType.MISSING,
                    severity=Severity.HIGH,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity="analytics",
                    entity_id=entity,
                    description=f"No sync timestamp recorded for {entity}",
                    suggested_action=f"Run a full {entity} sync",
                ))
                continue

            days = (self._clock() - _parse_time(synced_at)).total_seconds() / 86400
            if days > self.policy.staleness_days:
                self._add(Discrepancy(
                    type=DiscrepancyType.OUTDATED,
                    severity=Severity.MEDIUM,
                    system=StoreSystem.PRIMARY,
                    counterpart=StoreSystem.SOURCE,
                    entity="analytics",
                    entity_id=entity,
                    description=f"{entity.capitalize()} not synced for {round(days)} days",
                    last_sync_at=_parse_time(synced_at).isoformat(),
                    suggested_action=f"Run an incremental {entity} sync",
                ))

        self._entity_counts[DataType.ANALYTICS.value] = examined

    # ═══════════════════════════════════════════════════════════════════════════
    # DISCREPANCIES & REPAIRS
    # ═══════════════════════════════════════════════════════════════════════════

    def _add(self, discrepancy: Discrepancy) -> bool:
        """Record a discrepancy unless the cap is reached. Returns True if recorded."""
        if len(self._discrepancies) >= self.options.max_discrepancies:
            if self._dropped == 0:
                logger.warning(
                    f"Maximum discrepancies reached ({self.options.max_discrepancies}), "
                    f"skipping additional findings"
                )
            self._dropped += 1
            return False

        self._discrepancies.append(discrepancy)
        logger.warning(
            f"Discrepancy detected: {discrepancy.description} ({discrepancy.severity.value})",
            extra={"entity": discrepancy.entity, "type": discrepancy.type.value},
        )
        return True

    async def _auto_repair(self, discrepancy: Discrepancy) -> None:
        """Apply a safe correction for a low-severity, repairable discrepancy."""
        if not self.options.auto_repair:
            return
        if discrepancy.severity != Severity.LOW or not discrepancy.auto_repairable:
            return

        try:
            if discrepancy.entity == "store" and discrepancy.type == DiscrepancyType.OUTDATED:
                updated = await self.primary_store.update_store_fields(
                    self.store_id, domain=discrepancy.expected_value
                )
                if updated:
                    self._auto_repairs.append(f"Auto-repaired: {discrepancy.description}")
                    logger.info(f"Auto-repaired: {discrepancy.description}")
        except Exception as e:
            logger.error(f"Auto-repair failed for: {discrepancy.description}: {e}")

    # ═══════════════════════════════════════════════════════════════════════════
    # SCORING
    # ═══════════════════════════════════════════════════════════════════════════

    def _score(self, discrepancies: List[Discrepancy]) -> int:
        penalty = sum(self.policy.penalty(d.severity.value) for d in discrepancies)
        return max(0, 100 - penalty)

    def _pair_score(self, first: StoreSystem, second: StoreSystem) -> int:
        pair = frozenset((first, second))
        return self._score([d for d in self._discrepancies if d.systems == pair])

    def _next_check(self, critical: int, high: int) -> datetime:
        hours = self.policy.next_check_hours
        if critical:
            delay = hours["critical"]
        elif high:
            delay = hours["high"]
        elif self._discrepancies:
            delay = hours["any"]
        else:
            delay = hours["none"]
        return self._clock() + timedelta(hours=delay)

    def _count_by(self, attr: str) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for discrepancy in self._discrepancies:
            key = getattr(discrepancy, attr).value
            stats[key] = stats.get(key, 0) + 1
        return stats

    def _build_result(self, start: float) -> ConsistencyCheckResult:
        overall = self._score(self._discrepancies)
        critical = sum(1 for d in self._discrepancies if d.severity == Severity.CRITICAL)
        high = sum(1 for d in self._discrepancies if d.severity == Severity.HIGH)

        result = ConsistencyCheckResult(
            store_id=self.store_id,
            check_level=self.level,
            overall_score=overall,
            system_scores={
                "source_vs_primary": self._pair_score(StoreSystem.SOURCE, StoreSystem.PRIMARY),
                "primary_vs_search": self._pair_score(StoreSystem.PRIMARY, StoreSystem.SEARCH),
                "overall_consistency": overall,
            },
            discrepancies=list(self._discrepancies),
            statistics={
                "total_entities_checked": sum(self._entity_counts.values()),
                "entities_by_type": dict(self._entity_counts),
                "discrepancies_by_type": self._count_by("type"),
                "discrepancies_by_severity": self._count_by("severity"),
                "discrepancies_dropped": self._dropped,
            },
            execution_time_ms=(time.perf_counter() - start) * 1000,
            recommendations=[],
            auto_repairs_performed=list(self._auto_repairs),
            needs_attention=critical > 0 or high > 2,
            next_check_suggested=self._next_check(critical, high),
            created_at=self._clock(),
        )
        result.recommendations = generate_recommendations(result)
        return result

    def _failure_result(self, error: Exception, start: float) -> ConsistencyCheckResult:
        return ConsistencyCheckResult(
            store_id=self.store_id,
            check_level=self.level,
            overall_score=0,
            system_scores={"source_vs_primary": 0, "primary_vs_search": 0, "overall_consistency": 0},
            discrepancies=[],
            statistics={
                "total_entities_checked": 0,
                "entities_by_type": {},
                "discrepancies_by_type": {},
                "discrepancies_by_severity": {},
                "discrepancies_dropped": 0,
                "error": str(error),
            },
            execution_time_ms=(time.perf_counter() - start) * 1000,
            recommendations=[
                "Retry the consistency check once all systems are reachable",
                "Run manual sync to repair data inconsistencies",
            ],
            auto_repairs_performed=[],
            needs_attention=True,
            next_check_suggested=self._clock() + timedelta(hours=24),
            created_at=self._clock(),
        )

    async def _persist(self, result: ConsistencyCheckResult) -> None:
        try:
            report_id = await self.primary_store.insert_consistency_check(result.to_record())
            logger.info(f"Consistency check result persisted (report {report_id})")
        except Exception as e:
            logger.error(f"Failed to persist consistency check result: {e}", exc_info=True)


def generate_recommendations(result: ConsistencyCheckResult) -> List[str]:
    """Remediation hints derived from scores and severities."""
    recommendations = []

    if result.overall_score < FULL_SYNC_THRESHOLD:
        recommendations.append("Run a full sync to address major consistency issues")

    if result.system_scores.get("source_vs_primary", 100) < PAIR_SCORE_THRESHOLD:
        recommendations.append("Update store information from source API")

    if result.system_scores.get("primary_vs_search", 100) < PAIR_SCORE_THRESHOLD:
        recommendations.append("Re-index search index from current store data")

    critical = result.count_by_severity(Severity.CRITICAL)
    if critical:
        recommendations.append(f"Address {critical} critical data integrity issues immediately")

    if not result.discrepancies:
        recommendations.append("Data consistency is excellent - maintain regular sync schedule")

    return recommendations


# ═══════════════════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════

async def check_store_consistency(
    store_id: str,
    access_token: str,
    manager: RateLimitingBatchManager,
    primary_store: PrimaryStore,
    search_index: SearchIndexClient,
    source_client_factory: Optional[SourceClientFactory] = None,
    options: Optional[ConsistencyCheckOptions] = None,
    policy: Optional[ConsistencyPolicy] = None,
) -> ConsistencyCheckResult:
    """Execute a consistency check for a store."""
    checker = SyncConsistencyChecker(
        store_id,
        access_token,
        manager,
        primary_store,
        search_index,
        source_client_factory=source_client_factory,
        options=options,
        policy=policy,
    )
    return await checker.execute_check()


async def quick_consistency_check(
    store_id: str,
    access_token: str,
    manager: RateLimitingBatchManager,
    primary_store: PrimaryStore,
    search_index: SearchIndexClient,
    source_client_factory: Optional[SourceClientFactory] = None,
    policy: Optional[ConsistencyPolicy] = None,
) -> Dict[str, Any]:
    """
    Basic-level check of store and products, without a persisted report.

    Returns:
        {"is_consistent": bool, "score": int, "critical_issues": int}
    """
    policy = policy or ConsistencyPolicy()
    result = await check_store_consistency(
        store_id,
        access_token,
        manager,
        primary_store,
        search_index,
        source_client_factory=source_client_factory,
        options=ConsistencyCheckOptions(
            level=CheckLevel.BASIC,
            data_types=[DataType.STORE, DataType.PRODUCTS],
            auto_repair=False,
            generate_report=False,
        ),
        policy=policy,
    )
    return {
        "is_consistent": result.overall_score >= policy.consistent_threshold,
        "score": result.overall_score,
        "critical_issues": result.count_by_severity(Severity.CRITICAL),
    }
