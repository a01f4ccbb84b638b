"""
Tests for storesync.models module.
"""
import asyncio
import pytest
from datetime import datetime, timezone

from storesync.models import (
    BatchOperation,
    CheckLevel,
    ConsistencyCheckOptions,
    ConsistencyCheckResult,
    DataType,
    Discrepancy,
    DiscrepancyType,
    Priority,
    Severity,
    StoreSystem,
    TargetSystem,
)


def _discrepancy(severity=Severity.MEDIUM, system=StoreSystem.PRIMARY, counterpart=StoreSystem.SOURCE):
    return Discrepancy(
        type=DiscrepancyType.OUTDATED,
        severity=severity,
        system=system,
        counterpart=counterpart,
        entity="products",
        entity_id="1",
        description="Product 1 name mismatch",
        suggested_action="Update products in primary store",
        expected_value={"name": "New"},
        actual_value={"name": "Old"},
    )


class TestEnums:
    """Tests for enum helpers."""

    def test_priority_rank_order(self):
        """HIGH is served before NORMAL before LOW."""
        ranked = sorted(Priority, key=lambda p: p.rank)
        assert ranked == [Priority.HIGH, Priority.NORMAL, Priority.LOW]

    def test_enums_accept_values(self):
        """String values coerce to enum members."""
        assert TargetSystem("source") == TargetSystem.SOURCE
        assert CheckLevel("comprehensive") == CheckLevel.COMPREHENSIVE

    def test_indexed_data_types(self):
        """Store and analytics have no search namespace."""
        assert DataType.indexed() == [DataType.PRODUCTS, DataType.ORDERS, DataType.CUSTOMERS]

    def test_display_names(self):
        assert StoreSystem.SEARCH.display_name == "search index"
        assert StoreSystem.SOURCE.display_name == "source API"


class TestBatchOperation:
    """Tests for BatchOperation settlement."""

    @pytest.mark.asyncio
    async def test_fulfill_once(self):
        """A future is settled at most once."""
        loop = asyncio.get_running_loop()
        op = BatchOperation(data="x", future=loop.create_future())

        assert not op.settled
        assert op.fulfill(1) is True
        assert op.fulfill(2) is False
        assert op.reject(ValueError("late")) is False
        assert await op.future == 1

    @pytest.mark.asyncio
    async def test_reject(self):
        loop = asyncio.get_running_loop()
        op = BatchOperation(data="x", future=loop.create_future())

        op.reject(ValueError("boom"))
        with pytest.raises(ValueError, match="boom"):
            await op.future

    @pytest.mark.asyncio
    async def test_sort_key_priority_then_sequence(self):
        """Priority wins over submission order; ties keep submission order."""
        loop = asyncio.get_running_loop()
        a = BatchOperation(data="A", future=loop.create_future())
        b = BatchOperation(data="B", future=loop.create_future(), priority=Priority.HIGH)
        c = BatchOperation(data="C", future=loop.create_future())
        d = BatchOperation(data="D", future=loop.create_future(), priority=Priority.LOW)

        ordered = sorted([d, c, b, a], key=lambda op: op.sort_key)
        assert [op.data for op in ordered] == ["B", "A", "C", "D"]


class TestDiscrepancy:
    """Tests for Discrepancy."""

    def test_systems_pair_is_unordered(self):
        forward = _discrepancy(system=StoreSystem.PRIMARY, counterpart=StoreSystem.SEARCH)
        backward = _discrepancy(system=StoreSystem.SEARCH, counterpart=StoreSystem.PRIMARY)
        assert forward.systems == backward.systems

    def test_to_dict_uses_values(self):
        data = _discrepancy().to_dict()
        assert data["type"] == "outdated"
        assert data["severity"] == "medium"
        assert data["system"] == "primary"
        assert data["counterpart"] == "source"
        assert data["expected_value"] == {"name": "New"}
        assert data["auto_repairable"] is False


class TestConsistencyModels:
    """Tests for options and results."""

    def test_default_options(self):
        options = ConsistencyCheckOptions()
        assert options.level == CheckLevel.STANDARD
        assert options.data_types == [DataType.STORE, DataType.PRODUCTS, DataType.ORDERS]
        assert options.auto_repair is False
        assert options.generate_report is True
        assert options.max_discrepancies == 100

    def test_options_lists_are_independent(self):
        first = ConsistencyCheckOptions()
        first.data_types.append(DataType.ANALYTICS)
        assert DataType.ANALYTICS not in ConsistencyCheckOptions().data_types

    def test_result_record(self):
        """to_record serializes enums and timestamps."""
        created = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
        result = ConsistencyCheckResult(
            store_id="1",
            check_level=CheckLevel.BASIC,
            overall_score=75,
            system_scores={"overall_consistency": 75},
            discrepancies=[_discrepancy(Severity.CRITICAL), _discrepancy()],
            statistics={},
            execution_time_ms=12.3456,
            recommendations=[],
            auto_repairs_performed=[],
            needs_attention=True,
            next_check_suggested=created,
            created_at=created,
        )

        record = result.to_record()
        assert record["check_level"] == "basic"
        assert record["execution_time_ms"] == 12.35
        assert len(record["discrepancies"]) == 2
        assert record["created_at"] == "2026-01-10T12:00:00+00:00"
        assert result.count_by_severity(Severity.CRITICAL) == 1
        assert result.count_by_severity(Severity.LOW) == 0
