#!/usr/bin/env python3
"""
Run a consistency check for one tenant and print the report.

Run this when a tenant's dashboard numbers look off, or before a resync.

Usage:
    python scripts/check_consistency.py 123456 --token $TOKEN
    python scripts/check_consistency.py 123456 --token $TOKEN --level comprehensive
    python scripts/check_consistency.py 123456 --token $TOKEN --sync  # Sync first
    python scripts/check_consistency.py 123456 --token $TOKEN --prune-orphans
    python scripts/check_consistency.py 123456 --history  # Show stored reports
"""
import asyncio
import argparse
import os
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from storesync.config import config, validate_config
from storesync.consistency import check_store_consistency
from storesync.manager import create_manager
from storesync.models import CheckLevel, ConsistencyCheckOptions, DataType
from storesync.observability import get_logger, setup_logging
from storesync.search_index import SearchIndexClient
from storesync.source_client import StoreAPIClient
from storesync.store import PrimaryStore
from storesync.sync_service import SyncService

logger = get_logger(__name__)


def print_report(result) -> None:
    print(f"\nStore {result.store_id} ({result.check_level.value} check)")
    print(f"  Overall score:      {result.overall_score}%")
    for name, score in result.system_scores.items():
        print(f"  {name:<20}{score}%")
    print(f"  Needs attention:    {'yes' if result.needs_attention else 'no'}")
    print(f"  Next check:         {result.next_check_suggested.isoformat()}")

    if result.discrepancies:
        print(f"\nDiscrepancies ({len(result.discrepancies)}):")
        for d in result.discrepancies:
            print(f"  [{d.severity.value:<8}] {d.entity}/{d.entity_id}: {d.description}")
    dropped = result.statistics.get("discrepancies_dropped", 0)
    if dropped:
        print(f"  ... {dropped} more not recorded")

    if result.auto_repairs_performed:
        print("\nAuto-repairs:")
        for repair in result.auto_repairs_performed:
            print(f"  - {repair}")

    print("\nRecommendations:")
    for recommendation in result.recommendations:
        print(f"  - {recommendation}")


async def show_history(store: PrimaryStore, store_id: str, limit: int) -> int:
    reports = await store.get_consistency_checks(store_id, limit=limit)
    if not reports:
        print(f"No consistency reports for store {store_id}")
        return 0
    for report in reports:
        print(
            f"#{report['id']} {report['created_at']} {report['check_level']:<13} "
            f"score={report['overall_score']:>3} "
            f"discrepancies={len(report['discrepancies'] or [])}"
        )
    return 0


async def main(args) -> int:
    """Run consistency check."""
    store = PrimaryStore(config.storage.db_path, config.storage.query_timeout)
    await store.connect()
    logger.info(f"Primary store: {store.get_connection_info()}")
    try:
        if args.history:
            return await show_history(store, args.store_id, args.limit)

        if not args.token:
            logger.error("Access token required (--token or SOURCE_ACCESS_TOKEN)")
            return 1

        validate_config()
        search = SearchIndexClient.from_config(config.search)
        health = await search.health_check()
        if health.get("status") != "available":
            logger.error(f"Search index unavailable: {health}")
            return 1
        manager = create_manager(config, search_index=search)

        def client_factory(store_id: str, token: str) -> StoreAPIClient:
            return StoreAPIClient(store_id, token, config.source)

        try:
            if args.sync:
                service = SyncService(manager, store, search, client_factory)
                stats = await service.sync_entities(args.store_id, args.token)
                logger.info(f"Sync complete: {stats}")

            options = ConsistencyCheckOptions(
                level=CheckLevel(args.level),
                data_types=[DataType(t) for t in args.data_types],
                auto_repair=args.auto_repair,
                generate_report=not args.no_report,
            )
            result = await check_store_consistency(
                args.store_id,
                args.token,
                manager,
                store,
                search,
                source_client_factory=client_factory,
                options=options,
                policy=config.consistency,
            )
            if args.prune_orphans:
                service = SyncService(manager, store, search, client_factory)
                pruned = await service.prune_orphans(args.store_id, result.discrepancies)
                logger.info(f"Pruned orphaned records: {pruned}")
        except Exception as e:
            logger.error(f"Consistency check failed: {e}", exc_info=True)
            return 1
        finally:
            await manager.close()

        print_report(result)
        return 0 if not result.needs_attention else 2
    finally:
        await store.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Check tenant data consistency")
    parser.add_argument("store_id", help="Tenant store ID")
    parser.add_argument(
        "--token",
        default=os.getenv("SOURCE_ACCESS_TOKEN"),
        help="Source API access token (default: $SOURCE_ACCESS_TOKEN)"
    )
    parser.add_argument(
        "--level",
        choices=[level.value for level in CheckLevel],
        default=CheckLevel.STANDARD.value,
        help="Check level (default: standard)"
    )
    parser.add_argument(
        "--data-types",
        nargs="+",
        choices=[t.value for t in DataType],
        default=[t.value for t in ConsistencyCheckOptions().data_types],
        help="Entity types to check (default: store products orders)"
    )
    parser.add_argument("--auto-repair", action="store_true", help="Apply safe low-severity repairs")
    parser.add_argument("--no-report", action="store_true", help="Do not persist the report")
    parser.add_argument("--sync", action="store_true", help="Sync the tenant before checking")
    parser.add_argument(
        "--prune-orphans",
        action="store_true",
        help="Delete records the check finds missing from the source API"
    )
    parser.add_argument("--history", action="store_true", help="Show stored reports instead")
    parser.add_argument("--limit", type=int, default=10, help="Reports to show with --history")
    args = parser.parse_args()

    setup_logging(config.logging.level, config.logging.json_format)
    sys.exit(asyncio.run(main(args)))
