"""
Run one sync invocation directly (not through the API), for cron.

Usage:
  python scripts/run_sync.py --minutes 15            # incremental, cadence gated
  python scripts/run_sync.py --days 7                # full, with reconciliation
  python scripts/run_sync.py --minutes 15 --force --tenant 3 --tenant 7
  python scripts/run_sync.py --transactions-days 3   # global transaction sync only
"""
import asyncio
import argparse
import json
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta

from shipsync.connectors.pagination import window_from_options
from shipsync.models.base import init_db
from shipsync.services.data_sync_service import DataSyncService
from shipsync.utils.helpers import utcnow


async def main(args) -> bool:
    init_db()
    service = DataSyncService()

    if args.transactions_days:
        end = utcnow()
        report = await service.sync_transactions(end - timedelta(days=args.transactions_days), end)
    else:
        window = window_from_options(days=args.days, minutes=args.minutes)
        report = await service.run(
            window,
            force=args.force,
            tenant_ids=args.tenant or None,
            include_transactions=not args.skip_transactions,
        )

    summary = report.to_dict()
    if args.json:
        print(json.dumps(summary, indent=2, default=str))
    else:
        print(f"\n=== DONE ({'ok' if report.success else 'with errors'}) ===")
        for key, value in summary.items():
            if key in ("tenants", "errors"):
                continue
            print(f"{key}: {value}")
        for tenant in summary.get("tenants", []):
            print(f"  {tenant['tenant']}: {tenant['status']}, {tenant['orders_fetched']} orders, {tenant['duration']}s")
        for error in summary.get("errors", [])[:20]:
            print(f"  ! {error}")
    return report.success


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--days", type=int, default=None, help="Full sync over orders created in the last N days")
    parser.add_argument("--minutes", type=int, default=None, help="Incremental sync over orders modified in the last N minutes")
    parser.add_argument("--force", action="store_true", help="Ignore per-tenant cadence on incremental runs")
    parser.add_argument("--tenant", type=int, action="append", help="Restrict to a tenant id (repeatable)")
    parser.add_argument("--skip-transactions", action="store_true", help="Skip transaction fetch and attribution")
    parser.add_argument("--transactions-days", type=int, default=None, help="Only run the global transaction sync")
    parser.add_argument("--json", action="store_true", help="Print the full report as JSON")
    args = parser.parse_args()
    ok = asyncio.run(main(args))
    sys.exit(0 if ok else 1)
