#!/usr/bin/env python3
"""Run one retention sweep against the configured stores.

Deletes OAuth audit records past the retention window and purges lapsed
OAuth state keys, then exits. Intended for cron-style deployments that do
not keep the API process running.

Usage:
    python scripts/run_sweep.py
    python scripts/run_sweep.py --retention-days 14 --batch-size 500

Environment Variables:
    REDIS_URL: Redis connection string
    DATABASE_URL: PostgreSQL connection string for the audit log
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_sweep(retention_days: int | None, batch_size: int | None, rounds: int) -> dict:
    """Run up to ``rounds`` sweeps, stopping early once nothing is left to delete."""
    # Import here to avoid loading config before argument parsing
    from tribeguard.service.runtime import get_runtime

    runtime = get_runtime()
    sweeper = runtime.sweeper
    if retention_days is not None:
        sweeper.retention_days = retention_days
    if batch_size is not None:
        sweeper.batch_size = batch_size

    totals = {"audit_deleted": 0, "keys_removed": 0, "errors": []}
    try:
        for _ in range(rounds):
            report = await sweeper.run_once()
            totals["audit_deleted"] += report.audit_deleted
            totals["keys_removed"] += report.keys_removed
            totals["errors"].extend(report.errors)
            if report.errors or report.audit_deleted < sweeper.batch_size:
                break
    finally:
        await runtime.close()
    return totals


def main():
    parser = argparse.ArgumentParser(
        description="Run a tribeguard retention sweep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override AUDIT_RETENTION_DAYS for this run",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override SWEEP_BATCH_SIZE for this run",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=1,
        help="Repeat the sweep while full batches are being deleted",
    )

    args = parser.parse_args()
    if args.rounds < 1:
        print("Error: --rounds must be at least 1")
        sys.exit(1)

    try:
        result = asyncio.run(run_sweep(args.retention_days, args.batch_size, args.rounds))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Audit records deleted: {result['audit_deleted']}")
    print(f"State keys removed:    {result['keys_removed']}")
    if result["errors"]:
        for error in result["errors"]:
            print(f"  failed: {error}")
        sys.exit(2)


if __name__ == "__main__":
    main()
