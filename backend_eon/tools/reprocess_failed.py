"""
Reprocess failed settlements.

Resets failed settlement records to pending and settles them again. Records
whose donate transaction was in fact mined are marked success instead of
being resent.

Usage:
  python -m backend_eon.tools.reprocess_failed --list
  python -m backend_eon.tools.reprocess_failed --limit 50
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from backend_eon.agent_worker.bootstrap import build_service
from backend_eon.config.settings import get_settings
from backend_eon.database.store import Store
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

DEFAULT_LIMIT = 100


async def list_failed(limit: int) -> int:
    store = Store(get_settings().database_url)
    try:
        await store.init()
        records = await store.list_failed_settlements(limit)
    finally:
        await store.close()
    for r in records:
        print(f"{r.source_tx_hash}  {r.wallet_address}  {r.settlement_amount}  {r.error or ''}")
    print("FAILED:", len(records))
    return len(records)


async def run(limit: int) -> int:
    service = build_service(get_settings())
    ctx = service.ctx
    try:
        await ctx.store.init()
        await ctx.registry.refresh()
        requeued = await service.reprocess_failed(limit)
        report = await service.request_drain()
    finally:
        await ctx.store.close()
    print("REQUEUED:", len(requeued))
    print("SETTLED:", len(report.settled))
    print("UNSETTLED:", len(report.unsettled))
    for group in report.groups:
        if group.error:
            print(f"  {group.contract}: {group.error}")
    return len(report.unsettled)


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset failed settlements and settle them again.")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help=f"Max records (default: {DEFAULT_LIMIT})")
    parser.add_argument("--list", action="store_true", help="Only list failed settlements")
    args = parser.parse_args()
    try:
        if args.list:
            asyncio.run(list_failed(args.limit))
            return 0
        unsettled = asyncio.run(run(args.limit))
        return 0 if unsettled == 0 else 2
    except Exception as e:
        logger.exception("reprocess_failed_error", error=str(e))
        print("ERROR:", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
