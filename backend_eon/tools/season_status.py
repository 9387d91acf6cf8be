"""
Print a wallet's season progress, or sweep every live goal.

Usage:
  python -m backend_eon.tools.season_status 0xabc...
  python -m backend_eon.tools.season_status --sweep
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from backend_eon.config.settings import get_settings
from backend_eon.database.store import Store
from backend_eon.donation.season_goals import SeasonGoalAdjuster
from backend_eon.eon_logging import get_logger
from backend_eon.notifications.neynar import NeynarNotifier

logger = get_logger(__name__)


async def run(wallet: str | None, sweep: bool) -> int:
    settings = get_settings()
    store = Store(settings.database_url)
    adjuster = SeasonGoalAdjuster(
        store, NeynarNotifier(settings.neynar_api_key, settings.notification_target_url)
    )
    try:
        await store.init()
        if sweep:
            report = await adjuster.sweep()
            print(json.dumps(report.__dict__, indent=2))
            return 0
        progress = await adjuster.progress(wallet or "")
    finally:
        await store.close()
    if progress is None:
        print("NO SEASON GOAL:", wallet)
        return 1
    print(json.dumps(progress.to_dict(), indent=2))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Show season-goal progress for a wallet.")
    parser.add_argument("wallet", nargs="?", help="Wallet address (0x...)")
    parser.add_argument("--sweep", action="store_true", help="Complete every live goal that is already met")
    args = parser.parse_args()
    if not args.wallet and not args.sweep:
        parser.error("wallet is required unless --sweep is given")
    try:
        return asyncio.run(run(args.wallet, args.sweep))
    except Exception as e:
        logger.exception("season_status_failed", error=str(e))
        print("ERROR:", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
