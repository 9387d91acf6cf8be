"""
Season goals: cap donations against a wallet's time-boxed cumulative goal.

adjust() always returns a GoalAdjustment. Any internal failure falls back to
the unadjusted amount with `error` set, so a store outage never blocks or
loses a donation. Completion is a conditional update on the goal id; only
the caller that performs the transition sends the notification, however
many evaluations race on the same wallet.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from backend_eon.core.results import GoalAdjustment
from backend_eon.database.models import SeasonGoal, canonical_address
from backend_eon.database.store import Store
from backend_eon.eon_logging import get_logger
from backend_eon.notifications.neynar import SeasonNotifier

logger = get_logger(__name__)


@dataclass(frozen=True)
class SeasonProgress:
    wallet_address: str
    season_id: int
    goal_amount: int
    total_donated: int
    percent_complete: int
    goal_met: bool
    window_start: int
    window_end: int
    active: bool
    completed: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SweepReport:
    processed: int = 0
    goals_reached: int = 0
    completed_now: int = 0
    errors: int = 0


def cap_donation(goal_amount: int, total_donated: int, proposed: int) -> tuple[int, bool]:
    """
    (final_amount, goal_reached) for a proposed donation.

    total >= goal: nothing more is donated. total + proposed > goal: donate
    exactly the remainder. Otherwise the proposal stands.
    """
    if total_donated >= goal_amount:
        return 0, True
    if total_donated + proposed > goal_amount:
        return goal_amount - total_donated, True
    return proposed, False


class SeasonGoalAdjuster:
    def __init__(
        self,
        store: Store,
        notifier: SeasonNotifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, wallet_address: str) -> asyncio.Lock:
        """
        Per-wallet lock. Callers that must claim a capped donation before the
        next evaluation sees the goal hold it across evaluate() and the claim.
        """
        wallet = canonical_address(wallet_address)
        lock = self._locks.get(wallet)
        if lock is None:
            lock = self._locks[wallet] = asyncio.Lock()
        return lock

    async def _live_goal(self, wallet: str) -> SeasonGoal | None:
        goal = await self._store.latest_season_goal(wallet)
        if goal is None or goal.goal_amount is None:
            return None
        if not goal.active or goal.completed:
            return None
        return goal

    async def evaluate(self, wallet_address: str, proposed_amount: int) -> GoalAdjustment:
        """
        Cap proposed_amount against the live goal without completing it.

        Does not take the wallet lock; hold lock_for() around this and
        whatever commits the result.
        """
        wallet = canonical_address(wallet_address)
        try:
            goal = await self._live_goal(wallet)
            if goal is None:
                return GoalAdjustment.unchanged(proposed_amount)
            start, end = goal.window(int(self._clock()))
            total = await self._store.sum_settled_amount(wallet, start, end)
            final, reached = cap_donation(goal.goal_amount, total, proposed_amount)
        except Exception as e:
            logger.exception(
                "season_adjust_failed",
                wallet_id=wallet,
                proposed=proposed_amount,
                error=str(e),
            )
            return GoalAdjustment.unchanged(proposed_amount, error=str(e))

        if final != proposed_amount:
            logger.info(
                "season_donation_capped",
                wallet_id=wallet,
                season_id=goal.goal_id,
                goal=goal.goal_amount,
                total_donated=total,
                proposed=proposed_amount,
                final=final,
            )
        return GoalAdjustment(
            final_amount=final,
            goal_reached_now=reached,
            season_id=goal.goal_id,
            proposed_amount=proposed_amount,
            total_donated=total,
            goal_amount=goal.goal_amount,
        )

    async def complete_quietly(self, season_id: int) -> bool:
        """complete() with failures logged; the sweep and post-settlement pass retry it."""
        try:
            return await self.complete(season_id)
        except Exception as e:
            logger.exception("season_complete_failed", season_id=season_id, error=str(e))
            return False

    async def adjust(self, wallet_address: str, proposed_amount: int) -> GoalAdjustment:
        """evaluate() under the wallet lock, completing the goal when it is reached."""
        async with self.lock_for(wallet_address):
            adjustment = await self.evaluate(wallet_address, proposed_amount)
            if adjustment.goal_reached_now and adjustment.season_id is not None:
                await self.complete_quietly(adjustment.season_id)
            return adjustment

    async def complete(self, season_id: int) -> bool:
        """
        Mark the goal completed if it is not already. Returns True only when
        this call made the transition, in which case the notifier fires once.
        """
        transitioned = await self._store.complete_season_goal(season_id, int(self._clock()))
        if not transitioned:
            logger.debug("season_already_completed", season_id=season_id)
            return False
        logger.info("season_completed", season_id=season_id)
        if self._notifier is not None:
            goal = await self._store.get_season_goal(season_id)
            if goal is not None:
                try:
                    await self._notifier.notify_season_complete(goal)
                except Exception as e:
                    logger.exception("season_notification_error", season_id=season_id, error=str(e))
        return True

    async def progress(self, wallet_address: str) -> SeasonProgress | None:
        """Progress against the wallet's latest goal (active or not); None if it has none."""
        wallet = canonical_address(wallet_address)
        goal = await self._store.latest_season_goal(wallet)
        if goal is None or goal.goal_amount is None:
            return None
        start, end = goal.window(int(self._clock()))
        total = await self._store.sum_settled_amount(wallet, start, end)
        percent = total * 100 // goal.goal_amount if goal.goal_amount > 0 else 0
        return SeasonProgress(
            wallet_address=wallet,
            season_id=goal.goal_id,
            goal_amount=goal.goal_amount,
            total_donated=total,
            percent_complete=percent,
            goal_met=total >= goal.goal_amount,
            window_start=start,
            window_end=end,
            active=goal.active,
            completed=goal.completed,
        )

    async def sweep(self) -> SweepReport:
        """Complete every live goal that is already met."""
        report = SweepReport()
        try:
            wallets = await self._store.list_goal_wallets()
        except Exception as e:
            logger.exception("season_sweep_failed", error=str(e))
            report.errors += 1
            return report
        for wallet in wallets:
            try:
                progress = await self.progress(wallet)
                if progress is None:
                    continue
                report.processed += 1
                if progress.goal_met and not progress.completed:
                    report.goals_reached += 1
                    if await self.complete(progress.season_id):
                        report.completed_now += 1
            except Exception as e:
                report.errors += 1
                logger.exception("season_sweep_wallet_failed", wallet_id=wallet, error=str(e))
        logger.info(
            "season_sweep_done",
            processed=report.processed,
            goals_reached=report.goals_reached,
            completed_now=report.completed_now,
            errors=report.errors,
        )
        return report
