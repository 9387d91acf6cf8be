"""
Batched on-chain settlement.

Intents are grouped by authorized contract (one donate() call per contract,
parallel arrays). Per group:

1. executor check: the operator must be an executor on the contract, else
   every entry in the group fails;
2. allowance check: each sender's settlement-token allowance to the contract
   must cover its cumulative amount in this batch; short entries fail, the
   rest proceed;
3. sign once, attach the signed hash to the pending records, send with
   retry, wait for the receipt with retry.

Each chain touch point (executor, allowance, sign, send, receipt) has its
own rate-limit budget. Every entry ends in success or failed; nothing a
group touched is left pending.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Iterable

from backend_eon.chain.client import EonChain, SignedDonation
from backend_eon.core.exceptions import (
    EonError,
    ExecutorNotAuthorizedError,
    InsufficientAllowanceError,
)
from backend_eon.core.results import GroupOutcome
from backend_eon.database.models import DonationIntent
from backend_eon.database.store import Store
from backend_eon.donation.season_goals import SeasonGoalAdjuster
from backend_eon.eon_logging import get_logger
from backend_eon.settlement.retry import RetryPolicy, with_rate_limit_retry
from backend_eon.watcher.dedup import Deduplicator
from backend_eon.watcher.registry import WalletRegistry

logger = get_logger(__name__)


class TransactionRevertedError(EonError):
    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"donate transaction {tx_hash} reverted")
        self.tx_hash = tx_hash


def group_by_contract(batch: Iterable[DonationIntent]) -> "OrderedDict[str, list[DonationIntent]]":
    """Group intents by contract, preserving first-seen order of contracts and entries."""
    groups: OrderedDict[str, list[DonationIntent]] = OrderedDict()
    for intent in batch:
        groups.setdefault(intent.authorized_contract.lower(), []).append(intent)
    return groups


def _receipt_status(receipt: Any) -> int:
    status = receipt.get("status") if hasattr(receipt, "get") else getattr(receipt, "status", None)
    return int(status) if status is not None else 0


class ChainSubmitter:
    def __init__(
        self,
        chain: EonChain,
        store: Store,
        settlement_token: str,
        *,
        policy: RetryPolicy | None = None,
        registry: WalletRegistry | None = None,
        adjuster: SeasonGoalAdjuster | None = None,
        dedup: Deduplicator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._chain = chain
        self._store = store
        self._token = settlement_token
        self._policy = policy or RetryPolicy()
        self._registry = registry
        self._adjuster = adjuster
        self._dedup = dedup
        self._clock = clock

    async def settle(self, batch: list[DonationIntent]) -> list[GroupOutcome]:
        outcomes: list[GroupOutcome] = []
        for contract, intents in group_by_contract(batch).items():
            outcomes.append(await self._settle_group(contract, intents))
        return outcomes

    # -------------------------------------------------------------------------
    # Per group
    # -------------------------------------------------------------------------

    async def _check_allowances(
        self, contract: str, intents: list[DonationIntent]
    ) -> tuple[list[DonationIntent], list[tuple[DonationIntent, InsufficientAllowanceError]]]:
        allowances: dict[str, int] = {}
        committed: dict[str, int] = {}
        eligible: list[DonationIntent] = []
        rejected: list[tuple[DonationIntent, InsufficientAllowanceError]] = []
        for intent in intents:
            sender = intent.wallet_address
            if sender not in allowances:
                allowances[sender] = await with_rate_limit_retry(
                    lambda: self._chain.allowance(self._token, sender, contract),
                    "allowance_check",
                    self._policy,
                )
            required = committed.get(sender, 0) + intent.settlement_amount
            if allowances[sender] >= required:
                committed[sender] = required
                eligible.append(intent)
            else:
                rejected.append(
                    (intent, InsufficientAllowanceError(sender, required, allowances[sender]))
                )
        return eligible, rejected

    async def _fail(
        self,
        intents: list[DonationIntent],
        error: str,
        outcome: GroupOutcome,
        settlement_tx_hash: str | None = None,
    ) -> None:
        hashes = [i.source_tx_hash for i in intents]
        if not hashes:
            return
        outcome.unsettled.extend(hashes)
        try:
            await self._store.mark_settlement_failed(
                hashes, error, int(self._clock()), settlement_tx_hash=settlement_tx_hash
            )
        except Exception as e:
            # left pending; startup recovery moves it to failed
            logger.exception("settlement_mark_failed_error", count=len(hashes), error=str(e))
            return
        self._mark_seen(hashes)

    def _mark_seen(self, hashes: Iterable[str]) -> None:
        if self._dedup is None:
            return
        for h in hashes:
            self._dedup.mark_seen(h)

    async def _settle_group(self, contract: str, intents: list[DonationIntent]) -> GroupOutcome:
        outcome = GroupOutcome(contract=contract)
        log = logger.bind(contract=contract)
        pending = list(intents)
        signed: SignedDonation | None = None
        try:
            is_executor = await with_rate_limit_retry(
                lambda: self._chain.is_executor(contract), "executor_check", self._policy
            )
            if not is_executor:
                raise ExecutorNotAuthorizedError(self._chain.operator, contract)

            eligible, rejected = await self._check_allowances(contract, pending)
            for intent, err in rejected:
                log.warning(
                    "settlement_allowance_insufficient",
                    tx_hash=intent.source_tx_hash,
                    wallet_id=intent.wallet_address,
                    required=err.required,
                    available=err.available,
                )
                await self._fail([intent], str(err), outcome)
            pending = eligible
            if not pending:
                outcome.error = "no entries passed the allowance check"
                return outcome

            signed = await with_rate_limit_retry(
                lambda: self._chain.sign_donation(
                    contract,
                    [i.wallet_address for i in pending],
                    [i.target_address for i in pending],
                    [i.observed_at for i in pending],
                    [i.settlement_amount for i in pending],
                ),
                "sign",
                self._policy,
            )
            # pending records name the donate tx before it can reach the chain
            await self._store.attach_settlement_tx(
                [i.source_tx_hash for i in pending], signed.tx_hash, int(self._clock())
            )
            tx_hash = await with_rate_limit_retry(
                lambda: self._chain.send_signed(signed), "submit", self._policy
            )
            log.info("settlement_group_submitted", tx_hash=tx_hash, entries=len(pending))
            receipt = await with_rate_limit_retry(
                lambda: self._chain.wait_for_receipt(tx_hash), "receipt_wait", self._policy
            )
            if _receipt_status(receipt) != 1:
                raise TransactionRevertedError(tx_hash)
        except Exception as e:
            outcome.error = str(e)
            log.error(
                "settlement_group_failed",
                entries=len(pending),
                error=str(e),
                error_type=type(e).__name__,
                tx_hash=signed.tx_hash if signed else None,
            )
            await self._fail(pending, str(e), outcome, signed.tx_hash if signed else None)
            return outcome

        await self._finish_success(pending, tx_hash, outcome)
        return outcome

    async def _record_success(self, hashes: list[str], tx_hash: str, now: int) -> bool:
        """
        Write the success outcome, retrying on any store error with the
        policy's backoff. If every attempt fails the records stay pending with
        the attached tx hash; stale recovery then finds the mined receipt.
        """
        delays = self._policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._store.mark_settlement_success(hashes, tx_hash, now)
                return True
            except Exception as e:
                if attempt > len(delays):
                    logger.exception(
                        "settlement_mark_success_error", tx_hash=tx_hash, attempts=attempt, error=str(e)
                    )
                    return False
                logger.warning(
                    "settlement_mark_success_retry", tx_hash=tx_hash, attempt=attempt, error=str(e)
                )
                await self._policy.sleep(delays[attempt - 1])

    async def _finish_success(
        self, settled: list[DonationIntent], tx_hash: str, outcome: GroupOutcome
    ) -> None:
        hashes = [i.source_tx_hash for i in settled]
        now = int(self._clock())
        outcome.settled.extend(hashes)
        outcome.settlement_tx_hash = tx_hash
        if await self._record_success(hashes, tx_hash, now):
            self._mark_seen(hashes)
        logger.info(
            "settlement_group_settled",
            contract=outcome.contract,
            tx_hash=tx_hash,
            entries=len(hashes),
            total=sum(i.settlement_amount for i in settled),
        )

        if self._registry is not None:
            try:
                await self._registry.record_donation([i.wallet_address for i in settled], now)
            except Exception as e:
                logger.warning("registry_record_donation_failed", error=str(e))

        if self._adjuster is not None:
            for season_id in sorted({i.season_id for i in settled if i.season_id is not None}):
                try:
                    await self._adjuster.complete(season_id)
                except Exception as e:
                    logger.warning("season_complete_after_settle_failed", season_id=season_id, error=str(e))
