"""
Pytest fixtures for EON watcher tests.

Temporary SQLite store (aiosqlite) per test, plus in-memory fakes for the
chain client, price oracle and notifier. Async code is driven with
asyncio.run inside plain test functions.
"""

from __future__ import annotations

import asyncio
from decimal import ROUND_DOWN, Decimal
from typing import Any

import pytest

from backend_eon.chain.client import SignedDonation

WALLET = "0x" + "a" * 40
WALLET_2 = "0x" + "a" * 39 + "2"
WALLET_3 = "0x" + "a" * 39 + "3"
TARGET = "0x" + "b" * 40
CONTRACT = "0x" + "c" * 40
CONTRACT_2 = "0x" + "c" * 39 + "2"
USDC = "0x" + "d" * 40
WETH = "0x" + "e" * 40
OPERATOR = "0x" + "f" * 40

ONE_USDC = 1_000_000
ONE_ETH = 10**18


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


class RateLimited(Exception):
    """Provider throttling as web3 surfaces it."""

    def __init__(self) -> None:
        super().__init__({"code": -32016, "message": "rate limit exceeded"})


class FakeChain:
    """
    In-memory stand-in for EonChain.

    *_errors lists are consumed one per call before the call succeeds.
    landed holds the distinct donate transactions that reached the chain.
    mempool holds hashes the node reports as known but not mined.
    """

    def __init__(self) -> None:
        self.operator = OPERATOR
        self.executor_on: set[str] = {CONTRACT, CONTRACT_2}
        self.allowances: dict[str, int] = {}
        self.default_allowance = 10**30
        self.receipt_status = 1
        self.executor_errors: list[Exception] = []
        self.allowance_errors: list[Exception] = []
        self.send_errors: list[Exception] = []
        self.receipt_errors: list[Exception] = []
        self.signed: list[SignedDonation] = []
        self.donations: list[dict[str, Any]] = []
        self.send_attempts = 0
        self.landed: dict[str, SignedDonation] = {}
        self.mempool: set[str] = set()
        self.head = 0
        self.blocks: dict[int, dict[str, Any]] = {}
        self.logs: list[dict[str, Any]] = []
        self.block_requests: list[int] = []

    # reads

    async def block_number(self) -> int:
        return self.head

    async def get_block(self, number: int) -> dict[str, Any]:
        self.block_requests.append(number)
        return self.blocks.get(number, {"number": number, "timestamp": 1_700_000_000 + number, "transactions": []})

    async def get_transfer_logs(self, from_block, to_block, tokens, recipients=None):
        tokens = {t.lower() for t in tokens}
        return [
            log
            for log in self.logs
            if from_block <= log["blockNumber"] <= to_block and log["address"].lower() in tokens
        ]

    async def is_executor(self, contract: str) -> bool:
        if self.executor_errors:
            raise self.executor_errors.pop(0)
        return contract in self.executor_on

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        if self.allowance_errors:
            raise self.allowance_errors.pop(0)
        return self.allowances.get(owner, self.default_allowance)

    async def get_receipt(self, tx: str) -> dict[str, Any] | None:
        return {"status": 1} if tx in self.landed else None

    async def is_pending(self, tx: str) -> bool:
        return tx in self.mempool

    # writes

    async def sign_donation(self, contract, froms, tos, times, amounts) -> SignedDonation:
        nonce = len(self.signed)
        signed = SignedDonation(
            tx_hash=tx_hash(0xD0000 + nonce),
            raw_transaction=b"raw-%d" % nonce,
            nonce=nonce,
            contract=contract,
            entries=len(froms),
        )
        self.signed.append(signed)
        self.donations.append(
            {"contract": contract, "froms": froms, "tos": tos, "times": times, "amounts": amounts}
        )
        return signed

    async def send_signed(self, signed: SignedDonation) -> str:
        self.send_attempts += 1
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.landed[signed.tx_hash] = signed
        return signed.tx_hash

    async def wait_for_receipt(self, tx: str) -> dict[str, Any]:
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return {"transactionHash": tx, "status": self.receipt_status}


class FakeOracle:
    """Fixed native price; same Decimal conversion as PriceOracle."""

    def __init__(self, price: float = 3000.0, native_decimals: int = 18, settlement_decimals: int = 6) -> None:
        self.price = price
        self.native_decimals = native_decimals
        self.settlement_decimals = settlement_decimals
        self.refreshes = 0

    async def refresh(self) -> float:
        self.refreshes += 1
        return self.price

    async def current_price(self) -> float:
        return self.price

    def status(self) -> dict[str, Any]:
        return {"price": self.price, "source": "fake", "stale": False}

    async def to_settlement_units(self, native_amount: int) -> int:
        value = (
            Decimal(native_amount)
            / Decimal(10) ** self.native_decimals
            * Decimal(str(self.price))
            * Decimal(10) ** self.settlement_decimals
        )
        return int(value.to_integral_value(rounding=ROUND_DOWN))

    async def estimate_settlement_units(self, native_amount: int) -> float:
        return native_amount / 10**self.native_decimals * self.price * 10**self.settlement_decimals


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[Any] = []

    async def notify_season_complete(self, goal) -> bool:
        self.sent.append(goal)
        return True


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    """SQLite file in tmp_path. Unset DATABASE_URL so nothing points elsewhere."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return f"sqlite+aiosqlite:///{tmp_path / 'eon_watcher_test.db'}"


@pytest.fixture
def store(db_url):
    from backend_eon.database.store import Store

    s = Store(db_url)
    asyncio.run(s.init())
    return s


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_service(store, chain, oracle, notifier, sleeper):
    """
    Factory for a fully wired WatcherService over the fakes.

    push=True uses a PushEventSource (webhook-driven) instead of polling.
    """
    from backend_eon.agent_worker.service import WatcherConfig, WatcherContext, WatcherService
    from backend_eon.donation.season_goals import SeasonGoalAdjuster
    from backend_eon.settlement.queue import SettlementQueue
    from backend_eon.settlement.retry import RetryPolicy
    from backend_eon.settlement.submitter import ChainSubmitter
    from backend_eon.watcher.dedup import Deduplicator
    from backend_eon.watcher.registry import WalletRegistry
    from backend_eon.watcher.source import PollingEventSource, PushEventSource

    def _make(push: bool = False, dedup_capacity: int = 5000, clock=None):
        registry = WalletRegistry(store, default_contract=CONTRACT)
        dedup = Deduplicator(store, capacity=dedup_capacity)
        adjuster = SeasonGoalAdjuster(store, notifier, **({"clock": clock} if clock else {}))
        submitter = ChainSubmitter(
            chain,
            store,
            USDC,
            policy=RetryPolicy(attempts=5, base_delay_sec=1.0, sleep=sleeper),
            registry=registry,
            adjuster=adjuster,
            dedup=dedup,
        )
        poller = PollingEventSource(chain, registry, [USDC, WETH])
        source = PushEventSource(backstop=poller) if push else poller
        ctx = WatcherContext(
            config=WatcherConfig(settlement_token=USDC, wrapped_native_token=WETH),
            store=store,
            chain=chain,
            oracle=oracle,
            registry=registry,
            dedup=dedup,
            adjuster=adjuster,
            queue=SettlementQueue(submitter),
            source=source,
        )
        return WatcherService(ctx, **({"clock": clock} if clock else {}))

    return _make
