"""
End-to-end watcher pipeline over the fakes: transfer in, donate() out.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace

from backend_eon.database.models import AssetType, DonationIntent, SettlementStatus
from backend_eon.watcher.events import CHANNEL_NATIVE, CHANNEL_TOKEN, TransferEvent
from conftest import (
    CONTRACT,
    ONE_ETH,
    ONE_USDC,
    TARGET,
    USDC,
    WALLET,
    WALLET_2,
    tx_hash,
)

SENDER = "0x" + "1" * 40


def _usdc(n: int, amount: int, to: str = WALLET, block_time: int = 1_700_000_000) -> TransferEvent:
    return TransferEvent(
        tx_hash=tx_hash(n),
        sender=SENDER,
        recipient=to,
        amount=amount,
        token=USDC,
        block_time=block_time,
        channel=CHANNEL_TOKEN,
    )


def _native(n: int, amount: int, to: str = WALLET) -> TransferEvent:
    return TransferEvent(
        tx_hash=tx_hash(n),
        sender=SENDER,
        recipient=to,
        amount=amount,
        block_time=1_700_000_000,
        channel=CHANNEL_NATIVE,
    )


async def _watching(service, store, percent: int = 10):
    await store.add_configuration(WALLET, TARGET, percent)
    await service.ctx.registry.refresh()
    return service


def test_same_transaction_on_two_channels_settles_once(make_service, store, chain):
    async def scenario():
        service = await _watching(make_service(), store)
        await asyncio.gather(
            service.handle_transfer(_native(1, ONE_ETH)),
            service.handle_transfer(_usdc(1, 50 * ONE_USDC)),
        )
        queued = len(service.ctx.queue)
        await service.request_drain()
        # a late redelivery after settlement is dropped by the memory set
        late = await service.handle_transfer(_usdc(1, 50 * ONE_USDC))
        return queued, await store.get_settlement(tx_hash(1)), late

    queued, record, late = asyncio.run(scenario())
    assert queued == 1
    assert len(chain.donations) == 1
    assert len(chain.donations[0]["froms"]) == 1
    assert record.status is SettlementStatus.SUCCESS
    assert late is None


def test_native_transfer_settles_converted_amount(make_service, store, chain):
    async def scenario():
        service = await _watching(make_service(), store)
        intent = await service.handle_transfer(_native(2, ONE_ETH))
        await service.request_drain()
        return intent, await store.get_settlement(tx_hash(2))

    intent, record = asyncio.run(scenario())
    # 1 ETH at 3000 USD, 10% -> 300 USDC
    assert intent.asset_type is AssetType.NATIVE
    assert intent.settlement_amount == 300 * ONE_USDC
    assert chain.donations[0] == {
        "contract": CONTRACT,
        "froms": [WALLET],
        "tos": [TARGET],
        "times": [1_700_000_000],
        "amounts": [300 * ONE_USDC],
    }
    assert record.status is SettlementStatus.SUCCESS
    assert record.settlement_tx_hash == chain.signed[0].tx_hash
    assert record.original_amount == str(ONE_ETH)


def test_zero_value_and_unwatched_transfers_are_ignored(make_service, store):
    async def scenario():
        service = await _watching(make_service(), store)
        zero = await service.handle_transfer(_usdc(3, 0))
        other = await service.handle_transfer(_usdc(4, ONE_USDC, to=WALLET_2))
        return service, zero, other

    service, zero, other = asyncio.run(scenario())
    assert zero is None and other is None
    assert len(service.ctx.queue) == 0
    assert asyncio.run(store.count_settlements_by_status()) == {}



async def _settled_record(store, n: int, amount: int, status: SettlementStatus = SettlementStatus.SUCCESS, **kwargs):
    intent = DonationIntent(
        source_tx_hash=tx_hash(n),
        wallet_address=WALLET,
        asset_type=AssetType.SETTLEMENT,
        original_amount=amount * 10,
        settlement_amount=amount,
        percent=10,
        target_address=TARGET,
        authorized_contract=CONTRACT,
        config_id=1,
        observed_at=1_700_000_000,
    )
    await store.insert_pending_settlement(intent, now=kwargs.get("now"))
    if status is SettlementStatus.SUCCESS:
        await store.mark_settlement_success([intent.source_tx_hash], tx_hash(0xE000 + n))
    elif status is SettlementStatus.FAILED:
        await store.mark_settlement_failed(
            [intent.source_tx_hash], "boom", settlement_tx_hash=kwargs.get("settlement_tx_hash")
        )
    return intent


def test_goal_met_skips_without_record_and_marks_seen(make_service, store, chain, notifier):
    async def scenario():
        service = await _watching(make_service(), store)
        goal_id = await store.add_season_goal(WALLET, 5 * ONE_USDC, start_at=0, end_at=2**40, notify_id=7)
        first = await service.handle_transfer(_usdc(5, 50 * ONE_USDC))
        await service.request_drain()
        second = await service.handle_transfer(_usdc(6, 50 * ONE_USDC))
        return service, goal_id, first, second

    service, goal_id, first, second = asyncio.run(scenario())
    assert first.settlement_amount == 5 * ONE_USDC
    assert first.season_id is None
    assert second is None
    assert service.ctx.dedup.seen_recently(tx_hash(6))
    assert asyncio.run(store.get_settlement(tx_hash(6))) is None
    assert len(chain.donations) == 1
    assert asyncio.run(store.latest_season_goal(WALLET)).completed
    assert [g.goal_id for g in notifier.sent] == [goal_id]


def test_goal_caps_donation_to_remainder(make_service, store, chain, notifier):
    async def scenario():
        service = await _watching(make_service(), store)
        goal_id = await store.add_season_goal(WALLET, 8 * ONE_USDC, start_at=0, end_at=2**40, notify_id=7)
        await _settled_record(store, 50, 6 * ONE_USDC)
        intent = await service.handle_transfer(_usdc(7, 50 * ONE_USDC))
        await service.request_drain()
        return goal_id, intent

    goal_id, intent = asyncio.run(scenario())
    assert intent.settlement_amount == 2 * ONE_USDC
    assert intent.season_id == goal_id
    assert chain.donations[0]["amounts"] == [2 * ONE_USDC]
    assert [g.goal_id for g in notifier.sent] == [goal_id]

def test_reprocess_failed_requeues_and_settles(make_service, store, chain):
    async def scenario():
        service = await _watching(make_service(), store)
        await _settled_record(store, 20, 2 * ONE_USDC, SettlementStatus.FAILED)
        requeued = await service.reprocess_failed()
        await service.request_drain()
        return requeued, await store.get_settlement(tx_hash(20))

    requeued, record = asyncio.run(scenario())
    assert requeued == [tx_hash(20)]
    assert chain.donations[0]["amounts"] == [2 * ONE_USDC]
    assert record.status is SettlementStatus.SUCCESS
    assert record.error is None


def test_reprocess_failed_does_not_resend_a_mined_donation(make_service, store, chain):
    mined = tx_hash(0xBEEF)
    chain.landed[mined] = object()

    async def scenario():
        service = await _watching(make_service(), store)
        await _settled_record(store, 21, ONE_USDC, SettlementStatus.FAILED, settlement_tx_hash=mined)
        requeued = await service.reprocess_failed()
        return service, requeued, await store.get_settlement(tx_hash(21))

    service, requeued, record = asyncio.run(scenario())
    assert requeued == []
    assert len(service.ctx.queue) == 0
    assert chain.donations == []
    assert record.status is SettlementStatus.SUCCESS
    assert record.settlement_tx_hash == mined


def test_recover_pending_requeues_only_stale_records(make_service, store, chain):
    now = 1_800_000_000

    async def scenario():
        service = await _watching(make_service(clock=lambda: now), store)
        await _settled_record(store, 30, ONE_USDC, SettlementStatus.PENDING, now=now - 3600)
        await _settled_record(store, 31, ONE_USDC, SettlementStatus.PENDING, now=now - 10)
        recovered = await service.recover_pending()
        queued = len(service.ctx.queue)
        await service.request_drain()
        return recovered, queued, await store.get_settlement(tx_hash(30)), await store.get_settlement(tx_hash(31))

    recovered, queued, stale, fresh = asyncio.run(scenario())
    assert recovered == [tx_hash(30)]
    assert queued == 1
    assert stale.status is SettlementStatus.SUCCESS
    assert fresh.status is SettlementStatus.PENDING
    assert chain.donations[0]["amounts"] == [ONE_USDC]


def test_webhook_ingest_in_push_mode(make_service, store, chain):
    payload = {
        "block": {"number": "9", "timestamp": "1700000100"},
        "erc20Transfers": [
            {"contract": USDC, "from": SENDER, "to": WALLET, "value": str(40 * ONE_USDC), "transactionHash": tx_hash(40)}
        ],
    }

    async def scenario():
        push = await _watching(make_service(push=True), store)
        count = await push.ingest_webhook(payload)
        await push.request_drain()
        poll = make_service()
        ignored = await poll.ingest_webhook(payload)
        return count, ignored

    count, ignored = asyncio.run(scenario())
    assert count == 1
    assert ignored == 0
    assert chain.donations[0]["amounts"] == [4 * ONE_USDC]
    assert chain.donations[0]["times"] == [1_700_000_100]


def test_run_starts_timers_and_stops_cleanly(make_service, store, oracle):
    async def scenario():
        await store.add_configuration(WALLET, TARGET, 10)
        service = make_service()
        stop = asyncio.Event()
        task = asyncio.create_task(service.run(stop))
        for _ in range(100):
            if service.health()["status"] == "ok":
                break
            await asyncio.sleep(0.05)
        health = service.health()
        stop.set()
        await asyncio.wait_for(task, timeout=5)
        return health, await service.settlement_counts()

    health, counts = asyncio.run(scenario())
    assert health["status"] == "ok"
    assert health["watched_wallets"] == 1
    assert oracle.refreshes >= 1
    assert counts == {"pending": 0, "success": 0, "failed": 0}


def test_pending_record_created_after_start_is_recovered_on_a_timer(make_service, store, chain):
    state = {"now": 1_800_000_000}

    async def scenario():
        await store.add_configuration(WALLET, TARGET, 10)
        service = make_service(clock=lambda: state["now"])
        service.ctx.config = replace(service.ctx.config, pending_recovery_sec=1.0, queue_drain_sec=3600)
        stop = asyncio.Event()
        task = asyncio.create_task(service.run(stop))
        for _ in range(100):
            if service.health()["status"] == "ok":
                break
            await asyncio.sleep(0.05)
        await _settled_record(store, 32, ONE_USDC, SettlementStatus.PENDING, now=state["now"])
        state["now"] += 3600
        for _ in range(100):
            if len(service.ctx.queue):
                break
            await asyncio.sleep(0.05)
        queued = len(service.ctx.queue)
        stop.set()
        await asyncio.wait_for(task, timeout=5)
        await service.request_drain()
        return queued, await store.get_settlement(tx_hash(32))

    queued, record = asyncio.run(scenario())
    assert queued == 1
    assert record.status is SettlementStatus.SUCCESS
    assert len(chain.donations) == 1


def test_recover_pending_leaves_queued_hashes_alone(make_service, store, chain):
    now = 1_800_000_000

    async def scenario():
        service = await _watching(make_service(clock=lambda: now), store)
        intent = await _settled_record(store, 33, ONE_USDC, SettlementStatus.PENDING, now=now - 3600)
        service.ctx.queue.enqueue(intent)
        recovered = await service.recover_pending()
        await service.request_drain()
        return recovered, await store.get_settlement(tx_hash(33))

    recovered, record = asyncio.run(scenario())
    assert recovered == []
    assert record.status is SettlementStatus.SUCCESS
    assert len(chain.donations) == 1


def test_mined_but_unrecorded_donation_is_not_sent_twice(make_service, store, chain):
    state = {"now": int(time.time())}

    async def broken_mark(*args, **kwargs):
        raise RuntimeError("database is locked")

    async def scenario():
        service = await _watching(make_service(clock=lambda: state["now"]), store)
        await service.handle_transfer(_usdc(34, 20 * ONE_USDC))
        mark = store.mark_settlement_success
        store.mark_settlement_success = broken_mark
        await service.request_drain()
        stuck = await store.get_settlement(tx_hash(34))
        store.mark_settlement_success = mark
        state["now"] += 3600
        recovered = await service.recover_pending()
        await service.request_drain()
        redelivered = await service.handle_transfer(_usdc(34, 20 * ONE_USDC))
        return service, stuck, recovered, redelivered, await store.get_settlement(tx_hash(34))

    service, stuck, recovered, redelivered, record = asyncio.run(scenario())
    assert stuck.status is SettlementStatus.PENDING
    assert stuck.settlement_tx_hash == chain.signed[0].tx_hash
    assert recovered == [tx_hash(34)]
    assert redelivered is None
    assert record.status is SettlementStatus.SUCCESS
    assert record.settlement_tx_hash == chain.signed[0].tx_hash
    assert len(chain.donations) == 1
    assert len(service.ctx.queue) == 0


def test_reprocess_failed_waits_for_a_donation_still_in_the_mempool(make_service, store, chain):
    waiting = tx_hash(0xCAFE)
    chain.mempool.add(waiting)

    async def scenario():
        service = await _watching(make_service(), store)
        await _settled_record(store, 35, ONE_USDC, SettlementStatus.FAILED, settlement_tx_hash=waiting)
        requeued = await service.reprocess_failed()
        return service, requeued, await store.get_settlement(tx_hash(35))

    service, requeued, record = asyncio.run(scenario())
    assert requeued == []
    assert len(service.ctx.queue) == 0
    assert chain.donations == []
    assert record.status is SettlementStatus.FAILED
    assert record.settlement_tx_hash == waiting


def test_goal_remainder_is_claimed_once_across_channels(make_service, store, chain, notifier):
    insert = store.insert_pending_settlement

    async def slow_insert(*args, **kwargs):
        await asyncio.sleep(0.05)
        return await insert(*args, **kwargs)

    async def scenario():
        service = await _watching(make_service(), store)
        goal_id = await store.add_season_goal(WALLET, 100 * ONE_USDC, start_at=0, end_at=2**40, notify_id=7)
        await _settled_record(store, 60, 95 * ONE_USDC)
        store.insert_pending_settlement = slow_insert
        results = await asyncio.gather(
            service.handle_transfer(_usdc(41, 100 * ONE_USDC)),
            service.handle_transfer(_native(41, ONE_ETH)),
        )
        await service.request_drain()
        return goal_id, results, await store.get_settlement(tx_hash(41))

    goal_id, results, record = asyncio.run(scenario())
    claimed = [r for r in results if r is not None]
    assert len(claimed) == 1
    assert claimed[0].settlement_amount == 5 * ONE_USDC
    assert claimed[0].season_id == goal_id
    assert record.settlement_amount == 5 * ONE_USDC
    assert chain.donations[0]["amounts"] == [5 * ONE_USDC]
    assert len(chain.donations) == 1
    assert [g.goal_id for g in notifier.sent] == [goal_id]
