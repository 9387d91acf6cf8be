"""
API routes over an injected WatcherService (no lifespan, no timers).
"""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from backend_eon.api_server.server import create_app, expected_signature
from conftest import ONE_USDC, TARGET, USDC, WALLET, WALLET_2, tx_hash

SECRET = "stream-secret"
SENDER = "0x" + "1" * 40


@pytest.fixture
def service(make_service, store):
    svc = make_service(push=True)

    async def setup():
        await store.add_configuration(WALLET, TARGET, 10)
        await svc.ctx.registry.refresh()

    asyncio.run(setup())
    return svc


@pytest.fixture
def client(service):
    return TestClient(create_app(service, webhook_secret=SECRET, run_worker=False))


def _delivery(n: int, amount: int) -> bytes:
    body = {
        "confirmed": True,
        "block": {"number": "12", "timestamp": "1700000200"},
        "erc20Transfers": [
            {"contract": USDC, "from": SENDER, "to": WALLET, "value": str(amount), "transactionHash": tx_hash(n)}
        ],
    }
    return json.dumps(body).encode()


def test_verification_ping_is_acknowledged(client):
    resp = client.post("/webhook/moralis", json={"verified": False})
    assert resp.status_code == 200
    assert resp.json() == {"status": "verified"}


def test_non_json_body_is_rejected(client):
    resp = client.post("/webhook/moralis", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400


def test_bad_signature_is_rejected(client, store):
    raw = _delivery(1, 10 * ONE_USDC)
    resp = client.post("/webhook/moralis", content=raw, headers={"x-signature": "0xdeadbeef"})
    assert resp.status_code == 401
    assert asyncio.run(store.get_settlement(tx_hash(1))) is None


def test_signed_delivery_creates_pending_settlement(client, service):
    raw = _delivery(2, 10 * ONE_USDC)
    resp = client.post(
        "/webhook/moralis",
        content=raw,
        headers={"x-signature": expected_signature(raw, SECRET), "content-type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"status": "received"}
    assert len(service.ctx.queue) == 1

    record = client.get(f"/settlements/{tx_hash(2)}")
    assert record.status_code == 200
    body = record.json()
    assert body["status"] == "pending"
    assert body["settlement_amount"] == ONE_USDC
    assert body["wallet_address"] == WALLET


def test_unknown_settlement_is_404(client):
    resp = client.get(f"/settlements/{tx_hash(99)}")
    assert resp.status_code == 404
    assert "detail" in resp.json()


def test_health_reports_queue_and_counts(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["watched_wallets"] == 1
    assert body["queue_depth"] == 0
    assert body["settlements"] == {"pending": 0, "success": 0, "failed": 0}


def test_wallets_lists_registry(client):
    resp = client.get("/wallets")
    assert resp.status_code == 200
    wallets = resp.json()
    assert [w["wallet_address"] for w in wallets] == [WALLET]
    assert wallets[0]["donation_percent"] == 10


def test_season_progress(client, store):
    asyncio.run(store.add_season_goal(WALLET, 20 * ONE_USDC, start_at=0, end_at=2**40))
    resp = client.get(f"/season/{WALLET.upper().replace('0X', '0x')}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["goal_amount"] == 20 * ONE_USDC
    assert body["total_donated"] == 0
    assert body["goal_met"] is False

    assert client.get(f"/season/{WALLET_2}").status_code == 404
    assert client.get("/season/0x1234").status_code == 400


def test_routes_without_service_are_unavailable():
    client = TestClient(create_app(None, run_worker=False))
    assert client.get("/wallets").status_code == 503
    assert client.get("/health").json() == {"status": "ok", "watcher": "disabled"}
