"""
Donation computation: percentage arithmetic, round-up rule, asset routing,
and the price oracle's fallback chain.
"""

from __future__ import annotations

import asyncio

import httpx

from backend_eon.database.models import AssetType, WalletConfiguration
from backend_eon.donation.compute import classify_asset, percent_of, quote_transfer
from backend_eon.pricing.oracle import PriceOracle
from backend_eon.watcher.events import CHANNEL_TOKEN, TransferEvent
from conftest import CONTRACT, ONE_ETH, ONE_USDC, TARGET, USDC, WALLET, WETH, FakeOracle, tx_hash


def _config(percent: int = 10) -> WalletConfiguration:
    return WalletConfiguration(
        config_id=1,
        wallet_address=WALLET,
        target_address=TARGET,
        donation_percent=percent,
        authorized_contract=CONTRACT,
    )


def _event(amount: int, token: str | None = None) -> TransferEvent:
    return TransferEvent(
        tx_hash=tx_hash(1),
        sender="0x" + "9" * 40,
        recipient=WALLET,
        amount=amount,
        token=token,
        block_time=1_700_000_000,
        channel=CHANNEL_TOKEN if token else "native",
    )


def test_percent_of_floors():
    assert percent_of(1000, 10, 100.0) == 100
    assert percent_of(999, 10, 99.9) == 99
    assert percent_of(5, 50, 2.5) == 2


def test_percent_of_rounds_up_to_one_unit():
    """Floor of zero with a positive estimate becomes the smallest unit."""
    assert percent_of(1, 1, 0.01) == 1
    assert percent_of(0, 10, 0.0004) == 1
    assert percent_of(0, 10, 0.0) == 0


def test_positive_transfer_always_donates_something():
    for percent in range(1, 101):
        for amount in (1, 2, 3, 7, 99):
            assert percent_of(amount, percent, amount * percent / 100) > 0


def test_classify_asset():
    assert classify_asset(None, USDC, WETH) is AssetType.NATIVE
    assert classify_asset(USDC.upper().replace("0X", "0x"), USDC, WETH) is AssetType.SETTLEMENT
    assert classify_asset(WETH, USDC, WETH) is AssetType.WRAPPED_NATIVE
    assert classify_asset("0x" + "1" * 40, USDC, WETH) is None


def test_quote_settlement_token_is_identity():
    quote = asyncio.run(
        quote_transfer(_event(80 * ONE_USDC, USDC), _config(10), FakeOracle(), settlement_token=USDC)
    )
    assert quote.asset_type is AssetType.SETTLEMENT
    assert quote.converted_amount == 80 * ONE_USDC
    assert quote.donation_amount == 8 * ONE_USDC


def test_quote_native_converts_through_oracle():
    """1 ETH at 3000 -> 3000 USDC; 10% -> 300 USDC."""
    quote = asyncio.run(
        quote_transfer(_event(ONE_ETH), _config(10), FakeOracle(3000.0), settlement_token=USDC, wrapped_native_token=WETH)
    )
    assert quote.asset_type is AssetType.NATIVE
    assert quote.converted_amount == 3000 * ONE_USDC
    assert quote.donation_amount == 300 * ONE_USDC


def test_quote_wrapped_native_uses_native_conversion():
    quote = asyncio.run(
        quote_transfer(_event(ONE_ETH // 2, WETH), _config(5), FakeOracle(2000.0), settlement_token=USDC, wrapped_native_token=WETH)
    )
    assert quote.asset_type is AssetType.WRAPPED_NATIVE
    assert quote.converted_amount == 1000 * ONE_USDC
    assert quote.donation_amount == 50 * ONE_USDC


def test_quote_dust_native_transfer_donates_one_unit():
    """1 wei converts to 0 base units but the estimate is positive."""
    quote = asyncio.run(quote_transfer(_event(1), _config(1), FakeOracle(), settlement_token=USDC))
    assert quote.converted_amount == 0
    assert quote.donation_amount == 1


def test_quote_unknown_token_is_ignored():
    quote = asyncio.run(
        quote_transfer(_event(10**18, "0x" + "1" * 40), _config(), FakeOracle(), settlement_token=USDC, wrapped_native_token=WETH)
    )
    assert quote is None


# -----------------------------------------------------------------------------
# PriceOracle
# -----------------------------------------------------------------------------


def _transport(coingecko=None, cryptocompare=None) -> httpx.MockTransport:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "api.coingecko.com":
            if coingecko is None:
                return httpx.Response(503)
            return httpx.Response(200, json={"ethereum": {"usd": coingecko}})
        if cryptocompare is None:
            return httpx.Response(500)
        return httpx.Response(200, json={"USD": cryptocompare})

    transport = httpx.MockTransport(handler)
    transport.calls = calls  # type: ignore[attr-defined]
    return transport


def test_oracle_uses_coingecko():
    oracle = PriceOracle(transport=_transport(coingecko=2500.5, cryptocompare=1.0))
    assert asyncio.run(oracle.current_price()) == 2500.5
    assert oracle.status()["source"] == "coingecko"


def test_oracle_falls_back_to_cryptocompare():
    oracle = PriceOracle(transport=_transport(coingecko=None, cryptocompare=2400.0))
    assert asyncio.run(oracle.current_price()) == 2400.0
    assert oracle.status()["source"] == "cryptocompare"


def test_oracle_uses_fallback_constant_before_any_success():
    oracle = PriceOracle(fallback_price=3000.0, transport=_transport())
    assert asyncio.run(oracle.current_price()) == 3000.0
    assert oracle.last_price is None


def test_oracle_keeps_last_good_price_when_upstream_fails():
    now = [0.0]
    transport = _transport(coingecko=2000.0)
    oracle = PriceOracle(stale_after_sec=180.0, transport=transport, clock=lambda: now[0])
    assert asyncio.run(oracle.current_price()) == 2000.0

    oracle._transport = _transport()
    now[0] = 500.0
    assert oracle.is_stale()
    assert asyncio.run(oracle.current_price()) == 2000.0


def test_oracle_fresh_price_is_not_refetched():
    now = [0.0]
    transport = _transport(coingecko=2000.0)
    oracle = PriceOracle(stale_after_sec=180.0, transport=transport, clock=lambda: now[0])
    asyncio.run(oracle.current_price())
    now[0] = 60.0
    asyncio.run(oracle.current_price())
    assert transport.calls == ["api.coingecko.com"]


def test_oracle_conversion_truncates_at_the_end():
    oracle = PriceOracle(transport=_transport(coingecko=3333.33))
    # 0.3 ETH * 3333.33 = 999.999 USDC exactly
    assert asyncio.run(oracle.to_settlement_units(3 * 10**17)) == 999_999_000
    assert asyncio.run(oracle.to_settlement_units(1)) == 0
    assert asyncio.run(oracle.estimate_settlement_units(1)) > 0
