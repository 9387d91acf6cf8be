"""
Donation computation.

Settlement-token transfers are taken as-is; native and wrapped-native
amounts are converted through the price oracle. The donation is
floor(converted * percent / 100), bumped to 1 base unit when that floors to
zero but the floating estimate is positive, so a positive transfer at a
positive percent always donates something.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from backend_eon.database.models import AssetType, WalletConfiguration
from backend_eon.eon_logging import get_logger
from backend_eon.watcher.events import TransferEvent

logger = get_logger(__name__)


class NativeConverter(Protocol):
    async def to_settlement_units(self, native_amount: int) -> int: ...

    async def estimate_settlement_units(self, native_amount: int) -> float: ...


@dataclass(frozen=True)
class DonationQuote:
    asset_type: AssetType
    original_amount: int
    converted_amount: int
    """Transfer value in settlement base units."""
    donation_amount: int
    percent: int


def percent_of(amount: int, percent: int, estimate: float) -> int:
    """
    floor(amount * percent / 100), or 1 if that is 0 while estimate > 0.

    estimate is the floating value of the same product.
    """
    donation = amount * percent // 100
    if donation == 0 and estimate > 0:
        return 1
    return donation


def classify_asset(token: str | None, settlement_token: str, wrapped_native_token: str) -> AssetType | None:
    if token is None:
        return AssetType.NATIVE
    token = token.lower()
    if settlement_token and token == settlement_token.lower():
        return AssetType.SETTLEMENT
    if wrapped_native_token and token == wrapped_native_token.lower():
        return AssetType.WRAPPED_NATIVE
    return None


async def quote_transfer(
    event: TransferEvent,
    config: WalletConfiguration,
    converter: NativeConverter,
    *,
    settlement_token: str,
    wrapped_native_token: str = "",
) -> DonationQuote | None:
    """Donation for one transfer, or None for tokens outside the allow-list."""
    asset = classify_asset(event.token, settlement_token, wrapped_native_token)
    if asset is None:
        logger.info(
            "donation_token_ignored",
            tx_hash=event.tx_hash,
            wallet_id=event.recipient,
            token=event.token,
        )
        return None

    if asset is AssetType.SETTLEMENT:
        converted = event.amount
        estimate = float(event.amount)
    else:
        converted = await converter.to_settlement_units(event.amount)
        estimate = await converter.estimate_settlement_units(event.amount)

    percent = config.donation_percent
    donation = percent_of(converted, percent, estimate * percent / 100)
    logger.debug(
        "donation_quoted",
        tx_hash=event.tx_hash,
        wallet_id=config.wallet_address,
        asset_type=asset.value,
        converted=converted,
        donation=donation,
        percent=percent,
    )
    return DonationQuote(
        asset_type=asset,
        original_amount=event.amount,
        converted_amount=converted,
        donation_amount=donation,
        percent=percent,
    )
