"""
In-memory projection of active wallet configurations.

Refreshed on an interval from the store. One configuration per wallet: rows
come newest first and the first valid row per lowercase address wins. A
failed refresh keeps the previous map so detection continues on stale but
valid data.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Iterable

from backend_eon.core.exceptions import DataError
from backend_eon.database.models import WalletConfiguration
from backend_eon.database.store import Store
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)


def validate_configuration(config: WalletConfiguration) -> WalletConfiguration:
    """Raise DataError if config cannot drive a donation."""
    if not config.wallet_address or len(config.wallet_address) != 42:
        raise DataError(f"invalid wallet address {config.wallet_address!r}")
    if not config.target_address or len(config.target_address) != 42:
        raise DataError(f"invalid target address {config.target_address!r}")
    if not config.authorized_contract:
        raise DataError("no authorized contract and no default contract configured")
    if not 1 <= config.donation_percent <= 100:
        raise DataError(f"donation percent {config.donation_percent} outside 1-100")
    return config


class WalletRegistry:
    def __init__(self, store: Store, default_contract: str = "") -> None:
        self._store = store
        self._default_contract = default_contract
        self._by_wallet: dict[str, WalletConfiguration] = {}
        self._refreshed_at: float | None = None

    def __len__(self) -> int:
        return len(self._by_wallet)

    @property
    def refreshed_at(self) -> float | None:
        return self._refreshed_at

    async def refresh(self) -> int:
        """Reload from the store. Returns the number of watched wallets."""
        try:
            configs = await self._store.list_active_configurations(self._default_contract)
        except Exception as e:
            logger.exception("registry_refresh_failed", error=str(e), kept=len(self._by_wallet))
            return len(self._by_wallet)

        by_wallet: dict[str, WalletConfiguration] = {}
        skipped = 0
        for config in configs:
            if config.wallet_address in by_wallet:
                continue
            try:
                by_wallet[config.wallet_address] = validate_configuration(config)
            except DataError as e:
                skipped += 1
                logger.warning(
                    "registry_configuration_skipped",
                    config_id=config.config_id,
                    wallet_id=config.wallet_address,
                    error=str(e),
                )
        added = set(by_wallet) - set(self._by_wallet)
        removed = set(self._by_wallet) - set(by_wallet)
        self._by_wallet = by_wallet
        self._refreshed_at = time.time()
        if added or removed:
            logger.info(
                "registry_refreshed",
                wallet_count=len(by_wallet),
                added=len(added),
                removed=len(removed),
                skipped=skipped,
            )
        return len(by_wallet)

    def get(self, wallet_address: str) -> WalletConfiguration | None:
        return self._by_wallet.get((wallet_address or "").lower())

    def contains(self, wallet_address: str) -> bool:
        return (wallet_address or "").lower() in self._by_wallet

    def addresses(self) -> list[str]:
        return list(self._by_wallet)

    def configurations(self) -> list[WalletConfiguration]:
        return list(self._by_wallet.values())

    async def record_donation(self, wallet_addresses: Iterable[str], at: int | None = None) -> None:
        """Set last_donation_at for each wallet, in memory and in the store."""
        at = at if at is not None else int(time.time())
        config_ids: list[int] = []
        for wallet in {w.lower() for w in wallet_addresses}:
            config = self._by_wallet.get(wallet)
            if config is None:
                continue
            self._by_wallet[wallet] = replace(config, last_donation_at=at)
            config_ids.append(config.config_id)
        if config_ids:
            await self._store.touch_last_donation(config_ids, at)
