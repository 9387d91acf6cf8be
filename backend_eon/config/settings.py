"""
Application settings.

A frozen Settings dataclass built from the environment. Required values are
only enforced by require_chain(), called when the watcher service is
bootstrapped, so importing modules and running tests never needs a full .env.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from backend_eon.config.env import env_float, env_int, env_str, load_eon_env
from backend_eon.core.exceptions import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///eon_watcher.db"
EVENT_SOURCE_POLL = "poll"
EVENT_SOURCE_PUSH = "push"


@dataclass(frozen=True)
class Settings:
    """Typed service configuration. Field names mirror the environment variables."""

    rpc_url: str = ""
    operator_private_key: str = ""
    default_contract: str = ""
    settlement_token: str = ""
    wrapped_native_token: str = ""
    network: str = "base"
    database_url: str = DEFAULT_DATABASE_URL
    event_source_mode: str = EVENT_SOURCE_POLL

    registry_refresh_sec: float = 30.0
    queue_drain_sec: float = 10.0
    reconcile_poll_sec: float = 15.0
    season_sweep_sec: float = 21600.0
    max_blocks_per_poll: int = 10
    dedup_capacity: int = 5000

    retry_attempts: int = 5
    retry_base_delay_sec: float = 1.0
    receipt_timeout_sec: float = 120.0

    price_refresh_sec: float = 60.0
    price_stale_sec: float = 180.0
    fallback_native_price: float = 3000.0
    settlement_decimals: int = 6
    native_decimals: int = 18

    pending_stale_sec: int = 900
    pending_recovery_sec: float = 60.0

    neynar_api_key: str = ""
    notification_target_url: str = "https://eon-miniapp.vercel.app"
    moralis_webhook_secret: str = ""

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    def require_chain(self) -> None:
        """Raise ConfigurationError if anything needed to talk to the chain is missing."""
        missing = [
            name
            for name, value in (
                ("EON_RPC_URL", self.rpc_url),
                ("EON_OPERATOR_PRIVATE_KEY", self.operator_private_key),
                ("EON_CONTRACT_ADDRESS", self.default_contract),
                ("USDC_CONTRACT_ADDRESS", self.settlement_token),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"missing required settings: {', '.join(missing)}")
        if self.event_source_mode not in (EVENT_SOURCE_POLL, EVENT_SOURCE_PUSH):
            raise ConfigurationError(
                f"EVENT_SOURCE_MODE must be {EVENT_SOURCE_POLL!r} or {EVENT_SOURCE_PUSH!r}"
            )


def load_settings() -> Settings:
    """Build Settings from the current environment (after loading .env)."""
    load_eon_env()
    return Settings(
        rpc_url=env_str("EON_RPC_URL", "ALCHEMY_BASE_RPC_URL", "BASE_RPC_URL"),
        operator_private_key=env_str("EON_OPERATOR_PRIVATE_KEY", "PRIVATE_KEY"),
        default_contract=env_str("EON_CONTRACT_ADDRESS").lower(),
        settlement_token=env_str("USDC_CONTRACT_ADDRESS").lower(),
        wrapped_native_token=env_str("WETH_CONTRACT_ADDRESS").lower(),
        network=env_str("EON_NETWORK", default="base"),
        database_url=env_str("DATABASE_URL", default=DEFAULT_DATABASE_URL),
        event_source_mode=env_str("EVENT_SOURCE_MODE", default=EVENT_SOURCE_POLL).lower(),
        registry_refresh_sec=env_float("REGISTRY_REFRESH_SEC", 30.0),
        queue_drain_sec=env_float("QUEUE_DRAIN_SEC", 10.0),
        reconcile_poll_sec=env_float("RECONCILE_POLL_SEC", 15.0),
        season_sweep_sec=env_float("SEASON_SWEEP_SEC", 21600.0),
        max_blocks_per_poll=max(1, env_int("MAX_BLOCKS_PER_POLL", 10)),
        dedup_capacity=max(1, env_int("DEDUP_CAPACITY", 5000)),
        retry_attempts=max(1, env_int("RETRY_ATTEMPTS", 5)),
        retry_base_delay_sec=env_float("RETRY_BASE_DELAY_SEC", 1.0),
        receipt_timeout_sec=env_float("RECEIPT_TIMEOUT_SEC", 120.0),
        price_refresh_sec=env_float("PRICE_REFRESH_SEC", 60.0),
        price_stale_sec=env_float("PRICE_STALE_SEC", 180.0),
        fallback_native_price=env_float("FALLBACK_NATIVE_PRICE", 3000.0),
        settlement_decimals=env_int("SETTLEMENT_DECIMALS", 6),
        native_decimals=env_int("NATIVE_DECIMALS", 18),
        pending_stale_sec=env_int("PENDING_STALE_SEC", 900),
        pending_recovery_sec=env_float("PENDING_RECOVERY_SEC", 60.0),
        neynar_api_key=env_str("NEYNAR_API_KEY"),
        notification_target_url=env_str(
            "NOTIFICATION_TARGET_URL", default="https://eon-miniapp.vercel.app"
        ),
        moralis_webhook_secret=env_str("MORALIS_WEBHOOK_SECRET"),
        api_host=env_str("API_HOST", default="0.0.0.0"),
        api_port=env_int("API_PORT", 8000),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return load_settings()
