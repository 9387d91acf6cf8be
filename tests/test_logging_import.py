"""
Test that eon_logging can be imported without circular import and logger works.
"""

from __future__ import annotations

from backend_eon.eon_logging.logger import _normalize_event, _shorten_addresses


def test_logging_import():
    from backend_eon.eon_logging import bind_tx, bind_wallet, get_logger

    logger = get_logger("test")
    assert hasattr(logger, "info")
    assert hasattr(logger, "exception")
    logger.info("test_message", key="value")
    bind_wallet("0xabc").info("wallet_bound")
    bind_tx("0xdef").debug("tx_bound")


def test_event_name_becomes_event_type():
    out = _normalize_event(None, "info", {"event": "donation_queued", "amount": 1})
    assert out == {"event_type": "donation_queued", "amount": 1}


def test_console_shortens_hashes():
    full = "0x" + "ab" * 32
    out = _shorten_addresses(None, "info", {"tx_hash": full, "wallet_id": "0x" + "c" * 40})
    assert out["tx_hash"] == full[:10] + "..." + full[-6:]
    assert out["wallet_id"] == "0x" + "c" * 40
