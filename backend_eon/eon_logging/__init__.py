"""
Structured logging for the EON watcher.

JSON logs with timestamp, event_type, and wallet_id / tx_hash where relevant.
Use get_logger() in all modules.
"""

from backend_eon.eon_logging.logger import bind_tx, bind_wallet, get_logger

__all__ = ["bind_tx", "bind_wallet", "get_logger"]
