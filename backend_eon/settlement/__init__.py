"""
Settlement: rate-limit retry, single-flight queue, batched chain submitter.
"""

from backend_eon.settlement.queue import SettlementQueue
from backend_eon.settlement.retry import RetryPolicy, with_rate_limit_retry
from backend_eon.settlement.submitter import ChainSubmitter, group_by_contract

__all__ = [
    "ChainSubmitter",
    "RetryPolicy",
    "SettlementQueue",
    "group_by_contract",
    "with_rate_limit_retry",
]
