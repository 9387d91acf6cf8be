"""
Core module: exception taxonomy and typed result contracts.
"""

from backend_eon.core.exceptions import (  # noqa: F401
    ConfigurationError,
    DataError,
    DuplicateSettlementError,
    EonError,
    ExecutorNotAuthorizedError,
    InsufficientAllowanceError,
    PreconditionError,
    RateLimitError,
    is_rate_limit_error,
)
from backend_eon.core.results import DrainReport, GoalAdjustment, GroupOutcome  # noqa: F401
