"""
Donation: per-transfer donation computation and season-goal capping.
"""

from backend_eon.donation.compute import DonationQuote, percent_of, quote_transfer
from backend_eon.donation.season_goals import SeasonGoalAdjuster, SeasonProgress, cap_donation

__all__ = [
    "DonationQuote",
    "SeasonGoalAdjuster",
    "SeasonProgress",
    "cap_donation",
    "percent_of",
    "quote_transfer",
]
