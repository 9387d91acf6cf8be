"""
Pricing: native-coin price oracle with upstream fallback and staleness.
"""

from backend_eon.pricing.oracle import PriceOracle

__all__ = ["PriceOracle"]
