"""
Validation functions for market/price data at ingestion boundaries.

Provides validate_price(), validate_size() and validate_odds() functions
that raise InvalidMarketData (a ValueError) on invalid data (NaN, Inf,
negative, out-of-range).

Import and call these at every float() conversion from external data.
"""

from __future__ import annotations

import math


class InvalidMarketData(ValueError):
    """External market data failed validation (bad odds, missing outcome, ...)."""


def to_float(raw: object, context: str = "value") -> float:
    """Convert a raw JSON scalar (number or numeric string) to float."""
    if raw is None or raw == "":
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError) as e:
        raise InvalidMarketData(f"Invalid {context}: {raw!r} is not numeric") from e


def validate_price(p: float, context: str = "price") -> float:
    """
    Validate a price value is within [0.0, 1.0] and finite.

    Args:
        p: Price value to validate (probability units).
        context: Description of what this value represents (for error messages).

    Returns:
        The validated price value.

    Raises:
        InvalidMarketData: If price is NaN, infinite, negative, or > 1.0.
    """
    if math.isnan(p):
        raise InvalidMarketData(f"Invalid {context}: NaN")
    if math.isinf(p):
        raise InvalidMarketData(f"Invalid {context}: Inf")
    if p < 0.0:
        raise InvalidMarketData(f"Invalid {context}: negative value {p}")
    if p > 1.0:
        raise InvalidMarketData(f"Invalid {context}: {p} out of range [0.0, 1.0]")
    return p


def validate_odds(p: float, context: str = "odds") -> float:
    """
    Validate tradeable odds: strictly positive and at most 1.0.

    A zero price means there is nothing to buy at, so it is rejected here
    even though validate_price() accepts it.
    """
    validate_price(p, context=context)
    if p <= 0.0:
        raise InvalidMarketData(f"Invalid {context}: {p} out of range (0.0, 1.0]")
    return p


def validate_size(s: float, context: str = "size") -> float:
    """
    Validate a size/quantity value is non-negative and finite.

    Raises:
        InvalidMarketData: If size is NaN, infinite, or negative.
    """
    if math.isnan(s):
        raise InvalidMarketData(f"Invalid {context}: NaN")
    if math.isinf(s):
        raise InvalidMarketData(f"Invalid {context}: Inf")
    if s < 0.0:
        raise InvalidMarketData(f"Invalid {context}: negative value {s}")
    return s
