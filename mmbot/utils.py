"""
Utility functions for the mmbot market maker.
"""
import math
import time
from datetime import datetime
from typing import Any, Union

from .errors import InvalidInput

# Venue price range (YES-implied percent)
MIN_PRICE = 1
MAX_PRICE = 99


def now_ms() -> int:
    """Get current timestamp in milliseconds."""
    return int(time.time() * 1000)


def clip(x: float, lo: float, hi: float) -> float:
    """Clip value to [lo, hi] range."""
    return max(lo, min(hi, x))


def fmt(x: Union[int, float], nd: int = 4) -> str:
    """Format number with specified decimal places."""
    return f"{x:.{nd}f}"


def fmt_sats(x: Union[int, float]) -> str:
    """Format a sats amount with thousands separators."""
    return f"{int(x):,}"


def is_finite_number(x: Any) -> bool:
    """True for real ints/floats that are not NaN or infinite (bools excluded)."""
    if isinstance(x, bool) or not isinstance(x, (int, float)):
        return False
    return math.isfinite(x)


def require_finite(name: str, x: Any, minimum: float = 0.0) -> float:
    """Validate a numeric input, failing closed.

    Args:
        name: Field name used in the error message
        x: Value to check
        minimum: Lowest accepted value (inclusive)

    Returns:
        The value unchanged

    Raises:
        InvalidInput: If the value is not a finite number or is below minimum
    """
    if not is_finite_number(x):
        raise InvalidInput(f"{name} must be a finite number, got {x!r}")
    if x < minimum:
        raise InvalidInput(f"{name} must be >= {minimum}, got {x!r}")
    return x


def require_price(x: Any) -> int:
    """Validate a venue price (integer percent 1..99)."""
    if isinstance(x, bool) or not isinstance(x, int):
        raise InvalidInput(f"price must be an integer, got {x!r}")
    if not MIN_PRICE <= x <= MAX_PRICE:
        raise InvalidInput(f"price must be in [{MIN_PRICE}, {MAX_PRICE}], got {x}")
    return x


def paid_price(side: str, price: int) -> int:
    """Price actually paid per 100 units by the given side.

    Prices are quoted in the YES-implied convention, so a NO order at
    price p pays the complement.
    """
    if side == "yes":
        return price
    if side == "no":
        return 100 - price
    raise InvalidInput(f"side must be 'yes' or 'no', got {side!r}")


def order_cost(side: str, price: int, amount: int) -> int:
    """Sats locked by an order (also the refund when it is cancelled).

    NO: ceil(amount * (100 - price) / 100)
    YES: ceil(amount * price / 100)

    Integer arithmetic keeps the ceiling exact for large amounts.
    """
    p = paid_price(side, price)
    return -(-amount * p // 100)


def timestamp_to_date(ts_ms: int) -> str:
    """Convert Unix timestamp in milliseconds to readable date string."""
    dt = datetime.fromtimestamp(ts_ms / 1000)
    return dt.strftime("%Y-%m-%d %H:%M:%S")
