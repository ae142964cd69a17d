from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional

from copybot.core.models import Side

MIN_PRICE = Decimal("0")
MAX_PRICE = Decimal("1")
SIZE_QUANTUM = Decimal("0.01")


def apply_slippage(price: float, side: Side, slippage_percent: float) -> float:
    """BUY prices are inflated and SELL prices deflated to bias toward an immediate fill."""
    factor = slippage_percent / 100.0
    if side == Side.BUY:
        return price * (1 + factor)
    return price * (1 - factor)


def round_to_tick(price: float, tick_size: float) -> Decimal:
    """Nearest-tick rounding. Ties round away from zero."""
    tick = Decimal(str(tick_size))
    if tick <= 0:
        raise ValueError(f"tick size must be positive, got {tick_size}")
    ticks = (Decimal(str(price)) / tick).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return ticks * tick


def is_valid_price(price: Decimal) -> bool:
    """Venue prices live in the half-open interval (0, 1]."""
    return MIN_PRICE < price <= MAX_PRICE


def normalize_price(price: float, side: Side, slippage_percent: float, tick_size: float) -> Optional[float]:
    """
    Slippage first, then tick rounding, then bounds.

    Returns None when the result is outside (0, 1].
    """
    adjusted = apply_slippage(price, side, slippage_percent)
    rounded = round_to_tick(adjusted, tick_size)
    if not is_valid_price(rounded):
        return None
    return float(rounded)


def floor_size(size: float) -> float:
    """Floors share sizes to two decimals. Never rounds up."""
    return float(Decimal(str(size)).quantize(SIZE_QUANTUM, rounding=ROUND_DOWN))
