"""Utility helpers for cross-module reuse."""

import math
from decimal import Decimal
from typing import Any, Dict


def get_order_id(order: Dict[str, Any] | None) -> str:
    """
    Extract an exchange order id from common ccxt/exchange shapes.

    Handles unified 'id', raw 'orderId' and nested info fields.
    """
    if not order:
        return ""
    info = order.get("info") or {}
    return str(
        order.get("id")
        or order.get("orderId")
        or order.get("order_id")
        or info.get("orderId")
        or info.get("order_id")
        or ""
    )


def decimals_from_step(step: float) -> int:
    """Number of decimals implied by a lot step or tick size (0.001 -> 3)."""
    exponent = Decimal(str(step)).normalize().as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0


def round_to_step(value: float, step: float) -> float:
    """Floor a quantity/price onto the exchange grid and strip float noise."""
    if step <= 0:
        return value
    places = decimals_from_step(step)
    # Nudge before flooring so 0.3 / 0.1 does not land on 2.9999999
    steps = math.floor(value / step + 1e-9)
    return round(steps * step, places)


def round_to_tick(price: float, tick: float) -> float:
    """Snap a price to the nearest tick."""
    if tick <= 0:
        return price
    return round(round(price / tick) * tick, decimals_from_step(tick))
