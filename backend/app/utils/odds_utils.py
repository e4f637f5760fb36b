"""Price format helpers for provider payloads."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from app.utils.money import to_decimal


def american_to_decimal(price: Any) -> Decimal | None:
    """Convert an American moneyline price (-150, +130) into decimal odds."""
    try:
        value = to_decimal(price)
    except (InvalidOperation, ValueError, TypeError):
        return None
    if value == 0:
        return None
    if value > 0:
        result = Decimal(1) + value / Decimal(100)
    else:
        result = Decimal(1) + Decimal(100) / -value
    return result.quantize(Decimal("0.0001"))


def normalize_price(price: Any, odds_format: str) -> float | None:
    """Return a decimal price as float for storage in the match odds document."""
    if price is None:
        return None
    if str(odds_format).strip().lower() == "american":
        converted = american_to_decimal(price)
        return float(converted) if converted is not None else None
    try:
        return float(price)
    except (TypeError, ValueError):
        return None
