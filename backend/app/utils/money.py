"""Fixed-point money helpers.

Balances, stakes and payouts are ``decimal.Decimal`` inside the engine and
``bson.Decimal128`` at rest. Floats never touch a balance.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from bson.decimal128 import Decimal128

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Coerce a stored or submitted amount into a Decimal.

    Floats go through ``str`` so 1.9 stays 1.9 instead of 1.899999...
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise InvalidOperation(f"not an amount: {value!r}")
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(str(value).strip())


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: Any) -> Decimal:
    return quantize_money(to_decimal(value))


def to_decimal128(value: Any) -> Decimal128:
    return Decimal128(quantize_money(to_decimal(value)))


def price128(value: Any) -> Decimal128:
    """Prices keep their own precision (e.g. 1.909), only money is rounded."""
    return Decimal128(to_decimal(value))


def money_str(value: Any) -> str:
    return f"{to_money(value):.2f}"
