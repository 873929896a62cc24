"""
Fixed-point helpers for ledger arithmetic.

Prices, balances and supply amounts are Decimal throughout the engine.
Amounts handed to the ledger are quantized to the ledger unit with
banker's rounding (ROUND_HALF_EVEN).
"""

import math
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Union

Number = Union[Decimal, int, float, str]

ZERO = Decimal(0)
ONE = Decimal(1)

DEFAULT_LEDGER_DECIMALS = 8


def to_decimal(value: Number) -> Decimal:
    """
    Convert a number to Decimal without inheriting binary float noise.

    Floats go through str() so 1.05 becomes Decimal("1.05"), not
    Decimal("1.0500000000000000444...").
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise TypeError("bool is not a valid amount")
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-finite value: {value}")
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(value)
        except InvalidOperation as e:
            raise ValueError(f"invalid decimal value: {value!r}") from e

    if not result.is_finite():
        raise ValueError(f"non-finite value: {value}")
    return result


def ledger_unit(decimals: int = DEFAULT_LEDGER_DECIMALS) -> Decimal:
    """Smallest representable ledger amount, e.g. Decimal('0.00000001')"""
    return Decimal(1).scaleb(-decimals)


def quantize(amount: Number, decimals: int = DEFAULT_LEDGER_DECIMALS) -> Decimal:
    """Round an amount to the ledger unit using ROUND_HALF_EVEN"""
    return to_decimal(amount).quantize(ledger_unit(decimals), rounding=ROUND_HALF_EVEN)
