# Overview: Integer money and exchange-rate helpers shared by purchasing and AP.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

# Rates are stored as Numeric(18, 6)
RATE_QUANT = Decimal("0.000001")


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def quantize_rate(rate: Decimal) -> Decimal:
    return Decimal(rate).quantize(RATE_QUANT, rounding=ROUND_HALF_UP)


def convert_to_base(amount: int, rate: Decimal) -> int:
    """
    Convert an integer amount in a foreign currency to store-base units.

    rate is store-base units per one unit of the foreign currency.
    """
    return round_half_up(Decimal(amount) * Decimal(rate))


def rate_to_str(rate: Decimal | None) -> str | None:
    if rate is None:
        return None
    return format(quantize_rate(rate).normalize(), "f")
