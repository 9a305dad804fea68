"""Fixed-point helpers for 8-decimal monetary values.

Every price, collateral amount and debt amount in the engine is an ``int``
scaled by ``10 ** NUM_DECIMALS``. Ratios and percentages are basis points.
Floats never enter the arithmetic; they are only accepted by ``to_fixed`` at
the adapter boundary, where JSON payloads may carry them.

.. code-block:: python

    >>> to_fixed("1000.5")
    100050000000
    >>> format_fixed(mul_fixed(to_fixed("1.5"), to_fixed("2")))
    '3.00000000'
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

NUM_DECIMALS = 8
SCALE = 10**NUM_DECIMALS

# 10_000 basis points == 100%
BPS = 10_000

_QUANTUM = Decimal(1).scaleb(-NUM_DECIMALS)


def to_fixed(value: str | int | float | Decimal) -> int:
    """Parse a numeric value into an 8-decimal fixed-point integer.

    Digits beyond the eighth decimal are truncated.

    :param value: Numeric string, int, Decimal, or float from a JSON payload.
    :returns: Scaled integer.
    :raises ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a numeric value: {value!r}")
    try:
        if isinstance(value, float):
            # repr() gives the shortest round-tripping form, so 0.1 -> "0.1"
            dec = Decimal(repr(value))
        else:
            dec = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a numeric value: {value!r}") from e

    if not dec.is_finite():
        raise ValueError(f"Not a finite value: {value!r}")

    try:
        # quantize() signals InvalidOperation past the context precision
        truncated = dec.quantize(_QUANTUM, rounding=ROUND_DOWN)
    except InvalidOperation as e:
        raise ValueError(f"Value out of range: {value!r}") from e
    return int(truncated.scaleb(NUM_DECIMALS))


def format_fixed(value: int) -> str:
    """Render a fixed-point integer with all 8 decimals."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), SCALE)
    return f"{sign}{whole}.{frac:0{NUM_DECIMALS}d}"


def mul_fixed(a: int, b: int) -> int:
    """Multiply two fixed-point values, rounding toward zero."""
    return a * b // SCALE


def div_fixed(a: int, b: int) -> int:
    """Divide two fixed-point values, rounding down.

    :raises ZeroDivisionError: If ``b`` is zero.
    """
    return a * SCALE // b


def apply_bps(value: int, bps: int) -> int:
    """Scale a value by a basis-point factor, rounding down."""
    return value * bps // BPS


def ceil_div(a: int, b: int) -> int:
    """Integer division rounding toward positive infinity."""
    return -(-a // b)
