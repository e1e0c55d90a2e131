# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Human-readable sizes and token amounts."""

from decimal import Decimal

__all__ = ["size_str", "fil_str", "ATTO_PER_FIL"]

ATTO_PER_FIL = 10 ** 18

_BYTE_SIZE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB")


def size_str(size: int) -> str:
    """Format a byte count with binary units and four significant digits.

    >>> size_str(1536)
    '1.5 KiB'
    """
    value = float(size)
    unit = 0
    while value >= 1024 and unit + 1 < len(_BYTE_SIZE_UNITS):
        value /= 1024
        unit += 1
    return f"{value:.4g} {_BYTE_SIZE_UNITS[unit]}"


def fil_str(atto: int) -> str:
    """Format an attoFIL amount as FIL without trailing zeros."""
    if atto == 0:
        return "0 FIL"
    amount = (Decimal(atto) / Decimal(ATTO_PER_FIL)).normalize()
    text = format(amount, "f")
    return f"{text} FIL"
