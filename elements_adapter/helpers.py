"""Amount conversion helpers.

Elements RPC speaks 8-decimal coin amounts while Esplora and the rest of
the system use integer satoshis.
"""

from __future__ import annotations

from decimal import Decimal

SATS_PER_COIN = 100_000_000
_EIGHT_PLACES = Decimal("0.00000001")


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to an exact 8-decimal coin amount."""
    return (Decimal(sats) / SATS_PER_COIN).quantize(_EIGHT_PLACES)


def btc_to_sats(amount: Decimal | float | str) -> int:
    """Convert a coin amount to satoshis.

    Raises:
        ValueError: If the amount has sub-satoshi precision.
    """
    value = Decimal(str(amount)) * SATS_PER_COIN
    if value != value.to_integral_value():
        raise ValueError(f"Amount {amount} has sub-satoshi precision")
    return int(value)
