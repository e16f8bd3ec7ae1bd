"""
Conversion between BTC decimal strings and integer satoshis.

String arithmetic only; floats never touch an amount.
"""

from __future__ import annotations

from utxowallet.constants import BTC_DECIMALS, SATS_PER_BTC


def btc_to_sats(amount: str) -> int:
    """
    Parse a BTC amount such as ``"0.0015"`` into satoshis.

    Raises:
        ValueError: negative, malformed, or more than 8 decimal places
    """
    text = amount.strip()
    if not text or text.startswith(("-", "+")):
        raise ValueError(f"Invalid BTC amount: {amount!r}")

    whole, _, fraction = text.partition(".")
    if not whole:
        whole = "0"
    if not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"Invalid BTC amount: {amount!r}")
    if len(fraction) > BTC_DECIMALS:
        raise ValueError(f"BTC amount has more than {BTC_DECIMALS} decimal places: {amount!r}")

    return int(whole) * SATS_PER_BTC + int(fraction.ljust(BTC_DECIMALS, "0") or "0")


def sats_to_btc(sats: int) -> str:
    """Format satoshis as BTC with trailing zeros trimmed, e.g. 150000 -> "0.0015"."""
    sign = "-" if sats < 0 else ""
    whole, remainder = divmod(abs(sats), SATS_PER_BTC)
    if remainder == 0:
        return f"{sign}{whole}"
    fraction = str(remainder).rjust(BTC_DECIMALS, "0").rstrip("0")
    return f"{sign}{whole}.{fraction}"
