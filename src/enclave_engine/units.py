"""Conversions between decimal amounts, base units and JSON-RPC quantities."""
from __future__ import annotations

import re

from .exceptions import MalformedInputError

ETH_DECIMALS = 18
USDC_DECIMALS = 6

_AMOUNT_RE = re.compile(r"^(\d*)(?:\.(\d*))?$")


def parse_units(amount: str, decimals: int) -> int:
    """Convert a decimal string to base units.

    Digits beyond ``decimals`` are truncated, never rounded:
    ``parse_units("1.1234567", 6) == 1_123_456``.
    """
    text = amount.strip()
    match = _AMOUNT_RE.match(text)
    if not text or text == "." or match is None:
        raise MalformedInputError(f"Invalid amount: {amount!r}", field="amount")
    whole, fraction = match.group(1) or "0", (match.group(2) or "")[:decimals]
    return int(whole) * 10**decimals + int(fraction.ljust(decimals, "0") or "0")


def format_units(value: int, decimals: int, precision: int = 4) -> str:
    """Render base units as a decimal string.

    Whole amounts print without a fraction. Otherwise the fraction is
    truncated to ``precision`` digits and kept zero-padded, so 10**17 wei
    renders as ``"0.1000"``.
    """
    if value < 0:
        raise MalformedInputError(f"Negative amount: {value}", field="amount")
    if value == 0:
        return "0"
    whole, remainder = divmod(value, 10**decimals)
    if remainder == 0:
        return str(whole)
    fraction = str(remainder).rjust(decimals, "0")[:precision]
    if precision <= 0 or not fraction.strip("0"):
        return str(whole)
    return f"{whole}.{fraction}"


def format_ether(wei: int, precision: int = 4) -> str:
    return format_units(wei, ETH_DECIMALS, precision)


def parse_ether(amount: str) -> int:
    return parse_units(amount, ETH_DECIMALS)


def parse_quantity(value: str | int | None, field: str | None = None) -> int:
    """Parse a JSON-RPC quantity (``"0x1a"``); ``"0x"`` and ``None`` mean zero."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise MalformedInputError(f"Invalid quantity: {value!r}", field=field)
    if isinstance(value, int):
        if value < 0:
            raise MalformedInputError(f"Negative quantity: {value}", field=field)
        return value
    raw = value.strip()
    if raw.startswith(("0x", "0X")):
        raw = raw[2:]
    if raw == "":
        return 0
    try:
        return int(raw, 16)
    except ValueError:
        raise MalformedInputError(f"Invalid hex quantity: {value!r}", field=field) from None


def to_quantity(value: int) -> str:
    """Encode a non-negative integer as a minimal JSON-RPC quantity."""
    if value < 0:
        raise MalformedInputError(f"Negative quantity: {value}")
    return hex(value)
