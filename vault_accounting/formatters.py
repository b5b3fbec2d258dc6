"""Formatting and conversion utilities."""

from decimal import Decimal

from vault_accounting.constants import WAD

WEI_PER_ETH = Decimal(WAD)


def as_int(value, *, default: int = 0) -> int:
    """Convert value to int, handling various types."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        v = value.strip()
        if v.startswith("0x"):
            return int(v, 16)
        return int(v)
    return int(value)


def normalize_hex_str(value) -> str:
    """Normalize hex string to 0x-prefixed format."""
    if isinstance(value, (bytes, bytearray)):
        return f"0x{value.hex()}"
    if hasattr(value, "hex") and not isinstance(value, str):
        hex_str = value.hex()
        return hex_str if hex_str.startswith("0x") else f"0x{hex_str}"
    s = str(value).strip()
    if s.lower().startswith("0x"):
        return f"0x{s[2:]}"
    return f"0x{s}"


def normalize_address(value) -> str:
    """Lowercase 0x-prefixed address, used as the entity key everywhere."""
    return normalize_hex_str(value).lower()


def format_eth(value_wei: int, *, decimals: int = 9, approx: bool = False) -> str:
    """Format wei value as ETH."""
    eth = Decimal(value_wei) / WEI_PER_ETH
    s = f"{eth:.{decimals}f}".rstrip("0").rstrip(".")
    prefix = "~" if approx else ""
    return f"{prefix}{s} ETH"


def format_apy(apy: Decimal, *, decimals: int = 2) -> str:
    """Format APY percent value."""
    return f"{apy:.{decimals}f}%"


def short_address(address: str) -> str:
    return f"{address[:10]}...{address[-6:]}"
