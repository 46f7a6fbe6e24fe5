"""
Utility functions for normalizing vendor telemetry values
"""
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional, Tuple


# Suffixes used by miner firmware when rendering difficulty ("56.4M", "3.31G", "1.2T").
# B is what some firmware prints for billions and means the same as G.
DIFFICULTY_MULTIPLIERS = {
    "K": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "B": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
}

_DIFFICULTY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)\s*([KMGBT])?\s*$", re.IGNORECASE)
_PROTOCOL_PREFIX = re.compile(r"^[a-z][a-z0-9+.\-]*://", re.IGNORECASE)


def parse_difficulty(value: Any) -> float:
    """
    Parse a difficulty that may be a number or a suffix-scaled string.

    Examples:
        - 1234 -> 1234.0
        - "100" -> 100.0
        - "56.4M" -> 56400000.0
        - "1.2t" -> 1200000000000.0
        - "", None, "garbage" -> 0.0
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    if not isinstance(value, str):
        return 0.0

    match = _DIFFICULTY_PATTERN.match(value)
    if match:
        number, suffix = match.groups()
        try:
            scaled = Decimal(number) * DIFFICULTY_MULTIPLIERS.get((suffix or "").upper(), Decimal(1))
        except InvalidOperation:
            return 0.0
        return float(scaled)

    # Plain numbers in other notations ("1e6", "-3")
    try:
        number = float(value.strip())
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def format_difficulty(value: Any) -> str:
    """Render a difficulty the way miner firmware does (T/G/M/K, two decimals)"""
    diff = parse_difficulty(value)
    if not diff:
        return "--"
    if diff >= 1e12:
        return f"{diff / 1e12:.2f}T"
    if diff >= 1e9:
        return f"{diff / 1e9:.2f}G"
    if diff >= 1e6:
        return f"{diff / 1e6:.2f}M"
    if diff >= 1e3:
        return f"{diff / 1e3:.2f}K"
    return f"{diff:g}"


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce a vendor number (possibly a numeric string) to float"""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def to_int(value: Any, default: int = 0) -> int:
    """Coerce a vendor counter (possibly a numeric string) to int"""
    number = to_float(value, float(default))
    return int(number)


def pick(data: Dict[str, Any], aliases: Iterable[str], default: Any = None) -> Any:
    """
    Return the value of the first alias key present in data.

    Firmware revisions spell the same field differently, so every
    multi-spelling field is looked up through an ordered alias table.
    """
    for key in aliases:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def split_host_port(url: Optional[str], default_port: Optional[int] = None) -> Tuple[str, Optional[int]]:
    """
    Split a pool URL into host and port after stripping the protocol prefix.

    Examples:
        - "stratum+tcp://pool.example.com:3333" -> ("pool.example.com", 3333)
        - "pool.example.com" -> ("pool.example.com", default_port)
    """
    if not url:
        return "", default_port

    rest = _PROTOCOL_PREFIX.sub("", url.strip())
    rest = rest.split("/", 1)[0]

    host, sep, port = rest.rpartition(":")
    if sep and port.isdigit():
        return host, int(port)
    return rest, default_port
