"""Display helpers for large counters (K, M, B, ... suffixes)."""

from __future__ import annotations

import re


NUMBER_SUFFIXES = [
    "", "K", "M", "B", "T", "Qa", "Qi", "Sx", "Sp", "Oc", "No", "Dc",
    "UDc", "DDc", "TDc", "QaDc", "QiDc", "SxDc", "SpDc", "OcDc", "NoDc", "Vg",
    "UVg", "DVg", "TVg", "QaVg", "QiVg", "SxVg", "SpVg", "OcVg", "NoVg", "Tg",
]

SCIENTIFIC_THRESHOLD = 1e100

_FORMATTED_RE = re.compile(r"^(-?\d+(?:\.\d+)?)\s*([A-Za-z]*)$")


def _to_float(value: int | float) -> float:
    # Counters are clamped to 2^1000 - 1 which still fits in a double
    try:
        return float(value)
    except OverflowError:
        return float("inf")


def format_number(value: int | float, precision: int = 2, force_scientific: bool = False) -> str:
    """Format a number with a magnitude suffix, e.g. 1500 -> '1.5K'."""
    if value == 0:
        return "0"

    number = _to_float(value)
    negative = number < 0
    magnitude = abs(number)
    sign = "-" if negative else ""

    if force_scientific or magnitude >= SCIENTIFIC_THRESHOLD:
        return f"{sign}{magnitude:.{precision}e}"

    index = 0
    while magnitude >= 1000 and index < len(NUMBER_SUFFIXES) - 1:
        magnitude /= 1000
        index += 1

    # Round then drop trailing zeros ("1.50" -> "1.5")
    trimmed = f"{round(magnitude, precision):.{precision}f}".rstrip("0").rstrip(".")
    return f"{sign}{trimmed}{NUMBER_SUFFIXES[index]}"


def format_compact(value: int | float) -> str:
    return format_number(value, 1)


def format_exact(value: int | float) -> str:
    """Full precision with thousands separators."""
    return f"{value:,}"


def parse_formatted_number(formatted: str) -> float | None:
    """Parse a string produced by format_number back to a number."""
    if not formatted or not isinstance(formatted, str):
        return None

    text = formatted.strip()
    if text == "0":
        return 0.0

    if "e" in text or "E" in text:
        try:
            return float(text)
        except ValueError:
            return None

    match = _FORMATTED_RE.match(text)
    if not match:
        return None
    number_part, suffix = match.groups()
    if suffix not in NUMBER_SUFFIXES:
        return None
    return float(number_part) * 1000 ** NUMBER_SUFFIXES.index(suffix)


def get_percentage(current: int | float, target: int | float) -> float:
    """Percentage of target reached, capped at 100."""
    if target == 0:
        return 0.0
    return min(100.0, _to_float(current) / _to_float(target) * 100)


def format_percentage(percentage: float, precision: int = 1) -> str:
    return f"{percentage:.{precision}f}%"


def calculate_rate(amount: int | float, time_ms: float) -> float:
    """Rate per second for an amount accumulated over time_ms."""
    if time_ms <= 0:
        return 0.0
    return _to_float(amount) / (time_ms / 1000)


def format_rate(rate: float) -> str:
    if rate == 0:
        return "0/sec"
    if rate < 0.01:
        return format_number(rate * 60, 2) + "/min"
    if rate < 1:
        return format_number(rate, 2) + "/sec"
    return format_number(rate, 1) + "/sec"
