"""Clamped arbitrary-precision integer arithmetic.

Idle-game counters grow without bound, so every integer the simulation keeps
(matchsticks, lifetime production, units sold, auto-clicker clicks) passes
through these helpers. Results are clamped to ``[0, MAX_SAFE]``: overflow
saturates at ``MAX_SAFE``, underflow saturates at zero, and nothing here
raises on arithmetic edge cases.

Usage:
    from matchstick import bignum

    total = bignum.add(total, produced)
    if bignum.compare(holdings, amount) < 0:
        ...
"""

from __future__ import annotations

from typing import Any


# 2^1000 - 1, the ceiling for every counter in the game
MAX_SAFE = 2 ** 1000 - 1

# Tag used when integers are written to JSON (see persistence)
BIGINT_TAG = "bigint"


def clamp(value: int) -> int:
    """Clamp an integer into the safe range [0, MAX_SAFE]."""
    if value < 0:
        return 0
    if value > MAX_SAFE:
        return MAX_SAFE
    return value


def add(a: int, b: int) -> int:
    """Safe addition; saturates at MAX_SAFE."""
    return clamp(a + b)


def subtract(a: int, b: int) -> int:
    """Safe subtraction; never returns a negative value."""
    return clamp(a - b)


def multiply(a: int, b: int) -> int:
    """Safe multiplication; saturates at MAX_SAFE."""
    return clamp(a * b)


def divide(a: int, b: int) -> int:
    """Floor division. Division by zero returns 0 instead of raising."""
    if b == 0:
        return 0
    return clamp(a // b)


def power(base: int, exponent: int) -> int:
    """Safe exponentiation with early exit once MAX_SAFE is reached.

    Args:
        base: Non-negative integer base.
        exponent: Integer exponent. Negative exponents yield 0 (integer result).

    Returns:
        ``base ** exponent`` clamped to the safe range.
    """
    if exponent == 0:
        return 1
    if exponent < 0:
        return 0
    if base == 0:
        return 0
    if base == 1:
        return 1
    if exponent == 1:
        return clamp(base)

    result = clamp(base)
    for _ in range(exponent - 1):
        result = multiply(result, base)
        if result >= MAX_SAFE:
            return MAX_SAFE
    return result


def compare(a: int, b: int) -> int:
    """Three-way comparison: -1 if a < b, 1 if a > b, else 0."""
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def is_safe(value: Any) -> bool:
    """True iff value is an int (not bool) within [0, MAX_SAFE]."""
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return 0 <= value <= MAX_SAFE


def coerce(value: Any) -> int:
    """Convert a loosely-typed big integer into a native int.

    Accepts native ints, decimal strings, integral floats and the tagged
    ``{"__type": "bigint", "value": "..."}`` form written by persistence.

    Raises:
        ValueError: If the value cannot be read as an integer.
    """
    if isinstance(value, bool):
        raise ValueError(f"Boolean is not a valid integer amount: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, dict) and value.get("__type") == BIGINT_TAG:
        return coerce(value.get("value"))
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("n"):  # "123n" style literal
            text = text[:-1]
        try:
            return int(text, 10)
        except ValueError as e:
            raise ValueError(f"Invalid integer string '{value}'") from e
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError(f"Non-finite float is not a valid integer: {value}")
        if not value.is_integer():
            raise ValueError(f"Non-integral float is not a valid integer: {value}")
        return int(value)
    raise ValueError(f"Unsupported integer type: {type(value).__name__}")
