"""Numeric coercion and aggregation helpers shared by the merge pipeline."""

from __future__ import annotations

import math
from typing import Any, Callable, Iterable, Mapping, TypeVar

T = TypeVar("T")


def coerce_float(value: Any) -> float | None:
    """Return ``value`` as a finite float, or ``None`` when that is impossible.

    Numeric strings are accepted (providers frequently quote numbers). ``bool``
    is rejected even though it subclasses ``int``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            numeric = float(text)
        except (TypeError, ValueError):
            return None
    else:
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def first_present(*values: T | None) -> T | None:
    """Return the first value that is not ``None``."""

    for value in values:
        if value is not None:
            return value
    return None


def sum_field(items: Iterable[T], picker: Callable[[T], Any]) -> float:
    total = 0.0
    for item in items:
        value = coerce_float(picker(item))
        if value is not None:
            total += value
    return total


def liquidity_weighted(pools: Iterable[Any], field: str) -> float | None:
    """Average ``field`` across ``pools`` weighted by ``liquidity_usd``.

    Pools without a positive liquidity weight or without a value are skipped.
    """

    numerator = 0.0
    denominator = 0.0
    for pool in pools:
        if isinstance(pool, Mapping):
            weight = coerce_float(pool.get("liquidity_usd"))
            value = coerce_float(pool.get(field))
        else:
            weight = coerce_float(getattr(pool, "liquidity_usd", None))
            value = coerce_float(getattr(pool, field, None))
        if weight is None or weight <= 0 or value is None:
            continue
        numerator += value * weight
        denominator += weight
    if denominator <= 0:
        return None
    return numerator / denominator


def to_native(usd: Any, rate: Any) -> float | None:
    """Convert a USD figure into native units using ``rate`` USD per unit."""

    amount = coerce_float(usd)
    divisor = coerce_float(rate)
    if amount is None or divisor is None or divisor == 0:
        return None
    return amount / divisor


def pct_change(old: float | None, new: float | None) -> float:
    """Absolute fractional change from ``old`` to ``new``.

    Unknown operands yield ``inf``. A zero baseline has no meaningful ratio, so
    the absolute difference is returned instead.
    """

    if old is None or new is None:
        return math.inf
    if old == 0:
        return abs(new - old)
    return abs(new - old) / abs(old)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff ``base * 2**attempt`` bounded by ``cap``."""

    if attempt < 0:
        attempt = 0
    # 2**attempt overflows float math long before it matters; clamp early.
    if attempt > 62:
        return max(0.0, cap)
    return max(0.0, min(cap, base * (2**attempt)))


__all__ = [
    "backoff_delay",
    "coerce_float",
    "first_present",
    "liquidity_weighted",
    "pct_change",
    "sum_field",
    "to_native",
]
