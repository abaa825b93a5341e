"""Reconcile pools reported by more than one provider in the same cycle."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from .models import Pool
from .numeric import coerce_float, first_present

MISSING = "na"

PoolKey = Tuple[str, str]


def pool_key(pool: Pool) -> PoolKey:
    """Identity of ``pool`` across providers: ``(protocol, pair_id)``."""

    return (pool.protocol or MISSING, pool.pair_id or MISSING)


def _max_or_zero(left: float | None, right: float | None) -> float:
    return max(coerce_float(left) or 0.0, coerce_float(right) or 0.0)


def reconcile(existing: Pool, incoming: Pool) -> Pool:
    """Combine two records for the same pool.

    Activity figures take the larger report; price fields keep the first
    known value.
    """

    return existing.replace(
        liquidity_usd=_max_or_zero(existing.liquidity_usd, incoming.liquidity_usd),
        volume_h24_usd=_max_or_zero(existing.volume_h24_usd, incoming.volume_h24_usd),
        txns_h24=_max_or_zero(existing.txns_h24, incoming.txns_h24),
        price_usd_pool=first_present(existing.price_usd_pool, incoming.price_usd_pool),
        price_change_h1=first_present(existing.price_change_h1, incoming.price_change_h1),
        price_change_h6=first_present(existing.price_change_h6, incoming.price_change_h6),
        price_change_h24=first_present(existing.price_change_h24, incoming.price_change_h24),
    )


def merge_pools(pools: Iterable[Optional[Pool]]) -> List[Pool]:
    """Collapse ``pools`` to one record per :func:`pool_key`, first-seen order."""

    merged: Dict[PoolKey, Pool] = {}
    for pool in pools:
        if pool is None:
            continue
        key = pool_key(pool)
        existing = merged.get(key)
        merged[key] = pool if existing is None else reconcile(existing, pool)
    return list(merged.values())


__all__ = ["MISSING", "merge_pools", "pool_key", "reconcile"]
