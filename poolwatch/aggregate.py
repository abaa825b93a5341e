"""Fold a token's merged pools and market summary into one aggregate."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .merge import merge_pools
from .models import AggregateDebug, MarketSummary, Pool, TokenAggregate
from .normalize import normalize_market_summary, normalize_pools, summary_from_mapping
from .numeric import coerce_float, first_present, liquidity_weighted, sum_field, to_native

log = logging.getLogger(__name__)

DEXSCREENER = "dexscreener"
COINGECKO = "coingecko"


def _rank(value: float | None) -> float:
    number = coerce_float(value)
    return -1.0 if number is None else number


def choose_primary_pool(pools: Sequence[Pool]) -> Pool | None:
    """Most liquid pool; ties broken by 24h volume then 24h transactions.

    ``sorted`` is stable, so fully tied pools keep their input order.
    """

    if not pools:
        return None
    ranked = sorted(
        pools,
        key=lambda pool: (
            -_rank(pool.liquidity_usd),
            -_rank(pool.volume_h24_usd),
            -_rank(pool.txns_h24),
        ),
    )
    return ranked[0]


def most_common_address(pools: Iterable[Pool]) -> str | None:
    """Address seen most often as base or quote; first seen wins ties."""

    counts: Dict[str, int] = {}
    for pool in pools:
        for address in (pool.base_address, pool.quote_address):
            if address:
                counts[address] = counts.get(address, 0) + 1
    best: str | None = None
    best_count = -1
    for address, count in counts.items():
        if count > best_count:
            best, best_count = address, count
    return best


@dataclass(frozen=True, slots=True)
class TokenMeta:
    address: str | None = None
    name: str | None = None
    symbol: str | None = None


def token_meta_for_address(pools: Iterable[Pool], address: str | None) -> TokenMeta:
    if not address:
        return TokenMeta()
    for pool in pools:
        if pool.base_address == address:
            return TokenMeta(
                address=address,
                name=first_present(pool.base_name, pool.base_symbol),
                symbol=pool.base_symbol,
            )
        if pool.quote_address == address:
            return TokenMeta(
                address=address,
                name=first_present(pool.quote_name, pool.quote_symbol),
                symbol=pool.quote_symbol,
            )
    return TokenMeta(address=address)


def build_token_aggregate(
    pools: Sequence[Pool],
    summary: MarketSummary | None,
    native_rate: float | None,
) -> TokenAggregate:
    """Build the canonical view of one token.

    Never raises: every missing input degrades to ``None`` (price, market cap)
    or ``0`` (volume, liquidity, transaction count).
    """

    total_volume_usd = sum_field(pools, lambda pool: pool.volume_h24_usd)
    total_liquidity_usd = sum_field(pools, lambda pool: pool.liquidity_usd)
    transaction_count = sum_field(pools, lambda pool: pool.txns_h24)

    primary = choose_primary_pool(pools)

    price_usd = first_present(
        coerce_float(summary.price_usd) if summary else None,
        coerce_float(primary.price_usd_pool) if primary else None,
    )
    price_1hr_change = first_present(
        coerce_float(summary.price_change_1h) if summary else None,
        liquidity_weighted(pools, "price_change_h1"),
    )
    market_cap_usd = coerce_float(summary.market_cap_usd) if summary else None

    token_address = first_present(
        summary.contract_address if summary else None,
        most_common_address(pools),
    )
    meta = token_meta_for_address(pools, token_address)
    summary_symbol = summary.symbol.upper() if summary and summary.symbol else None
    token_name = first_present(summary.name if summary else None, meta.name)
    token_ticker = first_present(summary_symbol, meta.symbol)

    rate = coerce_float(native_rate)
    return TokenAggregate(
        token_address=token_address,
        token_name=token_name,
        token_ticker=token_ticker,
        price_sol=to_native(price_usd, rate),
        market_cap_sol=to_native(market_cap_usd, rate),
        volume_sol=to_native(total_volume_usd, rate) or 0.0,
        liquidity_sol=to_native(total_liquidity_usd, rate) or 0.0,
        transaction_count=int(transaction_count or 0),
        price_1hr_change=price_1hr_change,
        protocol=primary.protocol if primary else None,
        debug=AggregateDebug(
            price_usd=price_usd,
            market_cap_usd=market_cap_usd,
            total_volume_usd=total_volume_usd,
            total_liquidity_usd=total_liquidity_usd,
        ),
    )


@dataclass(frozen=True, slots=True)
class ProviderPayload:
    """Raw response tagged with the provider it came from."""

    source: str
    payload: Any = None


def _coerce_summary(payload: Any, platform: str) -> MarketSummary | None:
    if payload is None or isinstance(payload, MarketSummary):
        return payload
    if isinstance(payload, Mapping):
        nested = payload.get("summary")
        if isinstance(nested, MarketSummary):
            return nested
        if isinstance(nested, Mapping):
            return summary_from_mapping(nested)
        if "market_data" in payload or "platforms" in payload:
            return normalize_market_summary(payload, platform)
        return summary_from_mapping(payload)
    return None


def merge_sources(
    sources: Iterable[Optional[ProviderPayload]],
    native_rate: float | None,
    *,
    platform: str = "ethereum",
) -> TokenAggregate:
    """Normalize, merge and aggregate every provider payload for one token."""

    pools: List[Pool] = []
    summary: MarketSummary | None = None
    for item in sources:
        if item is None:
            continue
        if item.source == DEXSCREENER:
            pools.extend(normalize_pools(item.payload, source=DEXSCREENER))
        elif item.source == COINGECKO:
            summary = _coerce_summary(item.payload, platform)
        else:
            log.debug("ignoring payload from unknown source %s", item.source)
    return build_token_aggregate(merge_pools(pools), summary, native_rate)


__all__ = [
    "COINGECKO",
    "DEXSCREENER",
    "ProviderPayload",
    "TokenMeta",
    "build_token_aggregate",
    "choose_primary_pool",
    "merge_sources",
    "most_common_address",
    "token_meta_for_address",
]
