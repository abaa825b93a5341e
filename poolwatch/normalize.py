"""Turn provider-shaped payloads into canonical :class:`Pool` records.

Providers rename fields over time, so every logical field is described by an
ordered tuple of candidate paths. The first path that resolves to a non-null
leaf wins; any shape mismatch along a path simply counts as "absent".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, MutableMapping, Sequence, Tuple

from .models import MarketSummary, Pool
from .numeric import coerce_float, first_present

log = logging.getLogger(__name__)

FieldPath = Tuple[str, ...]
Aliases = Tuple[FieldPath, ...]


def _paths(*dotted: str) -> Aliases:
    return tuple(tuple(item.split(".")) for item in dotted)


def lookup(payload: Any, paths: Sequence[FieldPath]) -> Any:
    """Return the first non-``None`` value reachable through ``paths``."""

    for path in paths:
        node: Any = payload
        for key in path:
            if not isinstance(node, Mapping):
                node = None
                break
            node = node.get(key)
            if node is None:
                break
        if node is not None:
            return node
    return None


def lookup_float(payload: Any, paths: Sequence[FieldPath]) -> float | None:
    """Like :func:`lookup` but only accepts values that coerce to a finite float."""

    for path in paths:
        value = coerce_float(lookup(payload, (path,)))
        if value is not None:
            return value
    return None


def lookup_str(payload: Any, paths: Sequence[FieldPath]) -> str | None:
    for path in paths:
        value = lookup(payload, (path,))
        if isinstance(value, str) and value:
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


@dataclass(frozen=True, slots=True)
class PoolSchema:
    """Ordered alias paths for every logical :class:`Pool` field."""

    pair_id: Aliases
    protocol: Aliases
    base_symbol: Aliases
    base_name: Aliases
    base_address: Aliases
    quote_symbol: Aliases
    quote_name: Aliases
    quote_address: Aliases
    liquidity_usd: Aliases
    volume_h24_usd: Aliases
    buys_h24: Aliases
    sells_h24: Aliases
    price_usd: Aliases
    price_change_h1: Aliases
    price_change_h6: Aliases
    price_change_h24: Aliases
    list_keys: Tuple[str, ...] = ("pairs", "data", "results")


DEXSCREENER_SCHEMA = PoolSchema(
    pair_id=_paths("pairAddress", "id"),
    protocol=_paths("dexId", "platformId", "protocol"),
    base_symbol=_paths("baseToken.symbol", "baseSymbol", "base_token_symbol", "base"),
    base_name=_paths("baseToken.name", "baseName"),
    base_address=_paths("baseToken.address", "baseTokenAddress"),
    quote_symbol=_paths("quoteToken.symbol", "quoteSymbol", "quote_token_symbol", "quote"),
    quote_name=_paths("quoteToken.name", "quoteName"),
    quote_address=_paths("quoteToken.address", "quoteTokenAddress"),
    liquidity_usd=_paths("liquidity.usd", "liquidityUsd"),
    volume_h24_usd=_paths("volume.h24", "volume24hUsd", "volume24h"),
    buys_h24=_paths("txns.h24.buys", "txns24h.buys"),
    sells_h24=_paths("txns.h24.sells", "txns24h.sells"),
    price_usd=_paths("priceUsd", "price.usd"),
    price_change_h1=_paths("priceChange.h1", "priceChange1h"),
    price_change_h6=_paths("priceChange.h6", "priceChange6h"),
    price_change_h24=_paths("priceChange.h24", "priceChange24h"),
)


def extract_pairs(raw: Any, keys: Sequence[str] = DEXSCREENER_SCHEMA.list_keys) -> List[Mapping[str, Any]]:
    if isinstance(raw, Mapping):
        for key in keys:
            pairs = raw.get(key)
            if isinstance(pairs, list):
                return [pair for pair in pairs if isinstance(pair, Mapping)]
        return []
    if isinstance(raw, list):
        return [pair for pair in raw if isinstance(pair, Mapping)]
    return []


def normalize_pool(pair: Mapping[str, Any], *, schema: PoolSchema, source: str) -> Pool:
    buys = lookup_float(pair, schema.buys_h24) or 0.0
    sells = lookup_float(pair, schema.sells_h24) or 0.0
    return Pool(
        source=source,
        pair_id=lookup_str(pair, schema.pair_id),
        protocol=lookup_str(pair, schema.protocol),
        base_symbol=lookup_str(pair, schema.base_symbol),
        base_name=lookup_str(pair, schema.base_name),
        base_address=lookup_str(pair, schema.base_address),
        quote_symbol=lookup_str(pair, schema.quote_symbol),
        quote_name=lookup_str(pair, schema.quote_name),
        quote_address=lookup_str(pair, schema.quote_address),
        liquidity_usd=lookup_float(pair, schema.liquidity_usd),
        volume_h24_usd=lookup_float(pair, schema.volume_h24_usd),
        txns_h24=max(0.0, buys) + max(0.0, sells),
        price_usd_pool=lookup_float(pair, schema.price_usd),
        price_change_h1=lookup_float(pair, schema.price_change_h1),
        price_change_h6=lookup_float(pair, schema.price_change_h6),
        price_change_h24=lookup_float(pair, schema.price_change_h24),
    )


def normalize_pools(
    raw: Any,
    *,
    schema: PoolSchema = DEXSCREENER_SCHEMA,
    source: str = "dexscreener",
) -> List[Pool]:
    """Normalize one provider response into de-duplicated pools.

    Order is preserved and the first occurrence of a pair identity wins. Pairs
    without any identity are always kept. Absent or malformed payloads yield
    an empty list.
    """

    seen: set[str] = set()
    pools: List[Pool] = []
    for pair in extract_pairs(raw, schema.list_keys):
        pool = normalize_pool(pair, schema=schema, source=source)
        if pool.pair_id:
            if pool.pair_id in seen:
                continue
            seen.add(pool.pair_id)
        pools.append(pool)
    if pools:
        log.debug("normalized %d %s pools", len(pools), source)
    return pools


def normalize_market_summary(raw: Any, platform: str) -> MarketSummary | None:
    """Map a CoinGecko ``coins/{platform}/contract/{address}`` payload."""

    if not isinstance(raw, Mapping) or not raw:
        return None
    market: Mapping[str, Any] = raw.get("market_data") if isinstance(raw.get("market_data"), Mapping) else {}
    symbol = raw.get("symbol")
    decimals = coerce_float(lookup(raw, (("detail_platforms", platform, "decimal_place"),)))
    return MarketSummary(
        id=lookup_str(raw, (("id",),)),
        name=lookup_str(raw, (("name",),)),
        symbol=str(symbol).upper() if symbol else None,
        contract_address=lookup_str(
            raw,
            (
                ("platforms", platform),
                ("detail_platforms", platform, "contract_address"),
                ("contract_address",),
            ),
        ),
        decimals=int(decimals) if decimals is not None else None,
        price_usd=lookup_float(market, (("current_price", "usd"),)),
        market_cap_usd=lookup_float(market, (("market_cap", "usd"),)),
        price_change_1h=first_present(
            lookup_float(market, (("price_change_percentage_1h_in_currency", "usd"),)),
            lookup_float(market, (("price_change_percentage_1h",),)),
        ),
        price_change_24h=first_present(
            lookup_float(market, (("price_change_percentage_24h_in_currency", "usd"),)),
            lookup_float(market, (("price_change_percentage_24h",),)),
        ),
        price_change_7d=first_present(
            lookup_float(market, (("price_change_percentage_7d_in_currency", "usd"),)),
            lookup_float(market, (("price_change_percentage_7d",),)),
        ),
        image=raw.get("image"),
    )


def summary_from_mapping(payload: MutableMapping[str, Any] | Mapping[str, Any]) -> MarketSummary:
    """Rebuild a :class:`MarketSummary` from its own ``to_dict`` form."""

    decimals = coerce_float(payload.get("decimals"))
    return MarketSummary(
        id=lookup_str(payload, (("id",),)),
        name=lookup_str(payload, (("name",),)),
        symbol=lookup_str(payload, (("symbol",),)),
        contract_address=lookup_str(payload, (("contract_address",),)),
        decimals=int(decimals) if decimals is not None else None,
        price_usd=coerce_float(payload.get("price_usd")),
        market_cap_usd=coerce_float(payload.get("market_cap_usd")),
        price_change_1h=coerce_float(payload.get("price_change_1h")),
        price_change_24h=coerce_float(payload.get("price_change_24h")),
        price_change_7d=coerce_float(payload.get("price_change_7d")),
        image=payload.get("image"),
    )


__all__ = [
    "DEXSCREENER_SCHEMA",
    "FieldPath",
    "PoolSchema",
    "extract_pairs",
    "lookup",
    "lookup_float",
    "lookup_str",
    "normalize_market_summary",
    "normalize_pool",
    "normalize_pools",
    "summary_from_mapping",
]
