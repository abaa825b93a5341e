"""Canonical records flowing through the poolwatch refresh cycle."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .numeric import coerce_float


@dataclass(frozen=True, slots=True)
class Pool:
    """One liquidity pool or trading pair as reported by a provider."""

    source: str
    pair_id: str | None = None
    protocol: str | None = None
    base_symbol: str | None = None
    base_name: str | None = None
    base_address: str | None = None
    quote_symbol: str | None = None
    quote_name: str | None = None
    quote_address: str | None = None
    liquidity_usd: float | None = None
    volume_h24_usd: float | None = None
    txns_h24: float = 0.0
    price_usd_pool: float | None = None
    price_change_h1: float | None = None
    price_change_h6: float | None = None
    price_change_h24: float | None = None

    def replace(self, **changes: Any) -> "Pool":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(slots=True)
class MarketSummary:
    """Token level facts from a market-data provider."""

    id: str | None = None
    name: str | None = None
    symbol: str | None = None
    contract_address: str | None = None
    decimals: int | None = None
    price_usd: float | None = None
    market_cap_usd: float | None = None
    price_change_1h: float | None = None
    price_change_24h: float | None = None
    price_change_7d: float | None = None
    image: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(slots=True)
class AggregateDebug:
    """Pre-conversion USD figures kept next to a :class:`TokenAggregate`."""

    price_usd: float | None = None
    market_cap_usd: float | None = None
    total_volume_usd: float = 0.0
    total_liquidity_usd: float = 0.0


@dataclass(slots=True)
class TokenAggregate:
    token_address: str | None = None
    token_name: str | None = None
    token_ticker: str | None = None
    price_sol: float | None = None
    market_cap_sol: float | None = None
    volume_sol: float = 0.0
    liquidity_sol: float = 0.0
    transaction_count: int = 0
    price_1hr_change: float | None = None
    protocol: str | None = None
    debug: AggregateDebug = field(default_factory=AggregateDebug)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TokenAggregate":
        debug_raw = payload.get("debug")
        debug = AggregateDebug()
        if isinstance(debug_raw, Mapping):
            debug = AggregateDebug(
                price_usd=coerce_float(debug_raw.get("price_usd")),
                market_cap_usd=coerce_float(debug_raw.get("market_cap_usd")),
                total_volume_usd=coerce_float(debug_raw.get("total_volume_usd")) or 0.0,
                total_liquidity_usd=coerce_float(debug_raw.get("total_liquidity_usd")) or 0.0,
            )
        return cls(
            token_address=_optional_str(payload.get("token_address")),
            token_name=_optional_str(payload.get("token_name")),
            token_ticker=_optional_str(payload.get("token_ticker")),
            price_sol=coerce_float(payload.get("price_sol")),
            market_cap_sol=coerce_float(payload.get("market_cap_sol")),
            volume_sol=coerce_float(payload.get("volume_sol")) or 0.0,
            liquidity_sol=coerce_float(payload.get("liquidity_sol")) or 0.0,
            transaction_count=int(coerce_float(payload.get("transaction_count")) or 0),
            price_1hr_change=coerce_float(payload.get("price_1hr_change")),
            protocol=_optional_str(payload.get("protocol")),
            debug=debug,
        )


@dataclass(frozen=True, slots=True)
class TokenConfig:
    """A configured token: display label, on-chain address and platform id."""

    label: str
    address: str
    platform: str = "ethereum"


@dataclass(slots=True)
class TokenResult:
    """Outcome for one configured token in one cycle.

    Exactly one of ``token`` and ``error`` is set.
    """

    label: str
    token: TokenAggregate | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.token is not None and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.token is None:
            return {"label": self.label, "error": self.error or "unknown error"}
        return {"label": self.label, "token": self.token.to_dict()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TokenResult":
        label = str(payload.get("label") or "")
        token = payload.get("token")
        if isinstance(token, Mapping):
            return cls(label=label, token=TokenAggregate.from_dict(token))
        error = payload.get("error")
        return cls(label=label, error=str(error) if error is not None else "missing token")


@dataclass(frozen=True, slots=True)
class NumericSnapshot:
    price_usd: float | None = None
    market_cap_usd: float | None = None
    volume_usd: float | None = None
    txns24: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True, slots=True)
class DiffRecord:
    address: str
    label: str
    old: NumericSnapshot
    new: NumericSnapshot
    change_pct: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "label": self.label,
            "old": self.old.to_dict(),
            "new": self.new.to_dict(),
            "change_pct": self.change_pct,
        }


@dataclass(frozen=True, slots=True)
class Patch:
    """One published batch of diffs."""

    seq: int
    ts: str
    diffs: List[DiffRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "patch",
            "seq": self.seq,
            "ts": self.ts,
            "diffs": [diff.to_dict() for diff in self.diffs],
        }


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


__all__ = [
    "AggregateDebug",
    "DiffRecord",
    "MarketSummary",
    "NumericSnapshot",
    "Patch",
    "Pool",
    "TokenAggregate",
    "TokenConfig",
    "TokenResult",
]
