"""Decide which token changes are worth broadcasting.

A token is significant when its USD price moved by at least ``threshold``
(fractional), when a price appears for the first time, or, with no usable
price on either side, when its market cap moved by ``threshold``. Significant
tokens are still held back while a cooldown marker younger than ``cooldown``
exists for their canonical key.
"""

from __future__ import annotations

import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .bus import MessageBus
from .contracts import last_published_key
from .kv import KeyValueStore
from .models import DiffRecord, NumericSnapshot, Patch, TokenConfig, TokenResult
from .numeric import coerce_float, pct_change

log = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.02
DEFAULT_COOLDOWN = 15.0
DEFAULT_MARKER_TTL = 60.0

Entry = TokenResult | Mapping[str, Any]


def _token_mapping(entry: Entry | None) -> Mapping[str, Any]:
    if entry is None:
        return {}
    if isinstance(entry, TokenResult):
        return entry.token.to_dict() if entry.token is not None else {}
    token = entry.get("token")
    return token if isinstance(token, Mapping) else {}


def _label(entry: Entry) -> str:
    if isinstance(entry, TokenResult):
        return entry.label
    return str(entry.get("label") or "")


def _is_error(entry: Entry) -> bool:
    if isinstance(entry, TokenResult):
        return not entry.ok
    return not isinstance(entry.get("token"), Mapping)


def canonical_key(entry: Entry, config: TokenConfig | None = None) -> str:
    """Lower-cased identity used to match a token across cycles."""

    token = _token_mapping(entry)
    for candidate in (
        token.get("token_address"),
        token.get("contract_address"),
        config.address if config else None,
        _label(entry),
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip().lower()
    return ""


def _number(value: Any) -> float | None:
    # Snapshots round-trip through JSON; only real numbers count.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return coerce_float(value)


def extract_numbers(entry: Entry | None) -> NumericSnapshot:
    token = _token_mapping(entry)
    debug = token.get("debug") if isinstance(token.get("debug"), Mapping) else {}
    price = _number(token.get("price_usd"))
    if price is None:
        price = _number(debug.get("price_usd"))
    market_cap = _number(token.get("market_cap_usd"))
    if market_cap is None:
        market_cap = _number(debug.get("market_cap_usd"))
    return NumericSnapshot(
        price_usd=price,
        market_cap_usd=market_cap,
        volume_usd=_number(debug.get("total_volume_usd")),
        txns24=_number(token.get("transaction_count")),
    )


def evaluate(
    old: NumericSnapshot,
    new: NumericSnapshot,
    threshold: float = DEFAULT_THRESHOLD,
) -> Tuple[bool, Optional[float]]:
    """Return ``(significant, change_fraction)`` for one token."""

    if old.price_usd is not None and new.price_usd is not None:
        change = pct_change(old.price_usd, new.price_usd)
        return change >= threshold, change if math.isfinite(change) else None
    if old.price_usd is None and new.price_usd is not None:
        return True, None
    if old.market_cap_usd is not None and new.market_cap_usd is not None:
        change = pct_change(old.market_cap_usd, new.market_cap_usd)
        return change >= threshold, change if math.isfinite(change) else None
    return False, None


class CooldownTracker:
    """Per-key last-publish markers stored in the key/value store."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        cooldown: float = DEFAULT_COOLDOWN,
        ttl: float = DEFAULT_MARKER_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if cooldown < 0:
            raise ValueError("cooldown must be non-negative")
        self._kv = kv
        self._cooldown = cooldown
        self._ttl = ttl
        self._clock = clock

    async def last_published(self, key: str) -> float | None:
        try:
            raw = await self._kv.get(last_published_key(key))
        except Exception as exc:
            log.warning("cooldown lookup failed for %s: %s", key, exc)
            return None
        millis = coerce_float(raw)
        if not millis:
            return None
        return millis / 1000.0

    async def is_cooling(self, key: str) -> bool:
        last = await self.last_published(key)
        if last is None:
            return False
        return (self._clock() - last) < self._cooldown

    async def mark(self, keys: Iterable[str]) -> None:
        stamp = str(int(self._clock() * 1000))
        for key in keys:
            try:
                await self._kv.set(last_published_key(key), stamp, ttl=self._ttl)
            except Exception as exc:
                log.warning("failed to write cooldown marker for %s: %s", key, exc)


class DiffEngine:
    def __init__(
        self,
        cooldowns: CooldownTracker,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if threshold < 0:
            raise ValueError("threshold must be non-negative")
        self._cooldowns = cooldowns
        self._threshold = threshold
        self._clock = clock
        self._last_seq = 0

    @property
    def threshold(self) -> float:
        return self._threshold

    async def compute(
        self,
        results: Sequence[TokenResult],
        previous: Sequence[Entry] | None,
        configs: Sequence[TokenConfig] = (),
    ) -> List[DiffRecord]:
        """Diff records for every significant, non-cooling token."""

        by_label: Dict[str, TokenConfig] = {cfg.label: cfg for cfg in configs}
        previous_by_key: Dict[str, Entry] = {}
        for item in previous or ():
            if isinstance(item, (TokenResult, Mapping)):
                previous_by_key[canonical_key(item, by_label.get(_label(item)))] = item

        diffs: List[DiffRecord] = []
        for result in results:
            if _is_error(result):
                continue
            key = canonical_key(result, by_label.get(result.label))
            new = extract_numbers(result)
            old = extract_numbers(previous_by_key.get(key))
            significant, change = evaluate(old, new, self._threshold)
            if not significant:
                continue
            if await self._cooldowns.is_cooling(key):
                log.debug("skipping %s: cooldown active", key)
                continue
            diffs.append(
                DiffRecord(address=key, label=result.label, old=old, new=new, change_pct=change)
            )
        return diffs

    def build_patch(self, diffs: Sequence[DiffRecord]) -> Patch:
        now = self._clock()
        seq = max(int(now * 1000), self._last_seq + 1)
        self._last_seq = seq
        ts = datetime.fromtimestamp(now, tz=timezone.utc).isoformat(timespec="milliseconds")
        return Patch(seq=seq, ts=ts.replace("+00:00", "Z"), diffs=list(diffs))

    async def publish(
        self,
        diffs: Sequence[DiffRecord],
        bus: MessageBus,
        channel: str,
    ) -> Patch | None:
        """Publish ``diffs`` as one patch; returns ``None`` if nothing was sent."""

        if not diffs:
            return None
        patch = self.build_patch(diffs)
        try:
            await bus.publish(channel, json.dumps(patch.to_dict()))
        except Exception as exc:
            log.warning("publish to %s failed: %s", channel, exc)
            return None
        log.info("published %d diffs to %s", len(diffs), channel)
        await self._cooldowns.mark(diff.address for diff in diffs)
        return patch


__all__ = [
    "CooldownTracker",
    "DEFAULT_COOLDOWN",
    "DEFAULT_MARKER_TTL",
    "DEFAULT_THRESHOLD",
    "DiffEngine",
    "canonical_key",
    "evaluate",
    "extract_numbers",
]
