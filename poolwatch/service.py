"""Refresh cycle orchestration: fetch, merge, diff, publish, persist."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from .aggregate import COINGECKO, DEXSCREENER, ProviderPayload, merge_sources
from .bus import InMemoryBus, MessageBus, RedisBus
from .circuit import HostCircuitBreaker
from .config import Settings
from .contracts import NATIVE_PRICE_KEY
from .diff import CooldownTracker, DiffEngine
from .fetch import with_backoff
from .http import HttpClient
from .kv import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from .logging_utils import warn_once_per
from .models import MarketSummary, Patch, TokenConfig, TokenResult
from .numeric import coerce_float
from .providers import CoinGeckoClient, DexScreenerClient

log = logging.getLogger(__name__)


class PoolSource(Protocol):
    async def fetch_pairs(self, address: str | None) -> Any:
        ...


class MarketSource(Protocol):
    async def fetch_summary(self, address: str | None, platform: str = "ethereum") -> MarketSummary | None:
        ...

    async def fetch_native_price(self, coin_id: str = "solana") -> float | None:
        ...


@dataclass(slots=True)
class CycleReport:
    results: List[TokenResult]
    patch: Patch | None
    native_rate: float | None
    duration: float
    errors: int = 0


def _utc_iso(ts: float) -> str:
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class RefreshService:
    """Drive refresh cycles over the configured tokens.

    Cycles never overlap: a call to :meth:`run_cycle` made while another one
    is still running is skipped.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        kv: KeyValueStore,
        bus: MessageBus,
        dexscreener: PoolSource,
        coingecko: MarketSource,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._settings = settings
        self._kv = kv
        self._bus = bus
        self._dexscreener = dexscreener
        self._coingecko = coingecko
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._policy = settings.retry_policy
        self._tokens: List[TokenConfig] = settings.token_configs
        cooldowns = CooldownTracker(
            kv,
            cooldown=settings.push_cooldown,
            ttl=settings.last_pub_ttl,
            clock=clock,
        )
        self._diff = DiffEngine(cooldowns, threshold=settings.push_threshold, clock=clock)
        self._in_progress = False
        self._stop = asyncio.Event()

    @property
    def tokens(self) -> List[TokenConfig]:
        return list(self._tokens)

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def _retry(self, factory: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await with_backoff(factory, self._policy, sleep=self._sleep, rng=self._rng, label=label)

    async def resolve_native_rate(self) -> float | None:
        """USD per native unit; falls back to the last known good value."""

        coin = self._settings.native_coin_id
        rate: float | None = None
        try:
            rate = coerce_float(
                await self._retry(lambda: self._coingecko.fetch_native_price(coin), f"{coin} price")
            )
        except Exception as exc:
            warn_once_per(5, "native-price", "failed to fetch %s price: %s", coin, _describe(exc), logger=log)

        if rate is not None:
            try:
                await self._kv.set(NATIVE_PRICE_KEY, repr(rate), ttl=self._settings.native_price_ttl)
            except Exception as exc:
                log.warning("failed to cache %s price: %s", coin, exc)
            return rate

        try:
            cached = await self._kv.get(NATIVE_PRICE_KEY)
        except Exception as exc:
            log.warning("failed to read cached %s price: %s", coin, exc)
            return None
        rate = coerce_float(cached)
        if rate is not None:
            log.info("using last known %s price %.4f", coin, rate)
        return rate

    async def collect_token(self, config: TokenConfig, native_rate: float | None) -> TokenResult:
        """Fetch both providers for one token concurrently and aggregate."""

        pairs, summary = await asyncio.gather(
            self._retry(lambda: self._dexscreener.fetch_pairs(config.address), f"dexscreener {config.label}"),
            self._retry(
                lambda: self._coingecko.fetch_summary(config.address, config.platform),
                f"coingecko {config.label}",
            ),
            return_exceptions=True,
        )
        for outcome in (pairs, summary):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                log.warning("token error for %s: %s", config.label, _describe(outcome))
                return TokenResult(label=config.label, error=_describe(outcome))
        token = merge_sources(
            [ProviderPayload(DEXSCREENER, pairs), ProviderPayload(COINGECKO, summary)],
            native_rate,
            platform=config.platform,
        )
        return TokenResult(label=config.label, token=token)

    async def collect(self, native_rate: float | None) -> List[TokenResult]:
        # One token at a time; providers are rate limited.
        results: List[TokenResult] = []
        for config in self._tokens:
            results.append(await self.collect_token(config, native_rate))
        return results

    async def load_previous(self) -> Optional[List[TokenResult]]:
        """The persisted snapshot, or ``None`` when absent or unreadable."""

        try:
            raw = await self._kv.get(self._settings.cache_key)
        except Exception as exc:
            log.warning("failed to load previous snapshot: %s", exc)
            return None
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            log.warning("discarding unparseable snapshot: %s", exc)
            return None
        if not isinstance(parsed, list):
            return None
        return [TokenResult.from_dict(item) for item in parsed if isinstance(item, dict)]

    async def persist(self, results: List[TokenResult]) -> bool:
        payload = json.dumps([result.to_dict() for result in results])
        try:
            await self._kv.set(self._settings.cache_key, payload, ttl=self._settings.cache_ttl)
        except Exception as exc:
            log.warning("failed to persist snapshot: %s", exc)
            return False
        return True

    async def run_cycle(self) -> CycleReport | None:
        """One end-to-end pass. Returns ``None`` when a cycle is already running."""

        if self._in_progress:
            log.warning("refresh cycle already in progress; skipping")
            return None
        self._in_progress = True
        started = time.monotonic()
        log.info("refresh start @ %s", _utc_iso(self._clock()))
        try:
            native_rate = await self.resolve_native_rate()
            results = await self.collect(native_rate)
            previous = await self.load_previous()
            diffs = await self._diff.compute(results, previous, self._tokens)
            patch = await self._diff.publish(diffs, self._bus, self._settings.pub_channel)
            await self.persist(results)
        finally:
            self._in_progress = False
        duration = time.monotonic() - started
        errors = sum(1 for result in results if not result.ok)
        log.info(
            "refresh ok, %d tokens (%d errors), %d diffs, took %.0fms, TTL=%ss",
            len(results),
            errors,
            len(patch.diffs) if patch else 0,
            duration * 1000.0,
            self._settings.cache_ttl,
        )
        return CycleReport(
            results=results,
            patch=patch,
            native_rate=native_rate,
            duration=duration,
            errors=errors,
        )

    async def fetch_all(self, *, use_cache: bool = True) -> Dict[str, Any]:
        """On-demand snapshot: cached when available, otherwise recomputed."""

        if use_cache:
            cached = await self.load_previous()
            if cached is not None:
                log.debug("returning merged tokens from cache")
                return {
                    "ok": True,
                    "cached": True,
                    "fetched_at": _utc_iso(self._clock()),
                    "tokens": [result.to_dict() for result in cached],
                }
        native_rate = await self.resolve_native_rate()
        results = await self.collect(native_rate)
        await self.persist(results)
        return {
            "ok": True,
            "cached": False,
            "fetched_at": _utc_iso(self._clock()),
            "native_price_usd": native_rate,
            "tokens": [result.to_dict() for result in results],
        }

    async def run_forever(self, interval: float | None = None) -> None:
        """Run a cycle now and then every ``interval`` seconds until stopped."""

        period = float(interval or self._settings.refresh_interval)
        self._stop.clear()
        log.info("scheduled every %.1fs, cache key=%s", period, self._settings.cache_key)
        while not self._stop.is_set():
            tick = time.monotonic()
            try:
                await self.run_cycle()
            except Exception:
                log.exception("refresh failed")
            remaining = max(0.0, period - (time.monotonic() - tick))
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=remaining)

    def stop(self) -> None:
        self._stop.set()


@asynccontextmanager
async def open_service(settings: Settings, *, memory: bool = False) -> AsyncIterator[RefreshService]:
    """Connect every collaborator, yield a :class:`RefreshService`, then close."""

    http = HttpClient(
        timeout=max(settings.dexscreener_timeout, settings.coingecko_timeout),
        breaker=HostCircuitBreaker(threshold=10, cooldown=30.0),
    )
    kv: KeyValueStore
    bus: MessageBus
    redis_kv: RedisKeyValueStore | None = None
    if memory:
        kv = InMemoryKeyValueStore()
        bus = InMemoryBus()
    else:
        redis_kv = RedisKeyValueStore(settings.redis_url)
        kv = redis_kv
        bus = RedisBus(settings.redis_url)
    try:
        if redis_kv is not None:
            await redis_kv.connect()
        if isinstance(bus, RedisBus):
            try:
                await bus.connect()
            except Exception as exc:
                log.warning("pub connect failed: %s", exc)
        await http.start()
        yield RefreshService(
            settings,
            kv=kv,
            bus=bus,
            dexscreener=DexScreenerClient(
                http, base_url=settings.dexscreener_url, timeout=settings.dexscreener_timeout
            ),
            coingecko=CoinGeckoClient(
                http, base_url=settings.coingecko_url, timeout=settings.coingecko_timeout
            ),
        )
    finally:
        await http.close()
        with contextlib.suppress(Exception):
            await bus.close()
        if redis_kv is not None:
            with contextlib.suppress(Exception):
                await redis_kv.close()


__all__ = ["CycleReport", "MarketSource", "PoolSource", "RefreshService", "open_service"]
