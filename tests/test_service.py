import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from poolwatch.bus import InMemoryBus, MessageBus
from poolwatch.config import Settings
from poolwatch.contracts import NATIVE_PRICE_KEY, last_published_key
from poolwatch.fetch import UpstreamError
from poolwatch.kv import InMemoryKeyValueStore
from poolwatch.models import MarketSummary
from poolwatch.service import RefreshService


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


async def no_sleep(_delay: float) -> None:
    return None


def _pairs(price: float) -> Dict[str, Any]:
    return {
        "pairs": [
            {
                "pairAddress": "P1",
                "dexId": "uniswap",
                "baseToken": {"address": "0xa", "name": "Alpha", "symbol": "ALP"},
                "liquidity": {"usd": 5000},
                "volume": {"h24": 1000},
                "txns": {"h24": {"buys": 4, "sells": 6}},
                "priceUsd": str(price),
            }
        ]
    }


class FakeDex:
    def __init__(self) -> None:
        self.payloads: Dict[str, Any] = {}
        self.calls: List[str] = []

    async def fetch_pairs(self, address: Optional[str]) -> Any:
        self.calls.append(address or "")
        outcome = self.payloads.get(address)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeGecko:
    def __init__(self, native: Any = 50.0) -> None:
        self.native = native
        self.summaries: Dict[str, Any] = {}
        self.native_calls = 0

    async def fetch_summary(self, address: Optional[str], platform: str = "ethereum") -> Any:
        outcome = self.summaries.get(address)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def fetch_native_price(self, coin_id: str = "solana") -> Any:
        self.native_calls += 1
        if isinstance(self.native, BaseException):
            raise self.native
        return self.native


class BrokenKV:
    async def get(self, key: str) -> Optional[str]:
        raise ConnectionError("redis down")

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        raise ConnectionError("redis down")

    async def delete(self, key: str) -> None:
        raise ConnectionError("redis down")


class BrokenBus(MessageBus):
    async def publish(self, channel: str, message: str) -> None:
        raise ConnectionError("bus down")


def _settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "tokens": [
            {"label": "ALPHA", "address": "0xa"},
            {"label": "BETA", "address": "0xb"},
        ],
        "retry_max_attempts": 3,
        "retry_max_throttled": 2,
    }
    values.update(overrides)
    return Settings(**values)


def _service(
    *,
    clock: FakeClock,
    dex: FakeDex,
    gecko: FakeGecko,
    kv: Any = None,
    bus: MessageBus | None = None,
    **overrides: Any,
) -> RefreshService:
    return RefreshService(
        _settings(**overrides),
        kv=kv if kv is not None else InMemoryKeyValueStore(clock=clock),
        bus=bus if bus is not None else InMemoryBus(),
        dexscreener=dex,
        coingecko=gecko,
        clock=clock,
        sleep=no_sleep,
    )


def test_three_cycle_scenario_threshold_and_cooldown() -> None:
    clock = FakeClock()
    dex = FakeDex()
    gecko = FakeGecko(native=50.0)
    dex.payloads["0xb"] = UpstreamError("bad request", status=400)
    kv = InMemoryKeyValueStore(clock=clock)
    bus = InMemoryBus()
    service = _service(clock=clock, dex=dex, gecko=gecko, kv=kv, bus=bus)

    async def run():
        reports = []
        dex.payloads["0xa"] = _pairs(100.0)
        reports.append(await service.run_cycle())
        clock.now += 1
        dex.payloads["0xa"] = _pairs(100.5)
        reports.append(await service.run_cycle())
        clock.now += 20
        dex.payloads["0xa"] = _pairs(110.0)
        reports.append(await service.run_cycle())
        snapshot = await kv.get("tokens:merged")
        marker = await kv.get(last_published_key("0xa"))
        native = await kv.get(NATIVE_PRICE_KEY)
        return reports, snapshot, marker, native

    reports, snapshot, marker, native = asyncio.run(run())
    first, second, third = reports

    assert first.native_rate == 50.0
    assert first.errors == 1
    assert [result.label for result in first.results] == ["ALPHA", "BETA"]
    assert first.results[0].token.price_sol == pytest.approx(2.0)
    assert first.results[0].token.transaction_count == 10
    assert isinstance(first.results[0].token.transaction_count, int)
    assert first.results[1].error == "bad request"
    assert first.patch is not None
    assert [diff.address for diff in first.patch.diffs] == ["0xa"]
    assert first.patch.diffs[0].change_pct is None

    assert second.patch is None

    assert third.patch is not None
    assert third.patch.diffs[0].old.price_usd == 100.5
    assert third.patch.diffs[0].new.price_usd == 110.0
    assert third.patch.seq > first.patch.seq

    assert len(bus.events["token_updates"]) == 2
    persisted = json.loads(snapshot)
    assert persisted[0]["token"]["debug"]["price_usd"] == 110.0
    assert type(persisted[0]["token"]["transaction_count"]) is int
    assert persisted[1] == {"label": "BETA", "error": "bad request"}
    assert marker == str(int(clock.now * 1000))
    assert native == "50.0"


def test_cooldown_holds_back_second_significant_move() -> None:
    clock = FakeClock()
    dex = FakeDex()
    service = _service(clock=clock, dex=dex, gecko=FakeGecko(), tokens=[{"label": "ALPHA", "address": "0xa"}])

    async def run():
        dex.payloads["0xa"] = _pairs(100.0)
        await service.run_cycle()
        clock.now += 5
        dex.payloads["0xa"] = _pairs(120.0)
        return await service.run_cycle()

    report = asyncio.run(run())
    assert report.patch is None


class RecordingProviders:
    """Dex and gecko fakes sharing one event log.

    ``fetch_pairs`` waits until ``fetch_summary`` for the same token has
    started, so it only finishes when both calls are in flight together.
    """

    def __init__(self) -> None:
        self.log: List[tuple[str, str, str]] = []
        self._started: Dict[str, asyncio.Event] = {}

    def _event(self, address: str) -> asyncio.Event:
        return self._started.setdefault(address, asyncio.Event())

    async def fetch_pairs(self, address: Optional[str]) -> Any:
        self.log.append(("enter", "dex", address))
        await asyncio.wait_for(self._event(address).wait(), timeout=1.0)
        self.log.append(("exit", "dex", address))
        return _pairs(1.0)

    async def fetch_summary(self, address: Optional[str], platform: str = "ethereum") -> Any:
        self.log.append(("enter", "gecko", address))
        self._event(address).set()
        await asyncio.sleep(0)
        self.log.append(("exit", "gecko", address))
        return None

    async def fetch_native_price(self, coin_id: str = "solana") -> Any:
        return 50.0


def test_providers_overlap_per_token_but_tokens_run_in_turn() -> None:
    clock = FakeClock()
    providers = RecordingProviders()
    service = RefreshService(
        _settings(),
        kv=InMemoryKeyValueStore(clock=clock),
        bus=InMemoryBus(),
        dexscreener=providers,
        coingecko=providers,
        clock=clock,
        sleep=no_sleep,
    )

    report = asyncio.run(service.run_cycle())

    assert all(result.ok for result in report.results)
    log = providers.log
    first = [i for i, (_, _, address) in enumerate(log) if address == "0xa"]
    second = [i for i, (_, _, address) in enumerate(log) if address == "0xb"]
    assert len(first) == len(second) == 4
    # both calls for 0xa are entered before either returns
    enters = [i for i in first if log[i][0] == "enter"]
    exits = [i for i in first if log[i][0] == "exit"]
    assert max(enters) < min(exits)
    assert {log[i][1] for i in enters} == {"dex", "gecko"}
    # 0xb starts only after 0xa has fully finished
    assert max(first) < min(second)


def test_transient_failures_are_retried_then_recorded() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(1.0)
    dex.payloads["0xb"] = UpstreamError("upstream down", status=503)
    service = _service(clock=clock, dex=dex, gecko=FakeGecko())

    report = asyncio.run(service.run_cycle())

    assert report.results[0].ok
    assert not report.results[1].ok
    assert "upstream down" in report.results[1].error
    # three attempts in total
    assert dex.calls.count("0xb") == 3


def test_native_rate_falls_back_to_cached_value() -> None:
    clock = FakeClock()
    kv = InMemoryKeyValueStore(clock=clock)
    gecko = FakeGecko(native=UpstreamError("rate limited", status=503))
    service = _service(clock=clock, dex=FakeDex(), gecko=gecko, kv=kv)

    async def run():
        await kv.set(NATIVE_PRICE_KEY, "40", ttl=300)
        cached = await service.resolve_native_rate()
        await kv.delete(NATIVE_PRICE_KEY)
        missing = await service.resolve_native_rate()
        return cached, missing

    cached, missing = asyncio.run(run())
    assert cached == 40.0
    assert missing is None


def test_missing_native_rate_yields_null_conversions() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(3.0)
    service = _service(clock=clock, dex=dex, gecko=FakeGecko(native=None))

    report = asyncio.run(service.run_cycle())

    token = report.results[0].token
    assert report.native_rate is None
    assert token.price_sol is None
    assert token.volume_sol == 0
    assert token.debug.price_usd == 3.0


def test_summary_and_pools_are_combined() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(3.0)
    gecko = FakeGecko(native=10.0)
    gecko.summaries["0xa"] = MarketSummary(
        name="Alpha Token", symbol="alp", contract_address="0xA", price_usd=2.0, market_cap_usd=100.0
    )
    service = _service(clock=clock, dex=dex, gecko=gecko)

    token = asyncio.run(service.collect_token(service.tokens[0], 10.0)).token

    assert token.token_name == "Alpha Token"
    assert token.price_sol == pytest.approx(0.2)
    assert token.market_cap_sol == pytest.approx(10.0)
    assert token.liquidity_sol == pytest.approx(500.0)


def test_store_failures_do_not_abort_cycle() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(1.0)
    bus = InMemoryBus()
    service = _service(clock=clock, dex=dex, gecko=FakeGecko(), kv=BrokenKV(), bus=bus)

    report = asyncio.run(service.run_cycle())

    assert report is not None
    assert report.results[0].ok
    assert report.patch is not None
    assert len(bus.events["token_updates"]) == 1


def test_bus_failure_still_persists_snapshot() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(1.0)
    kv = InMemoryKeyValueStore(clock=clock)
    service = _service(clock=clock, dex=dex, gecko=FakeGecko(), kv=kv, bus=BrokenBus())

    async def run():
        report = await service.run_cycle()
        return report, await kv.get("tokens:merged"), await kv.get(last_published_key("0xa"))

    report, snapshot, marker = asyncio.run(run())
    assert report.patch is None
    assert snapshot is not None
    assert marker is None


def test_overlapping_cycle_is_skipped() -> None:
    clock = FakeClock()

    class BlockingDex(FakeDex):
        def __init__(self) -> None:
            super().__init__()
            self.entered = asyncio.Event()
            self.release = asyncio.Event()

        async def fetch_pairs(self, address: Optional[str]) -> Any:
            self.entered.set()
            await self.release.wait()
            return _pairs(1.0)

    async def run():
        dex = BlockingDex()
        service = _service(clock=clock, dex=dex, gecko=FakeGecko())
        first = asyncio.create_task(service.run_cycle())
        await dex.entered.wait()
        assert service.in_progress
        skipped = await service.run_cycle()
        dex.release.set()
        completed = await first
        return skipped, completed, service.in_progress

    skipped, completed, in_progress = asyncio.run(run())
    assert skipped is None
    assert completed is not None
    assert not in_progress


def test_fetch_all_uses_cache_after_first_compute() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(2.0)
    bus = InMemoryBus()
    service = _service(clock=clock, dex=dex, gecko=FakeGecko(), bus=bus)

    async def run():
        fresh = await service.fetch_all()
        cached = await service.fetch_all()
        forced = await service.fetch_all(use_cache=False)
        return fresh, cached, forced

    fresh, cached, forced = asyncio.run(run())

    assert fresh["ok"] and not fresh["cached"]
    assert fresh["native_price_usd"] == 50.0
    assert fresh["fetched_at"].endswith("Z")
    assert cached["cached"] is True
    assert cached["tokens"] == fresh["tokens"]
    assert "native_price_usd" not in cached
    assert forced["cached"] is False
    assert dex.calls.count("0xa") == 2
    assert bus.events == {}


def test_previous_snapshot_is_read_back_as_results() -> None:
    clock = FakeClock()
    dex = FakeDex()
    dex.payloads["0xa"] = _pairs(3.0)
    dex.payloads["0xb"] = UpstreamError("bad request", status=400)
    kv = InMemoryKeyValueStore(clock=clock)
    service = _service(clock=clock, dex=dex, gecko=FakeGecko(), kv=kv)

    async def run():
        report = await service.run_cycle()
        loaded = await service.load_previous()
        await kv.set("tokens:merged", json.dumps([{"label": "X"}, "junk", 3]), ttl=45)
        partial = await service.load_previous()
        await kv.set("tokens:merged", "{not json", ttl=45)
        broken = await service.load_previous()
        return report, loaded, partial, broken

    report, loaded, partial, broken = asyncio.run(run())

    assert loaded == report.results
    assert [result.to_dict() for result in loaded] == [result.to_dict() for result in report.results]
    assert loaded[0].token.transaction_count == 10
    assert loaded[1].error == "bad request"
    assert len(partial) == 1
    assert partial[0].label == "X" and not partial[0].ok
    assert broken is None


def test_run_forever_stops_on_request() -> None:
    clock = FakeClock()
    cycles = {"count": 0}

    async def run():
        dex = FakeDex()
        service = _service(clock=clock, dex=dex, gecko=FakeGecko())

        async def fetch_pairs(address: Optional[str]) -> Any:
            cycles["count"] += 1
            if cycles["count"] >= 2:
                service.stop()
            return _pairs(1.0)

        dex.fetch_pairs = fetch_pairs  # type: ignore[assignment]
        await asyncio.wait_for(service.run_forever(0.01), timeout=5)

    asyncio.run(run())
    # two tokens in the first cycle; stop is requested during it
    assert cycles["count"] == 2
