"""CoinGecko adapter for token market summaries and the native-coin price."""

from __future__ import annotations

import logging
from typing import Mapping
from urllib.parse import quote

from ..fetch import UpstreamError
from ..models import MarketSummary
from ..normalize import normalize_market_summary
from ..numeric import coerce_float
from .dexscreener import JsonGetter

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"


class CoinGeckoClient:
    def __init__(
        self,
        http: JsonGetter,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float | None = None,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def contract_url(self, address: str, platform: str) -> str:
        return (
            f"{self._base_url}/coins/{quote(platform, safe='')}"
            f"/contract/{quote(address, safe='')}"
        )

    async def fetch_summary(self, address: str | None, platform: str = "ethereum") -> MarketSummary | None:
        """Market summary for a contract; a 404 is treated as "not listed"."""

        token = (address or "").strip()
        if not token:
            return None
        try:
            raw = await self._http.get_json(self.contract_url(token, platform), timeout=self._timeout)
        except UpstreamError as exc:
            if exc.status == 404:
                log.warning("CoinGecko: not found for platform=%s, address=%s", platform, token)
                return None
            raise
        return normalize_market_summary(raw, platform)

    async def fetch_native_price(self, coin_id: str = "solana") -> float | None:
        """USD price of ``coin_id`` from ``simple/price``."""

        raw = await self._http.get_json(
            f"{self._base_url}/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd"},
            timeout=self._timeout,
        )
        entry = raw.get(coin_id) if isinstance(raw, Mapping) else None
        if not isinstance(entry, Mapping):
            return None
        return coerce_float(entry.get("usd"))


__all__ = ["CoinGeckoClient", "DEFAULT_BASE_URL"]
