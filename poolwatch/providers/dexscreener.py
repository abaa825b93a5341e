"""DexScreener REST adapter returning raw pair payloads."""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

from ..fetch import UpstreamError

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"


class JsonGetter(Protocol):
    async def get_json(self, url: str, *, params: Any = None, timeout: float | None = None) -> Any:
        ...


class DexScreenerClient:
    """Fetch every pair DexScreener knows for a token address."""

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

    def pairs_url(self, address: str) -> str:
        return f"{self._base_url}/latest/dex/tokens/{quote(address, safe='')}"

    async def fetch_pairs(self, address: str | None) -> Any:
        """Return the raw ``{"pairs": [...]}`` payload, or ``None`` when absent."""

        token = (address or "").strip()
        if not token:
            return None
        try:
            return await self._http.get_json(self.pairs_url(token), timeout=self._timeout)
        except UpstreamError as exc:
            if exc.status == 404:
                log.info("DexScreener: no pairs for %s", token)
                return None
            raise


__all__ = ["DEFAULT_BASE_URL", "DexScreenerClient", "JsonGetter"]
