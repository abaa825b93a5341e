"""Owned aiohttp client used by the provider adapters."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import aiohttp

from .circuit import HostCircuitBreaker
from .fetch import CircuitOpen, UpstreamError, parse_retry_after

log = logging.getLogger(__name__)


class HttpClient:
    """Shared aiohttp session with per-host circuit breaking.

    The session is created by :meth:`start` (or lazily on first use) and must
    be released with :meth:`close`.
    """

    def __init__(
        self,
        *,
        timeout: float = 8.0,
        breaker: HostCircuitBreaker | None = None,
        user_agent: str = "poolwatch/1.0",
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._breaker = breaker or HostCircuitBreaker()
        self._user_agent = user_agent
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def start(self) -> None:
        async with self._session_lock:
            if self._session is not None and not self._session.closed:
                return
            headers = {
                "User-Agent": self._user_agent,
                "Accept": "application/json",
            }
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)

    async def close(self) -> None:
        async with self._session_lock:
            if self._session is not None and not self._session.closed:
                await self._session.close()
            self._session = None

    async def __aenter__(self) -> "HttpClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session

    async def get_json(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        timeout: float | None = None,
    ) -> Any:
        """GET ``url`` and decode JSON.

        Raises :class:`UpstreamError` for non-2xx responses (with status and
        ``Retry-After``) and for transport failures (``status=None``).
        """

        host = urlparse(url).hostname or ""
        if not host:
            raise ValueError(f"Cannot determine host for URL {url}")
        if self._breaker.is_open(host):
            raise CircuitOpen(f"circuit open for host {host}")

        session = await self._ensure_session()
        request_kwargs: dict[str, Any] = {"params": params}
        if timeout:
            request_kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        try:
            async with session.get(url, **request_kwargs) as resp:
                if resp.status >= 400:
                    if resp.status == 429 or resp.status >= 500:
                        self._breaker.record_failure(host)
                    raise UpstreamError(
                        f"HTTP {resp.status} from {host}",
                        status=resp.status,
                        retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                        url=url,
                    )
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    log.warning("undecodable JSON body from %s", host)
                    payload = None
        except UpstreamError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._breaker.record_failure(host)
            log.debug("request to %s failed: %s", host, exc)
            raise UpstreamError(f"request to {host} failed: {exc}", url=url) from exc
        self._breaker.record_success(host)
        return payload


__all__ = ["HttpClient"]
