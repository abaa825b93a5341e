"""Asynchronous key/value stores backing snapshots and cooldown markers."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis

log = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol describing the minimal async KV operations we rely on."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


@dataclass
class _Entry:
    value: str
    expires_at: float | None


class InMemoryKeyValueStore(KeyValueStore):
    """A tiny async-safe KV store with TTL support for tests and local runs."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._data.get(key)
            if not entry:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                self._data.pop(key, None)
                return None
            return entry.value

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        async with self._lock:
            if ttl is not None and ttl <= 0:
                # already expired on arrival
                self._data.pop(key, None)
                return
            expires_at = None if ttl is None else self._clock() + ttl
            self._data[key] = _Entry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)


class RedisKeyValueStore(KeyValueStore):
    """``redis.asyncio`` backed store with an explicit connect/close lifecycle."""

    def __init__(self, url: str, *, client: aioredis.Redis | None = None) -> None:
        self._url = url
        self._client = client

    @property
    def url(self) -> str:
        return self._url

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
        await self._client.ping()
        log.info("Redis connected to %s", self._url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("RedisKeyValueStore.connect() must be awaited first")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        value = await self._require().get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        client = self._require()
        if ttl is None:
            await client.set(key, value)
        elif ttl > 0:
            await client.set(key, value, ex=max(1, int(math.ceil(ttl))))
        else:
            # same outcome as the in-memory store: the key is gone
            await client.delete(key)

    async def delete(self, key: str) -> None:
        await self._require().delete(key)


__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore"]
