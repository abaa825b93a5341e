"""Publish/subscribe transports carrying patch notifications."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, MutableMapping

import redis.asyncio as aioredis

log = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[None]]


class MessageBus:
    """Protocol-like base class for message buses."""

    async def publish(self, channel: str, message: str) -> None:
        raise NotImplementedError

    async def subscribe(self, channel: str, handler: Handler) -> Callable[[], Awaitable[None]]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryBus(MessageBus):
    """A simple async message bus used in tests and offline runs."""

    def __init__(self) -> None:
        self._subscribers: MutableMapping[str, List[Handler]] = {}
        self._lock = asyncio.Lock()
        self.events: Dict[str, List[str]] = {}

    async def publish(self, channel: str, message: str) -> None:
        async with self._lock:
            self.events.setdefault(channel, []).append(message)
            handlers = list(self._subscribers.get(channel, ()))
        for handler in handlers:
            try:
                await handler(message)
            except Exception:
                log.exception("subscriber for %s failed", channel)

    async def subscribe(self, channel: str, handler: Handler) -> Callable[[], Awaitable[None]]:
        async with self._lock:
            self._subscribers.setdefault(channel, []).append(handler)

        async def _unsubscribe() -> None:
            async with self._lock:
                entries = self._subscribers.get(channel)
                if entries and handler in entries:
                    entries.remove(handler)

        return _unsubscribe


class RedisBus(MessageBus):
    """Redis pub/sub bus.

    One instance owns its publisher connection and any listener tasks; nothing
    is shared at module level. Call :meth:`connect` before use and
    :meth:`close` on shutdown.
    """

    def __init__(self, url: str, *, client: aioredis.Redis | None = None) -> None:
        self._url = url
        self._client = client
        self._listeners: List[asyncio.Task[None]] = []

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
        await self._client.ping()
        log.info("pub/sub connected to %s", self._url)

    def _require(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("RedisBus.connect() must be awaited first")
        return self._client

    async def publish(self, channel: str, message: str) -> None:
        await self._require().publish(channel, message)

    async def subscribe(self, channel: str, handler: Handler) -> Callable[[], Awaitable[None]]:
        pubsub = self._require().pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._listen(pubsub, channel, handler), name=f"redis-sub:{channel}")
        self._listeners.append(task)
        log.info("subscribed to %s", channel)

        async def _unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            if task in self._listeners:
                self._listeners.remove(task)

        return _unsubscribe

    async def _listen(self, pubsub: Any, channel: str, handler: Handler) -> None:
        try:
            async for item in pubsub.listen():
                if not isinstance(item, dict) or item.get("type") != "message":
                    continue
                data = item.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8", errors="replace")
                try:
                    await handler(str(data))
                except Exception:
                    log.exception("subscriber for %s failed", channel)
        finally:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(channel)
            with contextlib.suppress(Exception):
                await pubsub.aclose()

    async def close(self) -> None:
        for task in list(self._listeners):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._listeners.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def forward_patches(
    bus: MessageBus,
    channel: str,
    emit: Callable[[Any], Awaitable[None]],
) -> Callable[[], Awaitable[None]]:
    """Relay each decoded message on ``channel`` to ``emit`` unmodified."""

    async def _on_message(message: str) -> None:
        try:
            obj = json.loads(message)
        except ValueError as exc:
            log.warning("dropping invalid message on %s: %s", channel, exc)
            return
        await emit(obj)

    return await bus.subscribe(channel, _on_message)


__all__ = ["Handler", "InMemoryBus", "MessageBus", "RedisBus", "forward_patches"]
