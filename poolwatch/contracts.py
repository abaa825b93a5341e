"""Canonical key and channel names used by the refresh cycle."""

from __future__ import annotations

DEFAULT_CACHE_KEY = "tokens:merged"
DEFAULT_CHANNEL = "token_updates"
NATIVE_PRICE_KEY = "sol:usd"


def last_published_key(address: str) -> str:
    """Return the cooldown marker key for a canonical token address."""

    return f"last_pub:{address}"


__all__ = [
    "DEFAULT_CACHE_KEY",
    "DEFAULT_CHANNEL",
    "NATIVE_PRICE_KEY",
    "last_published_key",
]
