"""Environment driven settings for the poolwatch worker."""

from __future__ import annotations

import json
import os
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .contracts import DEFAULT_CACHE_KEY, DEFAULT_CHANNEL
from .fetch import RetryPolicy
from .models import TokenConfig

DEFAULT_TOKENS: tuple[TokenConfig, ...] = (
    TokenConfig("USDT (ETH)", "0xdac17f958d2ee523a2206206994597c13d831ec7", "ethereum"),
    TokenConfig("USDC (ETH)", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", "ethereum"),
    TokenConfig("WETH (ETH)", "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "ethereum"),
    TokenConfig("WBTC (ETH)", "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", "ethereum"),
)


class TokenSpec(BaseModel):
    label: str = Field(min_length=1)
    address: str = Field(min_length=1)
    platform: str = "ethereum"

    def to_config(self) -> TokenConfig:
        return TokenConfig(label=self.label, address=self.address, platform=self.platform)


class Settings(BaseModel):
    """Validated worker configuration. Durations are in seconds."""

    redis_url: str = "redis://127.0.0.1:6379"
    cache_key: str = DEFAULT_CACHE_KEY
    cache_ttl: float = Field(45.0, gt=0)
    pub_channel: str = DEFAULT_CHANNEL
    push_threshold: float = Field(0.02, ge=0)
    push_cooldown: float = Field(15.0, ge=0)
    last_pub_ttl: float = Field(60.0, gt=0)
    refresh_interval: float = Field(15.0, gt=0)
    dexscreener_url: str = "https://api.dexscreener.com"
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    dexscreener_timeout: float = Field(8.0, gt=0)
    coingecko_timeout: float = Field(8.0, gt=0)
    retry_base: float = Field(0.3, ge=0)
    retry_cap: float = Field(5.0, ge=0)
    retry_max_attempts: int = Field(5, ge=1)
    retry_max_throttled: int = Field(20, ge=0)
    native_coin_id: str = "solana"
    native_price_ttl: float = Field(300.0, gt=0)
    tokens: List[TokenSpec] = Field(
        default_factory=lambda: [
            TokenSpec(label=t.label, address=t.address, platform=t.platform) for t in DEFAULT_TOKENS
        ]
    )

    @field_validator("redis_url")
    @classmethod
    def _redis_scheme(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(f"unsupported redis URL scheme: {value}")
        return value

    @field_validator("tokens")
    @classmethod
    def _unique_labels(cls, value: List[TokenSpec]) -> List[TokenSpec]:
        labels = [token.label for token in value]
        if len(labels) != len(set(labels)):
            raise ValueError("token labels must be unique")
        return value

    @property
    def token_configs(self) -> List[TokenConfig]:
        return [token.to_config() for token in self.tokens]

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base=self.retry_base,
            cap=self.retry_cap,
            max_attempts=self.retry_max_attempts,
            max_throttled=self.retry_max_throttled,
        )


# env name -> (field, scale applied to the raw number)
_NUMERIC_ENV: Mapping[str, tuple[str, float]] = {
    "CACHE_TTL": ("cache_ttl", 1.0),
    "PUSH_THRESHOLD_PCT": ("push_threshold", 1.0),
    "PUSH_COOLDOWN_MS": ("push_cooldown", 0.001),
    "LAST_PUB_TTL_SECONDS": ("last_pub_ttl", 1.0),
    "REFRESH_INTERVAL": ("refresh_interval", 1.0),
    "DEXSCREENER_TIMEOUT": ("dexscreener_timeout", 0.001),
    "COINGECKO_TIMEOUT": ("coingecko_timeout", 0.001),
    "RETRY_BASE_MS": ("retry_base", 0.001),
    "RETRY_CAP_MS": ("retry_cap", 0.001),
    "NATIVE_PRICE_TTL": ("native_price_ttl", 1.0),
}

_INT_ENV: Mapping[str, str] = {
    "RETRY_MAX_ATTEMPTS": "retry_max_attempts",
    "RETRY_MAX_THROTTLED": "retry_max_throttled",
}

_STR_ENV: Mapping[str, str] = {
    "REDIS_URL": "redis_url",
    "CACHE_KEY": "cache_key",
    "PUB_CHANNEL": "pub_channel",
    "DEXSCREENER_URL": "dexscreener_url",
    "COINGECKO_URL": "coingecko_url",
    "NATIVE_COIN_ID": "native_coin_id",
}


def _env_float(env: Mapping[str, str], name: str) -> Optional[float]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric, got {raw!r}") from exc


def _env_tokens(env: Mapping[str, str]) -> Optional[List[Any]]:
    raw = env.get("TOKENS")
    if raw is None or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"TOKENS must be a JSON list: {exc}") from exc
    if not isinstance(parsed, list):
        raise ValueError("TOKENS must be a JSON list of {label, address, platform}")
    return parsed


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ``).

    Raises ``ValueError`` on malformed or out-of-range values.
    """

    source = os.environ if env is None else env
    values: dict[str, Any] = {}
    for name, field_name in _STR_ENV.items():
        raw = source.get(name)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()
    for name, (field_name, scale) in _NUMERIC_ENV.items():
        number = _env_float(source, name)
        if number is not None:
            values[field_name] = number * scale
    for name, field_name in _INT_ENV.items():
        number = _env_float(source, name)
        if number is not None:
            values[field_name] = int(number)
    tokens = _env_tokens(source)
    if tokens is not None:
        values["tokens"] = tokens
    try:
        return Settings(**values)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


__all__ = ["DEFAULT_TOKENS", "Settings", "TokenSpec", "load_settings"]
