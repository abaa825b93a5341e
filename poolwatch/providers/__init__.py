"""Upstream provider adapters."""

from .coingecko import CoinGeckoClient
from .dexscreener import DexScreenerClient

__all__ = ["CoinGeckoClient", "DexScreenerClient"]
