import copy
from typing import Any, Dict

import pytest

from poolwatch.logging_utils import reset_warn_once_cache

TOKEN_ADDRESS = "0xAbC"
QUOTE_ADDRESS = "0xq"

DEXSCREENER_PAIRS: Dict[str, Any] = {
    "schemaVersion": "1.0.0",
    "pairs": [
        {
            "pairAddress": "P1",
            "dexId": "uniswap",
            "baseToken": {"address": TOKEN_ADDRESS, "name": "Alpha", "symbol": "ALP"},
            "quoteToken": {"address": QUOTE_ADDRESS, "name": "Wrapped Ether", "symbol": "WETH"},
            "liquidity": {"usd": 1000},
            "volume": {"h24": 500},
            "txns": {"h24": {"buys": 3, "sells": 2}},
            "priceUsd": "2.0",
            "priceChange": {"h1": 1.0, "h24": -4.0},
        },
        {
            "pairAddress": "P2",
            "dexId": "sushiswap",
            "baseToken": {"address": TOKEN_ADDRESS, "name": "Alpha", "symbol": "ALP"},
            "quoteToken": {"address": QUOTE_ADDRESS, "name": "Wrapped Ether", "symbol": "WETH"},
            "liquidity": {"usd": 3000},
            "volume": {"h24": 100},
            "txns": {"h24": {"buys": 1}},
            "priceUsd": "2.1",
            "priceChange": {"h1": 3.0},
        },
        {
            "pairAddress": "P1",
            "dexId": "uniswap",
            "liquidity": {"usd": 99999},
        },
    ],
}

COINGECKO_CONTRACT: Dict[str, Any] = {
    "id": "alpha",
    "name": "Alpha Token",
    "symbol": "alp",
    "platforms": {"ethereum": "0xabc"},
    "detail_platforms": {"ethereum": {"decimal_place": 18, "contract_address": "0xabc"}},
    "image": {"thumb": "https://example.invalid/alpha.png"},
    "market_data": {
        "current_price": {"usd": 2.0},
        "market_cap": {"usd": 2_000_000},
        "price_change_percentage_1h_in_currency": {"usd": 0.5},
        "price_change_percentage_24h": 1.5,
    },
}


@pytest.fixture
def dex_payload() -> Dict[str, Any]:
    return copy.deepcopy(DEXSCREENER_PAIRS)


@pytest.fixture
def gecko_payload() -> Dict[str, Any]:
    return copy.deepcopy(COINGECKO_CONTRACT)


@pytest.fixture(autouse=True)
def _reset_warn_once() -> None:
    reset_warn_once_cache()
