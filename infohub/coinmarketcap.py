"""
CoinMarketCap Pro API: coin map, top-500 listings, fear & greed.

Every call needs CMC_API_KEY; without it the methods raise
ConfigurationError, and callers that can do without CMC data fall back.
"""

import logging
from typing import Any, Dict, List, Optional, Set
from infohub.config import ConfigurationError
from infohub.models import CoinSearchResult
from infohub.tiered_cache import TieredCache, cached
from infohub.upstream_client import UpstreamClient

logger = logging.getLogger(__name__)

CMC_API = "https://pro-api.coinmarketcap.com"

COIN_MAP_TTL = 2 * 3600
TOP_SYMBOLS_TTL = 3600
TOP_MOVERS_TTL = 30 * 60
SEARCH_LIMIT = 10
MOVERS_COUNT = 10


def cmc_image(cmc_id: int, size: int = 64) -> str:
    return f"https://s2.coinmarketcap.com/static/img/coins/{size}x{size}/{cmc_id}.png"


def _empty_movers() -> Dict[str, list]:
    return {"gainers": [], "losers": []}


class CoinMarketCap:
    """Client for the CMC endpoints, reading through the shared cache."""

    def __init__(self, client: UpstreamClient, cache: TieredCache, api_key: str):
        self.client = client
        self.cache = cache
        self.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.api_key:
            raise ConfigurationError("CMC_API_KEY not configured")
        return await self.client.get_json(
            f"{CMC_API}{path}",
            params=params,
            headers={"X-CMC_PRO_API_KEY": self.api_key},
        )

    @cached(lambda: "cmc-coin-map", COIN_MAP_TTL)
    async def coin_map(self) -> List[Dict[str, Any]]:
        """Active coins ordered by CMC rank."""
        data = await self._get(
            "/v1/cryptocurrency/map",
            params={"listing_status": "active", "limit": 5000, "sort": "cmc_rank"}
        )
        return data.get("data") or []

    async def listings(self, limit: int = 500) -> List[Dict[str, Any]]:
        """Latest listings by market cap, quoted in USD."""
        data = await self._get(
            "/v1/cryptocurrency/listings/latest",
            params={"limit": limit, "sort": "market_cap", "convert": "USD"}
        )
        return data.get("data") or []

    @cached(lambda: "cmc-top500-symbols", TOP_SYMBOLS_TTL)
    async def _top_symbol_list(self) -> List[str]:
        return [coin["symbol"].upper() for coin in await self.listings() if coin.get("symbol")]

    async def top_symbols(self) -> Set[str]:
        """
        Symbols of the 500 largest coins, or an empty set when unavailable.

        An empty set means "do not filter".
        """
        if not self.configured:
            return set()
        try:
            return set(await self._top_symbol_list())
        except Exception as e:
            logger.warning("Top-500 symbol list unavailable: %s", e)
            return set()

    async def search(self, query: str) -> List[CoinSearchResult]:
        """
        Match `query` against symbol, name and slug; best-ranked first.

        Raises:
            ConfigurationError: Without an API key
            UpstreamError: When the coin map cannot be loaded
        """
        q = query.strip().lower()
        if not q:
            return []

        matches = [
            coin for coin in await self.coin_map()
            if q in (coin.get("symbol") or "").lower()
            or q in (coin.get("name") or "").lower()
            or q in (coin.get("slug") or "").lower()
        ]
        matches.sort(key=lambda coin: coin.get("rank") or 9999)

        return [
            CoinSearchResult(
                id=coin.get("slug", ""),
                name=coin.get("name", ""),
                api_symbol=(coin.get("symbol") or "").lower(),
                symbol=coin.get("symbol") or "",
                market_cap_rank=coin.get("rank") or None,
                thumb=cmc_image(coin["id"], 64),
                large=cmc_image(coin["id"], 128),
            )
            for coin in matches[:SEARCH_LIMIT]
        ]

    @cached(lambda exchange_symbols: "top-movers", TOP_MOVERS_TTL, default=_empty_movers)
    async def top_movers(self, exchange_symbols: Set[str]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Biggest 24h gainers and losers among the top 500.

        Args:
            exchange_symbols: Symbols listed on tracked exchanges; empty means no restriction
        """
        coins = []
        for coin in await self.listings():
            usd = (coin.get("quote") or {}).get("USD") or {}
            symbol = (coin.get("symbol") or "").upper()
            if usd.get("percent_change_24h") is None:
                continue
            if exchange_symbols and symbol not in exchange_symbols:
                continue
            coins.append({
                "symbol": coin.get("symbol"),
                "name": coin.get("name"),
                "slug": coin.get("slug"),
                "cmcId": coin.get("id"),
                "price": usd.get("price"),
                "change24h": usd["percent_change_24h"],
                "marketCap": usd.get("market_cap"),
                "volume24h": usd.get("volume_24h"),
            })

        coins.sort(key=lambda c: c["change24h"], reverse=True)
        return {
            "gainers": coins[:MOVERS_COUNT],
            "losers": list(reversed(coins[-MOVERS_COUNT:])),
        }

    async def fear_greed_latest(self) -> Optional[Dict[str, Any]]:
        """CMC fear & greed index, or None when the response carries no data."""
        data = await self._get("/v3/fear-and-greed/latest")
        return data.get("data") or None
