"""
Application container: one upstream client, one tiered cache, and the
services built on them. Created at startup and closed at shutdown.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple
from infohub import database
from infohub.aggregator import AggregateDataset, AllSourcesFailedError, classify_health
from infohub.coinmarketcap import CoinMarketCap
from infohub.config import Settings
from infohub.funding_sources import FUNDING, filter_by_asset_class
from infohub.market_data import MarketData
from infohub.models import SourceStatus, dump
from infohub.oi_sources import OPEN_INTEREST
from infohub.options import OPTIONS, summarize_options
from infohub.postgres_cache import PostgresCache
from infohub.snapshots import (
    SnapshotJob, get_bulk_funding_history, get_oi_deltas, select_top_symbols
)
from infohub.ticker_sources import TICKERS
from infohub.tiered_cache import CacheResult, CacheSource, MemoryCache, TieredCache, cached
from infohub.upstream_client import UpstreamClient, UpstreamError
from infohub.whales import WhaleTracker

logger = logging.getLogger(__name__)

HEALTH_DATASETS = (("funding", FUNDING), ("openinterest", OPEN_INTEREST), ("tickers", TICKERS))

OI_DELTA_TTL = 5 * 60
HEATMAP_TOP_N = 40
HEATMAP_FALLBACK_SYMBOLS = ["BTC", "ETH", "SOL", "XRP", "DOGE", "ADA", "AVAX", "LINK", "DOT", "MATIC"]

# Fewer distinct ticker symbols than this means the ticker load was partial
MIN_EXCHANGE_SYMBOLS = 50


def _now_ms() -> int:
    return int(time.time() * 1000)


class InfoHub:
    """
    Owns shared resources and exposes the datasets served by the API.

    Args:
        settings: Runtime configuration
        client: Upstream client; created from settings when omitted
        cache: Tiered cache; when omitted, L2 is the api_cache table if a
            database is configured
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[UpstreamClient] = None,
        cache: Optional[TieredCache] = None
    ):
        self.settings = settings
        self.client = client or UpstreamClient(timeout=settings.upstream_timeout)
        if cache is None:
            cache = TieredCache(
                durable=PostgresCache() if database.is_configured() else None,
                memory=MemoryCache(max_entries=settings.cache_max_entries),
            )
        self.cache = cache
        self.cmc = CoinMarketCap(self.client, self.cache, settings.cmc_api_key)
        self.market = MarketData(self.client, self.cache, self.cmc)
        self.whales = WhaleTracker(self.client, self.cache)

    async def load_dataset(self, dataset: AggregateDataset) -> CacheResult:
        """Aggregate `dataset` through the cache, each source bounded by the upstream timeout."""
        return await dataset.load(self.client, self.cache, self.settings.upstream_timeout)

    async def funding(self, asset_class: str) -> Tuple[Dict[str, Any], CacheSource]:
        """
        Funding aggregate filtered by asset class.

        Raises:
            AllSourcesFailedError: When every exchange failed and nothing is cached
        """
        result, top_symbols = await asyncio.gather(
            self.load_dataset(FUNDING),
            self.cmc.top_symbols(),
        )
        data = filter_by_asset_class(result.value["data"], asset_class, top_symbols)
        meta = dict(result.value["meta"], totalEntries=len(data), assetClass=asset_class)
        return {"data": data, "health": result.value["health"], "meta": meta}, result.source

    async def options(self, currency: str) -> Tuple[Dict[str, Any], CacheSource]:
        """
        Options analytics for BTC or ETH across the four options venues.

        Raises:
            AllSourcesFailedError: When every venue failed and nothing is cached
        """
        result = await self.load_dataset(OPTIONS[currency])
        return summarize_options(currency, result.value), result.source

    async def exchange_symbols(self) -> Set[str]:
        """Symbols traded on the tracked exchanges, or empty when tickers are unavailable."""
        try:
            result = await self.load_dataset(TICKERS)
        except (AllSourcesFailedError, UpstreamError) as e:
            logger.warning("Ticker symbols unavailable: %s", e)
            return set()
        symbols = {t["symbol"].upper() for t in result.value["data"] if t.get("symbol")}
        return symbols if len(symbols) > MIN_EXCHANGE_SYMBOLS else set()

    async def top_movers(self) -> Dict[str, Any]:
        return await self.cmc.top_movers(await self.exchange_symbols())

    @cached(lambda: "oi-delta", OI_DELTA_TTL)
    async def _oi_deltas(self) -> Dict[str, Any]:
        deltas = await asyncio.to_thread(self._query_oi_deltas)
        return {
            "data": [dump(d) for d in deltas],
            "meta": {
                "count": len(deltas),
                "timestamp": _now_ms(),
                "note": "OI changes computed from periodic snapshots. 1h/4h/24h values are "
                        "percentage changes; null means no snapshot near that horizon.",
            },
        }

    def _query_oi_deltas(self):
        with database.get_db_context() as db:
            return get_oi_deltas(db)

    async def oi_deltas(self) -> Dict[str, Any]:
        """Per-symbol OI changes from snapshots; empty without a database."""
        if not database.is_configured():
            return {"data": [], "meta": {"count": 0, "timestamp": _now_ms()}}
        return await self._oi_deltas()

    async def heatmap_symbols(self) -> List[str]:
        """The symbols quoted on the most exchanges right now."""
        try:
            result = await self.load_dataset(FUNDING)
        except (AllSourcesFailedError, UpstreamError) as e:
            logger.warning("Funding unavailable for heatmap, using fallback symbols: %s", e)
            return list(HEATMAP_FALLBACK_SYMBOLS)
        return select_top_symbols(result.value["data"], HEATMAP_TOP_N)

    async def funding_heatmap(self, days: int) -> Dict[str, Any]:
        """
        Daily average funding for the best-covered symbols.

        Raises:
            ConfigurationError: Without a database
        """
        def query(symbols: List[str]) -> Dict[str, List[Dict[str, Any]]]:
            with database.get_db_context() as db:
                return get_bulk_funding_history(db, symbols, days, _now_ms())

        symbols = await self.heatmap_symbols()
        if not symbols:
            return {"symbols": [], "days": days, "data": {}}
        return {"symbols": symbols, "days": days, "data": await asyncio.to_thread(query, symbols)}

    async def health(self) -> Dict[str, Any]:
        """Health of the three aggregates plus a flat list of source errors."""
        async def route_health(dataset: AggregateDataset) -> Dict[str, Any]:
            try:
                result = await self.load_dataset(dataset)
            except Exception as e:
                logger.warning("Health check could not load %s: %s", dataset.key, e)
                return {
                    "health": [],
                    "cache": "ERROR",
                    "meta": {"totalExchanges": 0, "activeExchanges": 0, "totalEntries": 0,
                             "timestamp": _now_ms()},
                }
            return {
                "health": result.value["health"],
                "cache": result.source.value,
                "meta": result.value["meta"],
            }

        loaded = await asyncio.gather(*(route_health(dataset) for _, dataset in HEALTH_DATASETS))
        routes = {name: payload for (name, _), payload in zip(HEALTH_DATASETS, loaded)}

        errors = [
            {
                "exchange": h["name"],
                "route": name,
                "error": h.get("error") or "Unknown error",
                "latencyMs": h.get("latencyMs", 0),
            }
            for name, payload in routes.items()
            for h in payload["health"]
            if h["status"] == SourceStatus.ERROR.value
        ]
        total_active = sum(r["meta"]["activeExchanges"] for r in routes.values())
        total_exchanges = sum(r["meta"]["totalExchanges"] for r in routes.values())

        return {
            "status": classify_health(total_active, total_exchanges, len(errors)).value,
            "timestamp": _now_ms(),
            "routes": routes,
            "errors": errors,
        }

    async def run_snapshot(self):
        return await SnapshotJob(self).run()

    async def aclose(self):
        """Flush pending cache writes and close the HTTP client."""
        await self.cache.close()
        await self.client.close()
