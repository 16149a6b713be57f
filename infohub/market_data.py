"""
Single-upstream market datasets: sentiment, dominance, stablecoins,
exchange reserves, klines, long/short ratio and liquidations.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from infohub.coinmarketcap import CoinMarketCap
from infohub.config import ConfigurationError
from infohub.models import Candle, FearGreedEntry, FearGreedHistory, Liquidation, dump
from infohub.normalize import to_float
from infohub.tiered_cache import TieredCache, cached
from infohub.upstream_client import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

ALTERNATIVE_ME_FNG = "https://api.alternative.me/fng/"
COINGECKO_GLOBAL = "https://api.coingecko.com/api/v3/global"
LLAMA_STABLECOINS = "https://stablecoins.llama.fi/stablecoins"
LLAMA_PROTOCOLS = "https://api.llama.fi/protocols"
BINANCE_KLINES = "https://api.binance.com/api/v3/klines"
BINANCE_LONG_SHORT = "https://fapi.binance.com/futures/data/globalLongShortAccountRatio"
OKX_LIQUIDATIONS = "https://www.okx.com/api/v5/public/liquidation-orders"

FEAR_GREED_TTL = 30 * 60
FEAR_GREED_HISTORY_TTL = 3600
FEAR_GREED_LIMITS = (7, 30, 90, 365)
DEFAULT_FEAR_GREED_LIMIT = 30
MARKET_TTL = 5 * 60
KLINES_TTL = 60
LONG_SHORT_TTL = 60
LIQUIDATIONS_TTL = 30

KLINE_INTERVALS = ("1m", "5m", "15m", "1h", "4h", "1d", "1w")
MAX_KLINES = 500
DEFAULT_KLINES = 200
MAX_LIQUIDATIONS = 100

STABLECOIN_MIN_MCAP = 1_000_000
TOP_STABLECOINS = 25
TOP_RESERVES = 25
TOP_RESERVE_CHAINS = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def _neutral_entry() -> Dict[str, Any]:
    return dump(FearGreedEntry(value=50, classification="Neutral", timestamp=_now_ms()))


def _neutral_history() -> Dict[str, Any]:
    return dump(FearGreedHistory(current=FearGreedEntry(**_neutral_entry())))


def _alternative_entry(entry: Dict[str, Any]) -> FearGreedEntry:
    return FearGreedEntry(
        value=int(to_float(entry.get("value"), 50)),
        classification=entry.get("value_classification") or "Neutral",
        timestamp=int(to_float(entry.get("timestamp"))) * 1000 or _now_ms(),
    )


def fear_greed_limit(requested: Optional[int]) -> int:
    """History length: one of 7/30/90/365 days, else 30."""
    return requested if requested in FEAR_GREED_LIMITS else DEFAULT_FEAR_GREED_LIMIT


def _pct_change(current: float, previous: Optional[float]) -> Optional[float]:
    return (current - previous) / previous * 100 if previous else None


class MarketData:
    """
    Sentiment and market-wide datasets, each read through the tiered cache.

    Args:
        client: Shared upstream client
        cache: Shared tiered cache
        cmc: CoinMarketCap client, tried first for fear & greed
    """

    def __init__(self, client: UpstreamClient, cache: TieredCache, cmc: CoinMarketCap):
        self.client = client
        self.cache = cache
        self.cmc = cmc

    async def _fear_greed_from_cmc(self) -> Optional[Dict[str, Any]]:
        if not self.cmc.configured:
            return None
        try:
            data = await self.cmc.fear_greed_latest()
        except (UpstreamError, ConfigurationError) as e:
            logger.warning("CMC fear & greed failed, falling back to alternative.me: %s", e)
            return None
        if not data:
            return None

        update_time = data.get("update_time")
        timestamp = int(datetime.fromisoformat(update_time.replace("Z", "+00:00")).timestamp() * 1000) \
            if update_time else _now_ms()
        return dump(FearGreedEntry(
            value=int(data.get("value") if data.get("value") is not None else 50),
            classification=data.get("value_classification") or "Neutral",
            timestamp=timestamp,
        ))

    @cached(lambda: "fear-greed", FEAR_GREED_TTL, default=_neutral_entry)
    async def fear_greed(self) -> Dict[str, Any]:
        """Current index: CMC first, then alternative.me."""
        entry = await self._fear_greed_from_cmc()
        if entry is not None:
            return entry

        data = await self.client.get_json(ALTERNATIVE_ME_FNG, params={"limit": 1}, timeout=5.0)
        entries = data.get("data") or []
        if not entries:
            raise UpstreamError("alternative.me returned no data", None)
        return dump(_alternative_entry(entries[0]))

    @cached(lambda limit: f"fear-greed-history-{limit}", FEAR_GREED_HISTORY_TTL, default=_neutral_history)
    async def fear_greed_history(self, limit: int) -> Dict[str, Any]:
        """Daily history from alternative.me, newest first."""
        data = await self.client.get_json(ALTERNATIVE_ME_FNG, params={"limit": limit})
        entries = [_alternative_entry(e) for e in data.get("data") or []]
        if not entries:
            raise UpstreamError("alternative.me returned no history", None)
        return dump(FearGreedHistory(current=entries[0], history=entries))

    @cached(lambda: "dominance", MARKET_TTL)
    async def dominance(self) -> Dict[str, Any]:
        """Market-cap dominance and totals from CoinGecko."""
        payload = await self.client.get_json(COINGECKO_GLOBAL)
        d = payload.get("data") if isinstance(payload, dict) else None
        if not d:
            raise UpstreamError("Invalid response from CoinGecko", None)

        percentages = d.get("market_cap_percentage") or {}
        return {
            "btcDominance": percentages.get("btc"),
            "ethDominance": percentages.get("eth"),
            "totalMarketCap": (d.get("total_market_cap") or {}).get("usd"),
            "totalVolume24h": (d.get("total_volume") or {}).get("usd"),
            "activeCryptos": d.get("active_cryptocurrencies"),
            "markets": d.get("markets"),
            "marketCapChange24h": d.get("market_cap_change_percentage_24h_usd"),
            "updatedAt": d["updated_at"] * 1000 if d.get("updated_at") else _now_ms(),
            "dominanceBreakdown": percentages,
        }

    @cached(lambda: "stablecoins", MARKET_TTL)
    async def stablecoins(self) -> Dict[str, Any]:
        """USD-pegged stablecoins above $1M, largest 25, with 7d/30d supply change."""
        payload = await self.client.get_json(LLAMA_STABLECOINS, params={"includePrices": "true"})
        assets = payload.get("peggedAssets") if isinstance(payload, dict) else None
        if not assets:
            raise UpstreamError("Failed to fetch stablecoin data", None)

        stables = []
        for s in assets:
            if s.get("pegType") != "peggedUSD":
                continue
            mcap = (s.get("circulating") or {}).get("peggedUSD") or 0
            if mcap <= STABLECOIN_MIN_MCAP:
                continue
            chains = {}
            for chain, data in (s.get("chainCirculating") or {}).items():
                value = ((data or {}).get("current") or {}).get("peggedUSD") or 0
                if value > 0:
                    chains[chain] = value
            stables.append({
                "id": s.get("id"),
                "name": s.get("name"),
                "symbol": s.get("symbol"),
                "mcap": mcap,
                "price": s.get("price") if s.get("price") is not None else 1,
                "chains": chains,
                "chainCount": len(chains),
                "change7d": _pct_change(mcap, (s.get("circulatingPrevWeek") or {}).get("peggedUSD")),
                "change30d": _pct_change(mcap, (s.get("circulatingPrevMonth") or {}).get("peggedUSD")),
            })

        stables.sort(key=lambda s: s["mcap"], reverse=True)
        stables = stables[:TOP_STABLECOINS]
        return {
            "stablecoins": stables,
            "totalMcap": sum(s["mcap"] for s in stables),
            "count": len(stables),
        }

    @cached(lambda: "reserves", MARKET_TTL)
    async def reserves(self) -> Dict[str, Any]:
        """Centralized-exchange reserves (DefiLlama CEX protocols), largest 25."""
        protocols = await self.client.get_json(LLAMA_PROTOCOLS, timeout=20.0)
        cexes = [p for p in protocols if p.get("category") == "CEX" and (p.get("tvl") or 0) > 0]
        cexes.sort(key=lambda p: p["tvl"], reverse=True)
        top = cexes[:TOP_RESERVES]

        exchanges = []
        for p in top:
            chains = sorted(
                ({"chain": chain, "value": value} for chain, value in (p.get("chainTvls") or {}).items()
                 if isinstance(value, (int, float)) and value > 0),
                key=lambda c: c["value"],
                reverse=True
            )
            exchanges.append({
                "name": p.get("name", "").replace(" CEX", ""),
                "slug": p.get("slug"),
                "totalReserve": p["tvl"],
                "change1d": p.get("change_1d"),
                "change7d": p.get("change_7d"),
                "logo": p.get("logo") or "",
                "chains": chains[:TOP_RESERVE_CHAINS],
            })

        return {
            "totalReserves": sum(p["tvl"] for p in top),
            "exchangeCount": len(exchanges),
            "exchanges": exchanges,
            "updatedAt": _now_ms(),
        }

    async def klines(self, symbol: str, interval: str, limit: int) -> Dict[str, Any]:
        """The newest `limit` candles of the cached `MAX_KLINES` window."""
        window = await self._klines(symbol, interval)
        candles = window["candles"][-limit:] if limit > 0 else []
        return {**window, "candles": candles, "count": len(candles)}

    @cached(lambda symbol, interval: f"klines-{symbol}-{interval}", KLINES_TTL)
    async def _klines(self, symbol: str, interval: str) -> Dict[str, Any]:
        """
        Binance spot OHLCV for `symbol` against USDT, always `MAX_KLINES` deep.

        Falls back to `symbol` as a full pair name when `<symbol>USDT` is rejected.

        Raises:
            UpstreamError: When both attempts fail
        """
        pair = f"{symbol}USDT"
        try:
            rows = await self.client.get_json(
                BINANCE_KLINES, params={"symbol": pair, "interval": interval, "limit": MAX_KLINES}
            )
        except UpstreamError as first:
            try:
                rows = await self.client.get_json(
                    BINANCE_KLINES, params={"symbol": symbol, "interval": interval, "limit": MAX_KLINES}
                )
            except UpstreamError:
                raise UpstreamError(f"Binance returned {first.status_code or first}", first.status_code)
            pair = symbol

        candles: List[Dict[str, Any]] = [
            dump(Candle(
                time=k[0],
                open=to_float(k[1]),
                high=to_float(k[2]),
                low=to_float(k[3]),
                close=to_float(k[4]),
                volume=to_float(k[5]),
                close_time=k[6],
            ))
            for k in rows
        ]
        return {"pair": pair, "interval": interval, "candles": candles, "count": len(candles)}

    async def long_short(self, symbol: str) -> Dict[str, Any]:
        """Binance global long/short account ratio in percent; 50/50 when unavailable."""
        try:
            return await self._long_short(symbol)
        except UpstreamError as e:
            logger.warning("Long/short ratio for %s unavailable: %s", symbol, e)
            return {"longRatio": 50.0, "shortRatio": 50.0, "symbol": symbol}

    @cached(lambda symbol: f"longshort-{symbol}", LONG_SHORT_TTL)
    async def _long_short(self, symbol: str) -> Dict[str, Any]:
        rows = await self.client.get_json(
            BINANCE_LONG_SHORT, params={"symbol": symbol, "period": "5m", "limit": 1}
        )
        if not isinstance(rows, list) or not rows:
            raise UpstreamError(f"No long/short data for {symbol}", None)
        latest = rows[0]
        return {
            "longRatio": to_float(latest.get("longAccount")) * 100,
            "shortRatio": to_float(latest.get("shortAccount")) * 100,
            "symbol": symbol,
            "timestamp": latest.get("timestamp"),
        }

    async def liquidations(self, symbol: str, limit: int) -> Dict[str, Any]:
        """The newest `limit` OKX swap liquidations for `symbol`."""
        recent = await self._liquidations(symbol)
        data = recent["data"][:limit]
        return {**recent, "data": data, "meta": {**recent["meta"], "count": len(data)}}

    @cached(lambda symbol: f"liquidations-okx-{symbol}", LIQUIDATIONS_TTL)
    async def _liquidations(self, symbol: str) -> Dict[str, Any]:
        """
        Filled OKX liquidation orders on `<symbol>-USDT-SWAP`, newest first.

        OKX reports the side of the forced order: a forced buy closes a short.
        """
        res = await self.client.get_json(OKX_LIQUIDATIONS, params={
            "instType": "SWAP", "instId": f"{symbol}-USDT-SWAP", "state": "filled", "limit": MAX_LIQUIDATIONS,
        })
        if res.get("code") != "0":
            raise UpstreamError(f"OKX code {res.get('code')}: {res.get('msg')}", None)

        liquidations = []
        for entry in res.get("data") or []:
            for d in entry.get("details") or []:
                size = to_float(d.get("sz"))
                price = to_float(d.get("bkPx"))
                liquidations.append(Liquidation(
                    side="short" if d.get("side") == "buy" else "long",
                    size=size,
                    price=price,
                    value=size * price,
                    timestamp=int(to_float(d.get("ts"))),
                ))
        liquidations.sort(key=lambda liq: liq.timestamp, reverse=True)
        return {
            "symbol": symbol,
            "exchange": "OKX",
            "data": [dump(liq) for liq in liquidations],
            "meta": {"count": len(liquidations), "timestamp": _now_ms()},
        }
