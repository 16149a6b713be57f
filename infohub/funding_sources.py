"""
Funding-rate sources.

Each fetcher returns raw records {symbol, rate, markPrice, indexPrice,
nextFundingTime} with `rate` exactly as the exchange quotes it; conversion to
percent per 8 hours happens in `normalize_funding` using RATE_UNITS.
"""

import asyncio
import math
import time
from typing import Any, Dict, List, Optional, Set
from infohub.aggregator import AggregateDataset, RawRecord, Source
from infohub.models import AssetClass, FundingRate
from infohub.normalize import normalize_symbol, to_8h_percent, to_float
from infohub.upstream_client import UpstreamClient, UpstreamError

HOUR_MS = 3600 * 1000
EIGHT_HOURS_MS = 8 * HOUR_MS

# Cap on per-instrument requests for two-step exchanges
OKX_MAX_INSTRUMENTS = 50


def _now_ms() -> int:
    return int(time.time() * 1000)


def _record(symbol: str, rate: Any, mark: Any = 0, index: Any = 0, next_time: Any = None,
            default_interval_ms: int = EIGHT_HOURS_MS) -> RawRecord:
    next_funding = int(to_float(next_time, 0)) or _now_ms() + default_interval_ms
    return {
        "symbol": symbol,
        "rate": rate,
        "markPrice": to_float(mark, 0.0),
        "indexPrice": to_float(index, 0.0),
        "nextFundingTime": next_funding,
    }


async def fetch_binance(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://fapi.binance.com/fapi/v1/premiumIndex")
    return [
        _record(item["symbol"].replace("USDT", ""), item["lastFundingRate"],
                item.get("markPrice"), item.get("indexPrice"), item.get("nextFundingTime"))
        for item in data
        if item["symbol"].endswith("USDT") and item.get("lastFundingRate") not in (None, "")
    ]


async def fetch_bybit(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://api.bybit.com/v5/market/tickers", params={"category": "linear"})
    if data.get("retCode") != 0:
        raise UpstreamError(f"Bybit retCode {data.get('retCode')}: {data.get('retMsg')}", None)
    return [
        _record(item["symbol"].replace("USDT", ""), item["fundingRate"],
                item.get("markPrice"), item.get("indexPrice"), item.get("nextFundingTime"))
        for item in data["result"]["list"]
        if item["symbol"].endswith("USDT") and item.get("fundingRate") not in (None, "")
    ]


async def fetch_okx(client: UpstreamClient) -> List[RawRecord]:
    """Two-step: list swaps, then one funding-rate request per instrument."""
    instruments = await client.get_json(
        "https://www.okx.com/api/v5/public/instruments", params={"instType": "SWAP"}
    )
    if instruments.get("code") != "0":
        raise UpstreamError(f"OKX code {instruments.get('code')}", None)

    swaps = [inst["instId"] for inst in instruments["data"] if inst["instId"].endswith("-USDT-SWAP")]

    async def one(inst_id: str) -> Optional[RawRecord]:
        try:
            res = await client.get_json(
                "https://www.okx.com/api/v5/public/funding-rate",
                params={"instId": inst_id}, timeout=5.0
            )
        except UpstreamError:
            return None
        if res.get("code") != "0" or not res.get("data"):
            return None
        fr = res["data"][0]
        return _record(inst_id.replace("-USDT-SWAP", ""), fr.get("fundingRate"),
                       next_time=fr.get("nextFundingTime"))

    results = await asyncio.gather(*(one(inst_id) for inst_id in swaps[:OKX_MAX_INSTRUMENTS]))
    return [r for r in results if r is not None]


async def fetch_bitget(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json(
        "https://api.bitget.com/api/v2/mix/market/tickers", params={"productType": "USDT-FUTURES"}
    )
    if data.get("code") != "00000":
        raise UpstreamError(f"Bitget code {data.get('code')}", None)
    return [
        _record(item["symbol"].replace("USDT", ""), item.get("fundingRate"),
                item.get("markPrice"), item.get("indexPrice"), item.get("nextFundingTime"))
        for item in data["data"]
        if item["symbol"].endswith("USDT")
    ]


async def fetch_hyperliquid(client: UpstreamClient) -> List[RawRecord]:
    meta, contexts = await client.post_json("https://api.hyperliquid.xyz/info", {"type": "metaAndAssetCtxs"})
    universe = meta.get("universe", [])
    records = []
    for index, ctx in enumerate(contexts):
        name = universe[index]["name"] if index < len(universe) else f"ASSET{index}"
        # Zero funding marks delisted markets
        if to_float(ctx.get("funding"), 0.0) == 0.0:
            continue
        records.append(_record(name, ctx["funding"], ctx.get("markPx"), ctx.get("oraclePx"),
                               default_interval_ms=HOUR_MS))
    return records


async def fetch_dydx(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://indexer.dydx.trade/v4/perpetualMarkets")
    markets: Dict[str, Any] = data.get("markets") or {}
    return [
        _record(ticker, market.get("nextFundingRate"), market.get("oraclePrice"),
                market.get("oraclePrice"), default_interval_ms=HOUR_MS)
        for ticker, market in markets.items()
        if ticker.endswith("-USD")
    ]


async def fetch_aster(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://fapi.asterdex.com/fapi/v1/premiumIndex")
    return [
        _record(item["symbol"], item["lastFundingRate"], item.get("markPrice"),
                item.get("indexPrice"), item.get("nextFundingTime"))
        for item in data
        if item.get("symbol") and item.get("lastFundingRate") not in (None, "")
    ]


async def fetch_lighter(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://mainnet.zklighter.elliot.ai/api/v1/funding-rates")
    rates = data.get("funding_rates", []) if isinstance(data, dict) else data
    return [
        _record(item["symbol"], item.get("rate", 0), default_interval_ms=HOUR_MS)
        for item in rates
        if item.get("exchange") == "lighter" and item.get("symbol") and to_float(item.get("rate"), 0.0) != 0.0
    ]


async def fetch_gateio(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://api.gateio.ws/api/v4/futures/usdt/contracts")
    records = []
    for item in data:
        rate = item.get("funding_rate") or item.get("funding_rate_indicative")
        if not item["name"].endswith("_USDT") or rate is None:
            continue
        next_apply = int(to_float(item.get("funding_next_apply"), 0)) * 1000
        records.append(_record(item["name"], rate, item.get("mark_price"),
                               item.get("index_price"), next_apply))
    return records


async def fetch_mexc(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://contract.mexc.com/api/v1/contract/ticker")
    if not data.get("success"):
        raise UpstreamError("MEXC returned success=false", None)
    return [
        _record(item["symbol"].replace("_USDT", ""), item["fundingRate"], item.get("fairPrice"),
                item.get("indexPrice"), item.get("nextSettlementTime"))
        for item in data["data"]
        if item["symbol"].endswith("_USDT") and item.get("fundingRate") is not None
    ]


async def fetch_kraken(client: UpstreamClient) -> List[RawRecord]:
    """Kraken quotes an absolute rate per contract; divide by mark price to get a fraction."""
    data = await client.get_json("https://futures.kraken.com/derivatives/api/v3/tickers")
    if data.get("result") != "success":
        raise UpstreamError(f"Kraken result {data.get('result')}", None)
    records = []
    for item in data["tickers"]:
        symbol = item.get("symbol", "")
        mark = to_float(item.get("markPrice"), 0.0)
        if not (symbol.startswith("PF_") and symbol.endswith("USD")) or item.get("fundingRate") is None or mark <= 0:
            continue
        base = symbol[3:-3]
        if base == "XBT":
            base = "BTC"
        records.append(_record(base, to_float(item["fundingRate"]) / mark, mark, item.get("indexPrice"),
                               default_interval_ms=HOUR_MS))
    return records


async def fetch_bingx(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://open-api.bingx.com/openApi/swap/v2/quote/premiumIndex")
    if data.get("code") != 0:
        raise UpstreamError(f"BingX code {data.get('code')}", None)
    return [
        _record(item["symbol"], item["lastFundingRate"], item.get("markPrice"),
                item.get("indexPrice"), item.get("nextFundingTime"))
        for item in data["data"]
        if item["symbol"].endswith("-USDT") and item.get("lastFundingRate") not in (None, "")
    ]


async def fetch_phemex(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://api.phemex.com/md/v2/ticker/24hr/all")
    result = data.get("result") if isinstance(data.get("result"), list) else []
    return [
        _record(item["symbol"], item["fundingRateRr"], item.get("markPriceRp"), item.get("indexPriceRp"))
        for item in result
        if item.get("symbol", "").endswith("USDT") and item.get("fundingRateRr") is not None
    ]


FUNDING_SOURCES = [
    Source("Binance", fetch_binance),
    Source("Bybit", fetch_bybit),
    Source("OKX", fetch_okx),
    Source("Bitget", fetch_bitget),
    Source("Hyperliquid", fetch_hyperliquid),
    Source("dYdX", fetch_dydx),
    Source("Aster", fetch_aster),
    Source("Lighter", fetch_lighter),
    Source("Gate.io", fetch_gateio),
    Source("MEXC", fetch_mexc),
    Source("Kraken", fetch_kraken),
    Source("BingX", fetch_bingx),
    Source("Phemex", fetch_phemex),
]


def normalize_funding(record: RawRecord, exchange: str) -> Optional[FundingRate]:
    """Convert the raw rate to percent per 8h and classify the symbol; drop unparseable rates."""
    raw_rate = to_float(record.get("rate"), math.nan)
    if math.isnan(raw_rate):
        return None

    symbol, asset_class = normalize_symbol(record["symbol"], exchange)
    predicted = record.get("predicted")
    return FundingRate(
        symbol=symbol,
        exchange=exchange,
        funding_rate=to_8h_percent(record["rate"], exchange),
        mark_price=record.get("markPrice", 0.0),
        index_price=record.get("indexPrice", 0.0),
        next_funding_time=record.get("nextFundingTime", 0),
        predicted_rate=to_8h_percent(predicted, exchange) if predicted is not None else None,
        asset_class=asset_class,
    )


FUNDING = AggregateDataset(key="funding", ttl=60, sources=FUNDING_SOURCES, normalize=normalize_funding)


def filter_by_asset_class(rows: List[Dict[str, Any]], asset_class: str, top_symbols: Set[str]) -> List[Dict[str, Any]]:
    """
    Select serialized funding rows for an asset-class filter.

    Crypto rows are limited to `top_symbols` unless it is empty. "all" keeps
    every non-crypto row; a specific non-crypto class is not limited.
    """
    def crypto_allowed(row: Dict[str, Any]) -> bool:
        return not top_symbols or row["symbol"].upper() in top_symbols

    if asset_class == "all":
        return [r for r in rows if r.get("assetClass", "crypto") != "crypto" or crypto_allowed(r)]
    if asset_class == AssetClass.CRYPTO.value:
        return [r for r in rows if r.get("assetClass", "crypto") == "crypto" and crypto_allowed(r)]
    return [r for r in rows if r.get("assetClass") == asset_class]
