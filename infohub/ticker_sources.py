"""
24h ticker sources for USDT-margined perpetuals.
"""

from typing import Any, List, Optional
from infohub.aggregator import AggregateDataset, RawRecord, Source
from infohub.models import Ticker
from infohub.normalize import is_crypto_symbol, to_float
from infohub.upstream_client import UpstreamClient, UpstreamError


def _pct_change(last: float, open_: float) -> float:
    return (last - open_) / open_ * 100 if open_ else 0.0


def _record(symbol: str, last: Any, change_pct: float, high: Any, low: Any,
            volume: Any, quote_volume: Any) -> RawRecord:
    return {
        "symbol": symbol,
        "lastPrice": to_float(last),
        "priceChangePercent24h": change_pct,
        "high24h": to_float(high),
        "low24h": to_float(low),
        "volume24h": to_float(volume),
        "quoteVolume24h": to_float(quote_volume),
    }


async def fetch_binance(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://fapi.binance.com/fapi/v1/ticker/24hr")
    return [
        _record(t["symbol"].replace("USDT", ""), t["lastPrice"], to_float(t.get("priceChangePercent")),
                t.get("highPrice"), t.get("lowPrice"), t.get("volume"), t.get("quoteVolume"))
        for t in data
        if t["symbol"].endswith("USDT")
    ]


async def fetch_bybit(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://api.bybit.com/v5/market/tickers", params={"category": "linear"})
    if data.get("retCode") != 0:
        raise UpstreamError(f"Bybit retCode {data.get('retCode')}", None)
    return [
        _record(t["symbol"].replace("USDT", ""), t["lastPrice"], to_float(t.get("price24hPcnt")) * 100,
                t.get("highPrice24h"), t.get("lowPrice24h"), t.get("volume24h"), t.get("turnover24h"))
        for t in data["result"]["list"]
        if t["symbol"].endswith("USDT")
    ]


async def fetch_okx(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://www.okx.com/api/v5/market/tickers", params={"instType": "SWAP"})
    if data.get("code") != "0":
        raise UpstreamError(f"OKX code {data.get('code')}", None)
    records = []
    for t in data["data"]:
        if not t["instId"].endswith("-USDT-SWAP"):
            continue
        last = to_float(t.get("last"))
        # volCcy24h is in base coin for swaps
        base_volume = to_float(t.get("volCcy24h"))
        records.append(_record(t["instId"].replace("-USDT-SWAP", ""), last,
                               _pct_change(last, to_float(t.get("open24h"))), t.get("high24h"),
                               t.get("low24h"), base_volume, base_volume * last))
    return records


async def fetch_bitget(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json(
        "https://api.bitget.com/api/v2/mix/market/tickers", params={"productType": "USDT-FUTURES"}
    )
    if data.get("code") != "00000":
        raise UpstreamError(f"Bitget code {data.get('code')}", None)
    return [
        _record(t["symbol"].replace("USDT", ""), t.get("lastPr"), to_float(t.get("change24h")) * 100,
                t.get("high24h"), t.get("low24h"), t.get("baseVolume"), t.get("quoteVolume"))
        for t in data["data"]
        if t["symbol"].endswith("USDT")
    ]


async def fetch_hyperliquid(client: UpstreamClient) -> List[RawRecord]:
    meta, contexts = await client.post_json("https://api.hyperliquid.xyz/info", {"type": "metaAndAssetCtxs"})
    universe = meta.get("universe", [])
    records = []
    for index, ctx in enumerate(contexts):
        if index >= len(universe):
            break
        last = to_float(ctx.get("markPx"))
        # No 24h high/low on this endpoint
        records.append(_record(universe[index]["name"], last, _pct_change(last, to_float(ctx.get("prevDayPx"))),
                               0, 0, ctx.get("dayBaseVlm"), ctx.get("dayNtlVlm")))
    return records


async def fetch_gateio(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://api.gateio.ws/api/v4/futures/usdt/tickers")
    return [
        _record(t["contract"].replace("_USDT", ""), t.get("last"), to_float(t.get("change_percentage")),
                t.get("high_24h"), t.get("low_24h"), t.get("volume_24h_base"), t.get("volume_24h_quote"))
        for t in data
        if t.get("contract", "").endswith("_USDT")
    ]


async def fetch_mexc(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://contract.mexc.com/api/v1/contract/ticker")
    if not data.get("success"):
        raise UpstreamError("MEXC returned success=false", None)
    return [
        _record(t["symbol"].replace("_USDT", ""), t.get("lastPrice"), to_float(t.get("riseFallRate")) * 100,
                t.get("high24Price"), t.get("lower24Price"), t.get("volume24"), t.get("amount24"))
        for t in data["data"]
        if t["symbol"].endswith("_USDT")
    ]


TICKER_SOURCES = [
    Source("Binance", fetch_binance),
    Source("Bybit", fetch_bybit),
    Source("OKX", fetch_okx),
    Source("Bitget", fetch_bitget),
    Source("Hyperliquid", fetch_hyperliquid),
    Source("Gate.io", fetch_gateio),
    Source("MEXC", fetch_mexc),
]


def normalize_ticker(record: RawRecord, exchange: str) -> Optional[Ticker]:
    if record["lastPrice"] <= 0 or not is_crypto_symbol(record["symbol"]):
        return None
    return Ticker(exchange=exchange, **record)


TICKERS = AggregateDataset(key="tickers", ttl=60, sources=TICKER_SOURCES, normalize=normalize_ticker)
