"""
Open-interest sources.

Fetchers return raw records {symbol, openInterest, openInterestValue}; the
value is in USD. Tokenized stocks are dropped during normalization.
"""

import asyncio
from typing import Any, Dict, List, Optional
from infohub.aggregator import AggregateDataset, RawRecord, Source
from infohub.models import OpenInterest
from infohub.normalize import is_crypto_symbol, to_float
from infohub.upstream_client import UpstreamClient, UpstreamError

BINANCE_TOP_SYMBOLS = 30


def _record(symbol: str, oi: float, value: float) -> RawRecord:
    return {"symbol": symbol, "openInterest": oi, "openInterestValue": value}


async def fetch_binance(client: UpstreamClient) -> List[RawRecord]:
    """Two-step: rank by quote volume, then one OI request per top symbol."""
    tickers = await client.get_json("https://fapi.binance.com/fapi/v1/ticker/24hr")
    top = sorted(
        (t for t in tickers if t["symbol"].endswith("USDT")),
        key=lambda t: to_float(t.get("quoteVolume")),
        reverse=True
    )[:BINANCE_TOP_SYMBOLS]

    async def one(ticker: Dict[str, Any]) -> Optional[RawRecord]:
        try:
            res = await client.get_json(
                "https://fapi.binance.com/fapi/v1/openInterest",
                params={"symbol": ticker["symbol"]}, timeout=5.0
            )
        except UpstreamError:
            return None
        oi = to_float(res.get("openInterest"))
        return _record(ticker["symbol"].replace("USDT", ""), oi, oi * to_float(ticker.get("lastPrice")))

    results = await asyncio.gather(*(one(t) for t in top))
    return [r for r in results if r is not None]


async def fetch_bybit(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://api.bybit.com/v5/market/tickers", params={"category": "linear"})
    if data.get("retCode") != 0:
        raise UpstreamError(f"Bybit retCode {data.get('retCode')}", None)
    return [
        _record(t["symbol"].replace("USDT", ""), to_float(t.get("openInterest")), to_float(t.get("openInterestValue")))
        for t in data["result"]["list"]
        if t["symbol"].endswith("USDT")
    ]


async def fetch_okx(client: UpstreamClient) -> List[RawRecord]:
    oi_data, tickers = await asyncio.gather(
        client.get_json("https://www.okx.com/api/v5/public/open-interest", params={"instType": "SWAP"}),
        client.get_json("https://www.okx.com/api/v5/market/tickers", params={"instType": "SWAP"}),
    )
    if oi_data.get("code") != "0":
        raise UpstreamError(f"OKX code {oi_data.get('code')}", None)
    prices = {t["instId"]: to_float(t.get("last")) for t in tickers.get("data", [])} if tickers.get("code") == "0" else {}
    records = []
    for item in oi_data["data"]:
        inst_id = item["instId"]
        if not inst_id.endswith("-USDT-SWAP"):
            continue
        # oiCcy is in base coin; oi is in contracts
        coins = to_float(item.get("oiCcy"), to_float(item.get("oi")))
        records.append(_record(inst_id.replace("-USDT-SWAP", ""), coins, coins * prices.get(inst_id, 0.0)))
    return records


async def fetch_bitget(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json(
        "https://api.bitget.com/api/v2/mix/market/tickers", params={"productType": "USDT-FUTURES"}
    )
    if data.get("code") != "00000":
        raise UpstreamError(f"Bitget code {data.get('code')}", None)
    records = []
    for t in data["data"]:
        if not t["symbol"].endswith("USDT"):
            continue
        oi = to_float(t.get("holdingAmount"))
        records.append(_record(t["symbol"].replace("USDT", ""), oi, oi * to_float(t.get("lastPr"))))
    return records


async def fetch_hyperliquid(client: UpstreamClient) -> List[RawRecord]:
    meta, contexts = await client.post_json("https://api.hyperliquid.xyz/info", {"type": "metaAndAssetCtxs"})
    universe = meta.get("universe", [])
    records = []
    for index, ctx in enumerate(contexts):
        if index >= len(universe):
            break
        oi = to_float(ctx.get("openInterest"))
        records.append(_record(universe[index]["name"], oi, oi * to_float(ctx.get("markPx"))))
    return records


async def fetch_dydx(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://indexer.dydx.trade/v4/perpetualMarkets")
    markets: Dict[str, Any] = data.get("markets") or {}
    return [
        _record(ticker.replace("-USD", ""), to_float(m.get("openInterest")),
                to_float(m.get("openInterest")) * to_float(m.get("oraclePrice")))
        for ticker, m in markets.items()
        if ticker.endswith("-USD")
    ]


async def fetch_gateio(client: UpstreamClient) -> List[RawRecord]:
    """Gate.io position size is in contracts; quanto_multiplier converts to coins."""
    data, contracts = await asyncio.gather(
        client.get_json("https://api.gateio.ws/api/v4/futures/usdt/tickers"),
        client.get_json("https://api.gateio.ws/api/v4/futures/usdt/contracts"),
    )
    multipliers = {c["name"]: to_float(c.get("quanto_multiplier"), 1.0) for c in contracts}
    records = []
    for t in data:
        name = t.get("contract", "")
        if not name.endswith("_USDT"):
            continue
        oi = to_float(t.get("total_size"))
        records.append(_record(name.replace("_USDT", ""), oi,
                               oi * to_float(t.get("mark_price")) * multipliers.get(name, 1.0)))
    return records


async def fetch_mexc(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://contract.mexc.com/api/v1/contract/ticker")
    if not data.get("success"):
        raise UpstreamError("MEXC returned success=false", None)
    records = []
    for t in data["data"]:
        if not t["symbol"].endswith("_USDT"):
            continue
        oi = to_float(t.get("holdVol"))
        records.append(_record(t["symbol"].replace("_USDT", ""), oi, oi * to_float(t.get("lastPrice"))))
    return records


async def fetch_kraken(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://futures.kraken.com/derivatives/api/v3/tickers")
    if data.get("result") != "success":
        raise UpstreamError(f"Kraken result {data.get('result')}", None)
    records = []
    for t in data["tickers"]:
        symbol = t.get("symbol", "")
        if not (symbol.startswith("PF_") and symbol.endswith("USD")) or not t.get("openInterest"):
            continue
        base = symbol[3:-3]
        if base == "XBT":
            base = "BTC"
        oi = to_float(t.get("openInterest"))
        records.append(_record(base, oi, oi * to_float(t.get("markPrice"))))
    return records


async def fetch_bitmex(client: UpstreamClient) -> List[RawRecord]:
    data = await client.get_json("https://www.bitmex.com/api/v1/instrument/active")
    records = []
    for t in data:
        symbol = t.get("symbol", "")
        if not symbol.endswith("USDT") or not t.get("openInterest"):
            continue
        oi = to_float(t.get("openInterest"))
        value = to_float(t.get("openValue")) or oi * to_float(t.get("lastPrice"))
        records.append(_record(symbol.replace("USDT", ""), oi, value))
    return records


OI_SOURCES = [
    Source("Binance", fetch_binance),
    Source("Bybit", fetch_bybit),
    Source("OKX", fetch_okx),
    Source("Bitget", fetch_bitget),
    Source("Hyperliquid", fetch_hyperliquid),
    Source("dYdX", fetch_dydx),
    Source("Gate.io", fetch_gateio),
    Source("MEXC", fetch_mexc),
    Source("Kraken", fetch_kraken),
    Source("BitMEX", fetch_bitmex),
]


def normalize_open_interest(record: RawRecord, exchange: str) -> Optional[OpenInterest]:
    if record["openInterestValue"] <= 0 or not is_crypto_symbol(record["symbol"]):
        return None
    return OpenInterest(
        symbol=record["symbol"],
        exchange=exchange,
        open_interest=record["openInterest"],
        open_interest_value=record["openInterestValue"],
    )


OPEN_INTEREST = AggregateDataset(key="openinterest", ttl=60, sources=OI_SOURCES,
                                 normalize=normalize_open_interest)
