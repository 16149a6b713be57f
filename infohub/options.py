"""
BTC and ETH options across Deribit, Binance, OKX and Bybit.

Fetchers return raw instruments with open interest already in USD;
`summarize_options` turns the merged list into max pain, put/call ratio,
OI by strike and the IV smile.
"""

import asyncio
import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional
from infohub.aggregator import AggregateDataset, RawRecord, Source
from infohub.models import OptionInstrument, OptionType
from infohub.normalize import to_float
from infohub.upstream_client import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

OPTION_CURRENCIES = ("BTC", "ETH")
OPTIONS_TTL = 60

# Strikes outside this band around spot are left out of strikeData and ivSmile
STRIKE_BAND = (0.7, 1.3)

MONTHS = {m: i + 1 for i, m in enumerate(
    ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"))}
_DMY = re.compile(r"^(\d{1,2})([A-Z]{3})(\d{2})$")
_YMD = re.compile(r"^(\d{2})(\d{2})(\d{2})$")


def _expiry_ms(year: int, month: int, day: int) -> int:
    # Options on all four venues settle at 08:00 UTC
    try:
        return int(datetime(2000 + year, month, day, 8, tzinfo=timezone.utc).timestamp() * 1000)
    except ValueError:
        return 0


def parse_expiry(code: str) -> int:
    """Expiry in epoch ms from "28FEB25" or "250228"; 0 when unparseable."""
    match = _DMY.match(code)
    if match and match.group(2) in MONTHS:
        return _expiry_ms(int(match.group(3)), MONTHS[match.group(2)], int(match.group(1)))
    match = _YMD.match(code)
    if match:
        return _expiry_ms(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    return 0


def _instrument(name: str, expiry: str, strike: str, kind: str, oi_usd: float,
                mark_iv: Any, underlying: float) -> RawRecord:
    return {
        "instrumentName": name,
        "optionType": OptionType.CALL.value if kind == "C" else OptionType.PUT.value,
        "strike": to_float(strike),
        "expiryTimestamp": parse_expiry(expiry),
        "openInterestUsd": oi_usd,
        "markIV": to_float(mark_iv),
        "underlyingPrice": underlying,
    }


async def _spot_price(fetch, label: str) -> float:
    try:
        return await fetch()
    except (UpstreamError, KeyError, IndexError) as e:
        logger.warning("%s spot price unavailable: %s", label, e)
        return 0.0


async def fetch_deribit(client: UpstreamClient, currency: str) -> List[RawRecord]:
    data = await client.get_json(
        "https://www.deribit.com/api/v2/public/get_book_summary_by_currency",
        params={"currency": currency, "kind": "option"}
    )
    summaries = data.get("result") or []
    if not summaries:
        return []
    underlying = to_float(summaries[0].get("underlying_price"))

    records = []
    for s in summaries:
        # BTC-28FEB25-95000-C
        parts = s["instrument_name"].split("-")
        if len(parts) != 4:
            continue
        records.append(_instrument(s["instrument_name"], parts[1], parts[2], parts[3],
                                   to_float(s.get("open_interest")) * underlying,
                                   s.get("mark_iv"), underlying))
    return records


async def fetch_binance(client: UpstreamClient, currency: str) -> List[RawRecord]:
    async def index_price() -> float:
        res = await client.get_json("https://eapi.binance.com/eapi/v1/index",
                                    params={"underlying": f"{currency}USDT"}, timeout=8.0)
        return to_float(res.get("indexPrice"))

    underlying, tickers = await asyncio.gather(
        _spot_price(index_price, "Binance options"),
        client.get_json("https://eapi.binance.com/eapi/v1/ticker"),
    )
    if not isinstance(tickers, list):
        raise UpstreamError("Binance options ticker is not a list", None)

    records = []
    for t in tickers:
        # BTC-250228-95000-C
        parts = t.get("symbol", "").split("-")
        if len(parts) != 4 or parts[0] != currency or parts[3] not in ("C", "P"):
            continue
        price = underlying or to_float(t.get("strikePrice"))
        records.append(_instrument(t["symbol"], parts[1], parts[2], parts[3],
                                   to_float(t.get("openInterest")) * price, t.get("markIV"), price))
    return records


async def fetch_okx(client: UpstreamClient, currency: str) -> List[RawRecord]:
    family = {"instType": "OPTION", "instFamily": f"{currency}-USD"}

    async def spot_price() -> float:
        res = await client.get_json("https://www.okx.com/api/v5/market/ticker",
                                    params={"instId": f"{currency}-USDT"}, timeout=5.0)
        return to_float(res["data"][0].get("last")) if res.get("code") == "0" else 0.0

    oi_data, tickers, underlying = await asyncio.gather(
        client.get_json("https://www.okx.com/api/v5/public/open-interest", params=family),
        client.get_json("https://www.okx.com/api/v5/market/tickers", params=family),
        _spot_price(spot_price, "OKX"),
    )
    if oi_data.get("code") != "0":
        raise UpstreamError(f"OKX code {oi_data.get('code')}", None)
    mark_ivs = {t["instId"]: t.get("markIV") for t in tickers.get("data", [])} \
        if tickers.get("code") == "0" else {}

    records = []
    for item in oi_data.get("data", []):
        # BTC-USD-250228-95000-C; oiCcy is in coins
        parts = item.get("instId", "").split("-")
        if len(parts) != 5 or parts[0] != currency or parts[4] not in ("C", "P"):
            continue
        records.append(_instrument(item["instId"], parts[2], parts[3], parts[4],
                                   to_float(item.get("oiCcy")) * (underlying or 1.0),
                                   mark_ivs.get(item["instId"]), underlying))
    return records


async def fetch_bybit(client: UpstreamClient, currency: str) -> List[RawRecord]:
    async def spot_price() -> float:
        res = await client.get_json("https://api.bybit.com/v5/market/tickers",
                                    params={"category": "spot", "symbol": f"{currency}USDT"}, timeout=5.0)
        return to_float(res["result"]["list"][0].get("lastPrice")) if res.get("retCode") == 0 else 0.0

    data, underlying = await asyncio.gather(
        client.get_json("https://api.bybit.com/v5/market/tickers",
                        params={"category": "option", "baseCoin": currency}),
        _spot_price(spot_price, "Bybit"),
    )
    if data.get("retCode") != 0:
        raise UpstreamError(f"Bybit retCode {data.get('retCode')}", None)

    records = []
    for t in (data.get("result") or {}).get("list") or []:
        # BTC-28FEB25-95000-C, sometimes with a settle-coin suffix
        parts = t.get("symbol", "").split("-")
        if len(parts) < 4 or not t.get("openInterest"):
            continue
        price = underlying or to_float(t.get("underlyingPrice"))
        records.append(_instrument(t["symbol"], parts[1], parts[2], parts[3],
                                   to_float(t.get("openInterest")) * price, t.get("markIV"), price))
    return records


def normalize_option(record: RawRecord, exchange: str) -> Optional[OptionInstrument]:
    if record["strike"] <= 0:
        return None
    return OptionInstrument(exchange=exchange, **record)


def _dataset(currency: str) -> AggregateDataset:
    return AggregateDataset(
        key=f"options-{currency}",
        ttl=OPTIONS_TTL,
        sources=[
            Source("Deribit", partial(fetch_deribit, currency=currency)),
            Source("Binance", partial(fetch_binance, currency=currency)),
            Source("OKX", partial(fetch_okx, currency=currency)),
            Source("Bybit", partial(fetch_bybit, currency=currency)),
        ],
        normalize=normalize_option,
    )


OPTIONS = {currency: _dataset(currency) for currency in OPTION_CURRENCIES}


def max_pain(strike_oi: Dict[float, Dict[str, float]], underlying: float) -> float:
    """
    The strike at which option holders lose the most, i.e. writers pay least.

    Intrinsic value at each candidate expiry price is weighted by USD OI and
    scaled by spot. Ties go to the lowest strike; with no strikes, spot.
    """
    scale = underlying or 1.0
    best, best_loss = underlying, float("inf")
    for test in sorted(strike_oi):
        loss = 0.0
        for strike, oi in strike_oi.items():
            if test > strike:
                loss += oi["callOI"] * (test - strike) / scale
            elif test < strike:
                loss += oi["putOI"] * (strike - test) / scale
        if loss < best_loss:
            best, best_loss = test, loss
    return best


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def summarize_options(currency: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Options analytics over the merged instruments of an options dataset payload."""
    instruments = payload["data"]

    prices = sorted(i["underlyingPrice"] for i in instruments if i["underlyingPrice"] > 0)
    underlying = prices[len(prices) // 2] if prices else 0.0

    strike_oi: Dict[float, Dict[str, float]] = defaultdict(lambda: {"callOI": 0.0, "putOI": 0.0})
    by_exchange: Dict[str, Dict[str, float]] = defaultdict(
        lambda: {"callOI": 0.0, "putOI": 0.0, "instruments": 0})
    ivs: Dict[float, Dict[str, List[float]]] = defaultdict(lambda: {"call": [], "put": []})
    lower, upper = underlying * STRIKE_BAND[0], underlying * STRIKE_BAND[1]

    for i in instruments:
        side = "callOI" if i["optionType"] == OptionType.CALL.value else "putOI"
        strike_oi[i["strike"]][side] += i["openInterestUsd"]
        venue = by_exchange[i["exchange"]]
        venue[side] += i["openInterestUsd"]
        venue["instruments"] += 1
        if lower <= i["strike"] <= upper and i["markIV"] > 0:
            ivs[i["strike"]][i["optionType"]].append(i["markIV"])

    total_call = sum(oi["callOI"] for oi in strike_oi.values())
    total_put = sum(oi["putOI"] for oi in strike_oi.values())
    total = total_call + total_put

    breakdown = [
        {
            "exchange": exchange,
            "callOI": oi["callOI"],
            "putOI": oi["putOI"],
            "totalOI": oi["callOI"] + oi["putOI"],
            "instruments": oi["instruments"],
            "share": (oi["callOI"] + oi["putOI"]) / total * 100 if total > 0 else 0.0,
        }
        for exchange, oi in by_exchange.items()
    ]
    breakdown.sort(key=lambda e: e["totalOI"], reverse=True)

    return {
        "currency": currency,
        "underlyingPrice": underlying,
        "maxPain": max_pain(strike_oi, underlying),
        "putCallRatio": total_put / total_call if total_call > 0 else 0.0,
        "totalCallOI": total_call,
        "totalPutOI": total_put,
        "totalOI": total,
        "instrumentCount": len(instruments),
        "strikeData": [
            {"strike": strike, **oi}
            for strike, oi in sorted(strike_oi.items())
            if lower <= strike <= upper
        ],
        "ivSmile": [
            {"strike": strike, "callIV": _mean(iv["call"]), "putIV": _mean(iv["put"])}
            for strike, iv in sorted(ivs.items())
        ],
        "exchangeBreakdown": breakdown,
        "health": payload["health"],
    }
