from datetime import datetime, timezone
import httpx
import pytest
from infohub import options
from infohub.options import OPTIONS, max_pain, parse_expiry, summarize_options

FEB_28_2025 = int(datetime(2025, 2, 28, 8, tzinfo=timezone.utc).timestamp() * 1000)


def inst(exchange, kind, strike, oi, iv=0.0, spot=100.0):
    return {"exchange": exchange, "instrumentName": f"X-{strike}", "optionType": kind,
            "strike": strike, "expiryTimestamp": 0, "openInterestUsd": oi, "markIV": iv,
            "underlyingPrice": spot}


@pytest.mark.parametrize("code, expected", [
    ("28FEB25", FEB_28_2025),
    ("250228", FEB_28_2025),
    ("31FEB25", 0),
    ("28XYZ25", 0),
    ("", 0),
])
def test_parse_expiry(code, expected):
    assert parse_expiry(code) == expected


def test_max_pain_picks_cheapest_settlement():
    strike_oi = {
        90.0: {"callOI": 100.0, "putOI": 0.0},
        100.0: {"callOI": 50.0, "putOI": 50.0},
        110.0: {"callOI": 0.0, "putOI": 100.0},
    }

    assert max_pain(strike_oi, 100.0) == 100.0
    assert max_pain({}, 100.0) == 100.0


def test_summary_merges_exchanges():
    payload = {"data": [
        inst("Deribit", "call", 100.0, 300.0, iv=50.0),
        inst("Deribit", "put", 90.0, 100.0, iv=60.0),
        inst("OKX", "call", 100.0, 100.0, iv=70.0, spot=102.0),
        inst("OKX", "put", 200.0, 50.0, iv=80.0, spot=0.0),
    ], "health": []}

    summary = summarize_options("BTC", payload)

    assert summary["underlyingPrice"] == 100.0
    assert summary["maxPain"] == 100.0
    assert summary["totalCallOI"] == 400.0
    assert summary["totalPutOI"] == 150.0
    assert summary["putCallRatio"] == pytest.approx(0.375)
    assert summary["instrumentCount"] == 4
    assert summary["strikeData"] == [
        {"strike": 90.0, "callOI": 0.0, "putOI": 100.0},
        {"strike": 100.0, "callOI": 400.0, "putOI": 0.0},
    ]
    assert summary["ivSmile"] == [
        {"strike": 90.0, "callIV": 0.0, "putIV": 60.0},
        {"strike": 100.0, "callIV": 60.0, "putIV": 0.0},
    ]
    deribit, okx = summary["exchangeBreakdown"]
    assert (deribit["exchange"], deribit["totalOI"], deribit["instruments"]) == ("Deribit", 400.0, 2)
    assert deribit["share"] == pytest.approx(400 / 550 * 100)
    assert okx["exchange"] == "OKX"


def test_summary_without_call_oi_has_zero_ratio():
    summary = summarize_options("ETH", {"data": [inst("Bybit", "put", 100.0, 10.0)], "health": []})

    assert summary["putCallRatio"] == 0.0
    assert summary["totalOI"] == 10.0


@pytest.mark.asyncio
async def test_deribit_open_interest_in_usd(upstream):
    client = upstream({"www.deribit.com/api/v2/public/get_book_summary_by_currency": {"result": [
        {"instrument_name": "BTC-28FEB25-95000-C", "open_interest": 10, "underlying_price": 100000,
         "mark_iv": 55.5},
        {"instrument_name": "BTC-28FEB25-80000-P", "open_interest": 2, "underlying_price": 100000},
    ]}})

    records = await options.fetch_deribit(client, "BTC")

    call, put = records
    assert call["optionType"] == "call"
    assert call["strike"] == 95000.0
    assert call["expiryTimestamp"] == FEB_28_2025
    assert call["openInterestUsd"] == 1_000_000.0
    assert call["markIV"] == 55.5
    assert put["optionType"] == "put"
    assert put["markIV"] == 0.0


@pytest.mark.asyncio
async def test_binance_filters_currency_and_uses_index_price(upstream):
    client = upstream({
        "eapi.binance.com/eapi/v1/index": {"indexPrice": "3000"},
        "eapi.binance.com/eapi/v1/ticker": [
            {"symbol": "ETH-250228-3200-C", "openInterest": "5", "markIV": "0.6"},
            {"symbol": "BTC-250228-95000-C", "openInterest": "1"},
        ],
    })

    [record] = await options.fetch_binance(client, "ETH")

    assert record["instrumentName"] == "ETH-250228-3200-C"
    assert record["openInterestUsd"] == 15000.0
    assert record["underlyingPrice"] == 3000.0


@pytest.mark.asyncio
async def test_okx_uses_coin_oi_spot_and_ticker_iv(upstream):
    client = upstream({
        "www.okx.com/api/v5/public/open-interest": {"code": "0", "data": [
            {"instId": "BTC-USD-250228-95000-P", "oi": "100", "oiCcy": "1.5"},
        ]},
        "www.okx.com/api/v5/market/tickers": {"code": "0", "data": [
            {"instId": "BTC-USD-250228-95000-P", "markIV": "0.45"},
        ]},
        "www.okx.com/api/v5/market/ticker": {"code": "0", "data": [{"last": "100000"}]},
    })

    [record] = await options.fetch_okx(client, "BTC")

    assert record["optionType"] == "put"
    assert record["openInterestUsd"] == 150000.0
    assert record["markIV"] == 0.45
    assert record["expiryTimestamp"] == FEB_28_2025


@pytest.mark.asyncio
async def test_bybit_spot_failure_falls_back_to_ticker_underlying(upstream):
    def tickers(request):
        if request.url.params["category"] == "spot":
            return httpx.Response(500)
        return httpx.Response(200, json={"retCode": 0, "result": {"list": [
            {"symbol": "BTC-28FEB25-95000-C-USDT", "openInterest": "2", "markIV": "0.5",
             "underlyingPrice": "98000"},
            {"symbol": "BTC-28FEB25-96000-C", "openInterest": ""},
        ]}})
    client = upstream({"api.bybit.com/v5/market/tickers": tickers})

    [record] = await options.fetch_bybit(client, "BTC")

    assert record["strike"] == 95000.0
    assert record["openInterestUsd"] == 196000.0


@pytest.mark.asyncio
async def test_options_dataset_reports_each_venue(upstream):
    client = upstream({"www.deribit.com/api/v2/public/get_book_summary_by_currency": {"result": [
        {"instrument_name": "ETH-28FEB25-3000-C", "open_interest": 1, "underlying_price": 3000},
    ]}})

    payload = await OPTIONS["ETH"].fetch(client, timeout=2.0)

    assert [r["exchange"] for r in payload["data"]] == ["Deribit"]
    statuses = {h["name"]: h["status"] for h in payload["health"]}
    assert statuses == {"Deribit": "ok", "Binance": "error", "OKX": "error", "Bybit": "error"}
