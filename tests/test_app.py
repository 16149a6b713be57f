import httpx
import pytest
from fastapi.testclient import TestClient
from app import app
from infohub.config import Settings
from infohub.database import get_db_context
from infohub.db_models import FundingSnapshot, OISnapshot
from infohub.hub import InfoHub
from infohub.tiered_cache import TieredCache

BINANCE_PREMIUM = [
    {"symbol": "BTCUSDT", "markPrice": "65000", "indexPrice": "64990",
     "lastFundingRate": "0.0001", "nextFundingTime": 1760000000000},
    {"symbol": "ETHUSDT", "markPrice": "3000", "indexPrice": "3000",
     "lastFundingRate": "0.0003", "nextFundingTime": 1760000000000},
    {"symbol": "TSLAUSDT", "markPrice": "250", "indexPrice": "250",
     "lastFundingRate": "0.0002", "nextFundingTime": 1760000000000},
]
BYBIT_TICKERS = {"retCode": 0, "result": {"list": [
    {"symbol": "BTCUSDT", "fundingRate": "-0.0001", "markPrice": "65010", "indexPrice": "64990",
     "nextFundingTime": "1760000000000"},
]}}
BYBIT_TICKERS_WITH_OI = {"retCode": 0, "result": {"list": [
    {**BYBIT_TICKERS["result"]["list"][0], "openInterest": "100", "openInterestValue": "6500000"},
]}}
FUNDING_ROUTES = {
    "fapi.binance.com/fapi/v1/premiumIndex": BINANCE_PREMIUM,
    "api.bybit.com/v5/market/tickers": BYBIT_TICKERS,
}


@pytest.fixture
def make_client(upstream):
    """TestClient over a hub whose upstreams answer from `routes`."""
    def factory(routes=None, **settings):
        app.state.hub = InfoHub(Settings(**settings), client=upstream(routes), cache=TieredCache())
        return TestClient(app)
    return factory


def test_root(make_client):
    response = make_client().get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["funding"].startswith("/api/funding")


def test_invalid_asset_class_is_400(make_client):
    response = make_client().get("/api/funding", params={"assetClass": "bonds"})

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid assetClass")


def test_funding_then_cache_hit(make_client):
    client = make_client(FUNDING_ROUTES)

    first = client.get("/api/funding")
    second = client.get("/api/funding")

    assert first.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    body = first.json()
    assert {(r["symbol"], r["exchange"]) for r in body["data"]} == {
        ("BTC", "Binance"), ("ETH", "Binance"), ("BTC", "Bybit")
    }
    assert body["meta"]["assetClass"] == "crypto"
    assert body["meta"]["totalEntries"] == 3
    assert body["meta"]["activeExchanges"] == 2


def test_funding_stocks_filter(make_client):
    response = make_client(FUNDING_ROUTES).get("/api/funding", params={"assetClass": "stocks"})

    assert [r["symbol"] for r in response.json()["data"]] == ["TSLA"]


def test_funding_with_only_empty_answers_is_200(make_client):
    response = make_client({"fapi.binance.com/fapi/v1/premiumIndex": []}).get("/api/funding")

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == []
    statuses = {h["name"]: h["status"] for h in body["health"]}
    assert statuses["Binance"] == "empty"
    assert statuses["Bybit"] == "error"


def test_funding_all_sources_failing_is_502(make_client):
    response = make_client().get("/api/funding")

    assert response.status_code == 502
    body = response.json()
    assert "error" in body
    assert all(h["status"] == "error" for h in body["health"])


def test_arbitrage(make_client):
    response = make_client(FUNDING_ROUTES).get("/api/funding/arbitrage")

    assert response.status_code == 200
    [btc] = response.json()["data"]
    assert btc["symbol"] == "BTC"
    assert btc["longExchange"] == "Bybit"
    assert btc["shortExchange"] == "Binance"
    assert btc["spread"] == pytest.approx(0.02)


def test_arbitrage_min_exchanges_validated(make_client):
    response = make_client().get("/api/funding/arbitrage", params={"minExchanges": 1})

    assert response.status_code == 400


def test_cron_without_secret_is_503(make_client):
    response = make_client().get("/api/cron/snapshot")

    assert response.status_code == 503
    assert "CRON_SECRET" in response.json()["error"]


def test_cron_wrong_token_is_401(make_client):
    response = make_client(cron_secret="s3cret").get(
        "/api/cron/snapshot", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401


def test_cron_without_database_is_503(make_client):
    response = make_client(cron_secret="s3cret").get(
        "/api/cron/snapshot", headers={"Authorization": "Bearer s3cret"})

    assert response.status_code == 503


def test_cron_partial_failure_reports_500(make_client, sqlite_db):
    routes = {**FUNDING_ROUTES, "api.bybit.com/v5/market/tickers": lambda request: httpx.Response(500)}
    client = make_client(routes, cron_secret="s3cret", prune_probability=0.0)

    response = client.get("/api/cron/snapshot", headers={"Authorization": "Bearer s3cret"})

    assert response.status_code == 500
    body = response.json()
    assert body["ok"] is False
    assert body["fundingInserted"] == 3
    assert "openinterest" in body["errors"]
    with get_db_context() as db:
        assert db.query(FundingSnapshot).count() == 3


def test_cron_success_persists_both_datasets(make_client, sqlite_db):
    routes = {**FUNDING_ROUTES, "api.bybit.com/v5/market/tickers": BYBIT_TICKERS_WITH_OI}
    client = make_client(routes, cron_secret="s3cret", prune_probability=0.0)

    response = client.get("/api/cron/snapshot", headers={"Authorization": "Bearer s3cret"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["errors"] == {}
    assert body["fundingInserted"] == 4
    assert body["oiInserted"] == 1
    assert body["pruned"] is None
    with get_db_context() as db:
        assert db.query(FundingSnapshot).count() == 4
        [oi] = db.query(OISnapshot).all()
        assert (oi.symbol, oi.exchange, oi.oi_usd) == ("BTC", "Bybit", 6_500_000.0)


def test_history_without_database_is_503(make_client):
    response = make_client().get("/api/history/funding", params={"symbol": "BTC"})

    assert response.status_code == 503


def test_history_requires_symbol(make_client, sqlite_db):
    response = make_client().get("/api/history/oi")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing symbol parameter"}


def test_history_clamps_days(make_client, sqlite_db):
    response = make_client().get("/api/history/funding", params={"symbol": "btc", "days": 400})

    body = response.json()
    assert body["symbol"] == "BTC"
    assert body["days"] == 90
    assert body["exchange"] == "all"
    assert body["points"] == []


def test_heatmap_without_database_is_503(make_client):
    assert make_client().get("/api/history/funding-heatmap").status_code == 503


def test_klines_validation(make_client):
    client = make_client()

    assert client.get("/api/klines").json() == {"error": "Missing symbol parameter"}
    response = client.get("/api/klines", params={"symbol": "BTC", "interval": "3h"})
    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid interval")


def test_klines_limit_is_clamped(make_client):
    def klines(request):
        assert request.url.params["limit"] == "500"
        return httpx.Response(200, json=[])

    response = make_client({"api.binance.com/api/v3/klines": klines}).get(
        "/api/klines", params={"symbol": "btc", "limit": 5000})

    assert response.status_code == 200
    assert response.json()["pair"] == "BTCUSDT"
    assert response.json()["count"] == 0


def test_admin_login_and_session(make_client):
    client = make_client(admin_password="hunter2", auth_secret="secret")

    assert client.post("/admin/api/auth", json={"password": "wrong"}).status_code == 401
    assert client.get("/admin/api/health").status_code == 401

    login = client.post("/admin/api/auth", json={"password": "hunter2"})
    assert login.status_code == 200
    assert login.json() == {"ok": True}
    assert "admin_session" in login.cookies
    assert "admin_verify" in login.cookies

    health = client.get("/admin/api/health")
    assert health.status_code == 200
    assert set(health.json()["routes"]) == {"funding", "openinterest", "tickers"}


def test_admin_forged_verifier_is_rejected(make_client):
    client = make_client(admin_password="hunter2", auth_secret="secret")
    client.cookies.set("admin_session", "abc")
    client.cookies.set("admin_verify", "def")

    response = client.get("/admin/api/health")

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid session"}


def test_admin_login_not_configured_is_503(make_client):
    assert make_client().post("/admin/api/auth", json={"password": "x"}).status_code == 503


def test_health_requires_api_key_when_set(make_client):
    client = make_client(admin_api_key="k")

    assert client.get("/api/health").status_code == 401
    response = client.get("/api/health", headers={"Authorization": "Bearer k"})
    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "no-store"
    body = response.json()
    assert body["status"] == "down"
    assert body["routes"]["funding"]["cache"] == "ERROR"


def test_health_lists_source_errors(make_client):
    response = make_client(FUNDING_ROUTES).get("/api/health")

    body = response.json()
    assert body["routes"]["funding"]["cache"] == "MISS"
    funding_errors = [e for e in body["errors"] if e["route"] == "funding"]
    assert "Binance" not in {e["exchange"] for e in funding_errors}
    assert "OKX" in {e["exchange"] for e in funding_errors}


def test_economic_calendar_month_filter(make_client):
    response = make_client().get("/api/economic-calendar", params={"month": "2026-01"})

    body = response.json()
    dates = [e["date"] for e in body["events"]]
    assert dates == sorted(dates)
    assert all(d.startswith("2026-01") for d in dates)
    assert body["meta"]["total"] == len(dates) > 0
    assert body["meta"]["month"] == "2026-01"


def test_economic_calendar_bad_month_is_400(make_client):
    assert make_client().get("/api/economic-calendar", params={"month": "Jan"}).status_code == 400


def test_token_unlocks_sorted(make_client):
    body = make_client().get("/api/token-unlocks").json()

    dates = [u["unlockDate"] for u in body["unlocks"]]
    assert dates == sorted(dates)
    assert body["meta"]["total"] == len(dates)
    assert all(u["isLarge"] == (u["percentOfSupply"] > 1.0) for u in body["unlocks"])


def test_oi_delta_without_database_is_empty(make_client):
    body = make_client().get("/api/oi-delta").json()

    assert body["data"] == []
    assert body["meta"]["count"] == 0
    assert body["meta"]["timestamp"] > 0
    assert "timestamp" not in body


def test_coin_search_empty_query(make_client):
    assert make_client().get("/api/coin-search").json() == {"results": []}


def test_coin_search_without_cmc_key_is_503(make_client):
    assert make_client().get("/api/coin-search", params={"q": "btc"}).status_code == 503


def test_fear_greed_history_limit_normalized(make_client):
    def fng(request):
        assert request.url.params["limit"] == "30"
        return httpx.Response(200, json={"data": [
            {"value": "40", "value_classification": "Fear", "timestamp": "1700000000"},
        ]})

    response = make_client({"api.alternative.me/fng/": fng}).get(
        "/api/fear-greed", params={"history": "true", "limit": 12})

    assert response.status_code == 200
    assert response.json()["current"]["value"] == 40


def test_options_rejects_other_currencies(make_client):
    response = make_client().get("/api/options", params={"currency": "SOL"})

    assert response.status_code == 400
    assert response.json() == {"error": "Only BTC and ETH options supported"}


def test_options_all_venues_failing_is_502(make_client):
    response = make_client().get("/api/options")

    assert response.status_code == 502
    assert len(response.json()["health"]) == 4


def test_options_no_instruments_is_502(make_client):
    response = make_client({
        "www.deribit.com/api/v2/public/get_book_summary_by_currency": {"result": []},
    }).get("/api/options")

    assert response.status_code == 502
    assert response.json() == {"error": "No options data available from any exchange"}


def test_options_summary(make_client):
    client = make_client({"www.deribit.com/api/v2/public/get_book_summary_by_currency": {"result": [
        {"instrument_name": "ETH-28FEB25-3000-C", "open_interest": 2, "underlying_price": 3000},
        {"instrument_name": "ETH-28FEB25-2800-P", "open_interest": 1, "underlying_price": 3000},
    ]}})

    response = client.get("/api/options", params={"currency": "eth"})

    assert response.status_code == 200
    assert response.headers["X-Cache"] == "MISS"
    body = response.json()
    assert body["currency"] == "ETH"
    assert body["instrumentCount"] == 2
    assert body["putCallRatio"] == pytest.approx(0.5)
    assert client.get("/api/options", params={"currency": "ETH"}).headers["X-Cache"] == "HIT"


def test_hl_whales_single_address(make_client):
    state = {"marginSummary": {"accountValue": "50000", "totalNtlPos": "0", "totalMarginUsed": "0"},
             "withdrawable": "50000", "assetPositions": [], "time": 1760000000000}

    response = make_client({"api.hyperliquid.xyz/info": state}).get(
        "/api/hl-whales", params={"address": "0xabc"})

    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "no-store, max-age=0"
    assert response.json()["label"] == "Custom"
    assert response.json()["positions"] == []


def test_hl_whales_unknown_address_is_404(make_client):
    response = make_client().get("/api/hl-whales", params={"address": "0xdead", "label": "Mine"})

    assert response.status_code == 404
    assert response.json()["error"] == "Could not fetch wallet data or wallet has no positions"


def test_longshort_defaults_to_btc(make_client):
    def ratio(request):
        assert request.url.params["symbol"] == "BTCUSDT"
        return httpx.Response(200, json=[{"longAccount": "0.55", "shortAccount": "0.45", "timestamp": 1}])

    body = make_client({"fapi.binance.com/futures/data/globalLongShortAccountRatio": ratio}).get(
        "/api/longshort").json()

    assert body["longRatio"] == pytest.approx(55.0)
    assert body["symbol"] == "BTCUSDT"


def test_liquidations_validation(make_client):
    client = make_client()

    assert client.get("/api/liquidations").json() == {"error": "Missing symbol parameter"}
    response = client.get("/api/liquidations", params={"symbol": "BTC", "exchange": "binance"})
    assert response.status_code == 400
    assert response.json()["error"].startswith("Only OKX")


def test_liquidations_limit_is_clamped(make_client):
    def orders(request):
        assert request.url.params["limit"] == "100"
        return httpx.Response(200, json={"code": "0", "data": [{"details": [
            {"side": "buy", "sz": "1", "bkPx": "65000", "ts": str(1760000000000 + i)} for i in range(3)
        ]}]})
    client = make_client({"www.okx.com/api/v5/public/liquidation-orders": orders})

    body = client.get("/api/liquidations", params={"symbol": "btc", "limit": 0}).json()

    assert body["symbol"] == "BTC"
    assert body["meta"]["count"] == 1
    assert body["data"][0]["timestamp"] == 1760000000002
