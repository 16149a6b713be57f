import logging
import time
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from infohub import database, static_data
from infohub.admin import bearer_matches, clear_session, issue_session, password_matches, session_valid
from infohub.aggregator import AllSourcesFailedError
from infohub.arbitrage import compute_arbitrage
from infohub.config import ConfigurationError, Settings
from infohub.database import get_db
from infohub.hub import InfoHub
from infohub.market_data import DEFAULT_KLINES, KLINE_INTERVALS, MAX_KLINES, MAX_LIQUIDATIONS, fear_greed_limit
from infohub.models import AdminLogin, AssetClassFilter, dump
from infohub.oi_sources import OPEN_INTEREST
from infohub.options import OPTION_CURRENCIES
from infohub.scheduler import start_scheduler, stop_scheduler
from infohub.snapshots import get_funding_history, get_oi_history
from infohub.ticker_sources import TICKERS
from infohub.upstream_client import RateLimitError, UpstreamError

logger = logging.getLogger(__name__)

MAX_HISTORY_DAYS = 90
MAX_HEATMAP_DAYS = 30


def _now_ms() -> int:
    return int(time.time() * 1000)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler - runs on startup and shutdown."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    # Startup: database is optional; without it there is no L2 cache or history
    database.configure(settings.database_url)
    if database.is_configured():
        database.init_db()
    else:
        logger.warning("No POSTGRES_URL/DATABASE_URL set: durable cache, snapshots and history are disabled")

    hub = InfoHub(settings)
    app.state.hub = hub

    scheduler = None
    if database.is_configured():
        scheduler = start_scheduler(hub, settings.snapshot_interval_minutes)

    yield

    # Shutdown
    stop_scheduler(scheduler)
    await hub.aclose()


app = FastAPI(
    title="InfoHub",
    description="Crypto derivatives market-data API",
    version="0.1.0",
    lifespan=lifespan
)


def get_hub(request: Request) -> InfoHub:
    return request.app.state.hub


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return _error(400, "Invalid request")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("query", "body"))
    return _error(400, f"Invalid {field or 'request'}: {first.get('msg', 'invalid value')}")


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(_: Request, exc: ConfigurationError):
    return _error(503, str(exc))


@app.exception_handler(AllSourcesFailedError)
async def all_sources_failed_handler(_: Request, exc: AllSourcesFailedError):
    return _error(502, str(exc), health=[dump(h) for h in exc.health])


@app.exception_handler(RateLimitError)
async def rate_limit_handler(_: Request, exc: RateLimitError):
    return _error(429, "Rate limit exceeded. Please try again later.")


@app.exception_handler(UpstreamError)
async def upstream_exception_handler(_: Request, exc: UpstreamError):
    return _error(502, f"Upstream error: {exc}")


def require_api_key(request: Request, authorization: Optional[str] = Header(None)):
    """Bearer ADMIN_API_KEY, enforced only when the key is set."""
    api_key = get_hub(request).settings.admin_api_key
    if api_key and not bearer_matches(authorization, api_key):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_admin_session(
    request: Request,
    admin_session: Optional[str] = Cookie(None),
    admin_verify: Optional[str] = Cookie(None)
):
    """Both admin cookies must be present, and the verifier must match the session."""
    if not admin_session or not admin_verify:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not session_valid(admin_session, admin_verify, get_hub(request).settings.auth_secret):
        raise HTTPException(status_code=401, detail="Invalid session")


@app.get("/")
def read_root():
    return {
        "message": "InfoHub API",
        "docs": "/docs",
        "endpoints": {
            "funding": "/api/funding?assetClass=crypto|stocks|forex|commodities|all",
            "arbitrage": "/api/funding/arbitrage?limit=&minExchanges=",
            "openinterest": "/api/openinterest",
            "tickers": "/api/tickers",
            "oi_delta": "/api/oi-delta",
            "fear_greed": "/api/fear-greed?history=&limit=",
            "dominance": "/api/dominance",
            "stablecoins": "/api/stablecoins",
            "reserves": "/api/reserves",
            "economic_calendar": "/api/economic-calendar?month=&impact=&category=",
            "klines": "/api/klines?symbol=&interval=&limit=",
            "longshort": "/api/longshort?symbol=",
            "liquidations": "/api/liquidations?symbol=&exchange=okx&limit=",
            "options": "/api/options?currency=BTC|ETH",
            "hl_whales": "/api/hl-whales?address=&label=",
            "token_unlocks": "/api/token-unlocks",
            "top_movers": "/api/top-movers",
            "coin_search": "/api/coin-search?q=",
            "funding_history": "/api/history/funding?symbol=&exchange=&days=",
            "oi_history": "/api/history/oi?symbol=&days=",
            "funding_heatmap": "/api/history/funding-heatmap?days=",
            "health": "/api/health",
        }
    }


@app.get("/api/funding")
async def get_funding(
    response: Response,
    asset_class: AssetClassFilter = Query(AssetClassFilter.CRYPTO, alias="assetClass"),
    hub: InfoHub = Depends(get_hub)
) -> dict:
    """
    Funding rates across exchanges, percent per 8 hours.

    Crypto entries are limited to the CoinMarketCap top 500 when that list
    is available.
    """
    payload, source = await hub.funding(asset_class.value)
    response.headers["X-Cache"] = source.value
    return payload


@app.get("/api/funding/arbitrage")
async def get_funding_arbitrage(
    limit: int = Query(50, ge=1, le=500),
    min_exchanges: int = Query(2, alias="minExchanges", ge=2),
    hub: InfoHub = Depends(get_hub)
) -> dict:
    """Widest funding spreads between exchanges for the same symbol."""
    payload, _ = await hub.funding(AssetClassFilter.CRYPTO.value)
    opportunities = compute_arbitrage(payload["data"], min_exchanges, limit)
    return {
        "data": [dump(o) for o in opportunities],
        "meta": {"count": len(opportunities), "minExchanges": min_exchanges, "timestamp": _now_ms()},
    }


@app.get("/api/openinterest")
async def get_open_interest(response: Response, hub: InfoHub = Depends(get_hub)) -> dict:
    result = await hub.load_dataset(OPEN_INTEREST)
    response.headers["X-Cache"] = result.source.value
    return result.value


@app.get("/api/tickers")
async def get_tickers(response: Response, hub: InfoHub = Depends(get_hub)) -> dict:
    result = await hub.load_dataset(TICKERS)
    response.headers["X-Cache"] = result.source.value
    return result.value


@app.get("/api/oi-delta")
async def get_oi_delta(hub: InfoHub = Depends(get_hub)) -> dict:
    """Per-symbol open interest with 1h/4h/24h percent changes."""
    return await hub.oi_deltas()


@app.get("/api/fear-greed")
async def get_fear_greed(
    history: bool = Query(False),
    limit: Optional[int] = Query(None),
    hub: InfoHub = Depends(get_hub)
) -> dict:
    """
    Fear & greed index.

    Args:
        history: Return daily history instead of the current value
        limit: History length in days: 7, 30, 90 or 365 (anything else means 30)
    """
    if history:
        return await hub.market.fear_greed_history(fear_greed_limit(limit))
    return await hub.market.fear_greed()


@app.get("/api/dominance")
async def get_dominance(hub: InfoHub = Depends(get_hub)) -> dict:
    return await hub.market.dominance()


@app.get("/api/stablecoins")
async def get_stablecoins(hub: InfoHub = Depends(get_hub)) -> dict:
    return await hub.market.stablecoins()


@app.get("/api/reserves")
async def get_reserves(hub: InfoHub = Depends(get_hub)) -> dict:
    return await hub.market.reserves()


@app.get("/api/economic-calendar")
def get_economic_calendar(
    month: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$"),
    impact: Optional[str] = Query(None),
    category: Optional[str] = Query(None)
) -> dict:
    events = static_data.economic_events(month, impact, category)
    return {
        "events": events,
        "meta": {
            "total": len(events),
            "month": month or "all",
            "filters": {"impact": impact, "category": category},
        }
    }


@app.get("/api/klines")
async def get_klines(
    symbol: Optional[str] = Query(None),
    interval: str = Query("1h"),
    limit: int = Query(DEFAULT_KLINES),
    hub: InfoHub = Depends(get_hub)
) -> dict:
    """Binance spot candles for `symbol` against USDT."""
    if not symbol:
        raise HTTPException(status_code=400, detail="Missing symbol parameter")
    if interval not in KLINE_INTERVALS:
        raise HTTPException(status_code=400, detail=f"Invalid interval. Use: {', '.join(KLINE_INTERVALS)}")

    limit = min(limit, MAX_KLINES) if limit > 0 else DEFAULT_KLINES
    return await hub.market.klines(symbol.upper(), interval, limit)


@app.get("/api/longshort")
async def get_long_short(symbol: str = Query("BTCUSDT"), hub: InfoHub = Depends(get_hub)) -> dict:
    """Binance global long/short account ratio; 50/50 when Binance is unavailable."""
    return await hub.market.long_short(symbol.upper())


@app.get("/api/liquidations")
async def get_liquidations(
    symbol: Optional[str] = Query(None),
    exchange: str = Query("okx"),
    limit: int = Query(MAX_LIQUIDATIONS),
    hub: InfoHub = Depends(get_hub)
) -> dict:
    """Recent filled liquidations; REST history is only available from OKX."""
    if not symbol:
        raise HTTPException(status_code=400, detail="Missing symbol parameter")
    if exchange.lower() != "okx":
        raise HTTPException(
            status_code=400,
            detail="Only OKX REST liquidations are supported. Use WebSocket for other exchanges."
        )
    return await hub.market.liquidations(symbol.upper(), max(1, min(limit, MAX_LIQUIDATIONS)))


@app.get("/api/options")
async def get_options(
    response: Response,
    currency: str = Query("BTC"),
    hub: InfoHub = Depends(get_hub)
) -> dict:
    """Max pain, put/call ratio, OI by strike and IV smile from four options venues."""
    currency = currency.upper()
    if currency not in OPTION_CURRENCIES:
        raise HTTPException(status_code=400, detail="Only BTC and ETH options supported")

    payload, source = await hub.options(currency)
    if not payload["instrumentCount"]:
        raise HTTPException(status_code=502, detail="No options data available from any exchange")
    response.headers["X-Cache"] = source.value
    return payload


@app.get("/api/hl-whales")
async def get_hl_whales(
    response: Response,
    address: Optional[str] = Query(None),
    label: str = Query("Custom"),
    hub: InfoHub = Depends(get_hub)
):
    """
    Positions of curated Hyperliquid whales, or of one `address`.

    A single-address lookup is never cached.
    """
    response.headers["Cache-Control"] = "no-store, max-age=0"
    if address:
        wallet = await hub.whales.wallet(address, label)
        if wallet is None:
            raise HTTPException(
                status_code=404, detail="Could not fetch wallet data or wallet has no positions"
            )
        return wallet
    return await hub.whales.all_whales()


@app.get("/api/token-unlocks")
def get_token_unlocks() -> dict:
    unlocks = static_data.token_unlocks()
    return {"unlocks": unlocks, "meta": {"total": len(unlocks), "timestamp": _now_ms()}}


@app.get("/api/top-movers")
async def get_top_movers(hub: InfoHub = Depends(get_hub)) -> dict:
    """Top 24h gainers and losers among coins listed on tracked exchanges."""
    return await hub.top_movers()


@app.get("/api/coin-search")
async def get_coin_search(q: str = Query(""), hub: InfoHub = Depends(get_hub)) -> dict:
    if not q.strip():
        return {"results": []}
    results = await hub.cmc.search(q)
    return {"results": [r.model_dump() for r in results]}


def _history_days(days: int, default: int, maximum: int) -> int:
    return min(days, maximum) if days > 0 else default


@app.get("/api/history/funding")
def get_history_funding(
    symbol: Optional[str] = Query(None),
    exchange: Optional[str] = Query(None),
    days: int = Query(30),
    db: Session = Depends(get_db)
) -> dict:
    """
    Funding history from snapshots.

    Without `exchange` the rate is averaged across exchanges per snapshot.
    """
    if not symbol:
        raise HTTPException(status_code=400, detail="Missing symbol parameter")

    symbol = symbol.upper()
    days = _history_days(days, 30, MAX_HISTORY_DAYS)
    points = get_funding_history(db, symbol, exchange, days, _now_ms())
    return {
        "symbol": symbol,
        "exchange": exchange or "all",
        "days": days,
        "points": [dump(p) for p in points],
        "count": len(points),
    }


@app.get("/api/history/oi")
def get_history_oi(
    symbol: Optional[str] = Query(None),
    days: int = Query(7),
    db: Session = Depends(get_db)
) -> dict:
    """Open interest history from snapshots, summed across exchanges."""
    if not symbol:
        raise HTTPException(status_code=400, detail="Missing symbol parameter")

    symbol = symbol.upper()
    days = _history_days(days, 7, MAX_HISTORY_DAYS)
    points = get_oi_history(db, symbol, days, _now_ms())
    return {"symbol": symbol, "days": days, "points": [dump(p) for p in points], "count": len(points)}


@app.get("/api/history/funding-heatmap")
async def get_funding_heatmap(days: int = Query(7), hub: InfoHub = Depends(get_hub)) -> dict:
    """Daily average funding for the symbols quoted on the most exchanges."""
    if not database.is_configured():
        raise ConfigurationError("Database not configured")
    return await hub.funding_heatmap(_history_days(days, 7, MAX_HEATMAP_DAYS))


@app.get("/api/health", dependencies=[Depends(require_api_key)])
async def get_health(response: Response, hub: InfoHub = Depends(get_hub)) -> dict:
    """Source health for funding, open interest and tickers."""
    response.headers["Cache-Control"] = "no-store"
    return await hub.health()


@app.get("/api/cron/snapshot")
async def run_cron_snapshot(
    authorization: Optional[str] = Header(None),
    hub: InfoHub = Depends(get_hub)
):
    """
    Persist funding and open-interest snapshots; occasionally prune old rows.

    Requires Authorization: Bearer <CRON_SECRET>.
    """
    secret = hub.settings.cron_secret
    if not secret:
        raise ConfigurationError("CRON_SECRET not configured")
    if not bearer_matches(authorization, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not database.is_configured():
        raise ConfigurationError("Database not configured")

    result = await hub.run_snapshot()
    return JSONResponse(status_code=200 if result.ok else 500, content=dump(result))


@app.post("/admin/api/auth")
def admin_login(body: AdminLogin, response: Response, hub: InfoHub = Depends(get_hub)) -> dict:
    settings = hub.settings
    if not settings.admin_password or not settings.auth_secret:
        raise ConfigurationError("Admin login not configured")
    if not password_matches(body.password, settings.admin_password):
        raise HTTPException(status_code=401, detail="Invalid password")

    issue_session(response, settings.auth_secret, _now_ms())
    return {"ok": True}


@app.delete("/admin/api/auth")
def admin_logout(response: Response) -> dict:
    clear_session(response)
    return {"ok": True}


@app.get("/admin/api/health", dependencies=[Depends(require_admin_session)])
async def get_admin_health(hub: InfoHub = Depends(get_hub)) -> dict:
    return await hub.health()
