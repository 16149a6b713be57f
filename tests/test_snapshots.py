from unittest.mock import AsyncMock, MagicMock
import pytest
from infohub.config import Settings
from infohub.database import get_db_context
from infohub.db_models import ApiCache, FundingSnapshot, OISnapshot
from infohub.snapshots import (
    DAY_MS, HOUR_MS, SnapshotJob, get_bulk_funding_history, get_funding_history,
    get_oi_deltas, get_oi_history, prune_old_data, save_funding_snapshot, save_oi_snapshot,
    select_top_symbols
)
from infohub.hub import InfoHub
from infohub.tiered_cache import CacheResult, CacheSource, MemoryCache, TieredCache

NOW = 1_760_000_000_000


def rows_for(*symbols):
    return [{"symbol": s} for s in symbols]


def test_top_symbols_by_count():
    rows = rows_for("DOGE", "BTC", "BTC", "BTC", "ETH", "ETH", "SOL")
    assert select_top_symbols(rows, 2) == ["BTC", "ETH"]


def test_top_symbols_ties_keep_first_appearance():
    rows = rows_for("C", "A", "B", "A", "B", "C", "D")
    assert select_top_symbols(rows, 2) == ["C", "A"]
    assert select_top_symbols(rows, 10) == ["C", "A", "B", "D"]


def test_top_symbols_empty():
    assert select_top_symbols([], 5) == []


def test_prune_deletes_exactly_rows_older_than_cutoff(sqlite_db):
    cutoff = NOW - 90 * DAY_MS
    with get_db_context() as db:
        for ts in (cutoff - 1, cutoff, cutoff + 1):
            db.add(FundingSnapshot(symbol="BTC", exchange="Binance", rate=0.01, ts=ts))
            db.add(OISnapshot(symbol="BTC", exchange="Binance", oi_usd=1e9, ts=ts))
        db.add(ApiCache(key="old", data={}, expires_at=NOW - 1, updated_at=NOW - 10))
        db.add(ApiCache(key="fresh", data={}, expires_at=NOW + 1000, updated_at=NOW))

    with get_db_context() as db:
        pruned = prune_old_data(db, 90, NOW)

    assert pruned == {"funding": 1, "oi": 1, "cache": 1}
    with get_db_context() as db:
        assert sorted(ts for (ts,) in db.query(FundingSnapshot.ts)) == [cutoff, cutoff + 1]
        assert db.query(OISnapshot).count() == 2
        assert [k for (k,) in db.query(ApiCache.key)] == ["fresh"]


def test_prune_on_empty_tables_is_a_no_op(sqlite_db):
    with get_db_context() as db:
        assert prune_old_data(db, 90, NOW) == {"funding": 0, "oi": 0, "cache": 0}
        assert db.query(FundingSnapshot).count() == 0


def test_funding_history_per_exchange_and_averaged(sqlite_db):
    with get_db_context() as db:
        save_funding_snapshot(db, [
            {"symbol": "BTC", "exchange": "Binance", "rate": 0.01},
            {"symbol": "BTC", "exchange": "Bybit", "rate": 0.03},
            {"symbol": "ETH", "exchange": "Binance", "rate": 0.05},
        ], NOW - HOUR_MS)
        save_funding_snapshot(db, [
            {"symbol": "BTC", "exchange": "Binance", "rate": 0.02, "predicted": 0.025},
        ], NOW)
        # Outside the window
        save_funding_snapshot(db, [{"symbol": "BTC", "exchange": "Binance", "rate": 9.0}], NOW - 8 * DAY_MS)

    with get_db_context() as db:
        binance = get_funding_history(db, "BTC", "Binance", 7, NOW)
        averaged = get_funding_history(db, "BTC", None, 7, NOW)

    assert [(p.t, p.rate) for p in binance] == [(NOW - HOUR_MS, 0.01), (NOW, 0.02)]
    assert [p.t for p in averaged] == [NOW - HOUR_MS, NOW]
    assert averaged[0].rate == pytest.approx(0.02)


def test_bulk_funding_history_groups_by_day(sqlite_db):
    day_start = NOW - NOW % DAY_MS
    with get_db_context() as db:
        save_funding_snapshot(db, [{"symbol": "BTC", "exchange": "Binance", "rate": 0.01}], day_start + HOUR_MS)
        save_funding_snapshot(db, [{"symbol": "BTC", "exchange": "Bybit", "rate": 0.03}], day_start + 2 * HOUR_MS)
        save_funding_snapshot(db, [{"symbol": "BTC", "exchange": "Binance", "rate": 0.05}], day_start - HOUR_MS)
        save_funding_snapshot(db, [{"symbol": "DOGE", "exchange": "Binance", "rate": 0.1}], day_start)

    with get_db_context() as db:
        history = get_bulk_funding_history(db, ["BTC", "ETH"], 7, day_start + 3 * HOUR_MS)

    assert list(history) == ["BTC"]
    days = history["BTC"]
    assert len(days) == 2
    assert days[0]["day"] < days[1]["day"]
    assert days[0]["rate"] == pytest.approx(0.05)
    assert days[1]["rate"] == pytest.approx(0.02)


def test_oi_history_sums_exchanges(sqlite_db):
    with get_db_context() as db:
        save_oi_snapshot(db, [
            {"symbol": "BTC", "exchange": "Binance", "oi_usd": 100.0},
            {"symbol": "BTC", "exchange": "Bybit", "oi_usd": 50.0},
        ], NOW)

    with get_db_context() as db:
        points = get_oi_history(db, "BTC", 7, NOW)

    assert [(p.t, p.oi) for p in points] == [(NOW, 150.0)]


def test_oi_deltas(sqlite_db):
    with get_db_context() as db:
        save_oi_snapshot(db, [
            {"symbol": "BTC", "exchange": "Binance", "oi_usd": 110.0},
            {"symbol": "ETH", "exchange": "Binance", "oi_usd": 40.0},
        ], NOW)
        # 1h horizon, a little early
        save_oi_snapshot(db, [{"symbol": "BTC", "exchange": "Binance", "oi_usd": 100.0}], NOW - HOUR_MS - 60_000)
        save_oi_snapshot(db, [
            {"symbol": "BTC", "exchange": "Binance", "oi_usd": 220.0},
            {"symbol": "ETH", "exchange": "Binance", "oi_usd": 50.0},
        ], NOW - 24 * HOUR_MS)

    with get_db_context() as db:
        deltas = get_oi_deltas(db)

    assert [d.symbol for d in deltas] == ["BTC", "ETH"]
    btc, eth = deltas
    assert btc.current_oi == 110.0
    assert btc.change_1h == pytest.approx(10.0)
    assert btc.change_4h is None
    assert btc.change_24h == pytest.approx(-50.0)
    assert eth.change_1h is None
    assert eth.change_24h == pytest.approx(-20.0)


def test_oi_deltas_without_snapshots(sqlite_db):
    with get_db_context() as db:
        assert get_oi_deltas(db) == []


def make_hub(funding_rows, oi_rows, **settings):
    async def load_dataset(dataset):
        if dataset.key == "funding":
            rows = funding_rows
        else:
            rows = oi_rows
        if isinstance(rows, Exception):
            raise rows
        return CacheResult({"data": rows, "health": [], "meta": {}}, CacheSource.MISS)

    hub = MagicMock()
    hub.settings = Settings(**settings)
    hub.load_dataset = AsyncMock(side_effect=load_dataset)
    return hub


FUNDING_ROWS = [
    {"symbol": "BTC", "exchange": "Binance", "fundingRate": 0.01, "predictedRate": None},
    {"symbol": "BTC", "exchange": "Bybit", "fundingRate": 0.02},
    {"symbol": "ETH", "exchange": "Binance", "fundingRate": 0.03},
    {"symbol": "ETH", "exchange": "Bybit", "fundingRate": 0.04},
    {"symbol": "DOGE", "exchange": "Binance", "fundingRate": 0.05},
]
OI_ROWS = [
    {"symbol": "BTC", "exchange": "Binance", "openInterestValue": 1e9},
    {"symbol": "ETH", "exchange": "Binance", "openInterestValue": 0},
]


@pytest.mark.asyncio
async def test_snapshot_job_persists_top_symbols(sqlite_db):
    hub = make_hub(FUNDING_ROWS, OI_ROWS, snapshot_max_symbols=2, prune_probability=0.17)
    job = SnapshotJob(hub, rng=lambda: 0.5, clock=lambda: NOW)

    result = await job.run()

    assert result.ok
    assert result.funding_inserted == 4
    assert result.oi_inserted == 1
    assert result.pruned is None
    with get_db_context() as db:
        symbols = {s for (s,) in db.query(FundingSnapshot.symbol)}
        assert symbols == {"BTC", "ETH"}
        assert {ts for (ts,) in db.query(FundingSnapshot.ts)} == {NOW}


@pytest.mark.asyncio
async def test_snapshot_job_prunes_when_drawn(sqlite_db):
    with get_db_context() as db:
        db.add(FundingSnapshot(symbol="OLD", exchange="Binance", rate=0.1, ts=NOW - 91 * DAY_MS))
    hub = make_hub(FUNDING_ROWS, OI_ROWS, prune_probability=0.17)

    result = await SnapshotJob(hub, rng=lambda: 0.1, clock=lambda: NOW).run()

    assert result.ok
    assert result.pruned == {"funding": 1, "oi": 0, "cache": 0}


@pytest.mark.asyncio
async def test_snapshot_stage_failure_is_reported_not_raised(sqlite_db):
    hub = make_hub(FUNDING_ROWS, RuntimeError("all OI sources down"), prune_probability=0.0)

    result = await SnapshotJob(hub, rng=lambda: 0.5, clock=lambda: NOW).run()

    assert not result.ok
    assert result.errors == {"openinterest": "all OI sources down"}
    assert result.funding_inserted == 5
    assert result.oi_inserted == 0


@pytest.mark.asyncio
async def test_snapshot_refuses_stale_cached_aggregate(sqlite_db, upstream):
    now = [1000.0]
    cache = TieredCache(memory=MemoryCache(clock=lambda: now[0]))
    hub = InfoHub(Settings(prune_probability=0.0), client=upstream({}), cache=cache)
    cache.memory.set("funding", {"data": FUNDING_ROWS, "health": [], "meta": {}})
    now[0] += 3600

    result = await SnapshotJob(hub, rng=lambda: 0.5, clock=lambda: NOW).run()

    assert not result.ok
    assert "STALE" in result.errors["funding"]
    assert "openinterest" in result.errors
    assert result.funding_inserted == 0
    with get_db_context() as db:
        assert db.query(FundingSnapshot).count() == 0
        assert db.query(OISnapshot).count() == 0
