"""
Time-series snapshots of funding rates and open interest.

The snapshot job persists the current aggregates every few minutes; the
history queries below read them back for charts and OI deltas.
"""

import asyncio
import logging
import random
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from infohub.database import get_db_context
from infohub.db_models import ApiCache, FundingSnapshot, OISnapshot
from infohub.funding_sources import FUNDING
from infohub.models import HistoryPoint, OIDelta, OIHistoryPoint, SnapshotResult
from infohub.oi_sources import OPEN_INTEREST
from infohub.tiered_cache import CacheSource

logger = logging.getLogger(__name__)

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS

# How far a past snapshot may sit from an OI-delta horizon and still count
DELTA_TOLERANCE_MS = 15 * 60 * 1000
DELTA_HORIZONS = {"change_1h": HOUR_MS, "change_4h": 4 * HOUR_MS, "change_24h": DAY_MS}


class StaleSnapshotError(Exception):
    """A dataset could only be served from an old cached copy."""
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def select_top_symbols(rows: Iterable[Dict[str, Any]], n: int) -> List[str]:
    """
    The `n` symbols with the most records.

    Ties keep the order in which symbols first appear in `rows`.
    """
    counts: Dict[str, int] = {}
    for row in rows:
        counts[row["symbol"]] = counts.get(row["symbol"], 0) + 1
    ranked = sorted(counts, key=lambda symbol: counts[symbol], reverse=True)
    return ranked[:n]


def save_funding_snapshot(db: Session, entries: List[Dict[str, Any]], ts: int) -> int:
    """Insert one funding row per entry, all stamped `ts`. Returns the row count."""
    db.add_all([
        FundingSnapshot(
            symbol=e["symbol"],
            exchange=e["exchange"],
            rate=e["rate"],
            predicted=e.get("predicted"),
            ts=ts,
        )
        for e in entries
    ])
    return len(entries)


def save_oi_snapshot(db: Session, entries: List[Dict[str, Any]], ts: int) -> int:
    """Insert one open-interest row per entry, all stamped `ts`. Returns the row count."""
    db.add_all([
        OISnapshot(symbol=e["symbol"], exchange=e["exchange"], oi_usd=e["oi_usd"], ts=ts)
        for e in entries
    ])
    return len(entries)


def prune_old_data(db: Session, keep_days: int, now: int) -> Dict[str, int]:
    """
    Delete snapshot rows older than `keep_days` and expired cache rows.

    Returns:
        Deleted row counts keyed by "funding", "oi" and "cache"
    """
    cutoff = now - keep_days * DAY_MS
    funding = db.query(FundingSnapshot).filter(FundingSnapshot.ts < cutoff).delete(synchronize_session=False)
    oi = db.query(OISnapshot).filter(OISnapshot.ts < cutoff).delete(synchronize_session=False)
    cache = db.query(ApiCache).filter(ApiCache.expires_at <= now).delete(synchronize_session=False)
    return {"funding": funding, "oi": oi, "cache": cache}


def get_funding_history(
    db: Session,
    symbol: str,
    exchange: Optional[str],
    days: int,
    now: int
) -> List[HistoryPoint]:
    """
    Funding points for `symbol` over the last `days`.

    Without an exchange the rate is averaged across exchanges per snapshot.
    """
    cutoff = now - days * DAY_MS
    if exchange:
        rows = db.query(FundingSnapshot.ts, FundingSnapshot.rate).filter(
            FundingSnapshot.symbol == symbol,
            FundingSnapshot.exchange == exchange,
            FundingSnapshot.ts > cutoff
        ).order_by(FundingSnapshot.ts).all()
    else:
        rows = db.query(FundingSnapshot.ts, func.avg(FundingSnapshot.rate)).filter(
            FundingSnapshot.symbol == symbol,
            FundingSnapshot.ts > cutoff
        ).group_by(FundingSnapshot.ts).order_by(FundingSnapshot.ts).all()

    return [HistoryPoint(t=int(ts), rate=float(rate)) for ts, rate in rows]


def get_bulk_funding_history(
    db: Session,
    symbols: List[str],
    days: int,
    now: int
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Daily (UTC) average funding rate per symbol.

    Returns:
        {symbol: [{"day": "YYYY-MM-DD", "rate": float}, ...]} with days ascending;
        symbols without data are absent
    """
    if not symbols:
        return {}

    rows = db.query(FundingSnapshot.symbol, FundingSnapshot.ts, FundingSnapshot.rate).filter(
        FundingSnapshot.symbol.in_(symbols),
        FundingSnapshot.ts > now - days * DAY_MS
    ).all()

    buckets: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
    for symbol, ts, rate in rows:
        day = datetime.fromtimestamp(ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        buckets[symbol][day].append(rate)

    return {
        symbol: [{"day": day, "rate": sum(rates) / len(rates)} for day, rates in sorted(days_map.items())]
        for symbol, days_map in sorted(buckets.items())
    }


def get_oi_history(db: Session, symbol: str, days: int, now: int) -> List[OIHistoryPoint]:
    """Open interest for `symbol`, summed across exchanges per snapshot."""
    rows = db.query(OISnapshot.ts, func.sum(OISnapshot.oi_usd)).filter(
        OISnapshot.symbol == symbol,
        OISnapshot.ts > now - days * DAY_MS
    ).group_by(OISnapshot.ts).order_by(OISnapshot.ts).all()

    return [OIHistoryPoint(t=int(ts), oi=float(oi)) for ts, oi in rows]


def _oi_totals_at(db: Session, ts: int) -> Dict[str, float]:
    rows = db.query(OISnapshot.symbol, func.sum(OISnapshot.oi_usd)).filter(
        OISnapshot.ts == ts
    ).group_by(OISnapshot.symbol).all()
    return {symbol: float(total) for symbol, total in rows}


def _snapshot_near(db: Session, target: int) -> Optional[int]:
    """Latest snapshot timestamp at or before `target`, within DELTA_TOLERANCE_MS."""
    return db.query(func.max(OISnapshot.ts)).filter(
        OISnapshot.ts <= target,
        OISnapshot.ts >= target - DELTA_TOLERANCE_MS
    ).scalar()


def get_oi_deltas(db: Session) -> List[OIDelta]:
    """
    Per-symbol open interest from the latest snapshot with 1h/4h/24h percent changes.

    A change is None when no snapshot exists near that horizon or the symbol
    had no open interest then. Sorted by current open interest, largest first.
    """
    latest = db.query(func.max(OISnapshot.ts)).scalar()
    if latest is None:
        return []

    current = _oi_totals_at(db, latest)
    past: Dict[str, Dict[str, float]] = {}
    for field, horizon in DELTA_HORIZONS.items():
        ts = _snapshot_near(db, latest - horizon)
        past[field] = _oi_totals_at(db, ts) if ts is not None else {}

    deltas = []
    for symbol, oi in current.items():
        changes = {}
        for field, totals in past.items():
            before = totals.get(symbol)
            changes[field] = (oi - before) / before * 100 if before else None
        deltas.append(OIDelta(symbol=symbol, current_oi=oi, **changes))

    deltas.sort(key=lambda d: d.current_oi, reverse=True)
    return deltas


class SnapshotJob:
    """
    One snapshot run: persist funding, persist open interest, maybe prune.

    Stages fail independently; a failure is logged and reported in the
    result, and the next scheduled run is the retry.
    """

    def __init__(
        self,
        hub,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], int] = _now_ms
    ):
        """
        Args:
            hub: Application container providing `settings` and `load_dataset`
            rng: Uniform [0, 1) source deciding whether this run prunes
            clock: Returns current time in epoch milliseconds
        """
        self.hub = hub
        self.settings = hub.settings
        self.rng = rng
        self.clock = clock

    def _store(self, save: Callable[[Session, List[Dict[str, Any]], int], int],
               entries: List[Dict[str, Any]], ts: int) -> int:
        if not entries:
            return 0
        with get_db_context() as db:
            return save(db, entries, ts)

    async def _load_fresh(self, dataset) -> List[Dict[str, Any]]:
        # A stale copy would be written under the current timestamp
        result = await self.hub.load_dataset(dataset)
        if result.source in (CacheSource.STALE, CacheSource.DEFAULT):
            raise StaleSnapshotError(
                f"{dataset.key} upstreams failed, only a {result.source.value} copy is available"
            )
        return result.value["data"]

    async def _snapshot_funding(self, ts: int) -> int:
        rows = await self._load_fresh(FUNDING)
        top = set(select_top_symbols(rows, self.settings.snapshot_max_symbols))
        entries = [
            {
                "symbol": r["symbol"],
                "exchange": r["exchange"],
                "rate": r["fundingRate"],
                "predicted": r.get("predictedRate"),
            }
            for r in rows
            if r["symbol"] in top and r.get("fundingRate") is not None
        ]
        return await asyncio.to_thread(self._store, save_funding_snapshot, entries, ts)

    async def _snapshot_open_interest(self, ts: int) -> int:
        rows = await self._load_fresh(OPEN_INTEREST)
        top = set(select_top_symbols(rows, self.settings.snapshot_max_symbols))
        entries = [
            {"symbol": r["symbol"], "exchange": r["exchange"], "oi_usd": r["openInterestValue"]}
            for r in rows
            if r["symbol"] in top and (r.get("openInterestValue") or 0) > 0
        ]
        return await asyncio.to_thread(self._store, save_oi_snapshot, entries, ts)

    def _prune(self, now: int) -> Dict[str, int]:
        with get_db_context() as db:
            return prune_old_data(db, self.settings.snapshot_retention_days, now)

    async def run(self) -> SnapshotResult:
        now = self.clock()
        errors: Dict[str, str] = {}

        funding, oi = await asyncio.gather(
            self._snapshot_funding(now),
            self._snapshot_open_interest(now),
            return_exceptions=True
        )
        for stage, outcome in (("funding", funding), ("openinterest", oi)):
            if isinstance(outcome, BaseException):
                logger.error("Snapshot stage %s failed", stage, exc_info=outcome)
                errors[stage] = str(outcome) or type(outcome).__name__

        pruned = None
        if self.rng() < self.settings.prune_probability:
            try:
                pruned = await asyncio.to_thread(self._prune, now)
            except Exception as e:
                logger.exception("Snapshot prune failed")
                errors["prune"] = str(e) or type(e).__name__

        result = SnapshotResult(
            ok=not errors,
            funding_inserted=0 if "funding" in errors else funding,
            oi_inserted=0 if "openinterest" in errors else oi,
            pruned=pruned,
            errors=errors,
            timestamp=now,
        )
        logger.info("Snapshot: %d funding rows, %d OI rows, pruned=%s, errors=%s",
                    result.funding_inserted, result.oi_inserted, pruned, list(errors))
        return result
