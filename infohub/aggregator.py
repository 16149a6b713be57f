"""
Parallel multi-exchange aggregation with per-source health.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel
from infohub.models import (
    AggregateMeta, ExchangeHealth, HealthStatus, SourceStatus, dump
)
from infohub.tiered_cache import CacheResult, TieredCache
from infohub.upstream_client import UpstreamClient

logger = logging.getLogger(__name__)

RawRecord = Dict[str, Any]
Fetcher = Callable[[UpstreamClient], Awaitable[List[RawRecord]]]
Normalizer = Callable[[RawRecord, str], Optional[BaseModel]]


class AllSourcesFailedError(Exception):
    """Every source of an aggregate failed (exception or timeout)."""
    def __init__(self, dataset: str, health: List[ExchangeHealth]):
        errors = [f"{h.name}: {h.error}" for h in health if h.status == SourceStatus.ERROR]
        super().__init__(f"All {len(health)} sources failed for {dataset}" + (f" ({'; '.join(errors[:3])})" if errors else ""))
        self.dataset = dataset
        self.health = health


@dataclass
class Source:
    """One upstream exchange feeding a dataset."""
    name: str
    fetcher: Fetcher


def classify_health(active: int, total: int, errors: int) -> HealthStatus:
    """
    Overall status from source counts.

    Below half active is down; below 80% active or more than five errors is
    degraded; anything else is healthy.
    """
    ratio = active / total if total > 0 else 0.0
    if ratio < 0.5:
        return HealthStatus.DOWN
    if ratio < 0.8 or errors > 5:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


async def _run_source(
    source: Source,
    client: UpstreamClient,
    normalize: Normalizer,
    timeout: float
) -> Tuple[List[BaseModel], ExchangeHealth]:
    started = time.monotonic()
    try:
        raw = await asyncio.wait_for(source.fetcher(client), timeout)
    except asyncio.TimeoutError:
        latency = int((time.monotonic() - started) * 1000)
        logger.warning("%s timed out after %dms", source.name, latency)
        return [], ExchangeHealth(name=source.name, status=SourceStatus.ERROR,
                                  latency_ms=latency, error=f"Timeout after {timeout:g}s")
    except Exception as e:
        latency = int((time.monotonic() - started) * 1000)
        logger.warning("%s error: %s", source.name, e)
        return [], ExchangeHealth(name=source.name, status=SourceStatus.ERROR,
                                  latency_ms=latency, error=str(e) or type(e).__name__)

    latency = int((time.monotonic() - started) * 1000)
    records = []
    for item in raw:
        record = normalize(item, source.name)
        if record is not None:
            records.append(record)

    status = SourceStatus.OK if records else SourceStatus.EMPTY
    return records, ExchangeHealth(name=source.name, status=status,
                                   count=len(records), latency_ms=latency)


async def fetch_all_with_health(
    sources: List[Source],
    client: UpstreamClient,
    normalize: Normalizer,
    timeout: float
) -> Tuple[List[BaseModel], List[ExchangeHealth]]:
    """
    Run every source concurrently, each bounded by `timeout` seconds.

    A failing or slow source never cancels its siblings; it is reported in
    the health list instead.

    Returns:
        (normalized records in source order, one health entry per source)
    """
    results = await asyncio.gather(
        *(_run_source(source, client, normalize, timeout) for source in sources)
    )
    data = [record for records, _ in results for record in records]
    health = [h for _, h in results]
    return data, health


def build_meta(health: List[ExchangeHealth], total_entries: int) -> AggregateMeta:
    active = sum(1 for h in health if h.status == SourceStatus.OK)
    errors = sum(1 for h in health if h.status == SourceStatus.ERROR)
    return AggregateMeta(
        total_exchanges=len(health),
        active_exchanges=active,
        total_entries=total_entries,
        status=classify_health(active, len(health), errors),
        timestamp=int(time.time() * 1000),
    )


@dataclass
class AggregateDataset:
    """
    A cached multi-exchange dataset.

    Attributes:
        key: Cache key
        ttl: Cache freshness in seconds
        sources: Upstream exchanges
        normalize: Turns one raw record into a model, or None to drop it
    """
    key: str
    ttl: int
    sources: List[Source]
    normalize: Normalizer

    async def fetch(self, client: UpstreamClient, timeout: float) -> Dict[str, Any]:
        """
        Fetch all sources now, bypassing the cache.

        Returns:
            {"data": [...], "health": [...], "meta": {...}} with camelCase keys

        Raises:
            AllSourcesFailedError: When every source errored; a source that
                answered with zero usable records still counts as answered
        """
        data, health = await fetch_all_with_health(self.sources, client, self.normalize, timeout)
        meta = build_meta(health, len(data))
        if all(h.status == SourceStatus.ERROR for h in health):
            raise AllSourcesFailedError(self.key, health)

        logger.info("%s: %d entries from %d/%d sources (%s)", self.key, len(data),
                    meta.active_exchanges, meta.total_exchanges, meta.status.value)
        return {
            "data": [dump(record) for record in data],
            "health": [dump(h) for h in health],
            "meta": dump(meta),
        }

    async def load(self, client: UpstreamClient, cache: TieredCache, timeout: float) -> CacheResult:
        """Read the dataset through the tiered cache."""
        return await cache.get_or_fetch(self.key, self.ttl, lambda: self.fetch(client, timeout))
