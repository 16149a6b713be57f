"""
Cross-exchange funding arbitrage.

Rates are already percent per 8 hours, so spreads compare like for like.
"""

from collections import defaultdict
from typing import Any, Dict, List
from infohub.models import ArbitrageOpportunity

FUNDING_PERIODS_PER_YEAR = 3 * 365


def compute_arbitrage(rows: List[Dict[str, Any]], min_exchanges: int = 2, limit: int = 50) -> List[ArbitrageOpportunity]:
    """
    Best long/short pair per symbol, widest spread first.

    Args:
        rows: Serialized FundingRate records (camelCase keys)
        min_exchanges: Skip symbols quoted on fewer exchanges
        limit: Maximum number of opportunities returned
    """
    by_symbol: Dict[str, Dict[str, float]] = defaultdict(dict)
    for row in rows:
        # One rate per exchange; a later duplicate overwrites
        by_symbol[row["symbol"]][row["exchange"]] = row["fundingRate"]

    opportunities = []
    for symbol, rates in by_symbol.items():
        if len(rates) < max(min_exchanges, 2):
            continue
        long_exchange = min(rates, key=rates.get)
        short_exchange = max(rates, key=rates.get)
        spread = rates[short_exchange] - rates[long_exchange]
        opportunities.append(ArbitrageOpportunity(
            symbol=symbol,
            long_exchange=long_exchange,
            short_exchange=short_exchange,
            long_rate=rates[long_exchange],
            short_rate=rates[short_exchange],
            spread=spread,
            annualized=spread * FUNDING_PERIODS_PER_YEAR,
            exchanges=len(rates),
        ))

    opportunities.sort(key=lambda o: o.spread, reverse=True)
    return opportunities[:limit]
