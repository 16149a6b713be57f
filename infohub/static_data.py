"""
Bundled datasets: macro economic calendar and token unlock schedule.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

DATA_DIR = Path(__file__).parent / "data"

# Unlocks above this share of supply are flagged as large
LARGE_UNLOCK_PERCENT = 1.0


@lru_cache(maxsize=None)
def _load(name: str) -> List[Dict[str, Any]]:
    with open(DATA_DIR / name, encoding="utf-8") as f:
        return json.load(f)


def economic_events(
    month: Optional[str] = None,
    impact: Optional[str] = None,
    category: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Economic events sorted by date.

    Args:
        month: "YYYY-MM" prefix filter
        impact: "high", "medium" or "low"
        category: Event category, e.g. "inflation"
    """
    events = list(_load("economic_events.json"))
    if month:
        events = [e for e in events if e["date"].startswith(month)]
    if impact:
        events = [e for e in events if e["impact"] == impact]
    if category:
        events = [e for e in events if e["category"] == category]
    events.sort(key=lambda e: (e["date"], e.get("time", "")))
    return events


def token_unlocks() -> List[Dict[str, Any]]:
    """Scheduled token unlocks sorted by date, each flagged `isLarge` above 1% of supply."""
    unlocks = [
        dict(u, isLarge=u["percentOfSupply"] > LARGE_UNLOCK_PERCENT)
        for u in _load("token_unlocks.json")
    ]
    unlocks.sort(key=lambda u: u["unlockDate"])
    return unlocks
