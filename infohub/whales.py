"""
Open positions of large Hyperliquid accounts.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from infohub.models import WhalePosition, WhaleWallet, dump
from infohub.normalize import to_float
from infohub.tiered_cache import TieredCache, cached
from infohub.upstream_client import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

HYPERLIQUID_INFO = "https://api.hyperliquid.xyz/info"
WHALES_TTL = 60
WALLET_TIMEOUT = 8.0
# Each clearinghouseState call costs weight 2 against 1200/min
BATCH_SIZE = 4
MIN_ACCOUNT_VALUE = 1000
MIN_POSITION_VALUE = 100

# Curated public addresses
WHALE_WALLETS = [
    ("0x31ca8395cf837de08b24da3f660e77761dfb974b", "HyperWhale"),
    ("0xe5e4e69e2b48e83c41d1a97c1714274c08cb6443", "Whale Alpha"),
    ("0x4a79ba1078e4c7697c386e4cedf82e6f7027d781", "Degen Giant"),
    ("0xb6bfceb19f462dfc3ef7539b18bbdcb65d3a006f", "OI King"),
    ("0x32e5de888caba8b0e40c2fc07c96c4c7a5c7f5a6", "Perp Lord"),
    ("0xd11f24de21e16a16e5abb05fb8b0f0c40c993550", "HL Trader 1"),
    ("0xf35fe4518590d08f2ed2b56a6f0131ab01f5e5c8", "HL Trader 2"),
    ("0x0e82295049054f0fcc6dd22f89a2ddbb81e09650", "Vault Whale"),
    ("0xc64cc00b46150e1c8fa2e4b1027e42da5f3e2472", "Size Master"),
    ("0x6211fd05e4f7af2d83d787d1237a46ae1b21d504", "HL Trader 3"),
    ("0xa079f9c72e47e4c3a73e3a2ec88be2ac6a1d855a", "Leverage Ape"),
    ("0x8588f45d3e80901ae27baa12e13d5fad0f627a91", "Smart Whale"),
]


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_position(p: Dict[str, Any]) -> WhalePosition:
    """One Hyperliquid `assetPositions[].position`; a negative size is a short."""
    size = to_float(p.get("szi"))
    return WhalePosition(
        coin=p.get("coin", ""),
        side="long" if size >= 0 else "short",
        size=abs(size),
        entry_price=to_float(p.get("entryPx")),
        position_value=abs(to_float(p.get("positionValue"))),
        unrealized_pnl=to_float(p.get("unrealizedPnl")),
        roe=to_float(p.get("returnOnEquity")),
        leverage=to_float((p.get("leverage") or {}).get("value")) or 1,
        liquidation_price=to_float(p["liquidationPx"]) if p.get("liquidationPx") else None,
        margin_used=to_float(p.get("marginUsed")),
        cumulative_funding=to_float((p.get("cumFunding") or {}).get("allTime")),
    )


def parse_wallet(address: str, label: str, state: Dict[str, Any], now_ms: int) -> Optional[WhaleWallet]:
    """Account summary from a clearinghouseState, or None below MIN_ACCOUNT_VALUE."""
    summary = state.get("marginSummary") or {}
    account_value = to_float(summary.get("accountValue"))
    if account_value < MIN_ACCOUNT_VALUE:
        return None

    positions = [parse_position(ap.get("position") or {}) for ap in state.get("assetPositions") or []]
    positions = sorted(
        (p for p in positions if p.position_value > MIN_POSITION_VALUE),
        key=lambda p: p.position_value,
        reverse=True
    )
    return WhaleWallet(
        address=address,
        label=label,
        account_value=account_value,
        total_notional=to_float(summary.get("totalNtlPos")),
        margin_used=to_float(summary.get("totalMarginUsed")),
        withdrawable=to_float(state.get("withdrawable")),
        position_count=len(positions),
        positions=positions,
        last_updated=int(to_float(state.get("time"))) or now_ms,
    )


class WhaleTracker:
    """
    Reads Hyperliquid clearinghouse state for the curated wallets.

    Args:
        client: Shared upstream client
        cache: Shared tiered cache
        batch_delay: Pause in seconds between wallet batches
    """

    def __init__(self, client: UpstreamClient, cache: TieredCache, batch_delay: float = 0.2):
        self.client = client
        self.cache = cache
        self.batch_delay = batch_delay

    async def wallet(self, address: str, label: str) -> Optional[Dict[str, Any]]:
        """One account, or None when it cannot be read or holds too little."""
        try:
            state = await self.client.post_json(
                HYPERLIQUID_INFO, {"type": "clearinghouseState", "user": address}, timeout=WALLET_TIMEOUT
            )
        except UpstreamError as e:
            logger.warning("Hyperliquid state for %s failed: %s", label, e)
            return None
        if not isinstance(state, dict):
            return None
        wallet = parse_wallet(address, label, state, _now_ms())
        return dump(wallet) if wallet else None

    @cached(lambda: "hl-whales:all", WHALES_TTL)
    async def all_whales(self) -> List[Dict[str, Any]]:
        """
        Every curated wallet that could be read, by account value descending.

        Raises:
            UpstreamError: When not a single wallet could be read
        """
        wallets: List[Dict[str, Any]] = []
        for start in range(0, len(WHALE_WALLETS), BATCH_SIZE):
            if start and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
            batch = WHALE_WALLETS[start:start + BATCH_SIZE]
            results = await asyncio.gather(*(self.wallet(a, label) for a, label in batch))
            wallets.extend(w for w in results if w is not None)

        if not wallets:
            raise UpstreamError("No Hyperliquid whale wallet could be read", None)
        wallets.sort(key=lambda w: w["accountValue"], reverse=True)
        return wallets
