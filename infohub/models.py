"""
Normalized market-data models.

Fields use snake_case in Python and serialize with camelCase aliases.
"""

from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class AssetClass(str, Enum):
    """Underlying asset class of a perpetual contract."""
    CRYPTO = "crypto"
    STOCKS = "stocks"
    FOREX = "forex"
    COMMODITIES = "commodities"


class SourceStatus(str, Enum):
    """Outcome of one upstream call during an aggregation cycle."""
    OK = "ok"
    ERROR = "error"
    EMPTY = "empty"


class HealthStatus(str, Enum):
    """Overall health of an aggregate."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class FundingRate(BaseModel):
    """Funding rate in percent on an 8-hour basis."""
    symbol: str
    exchange: str
    funding_rate: float = Field(alias="fundingRate")
    mark_price: float = Field(default=0.0, alias="markPrice")
    index_price: float = Field(default=0.0, alias="indexPrice")
    next_funding_time: int = Field(default=0, alias="nextFundingTime")
    predicted_rate: Optional[float] = Field(default=None, alias="predictedRate")
    asset_class: AssetClass = Field(default=AssetClass.CRYPTO, alias="assetClass")

    class Config:
        populate_by_name = True


class OpenInterest(BaseModel):
    """Open interest in contracts/coins and in USD."""
    symbol: str
    exchange: str
    open_interest: float = Field(alias="openInterest")
    open_interest_value: float = Field(alias="openInterestValue")

    class Config:
        populate_by_name = True


class Ticker(BaseModel):
    """24h ticker for a USDT-margined perpetual."""
    symbol: str
    exchange: str
    last_price: float = Field(alias="lastPrice")
    price_change_percent_24h: float = Field(default=0.0, alias="priceChangePercent24h")
    high_24h: float = Field(default=0.0, alias="high24h")
    low_24h: float = Field(default=0.0, alias="low24h")
    volume_24h: float = Field(default=0.0, alias="volume24h")
    quote_volume_24h: float = Field(default=0.0, alias="quoteVolume24h")

    class Config:
        populate_by_name = True


class ExchangeHealth(BaseModel):
    """Per-source result of one fetch cycle. Not persisted."""
    name: str
    status: SourceStatus
    count: int = 0
    latency_ms: int = Field(default=0, alias="latencyMs")
    error: Optional[str] = None

    class Config:
        populate_by_name = True


class AggregateMeta(BaseModel):
    total_exchanges: int = Field(alias="totalExchanges")
    active_exchanges: int = Field(alias="activeExchanges")
    total_entries: int = Field(alias="totalEntries")
    status: HealthStatus
    timestamp: int

    class Config:
        populate_by_name = True


class FearGreedEntry(BaseModel):
    value: int
    classification: str
    timestamp: int


class FearGreedHistory(BaseModel):
    current: FearGreedEntry
    history: List[FearGreedEntry] = Field(default_factory=list)


class HistoryPoint(BaseModel):
    t: int
    rate: float


class OIHistoryPoint(BaseModel):
    t: int
    oi: float


class OIDelta(BaseModel):
    """Current total OI for a symbol with percentage changes; None when no history."""
    symbol: str
    current_oi: float = Field(alias="currentOi")
    change_1h: Optional[float] = Field(default=None, alias="change1h")
    change_4h: Optional[float] = Field(default=None, alias="change4h")
    change_24h: Optional[float] = Field(default=None, alias="change24h")

    class Config:
        populate_by_name = True


class ArbitrageOpportunity(BaseModel):
    """Long the lowest funding venue, short the highest."""
    symbol: str
    long_exchange: str = Field(alias="longExchange")
    short_exchange: str = Field(alias="shortExchange")
    long_rate: float = Field(alias="longRate")
    short_rate: float = Field(alias="shortRate")
    spread: float
    annualized: float
    exchanges: int

    class Config:
        populate_by_name = True


class Candle(BaseModel):
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int = Field(alias="closeTime")

    class Config:
        populate_by_name = True


class CoinSearchResult(BaseModel):
    id: str
    name: str
    api_symbol: str
    symbol: str
    market_cap_rank: Optional[int] = None
    thumb: str = ""
    large: str = ""


class SnapshotResult(BaseModel):
    """Outcome of one snapshot job run."""
    ok: bool
    funding_inserted: int = Field(default=0, alias="fundingInserted")
    oi_inserted: int = Field(default=0, alias="oiInserted")
    pruned: Optional[Dict[str, int]] = None
    errors: Dict[str, str] = Field(default_factory=dict)
    timestamp: int

    class Config:
        populate_by_name = True


def dump(model: BaseModel) -> Dict[str, Any]:
    """JSON-ready dict with camelCase keys."""
    return model.model_dump(mode="json", by_alias=True)


class AssetClassFilter(str, Enum):
    """`assetClass` query values for the funding route."""
    CRYPTO = "crypto"
    STOCKS = "stocks"
    FOREX = "forex"
    COMMODITIES = "commodities"
    ALL = "all"


class AdminLogin(BaseModel):
    password: str


class OptionType(str, Enum):
    CALL = "call"
    PUT = "put"


class OptionInstrument(BaseModel):
    """One listed option with open interest converted to USD."""
    exchange: str
    instrument_name: str = Field(alias="instrumentName")
    option_type: OptionType = Field(alias="optionType")
    strike: float
    expiry_timestamp: int = Field(default=0, alias="expiryTimestamp")
    open_interest_usd: float = Field(default=0.0, alias="openInterestUsd")
    mark_iv: float = Field(default=0.0, alias="markIV")
    underlying_price: float = Field(default=0.0, alias="underlyingPrice")

    class Config:
        populate_by_name = True


class WhalePosition(BaseModel):
    coin: str
    side: str
    size: float
    entry_price: float = Field(alias="entryPrice")
    position_value: float = Field(alias="positionValue")
    unrealized_pnl: float = Field(alias="unrealizedPnl")
    roe: float
    leverage: float
    liquidation_price: Optional[float] = Field(default=None, alias="liquidationPrice")
    margin_used: float = Field(alias="marginUsed")
    cumulative_funding: float = Field(alias="cumulativeFunding")

    class Config:
        populate_by_name = True


class WhaleWallet(BaseModel):
    """Hyperliquid account summary with its open positions, largest first."""
    address: str
    label: str
    account_value: float = Field(alias="accountValue")
    total_notional: float = Field(alias="totalNotional")
    margin_used: float = Field(alias="marginUsed")
    withdrawable: float
    position_count: int = Field(alias="positionCount")
    positions: List[WhalePosition] = Field(default_factory=list)
    last_updated: int = Field(alias="lastUpdated")

    class Config:
        populate_by_name = True


class Liquidation(BaseModel):
    """A filled forced order; `side` is the liquidated position's side."""
    side: str
    size: float
    price: float
    value: float
    timestamp: int
