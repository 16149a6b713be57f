"""
Cross-exchange normalization: funding-rate units and symbol classification.

Every funding source quotes its rate as a fraction per funding interval,
sometimes in fixed point. RATE_UNITS records scale and interval per source;
all rates are converted to percent per 8 hours before they are merged,
sorted or compared.
"""

import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple, Union
from infohub.models import AssetClass

EIGHT_HOURS = 8 * 3600
HOUR = 3600

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class RateUnit:
    """
    How a source quotes funding.

    raw / scale is the fraction paid per `interval_seconds`.
    Units with verified=False were inferred from observed values and need
    confirming against the venue's API documentation.
    """
    scale: Decimal
    interval_seconds: int
    verified: bool = True


RATE_UNITS: Dict[str, RateUnit] = {
    "Binance": RateUnit(Decimal(1), EIGHT_HOURS),
    "Bybit": RateUnit(Decimal(1), EIGHT_HOURS),
    "OKX": RateUnit(Decimal(1), EIGHT_HOURS),
    "Bitget": RateUnit(Decimal(1), EIGHT_HOURS),
    "Gate.io": RateUnit(Decimal(1), EIGHT_HOURS),
    "MEXC": RateUnit(Decimal(1), EIGHT_HOURS),
    "BingX": RateUnit(Decimal(1), EIGHT_HOURS),
    "Phemex": RateUnit(Decimal(1), EIGHT_HOURS),
    "Aster": RateUnit(Decimal(1), EIGHT_HOURS),
    "Hyperliquid": RateUnit(Decimal(1), HOUR),
    "dYdX": RateUnit(Decimal(1), HOUR),
    # Absolute rate divided by mark price upstream of this conversion
    "Kraken": RateUnit(Decimal(1), 4 * HOUR, verified=False),
    "Lighter": RateUnit(Decimal(1), EIGHT_HOURS, verified=False),
    # Per-second rate in 1e30 fixed point
    "GMX": RateUnit(Decimal("1e30"), 1, verified=False),
}


def _unit(exchange: str) -> RateUnit:
    try:
        return RATE_UNITS[exchange]
    except KeyError:
        raise ValueError(f"No funding rate unit registered for {exchange}")


def to_8h_percent(raw: Number, exchange: str) -> float:
    """
    Convert a raw upstream funding value to percent per 8 hours.

    Args:
        raw: Value as quoted by the exchange (string, int or float)
        exchange: Source name, a key of RATE_UNITS
    """
    unit = _unit(exchange)
    fraction = Decimal(str(raw)) / unit.scale
    return float(fraction * EIGHT_HOURS / unit.interval_seconds * 100)


def from_8h_percent(rate: Number, exchange: str) -> Decimal:
    """Inverse of to_8h_percent: back to the exchange's raw representation."""
    unit = _unit(exchange)
    fraction = Decimal(str(rate)) / 100 * unit.interval_seconds / EIGHT_HOURS
    return fraction * unit.scale


# Known stock symbols (traded as perps on various DEX/CEX)
KNOWN_STOCKS = {
    'AAPL', 'AMZN', 'GOOGL', 'GOOG', 'META', 'MSFT', 'NFLX', 'NVDA', 'TSLA',
    'COIN', 'HOOD', 'MSTR', 'SQ', 'PYPL', 'RIOT', 'MARA', 'CLSK', 'CIFR',
    'AMD', 'INTC', 'ARM', 'AVGO', 'QCOM', 'TSM', 'MRVL', 'MU',
    'PLTR', 'UBER', 'ABNB', 'SNOW', 'CRM', 'ORCL', 'SHOP', 'NET', 'BA',
    'DIS', 'JPM', 'V', 'MA', 'WMT', 'KO', 'PEP', 'JNJ', 'PFE', 'LLY',
    'UNH', 'BRK', 'XOM', 'CVX', 'PG', 'NKE', 'MCD', 'HD', 'COST',
    'CSCO', 'ACN', 'ASML', 'RDDT', 'APP', 'IBM', 'GME', 'GE', 'RACE', 'CRCL', 'WDC',
    'SPY', 'SPX', 'QQQ', 'IWM', 'DIA', 'ARKK',
}

# Canonical forex pairs, no separators
KNOWN_FOREX = {
    'EURUSD', 'GBPUSD', 'USDJPY', 'USDCHF', 'AUDUSD', 'USDCAD', 'NZDUSD',
    'EURGBP', 'EURJPY', 'EURCHF', 'EURAUD', 'EURCAD', 'EURNZD',
    'GBPJPY', 'GBPCHF', 'GBPAUD', 'GBPCAD', 'GBPNZD',
    'AUDJPY', 'AUDCHF', 'AUDNZD', 'AUDCAD',
    'NZDJPY', 'NZDCHF', 'NZDCAD',
    'CADJPY', 'CADCHF', 'CHFJPY',
    'USDKRW', 'USDMXN', 'USDBRL', 'USDTRY', 'USDZAR', 'USDSGD', 'USDHKD',
    'USDSEK', 'USDNOK', 'USDPLN', 'USDCZK', 'USDHUF', 'USDTWD', 'USDINR',
    'USDDKK', 'USDILS',
    'EURSGD', 'GBPSGD',
    'TRYUSD', 'JPYUSD', 'CHFUSD', 'MXNUSD', 'KRWUSD', 'SGDUSD',
    'HKDUSD', 'SEKUSD', 'NOKUSD', 'PLNUSD', 'CZKUSD', 'HUFUSD',
    'CADUSD', 'ZARUSD', 'BRLUSD', 'TWDUSD', 'INRUSD',
}

FOREX_BASES = {
    'EUR', 'GBP', 'JPY', 'CHF', 'AUD', 'CAD', 'NZD',
    'SEK', 'NOK', 'PLN', 'CZK', 'HUF', 'TRY', 'ZAR',
    'SGD', 'HKD', 'KRW', 'MXN', 'BRL', 'TWD', 'INR',
}

KNOWN_COMMODITIES = {
    'XAU', 'XAG', 'XPT', 'XPD',
    'XCU', 'HG',
    'WTI', 'BRENT', 'NATGAS', 'UKOIL', 'USOIL',
    'PAXG',
}

_BINGX_COMMODITIES = {
    'GOLD': 'XAU', 'SILVER': 'XAG', 'OILWTI': 'WTI', 'OILBRENT': 'BRENT',
    'NATURALGAS': 'NATGAS', 'COPPER': 'XCU', 'PALLADIUM': 'XPD',
}

_BINGX_INDICES = {
    'SP500': 'SPX', 'NASDAQ100': 'QQQ', 'DOWJONES': 'DIA',
    'RUSSELL2000': 'IWM', 'NIKKEI225': 'NIKKEI',
}

# Tokenized equities listed next to crypto perps
_STOCK_PREFIX = re.compile(r'^(NCSK|ACNSTOCK)')
_STOCK_SUFFIX_SYMBOLS = {
    'AAPLX', 'NVDAX', 'SPYX', 'CRCLX', 'METAX', 'WMTX', 'GOOGX', 'AMZX',
    'MSFTX', 'TSLAX', 'COINX', 'HOODDX', 'ARMX', 'INTCX', 'PLTRX', 'MRVLX',
}

Normalized = Tuple[str, AssetClass]


def is_crypto_symbol(symbol: str) -> bool:
    """False for tokenized stocks and stock indices."""
    if _STOCK_PREFIX.match(symbol):
        return False
    return symbol not in _STOCK_SUFFIX_SYMBOLS


def classify_symbol(symbol: str) -> Normalized:
    if symbol in KNOWN_STOCKS:
        return symbol, AssetClass.STOCKS
    if symbol in KNOWN_FOREX:
        return symbol, AssetClass.FOREX
    if symbol in KNOWN_COMMODITIES:
        return symbol, AssetClass.COMMODITIES
    return symbol, AssetClass.CRYPTO


def _strip_suffix(symbol: str, suffix: str) -> str:
    return symbol[:-len(suffix)] if symbol.endswith(suffix) else symbol


def _normalize_gateio(raw: str) -> Normalized:
    # xStocks: AAPLX_USDT
    symbol = raw.replace('_USDT', '')
    if symbol.endswith('X') and symbol[:-1] in KNOWN_STOCKS:
        return symbol[:-1], AssetClass.STOCKS
    return classify_symbol(symbol)


def _normalize_aster(raw: str) -> Normalized:
    # SHIELD prefix marks hedge variants of non-crypto assets
    had_shield = raw.startswith('SHIELD')
    symbol = raw[6:] if had_shield else raw
    if symbol.endswith('USDT') or symbol.endswith('USDC'):
        symbol = symbol[:-4]

    if symbol in KNOWN_STOCKS:
        return symbol, AssetClass.STOCKS
    if symbol in KNOWN_COMMODITIES:
        return symbol, AssetClass.COMMODITIES
    if symbol in KNOWN_FOREX:
        return symbol, AssetClass.FOREX

    base = symbol.replace('USD', '')
    if symbol.endswith('USD') and base in FOREX_BASES:
        forward, reverse = base + 'USD', 'USD' + base
        if forward in KNOWN_FOREX:
            return forward, AssetClass.FOREX
        if reverse in KNOWN_FOREX:
            return reverse, AssetClass.FOREX
        return forward, AssetClass.FOREX

    if had_shield:
        return symbol, AssetClass.STOCKS
    return symbol, AssetClass.CRYPTO


def _normalize_phemex(raw: str) -> Normalized:
    symbol = _strip_suffix(raw, 'USDT')
    if symbol in KNOWN_STOCKS:
        return symbol, AssetClass.STOCKS
    if symbol in KNOWN_COMMODITIES:
        return symbol, AssetClass.COMMODITIES
    if symbol in KNOWN_FOREX:
        return symbol, AssetClass.FOREX
    return symbol, AssetClass.CRYPTO


def _normalize_dydx(raw: str) -> Normalized:
    symbol = raw.replace('-USD', '')
    if symbol in FOREX_BASES:
        return symbol + 'USD', AssetClass.FOREX
    if symbol in KNOWN_COMMODITIES:
        return symbol, AssetClass.COMMODITIES
    # CVX, DIS etc. are crypto tokens on dYdX, so no stock lookup
    return symbol, AssetClass.CRYPTO


def _normalize_bingx(raw: str) -> Normalized:
    symbol = raw.replace('-USDT', '')

    if symbol.startswith('NCCO'):
        ticker = _strip_suffix(symbol[4:], '2USD')
        return _BINGX_COMMODITIES.get(ticker, ticker), AssetClass.COMMODITIES

    if symbol.startswith('NCFX'):
        ticker = _strip_suffix(symbol[4:], '2USD').replace('2', '', 1)
        if ticker in FOREX_BASES:
            return ticker + 'USD', AssetClass.FOREX
        return ticker, AssetClass.FOREX

    if symbol.startswith('NCSI'):
        ticker = _strip_suffix(symbol[4:], '2USD')
        return _BINGX_INDICES.get(ticker, ticker), AssetClass.STOCKS

    if symbol.startswith('NCSK') or symbol.startswith('ACNSTOCK'):
        ticker = _strip_suffix(symbol.replace('NCSK', '').replace('ACNSTOCK', ''), '2USD')
        return ticker or symbol, AssetClass.STOCKS

    if symbol.endswith('2USD'):
        return symbol[:-4], AssetClass.STOCKS

    if symbol.endswith('X') and symbol[:-1] in KNOWN_STOCKS:
        return symbol[:-1], AssetClass.STOCKS

    if symbol in KNOWN_STOCKS:
        return symbol, AssetClass.STOCKS
    if symbol in KNOWN_COMMODITIES:
        return symbol, AssetClass.COMMODITIES
    return symbol, AssetClass.CRYPTO


_EXCHANGE_NORMALIZERS = {
    'gate.io': _normalize_gateio,
    'gateio': _normalize_gateio,
    'aster': _normalize_aster,
    'phemex': _normalize_phemex,
    'dydx': _normalize_dydx,
    'bingx': _normalize_bingx,
}


def normalize_symbol(raw_symbol: str, exchange: str) -> Normalized:
    """
    Normalize a raw exchange symbol and classify its asset class.

    Args:
        raw_symbol: Symbol as the fetcher produced it (quote suffix may remain)
        exchange: Exchange display name

    Returns:
        (symbol, asset_class)
    """
    normalizer = _EXCHANGE_NORMALIZERS.get(exchange.lower(), classify_symbol)
    return normalizer(raw_symbol)


def to_float(value, default: float = 0.0) -> float:
    """Parse an upstream number (often a string); `default` for missing, bad or NaN input."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(result) else result
