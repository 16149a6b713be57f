from decimal import Decimal
import pytest
from infohub.models import AssetClass
from infohub.normalize import (
    RATE_UNITS, from_8h_percent, is_crypto_symbol, normalize_symbol, to_8h_percent, to_float
)

# A plausible raw quote per source, in the source's own representation
RAW_SAMPLES = {
    "GMX": "12500000000000000000000",
    "Hyperliquid": "0.0000125",
    "dYdX": "-0.00000731",
    "Kraken": "0.00004",
}


@pytest.mark.parametrize("exchange", sorted(RATE_UNITS))
def test_rate_conversion_round_trips_for_every_source(exchange):
    raw = RAW_SAMPLES.get(exchange, "0.0001")
    back = from_8h_percent(to_8h_percent(raw, exchange), exchange)
    assert float(back) == pytest.approx(float(Decimal(raw)), rel=1e-9)


def test_eight_hour_sources_scale_to_percent():
    assert to_8h_percent("0.0001", "Binance") == pytest.approx(0.01)
    assert to_8h_percent(-0.00025, "Bybit") == pytest.approx(-0.025)


def test_hourly_sources_are_multiplied_by_eight():
    assert to_8h_percent("0.0000125", "Hyperliquid") == pytest.approx(0.01)
    assert to_8h_percent("0.0000125", "dYdX") == pytest.approx(0.01)


def test_four_hour_source_is_doubled():
    assert to_8h_percent("0.0001", "Kraken") == pytest.approx(0.02)


def test_fixed_point_per_second_source():
    # 1e-8 per second in 1e30 fixed point
    assert to_8h_percent("1e22", "GMX") == pytest.approx(1e-8 * 28800 * 100)


def test_unverified_units_are_flagged():
    assert not RATE_UNITS["GMX"].verified
    assert not RATE_UNITS["Kraken"].verified
    assert RATE_UNITS["Binance"].verified


def test_unknown_exchange_is_rejected():
    with pytest.raises(ValueError):
        to_8h_percent("0.0001", "Nowhere")


@pytest.mark.parametrize("raw, exchange, expected", [
    ("AAPLX_USDT", "Gate.io", ("AAPL", AssetClass.STOCKS)),
    ("BTC_USDT", "Gate.io", ("BTC", AssetClass.CRYPTO)),
    ("SHIELDXYZUSDT", "Aster", ("XYZ", AssetClass.STOCKS)),
    ("EURUSDUSDT", "Aster", ("EURUSD", AssetClass.FOREX)),
    ("BTCUSDT", "Aster", ("BTC", AssetClass.CRYPTO)),
    ("EUR-USD", "dYdX", ("EURUSD", AssetClass.FOREX)),
    ("XAU-USD", "dYdX", ("XAU", AssetClass.COMMODITIES)),
    ("CVX-USD", "dYdX", ("CVX", AssetClass.CRYPTO)),
    ("NCCOGOLD2USD-USDT", "BingX", ("XAU", AssetClass.COMMODITIES)),
    ("NCSKTSLA2USD-USDT", "BingX", ("TSLA", AssetClass.STOCKS)),
    ("NCFXEUR2USD-USDT", "BingX", ("EURUSD", AssetClass.FOREX)),
    ("NCSISP5002USD-USDT", "BingX", ("SPX", AssetClass.STOCKS)),
    ("ETH-USDT", "BingX", ("ETH", AssetClass.CRYPTO)),
    ("TSLAUSDT", "Phemex", ("TSLA", AssetClass.STOCKS)),
    ("XAU", "Binance", ("XAU", AssetClass.COMMODITIES)),
    ("SOL", "Bybit", ("SOL", AssetClass.CRYPTO)),
])
def test_normalize_symbol(raw, exchange, expected):
    assert normalize_symbol(raw, exchange) == expected


def test_tokenized_stocks_are_not_crypto():
    assert not is_crypto_symbol("NCSKAAPL")
    assert not is_crypto_symbol("AAPLX")
    assert is_crypto_symbol("BTC")


def test_to_float():
    assert to_float("1.5") == 1.5
    assert to_float(None) == 0.0
    assert to_float("abc", -1.0) == -1.0
    assert to_float("nan", 2.0) == 2.0
