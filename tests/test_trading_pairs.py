import pytest

import trading_pairs
from trading_pairs import UnsupportedPairError


def test_pair_enumeration_is_closed():
    assert len(trading_pairs.CRYPTO_PAIRS) == 7
    assert len(trading_pairs.FOREX_PAIRS) == 3
    assert trading_pairs.TRADING_PAIRS[0] == "BTC/USDT"
    assert all(p.endswith("/USDT") for p in trading_pairs.CRYPTO_PAIRS)


def test_resolve_provider_symbols():
    assert trading_pairs.resolve_provider_symbols("ETH/USDT") == ("ETH", "USDT")
    symbols = trading_pairs.resolve_provider_symbols("EUR/USD")
    assert symbols.base == "EUR"
    assert symbols.quote == "USD"


def test_resolve_unsupported_pair_raises():
    with pytest.raises(UnsupportedPairError):
        trading_pairs.resolve_provider_symbols("SHIB/USDT")
    assert not trading_pairs.is_supported_pair(None)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("btc usdt please", "BTC/USDT"),
        ("What about  EURUSD today?", "EUR/USD"),
        ("doge/usdt", None),
        ("dogeusdt", "DOGE/USDT"),
        ("hello there", None),
        ("", None),
    ],
)
def test_match_pair_in_text(text, expected):
    assert trading_pairs.match_pair_in_text(text) == expected
