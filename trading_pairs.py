"""Supported trading pairs and their provider symbols.

The service only analyses a closed set of pairs: seven crypto pairs quoted in
USDT and three major foreign-exchange pairs.  Anything outside this list is
rejected at the market-data boundary with :class:`UnsupportedPairError`.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

CRYPTO_PAIRS: tuple[str, ...] = (
    "BTC/USDT",
    "ETH/USDT",
    "BNB/USDT",
    "SOL/USDT",
    "XRP/USDT",
    "DOGE/USDT",
    "ADA/USDT",
)

FOREX_PAIRS: tuple[str, ...] = (
    "EUR/USD",
    "GBP/USD",
    "AUD/USD",
)

TRADING_PAIRS: tuple[str, ...] = CRYPTO_PAIRS + FOREX_PAIRS

_WHITESPACE = re.compile(r"\s+")


class UnsupportedPairError(ValueError):
    """Raised when a pair is not part of :data:`TRADING_PAIRS`."""


class ProviderSymbols(NamedTuple):
    """Base/quote symbols as expected by the market data provider."""

    base: str
    quote: str


def is_supported_pair(pair: object) -> bool:
    return isinstance(pair, str) and pair in TRADING_PAIRS


def is_forex_pair(pair: str) -> bool:
    return pair in FOREX_PAIRS


def resolve_provider_symbols(pair: str) -> ProviderSymbols:
    """Return the ``fsym``/``tsym`` pair for ``pair`` or raise ``UnsupportedPairError``."""

    if not is_supported_pair(pair):
        raise UnsupportedPairError(f"Trading pair {pair} is not supported")
    base, _, quote = pair.partition("/")
    return ProviderSymbols(base=base, quote=quote)


def compact_symbol(pair: str) -> str:
    """``"BTC/USDT"`` -> ``"BTCUSDT"``."""

    return pair.replace("/", "")


def match_pair_in_text(text: str) -> Optional[str]:
    """Find the first supported pair mentioned in free text.

    Matching is case-insensitive and ignores whitespace, so ``"btc usdt please"``
    resolves to ``"BTC/USDT"``.  Pairs are tried in :data:`TRADING_PAIRS` order.
    """

    normalised = _WHITESPACE.sub("", str(text or "")).upper()
    if not normalised:
        return None
    for pair in TRADING_PAIRS:
        if compact_symbol(pair) in normalised:
            return pair
    return None


__all__ = [
    "CRYPTO_PAIRS",
    "FOREX_PAIRS",
    "TRADING_PAIRS",
    "ProviderSymbols",
    "UnsupportedPairError",
    "compact_symbol",
    "is_forex_pair",
    "is_supported_pair",
    "match_pair_in_text",
    "resolve_provider_symbols",
]
