"""Market data provider backed by the CryptoCompare REST API.

``MarketDataProvider.fetch`` returns a :class:`MarketSnapshot` holding the spot
price, the 24h change and exactly :data:`CANDLE_COUNT` five-minute candles
ordered oldest to newest.  The candle history is best-effort: when the history
endpoint fails, reports an error, or returns fewer rows than requested, the
shortfall is back-filled with synthetic candles placed *before* the real ones.
Only the spot price is mandatory; without it there is nothing to anchor the
synthetic data to and :class:`MarketDataError` is raised.
"""

from __future__ import annotations

import asyncio
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import aiohttp
import pandas as pd

from config import CRYPTOCOMPARE_API_BASE
from log_utils import setup_logger
from observability import log_event
from trading_pairs import resolve_provider_symbols

logger = setup_logger(__name__)

CANDLE_COUNT = 100
CANDLE_MINUTES = 5
CANDLE_INTERVAL_MS = CANDLE_MINUTES * 60 * 1000
RECENT_VOLUME_WINDOW = 10

# Synthetic candles: close = price * (1 ± 0.5%), high/low = close ± 0.1%.
SYNTHETIC_CLOSE_JITTER = 0.005
SYNTHETIC_WICK = 0.001
SYNTHETIC_VOLUME = 1000.0

_HEADERS = {"Accept": "application/json"}


class MarketDataError(RuntimeError):
    """Raised when the provider cannot supply a usable spot price."""


@dataclass(frozen=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class MarketSnapshot:
    pair: str
    current_price: float
    candles: Tuple[Candle, ...]
    price_change_24h: float = 0.0
    volume_change_24h: float = 0.0
    synthetic_candles: int = field(default=0, compare=False)

    def to_frame(self) -> pd.DataFrame:
        """Return the candles as an OHLCV frame indexed by UTC timestamp."""

        df = pd.DataFrame(
            [
                {
                    "timestamp": c.timestamp,
                    "open": c.open,
                    "high": c.high,
                    "low": c.low,
                    "close": c.close,
                    "volume": c.volume,
                }
                for c in self.candles
            ]
        )
        df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms", utc=True)
        return df.set_index("timestamp")


def make_synthetic_candles(
    current_price: float,
    count: int,
    *,
    end_ms: int,
    rng: Optional[random.Random] = None,
) -> List[Candle]:
    """Fabricate ``count`` candles ending one interval before ``end_ms``.

    The returned list is ordered oldest to newest.
    """

    if count <= 0:
        return []
    rand = rng or random
    candles: List[Candle] = []
    for i in range(count):
        timestamp = end_ms - (count - i) * CANDLE_INTERVAL_MS
        price = current_price * (1 + (rand.random() - 0.5) * 2 * SYNTHETIC_CLOSE_JITTER)
        candles.append(
            Candle(
                timestamp=timestamp,
                open=price,
                high=price * (1 + SYNTHETIC_WICK),
                low=price * (1 - SYNTHETIC_WICK),
                close=price,
                volume=SYNTHETIC_VOLUME,
            )
        )
    return candles


def backfill_candles(
    real: Sequence[Candle],
    current_price: float,
    *,
    target: int = CANDLE_COUNT,
    now_ms: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[List[Candle], int]:
    """Return exactly ``target`` candles, prepending synthetic ones when short.

    Returns the candle list and the number of synthetic candles added.
    """

    ordered = sorted(real, key=lambda c: c.timestamp)[-target:] if target > 0 else []
    needed = target - len(ordered)
    if needed <= 0:
        return ordered, 0
    if ordered:
        end_ms = ordered[0].timestamp
    else:
        end_ms = int(now_ms if now_ms is not None else time.time() * 1000)
    synthetic = make_synthetic_candles(current_price, needed, end_ms=end_ms, rng=rng)
    return synthetic + ordered, needed


def volume_change_pct(candles: Sequence[Candle], recent: int = RECENT_VOLUME_WINDOW) -> float:
    """Percent difference between the recent mean volume and the overall mean."""

    if not candles:
        return 0.0
    avg_volume = sum(c.volume for c in candles) / len(candles)
    window = list(candles)[-recent:]
    recent_volume = sum(c.volume for c in window) / len(window)
    if avg_volume <= 0:
        return 0.0
    return (recent_volume / avg_volume - 1) * 100


def _parse_history_point(point: Any) -> Optional[Candle]:
    if not isinstance(point, Mapping):
        return None
    try:
        candle = Candle(
            timestamp=int(point["time"]) * 1000,
            open=float(point["open"]),
            high=float(point["high"]),
            low=float(point["low"]),
            close=float(point["close"]),
            volume=float(point.get("volumeto", 0.0)),
        )
    except (KeyError, TypeError, ValueError):
        return None
    if candle.close <= 0:
        return None
    return candle


class MarketDataProvider:
    """Fetch price, 24h statistics and candle history for a supported pair."""

    def __init__(
        self,
        *,
        base_url: str = CRYPTOCOMPARE_API_BASE,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._rng = rng

    @asynccontextmanager
    async def _client_session(self):
        if self._session is not None:
            yield self._session
            return
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers=_HEADERS,
        )
        try:
            yield session
        finally:
            await session.close()

    async def _get_json(
        self,
        session: aiohttp.ClientSession,
        path: str,
        params: Mapping[str, Any],
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with session.get(url, params=dict(params), headers=_HEADERS) as response:
                if response.status != 200:
                    body = await response.text()
                    raise MarketDataError(f"{path} returned HTTP {response.status}: {body[:200]}")
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise MarketDataError(f"{path} request failed: {type(exc).__name__}: {exc}") from exc

    async def _fetch_price(self, session, base: str, quote: str, pair: str) -> float:
        data = await self._get_json(session, "price", {"fsym": base, "tsyms": quote})
        price = data.get(quote) if isinstance(data, Mapping) else None
        try:
            value = float(price)
        except (TypeError, ValueError):
            value = 0.0
        if value <= 0:
            raise MarketDataError(f"Price data not available for {pair}")
        return value

    async def _fetch_change_24h(self, session, base: str, quote: str, current_price: float) -> float:
        try:
            data = await self._get_json(
                session,
                "generateAvg",
                {"fsym": base, "tsym": quote, "e": "CCCAGG"},
            )
        except MarketDataError as exc:
            logger.warning("24h statistics unavailable for %s/%s: %s", base, quote, exc)
            return 0.0
        raw = data.get("RAW") if isinstance(data, Mapping) else None
        change = raw.get("CHANGE24HOUR") if isinstance(raw, Mapping) else None
        try:
            return float(change) / current_price * 100 if change else 0.0
        except (TypeError, ValueError):
            return 0.0

    async def _fetch_history(self, session, base: str, quote: str) -> List[Candle]:
        try:
            data = await self._get_json(
                session,
                "v2/histominute",
                {"fsym": base, "tsym": quote, "limit": CANDLE_COUNT, "aggregate": CANDLE_MINUTES},
            )
        except MarketDataError as exc:
            logger.error("History request failed for %s/%s: %s", base, quote, exc)
            return []
        if not isinstance(data, Mapping):
            return []
        if data.get("Response") == "Error":
            logger.error("History error for %s/%s: %s", base, quote, data.get("Message"))
            return []
        inner = data.get("Data")
        points = inner.get("Data") if isinstance(inner, Mapping) else None
        if not isinstance(points, list):
            return []
        candles = [c for c in (_parse_history_point(p) for p in points) if c is not None]
        return candles

    async def fetch(self, pair: str) -> MarketSnapshot:
        """Return a snapshot with exactly :data:`CANDLE_COUNT` candles for ``pair``."""

        symbols = resolve_provider_symbols(pair)
        logger.info("Fetching market data for %s (%s/%s)", pair, symbols.base, symbols.quote)
        async with self._client_session() as session:
            current_price = await self._fetch_price(session, symbols.base, symbols.quote, pair)
            price_change = await self._fetch_change_24h(session, symbols.base, symbols.quote, current_price)
            real = await self._fetch_history(session, symbols.base, symbols.quote)

        candles, synthetic = backfill_candles(real, current_price, rng=self._rng)
        if synthetic:
            log_event(logger, "synthetic_backfill", pair=pair, synthetic=synthetic, real=len(candles) - synthetic)
        snapshot = MarketSnapshot(
            pair=pair,
            current_price=current_price,
            candles=tuple(candles),
            price_change_24h=price_change,
            volume_change_24h=volume_change_pct(candles),
            synthetic_candles=synthetic,
        )
        logger.info(
            "Fetched data for %s: %.4f, 24h: %.2f%%, synthetic candles: %d",
            pair,
            current_price,
            price_change,
            synthetic,
        )
        return snapshot


__all__ = [
    "CANDLE_COUNT",
    "Candle",
    "MarketDataError",
    "MarketDataProvider",
    "MarketSnapshot",
    "backfill_candles",
    "make_synthetic_candles",
    "volume_change_pct",
]
