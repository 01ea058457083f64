"""Turn a candle history into a technical snapshot for the decision engine.

The snapshot is intentionally coarse: a market regime, a handful of indicator
readings and two lists of scored signals (arguments for UP and for DOWN).  The
decision engine only consumes the snapshot, so this module can be replaced by a
richer analyser without touching the rest of the pipeline.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List

import numpy as np
import pandas as pd
from ta.momentum import RSIIndicator
from ta.trend import ADXIndicator, EMAIndicator, MACD
from ta.volatility import AverageTrueRange

from log_utils import setup_logger
from market_data import MarketSnapshot

logger = setup_logger(__name__)

STRONG_TREND_ADX = 40.0
TREND_ADX = 25.0


@dataclass(frozen=True)
class Signal:
    category: str
    reason: str
    strength: float


@dataclass(frozen=True)
class TechnicalSnapshot:
    pair: str
    current_price: float
    price_change_24h: float
    market_regime: str
    rsi_value: float
    macd_signal: str
    trend_strength: float
    volume_indicator: float
    volatility: float
    up_signals: List[Signal] = field(default_factory=list)
    down_signals: List[Signal] = field(default_factory=list)

    @property
    def up_score(self) -> float:
        return float(sum(s.strength for s in self.up_signals))

    @property
    def down_score(self) -> float:
        return float(sum(s.strength for s in self.down_signals))


def _last(series: pd.Series, default: float) -> float:
    if series is None or series.empty:
        return default
    value = series.iloc[-1]
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return value if math.isfinite(value) else default


def classify_regime(adx: float) -> str:
    if adx >= STRONG_TREND_ADX:
        return "STRONG_TRENDING"
    if adx >= TREND_ADX:
        return "TRENDING"
    return "RANGING"


def _clamp_strength(value: float) -> float:
    return round(max(0.0, min(100.0, value)), 1)


def synthesize(snapshot: MarketSnapshot) -> TechnicalSnapshot:
    """Compute indicators on ``snapshot`` and collect directional signals."""

    df = snapshot.to_frame().replace([np.inf, -np.inf], np.nan).dropna(subset=["high", "low", "close"])
    close = df["close"]

    rsi = _last(RSIIndicator(close, window=14).rsi(), 50.0)
    macd_obj = MACD(close, window_slow=26, window_fast=12, window_sign=9)
    macd_line = _last(macd_obj.macd(), 0.0)
    macd_sig = _last(macd_obj.macd_signal(), 0.0)
    macd_hist = macd_line - macd_sig
    adx_ind = ADXIndicator(df["high"], df["low"], close, window=14)
    adx = _last(adx_ind.adx(), 0.0)
    di_plus = _last(adx_ind.adx_pos(), 0.0)
    di_minus = _last(adx_ind.adx_neg(), 0.0)
    atr = _last(AverageTrueRange(df["high"], df["low"], close, window=14).average_true_range(), 0.0)
    ema_fast = _last(EMAIndicator(close, window=20).ema_indicator(), snapshot.current_price)
    ema_slow = _last(EMAIndicator(close, window=50).ema_indicator(), snapshot.current_price)

    mean_volume = float(df["volume"].tail(20).mean()) if not df.empty else 0.0
    last_volume = float(df["volume"].iloc[-1]) if not df.empty else 0.0
    volume_indicator = (last_volume / mean_volume * 100) if mean_volume > 0 else 100.0

    if macd_hist > 0:
        macd_label = "BULLISH"
    elif macd_hist < 0:
        macd_label = "BEARISH"
    else:
        macd_label = "NEUTRAL"

    price = snapshot.current_price
    up: List[Signal] = []
    down: List[Signal] = []

    if rsi < 30:
        up.append(Signal("Momentum", f"RSI oversold at {rsi:.1f}", _clamp_strength((30 - rsi) * 3 + 40)))
    elif rsi > 70:
        down.append(Signal("Momentum", f"RSI overbought at {rsi:.1f}", _clamp_strength((rsi - 70) * 3 + 40)))
    elif rsi >= 55:
        up.append(Signal("Momentum", f"RSI bullish at {rsi:.1f}", _clamp_strength(rsi - 20)))
    elif rsi <= 45:
        down.append(Signal("Momentum", f"RSI bearish at {rsi:.1f}", _clamp_strength(80 - rsi)))

    if macd_label == "BULLISH":
        up.append(Signal("MACD", "MACD above signal line", _clamp_strength(50 + abs(macd_hist) / (atr or 1) * 50)))
    elif macd_label == "BEARISH":
        down.append(Signal("MACD", "MACD below signal line", _clamp_strength(50 + abs(macd_hist) / (atr or 1) * 50)))

    if ema_fast > ema_slow and price > ema_fast:
        up.append(Signal("Trend", "Price above rising EMA20/EMA50 stack", _clamp_strength(50 + adx)))
    elif ema_fast < ema_slow and price < ema_fast:
        down.append(Signal("Trend", "Price below falling EMA20/EMA50 stack", _clamp_strength(50 + adx)))

    if adx >= TREND_ADX:
        if di_plus > di_minus:
            up.append(Signal("Directional", f"+DI leads with ADX {adx:.1f}", _clamp_strength(adx + di_plus - di_minus)))
        elif di_minus > di_plus:
            down.append(Signal("Directional", f"-DI leads with ADX {adx:.1f}", _clamp_strength(adx + di_minus - di_plus)))

    if volume_indicator >= 150:
        target = up if snapshot.price_change_24h >= 0 else down
        target.append(Signal("Volume", f"Volume spike at {volume_indicator:.0f}% of average", _clamp_strength(volume_indicator / 3)))

    trend_strength = _clamp_strength(adx)
    analysis = TechnicalSnapshot(
        pair=snapshot.pair,
        current_price=price,
        price_change_24h=snapshot.price_change_24h,
        market_regime=classify_regime(adx),
        rsi_value=rsi,
        macd_signal=macd_label,
        trend_strength=trend_strength,
        volume_indicator=volume_indicator,
        volatility=atr,
        up_signals=up,
        down_signals=down,
    )
    logger.debug(
        "[SIGNALS] %s regime=%s rsi=%.1f macd=%s up=%.1f down=%.1f",
        snapshot.pair,
        analysis.market_regime,
        rsi,
        macd_label,
        analysis.up_score,
        analysis.down_score,
    )
    return analysis


__all__ = ["Signal", "TechnicalSnapshot", "classify_regime", "synthesize"]
