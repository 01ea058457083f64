import random
from typing import List, Optional

import pytest

import observability
from config import ServiceSettings
from credit_storage import JsonFileCreditLedger
from decision_engine import PredictionDecision
from market_data import CANDLE_COUNT, MarketSnapshot, make_synthetic_candles
from signal_synthesizer import Signal, TechnicalSnapshot
from trading_pairs import resolve_provider_symbols


@pytest.fixture(autouse=True)
def _metrics_to_tmp(tmp_path):
    observability.set_metrics_path(str(tmp_path / "metrics.csv"))
    yield


@pytest.fixture
def settings(tmp_path) -> ServiceSettings:
    return ServiceSettings(
        thinking_delay=0.0,
        min_analysis_time=0.0,
        follow_up_delay=0.0,
        reply_delay=0.0,
        ledger_path=str(tmp_path / "credits.json"),
    )


@pytest.fixture
def ledger(settings) -> JsonFileCreditLedger:
    return JsonFileCreditLedger(settings.ledger_path, settings.default_credits)


class FakeChannel:
    """Records outbound frames as dicts; ``close_after`` closes after N sends."""

    def __init__(self, close_after: Optional[int] = None) -> None:
        self.sent: List[dict] = []
        self.closed = False
        self._close_after = close_after

    async def send(self, message) -> None:
        self.sent.append(message.to_dict())
        if self._close_after is not None and len(self.sent) >= self._close_after:
            self.closed = True

    @property
    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]


class FakeMarketData:
    def __init__(self, price: float = 50_000.0) -> None:
        self.price = price
        self.calls: List[str] = []

    async def fetch(self, pair: str) -> MarketSnapshot:
        self.calls.append(pair)
        resolve_provider_symbols(pair)
        candles = make_synthetic_candles(
            self.price, CANDLE_COUNT, end_ms=1_700_000_000_000, rng=random.Random(7)
        )
        return MarketSnapshot(pair=pair, current_price=self.price, candles=tuple(candles), price_change_24h=1.5)


class FakeEngine:
    def __init__(self, decision: Optional[PredictionDecision]) -> None:
        self.decision = decision
        self.calls: List[TechnicalSnapshot] = []

    async def decide(self, technical: TechnicalSnapshot) -> Optional[PredictionDecision]:
        self.calls.append(technical)
        return self.decision


def make_technical(snapshot: MarketSnapshot) -> TechnicalSnapshot:
    return TechnicalSnapshot(
        pair=snapshot.pair,
        current_price=snapshot.current_price,
        price_change_24h=snapshot.price_change_24h,
        market_regime="TRENDING",
        rsi_value=58.0,
        macd_signal="BULLISH",
        trend_strength=31.0,
        volume_indicator=120.0,
        volatility=12.5,
        up_signals=[Signal("Momentum", "RSI bullish at 58.0", 38.0)],
        down_signals=[],
    )


def make_decision(direction: str = "UP", confidence: int = 95) -> PredictionDecision:
    return PredictionDecision(
        direction=direction,
        confidence=confidence,
        duration="30-45 seconds",
        rationale="Momentum and trend agree.",
        risk_factors=("Sudden reversal", "Low liquidity"),
    )


class FakeJsonResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def text(self):
        return str(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class QueuedSession:
    """Serves queued responses in order; ``error`` is raised on every request."""

    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.requests = []

    def get(self, url, params=None, headers=None):
        self.requests.append((url, params, headers))
        if self.error:
            raise self.error
        return self.responses.pop(0)
