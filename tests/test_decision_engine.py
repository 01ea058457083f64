import asyncio
import json
from types import SimpleNamespace

import pytest

import decision_engine
import groq_safe
from decision_engine import (
    DecisionEngine,
    DecisionParseError,
    DecisionSource,
    GroqDecisionSource,
    ModelUnavailableError,
    PredictionDecision,
    build_analysis_prompt,
    parse_decision,
)
from groq_safe import GroqAuthError
from signal_synthesizer import Signal, TechnicalSnapshot


def _snapshot() -> TechnicalSnapshot:
    return TechnicalSnapshot(
        pair="BTC/USDT",
        current_price=64_250.5,
        price_change_24h=-1.25,
        market_regime="TRENDING",
        rsi_value=41.2,
        macd_signal="BEARISH",
        trend_strength=28.0,
        volume_indicator=135.0,
        volatility=210.4,
        up_signals=[],
        down_signals=[Signal("MACD", "MACD below signal line", 62.0), Signal("Momentum", "RSI bearish at 41.2", 38.8)],
    )


def _reply(**overrides) -> str:
    payload = {
        "direction": "DOWN",
        "confidence": 94,
        "duration": "45-60 seconds",
        "rationale": "Bearish MACD with falling momentum.",
        "riskFactors": ["Short squeeze", "News shock"],
    }
    payload.update(overrides)
    return json.dumps(payload)


class StaticSource(DecisionSource):
    def __init__(self, name, result):
        self.name = name
        self.result = result
        self.calls = 0

    async def decide(self, messages):
        self.calls += 1
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


@pytest.mark.parametrize(
    "raw, expected",
    [(120, 98), (50, 90), (94.6, 95), ("93", 93), (97.4, 97), (92.5, 93), (94.5, 95), (97.5, 98)],
)
def test_confidence_is_clamped_and_rounded(raw, expected):
    assert parse_decision(_reply(confidence=raw)).confidence == expected


def test_parse_decision_accepts_fenced_json_and_truncates_risks():
    text = "```json\n" + _reply(direction="up", riskFactors=["a", "b", "c", "d", "e"]) + "\n```"
    decision = parse_decision(text)
    assert decision.direction == "UP"
    assert decision.risk_factors == ("a", "b", "c", "d")
    assert decision.to_dict()["riskFactors"] == ["a", "b", "c", "d"]


@pytest.mark.parametrize(
    "text",
    [
        "",
        "not json",
        "[]",
        _reply(direction="SIDEWAYS"),
        _reply(confidence="high"),
        _reply(duration="5 minutes"),
        _reply(rationale=""),
        _reply(riskFactors=["only one"]),
        _reply(riskFactors="none"),
    ],
)
def test_parse_decision_rejects_invalid_replies(text):
    with pytest.raises(DecisionParseError):
        parse_decision(text)


def test_prompt_embeds_snapshot_and_signals():
    prompt = build_analysis_prompt(_snapshot())
    assert "Pair: BTC/USDT" in prompt
    assert "24h Change: -1.25%" in prompt
    assert "Market Regime: TRENDING" in prompt
    assert "MACD Signal: BEARISH" in prompt
    assert "DOWN Signals (Score: 100.8)" in prompt
    assert "• MACD: MACD below signal line (62)" in prompt
    assert "UP Signals (Score: 0.0):\n  • none" in prompt


def test_engine_returns_primary_decision_without_fallback():
    decision = parse_decision(_reply())
    primary = StaticSource("primary", decision)
    fallback = StaticSource("fallback", parse_decision(_reply(direction="UP")))

    result = asyncio.run(DecisionEngine([primary, fallback]).decide(_snapshot()))

    assert result is decision
    assert fallback.calls == 0


def test_engine_falls_back_once_on_failure():
    primary = StaticSource("primary", DecisionParseError("Invalid JSON response"))
    fallback = StaticSource("fallback", parse_decision(_reply(direction="UP", confidence=99)))

    result = asyncio.run(DecisionEngine([primary, fallback]).decide(_snapshot()))

    assert result.direction == "UP"
    assert result.confidence == 98
    assert primary.calls == 1
    assert fallback.calls == 1


def test_engine_returns_none_when_all_sources_fail(caplog):
    sources = [
        StaticSource("primary", ModelUnavailableError("No text content")),
        StaticSource("fallback", RuntimeError("connection reset")),
    ]
    result = asyncio.run(DecisionEngine(sources).decide(_snapshot()))
    assert result is None
    assert any("All decision sources failed" in r.message for r in caplog.records)


def test_engine_propagates_cancellation():
    fallback = StaticSource("fallback", parse_decision(_reply()))
    engine = DecisionEngine([StaticSource("primary", asyncio.CancelledError()), fallback])

    async def _run():
        with pytest.raises(asyncio.CancelledError):
            await engine.decide(_snapshot())

    asyncio.run(_run())
    assert fallback.calls == 0


def test_engine_requires_sources():
    with pytest.raises(ValueError):
        DecisionEngine([])


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.fixture
def groq_key(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk_test")
    groq_safe.reset_auth_state()
    yield
    groq_safe.reset_auth_state()


def test_groq_source_requests_json_object(groq_key):
    completions = FakeCompletions(content=_reply(confidence=85))
    source = GroqDecisionSource("llama-3.3-70b-versatile", client_factory=lambda: _client(completions))

    decision = asyncio.run(source.decide(decision_engine.build_messages(_snapshot())))

    assert isinstance(decision, PredictionDecision)
    assert decision.confidence == 90
    assert completions.kwargs["model"] == "llama-3.3-70b-versatile"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert completions.kwargs["temperature"] == 0.3
    assert completions.kwargs["messages"][0]["role"] == "system"
    assert "timeout" not in completions.kwargs


def test_groq_source_empty_content_is_unavailable(groq_key):
    source = GroqDecisionSource("m", client_factory=lambda: _client(FakeCompletions(content="")))
    with pytest.raises(ModelUnavailableError):
        asyncio.run(source.decide([]))


def test_groq_source_auth_error_disables_groq(groq_key):
    error = RuntimeError("Invalid API Key")
    error.status_code = 401
    source = GroqDecisionSource("m", client_factory=lambda: _client(FakeCompletions(error=error)))

    with pytest.raises(GroqAuthError):
        asyncio.run(source.decide([]))
    with pytest.raises(GroqAuthError):
        groq_safe.require_groq_api_key()


def test_groq_source_without_key_fails_fast(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    groq_safe.reset_auth_state()
    calls = []
    source = GroqDecisionSource("m", client_factory=lambda: calls.append(1))
    try:
        with pytest.raises(GroqAuthError):
            asyncio.run(source.decide([]))
    finally:
        groq_safe.reset_auth_state()
    assert calls == []


def test_from_config_uses_primary_then_fallback(monkeypatch):
    monkeypatch.setenv("DECISION_LLM_MODEL", "llama-3.3-70b-versatile")
    monkeypatch.setenv("DECISION_FALLBACK_MODEL", "llama-3.1-8b-instant")
    engine = DecisionEngine.from_config(timeout=12.0)
    assert [s.name for s in engine.sources] == ["llama-3.3-70b-versatile", "llama-3.1-8b-instant"]
    assert all(s.timeout == 12.0 for s in engine.sources)


def test_source_without_decide_cannot_be_constructed():
    class _Nameless(DecisionSource):
        name = "nameless"

    with pytest.raises(TypeError):
        _Nameless()
