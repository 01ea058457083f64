"""LLM decision engine with an ordered chain of fallback models.

The engine turns a :class:`~signal_synthesizer.TechnicalSnapshot` into a
:class:`PredictionDecision`.  The same prompt is offered to each configured
decision source in order (primary model first, then the fallback model); the
first source that returns a valid JSON decision wins.  Any failure along the
way (empty response, missing text, malformed JSON, API or network error) moves
on to the next source.  When every source fails ``decide`` returns ``None`` and
the caller reports the service as unavailable.

Whatever confidence the model returns is clamped into ``[90, 98]`` and rounded
to an integer, and ``duration`` must be one of :data:`DURATION_LABELS`.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

import config
from groq_client import get_groq_client
from groq_safe import (
    GroqAuthError,
    describe_error,
    disable_auth,
    is_auth_error,
    is_model_decommissioned_error,
    require_groq_api_key,
)
from log_utils import setup_logger
from observability import log_event
from signal_synthesizer import TechnicalSnapshot

logger = setup_logger(__name__)

DIRECTIONS = ("UP", "DOWN", "NEUTRAL")
DURATION_LABELS = (
    "10-15 seconds",
    "15-20 seconds",
    "20-30 seconds",
    "30-45 seconds",
    "45-60 seconds",
    "1-2 minutes",
)
MIN_CONFIDENCE = 90
MAX_CONFIDENCE = 98
MIN_RISK_FACTORS = 2
MAX_RISK_FACTORS = 4


class ModelUnavailableError(RuntimeError):
    """Raised by a decision source that could not produce a decision."""


class DecisionParseError(ValueError):
    """Raised when a model reply does not match :data:`DECISION_SCHEMA`."""


@dataclass(frozen=True)
class PredictionDecision:
    direction: str
    confidence: int
    duration: str
    rationale: str
    risk_factors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def actionable(self) -> bool:
        """UP and DOWN calls are actionable; NEUTRAL means no edge."""

        return self.direction != "NEUTRAL"

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "confidence": self.confidence,
            "duration": self.duration,
            "rationale": self.rationale,
            "riskFactors": list(self.risk_factors),
        }


DECISION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "direction": {"type": "string", "enum": list(DIRECTIONS)},
        "confidence": {"type": "number", "minimum": MIN_CONFIDENCE, "maximum": MAX_CONFIDENCE},
        "duration": {"type": "string", "enum": list(DURATION_LABELS)},
        "rationale": {"type": "string"},
        "riskFactors": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": MIN_RISK_FACTORS,
            "maxItems": MAX_RISK_FACTORS,
        },
    },
    "required": ["direction", "confidence", "duration", "rationale", "riskFactors"],
}

_SYSTEM_PROMPT = (
    "You are a quantitative strategist specialising in very short-term crypto and forex price moves.\n"
    "Read the technical snapshot and decide where price goes next.\n\n"
    "Rules:\n"
    "1. direction is \"UP\", \"DOWN\" or \"NEUTRAL\". Use NEUTRAL only when there is no real edge.\n"
    "2. confidence is a number from 90 to 98:\n"
    "   - 90-92 for mixed signals or a RANGING regime,\n"
    "   - 93-95 for a clear bias with some counter-signals,\n"
    "   - 96-98 only for near-perfect alignment with trend and volume confirmation.\n"
    "   Spread your confidence across the range; do not repeat the same value.\n"
    f"3. duration is one of {json.dumps(list(DURATION_LABELS))}.\n"
    "4. rationale is 2-3 sentences naming the factors that drive the call.\n"
    "5. riskFactors lists 2-4 concrete risks to the call.\n\n"
    "Respond with a single JSON object that validates against this JSON schema and nothing else:\n"
    f"{json.dumps(DECISION_SCHEMA)}"
)


def _format_signals(signals) -> str:
    if not signals:
        return "  • none"
    return "\n".join(f"  • {s.category}: {s.reason} ({s.strength:.0f})" for s in signals)


def build_analysis_prompt(snapshot: TechnicalSnapshot) -> str:
    """Render ``snapshot`` as the user prompt sent to every decision source."""

    sign = "+" if snapshot.price_change_24h >= 0 else ""
    return (
        "MARKET SNAPSHOT:\n"
        f"Pair: {snapshot.pair}\n"
        f"Current Price: ${snapshot.current_price:.2f}\n"
        f"24h Change: {sign}{snapshot.price_change_24h:.2f}%\n"
        f"Market Regime: {snapshot.market_regime}\n\n"
        "TECHNICAL INDICATORS:\n"
        f"- RSI: {snapshot.rsi_value:.1f}\n"
        f"- MACD Signal: {snapshot.macd_signal}\n"
        f"- Trend Strength: {snapshot.trend_strength:.1f}%\n"
        f"- Volume Indicator: {snapshot.volume_indicator:.1f}\n"
        f"- Volatility (ATR): {snapshot.volatility:.2f}\n\n"
        "SIGNAL ANALYSIS:\n"
        f"UP Signals (Score: {snapshot.up_score:.1f}):\n{_format_signals(snapshot.up_signals)}\n\n"
        f"DOWN Signals (Score: {snapshot.down_score:.1f}):\n{_format_signals(snapshot.down_signals)}\n\n"
        "Based on this technical analysis, provide your trading decision."
    )


def build_messages(snapshot: TechnicalSnapshot) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": build_analysis_prompt(snapshot)},
    ]


def clamp_confidence(value: Any) -> int:
    """Clamp ``value`` into ``[MIN_CONFIDENCE, MAX_CONFIDENCE]``, rounding halves up."""

    number = float(value)
    if math.isnan(number):
        raise DecisionParseError("confidence is NaN")
    return int(math.floor(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, number)) + 0.5))


def _strip_markdown_json(text: str) -> str:
    cleaned = str(text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)
    return cleaned


def parse_decision(raw_text: str) -> PredictionDecision:
    """Validate a model reply and normalise it into a :class:`PredictionDecision`."""

    try:
        data = json.loads(_strip_markdown_json(raw_text))
    except json.JSONDecodeError as exc:
        raise DecisionParseError(f"Invalid JSON response: {exc}") from exc
    if not isinstance(data, Mapping):
        raise DecisionParseError("Decision must be a JSON object")

    direction = str(data.get("direction", "")).strip().upper()
    if direction not in DIRECTIONS:
        raise DecisionParseError(f"Invalid direction: {data.get('direction')!r}")

    try:
        confidence = clamp_confidence(data.get("confidence"))
    except (TypeError, ValueError) as exc:
        raise DecisionParseError(f"Invalid confidence: {data.get('confidence')!r}") from exc

    duration = str(data.get("duration", "")).strip()
    if duration not in DURATION_LABELS:
        raise DecisionParseError(f"Invalid duration: {data.get('duration')!r}")

    rationale = data.get("rationale")
    if not isinstance(rationale, str) or not rationale.strip():
        raise DecisionParseError("Missing rationale")

    raw_risks = data.get("riskFactors")
    if not isinstance(raw_risks, list):
        raise DecisionParseError("riskFactors must be a list")
    risks = tuple(str(r).strip() for r in raw_risks if str(r or "").strip())
    if len(risks) < MIN_RISK_FACTORS:
        raise DecisionParseError(f"Expected at least {MIN_RISK_FACTORS} risk factors, got {len(risks)}")

    return PredictionDecision(
        direction=direction,
        confidence=confidence,
        duration=duration,
        rationale=rationale.strip(),
        risk_factors=risks[:MAX_RISK_FACTORS],
    )


class DecisionSource(ABC):
    """One fallible producer of decisions in the engine's chain."""

    name: str = "source"

    @abstractmethod
    async def decide(self, messages: Sequence[Mapping[str, str]]) -> PredictionDecision: ...


class GroqDecisionSource(DecisionSource):
    """Ask a single Groq chat model for a JSON decision."""

    def __init__(
        self,
        model: str,
        *,
        client_factory: Callable[[], Any] = get_groq_client,
        temperature: float = 0.3,
        max_tokens: int = 600,
        timeout: Optional[float] = None,
    ) -> None:
        self.model = model
        self.name = model
        self._client_factory = client_factory
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def decide(self, messages: Sequence[Mapping[str, str]]) -> PredictionDecision:
        require_groq_api_key()
        client = self._client_factory()
        if client is None:
            raise ModelUnavailableError("Groq client unavailable")

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [dict(m) for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        try:
            response = await client.chat.completions.create(**kwargs)
        except Exception as exc:
            if is_auth_error(exc):
                disable_auth(describe_error(exc))
                raise GroqAuthError(describe_error(exc)) from exc
            raise

        choices = getattr(response, "choices", None)
        if not choices:
            raise ModelUnavailableError("Empty or invalid response from model")
        content = getattr(choices[0].message, "content", None)
        if not content:
            raise ModelUnavailableError("No text content in model response")
        return parse_decision(content)


class DecisionEngine:
    """Try each decision source in order and return the first valid decision."""

    def __init__(self, sources: Sequence[DecisionSource]) -> None:
        if not sources:
            raise ValueError("DecisionEngine requires at least one decision source")
        self.sources = list(sources)

    @classmethod
    def from_config(cls, *, timeout: Optional[float] = None) -> "DecisionEngine":
        return cls([GroqDecisionSource(model, timeout=timeout) for model in config.get_decision_models()])

    async def decide(self, snapshot: TechnicalSnapshot) -> Optional[PredictionDecision]:
        messages = build_messages(snapshot)
        errors: list[str] = []
        for index, source in enumerate(self.sources):
            start = time.perf_counter()
            try:
                decision = await source.decide(messages)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - every failure falls through to the next source
                latency = time.perf_counter() - start
                errors.append(f"{source.name}: {describe_error(exc)}")
                next_source = self.sources[index + 1].name if index + 1 < len(self.sources) else None
                hint = " (model retired)" if is_model_decommissioned_error(exc) else ""
                logger.warning(
                    "Decision source %s failed after %.2fs%s: %s",
                    source.name,
                    latency,
                    hint,
                    describe_error(exc),
                )
                if next_source:
                    log_event(logger, "model_fallback", pair=snapshot.pair, failed=source.name, next=next_source)
                continue

            logger.info(
                "Decision from %s for %s: %s | %d%% | %s (%.2fs)",
                source.name,
                snapshot.pair,
                decision.direction,
                decision.confidence,
                decision.duration,
                time.perf_counter() - start,
            )
            return decision

        logger.error(
            "All decision sources failed for %s: %s",
            snapshot.pair,
            "; ".join(errors) if errors else "no sources responded",
        )
        return None


__all__ = [
    "DECISION_SCHEMA",
    "DURATION_LABELS",
    "DecisionEngine",
    "DecisionParseError",
    "DecisionSource",
    "GroqDecisionSource",
    "ModelUnavailableError",
    "PredictionDecision",
    "build_analysis_prompt",
    "build_messages",
    "clamp_confidence",
    "parse_decision",
]
