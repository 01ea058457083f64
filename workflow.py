"""Prediction workflow for a single chat connection.

``PredictionWorkflow.analyze_pair`` runs one analyse-pair cycle and always
emits its replies in the same order::

    bot_message("Analyzing PAIR...") -> typing -> prediction -> credits_update -> follow-up

Credits are checked before any work starts and consumed only after an
actionable (UP/DOWN) decision, through the ledger's atomic ``decrement``.  Every
failure is converted into a chat reply here; nothing raised by a collaborator
is allowed to reach the connection handler.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from config import ServiceSettings
from credit_storage import CreditLedger, UserCredits
from decision_engine import DecisionEngine, PredictionDecision
from log_utils import setup_logger
from market_data import MarketDataError, MarketDataProvider, MarketSnapshot
from observability import log_event, record_metric
from protocol import (
    ServerMessage,
    bot_message,
    credits_update,
    insufficient_credits,
    prediction_message,
    typing_indicator,
)
from session_state import Session, format_history
from signal_synthesizer import TechnicalSnapshot, synthesize
from trading_pairs import UnsupportedPairError, match_pair_in_text

logger = setup_logger(__name__)

SERVICE_UNAVAILABLE_TEXT = "Market data service is temporarily unavailable. Please try again in a moment."
NEUTRAL_FOLLOW_UP_TEXT = (
    "No credits consumed for this analysis. Market conditions didn't meet our "
    "confidence threshold. Try another pair!"
)
ACTIONABLE_FOLLOW_UP_TEXT = "Want another prediction? Pick a different pair below."
HELP_TEXT = (
    "I can help you with crypto and forex predictions! Try selecting a pair like "
    "BTC/USDT, EUR/USD, or use the quick select buttons below."
)
WELCOME_TEXT = (
    "Welcome to SignalixAI! I provide real-time crypto and forex predictions powered "
    "by AI analysis. Simply pick a trading pair below to get started."
)
HISTORY_COMMAND = "/history"


class MessageChannel(Protocol):
    """Outbound side of a client connection."""

    @property
    def closed(self) -> bool: ...

    async def send(self, message: ServerMessage) -> None: ...


class AnalysisUnavailable(Exception):
    """Internal signal that the analysis stage produced no decision."""


def build_analysis_text(decision: PredictionDecision, technical: TechnicalSnapshot) -> str:
    """Narrative shown alongside the prediction card."""

    sign = "+" if technical.price_change_24h >= 0 else ""
    regime = technical.market_regime.replace("_", " ").lower()
    lines = [
        f"{technical.pair} is trading at {technical.current_price:,.4f} "
        f"({sign}{technical.price_change_24h:.2f}% over 24h) in a {regime} market.",
        f"RSI {technical.rsi_value:.1f}, MACD {technical.macd_signal.lower()}, "
        f"trend strength {technical.trend_strength:.0f}%.",
        "",
        decision.rationale,
    ]
    if decision.risk_factors:
        lines.append("")
        lines.append("Risk factors:")
        lines.extend(f"• {risk}" for risk in decision.risk_factors)
    return "\n".join(lines)


def build_prediction_payload(
    pair: str,
    decision: PredictionDecision,
    analysis: str,
) -> dict[str, Any]:
    payload = {"pair": pair}
    payload.update(decision.to_dict())
    payload["analysis"] = analysis
    return payload


class PredictionWorkflow:
    """Sequence the replies of every chat request for one service instance."""

    def __init__(
        self,
        ledger: CreditLedger,
        market_data: MarketDataProvider,
        decision_engine: DecisionEngine,
        settings: ServiceSettings,
        *,
        synthesizer: Callable[[MarketSnapshot], TechnicalSnapshot] = synthesize,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.ledger = ledger
        self.market_data = market_data
        self.decision_engine = decision_engine
        self.settings = settings
        self._synthesize = synthesizer
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _send(self, channel: MessageChannel, message: ServerMessage) -> bool:
        """Send ``message`` unless the connection is gone; report whether it was sent."""

        if channel.closed:
            return False
        await channel.send(message)
        return True

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    def _resolve_user(self, user_id: Optional[str]) -> str:
        return user_id or self.settings.dev_user_id

    async def _analyse(self, pair: str) -> tuple[PredictionDecision, TechnicalSnapshot]:
        snapshot = await self.market_data.fetch(pair)
        technical = self._synthesize(snapshot)
        decision = await self.decision_engine.decide(technical)
        if decision is None:
            raise AnalysisUnavailable(f"no decision for {pair}")
        return decision, technical

    # ------------------------------------------------------------------
    # chat requests
    # ------------------------------------------------------------------
    async def analyze_pair(
        self,
        channel: MessageChannel,
        session: Session,
        pair: str,
        user_id: Optional[str] = None,
    ) -> None:
        if channel.closed:
            return
        user = self._resolve_user(user_id)
        try:
            await self._run_cycle(channel, session, pair, user)
        except asyncio.CancelledError:
            logger.info("Analysis of %s for %s cancelled", pair, user)
            raise
        except Exception:
            logger.exception("Unexpected failure while analysing %s for %s", pair, user)
            await self._send(channel, bot_message(SERVICE_UNAVAILABLE_TEXT))

    async def _run_cycle(self, channel: MessageChannel, session: Session, pair: str, user: str) -> None:
        credits: UserCredits = await asyncio.to_thread(self.ledger.ensure_user, user)
        if not credits.has_unlimited_access and credits.credits <= 0:
            logger.info("User %s has no credits left; %s not analysed", user, pair)
            await self._send(channel, insufficient_credits(0))
            return

        log_event(logger, "cycle_start", pair=pair, user=user, connection=session.connection_id)
        if not await self._send(channel, bot_message(f"Analyzing {pair}...")):
            return
        await self._pause(self.settings.thinking_delay)
        if not await self._send(channel, typing_indicator()):
            return

        started = self._clock()
        try:
            decision, technical = await self._analyse(pair)
        except (UnsupportedPairError, MarketDataError, AnalysisUnavailable) as exc:
            logger.warning("Analysis unavailable for %s: %s", pair, exc)
            await self._send(channel, bot_message(SERVICE_UNAVAILABLE_TEXT))
            return
        elapsed = self._clock() - started
        record_metric("analysis_latency_seconds", elapsed, labels={"pair": pair})
        await self._pause(self.settings.min_analysis_time - elapsed)

        if channel.closed:
            logger.info("Connection %s closed before %s prediction was delivered", session.connection_id, pair)
            return

        if decision.actionable and not credits.has_unlimited_access:
            consumed = await asyncio.to_thread(self.ledger.decrement, user)
            if not consumed:
                logger.info("Credit race lost for %s on %s; prediction withheld", user, pair)
                await self._send(channel, insufficient_credits(0))
                return
            log_event(logger, "credit_decrement", user=user, pair=pair)

        session.record(pair, decision.direction, decision.confidence)
        analysis = build_analysis_text(decision, technical)
        await self._send(
            channel,
            prediction_message(build_prediction_payload(pair, decision, analysis), analysis),
        )

        refreshed = await asyncio.to_thread(self.ledger.get_credits, user)
        if refreshed is not None:
            await self._send(channel, credits_update(refreshed.credits))

        log_event(
            logger,
            "cycle_complete",
            pair=pair,
            user=user,
            direction=decision.direction,
            confidence=decision.confidence,
            latency=round(elapsed, 3),
        )

        await self._pause(self.settings.follow_up_delay)
        follow_up = ACTIONABLE_FOLLOW_UP_TEXT if decision.actionable else NEUTRAL_FOLLOW_UP_TEXT
        await self._send(channel, bot_message(follow_up))

    async def handle_user_message(
        self,
        channel: MessageChannel,
        session: Session,
        content: str,
        user_id: Optional[str] = None,
    ) -> None:
        """Route free text: ``/history``, a mentioned pair, or the help reply."""

        if HISTORY_COMMAND in content.lower():
            await self.send_history(channel, session)
            return
        pair = match_pair_in_text(content)
        if pair:
            await self.analyze_pair(channel, session, pair, user_id)
            return
        await self._pause(self.settings.reply_delay)
        await self._send(channel, bot_message(HELP_TEXT))

    async def send_history(self, channel: MessageChannel, session: Session) -> None:
        if channel.closed:
            return
        await self._pause(self.settings.reply_delay)
        await self._send(channel, bot_message(format_history(session)))

    async def new_session(self, channel: MessageChannel, session: Session) -> None:
        """Clear the connection's history and greet the user again; credits stay untouched."""

        if channel.closed:
            return
        session.reset()
        await self._send(channel, bot_message(WELCOME_TEXT))


__all__ = [
    "ACTIONABLE_FOLLOW_UP_TEXT",
    "HELP_TEXT",
    "MessageChannel",
    "NEUTRAL_FOLLOW_UP_TEXT",
    "PredictionWorkflow",
    "SERVICE_UNAVAILABLE_TEXT",
    "WELCOME_TEXT",
    "build_analysis_text",
    "build_prediction_payload",
]
