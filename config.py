"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


def _clean_value(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_optional(name: str) -> Optional[str]:
    cleaned = _clean_value(os.getenv(name))
    return cleaned or None


# ---------------------------------------------------------------------------
# Decision model routing
# ---------------------------------------------------------------------------
#
# Predictions are produced by a short, ordered chain of Groq models:
#
# * ``DEFAULT_DECISION_MODEL`` – Llama 3.3 70B is the primary reasoning model and
#   receives every snapshot first.
# * ``DEFAULT_FALLBACK_MODEL`` – Llama 3.1 Instant answers the identical prompt
#   when the primary errors out, returns nothing, or returns malformed JSON.
DEFAULT_DECISION_MODEL = "llama-3.3-70b-versatile"
DEFAULT_FALLBACK_MODEL = "llama-3.1-8b-instant"

# Groq periodically retires older Llama releases.  Known, deprecated identifiers
# are mapped to the closest supported replacement so a stale ``.env`` keeps working.
_DEPRECATED_GROQ_MODELS = {
    "llama3-70b-8192": DEFAULT_DECISION_MODEL,
    "llama-3.1-70b": DEFAULT_DECISION_MODEL,
    "llama-3.1-70b-versatile": DEFAULT_DECISION_MODEL,
    "llama3-8b-8192": DEFAULT_FALLBACK_MODEL,
}
_DEPRECATED_LOOKUP = {key.lower(): value for key, value in _DEPRECATED_GROQ_MODELS.items()}


def _resolve_model(env_var: str | tuple[str, ...], default: str) -> str:
    """Resolve the configured model name for ``env_var`` falling back to ``default``."""

    env_sources: tuple[str, ...]
    if isinstance(env_var, str):
        env_sources = (env_var,)
    else:
        env_sources = env_var

    normalized = ""
    for candidate in env_sources:
        normalized = _clean_value(os.getenv(candidate))
        if normalized:
            break

    if not normalized:
        normalized = default

    replacement = _DEPRECATED_LOOKUP.get(normalized.lower())
    if replacement:
        return replacement

    return normalized


def get_primary_decision_model() -> str:
    """Return the model that receives every prediction request first."""

    return _resolve_model(("DECISION_LLM_MODEL", "GROQ_MODEL"), DEFAULT_DECISION_MODEL)


def get_fallback_decision_model() -> str:
    """Return the model retried once when the primary model fails."""

    return _resolve_model(("DECISION_FALLBACK_MODEL", "GROQ_OVERFLOW_MODEL"), DEFAULT_FALLBACK_MODEL)


def get_decision_models() -> list[str]:
    """Return the ordered, de-duplicated decision model chain."""

    models: list[str] = []
    for model in (get_primary_decision_model(), get_fallback_decision_model()):
        if model and model not in models:
            models.append(model)
    return models


# ---------------------------------------------------------------------------
# Runtime configuration for the prediction service
# ---------------------------------------------------------------------------

DEV_USER_ID = "dev_user"
DEFAULT_CREDITS = 10
CRYPTOCOMPARE_API_BASE = "https://min-api.cryptocompare.com/data"
WHOP_API_BASE = "https://api.whop.com/api/v1"

_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
_DEFAULT_DATA_DIR = os.path.join(_REPO_ROOT, "data")


@dataclass(frozen=True)
class ServiceSettings:
    """Runtime configuration knobs for the prediction service.

    Delays are expressed in seconds.  Tests build their own instance with the
    pacing delays set to zero.
    """

    host: str = "0.0.0.0"
    port: int = 5000
    ws_path: str = "/ws"
    default_credits: int = DEFAULT_CREDITS
    dev_user_id: str = DEV_USER_ID
    thinking_delay: float = 0.6
    min_analysis_time: float = 2.0
    follow_up_delay: float = 1.0
    reply_delay: float = 0.5
    market_data_timeout: float = 15.0
    decision_timeout: Optional[float] = None
    cryptocompare_base_url: str = CRYPTOCOMPARE_API_BASE
    ledger_path: str = os.path.join(_DEFAULT_DATA_DIR, "user_credits.json")
    database_url: Optional[str] = None
    whop_api_key: Optional[str] = None
    whop_api_base: str = WHOP_API_BASE
    whop_plan_id: Optional[str] = None
    whop_company_id: Optional[str] = None

    @property
    def whop_enabled(self) -> bool:
        return bool(self.whop_api_key and self.whop_plan_id and self.whop_company_id)


def load_service_settings() -> ServiceSettings:
    """Load runtime settings for the prediction service from environment variables."""

    decision_timeout = _env_float("DECISION_LLM_TIMEOUT", 0.0)
    return ServiceSettings(
        host=_clean_value(os.getenv("HOST")) or "0.0.0.0",
        port=max(1, _env_int("PORT", 5000)),
        ws_path=_clean_value(os.getenv("WS_PATH")) or "/ws",
        default_credits=max(0, _env_int("DEFAULT_CREDITS", DEFAULT_CREDITS)),
        dev_user_id=_clean_value(os.getenv("DEV_USER_ID")) or DEV_USER_ID,
        thinking_delay=max(0.0, _env_float("THINKING_DELAY_SECONDS", 0.6)),
        min_analysis_time=max(0.0, _env_float("MIN_ANALYSIS_SECONDS", 2.0)),
        follow_up_delay=max(0.0, _env_float("FOLLOW_UP_DELAY_SECONDS", 1.0)),
        reply_delay=max(0.0, _env_float("REPLY_DELAY_SECONDS", 0.5)),
        market_data_timeout=max(1.0, _env_float("MARKET_DATA_TIMEOUT", 15.0)),
        decision_timeout=decision_timeout if decision_timeout > 0 else None,
        cryptocompare_base_url=(
            _clean_value(os.getenv("CRYPTOCOMPARE_API_BASE")) or CRYPTOCOMPARE_API_BASE
        ).rstrip("/"),
        ledger_path=_clean_value(os.getenv("CREDIT_LEDGER_FILE"))
        or os.path.join(_DEFAULT_DATA_DIR, "user_credits.json"),
        database_url=_env_optional("DATABASE_URL"),
        whop_api_key=_env_optional("WHOP_API_KEY"),
        whop_api_base=(_clean_value(os.getenv("WHOP_API_BASE")) or WHOP_API_BASE).rstrip("/"),
        whop_plan_id=_env_optional("WHOP_PLAN_ID"),
        whop_company_id=_env_optional("WHOP_COMPANY_ID"),
    )


__all__ = [
    "get_primary_decision_model",
    "get_fallback_decision_model",
    "get_decision_models",
    "load_service_settings",
    "ServiceSettings",
    "DEV_USER_ID",
    "DEFAULT_CREDITS",
]
