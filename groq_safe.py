"""Groq key gating and error classification.

The decision engine asks this module whether a key is configured before each
request and uses the classifiers below to decide how loudly to log a failed
model: a rejected key shuts Groq off for the process, a retired model is
flagged so the operator can update ``DECISION_LLM_MODEL``, anything else is a
plain fallback.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, NamedTuple, Optional

from log_utils import setup_logger

logger = setup_logger(__name__)

_RETIRED_CODES = frozenset({"model_decommissioned", "model_not_found"})
_AUTH_CODES = frozenset({"authentication_error", "invalid_api_key"})
_RETIRED_PHRASES = (
    "decommissioned",
    "no longer supported",
    "deprecated",
    "retired",
    "does not exist",
    "not found",
    "do not have access",
)


class GroqAuthError(RuntimeError):
    """Groq rejected or lacks credentials; skip further requests."""


class ErrorParts(NamedTuple):
    status: Optional[int]
    code: Optional[str]
    message: str


_groq_auth_disabled: bool = False


def get_groq_api_key() -> str | None:
    """Return the stripped ``GROQ_API_KEY`` or ``None``."""

    return os.getenv("GROQ_API_KEY", "").strip() or None


def reset_auth_state() -> None:
    global _groq_auth_disabled
    _groq_auth_disabled = False


def disable_auth(reason: str) -> None:
    """Refuse Groq requests until :func:`reset_auth_state` is called."""

    global _groq_auth_disabled
    if not _groq_auth_disabled:
        logger.warning("Groq disabled: %s", reason)
    _groq_auth_disabled = True


def require_groq_api_key() -> str:
    """Return the API key, raising :class:`GroqAuthError` when Groq is off."""

    if not _groq_auth_disabled:
        key = get_groq_api_key()
        if key:
            return key
        disable_auth("no GROQ_API_KEY in environment")
    raise GroqAuthError("Groq authentication disabled")


def parse_error(error: Any) -> ErrorParts:
    """Split an SDK exception or raw error payload into status, code and message.

    The Groq SDK attaches the decoded response as ``error.body``; raw HTTP
    payloads arrive as ``{"error": {"code": ..., "message": ...}}`` or as a
    flat mapping.  Anything else is reduced to ``str(error)``.
    """

    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        status = None

    payload = getattr(error, "body", None)
    if not isinstance(payload, Mapping):
        payload = error if isinstance(error, Mapping) else None
    if payload is None:
        return ErrorParts(status, None, str(error or ""))

    nested = payload.get("error")
    if isinstance(nested, Mapping):
        payload = nested
    code = payload.get("code")
    return ErrorParts(status, None if code is None else str(code), str(payload.get("message") or ""))


def describe_error(error: Any) -> str:
    """One-line summary such as ``"400 model_decommissioned: ..."``."""

    parts = parse_error(error)
    if parts.code and parts.message:
        text = f"{parts.code}: {parts.message}"
    else:
        text = parts.code or parts.message or type(error).__name__
    return text if parts.status is None else f"{parts.status} {text}"


def is_model_decommissioned_error(error: Any) -> bool:
    parts = parse_error(error)
    if parts.code in _RETIRED_CODES:
        return True
    message = parts.message.lower()
    return any(phrase in message for phrase in _RETIRED_PHRASES)


def is_auth_error(error: Any) -> bool:
    parts = parse_error(error)
    if parts.status == 401:
        return True
    if parts.code and parts.code.lower() in _AUTH_CODES:
        return True
    return "invalid api key" in parts.message.lower()


__all__ = [
    "ErrorParts",
    "GroqAuthError",
    "describe_error",
    "disable_auth",
    "get_groq_api_key",
    "is_auth_error",
    "is_model_decommissioned_error",
    "parse_error",
    "require_groq_api_key",
    "reset_auth_state",
]
