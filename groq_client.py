"""Shared helper for constructing the async Groq SDK client.

All decision sources reuse a single cached :class:`groq.AsyncGroq` instance so
connection pooling and environment handling stay consistent.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from groq import AsyncGroq

from groq_safe import get_groq_api_key
from log_utils import setup_logger

logger = setup_logger(__name__)


@lru_cache(maxsize=1)
def _build_client(api_key: Optional[str]) -> Optional[AsyncGroq]:
    """Return a cached client or ``None`` when no API key is provided."""

    if not api_key:
        logger.debug("Groq API key not provided; client disabled")
        return None
    logger.debug("Initialising shared AsyncGroq client")
    # Retries are handled by the decision source chain.
    return AsyncGroq(api_key=api_key, max_retries=0)


def get_groq_client() -> Optional[AsyncGroq]:
    """Return the shared Groq client if the API key is configured."""

    return _build_client(get_groq_api_key())


def reset_groq_client_cache() -> None:
    """Clear the cached client (primarily for use in tests)."""

    _build_client.cache_clear()
