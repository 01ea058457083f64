"""Whop membership lookups used to keep unlimited access in sync with billing.

Only the membership listing endpoint is used: a user keeps unlimited access
while at least one membership on the configured plan is ``active``,
``trialing`` or ``past_due``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import aiohttp

from config import ServiceSettings
from log_utils import setup_logger

logger = setup_logger(__name__)

ACTIVE_STATUSES = ("active", "trialing", "past_due")
MAX_PAGES = 20


class MembershipCheckError(RuntimeError):
    """Raised when the membership service cannot be queried."""


class WhopMembershipChecker:
    def __init__(
        self,
        *,
        api_key: str,
        company_id: str,
        plan_id: str,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api_key = api_key
        self.company_id = company_id
        self.plan_id = plan_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> Optional["WhopMembershipChecker"]:
        """Return a checker when Whop is fully configured, otherwise ``None``."""

        if not settings.whop_enabled:
            return None
        return cls(
            api_key=settings.whop_api_key or "",
            company_id=settings.whop_company_id or "",
            plan_id=settings.whop_plan_id or "",
            base_url=settings.whop_api_base,
        )

    @asynccontextmanager
    async def _client_session(self):
        own_session = self._session is None
        session = self._session or aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        try:
            yield session
        finally:
            if own_session:
                await session.close()

    async def _fetch_page(self, session: aiohttp.ClientSession, url: str, params: List[tuple]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        async with session.get(url, params=params, headers=headers) as response:
            if response.status != 200:
                body = await response.text()
                raise MembershipCheckError(f"HTTP {response.status}: {body[:200]}")
            payload = await response.json(content_type=None)
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise MembershipCheckError(f"unexpected membership payload: {str(payload)[:200]}")
        return payload

    async def list_active_memberships(self, user_id: str) -> List[Dict[str, Any]]:
        """Collect every matching membership, following ``page_info`` cursors."""

        base_params = [
            ("company_id", self.company_id),
            ("user_ids[]", user_id),
            ("plan_ids[]", self.plan_id),
        ] + [("statuses[]", status) for status in ACTIVE_STATUSES]
        url = f"{self.base_url}/memberships"
        collected: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        try:
            async with self._client_session() as session:
                for _ in range(MAX_PAGES):
                    params = base_params + ([("after", cursor)] if cursor else [])
                    payload = await self._fetch_page(session, url, params)
                    collected.extend(m for m in payload["data"] if isinstance(m, dict))
                    page_info = payload.get("page_info") or {}
                    cursor = page_info.get("end_cursor") if page_info.get("has_next_page") else None
                    if not cursor:
                        break
                else:
                    logger.warning("Membership listing for %s truncated after %d pages", user_id, MAX_PAGES)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise MembershipCheckError(f"{type(exc).__name__}: {exc}") from exc

        return [m for m in collected if m.get("status", "active") in ACTIVE_STATUSES]

    async def has_active_membership(self, user_id: str) -> bool:
        memberships = await self.list_active_memberships(user_id)
        return bool(memberships)


__all__ = ["ACTIVE_STATUSES", "MembershipCheckError", "WhopMembershipChecker"]
