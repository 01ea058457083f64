"""HTTP and WebSocket entry point for the SignalixAI prediction service.

Routes:

* ``GET  /ws`` – chat WebSocket (JSON frames, see :mod:`protocol`)
* ``GET  /api/credits`` – current balance, lazily initialised
* ``POST /api/credits/purchase`` – grant unlimited access after a successful payment
* ``GET  /api/credits/plan-id`` – Whop plan identifier for the checkout
* ``GET  /api/subscription/manage-url`` – link to manage the active membership
* ``POST /api/users/profile`` – upsert display profile
* ``GET  /health`` – liveness probe

Run with ``python server.py --host 0.0.0.0 --port 5000``.
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Any, Dict, Optional, Sequence

from aiohttp import WSMsgType, web

from config import ServiceSettings, load_service_settings
from credit_storage import CreditLedger, create_ledger
from decision_engine import DecisionEngine
from dispatcher import ConnectionHandler, WebSocketChannel
from log_utils import setup_logger
from market_data import MarketDataProvider
from membership import MembershipCheckError, WhopMembershipChecker
from workflow import PredictionWorkflow

logger = setup_logger(__name__)

SETTINGS_KEY = web.AppKey("settings", ServiceSettings)
LEDGER_KEY = web.AppKey("ledger", CreditLedger)
WORKFLOW_KEY = web.AppKey("workflow", PredictionWorkflow)
MEMBERSHIP_KEY = web.AppKey("membership", object)
HANDLERS_KEY = web.AppKey("handlers", set)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _user_id(request: web.Request, body: Optional[Dict[str, Any]] = None) -> str:
    settings = request.app[SETTINGS_KEY]
    user_id = request.query.get("userId") or (body or {}).get("userId")
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return settings.dev_user_id


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    handler = ConnectionHandler(request.app[WORKFLOW_KEY], WebSocketChannel(ws))
    handlers = request.app[HANDLERS_KEY]
    handlers.add(handler)
    logger.info("Client connected: %s", handler.session.connection_id)
    try:
        async for msg in ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                handler.handle_frame(msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(
                    "WebSocket error on %s: %s",
                    handler.session.connection_id,
                    ws.exception(),
                )
    finally:
        handlers.discard(handler)
        await handler.close()
        logger.info("Client disconnected: %s", handler.session.connection_id)
    return ws


# ---------------------------------------------------------------------------
# Credit REST surface
# ---------------------------------------------------------------------------


async def get_credits(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    user_id = _user_id(request)
    try:
        credits = await asyncio.to_thread(ledger.ensure_user, user_id)
        checker = request.app[MEMBERSHIP_KEY]
        if credits.has_unlimited_access and checker is not None:
            try:
                active = await checker.has_active_membership(user_id)
            except MembershipCheckError as exc:
                # Keep the current state when the membership service is down.
                logger.error("Membership check failed for %s: %s", user_id, exc)
                active = True
            if not active:
                logger.info("No active membership for %s; revoking unlimited access", user_id)
                await asyncio.to_thread(ledger.revoke_unlimited, user_id)
                credits = await asyncio.to_thread(ledger.get_credits, user_id) or credits
        return web.json_response(credits.to_dict())
    except Exception:
        logger.exception("Error fetching credits for %s", user_id)
        return web.json_response({"error": "Failed to fetch credits"}, status=500)


async def purchase_credits(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    body = await _read_json(request)
    user_id = _user_id(request, body)
    if not body.get("success"):
        return web.json_response({"success": False, "error": "Payment failed"})
    try:
        await asyncio.to_thread(ledger.grant_unlimited, user_id)
        credits = await asyncio.to_thread(ledger.get_credits, user_id)
    except Exception:
        logger.exception("Error processing purchase for %s", user_id)
        return web.json_response({"error": "Failed to process purchase"}, status=500)
    logger.info("Granted unlimited access to %s", user_id)
    return web.json_response({"success": True, "credits": credits.to_dict() if credits else None})


async def get_plan_id(request: web.Request) -> web.Response:
    plan_id = request.app[SETTINGS_KEY].whop_plan_id
    if not plan_id:
        return web.json_response({"error": "Plan ID not configured"}, status=500)
    return web.json_response({"planId": plan_id})


async def get_manage_url(request: web.Request) -> web.Response:
    checker = request.app[MEMBERSHIP_KEY]
    if checker is None:
        return web.json_response({"error": "Whop integration not enabled"}, status=404)
    user_id = _user_id(request)
    try:
        memberships = await checker.list_active_memberships(user_id)
    except MembershipCheckError as exc:
        logger.error("Error fetching subscription for %s: %s", user_id, exc)
        return web.json_response({"error": "Failed to fetch subscription details"}, status=500)
    active = memberships[0] if memberships else None
    if not active or not active.get("manage_url"):
        return web.json_response({"error": "No active subscription found"}, status=404)
    return web.json_response({"manageUrl": active["manage_url"], "status": active.get("status")})


async def upsert_profile(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    body = await _read_json(request)
    user_id = _user_id(request, body)
    username = str(body.get("username") or "").strip()
    if not username:
        return web.json_response({"error": "username is required"}, status=400)
    name = str(body.get("name") or username)
    avatar_url = body.get("avatarUrl") or None
    try:
        await asyncio.to_thread(ledger.upsert_profile, user_id, username, name, avatar_url)
    except Exception:
        logger.exception("Error saving profile for %s", user_id)
        return web.json_response({"error": "Failed to save profile"}, status=500)
    return web.json_response(
        {"id": user_id, "username": username, "name": name, "profile_pic_url": avatar_url}
    )


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "running"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[ServiceSettings] = None,
    *,
    ledger: Optional[CreditLedger] = None,
    market_data: Optional[MarketDataProvider] = None,
    decision_engine: Optional[DecisionEngine] = None,
    membership_checker: Optional[WhopMembershipChecker] = None,
    workflow: Optional[PredictionWorkflow] = None,
) -> web.Application:
    """Build the application; collaborators default to the configured production ones."""

    settings = settings or load_service_settings()
    owns_ledger = ledger is None
    ledger = ledger or create_ledger(settings)
    if workflow is None:
        workflow = PredictionWorkflow(
            ledger,
            market_data
            or MarketDataProvider(
                base_url=settings.cryptocompare_base_url,
                timeout=settings.market_data_timeout,
            ),
            decision_engine or DecisionEngine.from_config(timeout=settings.decision_timeout),
            settings,
        )
    if membership_checker is None:
        membership_checker = WhopMembershipChecker.from_settings(settings)

    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[LEDGER_KEY] = ledger
    app[WORKFLOW_KEY] = workflow
    app[MEMBERSHIP_KEY] = membership_checker
    app[HANDLERS_KEY] = set()

    app.router.add_get(settings.ws_path, websocket_handler)
    app.router.add_get("/api/credits", get_credits)
    app.router.add_post("/api/credits/purchase", purchase_credits)
    app.router.add_get("/api/credits/plan-id", get_plan_id)
    app.router.add_get("/api/subscription/manage-url", get_manage_url)
    app.router.add_post("/api/users/profile", upsert_profile)
    app.router.add_get("/health", health)

    async def _on_shutdown(app: web.Application) -> None:
        for handler in list(app[HANDLERS_KEY]):
            await handler.close()

    async def _on_cleanup(app: web.Application) -> None:
        if owns_ledger:
            app[LEDGER_KEY].close()

    app.on_shutdown.append(_on_shutdown)
    app.on_cleanup.append(_on_cleanup)
    return app


def main(cli_args: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the SignalixAI prediction service.")
    parser.add_argument("--host", help="Interface to bind (default HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default PORT or 5000)")
    args = parser.parse_args(cli_args)

    settings = load_service_settings()
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Starting SignalixAI on %s:%d (WebSocket %s)", host, port, settings.ws_path)
    web.run_app(create_app(settings), host=host, port=port, print=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
