"""REST API endpoint handlers: lab status, candidates and operator controls."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from aiohttp import web

from src.api import API_VERSION, ctx_key
from src.lab.errors import InvalidTransition
from src.shell.contract import Disposition, RegimeTrigger

log = structlog.get_logger()

MAX_LIMIT = 500


def _safe_int(value: str, default: int) -> int:
    """Parse int from query param, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _limit(request: web.Request, default: int = 50) -> int:
    return max(1, min(_safe_int(request.query.get("limit"), default), MAX_LIMIT))


def _envelope(data) -> dict:
    return {
        "data": data,
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": API_VERSION,
        },
    }


def _error_envelope(code: str, message: str) -> dict:
    return {
        "error": {"code": code, "message": message},
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": API_VERSION,
        },
    }


def error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response(_error_envelope(code, message), status=status)


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps(_error_envelope("bad_request", "Body must be valid JSON")),
            content_type="application/json",
        )
    return body if isinstance(body, dict) else {}


# --- Read endpoints ---

async def status_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    data = await ctx["engine"].status()
    data["uptime_seconds"] = (datetime.now(timezone.utc) - ctx["started_at"]).total_seconds()
    return web.json_response(_envelope(data))


async def candidates_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    disposition = request.query.get("disposition", "ALL").upper()
    if disposition != "ALL" and disposition not in Disposition.__members__:
        return error_response("bad_request", f"Unknown disposition '{disposition}'", 400)
    rows = await engine.candidates_by_disposition(disposition, _limit(request))
    return web.json_response(_envelope(rows))


async def feedback_loops_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    active_only = request.query.get("active", "").lower() in ("1", "true", "yes")
    if active_only:
        loops = await engine.feedback.active_loops()
    else:
        loops = await engine.feedback.all_loops(_limit(request))
    return web.json_response(_envelope([loop.to_dict() for loop in loops]))


async def cycles_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    cycles = await store.recent_cycles(_limit(request, 20))
    return web.json_response(_envelope([c.to_dict() for c in reversed(cycles)]))


async def activity_handler(request: web.Request) -> web.Response:
    activity = request.app[ctx_key]["activity"]
    rows = await activity.query(
        limit=_limit(request),
        since=request.query.get("since"),
        until=request.query.get("until"),
        category=request.query.get("category"),
        severity=request.query.get("severity"),
        trace_id=request.query.get("trace_id"),
    )
    return web.json_response(_envelope(rows))


async def settings_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    return web.json_response(_envelope(engine.settings.snapshot()))


# --- Operator controls ---

async def update_settings_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    changes = await _json_body(request)
    if not changes:
        return error_response("bad_request", "No settings supplied", 400)
    try:
        data = await engine.update_settings(changes)
    except ValueError as e:
        return error_response("invalid_setting", str(e), 400)
    return web.json_response(_envelope(data))


async def play_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    data = await engine.set_playing(True)
    return web.json_response(_envelope(data))


async def pause_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    body = await _json_body(request)
    data = await engine.set_playing(False, body.get("reason"))
    return web.json_response(_envelope(data))


async def research_handler(request: web.Request) -> web.Response:
    """Forced research burst. Bypasses the interval and pause, never an in-flight cycle."""
    engine = request.app[ctx_key]["engine"]
    body = await _json_body(request)
    regime = body.get("regime")
    if regime is not None:
        try:
            regime = RegimeTrigger(str(regime).upper())
        except ValueError:
            return error_response("bad_request", f"Unknown regime '{regime}'", 400)
    if engine.is_cycle_running:
        return error_response("cycle_running", "A research cycle is already in progress", 409)

    stats = await engine.run_cycle(forced=True, regime_trigger=regime)
    if stats is None:
        return web.json_response(_envelope({"ran": False}))
    return web.json_response(_envelope({"ran": True, "cycle": stats.to_dict()}))


async def resolve_loop_handler(request: web.Request) -> web.Response:
    engine = request.app[ctx_key]["engine"]
    tracking_id = request.match_info["tracking_id"]
    body = await _json_body(request)
    try:
        loop = await engine.feedback.resolve(
            tracking_id,
            body.get("resolution_code", "MANUAL"),
            replacement_bot_id=body.get("replacement_bot_id"),
            notes=body.get("notes"),
        )
    except KeyError:
        return error_response("not_found", f"Feedback loop not found: {tracking_id}", 404)
    except InvalidTransition as e:
        return error_response("invalid_transition", str(e), 409)
    except ValueError as e:
        return error_response("bad_request", str(e), 400)
    return web.json_response(_envelope(loop.to_dict()))


def setup_routes(app: web.Application) -> None:
    """Register all REST API routes."""
    app.router.add_get("/v1/lab/status", status_handler)
    app.router.add_get("/v1/lab/candidates", candidates_handler)
    app.router.add_get("/v1/lab/feedback-loops", feedback_loops_handler)
    app.router.add_post("/v1/lab/feedback-loops/{tracking_id}/resolve", resolve_loop_handler)
    app.router.add_get("/v1/lab/cycles", cycles_handler)
    app.router.add_get("/v1/lab/settings", settings_handler)
    app.router.add_patch("/v1/lab/settings", update_settings_handler)
    app.router.add_post("/v1/lab/play", play_handler)
    app.router.add_post("/v1/lab/pause", pause_handler)
    app.router.add_post("/v1/lab/research", research_handler)
    app.router.add_get("/v1/activity", activity_handler)
