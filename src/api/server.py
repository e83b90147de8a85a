"""API Server: aiohttp app with request tracing, bearer auth and error middleware."""

from __future__ import annotations

import hmac
from datetime import datetime, timezone

import structlog
from aiohttp import web

from src.api import api_key_key, ctx_key
from src.api.metrics import metrics_handler
from src.api.routes import error_response, setup_routes
from src.lab.engine import new_trace_id
from src.utils.logging import trace_context

log = structlog.get_logger()

OPEN_PATHS = frozenset({"/metrics"})
TRACE_HEADER = "X-Trace-Id"


@web.middleware
async def trace_middleware(request: web.Request, handler):
    """Bind a trace id to everything logged while serving the request.

    A caller-supplied X-Trace-Id is reused so an operator action can be
    followed into the activity log.
    """
    trace_id = request.headers.get(TRACE_HEADER) or new_trace_id()
    with trace_context(trace_id, path=request.path, method=request.method):
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers[TRACE_HEADER] = trace_id
            raise
    response.headers[TRACE_HEADER] = trace_id
    return response


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Bearer token authentication. /metrics is open for the scraper."""
    if request.path in OPEN_PATHS:
        return await handler(request)

    api_key = request.app.get(api_key_key, "")
    if not api_key:
        return error_response("unauthorized", "API key not configured", 401)
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], api_key):
        log.warning("api.unauthorized", path=request.path, remote=request.remote)
        return error_response("unauthorized", "Invalid or missing API key", 401)
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Unhandled exceptions become a generic 500; tracebacks stay in the log."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.error("api.unhandled_error", path=request.path, error=str(e),
                  error_type=type(e).__name__, exc_info=True)
        return error_response("internal_error", "An unexpected error occurred", 500)


def create_app(config, engine, activity, store, started_at: datetime | None = None) -> web.Application:
    """Build the lab API around an already-wired engine."""
    app = web.Application(middlewares=[trace_middleware, error_middleware, auth_middleware])
    app[api_key_key] = config.api.api_key
    app[ctx_key] = {
        "config": config,
        "engine": engine,
        "activity": activity,
        "store": store,
        "started_at": started_at or datetime.now(timezone.utc),
    }

    setup_routes(app)
    app.router.add_get("/metrics", metrics_handler)
    return app
