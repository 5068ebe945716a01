"""Request tracing and error middleware."""
from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
Middleware = Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]

REQUEST_ID_HEADER = "X-Request-ID"


def create_trace_middleware(service_name: str) -> Middleware:
    """Bind a request id to the log context and log failed requests only."""

    @web.middleware
    async def trace_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            service=service_name,
            request_id=request_id,
            method=request.method,
            path=request.path,
        )
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            if exc.status >= 400:
                logger.warning("request_failed", status=exc.status, reason=exc.reason)
            exc.headers[REQUEST_ID_HEADER] = request_id
            raise
        if response.status >= 400:
            logger.warning("request_failed", status=response.status)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    return trace_middleware


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn unexpected exceptions into a JSON 500."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("unhandled_error")
        return web.json_response({"error": "Internal server error"}, status=500)
