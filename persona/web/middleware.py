"""aiohttp middlewares: admission control and JSON error responses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from persona.config import settings
from persona.ratelimit import RateLimiter, client_key

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Easy there. You're hitting this endpoint too fast."


@web.middleware
async def rate_limit_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Reject over-limit clients with 429 and tag every limited response."""
    decision = RateLimiter.get().admit(client_key(request.headers, request.remote), request.path)

    if not decision.allowed:
        return web.json_response(
            {"error": RATE_LIMIT_MESSAGE, "retryAfterSeconds": decision.retry_after},
            status=429,
            headers=decision.headers(),
        )

    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(decision.headers())
        raise
    response.headers.update(decision.headers())
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn unhandled exceptions into a JSON 500 without leaking details."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        logger.exception("Unhandled error: %s %s", request.method, request.path)
        body: dict[str, str] = {"error": "Internal server error"}
        if not settings.is_production:
            body["details"] = type(exc).__name__
        return web.json_response(body, status=500)
