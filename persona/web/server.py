"""Async HTTP server for the chat API and the Telegram webhook.

Uses aiohttp; rate limiting and error shaping live in middlewares, the
request pipeline itself in ``persona.chat``.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from datetime import UTC, datetime
from typing import Any, Literal

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from telegram import Update

from persona import chat
from persona.bot.session import ConversationStore
from persona.bot.telegram import app as telegram_app
from persona.bot.telegram.handlers import process_update
from persona.bot.telegram.security import SECRET_HEADER, validate_webhook_secret
from persona.config import settings
from persona.llm.models import Message
from persona.ratelimit import start_sweeper, stop_sweeper
from persona.web.middleware import error_middleware, rate_limit_middleware

logger = logging.getLogger(__name__)

MAX_USER_CHARS = 2000
MAX_ASSISTANT_CHARS = 2500
LAST_RESORT_CHARS = 1000

STARTED_AT = web.AppKey("started_at", float)
SWEEPER = web.AppKey("sweeper", asyncio.Task)
UPDATE_TASKS = web.AppKey("update_tasks", set)


# -- Request models ------------------------------------------------------------


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1, max_length=MAX_ASSISTANT_CHARS)


class ChatRequest(BaseModel):
    """Body of POST /api/chat."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageIn] = Field(min_length=1)
    use_search: bool | None = Field(default=None, alias="useSearch")
    temperature: float | None = Field(default=None, ge=0, le=1)
    max_output_tokens: int | None = Field(default=None, ge=64, le=2048, alias="maxOutputTokens")


def _truncate(body: dict[str, Any], *, last_resort: bool = False) -> dict[str, Any]:
    """Shorten oversized message contents rather than rejecting the request."""
    messages = body.get("messages")
    if not isinstance(messages, list):
        return body

    truncated = []
    for msg in messages:
        if isinstance(msg, dict) and isinstance(msg.get("content"), str):
            limit = MAX_ASSISTANT_CHARS if msg.get("role") == "assistant" else MAX_USER_CHARS
            content = msg["content"]
            if last_resort:
                msg = {**msg, "content": content[: min(limit - 3, LAST_RESORT_CHARS)] + "..."}
            elif len(content) > limit:
                msg = {**msg, "content": content[: limit - 3] + "..."}
        truncated.append(msg)
    return {**body, "messages": truncated}


def parse_chat_request(body: Any) -> ChatRequest:
    """Validate a chat body, truncating contents first. Raises ValidationError."""
    if not isinstance(body, dict):
        return ChatRequest.model_validate(body)
    try:
        return ChatRequest.model_validate(_truncate(body))
    except ValidationError:
        return ChatRequest.model_validate(_truncate(body, last_resort=True))


# -- Handlers ------------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /health: liveness check."""
    return web.json_response({
        "status": "ok",
        "uptime": time.monotonic() - request.app[STARTED_AT],
        "timestamp": datetime.now(UTC).isoformat(),
        "hostname": socket.gethostname(),
    })


async def _handle_chat(request: web.Request) -> web.Response:
    """POST /api/chat: one stateless persona turn."""
    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"error": "invalid JSON"}, status=400)

    try:
        parsed = parse_chat_request(body)
    except ValidationError as exc:
        logger.warning(
            "Invalid chat payload after truncation: %d error(s)", exc.error_count()
        )
        return web.json_response(
            {
                "error": "Invalid request payload. Please try sending a shorter message.",
                "details": exc.errors(include_url=False, include_context=False),
            },
            status=400,
        )

    messages = [Message(role=m.role, content=m.content) for m in parsed.messages]
    try:
        result = await chat.respond(
            messages,
            use_search=parsed.use_search,
            temperature=parsed.temperature,
            max_output_tokens=parsed.max_output_tokens,
        )
    except Exception:
        logger.exception("Chat route failed")
        return web.json_response(
            {"error": "Something went sideways. Try again shortly."}, status=500
        )

    return web.json_response(result.to_dict(), headers={"X-Cache": result.cache_status.value})


async def _handle_telegram_webhook(request: web.Request) -> web.Response:
    """POST /api/telegram/webhook: acknowledge at once, process in background."""
    if not validate_webhook_secret(request.headers.get(SECRET_HEADER)):
        logger.warning("Invalid Telegram webhook secret")
        return web.json_response({"error": "Unauthorized"}, status=401)

    try:
        payload: dict[str, Any] = await request.json()
    except ValueError:
        return web.json_response({"error": "Invalid update format"}, status=400)

    if not isinstance(payload, dict) or not payload.get("update_id"):
        logger.warning("Invalid Telegram update format")
        return web.json_response({"error": "Invalid update format"}, status=400)

    if not telegram_app.is_configured():
        return web.json_response({"error": "Telegram bot not configured"}, status=503)

    bot = telegram_app.get_bot()
    try:
        update = Update.de_json(payload, bot)
    except (TypeError, ValueError, AttributeError, KeyError):
        logger.warning("Malformed Telegram update %s", payload.get("update_id"))
        return web.json_response({"error": "Invalid update format"}, status=400)

    tasks = request.app[UPDATE_TASKS]
    task = asyncio.create_task(_run_update(update, bot))
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    return web.json_response({"ok": True})


async def _run_update(update: Update, bot) -> None:
    """Process a Telegram update with error logging."""
    try:
        await process_update(update, bot)
    except Exception:
        logger.exception("Failed to process Telegram update %s", update.update_id)


async def _handle_register_webhook(request: web.Request) -> web.Response:
    """POST /api/telegram/register-webhook: development convenience."""
    if settings.is_production:
        return web.json_response(
            {
                "error": "Use the Telegram API directly in production",
                "hint": "curl -X POST 'https://api.telegram.org/bot<token>/setWebhook?url=<webhook_url>'",
            },
            status=403,
        )

    try:
        body = await request.json()
    except ValueError:
        body = {}
    url = body.get("url") if isinstance(body, dict) else None
    if not url or not isinstance(url, str):
        return web.json_response({"error": "Missing webhook URL"}, status=400)

    try:
        success = await telegram_app.register_webhook(url)
    except Exception:
        logger.exception("Failed to register webhook")
        return web.json_response({"error": "Failed to register webhook"}, status=500)
    return web.json_response({"success": success, "url": url})


async def _handle_webhook_info(request: web.Request) -> web.Response:
    """GET /api/telegram/webhook-info."""
    if not telegram_app.is_configured():
        return web.json_response({"error": "Telegram bot not configured"}, status=503)
    try:
        info = await telegram_app.get_webhook_info()
    except Exception:
        logger.exception("Failed to get webhook info")
        return web.json_response({"error": "Failed to get webhook info"}, status=500)
    return web.json_response(info)


async def _handle_telegram_stats(request: web.Request) -> web.Response:
    """GET /api/telegram/stats: conversation store size."""
    stats = ConversationStore.get().stats()
    return web.json_response({
        "activeConversations": stats["active_conversations"],
        "configured": telegram_app.is_configured(),
    })


# -- Lifecycle -----------------------------------------------------------------


async def _on_startup(app: web.Application) -> None:
    app[SWEEPER] = start_sweeper()
    await telegram_app.start_bot()


async def _on_cleanup(app: web.Application) -> None:
    await stop_sweeper(app.get(SWEEPER))
    await telegram_app.stop_bot()


def create_web_app(*, lifecycle: bool = True) -> web.Application:
    """Build the aiohttp Application with routes.

    Pass ``lifecycle=False`` to skip the sweeper and bot startup hooks
    (tests drive those directly).
    """
    app = web.Application(middlewares=[rate_limit_middleware, error_middleware])
    app[STARTED_AT] = time.monotonic()
    app[UPDATE_TASKS] = set()

    app.router.add_get("/health", _health)
    app.router.add_post("/api/chat", _handle_chat)
    app.router.add_post("/api/telegram/webhook", _handle_telegram_webhook)
    app.router.add_post("/api/telegram/register-webhook", _handle_register_webhook)
    app.router.add_get("/api/telegram/webhook-info", _handle_webhook_info)
    app.router.add_get("/api/telegram/stats", _handle_telegram_stats)

    if lifecycle:
        app.on_startup.append(_on_startup)
        app.on_cleanup.append(_on_cleanup)

    return app
