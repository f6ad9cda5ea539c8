"""Telegram Bot API client lifecycle and webhook registration."""

from __future__ import annotations

import logging
from typing import Any

from telegram import Bot

from persona.config import settings

logger = logging.getLogger(__name__)

_bot: Bot | None = None


def is_configured() -> bool:
    return bool(settings.telegram_bot_token)


def get_bot() -> Bot:
    """Lazily create the shared Bot client."""
    global _bot  # noqa: PLW0603
    if not is_configured():
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured")
    if _bot is None:
        _bot = Bot(token=settings.telegram_bot_token)
    return _bot


async def start_bot() -> Bot | None:
    """Initialize the Bot (fetches its identity). No-op when unconfigured."""
    if not is_configured():
        logger.info("TELEGRAM_BOT_TOKEN empty, Telegram transport disabled")
        return None
    bot = get_bot()
    await bot.initialize()
    logger.info("Telegram bot initialized")
    return bot


async def stop_bot() -> None:
    global _bot  # noqa: PLW0603
    if _bot is not None:
        await _bot.shutdown()
        _bot = None
        logger.info("Telegram bot shut down")


async def register_webhook(url: str) -> bool:
    """Point Telegram at *url*, passing the secret token when configured."""
    ok = await get_bot().set_webhook(
        url=url,
        secret_token=settings.telegram_webhook_secret or None,
    )
    if ok:
        logger.info("Telegram webhook registered: %s", url)
    else:
        logger.error("Failed to register Telegram webhook: %s", url)
    return ok


async def get_webhook_info() -> dict[str, Any]:
    info = await get_bot().get_webhook_info()
    return info.to_dict()
