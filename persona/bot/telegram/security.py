"""Webhook secret gate for inbound Telegram updates."""

import hmac
import logging

from persona.config import settings

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def validate_webhook_secret(provided: str | None) -> bool:
    """Check the secret token Telegram echoes back on every webhook call.

    With no secret configured every request is accepted (local development).
    """
    expected = settings.telegram_webhook_secret
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided, expected)
