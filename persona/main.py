"""Persona server entry point."""

import logging

from aiohttp import web

from persona.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Start the HTTP server."""
    from persona.web.server import create_web_app

    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is empty; chat requests will fail")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is empty; knowledge retrieval disabled")

    logger.info(
        "Starting persona server on port %d (env=%s, model=%s)",
        settings.port,
        settings.environment,
        settings.claude_model,
    )
    web.run_app(create_web_app(), port=settings.port, print=None)


if __name__ == "__main__":
    main()
