"""Telegram update handling: mention gating, commands, persona replies."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from telegram.constants import ChatAction, ChatType, ParseMode
from telegram.error import TelegramError

from persona.bot.session import ConversationStore
from persona.freshness import needs_fresh_answer
from persona.llm import orchestrator
from persona.llm.models import Message

if TYPE_CHECKING:
    from telegram import Bot, Update

logger = logging.getLogger(__name__)

START_REPLY = "Hey there. What's on your mind?"
CLEAR_REPLY = "Memory wiped. Fresh start. What do you want to talk about?"
BARE_MENTION_REPLY = "You rang? What's on your mind?"
ERROR_REPLY = "Something went sideways in the matrix. Give it another shot."

_COMMAND_SUFFIX = re.compile(r"^/(\w+)@\w+")
_WHITESPACE = re.compile(r"\s+")

_bot_username: str | None = None


def is_group_chat(chat_type: str) -> bool:
    return chat_type in (ChatType.GROUP, ChatType.SUPERGROUP)


def extract_mentioned_message(text: str, bot_username: str) -> str | None:
    """Strip ``@bot_username`` from *text*; None if the bot is not mentioned."""
    pattern = re.compile(rf"@{re.escape(bot_username)}\b", re.IGNORECASE)
    if not pattern.search(text):
        return None
    return _WHITESPACE.sub(" ", pattern.sub("", text)).strip()


def normalize_command(text: str) -> str:
    """``/start@SomeBot`` -> ``/start``."""
    return _COMMAND_SUFFIX.sub(r"/\1", text)


async def get_bot_username(bot: Bot) -> str | None:
    """The bot's lower-cased username, fetched once and cached."""
    global _bot_username  # noqa: PLW0603
    if _bot_username:
        return _bot_username
    try:
        me = await bot.get_me()
    except TelegramError:
        logger.warning("Failed to fetch bot username", exc_info=True)
        return None
    if me.username:
        _bot_username = me.username.lower()
    return _bot_username


async def send_reply(bot: Bot, chat_id: int, text: str) -> None:
    """Send with Markdown, retrying as plain text if Telegram rejects it."""
    try:
        await bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.MARKDOWN)
    except TelegramError:
        logger.warning("Markdown send failed for chat %s, retrying as plain text", chat_id)
        await bot.send_message(chat_id=chat_id, text=text)


async def _send_typing(bot: Bot, chat_id: int) -> None:
    try:
        await bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
    except TelegramError:
        logger.warning("Failed to send typing indicator", exc_info=True)


async def handle_text(
    bot: Bot,
    chat_id: int,
    chat_type: str,
    text: str,
    store: ConversationStore | None = None,
) -> None:
    """Answer one text message. Groups share one history per chat."""
    if store is None:
        store = ConversationStore.get()
    conversation_id = str(chat_id)
    text = text.strip()

    if is_group_chat(chat_type):
        username = await get_bot_username(bot)
        if not username:
            logger.warning("Could not determine bot username for group mention check")
            return
        mentioned = extract_mentioned_message(text, username)
        if mentioned is None:
            logger.debug("Ignoring group message in %s: bot not mentioned", chat_id)
            return
        if not mentioned:
            await send_reply(bot, chat_id, BARE_MENTION_REPLY)
            return
        text = mentioned

    logger.info(
        "Processing Telegram message: chat=%s group=%s length=%d",
        chat_id,
        is_group_chat(chat_type),
        len(text),
    )

    command = normalize_command(text)
    if command.startswith("/start"):
        store.clear(conversation_id)
        await send_reply(bot, chat_id, START_REPLY)
        return
    if command.startswith("/clear"):
        store.clear(conversation_id)
        await send_reply(bot, chat_id, CLEAR_REPLY)
        return

    await _send_typing(bot, chat_id)

    user_message = Message(role="user", content=text)
    messages = [*store.history(conversation_id), user_message]
    use_search = needs_fresh_answer(text)

    try:
        if use_search:
            response = await orchestrator.generate_with_fallback(messages)
        else:
            response = await orchestrator.generate(messages)
    except Exception:
        logger.exception("Failed to process Telegram message for %s", conversation_id)
        await send_reply(bot, chat_id, ERROR_REPLY)
        return

    if not response.used_fallback:
        store.extend(
            conversation_id,
            [user_message, Message(role="assistant", content=response.text)],
        )

    await send_reply(bot, chat_id, response.text)
    logger.info(
        "Sent Telegram response: chat=%s length=%d search=%s",
        chat_id,
        len(response.text),
        use_search,
    )


async def process_update(update: Update, bot: Bot) -> None:
    """Entry point for a webhook update. Non-text updates are ignored."""
    message = update.message
    if message is None or not message.text or message.from_user is None:
        logger.debug("Ignoring non-text update %s", update.update_id)
        return

    await handle_text(bot, message.chat.id, message.chat.type, message.text)
