#!/usr/bin/env python3
"""
Telegram Anonymous Messages Bot

Requirements (Python 3.10+ recommended):
    pip install -e .

Run:
    export BOT_TOKEN="YOUR_TELEGRAM_BOT_TOKEN"
    python -m anonrelay

What it does:
- Every user gets a personal deep link (t.me/<bot>?start=<token>).
- Whoever opens the link can write one anonymous message to its owner; text
  is re-sent by the bot, media is copied with copyMessage.
- The owner sees only the content and a "Reply" button; the reply travels back
  through the bot, and the conversation can go on the same way.
- Storage is a single JSON document in DATA_DIR guarded by a file lock:
    - data/config.yaml   – admins and policy values (written on first run)
    - data/relay.json    – users, link tokens, pending exchanges, chat states

Commands:
- /start [token] – your link, or start writing to the owner of <token>
- /link – show your link
- /newlink – revoke your link and issue a new one
- /cancel – abandon the current message
- /help – basic help
- /stats – counters (admins only)
"""
from __future__ import annotations

import logging
from typing import Optional

from telegram import Message, Update
from telegram.constants import ChatType
from telegram.error import TelegramError
from telegram.ext import (
    AIORateLimiter,
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from anonrelay import texts
from anonrelay.commands import CANCEL_CALLBACK, REPLY_CALLBACK
from anonrelay.config import Settings, load_settings
from anonrelay.conversation import (
    Cancel,
    Event,
    Help,
    InboundUpdate,
    Media,
    RegenerateLink,
    ReplyPressed,
    ShowLink,
    Start,
    Stats,
    Text,
    UnknownCommand,
    Unsupported,
)
from anonrelay.dispatcher import RelayDispatcher, build_context
from anonrelay.gateway import TelegramGateway

logger = logging.getLogger(__name__)

CANCEL_WORDS = {"отмена", "cancel"}
SIMPLE_COMMANDS = {
    "help": Help,
    "link": ShowLink,
    "newlink": RegenerateLink,
    "cancel": Cancel,
    "stats": Stats,
}


# --------------------------- Update -> Event ---------------------------
def parse_command(text: str) -> Optional[tuple]:
    """'/start@my_bot abc' -> ('start', ['abc']); None for plain text."""
    if not text.startswith("/"):
        return None
    head, *args = text.split()
    name = head[1:].split("@", 1)[0].lower()
    return name, args


def event_from_text(text: str) -> Event:
    cmd = parse_command(text)
    if cmd is None:
        if text.strip().lower() in CANCEL_WORDS:
            return Cancel()
        return Text(text)
    name, args = cmd
    if name == "start":
        return Start(args[0] if args else None)
    if name in SIMPLE_COMMANDS:
        return SIMPLE_COMMANDS[name]()
    return UnknownCommand(name)


def is_copyable(msg: Message) -> bool:
    return bool(
        getattr(msg, "photo", None) or
        getattr(msg, "video", None) or
        getattr(msg, "video_note", None) or
        getattr(msg, "animation", None) or
        getattr(msg, "voice", None) or
        getattr(msg, "audio", None) or
        getattr(msg, "document", None) or
        getattr(msg, "sticker", None)
    )


def event_from_message(msg: Message) -> Event:
    if msg.text:
        return event_from_text(msg.text)
    if is_copyable(msg):
        return Media(msg.message_id)
    return Unsupported()


def event_from_callback(data: str) -> Optional[Event]:
    if data.startswith(REPLY_CALLBACK) and len(data) > len(REPLY_CALLBACK):
        return ReplyPressed(data[len(REPLY_CALLBACK):])
    if data == CANCEL_CALLBACK:
        return Cancel()
    return None


# --------------------------- Handlers ---------------------------
async def relay(update: Update, context: ContextTypes.DEFAULT_TYPE, event: Event) -> None:
    dispatcher: RelayDispatcher = context.bot_data["dispatcher"]
    gateway: TelegramGateway = context.bot_data["gateway"]
    user = update.effective_user
    inbound = InboundUpdate(sender_id=user.id, event=event, handle=user.username)
    chat_id = update.effective_chat.id
    commands = await dispatcher.handle_update(chat_id, inbound)
    report = await gateway.deliver(commands)
    if report.failed is not None:
        await gateway.deliver(await dispatcher.delivery_failed(chat_id, report.failed))


async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    msg = update.effective_message
    if not msg or not update.effective_user or update.effective_chat.type != ChatType.PRIVATE:
        return
    await relay(update, context, event_from_message(msg))


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    q = update.callback_query
    await q.answer()
    event = event_from_callback(q.data or "")
    if event is None:
        return
    await relay(update, context, event)


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing %r", update, exc_info=context.error)
    chat = getattr(update, "effective_chat", None)
    if chat is None:
        return
    try:
        await context.bot.send_message(chat.id, texts.FAILURE)
    except TelegramError:
        logger.warning("Could not report the error to chat %s", chat.id, exc_info=True)


# --------------------------- App Bootstrap ---------------------------
async def notify_admins(app: Application, settings: Settings, message: str) -> None:
    for admin_id in settings.admins:
        try:
            await app.bot.send_message(admin_id, message)
        except Exception:
            logger.warning("Could not notify admin %s", admin_id, exc_info=True)


async def post_init(app: Application) -> None:
    settings: Settings = app.bot_data["settings"]
    me = await app.bot.get_me()
    ctx = build_context(settings, me.username)
    app.bot_data["dispatcher"] = RelayDispatcher(ctx)
    app.bot_data["gateway"] = TelegramGateway(
        app.bot, retries=settings.send_retries, backoff=settings.retry_backoff_seconds
    )
    logger.info("Relay ready as @%s, data in %s", me.username, settings.data_dir)
    await notify_admins(app, settings, texts.STARTED)


def build_app(settings: Settings) -> Application:
    app = (
        ApplicationBuilder()
        .token(settings.bot_token)
        .rate_limiter(AIORateLimiter())
        .post_init(post_init)
        .concurrent_updates(True)
        .build()
    )
    app.bot_data["settings"] = settings

    app.add_handler(CallbackQueryHandler(on_callback))
    app.add_handler(MessageHandler(filters.ChatType.PRIVATE, on_message))
    app.add_error_handler(on_error)
    return app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level,
    )
    # httpx logs every polling request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    app = build_app(settings)
    logger.info("Bot is running...")
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
