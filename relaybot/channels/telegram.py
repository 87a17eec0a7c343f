"""Telegram channel implementation using python-telegram-bot."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from loguru import logger
from telegram import BotCommand, Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

from relaybot.bus.queue import MessageBus
from relaybot.channels.base import BaseChannel
from relaybot.config.schema import TelegramConfig

TELEGRAM_MAX_MESSAGE_CHARS = 4000


def _markdown_to_telegram_html(text: str) -> str:
    """Convert the markdown subset agents produce to Telegram-safe HTML."""
    if not text:
        return ""

    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r"```[\w]*\n?([\s\S]*?)```", save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r"`([^`]+)`", save_inline_code, text)
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])", r"<i>\1</i>", text)

    for i, code in enumerate(inline_codes):
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"\x00IC{i}\x00", f"<code>{escaped}</code>")
    for i, code in enumerate(code_blocks):
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{escaped}</code></pre>")
    return text


class TelegramChannel(BaseChannel):
    """
    Telegram channel using long polling.

    Slash commands are forwarded as ordinary text so the reply flow
    interprets them as directives.
    """

    name = "telegram"
    text_chunk_limit = TELEGRAM_MAX_MESSAGE_CHARS

    BOT_COMMANDS = [
        BotCommand("new", "Start a new session"),
        BotCommand("think", "Set the thinking level"),
        BotCommand("verbose", "Toggle verbose tool output"),
        BotCommand("model", "List or pick the model"),
        BotCommand("status", "Show session status"),
        BotCommand("activation", "Group activation: mention|always"),
    ]

    def __init__(self, config: TelegramConfig, bus: MessageBus, media_dir: Path | None = None):
        super().__init__(config, bus)
        self.config: TelegramConfig = config
        self.media_dir = media_dir or Path.home() / ".relaybot" / "media"
        self._app: Application | None = None

    async def start(self) -> None:
        """Start the Telegram bot with long polling."""
        if not self.config.token:
            logger.error("Telegram bot token not configured")
            return

        self._running = True

        self._app = self._build_app()
        self._app.add_error_handler(self._on_error)

        self._app.add_handler(CommandHandler("start", self._on_start))
        self._app.add_handler(
            MessageHandler(
                filters.TEXT | filters.PHOTO | filters.VOICE | filters.AUDIO | filters.Document.ALL,
                self._on_message,
            )
        )

        logger.info("Starting Telegram bot (polling mode)...")
        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        logger.info(f"Telegram bot @{bot_info.username} connected")

        try:
            await self._app.bot.set_my_commands(self.BOT_COMMANDS)
            logger.debug("Telegram bot commands registered")
        except Exception as e:
            logger.warning(f"Failed to register bot commands: {e}")

        await self._app.updater.start_polling(
            allowed_updates=["message"],
            drop_pending_updates=True,
        )

        while self._running:
            await asyncio.sleep(1)

    def _build_app(self) -> Application:
        req = HTTPXRequest(connection_pool_size=16, pool_timeout=5.0, connect_timeout=30.0, read_timeout=30.0)
        builder = Application.builder().token(self.config.token).request(req).get_updates_request(req)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        return builder.build()

    async def connect(self) -> None:
        """Initialize the bot client for sending only, without polling."""
        if self._app is not None:
            return
        if not self.config.token:
            raise RuntimeError("Telegram bot token not configured")
        self._app = self._build_app()
        await self._app.initialize()

    async def stop(self) -> None:
        """Stop the Telegram bot."""
        self._running = False
        if self._app:
            logger.info("Stopping Telegram bot...")
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
            await self._app.shutdown()
            self._app = None

    @staticmethod
    def _get_media_type(path: str) -> str:
        """Guess media type from file extension."""
        ext = path.split("?", 1)[0].rsplit(".", 1)[-1].lower() if "." in path else ""
        if ext in ("jpg", "jpeg", "png", "gif", "webp"):
            return "photo"
        if ext == "ogg":
            return "voice"
        if ext in ("mp3", "m4a", "wav", "aac"):
            return "audio"
        return "document"

    def _require_app(self) -> Application:
        if not self._app:
            raise RuntimeError("Telegram bot not running")
        return self._app

    async def send_text(self, target: str, text: str) -> None:
        app = self._require_app()
        chat_id = int(target)
        try:
            await app.bot.send_message(
                chat_id=chat_id,
                text=_markdown_to_telegram_html(text),
                parse_mode="HTML",
            )
        except Exception as e:
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
            await app.bot.send_message(chat_id=chat_id, text=text)

    async def send_media(self, target: str, text: str, media_url: str) -> None:
        app = self._require_app()
        chat_id = int(target)
        media_type = self._get_media_type(media_url)
        sender = {
            "photo": app.bot.send_photo,
            "voice": app.bot.send_voice,
            "audio": app.bot.send_audio,
        }.get(media_type, app.bot.send_document)
        caption = text or None
        if media_url.startswith(("http://", "https://")):
            await sender(chat_id, media_url, caption=caption)
            return
        with open(media_url, "rb") as f:
            await sender(chat_id, f, caption=caption)

    async def send_typing(self, target: str) -> None:
        if self._app:
            await self._app.bot.send_chat_action(chat_id=int(target), action="typing")

    async def _on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /start command."""
        if not update.message or not update.effective_user:
            return
        await update.message.reply_text(
            f"👋 Hi {update.effective_user.first_name}! Send me a message and I'll respond.\n"
            "Use /new to start over and /status to see the session."
        )

    @staticmethod
    def _sender_id(user) -> str:
        """Build sender_id with username for allowlist matching."""
        sid = str(user.id)
        return f"{sid}|{user.username}" if user.username else sid

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle incoming messages (text, photos, voice, documents)."""
        if not update.message or not update.effective_user:
            return

        message = update.message
        user = update.effective_user
        content = message.text or message.caption or ""

        media_file = None
        media_type = None
        if message.photo:
            media_file = message.photo[-1]
            media_type = "image/jpeg"
        elif message.voice:
            media_file = message.voice
            media_type = message.voice.mime_type or "audio/ogg"
        elif message.audio:
            media_file = message.audio
            media_type = message.audio.mime_type or "audio/mpeg"
        elif message.document:
            media_file = message.document
            media_type = message.document.mime_type or "application/octet-stream"

        media_paths: list[str] = []
        if media_file and self._app:
            try:
                file = await self._app.bot.get_file(media_file.file_id)
                self.media_dir.mkdir(parents=True, exist_ok=True)
                file_path = self.media_dir / f"{media_file.file_id[:16]}{self._get_extension(media_type)}"
                await file.download_to_drive(str(file_path))
                media_paths.append(str(file_path))
                logger.debug(f"Downloaded {media_type} to {file_path}")
            except Exception as e:
                logger.error(f"Failed to download media: {e}")

        is_group = message.chat.type != "private"
        bot_username = context.bot.username if context and context.bot else None
        was_mentioned = bool(bot_username and f"@{bot_username}".lower() in content.lower())
        if message.reply_to_message and message.reply_to_message.from_user and context and context.bot:
            was_mentioned = was_mentioned or message.reply_to_message.from_user.id == context.bot.id

        logger.debug(f"Telegram message from {user.id}: {content[:50]}...")
        await self._handle_message(
            sender_id=self._sender_id(user),
            chat_id=str(message.chat_id),
            content=content,
            media=media_paths,
            media_type=media_type if media_paths else None,
            is_group=is_group,
            sender_name=user.full_name,
            metadata={
                "message_id": message.message_id,
                "user_id": user.id,
                "username": user.username,
                "group_subject": message.chat.title if is_group else None,
                "was_mentioned": was_mentioned,
                "bot_username": bot_username,
            },
        )

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Log polling / handler errors instead of silently swallowing them."""
        logger.error(f"Telegram error: {context.error}")

    @staticmethod
    def _get_extension(mime_type: str | None) -> str:
        ext_map = {
            "image/jpeg": ".jpg", "image/png": ".png", "image/gif": ".gif",
            "audio/ogg": ".ogg", "audio/mpeg": ".mp3", "audio/mp4": ".m4a",
        }
        return ext_map.get(mime_type or "", "")
