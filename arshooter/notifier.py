"""Optional Telegram chat notifications about new results and server errors."""

from __future__ import annotations

import html
import logging
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from .config import Settings
from .models import GameResult, User


log = logging.getLogger("arshooter.notifier")


class TelegramNotifier:
    """Posts short HTML messages to an operator chat.

    Disabled unless ``TELEGRAM_LOG_ENABLED`` is set together with a bot token
    and ``TELEGRAM_LOG_CHAT_ID``. Delivery errors are logged, never raised.
    """

    def __init__(self, chat_id: Optional[str], bot: Optional[Bot] = None) -> None:
        self.chat_id = chat_id
        self.bot = bot
        self._started = False

    @property
    def enabled(self) -> bool:
        return self.bot is not None and bool(self.chat_id)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TelegramNotifier":
        if not settings.telegram_log_enabled:
            return cls(None)
        if not settings.bot_token or not settings.telegram_log_chat_id:
            log.warning("Telegram notifications requested but BOT_TOKEN or TELEGRAM_LOG_CHAT_ID missing")
            return cls(None)
        log.info("Telegram notifications enabled")
        return cls(settings.telegram_log_chat_id, Bot(settings.bot_token))

    async def start(self) -> None:
        if self.enabled and not self._started:
            await self.bot.initialize()
            self._started = True

    async def close(self) -> None:
        if self._started:
            await self.bot.shutdown()
            self._started = False

    async def send(self, text: str) -> bool:
        if not self.enabled:
            return False
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode=ParseMode.HTML)
            return True
        except TelegramError:
            log.exception("Failed to deliver Telegram notification")
            return False

    async def notify_score(self, user: User, result: GameResult, rank: int) -> bool:
        who = f"TG#{user.platform_user_id}" if user.platform_user_id else "Session"
        text = (
            "🎮 <b>NEW RESULT</b>\n\n"
            f"👤 User: {html.escape(who)} ({html.escape(user.public_name)})\n"
            f"🆔 UserID: {user.id}\n"
            f"🏆 Score: <b>{result.score}</b> (rank {rank})\n"
            f"🎯 Hits: {result.targets_hit}/{result.shots_fired}\n"
            f"🔥 Combo: x{result.max_combo}\n"
            f"📝 ScoreID: {result.id}"
        )
        return await self.send(text)

    async def notify_error(self, context: str, error: BaseException) -> bool:
        text = (
            "❌ <b>ERROR</b>\n\n"
            f"📍 Context: {html.escape(context)}\n"
            f"💥 Error: <code>{html.escape(type(error).__name__)}: {html.escape(str(error)[:500])}</code>"
        )
        return await self.send(text)
