import asyncio
import html
import logging
import sys

from aiohttp import web
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, WebAppInfo
from telegram.constants import ParseMode
from telegram.ext import ApplicationBuilder, CommandHandler, ContextTypes

from .config import Settings
from .db import Database
from .errors import ConfigurationError
from .models import LeaderboardPage
from .store import ScoreStore

log = logging.getLogger("arshooter.bot")

TOP_SIZE = 5
MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}


def play_markup(app_url: str) -> InlineKeyboardMarkup:
    kb = [[InlineKeyboardButton("🎯 Play", web_app=WebAppInfo(url=app_url))]]
    return InlineKeyboardMarkup(kb)


def format_leaderboard(page: LeaderboardPage) -> str:
    if not page.entries:
        return "No results yet. Be the first on the board!"
    lines = ["🏆 <b>Top players</b>", ""]
    for entry in page.entries:
        badge = MEDALS.get(entry.rank, f"{entry.rank}.")
        name = html.escape(entry.username)
        lines.append(f"{badge} {name}: <b>{entry.result.score}</b>")
    return "\n".join(lines)


# ---------- Telegram handlers ----------
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handler for /start: greeting plus a button that opens the Mini App."""
    settings: Settings = context.bot_data["settings"]
    text = (
        "👋 Welcome to <b>AR Shooter</b>!\n\n"
        "Raise your hand, aim with your finger and shoot the targets.\n"
        "Tap «Play» to open the game right inside Telegram."
    )
    await update.effective_message.reply_text(
        text, parse_mode=ParseMode.HTML, reply_markup=play_markup(settings.app_url)
    )


async def top(update: Update, context: ContextTypes.DEFAULT_TYPE):
    store: ScoreStore = context.bot_data["store"]
    page = await store.leaderboard("score", TOP_SIZE, 0)
    await update.effective_message.reply_text(format_leaderboard(page), parse_mode=ParseMode.HTML)


# ---------- Aiohttp health ----------
async def health(_: web.Request) -> web.Response:
    return web.Response(text="AR Shooter bot is running ✅")


# ---------- Bot and health server in one event loop ----------
async def run(settings: Settings):
    if not settings.bot_token:
        raise ConfigurationError("BOT_TOKEN is required to run the bot")

    db = Database(settings.database_path, size=2, acquire_timeout=settings.db_pool_timeout_seconds)
    await db.open()

    application = ApplicationBuilder().token(settings.bot_token).build()
    application.bot_data["settings"] = settings
    application.bot_data["store"] = ScoreStore(
        db, min_shots_for_accuracy=settings.limits.min_shots_for_accuracy
    )
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("top", top))

    await application.initialize()
    await application.start()
    await application.updater.start_polling()
    log.info("Telegram bot polling started")

    app = web.Application()
    app.router.add_get("/", health)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.host, port=settings.bot_health_port)
    await site.start()
    log.info("Health endpoint started on %s:%s", settings.host, settings.bot_health_port)

    try:
        await asyncio.Event().wait()
    finally:
        await application.updater.stop()
        await application.stop()
        await application.shutdown()
        await runner.cleanup()
        await db.close()


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        asyncio.run(run(Settings.from_env()))
    except KeyboardInterrupt:
        pass
    except ConfigurationError as exc:
        log.critical("refusing to start: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
