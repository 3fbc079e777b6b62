import json
import logging
import re
import sqlite3

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, WebAppInfo
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from .config import Config
from .game import GameError
from .storage import GameStore


log = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^@?(\w+)$")
AMOUNT_RE = re.compile(r"\d+", re.ASCII)

HELP_TEXT = """Clicker Pro

Tap the button to open the game, or play right here.

Commands:
/balance - Show your coins and income
/click - Click once
/top - Top players
/transfer @username amount - Send coins to another player
/transfers - Your recent transfers"""


def _webapp_keyboard(config: Config, text: str = "🚀 Open Clicker Game") -> InlineKeyboardMarkup | None:
    if not config.webapp_url:
        return None
    button = InlineKeyboardButton(text, web_app=WebAppInfo(url=config.webapp_url))
    return InlineKeyboardMarkup([[button]])


async def _registered_player(update: Update, context: ContextTypes.DEFAULT_TYPE) -> dict | None:
    """Return the sender's player row, replying with the reason when there is none."""
    store: GameStore = context.bot_data["store"]
    user = store.get_user(update.effective_user.id)
    if user is None:
        await update.message.reply_text("You are not registered yet. Send /start first.")
        return None
    if user["is_banned"]:
        reason = user["banned_reason"] or "no reason given"
        await update.message.reply_text(f"You are banned. Reason: {reason}")
        return None
    return user


def format_balance(user: dict) -> str:
    return (
        f"Coins: {user['coins']:,}\n"
        f"Coins/Click: {user['coins_per_click']}\n"
        f"Coins/Sec: {user['coins_per_sec']}\n"
        f"Total Earned: {user['total_coins_earned']:,}\n"
        f"Total Clicks: {user['total_clicks']:,}"
    )


def format_top(players: list[dict]) -> str:
    lines = ["🏆 Top Players:", ""]
    for idx, player in enumerate(players, 1):
        lines.append(f"{idx}. @{player['username'] or 'anonymous'} — {player['coins']:,} 🪙")
    return "\n".join(lines)


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command: register the player and offer the Mini App."""
    config: Config = context.bot_data["config"]
    store: GameStore = context.bot_data["store"]
    tg_user = update.effective_user

    try:
        user, created = store.get_or_create_user(
            tg_user.id, tg_user.username or "", tg_user.first_name or "", tg_user.last_name or "",
        )
    except sqlite3.Error:
        log.exception("Failed to register %s", tg_user.id)
        await update.message.reply_text(
            "Sorry, there was an error setting up your account. Please try again later."
        )
        return
    if created:
        store.log_user_action(tg_user.id, "register", {"via": "bot"})

    if user["is_banned"]:
        await update.message.reply_text("You are banned from Clicker Pro.")
        return

    name = f"@{tg_user.username}" if tg_user.username else tg_user.first_name
    await update.message.reply_text(
        f"Welcome to Clicker Pro, {name}!\n\nClick the button below to start earning coins.",
        reply_markup=_webapp_keyboard(config),
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command."""
    await update.message.reply_text(HELP_TEXT)


async def balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /balance command."""
    store: GameStore = context.bot_data["store"]
    if not await _registered_player(update, context):
        return
    user, _ = store.process_passive_income(update.effective_user.id)
    await update.message.reply_text(format_balance(user))


async def _do_click(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    config: Config = context.bot_data["config"]
    store: GameStore = context.bot_data["store"]
    user = store.click(update.effective_user.id)
    unlocked = store.check_and_grant_achievements(update.effective_user.id)

    text = (
        f"💰 You clicked and earned {user['coins_per_click']} coins!\n"
        f"Total coins: {user['coins']:,}"
    )
    for achievement in unlocked:
        text += f"\n🏅 Achievement unlocked: {achievement['title']}"
    await update.message.reply_text(text, reply_markup=_webapp_keyboard(config, "Open Clicker"))


async def click_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /click command."""
    if not await _registered_player(update, context):
        return
    await _do_click(update, context)


async def top_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /top command."""
    config: Config = context.bot_data["config"]
    store: GameStore = context.bot_data["store"]
    players = store.top_players(config.top_limit)
    if not players:
        await update.message.reply_text("Failed to load top players.")
        return
    await update.message.reply_text(format_top(players))


async def transfer_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /transfer @username amount."""
    store: GameStore = context.bot_data["store"]
    if not await _registered_player(update, context):
        return

    args = context.args or []
    match = USERNAME_RE.match(args[0]) if len(args) == 2 else None
    if not match or not AMOUNT_RE.fullmatch(args[1]):
        await update.message.reply_text(
            "Usage: /transfer @username amount\nExample: /transfer @john 100"
        )
        return

    to_username, amount = match.group(1), int(args[1])
    try:
        _, recipient, amount = store.transfer_coins(update.effective_user.id, to_username, amount)
    except GameError as e:
        await update.message.reply_text(str(e))
        return

    store.log_user_action(update.effective_user.id, "transfer", {
        "to": recipient["username"], "amount": amount,
    })
    await update.message.reply_text(f"You sent {amount:,} coins to @{recipient['username']}")


async def transfers_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /transfers — recent coins sent and received."""
    store: GameStore = context.bot_data["store"]
    if not await _registered_player(update, context):
        return

    history = store.transfer_history(update.effective_user.id, limit=10)
    if not history:
        await update.message.reply_text("No transfers yet.")
        return

    lines = ["💸 Recent transfers:"]
    for entry in history:
        lines.append(
            f"@{entry['from_username'] or 'anonymous'} → @{entry['to_username'] or 'anonymous'}: "
            f"{entry['amount']:,} 🪙"
        )
    await update.message.reply_text("\n".join(lines))


async def handle_web_app_data(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle data posted back by the Mini App via Telegram.WebApp.sendData."""
    try:
        data = json.loads(update.message.web_app_data.data)
    except json.JSONDecodeError:
        log.warning("Ignoring malformed web_app_data from %s", update.effective_user.id)
        return
    if not isinstance(data, dict):
        return

    if data.get("action") == "click":
        if not await _registered_player(update, context):
            return
        await _do_click(update, context)


async def post_init(app) -> None:
    """Start the HTTP API if configured and send the startup notification."""
    config: Config = app.bot_data["config"]

    if config.api_port > 0:
        from aiohttp import web as aio_web
        from .web_api import create_web_app

        web_app = create_web_app(config, app.bot_data["store"])
        runner = aio_web.AppRunner(web_app)
        await runner.setup()
        site = aio_web.TCPSite(runner, "0.0.0.0", config.api_port)
        await site.start()
        app.bot_data["_api_runner"] = runner
        log.info("HTTP API started on port %d", config.api_port)

    if config.notify_chat_id:
        try:
            await app.bot.send_message(config.notify_chat_id, "Clicker Pro Bot is online!")
        except TelegramError as e:
            log.warning("Startup notification failed: %s", e)


async def post_shutdown(app) -> None:
    """Clean up the HTTP API server and close the store."""
    runner = app.bot_data.get("_api_runner")
    if runner:
        await runner.cleanup()
    store = app.bot_data.get("store")
    if store:
        store.close()
