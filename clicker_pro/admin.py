"""Admin bot commands: bans, balance edits, promotions and audit logs.

Admins are the users listed in config.ini plus anyone promoted with
/makeadmin. Every change is written to admin_logs.
"""

import logging
import time

from telegram import Update
from telegram.ext import ContextTypes

from .config import Config, is_admin
from .game import GameError
from .storage import GameStore


log = logging.getLogger(__name__)

ADMIN_HELP = """👑 Admin Commands:

/ban @username [reason] - Ban a user
/unban @username - Unban a user
/setcoins @username amount - Set a user's coin balance
/addcoins @username amount - Add coins to a user's balance
/adminlogs [count] - Show recent admin actions
/userlogs @username [count] - Show user logs
/makeadmin @username - Grant admin privileges"""

MAX_LOG_COUNT = 50


async def _require_admin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    config: Config = context.bot_data["config"]
    store: GameStore = context.bot_data["store"]
    user_id = update.effective_user.id
    if is_admin(config, store.get_user(user_id), user_id):
        return True
    await update.message.reply_text("❌ You don't have permission to use this command.")
    return False


def _parse_count(raw: str | None, default: int = 10) -> int:
    if raw is None:
        return default
    try:
        return max(1, min(int(raw), MAX_LOG_COUNT))
    except ValueError:
        return default


def _parse_int(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


def _fmt_time(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


async def admin_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /admin command — list admin commands."""
    if not await _require_admin(update, context):
        return
    await update.message.reply_text(ADMIN_HELP)


async def ban_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /ban @username [reason]."""
    if not await _require_admin(update, context):
        return
    store: GameStore = context.bot_data["store"]
    args = context.args or []
    if not args:
        await update.message.reply_text("Usage: /ban @username [reason]")
        return

    reason = " ".join(args[1:]) or "No reason provided"
    try:
        user = store.set_banned(args[0], True, reason)
    except GameError as e:
        await update.message.reply_text(str(e))
        return

    store.log_admin_action(update.effective_user.id, "ban", user["telegram_id"], {"reason": reason})
    log.info("Admin %s banned %s", update.effective_user.id, user["telegram_id"])
    await update.message.reply_text(f"✅ User @{user['username']} has been banned. Reason: {reason}")


async def unban_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unban @username."""
    if not await _require_admin(update, context):
        return
    store: GameStore = context.bot_data["store"]
    args = context.args or []
    if len(args) != 1:
        await update.message.reply_text("Usage: /unban @username")
        return

    try:
        user = store.set_banned(args[0], False)
    except GameError as e:
        await update.message.reply_text(str(e))
        return

    store.log_admin_action(update.effective_user.id, "unban", user["telegram_id"])
    await update.message.reply_text(f"✅ User @{user['username']} has been unbanned.")


async def _balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE, action: str) -> None:
    store: GameStore = context.bot_data["store"]
    args = context.args or []
    amount = _parse_int(args[1]) if len(args) == 2 else None
    if amount is None:
        await update.message.reply_text(f"Usage: /{action.replace('_', '')} @username amount")
        return

    try:
        if action == "set_coins":
            user = store.set_coins(args[0], amount)
        else:
            user = store.add_coins(args[0], amount)
    except GameError as e:
        await update.message.reply_text(str(e))
        return

    store.log_admin_action(update.effective_user.id, action, user["telegram_id"], {"amount": amount})
    await update.message.reply_text(f"✅ @{user['username']} now has {user['coins']:,} coins.")


async def setcoins_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /setcoins @username amount."""
    if not await _require_admin(update, context):
        return
    await _balance_command(update, context, "set_coins")


async def addcoins_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addcoins @username amount. Negative amounts deduct."""
    if not await _require_admin(update, context):
        return
    await _balance_command(update, context, "add_coins")


async def makeadmin_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /makeadmin @username."""
    if not await _require_admin(update, context):
        return
    store: GameStore = context.bot_data["store"]
    args = context.args or []
    if len(args) != 1:
        await update.message.reply_text("Usage: /makeadmin @username")
        return

    try:
        user = store.set_admin(args[0], True)
    except GameError as e:
        await update.message.reply_text(str(e))
        return

    store.log_admin_action(update.effective_user.id, "make_admin", user["telegram_id"])
    await update.message.reply_text(f"✅ @{user['username']} is now an admin.")


async def adminlogs_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /adminlogs [count]."""
    if not await _require_admin(update, context):
        return
    store: GameStore = context.bot_data["store"]
    args = context.args or []
    entries = store.admin_logs(_parse_count(args[0] if args else None))
    if not entries:
        await update.message.reply_text("No admin actions logged.")
        return

    lines = ["Recent admin actions:"]
    for entry in entries:
        target = f" → {entry['target_user_id']}" if entry["target_user_id"] else ""
        details = f" {entry['details']}" if entry["details"] else ""
        lines.append(f"{_fmt_time(entry['created_at'])} {entry['admin_id']}: {entry['action']}{target}{details}")
    await update.message.reply_text("\n".join(lines))


async def userlogs_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /userlogs @username [count]."""
    if not await _require_admin(update, context):
        return
    store: GameStore = context.bot_data["store"]
    args = context.args or []
    if not args:
        await update.message.reply_text("Usage: /userlogs @username [count]")
        return

    try:
        entries = store.user_logs(args[0], _parse_count(args[1] if len(args) > 1 else None))
    except GameError as e:
        await update.message.reply_text(str(e))
        return
    if not entries:
        await update.message.reply_text("No actions logged for this user.")
        return

    lines = [f"Recent actions for {args[0]}:"]
    for entry in entries:
        details = f" {entry['details']}" if entry["details"] else ""
        lines.append(f"{_fmt_time(entry['created_at'])} {entry['action']}{details}")
    await update.message.reply_text("\n".join(lines))
