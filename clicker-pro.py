#!/usr/bin/env python

import argparse
import configparser
import logging

from telegram import Update
from telegram.ext import Application, CommandHandler, MessageHandler, filters

from clicker_pro import admin, handlers
from clicker_pro.config import load_config
from clicker_pro.storage import GameStore


def main():
    parser = argparse.ArgumentParser(description="Clicker Pro Telegram bot and Mini App API")
    parser.add_argument("-c", "--config", type=str, default="config.ini", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # httpx logs every getUpdates poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    config_file = configparser.ConfigParser()
    if not config_file.read(args.config):
        parser.error(f"cannot read config file: {args.config}")
    config = load_config(config_file)

    config.database.parent.mkdir(parents=True, exist_ok=True)
    store = GameStore(config.database, passive_cap_seconds=config.passive_cap_seconds)

    app = (
        Application.builder()
        .token(config.telegram_token)
        .post_init(handlers.post_init)
        .post_shutdown(handlers.post_shutdown)
        .build()
    )
    app.bot_data["config"] = config
    app.bot_data["store"] = store

    app.add_handler(CommandHandler("start", handlers.start_command))
    app.add_handler(CommandHandler("help", handlers.help_command))
    app.add_handler(CommandHandler("balance", handlers.balance_command))
    app.add_handler(CommandHandler("click", handlers.click_command))
    app.add_handler(CommandHandler("top", handlers.top_command))
    app.add_handler(CommandHandler("transfer", handlers.transfer_command))
    app.add_handler(CommandHandler("transfers", handlers.transfers_command))
    app.add_handler(MessageHandler(filters.StatusUpdate.WEB_APP_DATA, handlers.handle_web_app_data))

    app.add_handler(CommandHandler("admin", admin.admin_command))
    app.add_handler(CommandHandler("ban", admin.ban_command))
    app.add_handler(CommandHandler("unban", admin.unban_command))
    app.add_handler(CommandHandler("setcoins", admin.setcoins_command))
    app.add_handler(CommandHandler("addcoins", admin.addcoins_command))
    app.add_handler(CommandHandler("makeadmin", admin.makeadmin_command))
    app.add_handler(CommandHandler("adminlogs", admin.adminlogs_command))
    app.add_handler(CommandHandler("userlogs", admin.userlogs_command))

    logging.getLogger("clicker_pro").info("Bot started...")
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
