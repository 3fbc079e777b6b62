"""Tests for the bot command handlers."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from clicker_pro import admin, handlers
from clicker_pro.config import Config
from clicker_pro.storage import GameStore


def _update(user_id: int = 42, username: str | None = "alice", web_app_data: str | None = None):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.username = username
    update.effective_user.first_name = "Alice"
    update.effective_user.last_name = None
    update.effective_chat.id = 1000
    update.message.reply_text = AsyncMock()
    if web_app_data is not None:
        update.message.web_app_data.data = web_app_data
    return update


def _context(store: GameStore, config: Config, args: list[str] | None = None):
    context = MagicMock()
    context.bot_data = {"store": store, "config": config}
    context.args = args
    return context


def _reply(update) -> str:
    return update.message.reply_text.call_args.args[0]


@pytest.fixture
def store():
    s = GameStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def config():
    return Config(telegram_token="test:token", webapp_url="https://game.example", admin_users={1})


@pytest.fixture
def players(store):
    store.get_or_create_user(42, "alice")
    store.get_or_create_user(7, "bob")
    store.set_coins("alice", 100)
    return store


class TestStart:
    @pytest.mark.asyncio
    async def test_registers_and_offers_webapp(self, store, config):
        update = _update()
        await handlers.start_command(update, _context(store, config))
        assert store.get_user(42)["username"] == "alice"
        assert "Welcome to Clicker Pro, @alice" in _reply(update)
        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        assert markup.inline_keyboard[0][0].web_app.url == "https://game.example"

    @pytest.mark.asyncio
    async def test_no_webapp_url(self, store):
        update = _update()
        await handlers.start_command(update, _context(store, Config(telegram_token="t")))
        assert update.message.reply_text.call_args.kwargs["reply_markup"] is None

    @pytest.mark.asyncio
    async def test_banned(self, players, config):
        players.set_banned("alice", True)
        update = _update()
        await handlers.start_command(update, _context(players, config))
        assert "banned" in _reply(update)


class TestBalance:
    @pytest.mark.asyncio
    async def test_shows_balance(self, players, config):
        update = _update()
        await handlers.balance_command(update, _context(players, config))
        assert _reply(update).startswith("Coins: 100\n")

    @pytest.mark.asyncio
    async def test_unregistered(self, store, config):
        update = _update()
        await handlers.balance_command(update, _context(store, config))
        assert "/start" in _reply(update)

    @pytest.mark.asyncio
    async def test_banned(self, players, config):
        players.set_banned("alice", True, "bot farm")
        update = _update()
        await handlers.balance_command(update, _context(players, config))
        assert _reply(update) == "You are banned. Reason: bot farm"


class TestClick:
    @pytest.mark.asyncio
    async def test_click(self, players, config):
        update = _update()
        await handlers.click_command(update, _context(players, config))
        text = _reply(update)
        assert "earned 1 coins" in text
        assert "Total coins: 101" in text
        assert "First Click" in text

    @pytest.mark.asyncio
    async def test_web_app_click(self, players, config):
        update = _update(web_app_data=json.dumps({"action": "click"}))
        await handlers.handle_web_app_data(update, _context(players, config))
        assert players.get_user(42)["total_clicks"] == 1

    @pytest.mark.asyncio
    async def test_web_app_malformed(self, players, config):
        update = _update(web_app_data="{oops")
        await handlers.handle_web_app_data(update, _context(players, config))
        update.message.reply_text.assert_not_called()
        assert players.get_user(42)["total_clicks"] == 0


class TestTop:
    @pytest.mark.asyncio
    async def test_top(self, players, config):
        update = _update()
        await handlers.top_command(update, _context(players, config))
        assert _reply(update) == "🏆 Top Players:\n\n1. @alice — 100 🪙\n2. @bob — 0 🪙"

    @pytest.mark.asyncio
    async def test_empty(self, store, config):
        update = _update()
        await handlers.top_command(update, _context(store, config))
        assert _reply(update) == "Failed to load top players."


class TestTransfer:
    @pytest.mark.asyncio
    async def test_transfer(self, players, config):
        update = _update()
        await handlers.transfer_command(update, _context(players, config, ["@bob", "40"]))
        assert _reply(update) == "You sent 40 coins to @bob"
        assert players.get_user(7)["coins"] == 40

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [[], ["@bob"], ["@bob", "-5"], ["@bob", "ten"], ["@b-ob", "1"], ["@bob", "²"]])
    async def test_usage(self, players, config, args):
        update = _update()
        await handlers.transfer_command(update, _context(players, config, args))
        assert _reply(update).startswith("Usage: /transfer")

    @pytest.mark.asyncio
    async def test_not_enough(self, players, config):
        update = _update()
        await handlers.transfer_command(update, _context(players, config, ["bob", "500"]))
        assert _reply(update) == "Not enough coins"

    @pytest.mark.asyncio
    async def test_history(self, players, config):
        players.transfer_coins(42, "bob", 40)
        update = _update(user_id=7, username="bob")
        await handlers.transfers_command(update, _context(players, config))
        assert _reply(update) == "💸 Recent transfers:\n@alice → @bob: 40 🪙"

    @pytest.mark.asyncio
    async def test_history_empty(self, players, config):
        update = _update()
        await handlers.transfers_command(update, _context(players, config))
        assert _reply(update) == "No transfers yet."

    @pytest.mark.asyncio
    async def test_history_unregistered(self, store, config):
        update = _update()
        await handlers.transfers_command(update, _context(store, config))
        assert "/start" in _reply(update)


class TestAdmin:
    @pytest.mark.asyncio
    async def test_non_admin_refused(self, players, config):
        update = _update()
        await admin.ban_command(update, _context(players, config, ["@bob"]))
        assert "permission" in _reply(update)
        assert players.get_user(7)["is_banned"] is False

    @pytest.mark.asyncio
    async def test_config_admin_bans(self, players, config):
        update = _update(user_id=1, username="root")
        await admin.ban_command(update, _context(players, config, ["@bob", "spamming", "taps"]))
        assert _reply(update) == "✅ User @bob has been banned. Reason: spamming taps"
        assert players.get_user(7)["banned_reason"] == "spamming taps"
        assert players.admin_logs()[0]["action"] == "ban"

    @pytest.mark.asyncio
    async def test_promoted_admin(self, players, config):
        players.set_admin("alice")
        update = _update()
        await admin.unban_command(update, _context(players, config, ["bob"]))
        assert "unbanned" in _reply(update)

    @pytest.mark.asyncio
    async def test_setcoins(self, players, config):
        update = _update(user_id=1)
        await admin.setcoins_command(update, _context(players, config, ["@bob", "77"]))
        assert players.get_user(7)["coins"] == 77
        assert players.admin_logs()[0]["details"] == {"amount": 77}

    @pytest.mark.asyncio
    async def test_setcoins_usage(self, players, config):
        update = _update(user_id=1)
        await admin.setcoins_command(update, _context(players, config, ["@bob", "lots"]))
        assert _reply(update) == "Usage: /setcoins @username amount"

    @pytest.mark.asyncio
    async def test_setcoins_out_of_range(self, players, config):
        update = _update(user_id=1)
        await admin.setcoins_command(update, _context(players, config, ["@alice", "99999999999999999999"]))
        assert _reply(update) == "Amount out of range"
        assert players.get_user(42)["coins"] == 100
        assert players.admin_logs() == []

    @pytest.mark.asyncio
    async def test_addcoins_out_of_range(self, players, config):
        update = _update(user_id=1)
        await admin.addcoins_command(update, _context(players, config, ["@alice", str(2**63 - 50)]))
        assert _reply(update) == "Amount out of range"
        assert players.get_user(42)["coins"] == 100

    @pytest.mark.asyncio
    async def test_addcoins(self, players, config):
        update = _update(user_id=1)
        await admin.addcoins_command(update, _context(players, config, ["@alice", "-30"]))
        assert players.get_user(42)["coins"] == 70

    @pytest.mark.asyncio
    async def test_unknown_target(self, players, config):
        update = _update(user_id=1)
        await admin.makeadmin_command(update, _context(players, config, ["@ghost"]))
        assert _reply(update) == "User @ghost not found"

    @pytest.mark.asyncio
    async def test_makeadmin(self, players, config):
        update = _update(user_id=1)
        await admin.makeadmin_command(update, _context(players, config, ["@bob"]))
        assert players.get_user(7)["is_admin"] is True

    @pytest.mark.asyncio
    async def test_adminlogs(self, players, config):
        players.log_admin_action(1, "set_coins", 7, {"amount": 5})
        update = _update(user_id=1)
        await admin.adminlogs_command(update, _context(players, config, []))
        assert "set_coins → 7" in _reply(update)

    @pytest.mark.asyncio
    async def test_userlogs_empty(self, players, config):
        update = _update(user_id=1)
        await admin.userlogs_command(update, _context(players, config, ["@bob"]))
        assert _reply(update) == "No actions logged for this user."


def test_parse_count_clamped():
    assert admin._parse_count("500") == admin.MAX_LOG_COUNT
    assert admin._parse_count("0") == 1
    assert admin._parse_count("x") == 10
    assert admin._parse_count(None) == 10
