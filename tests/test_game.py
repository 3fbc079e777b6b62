"""Tests for the pure game rules."""

import pytest

from clicker_pro.game import (
    ACHIEVEMENTS, IMAGES, NEW_PLAYER, GameError,
    apply_click, apply_upgrade, find_image, next_cost, normalize_username,
    passive_income, unlocked_achievements, validate_transfer,
)


def _player(**kwargs) -> dict:
    user = dict(NEW_PLAYER, username="alice")
    user.update(kwargs)
    return user


class TestClick:
    def test_adds_coins_per_click(self):
        updates = apply_click(_player(coins=5, coins_per_click=3))
        assert updates["coins"] == 8
        assert updates["total_coins_earned"] == 3
        assert updates["total_clicks"] == 1


class TestUpgrade:
    def test_click_upgrade(self):
        updates = apply_upgrade(_player(coins=15), "click")
        assert updates["coins"] == 5
        assert updates["coins_per_click"] == 2
        assert updates["click_upgrade_level"] == 2
        assert updates["click_upgrade_cost"] == 15

    def test_auto_upgrade(self):
        updates = apply_upgrade(_player(coins=20), "auto")
        assert updates["coins"] == 0
        assert updates["coins_per_sec"] == 1
        assert updates["auto_upgrade_level"] == 1
        assert updates["auto_upgrade_cost"] == 30

    def test_not_enough_coins(self):
        with pytest.raises(GameError, match="Not enough coins"):
            apply_upgrade(_player(coins=9), "click")

    def test_unknown_kind(self):
        with pytest.raises(GameError):
            apply_upgrade(_player(coins=100), "mega")

    def test_next_cost_rounds_up(self):
        assert next_cost(10) == 15
        assert next_cost(15) == 23
        assert next_cost(1) == 2


class TestPassiveIncome:
    def test_whole_seconds(self):
        assert passive_income(2, 10.9, 3600) == 20

    def test_capped(self):
        assert passive_income(1, 10_000, 3600) == 3600

    def test_no_cap(self):
        assert passive_income(1, 10_000, 0) == 10_000

    def test_zero_rate(self):
        assert passive_income(0, 10_000, 3600) == 0

    def test_clock_went_backwards(self):
        assert passive_income(5, -30, 3600) == 0


class TestAchievements:
    def test_first_click(self):
        ids = [a.id for a in unlocked_achievements(_player(total_clicks=1), set())]
        assert ids == ["first_click"]

    def test_already_granted_skipped(self):
        assert unlocked_achievements(_player(total_clicks=1), {"first_click"}) == []

    def test_multiple(self):
        ids = {a.id for a in unlocked_achievements(
            _player(total_clicks=150, auto_upgrade_level=1), set(),
        )}
        assert ids == {"first_click", "clicks_100", "auto_level_1"}

    def test_ids_unique(self):
        ids = [a.id for a in ACHIEVEMENTS]
        assert len(ids) == len(set(ids))


class TestImages:
    def test_default_is_free(self):
        assert find_image("default").price == 0

    def test_unknown(self):
        assert find_image("nope") is None

    def test_ids_unique(self):
        ids = [i.id for i in IMAGES]
        assert len(ids) == len(set(ids))


class TestValidateTransfer:
    def test_ok(self):
        assert validate_transfer("25", _player(coins=100), "bob") == 25

    @pytest.mark.parametrize("amount", [0, -5, "abc", None, 1.5, True])
    def test_bad_amount(self, amount):
        with pytest.raises(GameError):
            validate_transfer(amount, _player(coins=100), "bob")

    def test_not_enough(self):
        with pytest.raises(GameError, match="Not enough coins"):
            validate_transfer(101, _player(coins=100), "bob")

    def test_self(self):
        with pytest.raises(GameError, match="yourself"):
            validate_transfer(1, _player(coins=100), "ALICE")

    def test_missing_recipient(self):
        with pytest.raises(GameError):
            validate_transfer(1, _player(coins=100), "")


def test_normalize_username():
    assert normalize_username(" @bob ") == "bob"
    assert normalize_username(None) == ""
