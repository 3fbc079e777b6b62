"""Game rules: new player defaults, upgrades, passive income and catalogues.

Pure functions over plain dicts so the store can apply them inside a single
transaction.
"""

import math
from dataclasses import dataclass


NEW_PLAYER = {
    "coins": 0,
    "coins_per_click": 1,
    "coins_per_sec": 0,
    "click_upgrade_level": 1,
    "click_upgrade_cost": 10,
    "auto_upgrade_level": 0,
    "auto_upgrade_cost": 20,
    "total_clicks": 0,
    "total_coins_earned": 0,
    "current_image": "default",
}

COST_GROWTH = 1.5

# SQLite INTEGER is a signed 64-bit value
MAX_BALANCE = 2**63 - 1

UPGRADE_KINDS = ("click", "auto")


class GameError(Exception):
    """A rule violation reported back to the player."""


class UserNotFound(GameError):
    pass


class NotOwned(GameError):
    pass


@dataclass(frozen=True)
class Achievement:
    id: str
    title: str
    description: str
    stat: str
    threshold: int


@dataclass(frozen=True)
class Image:
    id: str
    title: str
    price: int


ACHIEVEMENTS = (
    Achievement("first_click", "First Click", "Click for the first time", "total_clicks", 1),
    Achievement("clicks_100", "Warming Up", "Click 100 times", "total_clicks", 100),
    Achievement("clicks_1000", "Clicker", "Click 1,000 times", "total_clicks", 1000),
    Achievement("clicks_10000", "Relentless", "Click 10,000 times", "total_clicks", 10000),
    Achievement("earned_1000", "Pocket Money", "Earn 1,000 coins", "total_coins_earned", 1000),
    Achievement("earned_100000", "Tycoon", "Earn 100,000 coins", "total_coins_earned", 100000),
    Achievement("click_level_5", "Strong Finger", "Reach click level 5", "click_upgrade_level", 5),
    Achievement("auto_level_1", "Autopilot", "Buy your first auto clicker", "auto_upgrade_level", 1),
    Achievement("auto_level_10", "Factory", "Reach auto level 10", "auto_upgrade_level", 10),
)

IMAGES = (
    Image("default", "Classic Coin", 0),
    Image("golden", "Golden Coin", 500),
    Image("rocket", "Rocket", 2500),
    Image("diamond", "Diamond", 10000),
    Image("dragon", "Dragon Egg", 50000),
)


def check_balance_range(balance: int) -> None:
    if balance > MAX_BALANCE:
        raise GameError("Amount out of range")


def next_cost(cost: int) -> int:
    return math.ceil(cost * COST_GROWTH)


def apply_click(user: dict) -> dict:
    """Return the column updates for a single click."""
    gain = user["coins_per_click"]
    return {
        "coins": user["coins"] + gain,
        "total_clicks": user["total_clicks"] + 1,
        "total_coins_earned": user["total_coins_earned"] + gain,
    }


def apply_upgrade(user: dict, kind: str) -> dict:
    """Return the column updates for buying one level of an upgrade.

    Raises GameError for an unknown kind or when the player can't afford it.
    """
    if kind not in UPGRADE_KINDS:
        raise GameError(f"Unknown upgrade: {kind}")

    cost = user[f"{kind}_upgrade_cost"]
    if user["coins"] < cost:
        raise GameError(f"Not enough coins: need {cost}, have {user['coins']}")

    rate_key = "coins_per_click" if kind == "click" else "coins_per_sec"
    return {
        "coins": user["coins"] - cost,
        rate_key: user[rate_key] + 1,
        f"{kind}_upgrade_level": user[f"{kind}_upgrade_level"] + 1,
        f"{kind}_upgrade_cost": next_cost(cost),
    }


def passive_income(coins_per_sec: int, elapsed: float, cap_seconds: float) -> int:
    """Coins earned while away, over whole seconds, capped at cap_seconds."""
    if coins_per_sec <= 0 or elapsed <= 0:
        return 0
    seconds = int(min(elapsed, cap_seconds)) if cap_seconds > 0 else int(elapsed)
    return coins_per_sec * seconds


def unlocked_achievements(user: dict, already: set[str]) -> list[Achievement]:
    """Achievements the user qualifies for that aren't in `already`."""
    return [
        a for a in ACHIEVEMENTS
        if a.id not in already and user.get(a.stat, 0) >= a.threshold
    ]


def find_image(image_id: str) -> Image | None:
    for image in IMAGES:
        if image.id == image_id:
            return image
    return None


def validate_transfer(amount, sender: dict, to_username: str) -> int:
    """Check a transfer request and return the amount as an int."""
    if isinstance(amount, bool) or (isinstance(amount, float) and not amount.is_integer()):
        raise GameError("Amount must be a whole number")
    try:
        amount = int(amount)
    except (TypeError, ValueError):
        raise GameError("Amount must be a whole number") from None
    if amount <= 0:
        raise GameError("Enter a positive number of coins")
    if not to_username:
        raise GameError("Recipient username is required")
    if (sender.get("username") or "").lower() == to_username.lower():
        raise GameError("You can't send coins to yourself")
    if sender["coins"] < amount:
        raise GameError("Not enough coins")
    return amount


def normalize_username(raw: str) -> str:
    return (raw or "").strip().lstrip("@")
