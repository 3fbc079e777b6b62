"""SQLite-backed player store.

Every mutating operation runs in one IMMEDIATE transaction, so a click,
upgrade or transfer either fully applies or leaves the database untouched.
Players are addressed by their Telegram user id; internal row ids only link
the side tables.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path

from .game import (
    ACHIEVEMENTS, IMAGES, NEW_PLAYER, GameError, NotOwned, UserNotFound,
    apply_click, apply_upgrade, check_balance_range, find_image, normalize_username,
    passive_income, unlocked_achievements, validate_transfer,
)


log = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id INTEGER NOT NULL UNIQUE,
    username TEXT,
    first_name TEXT,
    last_name TEXT,
    coins INTEGER NOT NULL DEFAULT 0,
    coins_per_click INTEGER NOT NULL DEFAULT 1,
    coins_per_sec INTEGER NOT NULL DEFAULT 0,
    click_upgrade_level INTEGER NOT NULL DEFAULT 1,
    click_upgrade_cost INTEGER NOT NULL DEFAULT 10,
    auto_upgrade_level INTEGER NOT NULL DEFAULT 0,
    auto_upgrade_cost INTEGER NOT NULL DEFAULT 20,
    total_clicks INTEGER NOT NULL DEFAULT 0,
    total_coins_earned INTEGER NOT NULL DEFAULT 0,
    current_image TEXT NOT NULL DEFAULT 'default',
    is_admin INTEGER NOT NULL DEFAULT 0,
    is_banned INTEGER NOT NULL DEFAULT 0,
    banned_reason TEXT,
    last_active REAL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_users_username ON users (username COLLATE NOCASE);
CREATE TABLE IF NOT EXISTS user_images (
    user_id INTEGER NOT NULL REFERENCES users (id),
    image_id TEXT NOT NULL,
    purchased_at REAL NOT NULL,
    PRIMARY KEY (user_id, image_id)
);
CREATE TABLE IF NOT EXISTS user_achievements (
    user_id INTEGER NOT NULL REFERENCES users (id),
    achievement_id TEXT NOT NULL,
    unlocked_at REAL NOT NULL,
    PRIMARY KEY (user_id, achievement_id)
);
CREATE TABLE IF NOT EXISTS transfer_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_user_id INTEGER NOT NULL REFERENCES users (id),
    to_user_id INTEGER NOT NULL REFERENCES users (id),
    amount INTEGER NOT NULL,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS admin_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    admin_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    target_user_id INTEGER,
    details TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS user_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL
);
"""

_BOOL_COLUMNS = ("is_admin", "is_banned")


def _user_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    user = dict(row)
    for key in _BOOL_COLUMNS:
        user[key] = bool(user[key])
    return user


class GameStore:
    def __init__(self, path: Path | str, passive_cap_seconds: float = 3 * 3600, clock=time.time):
        self._conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self.passive_cap_seconds = passive_cap_seconds
        self._clock = clock

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _transaction(self):
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    # --- lookups ---

    def get_user(self, telegram_id: int) -> dict | None:
        row = self._conn.execute(
            "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,),
        ).fetchone()
        return _user_dict(row)

    def get_user_by_username(self, username: str) -> dict | None:
        username = normalize_username(username)
        if not username:
            return None
        row = self._conn.execute(
            "SELECT * FROM users WHERE username = ? COLLATE NOCASE", (username,),
        ).fetchone()
        return _user_dict(row)

    def _require(self, conn, telegram_id: int) -> dict:
        row = conn.execute(
            "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,),
        ).fetchone()
        if row is None:
            raise UserNotFound("User not found")
        return _user_dict(row)

    def _require_username(self, username: str) -> dict:
        user = self.get_user_by_username(username)
        if user is None:
            raise UserNotFound(f"User @{normalize_username(username)} not found")
        return user

    @staticmethod
    def _update(conn, user_id: int, updates: dict) -> None:
        columns = ", ".join(f"{key} = ?" for key in updates)
        conn.execute(
            f"UPDATE users SET {columns} WHERE id = ?", (*updates.values(), user_id),
        )

    def get_or_create_user(
        self, telegram_id: int, username: str = "", first_name: str = "", last_name: str = "",
    ) -> tuple[dict, bool]:
        """Return (user, created). Refreshes the stored profile names."""
        now = self._clock()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,),
            ).fetchone()
            if row is None:
                values = {
                    "telegram_id": telegram_id,
                    "username": username or None,
                    "first_name": first_name or None,
                    "last_name": last_name or None,
                    **NEW_PLAYER,
                    "last_active": now,
                    "created_at": now,
                }
                columns = ", ".join(values)
                marks = ", ".join("?" for _ in values)
                conn.execute(f"INSERT INTO users ({columns}) VALUES ({marks})", tuple(values.values()))
                created = True
                log.info("Registered player %s (@%s)", telegram_id, username or "-")
            else:
                profile = {
                    "username": username or row["username"],
                    "first_name": first_name or row["first_name"],
                    "last_name": last_name or row["last_name"],
                }
                self._update(conn, row["id"], profile)
                created = False
            return self._require(conn, telegram_id), created

    # --- economy ---

    def _accrue(self, conn, user: dict, now: float) -> dict:
        """Credit passive income since last_active and stamp last_active = now."""
        last = user["last_active"]
        earned = passive_income(
            user["coins_per_sec"], now - last if last else 0, self.passive_cap_seconds,
        )
        updates = {"last_active": now}
        if earned:
            updates["coins"] = user["coins"] + earned
            updates["total_coins_earned"] = user["total_coins_earned"] + earned
        self._update(conn, user["id"], updates)
        user.update(updates)
        return user

    def process_passive_income(self, telegram_id: int) -> tuple[dict, int]:
        """Apply offline earnings. Returns (user, coins_earned)."""
        with self._transaction() as conn:
            user = self._require(conn, telegram_id)
            before = user["coins"]
            user = self._accrue(conn, user, self._clock())
            return user, user["coins"] - before

    def click(self, telegram_id: int) -> dict:
        with self._transaction() as conn:
            user = self._accrue(conn, self._require(conn, telegram_id), self._clock())
            self._update(conn, user["id"], apply_click(user))
            return self._require(conn, telegram_id)

    def upgrade(self, telegram_id: int, kind: str) -> dict:
        with self._transaction() as conn:
            user = self._accrue(conn, self._require(conn, telegram_id), self._clock())
            self._update(conn, user["id"], apply_upgrade(user, kind))
            return self._require(conn, telegram_id)

    def transfer_coins(self, from_telegram_id: int, to_username: str, amount) -> tuple[dict, dict, int]:
        """Move coins between players atomically. Returns (sender, recipient, amount)."""
        to_username = normalize_username(to_username)
        now = self._clock()
        with self._transaction() as conn:
            sender = self._accrue(conn, self._require(conn, from_telegram_id), now)
            amount = validate_transfer(amount, sender, to_username)
            row = conn.execute(
                "SELECT * FROM users WHERE username = ? COLLATE NOCASE", (to_username,),
            ).fetchone()
            if row is None:
                raise UserNotFound(f"User @{to_username} not found")
            recipient = _user_dict(row)
            if recipient["id"] == sender["id"]:
                raise GameError("You can't send coins to yourself")
            check_balance_range(recipient["coins"] + amount)

            cur = conn.execute(
                "UPDATE users SET coins = coins - ? WHERE id = ? AND coins >= ?",
                (amount, sender["id"], amount),
            )
            if cur.rowcount != 1:
                raise GameError("Not enough coins")
            conn.execute(
                "UPDATE users SET coins = coins + ? WHERE id = ?", (amount, recipient["id"]),
            )
            conn.execute(
                "INSERT INTO transfer_history (from_user_id, to_user_id, amount, created_at)"
                " VALUES (?, ?, ?, ?)",
                (sender["id"], recipient["id"], amount, now),
            )
            log.info("Transfer %d coins %s -> %s", amount, from_telegram_id, recipient["telegram_id"])
            return (
                self._require(conn, from_telegram_id),
                self._require(conn, recipient["telegram_id"]),
                amount,
            )

    def transfer_history(self, telegram_id: int, limit: int = 20) -> list[dict]:
        rows = self._conn.execute(
            """
            SELECT s.username AS from_username, r.username AS to_username,
                   t.amount, t.created_at
            FROM transfer_history t
            JOIN users s ON s.id = t.from_user_id
            JOIN users r ON r.id = t.to_user_id
            WHERE s.telegram_id = ? OR r.telegram_id = ?
            ORDER BY t.id DESC LIMIT ?
            """,
            (telegram_id, telegram_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def top_players(self, limit: int = 10) -> list[dict]:
        rows = self._conn.execute(
            "SELECT username, coins FROM users WHERE is_banned = 0"
            " ORDER BY coins DESC, id ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    # --- images ---

    @staticmethod
    def list_images() -> list[dict]:
        return [{"id": i.id, "title": i.title, "price": i.price} for i in IMAGES]

    def owned_images(self, telegram_id: int) -> list[str]:
        rows = self._conn.execute(
            "SELECT ui.image_id FROM user_images ui JOIN users u ON u.id = ui.user_id"
            " WHERE u.telegram_id = ? ORDER BY ui.purchased_at",
            (telegram_id,),
        ).fetchall()
        return ["default"] + [r["image_id"] for r in rows if r["image_id"] != "default"]

    def buy_image(self, telegram_id: int, image_id: str) -> dict:
        image = find_image(image_id)
        if image is None:
            raise GameError(f"Unknown image: {image_id}")
        with self._transaction() as conn:
            user = self._accrue(conn, self._require(conn, telegram_id), self._clock())
            if image.price == 0 or conn.execute(
                "SELECT 1 FROM user_images WHERE user_id = ? AND image_id = ?",
                (user["id"], image.id),
            ).fetchone():
                raise GameError("You already own this image")
            if user["coins"] < image.price:
                raise GameError(f"Not enough coins: need {image.price}, have {user['coins']}")
            self._update(conn, user["id"], {"coins": user["coins"] - image.price})
            conn.execute(
                "INSERT INTO user_images (user_id, image_id, purchased_at) VALUES (?, ?, ?)",
                (user["id"], image.id, self._clock()),
            )
            return self._require(conn, telegram_id)

    def select_image(self, telegram_id: int, image_id: str) -> dict:
        if image_id not in self.owned_images(telegram_id):
            if self.get_user(telegram_id) is None:
                raise UserNotFound("User not found")
            raise NotOwned("You do not own this image.")
        with self._transaction() as conn:
            user = self._require(conn, telegram_id)
            self._update(conn, user["id"], {"current_image": image_id})
            return self._require(conn, telegram_id)

    # --- achievements ---

    @staticmethod
    def list_achievements() -> list[dict]:
        return [
            {
                "id": a.id, "title": a.title, "description": a.description,
                "stat": a.stat, "threshold": a.threshold,
            }
            for a in ACHIEVEMENTS
        ]

    def user_achievements(self, telegram_id: int) -> list[dict]:
        rows = self._conn.execute(
            "SELECT ua.achievement_id, ua.unlocked_at FROM user_achievements ua"
            " JOIN users u ON u.id = ua.user_id WHERE u.telegram_id = ?"
            " ORDER BY ua.unlocked_at, ua.achievement_id",
            (telegram_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def check_and_grant_achievements(self, telegram_id: int) -> list[dict]:
        """Grant every newly earned achievement and return those just unlocked."""
        now = self._clock()
        with self._transaction() as conn:
            user = self._require(conn, telegram_id)
            already = {
                r["achievement_id"] for r in conn.execute(
                    "SELECT achievement_id FROM user_achievements WHERE user_id = ?", (user["id"],),
                )
            }
            granted = unlocked_achievements(user, already)
            conn.executemany(
                "INSERT INTO user_achievements (user_id, achievement_id, unlocked_at) VALUES (?, ?, ?)",
                [(user["id"], a.id, now) for a in granted],
            )
        return [{"id": a.id, "title": a.title, "description": a.description} for a in granted]

    # --- administration ---

    def set_banned(self, username: str, banned: bool, reason: str | None = None) -> dict:
        user = self._require_username(username)
        with self._transaction() as conn:
            self._update(conn, user["id"], {
                "is_banned": int(banned),
                "banned_reason": reason if banned else None,
            })
            return self._require(conn, user["telegram_id"])

    def set_coins(self, username: str, amount: int) -> dict:
        if amount < 0:
            raise GameError("Amount can't be negative")
        check_balance_range(amount)
        user = self._require_username(username)
        with self._transaction() as conn:
            self._update(conn, user["id"], {"coins": amount})
            return self._require(conn, user["telegram_id"])

    def add_coins(self, username: str, amount: int) -> dict:
        user = self._require_username(username)
        with self._transaction() as conn:
            user = self._require(conn, user["telegram_id"])
            balance = user["coins"] + amount
            if balance < 0:
                raise GameError("Balance can't go below zero")
            check_balance_range(balance)
            self._update(conn, user["id"], {"coins": balance})
            return self._require(conn, user["telegram_id"])

    def set_admin(self, username: str, is_admin: bool = True) -> dict:
        user = self._require_username(username)
        with self._transaction() as conn:
            self._update(conn, user["id"], {"is_admin": int(is_admin)})
            return self._require(conn, user["telegram_id"])

    def log_admin_action(
        self, admin_id: int, action: str, target_user_id: int | None = None, details: dict | None = None,
    ) -> None:
        self._conn.execute(
            "INSERT INTO admin_logs (admin_id, action, target_user_id, details, created_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (admin_id, action, target_user_id, json.dumps(details or {}), self._clock()),
        )

    def admin_logs(self, limit: int = 10) -> list[dict]:
        rows = self._conn.execute(
            "SELECT * FROM admin_logs ORDER BY id DESC LIMIT ?", (limit,),
        ).fetchall()
        return [{**dict(r), "details": json.loads(r["details"])} for r in rows]

    def log_user_action(self, telegram_id: int, action: str, details: dict | None = None) -> None:
        self._conn.execute(
            "INSERT INTO user_logs (user_id, action, details, created_at) VALUES (?, ?, ?, ?)",
            (telegram_id, action, json.dumps(details or {}), self._clock()),
        )

    def user_logs(self, username: str, limit: int = 10) -> list[dict]:
        user = self._require_username(username)
        rows = self._conn.execute(
            "SELECT * FROM user_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user["telegram_id"], limit),
        ).fetchall()
        return [{**dict(r), "details": json.loads(r["details"])} for r in rows]
