from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_INIT_DATA_HEADER = "Telegram-Init-Data"


@dataclass
class Config:
    telegram_token: str
    webapp_url: str = ""
    admin_users: set[int] = field(default_factory=set)
    notify_chat_id: int | None = None
    api_port: int = 0
    cors_origin: str = "*"
    init_data_header: str = DEFAULT_INIT_DATA_HEADER
    init_data_max_age: int = 0
    database: Path = Path("clicker.db")
    passive_income_cap_hours: float = 3.0
    top_limit: int = 10

    @property
    def passive_cap_seconds(self) -> float:
        return self.passive_income_cap_hours * 3600


def _parse_user_ids(raw: str) -> set[int]:
    """Parse comma-separated user IDs into a set."""
    return set(int(x) for x in raw.split(",") if x.strip())


def load_config(config) -> Config:
    """Build a Config from a parsed configparser object."""
    telegram = config["TELEGRAM"] if config.has_section("TELEGRAM") else {}
    api = config["API"] if config.has_section("API") else {}
    game = config["GAME"] if config.has_section("GAME") else {}

    telegram_token = telegram.get("bot_token", "").strip()
    if not telegram_token:
        raise ValueError("Missing required setting: [TELEGRAM] bot_token")

    admins = telegram.get("admin_users", "").strip()
    notify = telegram.get("notify_chat_id", "").strip()

    return Config(
        telegram_token=telegram_token,
        webapp_url=telegram.get("webapp_url", "").strip(),
        admin_users=_parse_user_ids(admins) if admins else set(),
        notify_chat_id=int(notify) if notify else None,
        api_port=int(api.get("port", "0").strip() or "0"),
        cors_origin=api.get("cors_origin", "*").strip() or "*",
        init_data_header=api.get("init_data_header", "").strip() or DEFAULT_INIT_DATA_HEADER,
        init_data_max_age=int(api.get("init_data_max_age", "0").strip() or "0"),
        database=Path(game.get("database", "clicker.db").strip() or "clicker.db"),
        passive_income_cap_hours=float(game.get("passive_income_cap_hours", "3").strip() or "3"),
        top_limit=int(game.get("top_limit", "10").strip() or "10"),
    )


def is_admin(config: Config, user: dict | None, telegram_id: int) -> bool:
    """Admins come from config.ini (global) or the stored is_admin flag."""
    if telegram_id in config.admin_users:
        return True
    return bool(user and user.get("is_admin"))
