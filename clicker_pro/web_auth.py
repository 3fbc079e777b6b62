"""Telegram Mini App initData HMAC-SHA256 validation.

Validates the initData string sent by the Telegram WebApp SDK and extracts
the signed user identity. Pure functions, no I/O.

Reference: https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
"""

import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import parse_qsl


class AuthError(Exception):
    """Base class for rejected initData. Never retried."""


class MissingHash(AuthError):
    pass


class MissingUser(AuthError):
    pass


class MalformedEncoding(AuthError):
    pass


class InvalidSignature(AuthError):
    pass


class MalformedIdentity(AuthError):
    pass


class ExpiredInitData(AuthError):
    pass


_BAD_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")


@dataclass(frozen=True)
class WebAppUser:
    id: int
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    language_code: str = ""
    raw: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> "WebAppUser":
        return cls(
            id=data["id"],
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            username=data.get("username") or "",
            language_code=data.get("language_code") or "",
            raw=data,
        )


@dataclass(frozen=True)
class InitData:
    """Verified initData: the signed user plus every other signed field."""
    user: WebAppUser
    fields: dict[str, str]

    @property
    def auth_date(self) -> int | None:
        try:
            return int(self.fields["auth_date"])
        except (KeyError, ValueError):
            return None


def verify_init_data(
    init_data: str, bot_token: str, max_age_seconds: int = 0,
) -> InitData:
    """Verify a Telegram initData string and return the signed identity.

    Raises an AuthError subclass describing the first failed check. Expiry
    is only enforced when max_age_seconds is positive.
    """
    if not bot_token:
        raise ValueError("bot_token is required")

    params = parse_init_data(init_data)

    received_hash = params.pop("hash", "")
    if not received_hash:
        raise MissingHash("missing hash")

    if "user" not in params:
        raise MissingUser("missing user")

    data_check_string = _build_data_check_string(params)
    expected_hash = _compute_hmac(bot_token, data_check_string)

    # str compare_digest rejects non-ASCII input with TypeError
    if not hmac.compare_digest(received_hash.encode(), expected_hash.encode()):
        raise InvalidSignature("invalid signature")

    if max_age_seconds > 0:
        _check_auth_date(params.get("auth_date", ""), max_age_seconds)

    try:
        user = json.loads(params["user"])
    except json.JSONDecodeError as e:
        raise MalformedIdentity(f"invalid user JSON: {e}") from e

    if not isinstance(user, dict):
        raise MalformedIdentity("user is not an object")
    user_id = user.get("id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise MalformedIdentity("missing user id")

    return InitData(user=WebAppUser.from_dict(user), fields=params)


def parse_init_data(init_data: str) -> dict[str, str]:
    """Parse the initData query string into a flat dict.

    Strict: every field must be key=value, escapes must be valid UTF-8 and
    keys must be unique.
    """
    if not init_data:
        raise MalformedEncoding("empty init data")
    if _BAD_PERCENT.search(init_data):
        raise MalformedEncoding("invalid percent escape")

    try:
        pairs = parse_qsl(
            init_data, keep_blank_values=True, strict_parsing=True, errors="strict",
        )
    except ValueError as e:
        raise MalformedEncoding(str(e)) from e

    result = {}
    for key, value in pairs:
        if key in result:
            raise MalformedEncoding(f"duplicate field: {key!r}")
        result[key] = value
    return result


def _check_auth_date(raw: str, max_age_seconds: int) -> None:
    try:
        auth_date = int(raw)
    except ValueError:
        raise MalformedIdentity("invalid auth_date") from None
    if time.time() - auth_date > max_age_seconds:
        raise ExpiredInitData("expired")


def _build_data_check_string(params: dict[str, str]) -> str:
    """Build the sorted newline-separated data-check-string for HMAC."""
    return "\n".join(f"{k}={v}" for k, v in sorted(params.items()))


@lru_cache(maxsize=8)
def _secret_key(bot_token: str) -> bytes:
    """Derive the signing key: HMAC-SHA256("WebAppData", bot_token)."""
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def _compute_hmac(bot_token: str, data_check_string: str) -> str:
    """Compute the hex HMAC-SHA256 of the check string with the derived key."""
    return hmac.new(
        _secret_key(bot_token), data_check_string.encode(), hashlib.sha256,
    ).hexdigest()
