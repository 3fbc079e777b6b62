"""HTTP API for the Telegram Mini App.

Provides endpoints for the clicker Mini App: player state, clicks,
upgrades, transfers, images and achievements. Uses aiohttp.

Authentication is via Telegram initData HMAC validation. Every rejected
initData gets the same 401 body; the reason only goes to the log.
"""

import json
import logging
import time

from aiohttp import web

from .config import Config
from .game import UPGRADE_KINDS, GameError, NotOwned, UserNotFound
from .storage import GameStore
from .web_auth import AuthError, InitData, verify_init_data


log = logging.getLogger(__name__)

PUBLIC_PATHS = {"/api/health", "/api/top"}

UNAUTHORIZED = {"error": "unauthorized"}


def _extract_init_data(request: web.Request) -> str:
    """Read the raw initData from the configured header or `Authorization: tma ...`."""
    config: Config = request.app["config"]
    raw = request.headers.get(config.init_data_header, "")
    if raw:
        return raw
    auth = request.headers.get("Authorization", "")
    if auth.startswith("tma "):
        return auth[4:]
    return ""


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _game_error_response(e: GameError) -> web.Response:
    if isinstance(e, UserNotFound):
        return _error(str(e), 404)
    if isinstance(e, NotOwned):
        return _error(str(e), 403)
    return _error(str(e), 400)


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid JSON body"}), content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}), content_type="application/json",
        )
    return body


def _player_id(request: web.Request) -> int:
    init_data: InitData = request["init_data"]
    return init_data.user.id


def _require_player(request: web.Request) -> dict:
    """Look up the authenticated player; 404 if unknown, 403 if banned."""
    store: GameStore = request.app["store"]
    user = store.get_user(_player_id(request))
    if user is None:
        raise web.HTTPNotFound(
            text=json.dumps({"error": "User not found"}), content_type="application/json",
        )
    if user["is_banned"]:
        raise web.HTTPForbidden(
            text=json.dumps({"error": "banned"}), content_type="application/json",
        )
    return user


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/health — simple health check, no auth required."""
    return web.json_response({"status": "ok", "time": int(time.time())})


async def handle_top(request: web.Request) -> web.Response:
    """GET /api/top — leaderboard, no auth required."""
    config: Config = request.app["config"]
    store: GameStore = request.app["store"]
    return web.json_response(store.top_players(config.top_limit))


async def handle_user(request: web.Request) -> web.Response:
    """GET /api/user — load (or register) the player and settle passive income."""
    store: GameStore = request.app["store"]
    init_data: InitData = request["init_data"]
    tg_user = init_data.user

    user, created = store.get_or_create_user(
        tg_user.id, tg_user.username, tg_user.first_name, tg_user.last_name,
    )
    if created:
        store.log_user_action(tg_user.id, "register", {"via": "webapp"})
    if user["is_banned"]:
        return _error("banned", 403)

    user, earned = store.process_passive_income(tg_user.id)
    new_achievements = store.check_and_grant_achievements(tg_user.id)
    return web.json_response({
        **user,
        "passive_income_earned": earned,
        "newly_unlocked_achievements": new_achievements,
    })


async def handle_click(request: web.Request) -> web.Response:
    """POST /api/click — register one click."""
    store: GameStore = request.app["store"]
    player = _require_player(request)
    user = store.click(player["telegram_id"])
    new_achievements = store.check_and_grant_achievements(player["telegram_id"])
    return web.json_response({**user, "newly_unlocked_achievements": new_achievements})


async def handle_upgrade(request: web.Request) -> web.Response:
    """POST /api/upgrade/{kind} — buy one level of the click or auto upgrade."""
    kind = request.match_info["kind"]
    if kind not in UPGRADE_KINDS:
        return _error(f"Unknown upgrade: {kind}", 404)

    store: GameStore = request.app["store"]
    player = _require_player(request)
    try:
        user = store.upgrade(player["telegram_id"], kind)
    except GameError as e:
        return _game_error_response(e)

    store.log_user_action(player["telegram_id"], f"upgrade_{kind}", {
        "level": user[f"{kind}_upgrade_level"],
    })
    new_achievements = store.check_and_grant_achievements(player["telegram_id"])
    return web.json_response({**user, "newly_unlocked_achievements": new_achievements})


async def handle_transfer(request: web.Request) -> web.Response:
    """POST /api/transfer — send coins to another player.

    Body: {"toUsername": "alice", "amount": 100}
    """
    store: GameStore = request.app["store"]
    player = _require_player(request)
    body = await _read_json(request)

    try:
        sender, recipient, amount = store.transfer_coins(
            player["telegram_id"], str(body.get("toUsername") or ""), body.get("amount"),
        )
    except GameError as e:
        return _game_error_response(e)

    store.log_user_action(player["telegram_id"], "transfer", {
        "to": recipient["username"], "amount": amount,
    })
    return web.json_response({
        "message": f"Successfully sent {amount} coins to @{recipient['username']}!",
        "updatedSender": sender,
    })


async def handle_images(request: web.Request) -> web.Response:
    """GET /api/images — catalogue, owned images and the selected one."""
    store: GameStore = request.app["store"]
    player = _require_player(request)
    return web.json_response({
        "allImages": store.list_images(),
        "userImages": store.owned_images(player["telegram_id"]),
        "currentImageId": player["current_image"],
    })


async def handle_buy_image(request: web.Request) -> web.Response:
    """POST /api/images/buy — purchase an image. Body: {"imageId": "golden"}"""
    store: GameStore = request.app["store"]
    player = _require_player(request)
    body = await _read_json(request)
    image_id = str(body.get("imageId") or "")
    try:
        user = store.buy_image(player["telegram_id"], image_id)
    except GameError as e:
        return _game_error_response(e)
    store.log_user_action(player["telegram_id"], "buy_image", {"image": image_id})
    return web.json_response(user)


async def handle_select_image(request: web.Request) -> web.Response:
    """POST /api/images/select — switch to an owned image. Body: {"imageId": "golden"}"""
    store: GameStore = request.app["store"]
    player = _require_player(request)
    body = await _read_json(request)
    try:
        user = store.select_image(player["telegram_id"], str(body.get("imageId") or ""))
    except GameError as e:
        return _game_error_response(e)
    return web.json_response(user)


async def handle_achievements(request: web.Request) -> web.Response:
    """GET /api/achievements — catalogue plus the player's unlocked ones."""
    store: GameStore = request.app["store"]
    player = _require_player(request)
    return web.json_response({
        "allAchievements": store.list_achievements(),
        "userAchievements": store.user_achievements(player["telegram_id"]),
    })


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.Response:
    """Verify initData on every non-public route and stash it on the request."""
    if request.method == "OPTIONS" or request.path in PUBLIC_PATHS:
        return await handler(request)
    # Unmatched routes fall through to their 404/405 unauthenticated
    if request.match_info.http_exception is not None:
        return await handler(request)

    config: Config = request.app["config"]
    raw = _extract_init_data(request)
    if not raw:
        log.info("Auth rejected for %s: no init data", request.path)
        return web.json_response(UNAUTHORIZED, status=401)

    try:
        request["init_data"] = verify_init_data(
            raw, config.telegram_token, max_age_seconds=config.init_data_max_age,
        )
    except AuthError as e:
        log.info("Auth rejected for %s: %s", request.path, type(e).__name__)
        return web.json_response(UNAUTHORIZED, status=401)

    init_data = request["init_data"]
    log.debug("Authenticated %s for %s (auth_date %s)", init_data.user.id, request.path, init_data.auth_date)
    return await handler(request)


def _add_cors_headers(request: web.Request, response) -> None:
    allowed_origin = request.app.get("cors_origin", "*")
    response.headers["Access-Control-Allow-Origin"] = allowed_origin
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = (
        f"Authorization, Content-Type, {request.app['config'].init_data_header}"
    )


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.Response:
    """Add CORS headers for the Mini App frontend."""
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            _add_cors_headers(request, e)
            raise
    _add_cors_headers(request, response)
    return response


@web.middleware
async def logging_middleware(request: web.Request, handler) -> web.Response:
    """Log all incoming requests."""
    start = time.time()
    try:
        response = await handler(request)
        elapsed = (time.time() - start) * 1000
        log.info("%s %s -> %d (%.0fms)", request.method, request.path, response.status, elapsed)
        return response
    except web.HTTPException as e:
        elapsed = (time.time() - start) * 1000
        log.info("%s %s -> %d (%.0fms)", request.method, request.path, e.status, elapsed)
        raise
    except Exception as e:
        elapsed = (time.time() - start) * 1000
        log.exception("%s %s -> ERROR: %s (%.0fms)", request.method, request.path, e, elapsed)
        raise


def create_web_app(config: Config, store: GameStore) -> web.Application:
    """Create and configure the aiohttp web application."""
    app = web.Application(middlewares=[logging_middleware, cors_middleware, auth_middleware])
    app["config"] = config
    app["store"] = store
    app["cors_origin"] = config.cors_origin

    app.router.add_get("/api/health", handle_health)
    app.router.add_get("/api/top", handle_top)
    app.router.add_get("/api/user", handle_user)
    app.router.add_post("/api/click", handle_click)
    app.router.add_post("/api/upgrade/{kind}", handle_upgrade)
    app.router.add_post("/api/transfer", handle_transfer)
    app.router.add_get("/api/images", handle_images)
    app.router.add_post("/api/images/buy", handle_buy_image)
    app.router.add_post("/api/images/select", handle_select_image)
    app.router.add_get("/api/achievements", handle_achievements)

    return app
