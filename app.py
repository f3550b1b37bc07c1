"""FastAPI application entrypoint for the Flappy Bert bot and game API."""

from __future__ import annotations

import asyncio
import base64
import binascii
import html
import os
import re
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from functools import partial, wraps
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, User, WebAppInfo, constants
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)
from telegram.request import HTTPXRequest

from utils.archive import (
    ARCHIVE_CHECK_INTERVAL,
    archive_if_due,
    archive_path,
    archive_week,
    is_valid_week,
    list_archives,
)
from utils.gateway import ScoreGateway, SessionOwnershipError, SubmissionResult
from utils.logging_config import configure_logging, get_logger, logging_context
from utils.render import render_leaderboard_card, render_player_card, render_tournament_card
from utils.sessions import SESSION_RETENTION_SECONDS, SESSION_SWEEP_INTERVAL, SessionStore
from utils.storage import LeaderboardStore
from utils.validators import ScoreClaim, ValidationConfig
from utils.weeks import reset_countdown, week_label, week_start

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = get_logger("app")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


DEFAULT_WEBAPP_URL = "https://your-domain.com/flappy_bert.html"


@dataclass(slots=True)
class Settings:
    """Container for application environment variables."""

    telegram_bot_token: str
    public_url: str
    webhook_secret: str
    webhook_path: str = "/webhook"
    webhook_check_interval: int = 300
    webapp_url: str = DEFAULT_WEBAPP_URL
    api_secret: str = ""
    admin_id: Optional[int] = None
    data_dir: str = "."
    session_retention_seconds: int = SESSION_RETENTION_SECONDS
    session_sweep_interval: int = SESSION_SWEEP_INTERVAL

    @property
    def archive_dir(self) -> Path:
        return Path(self.data_dir) / "archives"


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s provided, defaulting to %s: %s", name, default, raw)
        return default
    return max(value, minimum)


def _default_data_dir() -> str:
    return "/data" if os.path.isdir("/data") else os.getcwd()


def load_settings() -> Settings:
    """Load and validate required settings from environment variables."""

    required_vars = {
        "TELEGRAM_BOT_TOKEN": os.getenv("TELEGRAM_BOT_TOKEN"),
        "PUBLIC_URL": os.getenv("PUBLIC_URL"),
        "WEBHOOK_SECRET": os.getenv("WEBHOOK_SECRET"),
    }

    missing = [name for name, value in required_vars.items() if not value]
    if missing:
        logger.critical("Missing required environment variables: %s", ", ".join(missing))
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    webhook_path = os.getenv("WEBHOOK_PATH", "/webhook") or "/webhook"
    if not webhook_path.startswith("/"):
        webhook_path = f"/{webhook_path}"

    admin_id_raw = os.getenv("ADMIN_ID")
    admin_id: Optional[int] = None
    if admin_id_raw:
        try:
            admin_id = int(admin_id_raw)
        except ValueError:
            logger.warning("Invalid ADMIN_ID provided, ignoring value: %s", admin_id_raw)

    api_secret = os.getenv("API_SECRET", "")
    if not api_secret:
        logger.warning("API_SECRET is not set, score endpoints accept unauthenticated requests")

    settings = Settings(
        telegram_bot_token=required_vars["TELEGRAM_BOT_TOKEN"],
        public_url=required_vars["PUBLIC_URL"].rstrip("/"),
        webhook_secret=required_vars["WEBHOOK_SECRET"],
        webhook_path=webhook_path,
        webhook_check_interval=_int_env("WEBHOOK_CHECK_INTERVAL", 300, minimum=60),
        webapp_url=os.getenv("WEBAPP_URL", DEFAULT_WEBAPP_URL),
        api_secret=api_secret,
        admin_id=admin_id,
        data_dir=os.getenv("DATA_DIR") or _default_data_dir(),
        session_retention_seconds=_int_env("SESSION_RETENTION_SECONDS", SESSION_RETENTION_SECONDS),
        session_sweep_interval=_int_env("SESSION_SWEEP_INTERVAL", SESSION_SWEEP_INTERVAL),
    )
    logger.debug(
        "Loaded settings: public_url=%s webhook_path=%s data_dir=%s",
        settings.public_url,
        settings.webhook_path,
        settings.data_dir,
    )
    return settings


# ---------------------------------------------------------------------------
# FastAPI application and shared state
# ---------------------------------------------------------------------------


app = FastAPI()


class AppState:
    """Shared state container for the FastAPI application."""

    def __init__(self) -> None:
        self.settings: Optional[Settings] = None
        self.telegram_app: Optional[Application] = None
        self.leaderboard: Optional[LeaderboardStore] = None
        self.sessions: SessionStore = SessionStore()
        self.gateway: Optional[ScoreGateway] = None
        self.webhook_task: Optional[asyncio.Task[None]] = None
        self.sweep_task: Optional[asyncio.Task[None]] = None
        self.archive_task: Optional[asyncio.Task[None]] = None
        self.last_archived_week: Optional[str] = None
        self.started_at: float = time.monotonic()


state = AppState()


def get_telegram_application() -> Application:
    if state.telegram_app is None:
        logger.error("Telegram application is not initialized")
        raise HTTPException(status_code=503, detail="Telegram application is not initialized")
    return state.telegram_app


def get_leaderboard() -> LeaderboardStore:
    if state.leaderboard is None:
        logger.error("Leaderboard store is not initialized")
        raise HTTPException(status_code=503, detail="Leaderboard store is not initialized")
    return state.leaderboard


def get_gateway() -> ScoreGateway:
    if state.gateway is None:
        logger.error("Score gateway is not initialized")
        raise HTTPException(status_code=503, detail="Score gateway is not initialized")
    return state.gateway


def get_settings() -> Settings:
    if state.settings is None:
        logger.error("Application settings are not available")
        raise HTTPException(status_code=503, detail="Application settings unavailable")
    return state.settings


def require_api_secret(request: Request) -> None:
    """Reject requests without the shared ``X-Api-Secret`` when one is configured."""

    secret = state.settings.api_secret if state.settings else ""
    if secret and request.headers.get("x-api-secret") != secret:
        logger.warning("Rejected request to %s with invalid API secret", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


def _webapp_url() -> str:
    return state.settings.webapp_url if state.settings else DEFAULT_WEBAPP_URL


def _archive_dir() -> Path:
    return get_settings().archive_dir


async def _run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


def command_entrypoint(fallback=None):
    """Decorator for bot handlers providing logging context and error handling."""

    def decorator(func):
        @wraps(func)
        async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
            user = update.effective_user if update else None
            with logging_context(player_id=user.id if user else None):
                try:
                    return await func(update, context, *args, **kwargs)
                except Exception:  # noqa: BLE001 - ensure all exceptions are logged
                    logger.exception("Unhandled error in handler %s", getattr(func, "__name__", "<unknown>"))
                    message = update.effective_message if update else None
                    if message is not None:
                        await message.reply_text("❌ Something went wrong. Try again later.")
                    return fallback

        return wrapper

    return decorator


def register_webhook_route(path: str) -> None:
    """Register the webhook endpoint for the configured path."""

    router = app.router
    for route in list(router.routes):
        if getattr(route, "endpoint", None) is telegram_webhook:
            logger.debug("Removing existing webhook route bound to %s", getattr(route, "path", "<unknown>"))
            router.routes.remove(route)

    logger.debug("Registering webhook route at path %s", path)
    router.add_api_route(path, telegram_webhook, methods=["POST"], name="telegram_webhook")


# ---------------------------------------------------------------------------
# Shared leaderboard helpers
# ---------------------------------------------------------------------------


LEADERBOARD_CALLBACK = "show_leaderboard"
CARD_ENTRIES = 50


def _play_keyboard(text: str = "🎮 Play Flappy Bert") -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton(text, web_app=WebAppInfo(url=_webapp_url()))]])


def _user_display_name(user: User | None) -> str:
    if user is None:
        return "Player"
    return user.first_name or (f"@{user.username}" if user.username else str(user.id))


def _remember_user(store: LeaderboardStore, user: User | None) -> None:
    if user is None:
        return
    store.upsert_player(user.id, user.first_name, user.username)


async def _leaderboard_png(store: LeaderboardStore, highlight_id: Optional[int]) -> bytes:
    entries = store.get_weekly_leaderboard(CARD_ENTRIES)
    return await _run_blocking(
        render_leaderboard_card,
        entries,
        highlight_id=highlight_id,
        reset_in=reset_countdown(),
        week_label=week_label(),
    )


def _player_snapshot(store: LeaderboardStore, telegram_id: int) -> Optional[dict[str, Any]]:
    player = store.get_player(telegram_id)
    if player is None:
        return None
    weekly = store.get_player_weekly_best(telegram_id)
    all_time = store.get_all_time_stats(telegram_id)
    return {
        "player": player,
        "weekly": weekly,
        "rank": store.get_player_rank(telegram_id),
        "all_time": all_time,
        "card_stats": {
            "best_score": weekly.get("best_score") or 0,
            "games_played": weekly.get("games_played") or 0,
            "max_level": weekly.get("max_level") or 0,
            "all_time_best": all_time.get("all_time_best") or 0,
        },
    }


def _parse_timestamp(value: str) -> Optional[float]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except (AttributeError, ValueError):
        return None


def _format_duration(seconds: float) -> str:
    seconds = max(int(seconds), 0)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    return f"{days}d {hours}h {rest // 60}m"


def _tournament_ends_in(tournament: dict[str, Any]) -> Optional[str]:
    ends_at = _parse_timestamp(tournament.get("end_time", ""))
    if ends_at is None:
        return None
    return _format_duration(ends_at - time.time())


def _rejection_payload(result: SubmissionResult) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": False, "error": "Score rejected"}
    reason = result.public_reason()
    if reason:
        payload["reason"] = reason
    return payload


# ---------------------------------------------------------------------------
# Telegram handlers
# ---------------------------------------------------------------------------


WELCOME_TEXT = (
    "🐕 <b>Welcome to Flappy Bert!</b>\n\n"
    "Hey {name}! Ready to flap?\n\n"
    "Tap to fly Bert through endless pipes, rack up combos, and earn coins. "
    "Climb the weekly leaderboard and unlock skins in the shop.\n\n"
    "🏆 Weekly leaderboards reset every Monday\n"
    "🎁 Regular Flap to Earn tournaments\n\n"
    "Hit the button below to jump in 👇"
)

HELP_TEXT = (
    "🐕 <b>Flappy Bert Commands</b>\n\n"
    "🎮 /play  Launch the game\n"
    "🏆 /leaderboard  Weekly top 50 card\n"
    "📊 /mystats  Your personal stats card\n"
    "📁 /history  Past weekly leaderboard CSVs\n"
    "❓ /help  This message\n\n"
    "<b>How it works:</b>\n"
    "• Tap to make Bert flap through pipes\n"
    "• Earn coins per pipe cleared plus level bonuses\n"
    "• Difficulty increases every 10 pipes\n"
    "• Leaderboard resets every Monday 00:00 UTC"
)


@command_entrypoint()
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    user = update.effective_user
    if message is None:
        return
    _remember_user(get_leaderboard(), user)
    await message.reply_text(
        WELCOME_TEXT.format(name=html.escape(_user_display_name(user))),
        parse_mode=constants.ParseMode.HTML,
        reply_markup=_play_keyboard(),
    )


@command_entrypoint()
async def play_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return
    await message.reply_text("🎮 Tap below to play!", reply_markup=_play_keyboard("🐕 Launch Flappy Bert"))


@command_entrypoint()
async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return
    await message.reply_text(HELP_TEXT, parse_mode=constants.ParseMode.HTML)


@command_entrypoint()
async def leaderboard_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    user = update.effective_user
    if message is None:
        return
    photo = await _leaderboard_png(get_leaderboard(), user.id if user else None)
    caption = (
        "🏆 <b>Weekly Leaderboard</b>\n"
        f"📅 {html.escape(week_label())}\n"
        f"⏱ Resets in {reset_countdown()}\n\n"
        "Use /play to compete!"
    )
    await message.reply_photo(photo=photo, caption=caption, parse_mode=constants.ParseMode.HTML)


@command_entrypoint()
async def mystats_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None:
        return
    store = get_leaderboard()
    _remember_user(store, user)
    snapshot = _player_snapshot(store, user.id)
    if snapshot is None:
        await message.reply_text("Play a round first with /play!")
        return
    photo = await _run_blocking(
        render_player_card, snapshot["player"], snapshot["card_stats"], snapshot["rank"]
    )
    rank = snapshot["rank"]
    caption = (
        f"📊 <b>Stats for {html.escape(snapshot['player']['first_name'])}</b>\n"
        f"🏅 Weekly Rank: {f'#{rank}' if rank else 'Unranked'}\n"
        f"🪙 Coins: {snapshot['player'].get('coins') or 0}\n\n"
        "Use /play to improve your score!"
    )
    await message.reply_photo(photo=photo, caption=caption, parse_mode=constants.ParseMode.HTML)


@command_entrypoint()
async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return
    archive_dir = _archive_dir()
    archives = list_archives(archive_dir)
    if not archives:
        await message.reply_text(
            "📁 No archived leaderboards yet. Archives are saved each Monday at reset."
        )
        return

    latest = archives[0]
    weeks = "\n".join(f"• {item['week']}" for item in archives)
    await message.reply_text(
        "📁 <b>Archived Leaderboards</b>\n\n"
        f"Sending most recent: <code>{latest['week']}</code>\n\n"
        f"{len(archives)} total archive(s):\n{weeks}",
        parse_mode=constants.ParseMode.HTML,
    )
    path = archive_path(archive_dir, latest["week"])
    if path is not None:
        with path.open("rb") as handle:
            await message.reply_document(document=handle, filename=latest["filename"])


def _is_admin(user: User | None) -> bool:
    settings = state.settings
    return bool(user and settings and settings.admin_id is not None and user.id == settings.admin_id)


def _parse_target(args: list[str]) -> Optional[int]:
    if not args:
        return None
    try:
        return int(args[0])
    except ValueError:
        return None


@command_entrypoint()
async def ban_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not _is_admin(update.effective_user):
        return
    args = list(context.args or [])
    target = _parse_target(args)
    if target is None:
        await message.reply_text("Usage: /ban <telegram_id> [reason]")
        return
    reason = " ".join(args[1:]) or None
    store = get_leaderboard()
    store.ban_player(target, reason)
    removed = store.remove_player_week_scores(target)
    await message.reply_text(f"🚫 Banned {target}, removed {removed} score(s) from this week.")


@command_entrypoint()
async def unban_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not _is_admin(update.effective_user):
        return
    target = _parse_target(list(context.args or []))
    if target is None:
        await message.reply_text("Usage: /unban <telegram_id>")
        return
    get_leaderboard().unban_player(target)
    await message.reply_text(f"✅ Unbanned {target}.")


@command_entrypoint()
async def wipe_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not _is_admin(update.effective_user):
        return
    args = list(context.args or [])
    target = _parse_target(args)
    week = args[1] if len(args) > 1 else None
    if target is None or (week is not None and not is_valid_week(week)):
        await message.reply_text("Usage: /wipe <telegram_id> [YYYY-MM-DD]")
        return
    removed = get_leaderboard().remove_player_week_scores(target, week)
    await message.reply_text(f"🧹 Removed {removed} score(s) for {target} in week {week or week_start()}.")


@command_entrypoint()
async def web_app_data_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None or message.web_app_data is None:
        return

    try:
        game = GameResult.model_validate_json(message.web_app_data.data)
    except ValidationError as exc:
        logger.warning(
            "Malformed web app payload from %s (%s error(s)): %r",
            user.id,
            exc.error_count(),
            message.web_app_data.data,
        )
        await message.reply_text("⚠️ Could not read your game result.")
        return
    session_id = game.session_id
    claim = game.to_claim()

    store = get_leaderboard()
    if store.is_banned(user.id):
        logger.info("Ignoring web app score from banned player %s", user.id)
        return
    _remember_user(store, user)

    try:
        result = get_gateway().submit(user.id, session_id, claim)
    except SessionOwnershipError:
        await message.reply_text("⚠️ This game session belongs to another player.")
        return

    if not result.accepted:
        await message.reply_text(
            "⚠️ Your score could not be verified and was not recorded.",
            reply_markup=_play_keyboard("🔄 Play Again"),
        )
        return

    lines = [
        "🎮 <b>Game Over!</b>",
        "",
        f"📊 Score: <b>{claim.score}</b>",
        f"📈 Level: {claim.level}",
        f"🪙 Coins earned: +{claim.coins_earned}",
    ]
    if result.rank:
        lines.append(f"🏅 You're #{result.rank} this week!")
    lines += ["", "Use /leaderboard to see the rankings!"]
    keyboard = InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("🔄 Play Again", web_app=WebAppInfo(url=_webapp_url())),
                InlineKeyboardButton("🏆 Leaderboard", callback_data=LEADERBOARD_CALLBACK),
            ]
        ]
    )
    await message.reply_text("\n".join(lines), parse_mode=constants.ParseMode.HTML, reply_markup=keyboard)


async def show_leaderboard_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None:
        return
    await query.answer()
    user = update.effective_user
    with logging_context(player_id=user.id if user else None):
        if query.message is None:
            return
        try:
            photo = await _leaderboard_png(get_leaderboard(), user.id if user else None)
            await context.bot.send_photo(
                chat_id=query.message.chat.id,
                photo=photo,
                caption=f"🏆 Weekly Leaderboard. Resets in {reset_countdown()}",
            )
        except Exception:  # noqa: BLE001 - callback failures must not crash the dispatcher
            logger.exception("Failed to send leaderboard from callback")


def configure_telegram_handlers(telegram_application: Application) -> None:
    telegram_application.add_handler(CommandHandler("start", start_command))
    telegram_application.add_handler(CommandHandler("play", play_command))
    telegram_application.add_handler(CommandHandler("leaderboard", leaderboard_command))
    telegram_application.add_handler(CommandHandler("mystats", mystats_command))
    telegram_application.add_handler(CommandHandler("history", history_command))
    telegram_application.add_handler(CommandHandler("help", help_command))
    telegram_application.add_handler(CommandHandler("ban", ban_command))
    telegram_application.add_handler(CommandHandler("unban", unban_command))
    telegram_application.add_handler(CommandHandler("wipe", wipe_command))
    telegram_application.add_handler(
        MessageHandler(filters.StatusUpdate.WEB_APP_DATA, web_app_data_handler)
    )
    telegram_application.add_handler(
        CallbackQueryHandler(show_leaderboard_callback, pattern=fr"^{LEADERBOARD_CALLBACK}$")
    )


# ---------------------------------------------------------------------------
# Webhook monitoring
# ---------------------------------------------------------------------------


ALLOWED_UPDATES = ["message", "callback_query"]


async def monitor_webhook(application: Application, settings: Settings) -> None:
    """Background task to periodically ensure webhook registration is valid."""

    logger.debug("Starting webhook monitor task with interval %s seconds", settings.webhook_check_interval)
    expected_url = f"{settings.public_url}{settings.webhook_path}"
    while True:
        try:
            info = await application.bot.get_webhook_info()
            logger.debug("Current webhook info: url=%s, pending=%s", info.url, info.pending_update_count)
            if info.url != expected_url:
                logger.warning("Webhook mismatch detected. Expected url=%s got %s", expected_url, info.url)
                await _set_webhook(application, settings)
                logger.info("Webhook re-registered due to mismatch")
        except Exception:  # noqa: BLE001 - We want to log all failures
            logger.exception("Failed to validate or reset webhook")

        await asyncio.sleep(settings.webhook_check_interval)


# ---------------------------------------------------------------------------
# Periodic maintenance
# ---------------------------------------------------------------------------


async def sweep_sessions_periodically(app_state: AppState, interval: int) -> None:
    """Drop expired play sessions, once at startup and then every ``interval`` seconds."""

    logger.debug("Starting session sweep task with interval %s seconds", interval)
    while True:
        try:
            expired = app_state.sessions.sweep()
            if expired:
                logger.info("Removed %s expired sessions (%s live)", len(expired), len(app_state.sessions))
        except Exception:  # noqa: BLE001 - log any sweep issues
            logger.exception("Session sweep task encountered an error")

        await asyncio.sleep(interval)


async def archive_periodically(app_state: AppState, interval: int = ARCHIVE_CHECK_INTERVAL) -> None:
    """Snapshot the weekly leaderboard shortly before the Monday reset."""

    logger.debug("Starting auto-archive task with interval %s seconds", interval)
    while True:
        try:
            if app_state.leaderboard is not None and app_state.settings is not None:
                app_state.last_archived_week = archive_if_due(
                    app_state.leaderboard,
                    app_state.settings.archive_dir,
                    app_state.last_archived_week,
                )
        except Exception:  # noqa: BLE001 - log any archive issues
            logger.exception("Auto-archive task encountered an error")

        await asyncio.sleep(interval)


async def _cancel_task(task: Optional[asyncio.Task[None]], name: str) -> None:
    if task is None:
        return
    logger.debug("Cancelling %s task", name)
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    logger.debug("FastAPI startup initiated")

    settings = load_settings()
    state.settings = settings
    state.started_at = time.monotonic()

    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    settings.archive_dir.mkdir(parents=True, exist_ok=True)
    state.leaderboard = LeaderboardStore.in_directory(settings.data_dir)
    state.sessions = SessionStore(retention_ms=settings.session_retention_seconds * 1000)
    state.gateway = ScoreGateway(state.sessions, state.leaderboard, ValidationConfig.from_env())
    logger.info("Current week %s, reset in %s", week_start(), reset_countdown())

    logger.debug("Building Telegram application")
    telegram_application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .request(HTTPXRequest())
        .updater(None)
        .build()
    )

    configure_telegram_handlers(telegram_application)

    await telegram_application.initialize()
    logger.info("Telegram application initialized")

    await telegram_application.start()
    logger.info("Telegram application started")

    state.telegram_app = telegram_application

    register_webhook_route(settings.webhook_path)
    await _set_webhook(telegram_application, settings)
    logger.info("Webhook configured at %s%s", settings.public_url, settings.webhook_path)

    state.webhook_task = asyncio.create_task(monitor_webhook(telegram_application, settings))
    state.sweep_task = asyncio.create_task(
        sweep_sessions_periodically(state, settings.session_sweep_interval)
    )
    state.archive_task = asyncio.create_task(archive_periodically(state))

    try:
        yield
    finally:
        logger.debug("FastAPI shutdown initiated")

        await _cancel_task(state.archive_task, "auto-archive")
        state.archive_task = None
        await _cancel_task(state.sweep_task, "session sweep")
        state.sweep_task = None
        await _cancel_task(state.webhook_task, "webhook monitor")
        state.webhook_task = None

        if state.telegram_app:
            logger.debug("Shutting down Telegram application")

            if getattr(state.telegram_app, "running", False):
                logger.debug("Stopping Telegram application")
                await state.telegram_app.stop()

            await state.telegram_app.shutdown()
            state.telegram_app = None
            logger.info("Telegram application shut down")

        state.gateway = None
        if state.leaderboard is not None:
            state.leaderboard.close()
            state.leaderboard = None


app.router.lifespan_context = app_lifespan


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SessionRequest(BaseModel):
    telegram_id: int = Field(..., gt=0)
    first_name: Optional[str] = Field(None, max_length=64)
    username: Optional[str] = Field(None, max_length=64)


class GameResult(BaseModel):
    """Result of one run as sent by the mini app; camelCase keys are accepted."""

    session_id: str = Field(
        ..., min_length=1, max_length=128, validation_alias=AliasChoices("session_id", "sessionId")
    )
    score: int = Field(..., ge=0)
    level: int = Field(1, ge=1)
    coins_earned: int = Field(0, ge=0, validation_alias=AliasChoices("coins_earned", "coinsEarned"))
    frame_count: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("frame_count", "frameCount")
    )
    duration_ms: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("duration_ms", "durationMs")
    )

    def to_claim(self) -> ScoreClaim:
        return ScoreClaim(
            score=self.score,
            level=self.level,
            coins_earned=self.coins_earned,
            frame_count=self.frame_count,
            duration_ms=self.duration_ms,
        )


class ScoreSubmission(GameResult):
    telegram_id: int = Field(..., gt=0)
    first_name: Optional[str] = Field(None, max_length=64)
    username: Optional[str] = Field(None, max_length=64)


class ShareRequest(BaseModel):
    telegram_id: int = Field(..., gt=0)
    image_base64: str = Field(..., min_length=1)
    score: Optional[int] = None
    caption: Optional[str] = Field(None, max_length=1024)


_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/healthz")
async def healthz() -> JSONResponse:
    logger.debug("Health check requested")
    return JSONResponse(
        {
            "status": "ok",
            "uptime": round(time.monotonic() - state.started_at, 1),
            "sessions": len(state.sessions),
            "week": week_start(),
        }
    )


@app.post("/api/session", dependencies=[Depends(require_api_secret)])
async def create_session(
    payload: SessionRequest,
    store: LeaderboardStore = Depends(get_leaderboard),
    gateway: ScoreGateway = Depends(get_gateway),
) -> JSONResponse:
    if store.is_banned(payload.telegram_id):
        raise HTTPException(status_code=403, detail="Player is banned")
    store.upsert_player(payload.telegram_id, payload.first_name, payload.username)
    ticket = gateway.start_session(payload.telegram_id)
    return JSONResponse(ticket.to_dict())


@app.post("/api/score", dependencies=[Depends(require_api_secret)])
async def submit_score(
    payload: ScoreSubmission,
    store: LeaderboardStore = Depends(get_leaderboard),
    gateway: ScoreGateway = Depends(get_gateway),
) -> JSONResponse:
    if store.is_banned(payload.telegram_id):
        raise HTTPException(status_code=403, detail="Player is banned")
    store.upsert_player(payload.telegram_id, payload.first_name, payload.username)

    try:
        result = gateway.submit(payload.telegram_id, payload.session_id, payload.to_claim())
    except SessionOwnershipError as exc:
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=403)

    if not result.accepted:
        return JSONResponse(_rejection_payload(result), status_code=400)
    return JSONResponse({"ok": True, "rank": result.rank, "week_start": result.week_start})


@app.get("/api/leaderboard")
async def leaderboard(
    limit: int = Query(20, ge=1, le=100),
    store: LeaderboardStore = Depends(get_leaderboard),
) -> JSONResponse:
    return JSONResponse(
        {
            "week": week_start(),
            "reset_in": reset_countdown(),
            "entries": store.get_weekly_leaderboard(limit),
        }
    )


@app.get("/api/leaderboard/image")
async def leaderboard_image(
    highlight: Optional[int] = Query(None),
    store: LeaderboardStore = Depends(get_leaderboard),
) -> Response:
    png = await _leaderboard_png(store, highlight)
    return Response(png, media_type="image/png", headers={"Cache-Control": "public, max-age=60"})


@app.get("/api/player/{telegram_id}")
async def player_stats(
    telegram_id: int,
    store: LeaderboardStore = Depends(get_leaderboard),
) -> JSONResponse:
    snapshot = _player_snapshot(store, telegram_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Player not found")
    return JSONResponse(
        {
            "player": snapshot["player"],
            "weekly": snapshot["weekly"],
            "rank": snapshot["rank"],
            "all_time": snapshot["all_time"],
        }
    )


@app.get("/api/player/{telegram_id}/card")
async def player_card(
    telegram_id: int,
    store: LeaderboardStore = Depends(get_leaderboard),
) -> Response:
    snapshot = _player_snapshot(store, telegram_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Player not found")
    png = await _run_blocking(
        render_player_card, snapshot["player"], snapshot["card_stats"], snapshot["rank"]
    )
    return Response(png, media_type="image/png")


@app.post("/api/share")
async def share_score(
    payload: ShareRequest,
    telegram_application: Application = Depends(get_telegram_application),
) -> JSONResponse:
    encoded = _DATA_URL_PREFIX.sub("", payload.image_base64)
    try:
        image = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="image_base64 is not valid base64") from exc

    caption = payload.caption or (
        f"🐕 Flappy Bert Score: {payload.score if payload.score is not None else '?'}\n\n"
        f"🎮 Can you beat me?\n🔗 Play now: {_webapp_url()}"
    )
    try:
        await telegram_application.bot.send_photo(
            chat_id=payload.telegram_id,
            photo=image,
            caption=caption,
            parse_mode=constants.ParseMode.HTML,
        )
    except TelegramError as exc:
        logger.exception("Failed to share score image with %s", payload.telegram_id)
        raise HTTPException(status_code=500, detail="Failed to send image") from exc
    return JSONResponse({"ok": True})


@app.get("/api/tournaments")
async def tournaments(store: LeaderboardStore = Depends(get_leaderboard)) -> JSONResponse:
    active_ids = {item["id"] for item in store.get_active_tournaments()}
    items = [
        {**item, "active": item["id"] in active_ids} for item in store.get_all_tournaments()
    ]
    return JSONResponse({"tournaments": items})


def _load_tournament(store: LeaderboardStore, tournament_id: str) -> dict[str, Any]:
    tournament = store.get_tournament(tournament_id)
    if tournament is None:
        raise HTTPException(status_code=404, detail="Tournament not found")
    return tournament


@app.get("/api/tournaments/{tournament_id}/leaderboard")
async def tournament_leaderboard(
    tournament_id: str,
    limit: int = Query(50, ge=1, le=100),
    store: LeaderboardStore = Depends(get_leaderboard),
) -> JSONResponse:
    tournament = _load_tournament(store, tournament_id)
    return JSONResponse(
        {
            "tournament": tournament,
            "ends_in": _tournament_ends_in(tournament),
            "entries": store.get_tournament_leaderboard(tournament_id, limit),
        }
    )


@app.get("/api/tournaments/{tournament_id}/image")
async def tournament_image(
    tournament_id: str,
    highlight: Optional[int] = Query(None),
    store: LeaderboardStore = Depends(get_leaderboard),
) -> Response:
    tournament = _load_tournament(store, tournament_id)
    png = await _run_blocking(
        render_tournament_card,
        store.get_tournament_leaderboard(tournament_id, CARD_ENTRIES),
        name=tournament["name"],
        sponsor=tournament.get("sponsor"),
        ends_in=_tournament_ends_in(tournament),
        highlight_id=highlight,
    )
    return Response(png, media_type="image/png")


@app.get("/api/archives")
async def archives() -> JSONResponse:
    return JSONResponse({"archives": list_archives(_archive_dir())})


@app.get("/api/archives/{week}")
async def download_archive(week: str) -> FileResponse:
    path = archive_path(_archive_dir(), week)
    if path is None:
        raise HTTPException(status_code=404, detail="Archive not found")
    return FileResponse(path, media_type="text/csv", filename=path.name)


@app.post("/api/archive-now", dependencies=[Depends(require_api_secret)])
async def archive_now(store: LeaderboardStore = Depends(get_leaderboard)) -> JSONResponse:
    result = archive_week(store, _archive_dir())
    if result is None:
        return JSONResponse({"ok": False, "message": "No scores to archive"})
    return JSONResponse(
        {
            "ok": True,
            "filename": result.filename,
            "player_count": result.player_count,
            "already_exists": result.already_exists,
        }
    )


async def telegram_webhook(
    request: Request,
    telegram_application: Application = Depends(get_telegram_application),
) -> JSONResponse:
    settings = get_settings()

    secret_header = request.headers.get("X-Telegram-Bot-Api-Secret-Token")
    if secret_header != settings.webhook_secret:
        logger.warning("Webhook secret mismatch from %s", request.client.host if request.client else "-")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        payload = await request.json()
        logger.debug("Received webhook payload: %s", payload)
        update = Update.de_json(payload, telegram_application.bot)
    except Exception as exc:  # noqa: BLE001 - we need to report deserialization errors
        logger.exception("Failed to deserialize Telegram update")
        raise HTTPException(status_code=400, detail="Invalid update payload") from exc

    try:
        await telegram_application.process_update(update)
    except Exception as exc:  # noqa: BLE001 - log any processing errors
        logger.exception("Failed to process Telegram update")
        raise HTTPException(status_code=500, detail="Failed to process update") from exc
    logger.debug("Update processed successfully")
    return JSONResponse({"ok": True})


async def _set_webhook(telegram_application: Application, settings: Settings) -> None:
    expected_url = f"{settings.public_url}{settings.webhook_path}"
    logger.debug("Setting webhook to %s", expected_url)
    await telegram_application.bot.set_webhook(
        url=expected_url,
        secret_token=settings.webhook_secret,
        allowed_updates=ALLOWED_UPDATES,
    )


@app.get("/set_webhook")
async def set_webhook(
    telegram_application: Application = Depends(get_telegram_application),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    await _set_webhook(telegram_application, settings)
    return JSONResponse({"status": "webhook set"})


@app.get("/reset_webhook")
async def reset_webhook(
    telegram_application: Application = Depends(get_telegram_application),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    logger.debug("Deleting current webhook before reconfiguration")
    await telegram_application.bot.delete_webhook(drop_pending_updates=False)
    await _set_webhook(telegram_application, settings)
    return JSONResponse({"status": "webhook reset"})


__all__ = ["app"]
