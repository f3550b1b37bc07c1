"""Tests for Telegram handler configuration and bot flows."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.ext import CallbackQueryHandler, CommandHandler, MessageHandler

import app
from utils.gateway import ScoreGateway
from utils.sessions import SessionStore
from utils.storage import LeaderboardStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, start: int = 1_000_000) -> None:
        self.value = start

    def __call__(self) -> int:
        return self.value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wired_state(monkeypatch: pytest.MonkeyPatch, clock: FakeClock, tmp_path):
    store = LeaderboardStore(":memory:")
    sessions = SessionStore(clock=clock)
    monkeypatch.setattr(app.state, "leaderboard", store)
    monkeypatch.setattr(app.state, "sessions", sessions)
    monkeypatch.setattr(app.state, "gateway", ScoreGateway(sessions, store))
    monkeypatch.setattr(
        app.state,
        "settings",
        app.Settings(
            telegram_bot_token="token",
            public_url="https://example.test",
            webhook_secret="secret",
            admin_id=1,
            data_dir=str(tmp_path),
        ),
    )
    yield app.state
    store.close()


def _update(user_id: int = 42, *, web_app_data: str | None = None):
    message = MagicMock()
    message.reply_text = AsyncMock()
    message.reply_photo = AsyncMock()
    message.reply_document = AsyncMock()
    message.web_app_data = SimpleNamespace(data=web_app_data) if web_app_data is not None else None
    user = SimpleNamespace(id=user_id, first_name="Bert", username="bert")
    return SimpleNamespace(effective_message=message, effective_user=user, callback_query=None)


def _context(*args: str):
    return SimpleNamespace(args=list(args), bot=MagicMock())


def test_configure_handlers_registers_commands_and_web_app_data() -> None:
    telegram_application = MagicMock()

    app.configure_telegram_handlers(telegram_application)

    handlers = [call.args[0] for call in telegram_application.add_handler.call_args_list]
    commands = {
        command
        for handler in handlers
        if isinstance(handler, CommandHandler)
        for command in handler.commands
    }
    assert {"start", "play", "leaderboard", "mystats", "history", "help", "ban", "unban", "wipe"} <= commands
    assert any(
        isinstance(handler, MessageHandler) and handler.callback is app.web_app_data_handler
        for handler in handlers
    )
    assert any(
        isinstance(handler, CallbackQueryHandler) and handler.callback is app.show_leaderboard_callback
        for handler in handlers
    )


@pytest.mark.anyio
async def test_web_app_score_with_valid_session_is_recorded(wired_state, clock: FakeClock) -> None:
    ticket = wired_state.gateway.start_session(42)
    clock.value += 10_000
    payload = json.dumps(
        {"session_id": ticket.session_id, "score": 12, "level": 2, "coinsEarned": 4, "frameCount": 600, "durationMs": 10_000}
    )
    update = _update(web_app_data=payload)

    await app.web_app_data_handler(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "Game Over" in text
    assert "#1" in text
    assert wired_state.leaderboard.get_player_weekly_best(42)["best_score"] == 12
    assert wired_state.leaderboard.get_player(42)["coins"] == 4


@pytest.mark.anyio
async def test_web_app_score_without_session_is_malformed(wired_state) -> None:
    update = _update(web_app_data=json.dumps({"score": 12, "level": 2}))

    await app.web_app_data_handler(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "Could not read" in text
    assert wired_state.leaderboard.get_weekly_leaderboard() == []


@pytest.mark.anyio
async def test_web_app_score_with_unknown_session_is_not_recorded(wired_state) -> None:
    update = _update(web_app_data=json.dumps({"sessionId": "nope", "score": 12, "level": 2}))

    await app.web_app_data_handler(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "not recorded" in text
    assert wired_state.leaderboard.get_weekly_leaderboard() == []


@pytest.mark.anyio
@pytest.mark.parametrize(
    "fields",
    [
        {"score": -7},
        {"score": 5, "coinsEarned": -500},
        {"score": 5, "level": -3},
        {"score": 5, "level": 0},
        {"score": 5, "frameCount": -1},
        {"score": 5, "durationMs": -1},
    ],
)
async def test_web_app_score_with_out_of_range_values_is_malformed(
    wired_state, clock: FakeClock, fields: dict
) -> None:
    ticket = wired_state.gateway.start_session(42)
    clock.value += 10_000
    update = _update(web_app_data=json.dumps({"session_id": ticket.session_id, **fields}))

    await app.web_app_data_handler(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "Could not read" in text
    assert wired_state.leaderboard.get_weekly_leaderboard() == []
    assert wired_state.leaderboard.get_player(42) is None
    assert wired_state.sessions.get(ticket.session_id).consumed is False


@pytest.mark.anyio
async def test_web_app_score_with_foreign_session_is_refused(wired_state, clock: FakeClock) -> None:
    ticket = wired_state.gateway.start_session(7)
    clock.value += 10_000
    update = _update(web_app_data=json.dumps({"session_id": ticket.session_id, "score": 5}))

    await app.web_app_data_handler(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "another player" in text
    assert wired_state.sessions.get(ticket.session_id).consumed is False


@pytest.mark.anyio
async def test_malformed_web_app_payload_is_reported(wired_state) -> None:
    update = _update(web_app_data="{not json")

    await app.web_app_data_handler(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "Could not read" in text


@pytest.mark.anyio
async def test_leaderboard_command_sends_png(wired_state) -> None:
    wired_state.leaderboard.upsert_player(42, "Bert", None)
    wired_state.leaderboard.insert_score(42, 10, 1, 0)
    update = _update()

    await app.leaderboard_command(update, _context())

    kwargs = update.effective_message.reply_photo.await_args.kwargs
    assert kwargs["photo"].startswith(b"\x89PNG")
    assert "Weekly Leaderboard" in kwargs["caption"]


@pytest.mark.anyio
async def test_mystats_command_sends_player_card(wired_state) -> None:
    update = _update()

    await app.mystats_command(update, _context())

    kwargs = update.effective_message.reply_photo.await_args.kwargs
    assert kwargs["photo"].startswith(b"\x89PNG")
    assert "Unranked" in kwargs["caption"]


@pytest.mark.anyio
async def test_history_without_archives(wired_state) -> None:
    update = _update()

    await app.history_command(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "No archived leaderboards" in text


@pytest.mark.anyio
async def test_ban_command_requires_admin(wired_state) -> None:
    update = _update(user_id=42)

    await app.ban_command(update, _context("77"))

    update.effective_message.reply_text.assert_not_awaited()
    assert wired_state.leaderboard.is_banned(77) is False


@pytest.mark.anyio
async def test_admin_can_ban_and_unban(wired_state) -> None:
    wired_state.leaderboard.upsert_player(77, "Cheater", None)
    wired_state.leaderboard.insert_score(77, 400, 1, 0)

    await app.ban_command(_update(user_id=1), _context("77", "speed", "hack"))

    assert wired_state.leaderboard.is_banned(77) is True
    assert wired_state.leaderboard.get_weekly_leaderboard() == []

    await app.unban_command(_update(user_id=1), _context("77"))

    assert wired_state.leaderboard.is_banned(77) is False


@pytest.mark.anyio
async def test_banned_player_web_app_score_is_ignored(wired_state, clock: FakeClock) -> None:
    wired_state.leaderboard.ban_player(42, "cheating")
    ticket = wired_state.gateway.start_session(42)
    clock.value += 10_000
    update = _update(web_app_data=json.dumps({"session_id": ticket.session_id, "score": 5}))

    await app.web_app_data_handler(update, _context())

    update.effective_message.reply_text.assert_not_awaited()
    assert wired_state.leaderboard.get_weekly_leaderboard() == []


@pytest.mark.anyio
async def test_handler_errors_are_reported_to_user(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app.state, "leaderboard", None)
    update = _update()

    await app.start_command(update, _context())

    text = update.effective_message.reply_text.await_args.args[0]
    assert "Something went wrong" in text
