"""Tests for the SQLite leaderboard store."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from _pytest.monkeypatch import MonkeyPatch

from utils import storage
from utils.storage import LeaderboardStore


@pytest.fixture
def store(tmp_path) -> LeaderboardStore:
    leaderboard = LeaderboardStore.in_directory(tmp_path)
    yield leaderboard
    leaderboard.close()


def _play(store: LeaderboardStore, telegram_id: int, name: str, *scores: int) -> None:
    store.upsert_player(telegram_id, name, name.lower())
    for score in scores:
        store.insert_score(telegram_id, score, 1 + score // 10, 2)


def test_database_file_is_created_in_data_dir(tmp_path) -> None:
    leaderboard = LeaderboardStore.in_directory(tmp_path / "nested")
    try:
        assert (tmp_path / "nested" / storage.DB_FILENAME).exists()
    finally:
        leaderboard.close()


def test_upsert_player_inserts_then_updates(store: LeaderboardStore) -> None:
    store.upsert_player(1, "Bert", None)
    store.upsert_player(1, "Bertie", "bertie")

    player = store.get_player(1)

    assert player["first_name"] == "Bertie"
    assert player["username"] == "bertie"
    assert player["coins"] == 0
    assert player["skin"] == "default"
    assert store.get_player(2) is None


def test_missing_first_name_defaults_to_player(store: LeaderboardStore) -> None:
    store.upsert_player(3, None, None)

    assert store.get_player(3)["first_name"] == "Player"


def test_insert_score_credits_coins(store: LeaderboardStore) -> None:
    store.upsert_player(1, "Bert", None)

    store.insert_score(1, 10, 2, 7)
    store.insert_score(1, 4, 1, 0)

    assert store.get_player(1)["coins"] == 7


def test_add_coins_accumulates(store: LeaderboardStore) -> None:
    store.upsert_player(1, "Bert", None)

    store.add_coins(1, 5)
    store.add_coins(1, 3)

    assert store.get_player(1)["coins"] == 8


def test_failed_tournament_write_rolls_back_the_whole_score(store: LeaderboardStore) -> None:
    now = datetime.now(timezone.utc)
    store.create_tournament("live", "Cup", None, now - timedelta(hours=1), now + timedelta(hours=1))
    store.upsert_player(1, "Bert", None)
    store._conn.executescript(
        """
        CREATE TRIGGER reject_tournament_scores BEFORE INSERT ON tournament_scores
        BEGIN SELECT RAISE(ABORT, 'tournament write failed'); END;
        """
    )

    with pytest.raises(sqlite3.DatabaseError):
        store.insert_score(1, 10, 1, 7)

    assert store.get_weekly_leaderboard() == []
    assert store.get_player(1)["coins"] == 0
    assert store.get_tournament_leaderboard("live") == []

    store._conn.execute("DROP TRIGGER reject_tournament_scores")
    store.insert_score(1, 4, 1, 2)

    assert store.get_player_weekly_best(1)["best_score"] == 4
    assert store.get_player(1)["coins"] == 2
    assert store.get_tournament_leaderboard("live")[0]["best_score"] == 4


def test_weekly_leaderboard_uses_best_score_per_player(store: LeaderboardStore) -> None:
    _play(store, 1, "Alice", 5, 30, 12)
    _play(store, 2, "Bob", 25)
    _play(store, 3, "Cara", 40)

    board = store.get_weekly_leaderboard()

    assert [entry["telegram_id"] for entry in board] == [3, 1, 2]
    alice = board[1]
    assert alice["best_score"] == 30
    assert alice["games_played"] == 3
    assert alice["max_level"] == 4
    assert alice["first_name"] == "Alice"
    assert len(store.get_weekly_leaderboard(limit=2)) == 2


def test_player_rank_and_weekly_best(store: LeaderboardStore) -> None:
    _play(store, 1, "Alice", 10)
    _play(store, 2, "Bob", 20)

    assert store.get_player_rank(2) == 1
    assert store.get_player_rank(1) == 2
    assert store.get_player_rank(99) is None
    best = store.get_player_weekly_best(1)
    assert best["best_score"] == 10
    assert best["games_played"] == 1


def test_all_time_stats_span_weeks(store: LeaderboardStore, monkeypatch: MonkeyPatch) -> None:
    store.upsert_player(1, "Alice", None)
    monkeypatch.setattr(storage, "week_start", lambda: "2026-01-05")
    store.insert_score(1, 50, 6, 3)
    monkeypatch.setattr(storage, "week_start", lambda: "2026-01-12")
    store.insert_score(1, 20, 3, 4)

    stats = store.get_all_time_stats(1)

    assert stats["all_time_best"] == 50
    assert stats["total_games"] == 2
    assert stats["total_coins_earned"] == 7
    assert stats["max_level_ever"] == 6
    assert store.get_player_weekly_best(1)["best_score"] == 20


def test_week_entries_include_coin_totals(store: LeaderboardStore, monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setattr(storage, "week_start", lambda: "2026-02-09")
    _play(store, 1, "Alice", 10, 20)
    _play(store, 2, "Bob", 15)

    entries = store.get_week_entries("2026-02-09")

    assert [entry["telegram_id"] for entry in entries] == [1, 2]
    assert entries[0]["total_coins"] == 4
    assert store.get_week_entries("2026-02-16") == []


def test_moderation_removes_scores_and_tracks_bans(store: LeaderboardStore) -> None:
    _play(store, 1, "Alice", 10, 20)
    _play(store, 2, "Bob", 15)

    assert store.remove_player_week_scores(1) == 2
    assert [entry["telegram_id"] for entry in store.get_weekly_leaderboard()] == [2]
    assert store.remove_all_player_scores(2) == 1
    assert store.get_weekly_leaderboard() == []

    assert store.is_banned(1) is False
    store.ban_player(1, "speedhack")
    assert store.is_banned(1) is True
    store.unban_player(1)
    assert store.is_banned(1) is False


def test_active_tournament_receives_scores(store: LeaderboardStore) -> None:
    now = datetime.now(timezone.utc)
    store.create_tournament("live", "Spring Cup", "Acme", now - timedelta(hours=1), now + timedelta(hours=1))
    store.create_tournament("past", "Old Cup", None, now - timedelta(days=3), now - timedelta(days=2))
    _play(store, 1, "Alice", 10, 30)
    _play(store, 2, "Bob", 20)

    active = store.get_active_tournaments()
    board = store.get_tournament_leaderboard("live")

    assert [item["id"] for item in active] == ["live"]
    assert [entry["telegram_id"] for entry in board] == [1, 2]
    assert board[0]["best_score"] == 30
    assert store.get_tournament_leaderboard("past") == []
    assert store.get_tournament_player_rank("live", 2) == 2
    assert {item["id"] for item in store.get_all_tournaments()} == {"live", "past"}
    assert store.get_tournament("live")["sponsor"] == "Acme"


def test_tournament_score_removal(store: LeaderboardStore) -> None:
    store.create_tournament("cup", "Cup", None, "2026-01-01T00:00:00Z", "2026-01-02T00:00:00Z")
    store.upsert_player(1, "Alice", None)
    store.upsert_player(2, "Bob", None)
    store.submit_tournament_score("cup", 1, 10, 1, 0)
    store.submit_tournament_score("cup", 2, 12, 1, 0)

    assert store.remove_tournament_scores(1, "cup") == 1
    assert [entry["telegram_id"] for entry in store.get_tournament_leaderboard("cup")] == [2]
    assert store.reset_tournament_scores("cup") == 1
    assert store.get_tournament_leaderboard("cup") == []
