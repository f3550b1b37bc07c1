"""SQLite storage for players, weekly scores, tournaments and bans."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from utils.logging_config import get_logger
from utils.weeks import week_start

logger = get_logger("storage")

DB_FILENAME = "flappy_bert.db"
RANK_SCAN_LIMIT = 1000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS players (
  telegram_id   INTEGER PRIMARY KEY,
  username      TEXT,
  first_name    TEXT NOT NULL DEFAULT 'Player',
  skin          TEXT DEFAULT 'default',
  coins         INTEGER DEFAULT 0,
  created_at    TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS scores (
  id            INTEGER PRIMARY KEY AUTOINCREMENT,
  telegram_id   INTEGER NOT NULL,
  score         INTEGER NOT NULL,
  level         INTEGER DEFAULT 1,
  coins_earned  INTEGER DEFAULT 0,
  week_start    TEXT NOT NULL,
  played_at     TEXT DEFAULT (datetime('now')),
  FOREIGN KEY (telegram_id) REFERENCES players(telegram_id)
);

CREATE INDEX IF NOT EXISTS idx_scores_week
  ON scores(week_start, score DESC);

CREATE INDEX IF NOT EXISTS idx_scores_player
  ON scores(telegram_id, week_start);

CREATE TABLE IF NOT EXISTS tournaments (
  id            TEXT PRIMARY KEY,
  name          TEXT NOT NULL,
  sponsor       TEXT,
  start_time    TEXT NOT NULL,
  end_time      TEXT NOT NULL,
  status        TEXT DEFAULT 'scheduled',
  created_at    TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tournament_scores (
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  tournament_id   TEXT NOT NULL,
  telegram_id     INTEGER NOT NULL,
  score           INTEGER NOT NULL,
  level           INTEGER DEFAULT 1,
  coins_earned    INTEGER DEFAULT 0,
  played_at       TEXT DEFAULT (datetime('now')),
  FOREIGN KEY (tournament_id) REFERENCES tournaments(id),
  FOREIGN KEY (telegram_id) REFERENCES players(telegram_id)
);

CREATE TABLE IF NOT EXISTS banned_players (
  telegram_id   INTEGER PRIMARY KEY,
  reason        TEXT,
  banned_at     TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_tscore_tournament
  ON tournament_scores(tournament_id, score DESC);
"""

_BOARD_COLUMNS = """
      p.telegram_id,
      p.first_name,
      p.username,
      p.skin,
      MAX(s.score) AS best_score,
      COUNT(s.id)  AS games_played,
      MAX(s.level) AS max_level
"""

_ADD_COINS = "UPDATE players SET coins = coins + ? WHERE telegram_id = ?"


def _ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _utc_iso(value: datetime | None = None) -> str:
    current = value or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class _Result:
    rows: list[Dict[str, Any]]
    rowcount: int


def _rows(result: _Result) -> list[Dict[str, Any]]:
    return result.rows


def _row(result: _Result) -> Optional[Dict[str, Any]]:
    return result.rows[0] if result.rows else None


def _rank_in(entries: Iterable[Dict[str, Any]], telegram_id: int) -> Optional[int]:
    for index, entry in enumerate(entries, start=1):
        if entry["telegram_id"] == telegram_id:
            return index
    return None


class LeaderboardStore:
    """Thin wrapper around a single SQLite connection.

    Every public method takes ``_lock`` so the store can be shared between
    the event loop and worker threads.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            _ensure_directory(Path(self.path).parent)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        logger.info("Leaderboard database ready at %s", self.path)

    @classmethod
    def in_directory(cls, data_dir: str | Path) -> "LeaderboardStore":
        return cls(Path(data_dir) / DB_FILENAME)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug("Closed leaderboard database %s", self.path)

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> _Result:
        with self._lock:
            cursor = self._conn.execute(sql, tuple(params))
            rows = [dict(row) for row in cursor.fetchall()]
            self._conn.commit()
            return _Result(rows=rows, rowcount=cursor.rowcount)

    # ------------------------------------------------------------------ players

    def upsert_player(self, telegram_id: int, first_name: str | None, username: str | None) -> None:
        self._execute(
            """
            INSERT INTO players (telegram_id, first_name, username)
            VALUES (?, ?, ?)
            ON CONFLICT(telegram_id) DO UPDATE SET
              first_name = excluded.first_name,
              username   = excluded.username
            """,
            (telegram_id, first_name or "Player", username or None),
        )

    def get_player(self, telegram_id: int) -> Optional[Dict[str, Any]]:
        return _row(self._execute("SELECT * FROM players WHERE telegram_id = ?", (telegram_id,)))

    def add_coins(self, telegram_id: int, amount: int) -> None:
        self._execute(_ADD_COINS, (amount, telegram_id))

    # ------------------------------------------------------------------ scores

    def insert_score(self, telegram_id: int, score: int, level: int, coins_earned: int) -> None:
        """Record a run for the current week and every running tournament."""

        week = week_start()
        now = _utc_iso()
        # One transaction: a failure leaves neither the score nor the coins behind.
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO scores (telegram_id, score, level, coins_earned, week_start)
                VALUES (?, ?, ?, ?, ?)
                """,
                (telegram_id, score, level, coins_earned, week),
            )
            if coins_earned > 0:
                self._conn.execute(_ADD_COINS, (coins_earned, telegram_id))
            self._conn.execute(
                """
                INSERT INTO tournament_scores (tournament_id, telegram_id, score, level, coins_earned)
                SELECT id, ?, ?, ?, ? FROM tournaments
                WHERE start_time <= ? AND end_time >= ?
                """,
                (telegram_id, score, level, coins_earned, now, now),
            )
        logger.debug("Stored score %s for player %s in week %s", score, telegram_id, week)

    def get_weekly_leaderboard(self, limit: int = 20, week: str | None = None) -> list[Dict[str, Any]]:
        return _rows(
            self._execute(
                f"""
                SELECT {_BOARD_COLUMNS}
                FROM scores s
                JOIN players p ON p.telegram_id = s.telegram_id
                WHERE s.week_start = ?
                GROUP BY s.telegram_id
                ORDER BY best_score DESC
                LIMIT ?
                """,
                (week or week_start(), limit),
            )
        )

    def get_week_entries(self, week: str) -> list[Dict[str, Any]]:
        """All players of ``week`` with coin totals, best first (used for archives)."""

        return _rows(
            self._execute(
                f"""
                SELECT {_BOARD_COLUMNS},
                  SUM(s.coins_earned) AS total_coins
                FROM scores s
                JOIN players p ON p.telegram_id = s.telegram_id
                WHERE s.week_start = ?
                GROUP BY s.telegram_id
                ORDER BY best_score DESC
                """,
                (week,),
            )
        )

    def get_player_weekly_best(self, telegram_id: int) -> Dict[str, Any]:
        row = _row(
            self._execute(
                """
                SELECT MAX(score) AS best_score, COUNT(*) AS games_played, MAX(level) AS max_level
                FROM scores
                WHERE telegram_id = ? AND week_start = ?
                """,
                (telegram_id, week_start()),
            )
        )
        return row or {"best_score": None, "games_played": 0, "max_level": None}

    def get_player_rank(self, telegram_id: int) -> Optional[int]:
        return _rank_in(self.get_weekly_leaderboard(RANK_SCAN_LIMIT), telegram_id)

    def get_all_time_stats(self, telegram_id: int) -> Dict[str, Any]:
        row = _row(
            self._execute(
                """
                SELECT
                  MAX(score)        AS all_time_best,
                  COUNT(*)          AS total_games,
                  SUM(coins_earned) AS total_coins_earned,
                  MAX(level)        AS max_level_ever
                FROM scores
                WHERE telegram_id = ?
                """,
                (telegram_id,),
            )
        )
        return row or {"all_time_best": None, "total_games": 0}

    # ------------------------------------------------------------------ tournaments

    def create_tournament(
        self,
        tournament_id: str,
        name: str,
        sponsor: str | None,
        start_time: datetime | str,
        end_time: datetime | str,
    ) -> None:
        start = start_time if isinstance(start_time, str) else _utc_iso(start_time)
        end = end_time if isinstance(end_time, str) else _utc_iso(end_time)
        self._execute(
            """
            INSERT OR IGNORE INTO tournaments (id, name, sponsor, start_time, end_time)
            VALUES (?, ?, ?, ?, ?)
            """,
            (tournament_id, name, sponsor, start, end),
        )

    def get_tournament(self, tournament_id: str) -> Optional[Dict[str, Any]]:
        return _row(self._execute("SELECT * FROM tournaments WHERE id = ?", (tournament_id,)))

    def get_active_tournaments(self, now: datetime | None = None) -> list[Dict[str, Any]]:
        current = _utc_iso(now)
        return _rows(
            self._execute(
                "SELECT * FROM tournaments WHERE start_time <= ? AND end_time >= ?",
                (current, current),
            )
        )

    def get_all_tournaments(self) -> list[Dict[str, Any]]:
        return _rows(self._execute("SELECT * FROM tournaments ORDER BY start_time DESC"))

    def submit_tournament_score(
        self, tournament_id: str, telegram_id: int, score: int, level: int, coins_earned: int
    ) -> None:
        self._execute(
            """
            INSERT INTO tournament_scores (tournament_id, telegram_id, score, level, coins_earned)
            VALUES (?, ?, ?, ?, ?)
            """,
            (tournament_id, telegram_id, score, level, coins_earned),
        )

    def get_tournament_leaderboard(self, tournament_id: str, limit: int = 50) -> list[Dict[str, Any]]:
        return _rows(
            self._execute(
                """
                SELECT
                  p.telegram_id,
                  p.first_name,
                  p.username,
                  p.skin,
                  MAX(ts.score) AS best_score,
                  COUNT(ts.id)  AS games_played,
                  MAX(ts.level) AS max_level
                FROM tournament_scores ts
                JOIN players p ON p.telegram_id = ts.telegram_id
                WHERE ts.tournament_id = ?
                GROUP BY ts.telegram_id
                ORDER BY best_score DESC
                LIMIT ?
                """,
                (tournament_id, limit),
            )
        )

    def get_tournament_player_rank(self, tournament_id: str, telegram_id: int) -> Optional[int]:
        return _rank_in(self.get_tournament_leaderboard(tournament_id, RANK_SCAN_LIMIT), telegram_id)

    # ------------------------------------------------------------------ moderation

    def remove_player_week_scores(self, telegram_id: int, week: str | None = None) -> int:
        result = self._execute(
            "DELETE FROM scores WHERE telegram_id = ? AND week_start = ?",
            (telegram_id, week or week_start()),
        )
        return result.rowcount

    def remove_all_player_scores(self, telegram_id: int) -> int:
        return self._execute("DELETE FROM scores WHERE telegram_id = ?", (telegram_id,)).rowcount

    def remove_tournament_scores(self, telegram_id: int, tournament_id: str) -> int:
        result = self._execute(
            "DELETE FROM tournament_scores WHERE telegram_id = ? AND tournament_id = ?",
            (telegram_id, tournament_id),
        )
        return result.rowcount

    def reset_tournament_scores(self, tournament_id: str) -> int:
        result = self._execute(
            "DELETE FROM tournament_scores WHERE tournament_id = ?", (tournament_id,)
        )
        return result.rowcount

    def ban_player(self, telegram_id: int, reason: str | None = None) -> None:
        self._execute(
            "INSERT OR REPLACE INTO banned_players (telegram_id, reason) VALUES (?, ?)",
            (telegram_id, reason or "cheating"),
        )
        logger.info("Banned player %s: %s", telegram_id, reason or "cheating")

    def unban_player(self, telegram_id: int) -> None:
        self._execute("DELETE FROM banned_players WHERE telegram_id = ?", (telegram_id,))
        logger.info("Unbanned player %s", telegram_id)

    def is_banned(self, telegram_id: int) -> bool:
        return _row(self._execute("SELECT 1 AS banned FROM banned_players WHERE telegram_id = ?", (telegram_id,))) is not None


__all__ = [
    "DB_FILENAME",
    "LeaderboardStore",
]
