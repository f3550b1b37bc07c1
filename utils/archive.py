"""CSV snapshots of finished weekly leaderboards."""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from utils.logging_config import get_logger
from utils.weeks import time_until_reset, week_start

logger = get_logger("archive")

ARCHIVE_HEADER = (
    "rank",
    "telegram_id",
    "player_name",
    "username",
    "best_score",
    "games_played",
    "max_level",
    "total_coins",
    "skin",
)
ARCHIVE_WINDOW = timedelta(minutes=30)
ARCHIVE_CHECK_INTERVAL = 600

_WEEK_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FILENAME_RE = re.compile(r"^leaderboard-(\d{4}-\d{2}-\d{2})\.csv$")


class WeekEntrySource(Protocol):
    def get_week_entries(self, week: str) -> list[Dict[str, Any]]:
        ...


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    filepath: Path
    filename: str
    player_count: int
    already_exists: bool = False


def archive_filename(week: str) -> str:
    return f"leaderboard-{week}.csv"


def is_valid_week(week: str) -> bool:
    return bool(_WEEK_RE.match(week or ""))


def _clean_name(value: Any) -> str:
    return str(value or "").replace(",", "")


def archive_week(
    store: WeekEntrySource, archive_dir: str | Path, week: str | None = None
) -> Optional[ArchiveResult]:
    """Write the leaderboard of ``week`` (default: current week) to CSV.

    Existing archives are never overwritten. Returns ``None`` when nobody
    played that week.
    """

    week = week or week_start()
    if not is_valid_week(week):
        raise ValueError(f"Invalid week: {week!r}")

    directory = Path(archive_dir)
    directory.mkdir(parents=True, exist_ok=True)
    filename = archive_filename(week)
    filepath = directory / filename

    if filepath.exists():
        logger.info("Archive for week %s already exists at %s", week, filepath)
        return ArchiveResult(filepath=filepath, filename=filename, player_count=0, already_exists=True)

    entries = store.get_week_entries(week)
    if not entries:
        logger.info("No scores for week %s, nothing to archive", week)
        return None

    with filepath.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow(ARCHIVE_HEADER)
        for rank, entry in enumerate(entries, start=1):
            writer.writerow(
                (
                    rank,
                    entry["telegram_id"],
                    _clean_name(entry.get("first_name")),
                    _clean_name(entry.get("username")),
                    entry.get("best_score") or 0,
                    entry.get("games_played") or 0,
                    entry.get("max_level") or 1,
                    entry.get("total_coins") or 0,
                    entry.get("skin") or "default",
                )
            )

    logger.info("Archived %s players for week %s to %s", len(entries), week, filepath)
    return ArchiveResult(filepath=filepath, filename=filename, player_count=len(entries))


def list_archives(archive_dir: str | Path) -> list[Dict[str, Any]]:
    """Describe every archive in ``archive_dir``, newest week first."""

    directory = Path(archive_dir)
    if not directory.is_dir():
        return []

    archives: list[Dict[str, Any]] = []
    for path in directory.iterdir():
        match = _FILENAME_RE.match(path.name)
        if not match or not path.is_file():
            continue
        stat = path.stat()
        archives.append(
            {
                "filename": path.name,
                "week": match.group(1),
                "size": stat.st_size,
                "created": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            }
        )
    archives.sort(key=lambda item: item["week"], reverse=True)
    return archives


def archive_path(archive_dir: str | Path, week: str) -> Optional[Path]:
    """Return the archive file for ``week`` if it exists."""

    if not is_valid_week(week):
        return None
    path = Path(archive_dir) / archive_filename(week)
    return path if path.is_file() else None


def archive_due(now: datetime | None = None, window: timedelta = ARCHIVE_WINDOW) -> bool:
    remaining = time_until_reset(now)
    return timedelta(0) < remaining <= window


def archive_if_due(
    store: WeekEntrySource,
    archive_dir: str | Path,
    last_archived_week: str | None,
    now: datetime | None = None,
) -> Optional[str]:
    """Archive the running week shortly before the reset.

    Returns the week that is now archived, or ``last_archived_week`` when
    nothing had to be done.
    """

    if not archive_due(now):
        return last_archived_week
    week = week_start(now)
    if week == last_archived_week:
        return last_archived_week
    logger.info("Weekly reset is near, archiving week %s", week)
    archive_week(store, archive_dir, week)
    return week


__all__ = [
    "ARCHIVE_HEADER",
    "ArchiveResult",
    "archive_due",
    "archive_filename",
    "archive_if_due",
    "archive_path",
    "archive_week",
    "is_valid_week",
    "list_archives",
]
