"""Weekly leaderboard boundaries. Weeks start on Monday 00:00 UTC."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def _utc_now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def week_start_date(now: datetime | None = None) -> date:
    current = _utc_now(now).date()
    return current - timedelta(days=current.weekday())


def week_start(now: datetime | None = None) -> str:
    """Return the ISO date (``2026-02-09``) of the Monday opening the week."""

    return week_start_date(now).isoformat()


def next_reset(now: datetime | None = None) -> datetime:
    """Return the Monday 00:00 UTC that opens the following week."""

    monday = week_start_date(now) + timedelta(days=7)
    return datetime.combine(monday, time.min, tzinfo=timezone.utc)


def time_until_reset(now: datetime | None = None) -> timedelta:
    current = _utc_now(now)
    return next_reset(current) - current


def reset_countdown(now: datetime | None = None) -> str:
    """Human readable time left until the weekly reset, e.g. ``3d 4h 12m``."""

    remaining = int(time_until_reset(now).total_seconds())
    if remaining <= 0:
        return "0d 0h 0m"
    days, rest = divmod(remaining, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    return f"{days}d {hours}h {minutes}m"


def _format_day(value: date) -> str:
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def week_label(now: datetime | None = None) -> str:
    """Label such as ``Feb 9, 2026 – Feb 15, 2026`` for the current week."""

    start = week_start_date(now)
    end = start + timedelta(days=6)
    return f"{_format_day(start)} – {_format_day(end)}"


__all__ = [
    "next_reset",
    "reset_countdown",
    "time_until_reset",
    "week_label",
    "week_start",
    "week_start_date",
]
