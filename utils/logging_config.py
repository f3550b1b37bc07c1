"""Centralised logging helpers for the Flappy Bert backend."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from logging.config import dictConfig
from typing import Iterator

BASE_LOGGER_NAME = "flappy"

_player_id_var: ContextVar[str] = ContextVar("player_id", default="-")
_session_id_var: ContextVar[str] = ContextVar("session_id", default="-")


class PlayerSessionContextFilter(logging.Filter):
    """Ensure that log records always contain player and session identifiers."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - logging API
        record.player_id = getattr(record, "player_id", _player_id_var.get("-"))
        record.session_id = getattr(record, "session_id", _session_id_var.get("-"))
        return True


def configure_logging(level: int | str = "INFO") -> None:
    """Configure project-wide logging using :func:`logging.config.dictConfig`."""

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "player_session": {
                    "()": "utils.logging_config.PlayerSessionContextFilter",
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s [player=%(player_id)s session=%(session_id)s] %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["player_session"],
                    "level": level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": level,
            },
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a logger within the project namespace."""

    if name.startswith(BASE_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{BASE_LOGGER_NAME}.{name}")


@contextmanager
def logging_context(
    *, player_id: int | str | None = None, session_id: str | None = None
) -> Iterator[None]:
    """Temporarily bind player and session identifiers to log records."""

    tokens: list[tuple[ContextVar[str], Token[str]]] = []
    if player_id is not None:
        tokens.append((_player_id_var, _player_id_var.set(str(player_id))))
    if session_id is not None:
        tokens.append((_session_id_var, _session_id_var.set(str(session_id))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
