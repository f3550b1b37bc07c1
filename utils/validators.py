"""Plausibility checks for scores reported by the game client."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from utils.logging_config import get_logger
from utils.sessions import Session

logger = get_logger("validators")

__all__ = [
    "EXCEEDS_CAP",
    "FRAME_MISMATCH",
    "HARD_FAIL_ISSUES",
    "INVALID_SESSION",
    "LEVEL_MISMATCH",
    "SCORE_EXCEEDS_TIME",
    "SESSION_REUSED",
    "SOFT_ISSUES",
    "TOO_FAST",
    "ScoreClaim",
    "ScoreValidationError",
    "ValidationConfig",
    "Verdict",
    "max_level_for_score",
    "max_score_for_elapsed",
    "validate_score",
]

INVALID_SESSION = "invalid_session"
SESSION_REUSED = "session_reused"
TOO_FAST = "too_fast"
SCORE_EXCEEDS_TIME = "score_exceeds_time"
EXCEEDS_CAP = "exceeds_cap"
LEVEL_MISMATCH = "level_mismatch"
FRAME_MISMATCH = "frame_mismatch"

HARD_FAIL_ISSUES = frozenset(
    {INVALID_SESSION, SESSION_REUSED, EXCEEDS_CAP, SCORE_EXCEEDS_TIME, TOO_FAST}
)
SOFT_ISSUES = frozenset({LEVEL_MISMATCH, FRAME_MISMATCH})


@dataclass(frozen=True, slots=True)
class ValidationConfig:
    """Tunable thresholds for score validation.

    ``max_score_per_second`` comes from the fastest possible pipe cadence:
    at top speed a pipe reaches the bird every ~0.83 s, so an honest run
    clears at most 1.2 pipes (points) per second. ``max_absolute_score``
    is the highest score seen in play-testing with generous headroom.
    ``min_game_duration_ms`` is the time needed to reach the first pipe.
    The frame window tolerates heavy frame drops (30% of ``target_fps``)
    and high refresh displays (2x).
    """

    min_game_duration_ms: int = 3000
    max_score_per_second: float = 1.2
    max_absolute_score: int = 500
    target_fps: int = 60
    min_frame_ratio: float = 0.3
    max_frame_ratio: float = 2.0
    level_step: int = 10
    level_allowance: int = 2

    @classmethod
    def from_env(cls) -> "ValidationConfig":
        """Build a config, letting environment variables override the defaults."""

        defaults = cls()
        overrides: dict[str, object] = {}
        for env_name, attr, cast in (
            ("MIN_GAME_DURATION_MS", "min_game_duration_ms", int),
            ("MAX_SCORE_PER_SECOND", "max_score_per_second", float),
            ("MAX_ABSOLUTE_SCORE", "max_absolute_score", int),
            ("TARGET_FPS", "target_fps", int),
        ):
            raw = os.getenv(env_name)
            if raw in (None, ""):
                continue
            try:
                value = cast(raw)
            except ValueError:
                logger.warning("Invalid %s provided, keeping %s: %s", env_name, getattr(defaults, attr), raw)
                continue
            if value <= 0:
                logger.warning("%s must be positive, keeping %s", env_name, getattr(defaults, attr))
                continue
            overrides[attr] = value
        if overrides:
            logger.info("Anti-cheat thresholds overridden: %s", overrides)
        return cls(**overrides)


@dataclass(frozen=True, slots=True)
class ScoreClaim:
    """Untrusted result reported by the client at the end of a run."""

    score: int
    level: int = 1
    coins_earned: int = 0
    frame_count: Optional[int] = None
    duration_ms: Optional[int] = None


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of :func:`validate_score`."""

    accepted: bool
    issues: tuple[str, ...] = ()
    elapsed_ms: Optional[int] = None
    messages: tuple[str, ...] = field(default=(), compare=False)

    @property
    def flagged(self) -> bool:
        return bool(self.issues)

    @property
    def hard_issues(self) -> tuple[str, ...]:
        return tuple(issue for issue in self.issues if issue in HARD_FAIL_ISSUES)

    def to_dict(self) -> dict[str, object]:
        return {
            "accepted": self.accepted,
            "flagged": self.flagged,
            "issues": list(self.issues),
            "elapsed_ms": self.elapsed_ms,
        }


class ScoreValidationError(Exception):
    """Base class for a single failed plausibility check."""

    code = "invalid"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class SessionReusedError(ScoreValidationError):
    code = SESSION_REUSED


class TooFastError(ScoreValidationError):
    code = TOO_FAST


class ScoreRateError(ScoreValidationError):
    code = SCORE_EXCEEDS_TIME


class ScoreCapError(ScoreValidationError):
    code = EXCEEDS_CAP


class LevelMismatchError(ScoreValidationError):
    code = LEVEL_MISMATCH


class FrameMismatchError(ScoreValidationError):
    code = FRAME_MISMATCH


def max_score_for_elapsed(elapsed_ms: int, config: ValidationConfig) -> int:
    """Highest score reachable in ``elapsed_ms`` at the configured cadence."""

    # Rounding first keeps float noise (2.4000000000000004) from adding a point.
    return math.ceil(round(elapsed_ms * config.max_score_per_second / 1000, 6))


def max_level_for_score(score: int, config: ValidationConfig) -> int:
    return score // config.level_step + config.level_allowance


def _check_single_use(session: Session, claim: ScoreClaim, elapsed_ms: int, config: ValidationConfig) -> None:
    if session.consumed:
        raise SessionReusedError("Session has already been redeemed")


def _check_duration(session: Session, claim: ScoreClaim, elapsed_ms: int, config: ValidationConfig) -> None:
    if elapsed_ms < config.min_game_duration_ms:
        raise TooFastError(
            f"Run lasted {elapsed_ms} ms, minimum is {config.min_game_duration_ms} ms"
        )


def _check_score_rate(session: Session, claim: ScoreClaim, elapsed_ms: int, config: ValidationConfig) -> None:
    ceiling = max_score_for_elapsed(elapsed_ms, config)
    if claim.score > ceiling:
        raise ScoreRateError(f"Score {claim.score} exceeds {ceiling} reachable in {elapsed_ms} ms")


def _check_cap(session: Session, claim: ScoreClaim, elapsed_ms: int, config: ValidationConfig) -> None:
    if claim.score > config.max_absolute_score:
        raise ScoreCapError(f"Score {claim.score} exceeds cap {config.max_absolute_score}")


def _check_level(session: Session, claim: ScoreClaim, elapsed_ms: int, config: ValidationConfig) -> None:
    allowed = max_level_for_score(claim.score, config)
    if claim.level > allowed:
        raise LevelMismatchError(f"Level {claim.level} is above {allowed} for score {claim.score}")


def _check_frames(session: Session, claim: ScoreClaim, elapsed_ms: int, config: ValidationConfig) -> None:
    if claim.frame_count is None or claim.duration_ms is None:
        return
    expected = claim.duration_ms / 1000 * config.target_fps
    if claim.frame_count < config.min_frame_ratio * expected or claim.frame_count > config.max_frame_ratio * expected:
        raise FrameMismatchError(
            f"{claim.frame_count} frames reported, expected about {expected:.0f}"
        )


_Check = Callable[[Session, ScoreClaim, int, ValidationConfig], None]

_CHECKS: Sequence[_Check] = (
    _check_single_use,
    _check_duration,
    _check_score_rate,
    _check_cap,
    _check_level,
    _check_frames,
)


def validate_score(
    session: Session | None,
    claim: ScoreClaim,
    *,
    now_ms: int,
    config: ValidationConfig | None = None,
) -> Verdict:
    """Decide whether ``claim`` is plausible for ``session`` at ``now_ms``.

    Every check runs even after a hard failure so the full issue list is
    available for logging. The only exception is a missing session, which
    leaves no start time to measure against.

    The function has no side effects: it neither reads the clock nor marks
    the session as consumed.
    """

    config = config or ValidationConfig()
    if session is None:
        return Verdict(
            accepted=False,
            issues=(INVALID_SESSION,),
            messages=("Unknown or expired session",),
        )

    elapsed_ms = max(0, now_ms - session.started_at)
    issues: list[str] = []
    messages: list[str] = []
    for check in _CHECKS:
        try:
            check(session, claim, elapsed_ms, config)
        except ScoreValidationError as exc:
            issues.append(exc.code)
            messages.append(str(exc))
            logger.debug("Score check failed (%s): %s", exc.code, exc)

    accepted = not any(issue in HARD_FAIL_ISSUES for issue in issues)
    return Verdict(
        accepted=accepted,
        issues=tuple(issues),
        elapsed_ms=elapsed_ms,
        messages=tuple(messages),
    )
