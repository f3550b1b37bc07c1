"""Tests for score plausibility checks."""

from __future__ import annotations

import pytest

from utils.sessions import Session
from utils.validators import (
    EXCEEDS_CAP,
    FRAME_MISMATCH,
    INVALID_SESSION,
    LEVEL_MISMATCH,
    SCORE_EXCEEDS_TIME,
    SESSION_REUSED,
    TOO_FAST,
    ScoreClaim,
    ValidationConfig,
    max_level_for_score,
    max_score_for_elapsed,
    validate_score,
)

START = 1_700_000_000_000


def _session(consumed: bool = False) -> Session:
    return Session(id="abc", owner_id=1, started_at=START, consumed=consumed)


def _validate(claim: ScoreClaim, elapsed_ms: int, *, consumed: bool = False, config=None):
    return validate_score(_session(consumed), claim, now_ms=START + elapsed_ms, config=config)


def test_honest_play_is_accepted_without_flags() -> None:
    verdict = _validate(ScoreClaim(score=12, level=2, frame_count=600, duration_ms=10_000), 10_000)

    assert verdict.accepted is True
    assert verdict.flagged is False
    assert verdict.issues == ()
    assert verdict.elapsed_ms == 10_000


def test_missing_session_is_rejected_immediately() -> None:
    verdict = validate_score(None, ScoreClaim(score=1), now_ms=START)

    assert verdict.accepted is False
    assert verdict.issues == (INVALID_SESSION,)
    assert verdict.elapsed_ms is None


def test_consumed_session_reports_reuse_only_for_honest_claim() -> None:
    verdict = _validate(ScoreClaim(score=12, level=2), 10_000, consumed=True)

    assert verdict.accepted is False
    assert verdict.issues == (SESSION_REUSED,)


@pytest.mark.parametrize(
    ("elapsed_ms", "too_fast"),
    [(2_999, True), (3_000, False), (0, True)],
)
def test_minimum_duration_boundary(elapsed_ms: int, too_fast: bool) -> None:
    verdict = _validate(ScoreClaim(score=0), elapsed_ms)

    assert (TOO_FAST in verdict.issues) is too_fast


@pytest.mark.parametrize(("score", "exceeds"), [(3, False), (4, True)])
def test_rate_limit_boundary_at_two_seconds(score: int, exceeds: bool) -> None:
    verdict = _validate(ScoreClaim(score=score), 2_000)

    assert max_score_for_elapsed(2_000, ValidationConfig()) == 3
    assert (SCORE_EXCEEDS_TIME in verdict.issues) is exceeds


@pytest.mark.parametrize("elapsed_ms", [3_000, 60_000, 3_600_000, 10 ** 9])
def test_scores_above_cap_are_always_rejected(elapsed_ms: int) -> None:
    verdict = _validate(ScoreClaim(score=501, level=1), elapsed_ms)

    assert EXCEEDS_CAP in verdict.issues
    assert verdict.accepted is False


def test_score_at_cap_is_allowed_when_time_supports_it() -> None:
    verdict = _validate(ScoreClaim(score=500, level=50), 600_000)

    assert verdict.issues == ()
    assert verdict.accepted is True


def test_impossible_speed_collects_every_hard_issue() -> None:
    verdict = _validate(ScoreClaim(score=50, level=1), 500)

    assert TOO_FAST in verdict.issues
    assert SCORE_EXCEEDS_TIME in verdict.issues
    assert verdict.accepted is False
    assert set(verdict.hard_issues) == {TOO_FAST, SCORE_EXCEEDS_TIME}


def test_level_mismatch_is_soft() -> None:
    assert max_level_for_score(10, ValidationConfig()) == 3

    verdict = _validate(ScoreClaim(score=10, level=4), 20_000)

    assert verdict.issues == (LEVEL_MISMATCH,)
    assert verdict.accepted is True
    assert verdict.flagged is True


@pytest.mark.parametrize(
    ("frame_count", "mismatch"),
    [(180, False), (179, True), (1_200, False), (1_201, True)],
)
def test_frame_count_window(frame_count: int, mismatch: bool) -> None:
    claim = ScoreClaim(score=5, level=1, frame_count=frame_count, duration_ms=10_000)

    verdict = _validate(claim, 10_000)

    assert (FRAME_MISMATCH in verdict.issues) is mismatch
    assert verdict.accepted is True


def test_frame_check_skipped_without_both_fields() -> None:
    only_frames = _validate(ScoreClaim(score=5, frame_count=1), 10_000)
    only_duration = _validate(ScoreClaim(score=5, duration_ms=10_000), 10_000)

    assert FRAME_MISMATCH not in only_frames.issues
    assert FRAME_MISMATCH not in only_duration.issues


def test_issues_follow_check_order() -> None:
    claim = ScoreClaim(score=600, level=99, frame_count=1, duration_ms=10_000)

    verdict = _validate(claim, 1_000, consumed=True)

    assert verdict.issues == (
        SESSION_REUSED,
        TOO_FAST,
        SCORE_EXCEEDS_TIME,
        EXCEEDS_CAP,
        LEVEL_MISMATCH,
        FRAME_MISMATCH,
    )
    assert len(verdict.messages) == len(verdict.issues)


def test_clock_skew_is_clamped_to_zero_elapsed() -> None:
    verdict = validate_score(_session(), ScoreClaim(score=0), now_ms=START - 5_000)

    assert verdict.elapsed_ms == 0
    assert TOO_FAST in verdict.issues


def test_validator_does_not_mutate_session() -> None:
    session = _session()

    validate_score(session, ScoreClaim(score=12, level=2), now_ms=START + 10_000)

    assert session.consumed is False


def test_custom_config_changes_thresholds() -> None:
    config = ValidationConfig(min_game_duration_ms=1_000, max_score_per_second=2.0, max_absolute_score=10)

    verdict = _validate(ScoreClaim(score=4, level=1), 2_000, config=config)
    capped = _validate(ScoreClaim(score=11, level=1), 100_000, config=config)

    assert verdict.issues == ()
    assert capped.issues == (EXCEEDS_CAP,)


def test_config_from_env_overrides_and_ignores_invalid(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_ABSOLUTE_SCORE", "800")
    monkeypatch.setenv("MAX_SCORE_PER_SECOND", "1.5")
    monkeypatch.setenv("MIN_GAME_DURATION_MS", "abc")
    monkeypatch.setenv("TARGET_FPS", "-1")

    config = ValidationConfig.from_env()

    assert config.max_absolute_score == 800
    assert config.max_score_per_second == 1.5
    assert config.min_game_duration_ms == 3_000
    assert config.target_fps == 60


def test_verdict_to_dict() -> None:
    verdict = _validate(ScoreClaim(score=10, level=4), 20_000)

    assert verdict.to_dict() == {
        "accepted": True,
        "flagged": True,
        "issues": [LEVEL_MISMATCH],
        "elapsed_ms": 20_000,
    }
