"""Glue between untrusted score submissions, the session store and storage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Optional, Protocol

from utils.logging_config import get_logger, logging_context
from utils.sessions import SessionStore
from utils.validators import (
    INVALID_SESSION,
    SESSION_REUSED,
    ScoreClaim,
    ValidationConfig,
    Verdict,
    validate_score,
)
from utils.weeks import week_start

logger = get_logger("gateway")

_PUBLIC_REASONS = (INVALID_SESSION, SESSION_REUSED)


class ScoreRecorder(Protocol):
    """Persistence collaborator that receives accepted scores."""

    def insert_score(self, telegram_id: int, score: int, level: int, coins_earned: int) -> None:
        ...

    def get_player_rank(self, telegram_id: int) -> Optional[int]:
        ...


class SessionOwnershipError(Exception):
    """Raised when a session token is redeemed by someone other than its owner."""

    def __init__(self, session_id: str, owner_id: Hashable, claimant_id: Hashable) -> None:
        super().__init__("Session does not belong to this player")
        self.session_id = session_id
        self.owner_id = owner_id
        self.claimant_id = claimant_id


@dataclass(frozen=True, slots=True)
class SessionTicket:
    session_id: str
    server_time: int

    def to_dict(self) -> dict[str, object]:
        return {"session_id": self.session_id, "server_time": self.server_time}


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    """What the host layer needs to answer a score submission."""

    verdict: Verdict
    rank: Optional[int] = None
    week_start: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.verdict.accepted

    @property
    def flagged(self) -> bool:
        return self.verdict.flagged

    def public_reason(self) -> Optional[str]:
        """Reason safe to show the client; threshold failures stay generic."""

        for issue in self.verdict.issues:
            if issue in _PUBLIC_REASONS:
                return issue
        return None


class ScoreGateway:
    """Start play sessions and redeem them for leaderboard entries."""

    def __init__(
        self,
        sessions: SessionStore,
        recorder: ScoreRecorder,
        config: ValidationConfig | None = None,
    ) -> None:
        self.sessions = sessions
        self.recorder = recorder
        self.config = config or ValidationConfig()

    def start_session(self, owner_id: Hashable) -> SessionTicket:
        session = self.sessions.create(owner_id)
        return SessionTicket(session_id=session.id, server_time=session.started_at)

    def submit(self, owner_id: Hashable, session_id: str | None, claim: ScoreClaim) -> SubmissionResult:
        """Validate ``claim`` against its session and persist it when accepted.

        The session is burned on every resolved attempt, accepted or not, so a
        rejected token cannot be tampered with and replayed. Ownership
        mismatches raise :class:`SessionOwnershipError` and leave the
        session untouched.
        """

        with logging_context(player_id=owner_id, session_id=session_id or "-"):
            with self.sessions.lock:
                session = self.sessions.get(session_id)
                if session is not None and session.owner_id != owner_id:
                    logger.warning(
                        "Session owned by %s redeemed by %s",
                        session.owner_id,
                        owner_id,
                    )
                    raise SessionOwnershipError(session.id, session.owner_id, owner_id)
                verdict = validate_score(
                    session, claim, now_ms=self.sessions.now(), config=self.config
                )
                if session is not None and not session.consumed:
                    self.sessions.consume(session.id)

            if not verdict.accepted:
                logger.warning(
                    "Rejected score %s from player %s: failed=%s elapsed_ms=%s (%s)",
                    claim.score,
                    owner_id,
                    ",".join(verdict.hard_issues),
                    verdict.elapsed_ms,
                    "; ".join(verdict.messages),
                    extra={"verdict": verdict.to_dict()},
                )
                return SubmissionResult(verdict=verdict)

            if verdict.flagged:
                logger.info(
                    "Flagged score %s from player %s: issues=%s elapsed_ms=%s (%s)",
                    claim.score,
                    owner_id,
                    ",".join(verdict.issues),
                    verdict.elapsed_ms,
                    "; ".join(verdict.messages),
                    extra={"verdict": verdict.to_dict()},
                )

            self.recorder.insert_score(owner_id, claim.score, claim.level, claim.coins_earned)
            rank = self.recorder.get_player_rank(owner_id)
            logger.info("Accepted score %s from player %s (rank=%s)", claim.score, owner_id, rank)
            return SubmissionResult(verdict=verdict, rank=rank, week_start=week_start())


__all__ = [
    "ScoreGateway",
    "ScoreRecorder",
    "SessionOwnershipError",
    "SessionTicket",
    "SubmissionResult",
]
