"""In-memory registry of one-time play sessions."""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional

from utils.logging_config import get_logger

logger = get_logger("sessions")

SESSION_RETENTION_SECONDS = 30 * 60
SESSION_SWEEP_INTERVAL = 5 * 60  # seconds between sweeps
SESSION_TOKEN_BYTES = 16

Clock = Callable[[], int]
TokenFactory = Callable[[], str]


def now_ms() -> int:
    """Return the server wall clock in milliseconds since the epoch."""

    return int(time.time() * 1000)


def new_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


@dataclass(slots=True)
class Session:
    """A single authorised play attempt."""

    id: str
    owner_id: Hashable
    started_at: int
    consumed: bool = False

    def age_ms(self, at_ms: int) -> int:
        return at_ms - self.started_at


class SessionStore:
    """Process-wide mapping of session id to :class:`Session`.

    Nothing is persisted: a restart invalidates every outstanding session
    and clients request a new one. ``lock`` is
    re-entrant so callers can hold it across a lookup and a later
    :meth:`consume` without other requests interleaving on the same id.
    """

    def __init__(
        self,
        *,
        clock: Clock = now_ms,
        token_factory: TokenFactory = new_session_token,
        retention_ms: int = SESSION_RETENTION_SECONDS * 1000,
    ) -> None:
        self._sessions: Dict[str, Session] = {}
        self._clock = clock
        self._token_factory = token_factory
        self.retention_ms = int(retention_ms)
        self.lock = threading.RLock()

    def __len__(self) -> int:
        with self.lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self.lock:
            return session_id in self._sessions

    def now(self) -> int:
        return self._clock()

    def create(self, owner_id: Hashable) -> Session:
        """Issue a new unconsumed session for ``owner_id``."""

        with self.lock:
            token = self._token_factory()
            while token in self._sessions:
                logger.warning("Session token collision, regenerating")
                token = self._token_factory()
            session = Session(id=token, owner_id=owner_id, started_at=self._clock())
            self._sessions[token] = session
        logger.debug(
            "Created session for player %s",
            owner_id,
            extra={"player_id": owner_id, "session_id": token},
        )
        return session

    def get(self, session_id: str | None) -> Optional[Session]:
        """Return the live session for ``session_id``; expired ones read as absent."""

        if not session_id:
            return None
        with self.lock:
            session = self._sessions.get(str(session_id))
            if session is not None and self._expired(session, self._clock(), self.retention_ms):
                del self._sessions[session.id]
                return None
            return session

    def consume(self, session_id: str) -> None:
        """Mark a session as used. Performs no validation of its own."""

        with self.lock:
            session = self._sessions.get(session_id)
            if session is not None and not session.consumed:
                session.consumed = True

    def discard(self, session_id: str) -> Optional[Session]:
        with self.lock:
            return self._sessions.pop(session_id, None)

    @staticmethod
    def _expired(session: Session, at_ms: int, retention_ms: int) -> bool:
        return session.age_ms(at_ms) >= retention_ms

    def sweep(
        self, now_ms: int | None = None, retention_ms: int | None = None
    ) -> list[Session]:
        """Remove sessions older than the retention window, consumed or not."""

        current = self._clock() if now_ms is None else int(now_ms)
        retention = self.retention_ms if retention_ms is None else int(retention_ms)
        expired: list[Session] = []
        with self.lock:
            for session_id, session in list(self._sessions.items()):
                if self._expired(session, current, retention):
                    expired.append(self._sessions.pop(session_id))
        if expired:
            logger.debug("Swept %s expired sessions", len(expired))
        return expired


__all__ = [
    "SESSION_RETENTION_SECONDS",
    "SESSION_SWEEP_INTERVAL",
    "Session",
    "SessionStore",
    "new_session_token",
    "now_ms",
]
