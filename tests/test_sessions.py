"""Tests for the in-memory play session store."""

from __future__ import annotations

import itertools

from utils.sessions import Session, SessionStore, new_session_token


class FakeClock:
    def __init__(self, start: int = 1_000_000) -> None:
        self.value = start

    def __call__(self) -> int:
        return self.value

    def advance(self, ms: int) -> None:
        self.value += ms


def test_create_issues_unconsumed_session_stamped_with_clock() -> None:
    clock = FakeClock(5_000)
    store = SessionStore(clock=clock)

    session = store.create(42)

    assert isinstance(session, Session)
    assert session.owner_id == 42
    assert session.started_at == 5_000
    assert session.consumed is False
    assert store.get(session.id) is session
    assert session.id in store
    assert len(store) == 1


def test_session_ids_are_unique_hex_tokens() -> None:
    store = SessionStore()

    ids = {store.create(1).id for _ in range(200)}

    assert len(ids) == 200
    assert all(len(token) == 32 for token in ids)
    assert all(int(token, 16) >= 0 for token in ids)
    assert len(new_session_token()) == 32


def test_create_retries_on_token_collision() -> None:
    tokens = itertools.chain(["dup", "dup", "fresh"])
    store = SessionStore(token_factory=lambda: next(tokens))

    first = store.create(1)
    second = store.create(2)

    assert first.id == "dup"
    assert second.id == "fresh"
    assert store.get("dup").owner_id == 1


def test_get_unknown_or_empty_id_returns_none() -> None:
    store = SessionStore()

    assert store.get("does-not-exist") is None
    assert store.get("") is None
    assert store.get(None) is None


def test_consume_marks_once_and_ignores_unknown_ids() -> None:
    store = SessionStore()
    session = store.create(7)

    store.consume(session.id)
    store.consume(session.id)
    store.consume("missing")

    assert store.get(session.id).consumed is True
    assert len(store) == 1


def test_session_expires_exactly_at_retention_boundary() -> None:
    clock = FakeClock(0)
    store = SessionStore(clock=clock, retention_ms=1_000)
    session = store.create(1)

    clock.advance(999)
    assert store.get(session.id) is session

    clock.advance(1)
    assert store.get(session.id) is None
    assert session.id not in store


def test_sweep_removes_consumed_and_unconsumed_sessions_past_retention() -> None:
    clock = FakeClock(0)
    store = SessionStore(clock=clock, retention_ms=30 * 60 * 1000)
    used = store.create(1)
    unused = store.create(2)
    store.consume(used.id)

    clock.advance(10 * 60 * 1000)
    fresh = store.create(3)

    clock.advance(20 * 60 * 1000)
    expired = store.sweep()

    assert {item.id for item in expired} == {used.id, unused.id}
    assert used.id not in store
    assert unused.id not in store
    assert store.get(fresh.id) is fresh


def test_sweep_accepts_explicit_time_and_retention() -> None:
    store = SessionStore(clock=FakeClock(0))
    session = store.create(1)

    assert store.sweep(now_ms=499, retention_ms=500) == []
    assert store.sweep(now_ms=500, retention_ms=500) == [session]
    assert len(store) == 0


def test_discard_removes_session() -> None:
    store = SessionStore()
    session = store.create(1)

    assert store.discard(session.id) is session
    assert store.discard(session.id) is None
    assert store.get(session.id) is None
