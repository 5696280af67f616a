"""
SessionManager Tests

A fake clock drives expiry; nothing sleeps.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ragstream.core.errors import InvalidArgumentError, SessionNotFoundError
from ragstream.sessions.store import PromptStatus, SessionManager, SessionStatus


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return SessionManager(ttl_seconds=60, clock=clock)


class TestSessions:
    def test_create_session_timestamps(self, manager, clock):
        session = manager.create_session(owner_id="alice")

        assert session.status is SessionStatus.ACTIVE
        assert session.owner_id == "alice"
        assert session.created_at == session.last_active_at == clock.now
        assert session.expires_at == clock.now + timedelta(seconds=60)
        assert session.created_at <= session.last_active_at <= session.expires_at

    def test_get_unknown_session_returns_none(self, manager):
        assert manager.get_session("nope") is None

    def test_get_session_returns_copy(self, manager):
        session = manager.create_session()
        copy = manager.get_session(session.session_id)
        copy.owner_id = "mallory"

        assert manager.get_session(session.session_id).owner_id is None

    def test_expired_session_is_reported_until_cleanup(self, manager, clock):
        session = manager.create_session()
        clock.advance(61)

        seen = manager.get_session(session.session_id)
        assert seen.status is SessionStatus.EXPIRED

        assert manager.cleanup_expired_sessions() == 1
        assert manager.get_session(session.session_id) is None

    def test_cleanup_is_idempotent(self, manager, clock):
        manager.create_session()
        clock.advance(120)

        assert manager.cleanup_expired_sessions() == 1
        assert manager.cleanup_expired_sessions() == 0

    def test_cleanup_keeps_live_sessions(self, manager, clock):
        old = manager.create_session()
        clock.advance(30)
        young = manager.create_session()
        clock.advance(31)

        assert manager.cleanup_expired_sessions() == 1
        assert manager.get_session(old.session_id) is None
        assert manager.get_session(young.session_id) is not None
        assert manager.active_count() == 1

    def test_touch_extends_expiry(self, manager, clock):
        session = manager.create_session()
        clock.advance(50)

        touched = manager.touch_session(session.session_id)
        assert touched.last_active_at == clock.now
        assert touched.expires_at == clock.now + timedelta(seconds=60)

        clock.advance(50)
        assert manager.cleanup_expired_sessions() == 0

    def test_touch_without_extend(self, manager, clock):
        session = manager.create_session()
        clock.advance(10)

        touched = manager.touch_session(session.session_id, extend=False)
        assert touched.last_active_at == clock.now
        assert touched.expires_at == session.expires_at

    def test_touch_unknown_or_expired_returns_none(self, manager, clock):
        assert manager.touch_session("nope") is None

        session = manager.create_session()
        clock.advance(61)
        assert manager.touch_session(session.session_id) is None

    def test_invalid_ttl(self):
        with pytest.raises(InvalidArgumentError):
            SessionManager(ttl_seconds=0)

    def test_close_clears_everything(self, manager):
        session = manager.create_session()
        manager.close()
        assert manager.get_session(session.session_id) is None


class TestPrompts:
    def test_idempotency_key_returns_same_prompt(self, manager):
        session = manager.create_session()

        first = manager.create_prompt(session.session_id, "hi", idempotency_key="k1")
        second = manager.create_prompt(session.session_id, "hi", idempotency_key="k1")
        other = manager.create_prompt(session.session_id, "hi", idempotency_key="k2")

        assert first.prompt_id == second.prompt_id
        assert other.prompt_id != first.prompt_id

    def test_idempotency_is_scoped_to_session(self, manager):
        a = manager.create_session()
        b = manager.create_session()

        pa = manager.create_prompt(a.session_id, "hi", idempotency_key="k")
        pb = manager.create_prompt(b.session_id, "hi", idempotency_key="k")

        assert pa.prompt_id != pb.prompt_id

    def test_prompt_requires_live_session(self, manager, clock):
        with pytest.raises(SessionNotFoundError):
            manager.create_prompt("nope", "hi")

        session = manager.create_session()
        clock.advance(61)
        with pytest.raises(SessionNotFoundError):
            manager.create_prompt(session.session_id, "hi")

    def test_complete_prompt_transitions_once(self, manager):
        session = manager.create_session()
        prompt = manager.create_prompt(session.session_id, "hi")
        assert prompt.status is PromptStatus.IN_FLIGHT

        done = manager.complete_prompt(
            prompt.prompt_id, PromptStatus.COMPLETED, token_count=2, output=["a", "b"]
        )
        assert done.status is PromptStatus.COMPLETED
        assert done.token_count == 2
        assert done.output == ["a", "b"]

        again = manager.complete_prompt(prompt.prompt_id, PromptStatus.FAILED)
        assert again.status is PromptStatus.COMPLETED

    def test_complete_prompt_rejects_non_terminal_status(self, manager):
        session = manager.create_session()
        prompt = manager.create_prompt(session.session_id, "hi")
        with pytest.raises(InvalidArgumentError):
            manager.complete_prompt(prompt.prompt_id, PromptStatus.IN_FLIGHT)

    def test_prompts_are_removed_with_their_session(self, manager, clock):
        session = manager.create_session()
        prompt = manager.create_prompt(session.session_id, "hi", idempotency_key="k")
        clock.advance(61)

        manager.cleanup_expired_sessions()

        assert manager.get_prompt(prompt.prompt_id) is None


@pytest.mark.asyncio
async def test_cleanup_loop_runs_until_cancelled(clock):
    manager = SessionManager(ttl_seconds=1, clock=clock)
    session = manager.create_session()
    clock.advance(5)

    task = asyncio.create_task(manager.run_cleanup_loop(interval=0.01))
    for _ in range(100):
        if manager.get_session(session.session_id) is None:
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert manager.get_session(session.session_id) is None


def test_concurrent_create_and_cleanup_from_threads(clock):
    from concurrent.futures import ThreadPoolExecutor

    manager = SessionManager(ttl_seconds=60, clock=clock)

    def work(_):
        s = manager.create_session()
        manager.get_session(s.session_id)
        manager.cleanup_expired_sessions()
        return s.session_id

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(work, range(200)))

    assert len(set(ids)) == 200
    assert manager.active_count() == 200
