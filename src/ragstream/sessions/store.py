"""
Session Manager

In-memory lifecycle tracking for conversational sessions and the prompts
submitted within them.

Design choices
--------------
- In-memory only (no persistence across process restarts).
- One explicitly constructed manager per application; no module singleton.
- Thread-safe access using one short-held re-entrant lock.
- Copy-on-read semantics (callers cannot mutate internal state).
- Injectable clock so expiry can be tested without sleeping.
- Lookups of unknown sessions return ``None``; only operations that need a
  live session raise ``SessionNotFoundError``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import InvalidArgumentError, SessionNotFoundError

logger = logging.getLogger("ragstream.sessions")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class PromptStatus(str, Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PROMPT_STATUSES = {
    PromptStatus.COMPLETED,
    PromptStatus.FAILED,
    PromptStatus.CANCELLED,
}


class Session(BaseModel):
    session_id: str
    owner_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime

    model_config = ConfigDict(extra="forbid")


class Prompt(BaseModel):
    prompt_id: str
    session_id: str
    text: str
    idempotency_key: Optional[str] = None
    token_count: int = 0
    status: PromptStatus = PromptStatus.IN_FLIGHT
    created_at: datetime
    completed_at: Optional[datetime] = None
    # Texts of the deltas produced for this prompt, kept for replay.
    output: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class SessionManager:
    """
    Owns the session table and its prompts.

    Parameters
    ----------
    ttl_seconds : float
        Lifetime of a session after creation or its last extending touch.

    clock : Callable[[], datetime]
        Time source returning aware datetimes. Defaults to UTC now.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if ttl_seconds <= 0:
            raise InvalidArgumentError("Session TTL must be positive")

        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._lock = RLock()

        self._sessions: Dict[str, Session] = {}
        self._prompts: Dict[str, Prompt] = {}
        self._session_prompts: Dict[str, Set[str]] = {}
        self._idempotency: Dict[Tuple[str, str], str] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, owner_id: Optional[str] = None) -> Session:
        now = self._clock()
        session = Session(
            session_id=str(uuid.uuid4()),
            owner_id=owner_id,
            created_at=now,
            last_active_at=now,
            expires_at=now + self._ttl,
        )

        with self._lock:
            self._sessions[session.session_id] = session
            self._session_prompts[session.session_id] = set()

        logger.debug("Created session %s", session.session_id)
        return session.model_copy()

    def get_session(self, session_id: str) -> Optional[Session]:
        """
        Return a copy of the session, or ``None`` if unknown.

        A session past its expiry is reported as ``EXPIRED`` until the next
        cleanup removes it.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            snapshot = session.model_copy()

        if snapshot.expires_at <= self._clock():
            snapshot.status = SessionStatus.EXPIRED
        return snapshot

    def touch_session(self, session_id: str, extend: bool = True) -> Optional[Session]:
        """
        Record activity on a live session.

        Returns the refreshed copy, or ``None`` if the session is unknown or
        already expired. With ``extend`` the expiry moves to ``now + ttl``.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None

            now = self._clock()
            if session.expires_at <= now:
                return None

            session.last_active_at = now
            if extend:
                session.expires_at = now + self._ttl
            return session.model_copy()

    def cleanup_expired_sessions(self) -> int:
        """
        Remove every session whose expiry is at or before the scan time.

        The scan time is read once, so a session created while the scan
        runs is never evicted by it. Returns the number removed.
        """
        scan_time = self._clock()

        with self._lock:
            doomed = [
                sid for sid, s in self._sessions.items() if s.expires_at <= scan_time
            ]
            for sid in doomed:
                self._remove_session(sid)

        if doomed:
            logger.info("Cleaned up %d expired session(s)", len(doomed))
        return len(doomed)

    def active_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.expires_at > now)

    def close(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._prompts.clear()
            self._session_prompts.clear()
            self._idempotency.clear()

    async def run_cleanup_loop(self, interval: float = 300.0) -> None:
        """Periodically purge expired sessions until cancelled."""
        logger.info("Session cleanup loop started (every %.0f s)", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup_expired_sessions()
            except Exception:
                logger.exception("Session cleanup failed")

    def _remove_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        for prompt_id in self._session_prompts.pop(session_id, set()):
            prompt = self._prompts.pop(prompt_id, None)
            if prompt is not None and prompt.idempotency_key:
                self._idempotency.pop((session_id, prompt.idempotency_key), None)

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def create_prompt(
        self,
        session_id: str,
        text: str,
        idempotency_key: Optional[str] = None,
    ) -> Prompt:
        """
        Register a prompt within a live session.

        A repeated ``idempotency_key`` in the same session returns the
        prompt first registered under it, whatever its status.

        Raises
        ------
        SessionNotFoundError
            If the session is unknown or expired.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            now = self._clock()
            if session is None or session.expires_at <= now:
                raise SessionNotFoundError(f"Session {session_id} not found")

            if idempotency_key:
                existing_id = self._idempotency.get((session_id, idempotency_key))
                if existing_id is not None:
                    return self._prompts[existing_id].model_copy(deep=True)

            prompt = Prompt(
                prompt_id=str(uuid.uuid4()),
                session_id=session_id,
                text=text,
                idempotency_key=idempotency_key,
                created_at=now,
            )
            self._prompts[prompt.prompt_id] = prompt
            self._session_prompts[session_id].add(prompt.prompt_id)
            if idempotency_key:
                self._idempotency[(session_id, idempotency_key)] = prompt.prompt_id

            return prompt.model_copy(deep=True)

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        with self._lock:
            prompt = self._prompts.get(prompt_id)
            return prompt.model_copy(deep=True) if prompt is not None else None

    def complete_prompt(
        self,
        prompt_id: str,
        status: PromptStatus,
        token_count: Optional[int] = None,
        output: Optional[List[str]] = None,
    ) -> Optional[Prompt]:
        """
        Move an in-flight prompt to a terminal status.

        A prompt that is already terminal is returned unchanged.
        """
        if status not in TERMINAL_PROMPT_STATUSES:
            raise InvalidArgumentError(f"{status!r} is not a terminal prompt status")

        with self._lock:
            prompt = self._prompts.get(prompt_id)
            if prompt is None:
                return None

            if prompt.status is PromptStatus.IN_FLIGHT:
                prompt.status = status
                prompt.completed_at = self._clock()
                if token_count is not None:
                    prompt.token_count = token_count
                if output is not None:
                    prompt.output = list(output)
            else:
                logger.debug(
                    "Prompt %s already %s; ignoring %s",
                    prompt_id,
                    prompt.status.value,
                    status.value,
                )

            return prompt.model_copy(deep=True)
