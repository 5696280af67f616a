"""
Session Routes

Create and inspect conversational sessions. Sessions live in the
application's ``SessionManager``; an unknown id is reported as 404.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, status

from .dependencies import get_session_manager
from .models import CreateSessionRequest, SessionResponse
from ..core.errors import SessionNotFoundError
from ..sessions.store import SessionManager

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a session",
)
async def create_session(
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    req: Optional[CreateSessionRequest] = None,
) -> SessionResponse:
    session = sessions.create_session(owner_id=req.owner_id if req else None)
    return SessionResponse.from_session(session)


@router.get(
    "/{session_id}",
    response_model=SessionResponse,
    summary="Fetch a session",
)
async def get_session(
    session_id: str,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    """
    Return the session, including sessions that have expired but were not
    yet cleaned up (reported with status ``expired``).
    """
    session = sessions.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(f"Session {session_id} not found")
    return SessionResponse.from_session(session)
