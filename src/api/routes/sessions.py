"""
Session API endpoints.

Scheduling and managing sessions belongs to another service. These
endpoints exist so a session can be registered and looked up, which is
all the audio pipeline needs before chunks can be attached to it.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ...core.audio.models import Session, SessionStatus
from ..dependencies import AuthenticatedUser, SessionRepositoryDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class SessionRequest(BaseModel):
    """Register or update a session."""
    patient_name: str = Field(default="", max_length=200)
    status: SessionStatus = SessionStatus.SCHEDULED
    scheduled_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class SessionResponse(BaseModel):
    """Stored session."""
    session_id: int
    patient_name: str
    status: SessionStatus
    scheduled_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            session_id=session.id,
            patient_name=session.patient_name,
            status=session.status,
            scheduled_at=session.scheduled_at,
            notes=session.notes,
            created_at=session.created_at,
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.put(
    "/{session_id}",
    response_model=SessionResponse,
    status_code=status.HTTP_200_OK,
    summary="Register a session",
    description="Create the session if it doesn't exist, otherwise update it in place.",
)
async def put_session(
    session_id: int,
    request: SessionRequest,
    repository: SessionRepositoryDep,
    api_key: AuthenticatedUser = None,
) -> SessionResponse:
    session = Session(
        id=session_id,
        patient_name=request.patient_name,
        status=request.status,
        scheduled_at=request.scheduled_at,
        notes=request.notes,
    )

    try:
        repository.save_session(session)
    except Exception as e:
        logger.error(
            "Failed to save session",
            extra={"session_id": session_id, "error": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save session"
        )

    # Re-read so created_at reflects the original insert on updates
    stored = repository.find_session_by_id(session_id) or session
    return SessionResponse.from_session(stored)


@router.get(
    "/{session_id}",
    response_model=SessionResponse,
    status_code=status.HTTP_200_OK,
    summary="Get a session",
)
async def get_session(
    session_id: int,
    repository: SessionRepositoryDep,
    api_key: AuthenticatedUser = None,
) -> SessionResponse:
    session = repository.find_session_by_id(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found"
        )

    return SessionResponse.from_session(session)
