"""Live session browsing and saving generated workouts."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from models.sessions import LiveSession
from routers.auth_scope import get_identity
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.errors import CoordinationError
from services.identity import IdentityClaims
from services.live_session import get_live_session, list_active_live_sessions, save_workout_from_session
from services.runtime import CoachRuntime, get_runtime

router = APIRouter()


@router.get("/sessions", response_model=List[LiveSession])
async def list_live_sessions(runtime: CoachRuntime = Depends(get_runtime)):
    """Active broadcasts, newest first. Stale sessions are closed on the way."""
    return await list_active_live_sessions(runtime.store)


@router.get("/sessions/{session_id}", response_model=LiveSession)
async def read_live_session(session_id: str, runtime: CoachRuntime = Depends(get_runtime)):
    session = await get_live_session(runtime.store, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Live session not found")
    return session


@router.post("/sessions/{session_id}/save")
async def save_session_workout(
    session_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("live_save_workout")),
):
    session = await get_live_session(runtime.store, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Live session not found")
    try:
        workout_id = await save_workout_from_session(runtime.store, identity.user_id, session)
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return {"workout_id": workout_id, "session_id": session_id}
