"""Partner workout matchmaking, session lifecycle and ratings."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from models.sessions import PartnerSession, WorkoutType
from routers.auth_scope import get_identity
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.errors import CoordinationError
from services.identity import IdentityClaims
from services.partner_session import (
    claim_partner_session,
    create_partner_session,
    end_partner_session,
    get_partner_session,
    list_available_partner_sessions,
    submit_partner_rating,
)
from services.ratings import get_rating_summary
from services.runtime import CoachRuntime, get_runtime

router = APIRouter()


class CreatePartnerSessionRequest(BaseModel):
    workout_type: WorkoutType = WorkoutType.OTHER
    duration_minutes: int = Field(default=30, ge=5, le=180)


class SubmitRatingRequest(BaseModel):
    rated_user_id: str = Field(min_length=1)
    rating: int


class RatingSummaryResponse(BaseModel):
    user_id: str
    total_ratings: int
    rating_sum: int
    average: Optional[float] = None


@router.get("/sessions", response_model=List[PartnerSession])
async def list_partner_sessions(runtime: CoachRuntime = Depends(get_runtime)):
    """Sessions still waiting for a partner, newest first."""
    return await list_available_partner_sessions(runtime.store)


@router.post("/sessions", response_model=PartnerSession)
async def create_session(
    request: CreatePartnerSessionRequest,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("partner_session_create")),
):
    return await create_partner_session(
        runtime.store,
        identity.user_id,
        request.workout_type,
        request.duration_minutes,
    )


@router.get("/sessions/{session_id}", response_model=PartnerSession)
async def read_partner_session(session_id: str, runtime: CoachRuntime = Depends(get_runtime)):
    session = await get_partner_session(runtime.store, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Partner session not found")
    return session


@router.post("/sessions/{session_id}/join", response_model=PartnerSession)
async def join_session(
    session_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("partner_session_join")),
):
    try:
        return await claim_partner_session(runtime.store, session_id, identity.user_id)
    except CoordinationError as exc:
        raise http_error(exc) from exc


@router.post("/sessions/{session_id}/end", response_model=PartnerSession)
async def end_session(
    session_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    session = await get_partner_session(runtime.store, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Partner session not found")
    if identity.user_id not in session.participants:
        raise HTTPException(status_code=403, detail="Only participants can end this session.")
    try:
        return await end_partner_session(runtime.store, session_id)
    except CoordinationError as exc:
        raise http_error(exc) from exc


@router.post("/sessions/{session_id}/ratings", response_model=RatingSummaryResponse)
async def rate_partner(
    session_id: str,
    request: SubmitRatingRequest,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("partner_rating")),
):
    try:
        summary = await submit_partner_rating(
            runtime.store,
            session_id,
            identity.user_id,
            request.rated_user_id,
            request.rating,
        )
    except (CoordinationError, ValueError) as exc:
        raise http_error(exc) from exc
    return RatingSummaryResponse(**summary.model_dump(), average=summary.average)


@router.get("/users/{user_id}/rating", response_model=RatingSummaryResponse)
async def read_user_rating(user_id: str, runtime: CoachRuntime = Depends(get_runtime)):
    summary = await get_rating_summary(runtime.store, user_id)
    return RatingSummaryResponse(**summary.model_dump(), average=summary.average)
