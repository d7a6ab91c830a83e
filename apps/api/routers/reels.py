"""Community reels feed with likes and comments."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from models.sessions import CommunityReel
from routers.auth_scope import get_identity
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.community_reels import delete_community_reel, get_community_reel, list_community_reels
from services.engagement import REELS, Comment, add_comment, delete_comment, list_comments
from services.errors import CoordinationError
from services.identity import IdentityClaims
from services.runtime import CoachRuntime, get_runtime

router = APIRouter()


class CreateCommentRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class LikeStateResponse(BaseModel):
    reel_id: str
    liked: bool
    like_count: int


@router.get("", response_model=List[CommunityReel])
async def list_reels(
    user_id: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    runtime: CoachRuntime = Depends(get_runtime),
):
    return await list_community_reels(runtime.store, user_id=user_id, limit=limit)


@router.get("/{reel_id}", response_model=CommunityReel)
async def read_reel(reel_id: str, runtime: CoachRuntime = Depends(get_runtime)):
    reel = await get_community_reel(runtime.store, reel_id)
    if reel is None:
        raise HTTPException(status_code=404, detail="Reel not found")
    return reel


@router.delete("/{reel_id}")
async def remove_reel(
    reel_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    try:
        await delete_community_reel(runtime.store, runtime.storage, reel_id, identity.user_id)
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return {"deleted": True, "reel_id": reel_id}


async def _like_state(runtime: CoachRuntime, reel_id: str, liked: bool) -> LikeStateResponse:
    reel = await get_community_reel(runtime.store, reel_id)
    return LikeStateResponse(reel_id=reel_id, liked=liked, like_count=reel.like_count if reel else 0)


@router.post("/{reel_id}/like", response_model=LikeStateResponse)
async def like_reel(
    reel_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("reel_like")),
):
    toggle = runtime.like_toggle(REELS, reel_id, identity.user_id)
    try:
        liked = await toggle.load()
        if not liked:
            liked = await toggle.toggle()
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return await _like_state(runtime, reel_id, liked)


@router.delete("/{reel_id}/like", response_model=LikeStateResponse)
async def unlike_reel(
    reel_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    toggle = runtime.like_toggle(REELS, reel_id, identity.user_id)
    try:
        liked = await toggle.load()
        if liked:
            liked = await toggle.toggle()
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return await _like_state(runtime, reel_id, liked)


@router.get("/{reel_id}/comments", response_model=List[Comment])
async def read_comments(
    reel_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    runtime: CoachRuntime = Depends(get_runtime),
):
    return await list_comments(runtime.store, REELS, reel_id, limit=limit)


@router.post("/{reel_id}/comments", response_model=Comment)
async def post_comment(
    reel_id: str,
    request: CreateCommentRequest,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("reel_comment")),
):
    try:
        return await add_comment(
            runtime.store,
            REELS,
            reel_id,
            identity.user_id,
            request.text,
            username=identity.display_name,
        )
    except (CoordinationError, ValueError) as exc:
        raise http_error(exc) from exc


@router.delete("/{reel_id}/comments/{comment_id}")
async def remove_comment(
    reel_id: str,
    comment_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    try:
        await delete_comment(runtime.store, REELS, reel_id, comment_id, identity.user_id)
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return {"deleted": True, "comment_id": comment_id}
