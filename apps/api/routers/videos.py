"""Trainer videos in the main feed."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from models.content import FeedVideo
from models.sessions import WorkoutType
from routers.auth_scope import get_identity
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.engagement import VIDEOS
from services.errors import CoordinationError
from services.feed_videos import create_feed_video, delete_feed_video, get_feed_video, list_feed_videos
from services.identity import IdentityClaims
from services.runtime import CoachRuntime, get_runtime

router = APIRouter()


class CreateVideoRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    video_url: str
    workout_type: WorkoutType = WorkoutType.OTHER
    thumbnail_url: Optional[str] = None


class VideoLikeResponse(BaseModel):
    video_id: str
    liked: bool
    likes: int


@router.get("", response_model=List[FeedVideo])
async def list_videos(
    workout_type: Optional[WorkoutType] = None,
    limit: int = Query(default=5, ge=1, le=50),
    runtime: CoachRuntime = Depends(get_runtime),
):
    return await list_feed_videos(runtime.store, workout_type=workout_type, limit=limit)


@router.post("", response_model=FeedVideo)
async def publish_video(
    request: CreateVideoRequest,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("video_publish")),
):
    try:
        return await create_feed_video(
            runtime.store,
            identity.user_id,
            request.title,
            request.video_url,
            workout_type=request.workout_type,
            thumbnail_url=request.thumbnail_url,
            trainer=identity.display_name,
        )
    except (CoordinationError, ValueError) as exc:
        raise http_error(exc) from exc


@router.get("/{video_id}", response_model=FeedVideo)
async def read_video(video_id: str, runtime: CoachRuntime = Depends(get_runtime)):
    video = await get_feed_video(runtime.store, video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


@router.delete("/{video_id}")
async def remove_video(
    video_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    try:
        await delete_feed_video(runtime.store, runtime.storage, video_id, identity.user_id)
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return {"deleted": True, "video_id": video_id}


async def _like_state(runtime: CoachRuntime, video_id: str, liked: bool) -> VideoLikeResponse:
    video = await get_feed_video(runtime.store, video_id)
    return VideoLikeResponse(video_id=video_id, liked=liked, likes=video.likes if video else 0)


@router.post("/{video_id}/like", response_model=VideoLikeResponse)
async def like_video(
    video_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("video_like")),
):
    toggle = runtime.like_toggle(VIDEOS, video_id, identity.user_id)
    try:
        liked = await toggle.load()
        if not liked:
            liked = await toggle.toggle()
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return await _like_state(runtime, video_id, liked)


@router.delete("/{video_id}/like", response_model=VideoLikeResponse)
async def unlike_video(
    video_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    toggle = runtime.like_toggle(VIDEOS, video_id, identity.user_id)
    try:
        liked = await toggle.load()
        if liked:
            liked = await toggle.toggle()
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return await _like_state(runtime, video_id, liked)
