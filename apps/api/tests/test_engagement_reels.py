import asyncio

import pytest

from models.sessions import COMMUNITY_REELS, CommunityReel, WorkoutType
from services.community_reels import delete_community_reel, get_community_reel, list_community_reels
from services.engagement import (
    REELS,
    VIDEOS,
    LikeToggle,
    add_comment,
    delete_comment,
    has_liked,
    like_content,
    list_comments,
    unlike_content,
)
from services.errors import DocumentNotFoundError, NotAuthorizedError
from services.ratings import rating_receipt_id, validate_rating


async def _seed_reel(store, blob_storage, reel_id="r1", participants=("host", "partner")):
    video_url = await blob_storage.upload(b"video", f"reels/workout_{reel_id}.mp4")
    thumb_url = await blob_storage.upload(b"thumb", f"thumbnails/workout_{reel_id}.jpg")
    reel = CommunityReel(
        id=reel_id,
        video_url=video_url,
        thumbnail_url=thumb_url,
        participants=list(participants),
        duration=42.0,
        workout_type=WorkoutType.HIIT,
    )
    await store.create(COMMUNITY_REELS, reel.to_document(), doc_id=reel_id)
    return reel


@pytest.mark.asyncio
async def test_like_and_unlike_keep_counter_in_step(store, blob_storage):
    await _seed_reel(store, blob_storage)

    assert await like_content(store, REELS, "r1", "u1") is True
    assert await like_content(store, REELS, "r1", "u1") is False
    assert await like_content(store, REELS, "r1", "u2") is True
    assert (await get_community_reel(store, "r1")).like_count == 2

    assert await unlike_content(store, REELS, "r1", "u1") is True
    assert await unlike_content(store, REELS, "r1", "u1") is False
    assert (await get_community_reel(store, "r1")).like_count == 1
    assert await has_liked(store, REELS, "r1", "u2") is True


@pytest.mark.asyncio
async def test_concurrent_likes_from_different_users_all_count(store):
    await store.create("videos", {"likes": 0, "comments": 0}, doc_id="v1")

    await asyncio.gather(*(like_content(store, VIDEOS, "v1", f"user-{index}") for index in range(6)))

    assert (await store.get("videos", "v1")).get("likes") == 6


@pytest.mark.asyncio
async def test_liking_missing_content_raises(store):
    with pytest.raises(DocumentNotFoundError):
        await like_content(store, REELS, "missing", "u1")


@pytest.mark.asyncio
async def test_comments_update_counter_and_enforce_ownership(store, blob_storage):
    await _seed_reel(store, blob_storage)

    comment = await add_comment(store, REELS, "r1", "u1", "  Great session!  ")
    assert comment.text == "Great session!"
    assert comment.username == "Anonymous User"
    await add_comment(store, REELS, "r1", "u2", "Nice form", username="Sam")

    with pytest.raises(ValueError):
        await add_comment(store, REELS, "r1", "u1", "   ")

    comments = await list_comments(store, REELS, "r1")
    assert {item.text for item in comments} == {"Great session!", "Nice form"}
    assert (await get_community_reel(store, "r1")).comment_count == 2

    with pytest.raises(NotAuthorizedError):
        await delete_comment(store, REELS, "r1", comment.id, "u2")

    await delete_comment(store, REELS, "r1", comment.id, "u1")
    assert (await get_community_reel(store, "r1")).comment_count == 1


@pytest.mark.asyncio
async def test_like_toggle_rolls_back_on_failure(store, blob_storage):
    await _seed_reel(store, blob_storage)
    toggle = LikeToggle(store, REELS, "r1", "u1")
    assert await toggle.load() is False

    assert await toggle.toggle() is True
    assert toggle.liked is True
    assert await toggle.toggle() is False

    missing = LikeToggle(store, REELS, "gone", "u1")
    with pytest.raises(DocumentNotFoundError):
        await missing.toggle()
    assert missing.liked is False
    assert missing.projection.pending is False


@pytest.mark.asyncio
async def test_list_reels_filters_by_participant(store, blob_storage):
    await _seed_reel(store, blob_storage, "r1", ("a", "b"))
    await _seed_reel(store, blob_storage, "r2", ("c", "d"))

    assert {reel.id for reel in await list_community_reels(store)} == {"r1", "r2"}
    assert [reel.id for reel in await list_community_reels(store, user_id="c")] == ["r2"]


@pytest.mark.asyncio
async def test_only_participants_can_delete_reel(store, blob_storage):
    reel = await _seed_reel(store, blob_storage)
    video_path = blob_storage.local_path(blob_storage.path_for(reel.video_url))
    assert video_path.exists()

    with pytest.raises(NotAuthorizedError):
        await delete_community_reel(store, blob_storage, "r1", "stranger")
    assert await get_community_reel(store, "r1") is not None

    await delete_community_reel(store, blob_storage, "r1", "partner")
    assert await get_community_reel(store, "r1") is None
    assert not video_path.exists()

    with pytest.raises(DocumentNotFoundError):
        await delete_community_reel(store, blob_storage, "r1", "partner")


def test_rating_validation():
    assert validate_rating(1) == 1
    assert validate_rating(5) == 5
    for bad in (0, 6, True, 3.5):
        with pytest.raises(ValueError):
            validate_rating(bad)
    assert rating_receipt_id("s1", "u1") == "s1:u1"


def test_blob_storage_rejects_paths_outside_root(blob_storage):
    with pytest.raises(ValueError):
        blob_storage.local_path("../escape.mp4")
