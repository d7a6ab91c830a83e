"""
Trainer videos shown in the main feed.

Publishing and deleting a video move the owner's ``postsCount`` in the same
transaction as the video document. Deletion checks ownership before touching
storage and removes the video's likes and comments with it.
"""

import logging
import uuid
from typing import List, Optional

from models.content import VIDEOS, FeedVideo
from models.sessions import USERS, WorkoutType
from services.document_store import DocumentStore, FieldFilter, Transaction
from services.engagement import VIDEOS as VIDEO_ENGAGEMENT
from services.errors import DocumentNotFoundError, NotAuthorizedError
from services.storage import BlobStorage

logger = logging.getLogger(__name__)


async def create_feed_video(
    store: DocumentStore,
    owner_id: str,
    title: str,
    video_url: str,
    workout_type: WorkoutType = WorkoutType.OTHER,
    thumbnail_url: Optional[str] = None,
    trainer: Optional[str] = None,
) -> FeedVideo:
    title = (title or "").strip()
    if not title:
        raise ValueError("Video title cannot be empty.")
    video = FeedVideo(
        id=uuid.uuid4().hex,
        owner_id=owner_id,
        title=title,
        video_url=video_url,
        thumbnail_url=thumbnail_url,
        trainer=trainer or "",
        workout_type=workout_type,
    )

    async def _create(txn: Transaction) -> FeedVideo:
        owner = await txn.get(USERS, owner_id)
        posts = int(owner.get("postsCount") or 0) if owner is not None else 0
        txn.create(VIDEOS, video.to_document(), doc_id=video.id)
        txn.set(USERS, owner_id, {"postsCount": posts + 1}, merge=True)
        return video

    created = await store.run_transaction(_create)
    logger.info("Published feed video %s for %s", created.id, owner_id)
    return created


async def get_feed_video(store: DocumentStore, video_id: str) -> Optional[FeedVideo]:
    snapshot = await store.get(VIDEOS, video_id)
    return FeedVideo.from_document(snapshot) if snapshot is not None else None


async def list_feed_videos(
    store: DocumentStore,
    workout_type: Optional[WorkoutType] = None,
    limit: int = 5,
) -> List[FeedVideo]:
    filters = [FieldFilter("workoutType", "==", workout_type)] if workout_type else []
    snapshots = await store.query(VIDEOS, filters, order_by="createdAt", descending=True, limit=limit)
    return [FeedVideo.from_document(snapshot) for snapshot in snapshots]


async def delete_feed_video(
    store: DocumentStore,
    storage: BlobStorage,
    video_id: str,
    requester_id: str,
) -> None:
    video = await get_feed_video(store, video_id)
    if video is None:
        raise DocumentNotFoundError(VIDEOS, video_id)
    if video.owner_id != requester_id:
        raise NotAuthorizedError("Not authorized to delete this video.")

    await storage.delete(video.video_url)
    if video.thumbnail_url:
        await storage.delete(video.thumbnail_url)

    likes = VIDEO_ENGAGEMENT.likes_collection(video_id)
    comments = VIDEO_ENGAGEMENT.comments_collection(video_id)
    like_ids = [snapshot.id for snapshot in await store.query(likes)]
    comment_ids = [snapshot.id for snapshot in await store.query(comments)]

    async def _delete(txn: Transaction) -> None:
        current = await txn.get(VIDEOS, video_id)
        owner = await txn.get(USERS, video.owner_id)
        if current is None:
            return
        txn.delete(VIDEOS, video_id)
        for like_id in like_ids:
            txn.delete(likes, like_id)
        for comment_id in comment_ids:
            txn.delete(comments, comment_id)
        if owner is not None:
            posts = int(owner.get("postsCount") or 0)
            txn.update(USERS, video.owner_id, {"postsCount": max(0, posts - 1)})

    await store.run_transaction(_delete)
    logger.info("Deleted feed video %s with %d likes and %d comments", video_id, len(like_ids), len(comment_ids))
