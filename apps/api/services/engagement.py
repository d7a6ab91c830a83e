"""Likes and comments on feed videos and community reels.

Counters always change inside the same transaction that writes or removes the
per-user like marker or the comment document.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from models.sessions import COMMUNITY_REELS
from services.document_store import DocumentSnapshot, DocumentStore, Transaction, parse_timestamp, utc_now
from services.errors import DocumentNotFoundError, NotAuthorizedError
from services.session_sync import Projection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngagementTarget:
    collection: str
    like_field: str
    comment_field: str

    def likes_collection(self, content_id: str) -> str:
        return f"{self.collection}/{content_id}/likes"

    def comments_collection(self, content_id: str) -> str:
        return f"{self.collection}/{content_id}/comments"


VIDEOS = EngagementTarget("videos", "likes", "comments")
REELS = EngagementTarget(COMMUNITY_REELS, "likeCount", "commentCount")


class Comment(BaseModel):
    id: str
    content_id: str
    user_id: str
    username: str
    text: str
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_document(cls, content_id: str, snapshot: DocumentSnapshot) -> "Comment":
        return cls(
            id=snapshot.id,
            content_id=content_id,
            user_id=str(snapshot.get("userId") or ""),
            username=str(snapshot.get("username") or ""),
            text=str(snapshot.get("text") or ""),
            created_at=parse_timestamp(snapshot.get("createdAt")) or utc_now(),
        )


async def _require_content(txn: Transaction, target: EngagementTarget, content_id: str) -> DocumentSnapshot:
    snapshot = await txn.get(target.collection, content_id)
    if snapshot is None:
        raise DocumentNotFoundError(target.collection, content_id)
    return snapshot


async def like_content(store: DocumentStore, target: EngagementTarget, content_id: str, user_id: str) -> bool:
    """Returns False when the user had already liked the content."""
    likes = target.likes_collection(content_id)

    async def _like(txn: Transaction) -> bool:
        content = await _require_content(txn, target, content_id)
        if await txn.get(likes, user_id) is not None:
            return False
        count = int(content.get(target.like_field) or 0)
        txn.update(target.collection, content_id, {target.like_field: count + 1})
        txn.set(likes, user_id, {"userId": user_id, "createdAt": utc_now()})
        return True

    return await store.run_transaction(_like)


async def unlike_content(store: DocumentStore, target: EngagementTarget, content_id: str, user_id: str) -> bool:
    likes = target.likes_collection(content_id)

    async def _unlike(txn: Transaction) -> bool:
        content = await _require_content(txn, target, content_id)
        if await txn.get(likes, user_id) is None:
            return False
        count = int(content.get(target.like_field) or 0)
        txn.update(target.collection, content_id, {target.like_field: max(0, count - 1)})
        txn.delete(likes, user_id)
        return True

    return await store.run_transaction(_unlike)


async def has_liked(store: DocumentStore, target: EngagementTarget, content_id: str, user_id: str) -> bool:
    return await store.get(target.likes_collection(content_id), user_id) is not None


async def add_comment(
    store: DocumentStore,
    target: EngagementTarget,
    content_id: str,
    user_id: str,
    text: str,
    username: Optional[str] = None,
) -> Comment:
    text = (text or "").strip()
    if not text:
        raise ValueError("Comment text cannot be empty.")
    comment = Comment(
        id=uuid.uuid4().hex,
        content_id=content_id,
        user_id=user_id,
        username=username or "Anonymous User",
        text=text,
    )

    async def _add(txn: Transaction) -> Comment:
        content = await _require_content(txn, target, content_id)
        count = int(content.get(target.comment_field) or 0)
        txn.update(target.collection, content_id, {target.comment_field: count + 1})
        txn.create(
            target.comments_collection(content_id),
            {
                "videoId": content_id,
                "userId": comment.user_id,
                "username": comment.username,
                "text": comment.text,
                "createdAt": comment.created_at,
            },
            doc_id=comment.id,
        )
        return comment

    return await store.run_transaction(_add)


async def delete_comment(
    store: DocumentStore,
    target: EngagementTarget,
    content_id: str,
    comment_id: str,
    user_id: str,
) -> None:
    comments = target.comments_collection(content_id)
    existing = await store.get(comments, comment_id)
    if existing is None:
        raise DocumentNotFoundError(comments, comment_id)
    if existing.get("userId") != user_id:
        raise NotAuthorizedError("Not authorized to delete this comment.")

    async def _delete(txn: Transaction) -> None:
        content = await _require_content(txn, target, content_id)
        if await txn.get(comments, comment_id) is None:
            return
        count = int(content.get(target.comment_field) or 0)
        txn.update(target.collection, content_id, {target.comment_field: max(0, count - 1)})
        txn.delete(comments, comment_id)

    await store.run_transaction(_delete)


async def list_comments(
    store: DocumentStore,
    target: EngagementTarget,
    content_id: str,
    limit: int = 20,
) -> List[Comment]:
    snapshots = await store.query(
        target.comments_collection(content_id),
        order_by="createdAt",
        descending=True,
        limit=limit,
    )
    return [Comment.from_document(content_id, snapshot) for snapshot in snapshots]


class LikeToggle:
    """Heart button state: flips locally first, then confirms against the store."""

    def __init__(self, store: DocumentStore, target: EngagementTarget, content_id: str, user_id: str):
        self._store = store
        self._target = target
        self.content_id = content_id
        self.user_id = user_id
        self.projection: Projection[bool] = Projection(False)

    @property
    def liked(self) -> bool:
        return bool(self.projection.current)

    async def load(self) -> bool:
        liked = await has_liked(self._store, self._target, self.content_id, self.user_id)
        self.projection.confirm(liked)
        return liked

    async def toggle(self) -> bool:
        desired = not self.liked
        self.projection.apply_local(desired)
        try:
            if desired:
                await like_content(self._store, self._target, self.content_id, self.user_id)
            else:
                await unlike_content(self._store, self._target, self.content_id, self.user_id)
        except Exception:
            self.projection.rollback()
            raise
        self.projection.confirm(desired)
        return desired
