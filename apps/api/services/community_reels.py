"""Community reels published from partner workout recordings."""

import asyncio
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional

from models.sessions import COMMUNITY_REELS, CommunityReel, PartnerSession
from multimodal.video import extract_thumbnail, probe_media
from services.document_store import DocumentStore, FieldFilter
from services.errors import DocumentNotFoundError, NotAuthorizedError
from services.storage import BlobStorage

logger = logging.getLogger(__name__)


async def _upload_thumbnail(storage: BlobStorage, recording_path: str, blob_path: str) -> Optional[str]:
    with tempfile.TemporaryDirectory() as tmp_dir:
        try:
            thumb_file = await asyncio.to_thread(
                extract_thumbnail, recording_path, os.path.join(tmp_dir, "thumb.jpg"), 1.0
            )
            data = await asyncio.to_thread(Path(thumb_file).read_bytes)
        except Exception as exc:
            logger.warning("Thumbnail extraction failed for %s: %s", recording_path, exc)
            return None
        return await storage.upload(data, blob_path)


async def _recording_duration(recording_path: str) -> float:
    try:
        probe = await asyncio.to_thread(probe_media, recording_path)
    except Exception as exc:
        logger.warning("Could not probe recording %s: %s", recording_path, exc)
        return 0.0
    return probe.duration


async def publish_recording(
    store: DocumentStore,
    storage: BlobStorage,
    session: PartnerSession,
    recording_path: str,
    remove_local: bool = True,
) -> CommunityReel:
    """Upload a finished partner recording and publish it as a community reel."""
    blob_token = uuid.uuid4()
    thumbnail_url = await _upload_thumbnail(storage, recording_path, f"thumbnails/workout_{blob_token}.jpg")
    duration = await _recording_duration(recording_path)

    video_data = await asyncio.to_thread(Path(recording_path).read_bytes)
    video_url = await storage.upload(video_data, f"reels/workout_{blob_token}.mp4")

    reel = CommunityReel(
        id=uuid.uuid4().hex,
        video_url=video_url,
        thumbnail_url=thumbnail_url,
        participants=session.participants,
        duration=duration,
        workout_type=session.workout_type,
        session_id=session.id,
    )
    await store.create(COMMUNITY_REELS, reel.to_document(), doc_id=reel.id)
    logger.info("Published community reel %s from partner session %s", reel.id, session.id)

    if remove_local:
        try:
            await asyncio.to_thread(Path(recording_path).unlink, True)
        except OSError as exc:
            logger.warning("Could not remove local recording %s: %s", recording_path, exc)
    return reel


async def get_community_reel(store: DocumentStore, reel_id: str) -> Optional[CommunityReel]:
    snapshot = await store.get(COMMUNITY_REELS, reel_id)
    return CommunityReel.from_document(snapshot) if snapshot is not None else None


async def list_community_reels(
    store: DocumentStore,
    user_id: Optional[str] = None,
    limit: int = 20,
) -> List[CommunityReel]:
    filters = [FieldFilter("participants", "array_contains", user_id)] if user_id else []
    snapshots = await store.query(
        COMMUNITY_REELS,
        filters,
        order_by="createdAt",
        descending=True,
        limit=limit,
    )
    return [CommunityReel.from_document(snapshot) for snapshot in snapshots]


async def delete_community_reel(
    store: DocumentStore,
    storage: BlobStorage,
    reel_id: str,
    requester_id: str,
) -> None:
    reel = await get_community_reel(store, reel_id)
    if reel is None:
        raise DocumentNotFoundError(COMMUNITY_REELS, reel_id)
    if requester_id not in reel.participants:
        raise NotAuthorizedError("Only participants can delete this reel.")

    await storage.delete(reel.video_url)
    if reel.thumbnail_url:
        await storage.delete(reel.thumbnail_url)
    await store.delete(COMMUNITY_REELS, reel_id)
    logger.info("Deleted community reel %s", reel_id)
