"""
Two-person partner workout sessions.

Status only moves forward: waiting -> inProgress -> ended. The
waiting -> inProgress claim runs in a transaction so exactly one of several
racing joiners becomes the partner; the others get ``SessionConflictError``.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Union

from config import settings
from models.sessions import (
    PARTNER_SESSIONS,
    STATUS_ORDER,
    CommunityReel,
    PartnerSession,
    RatingSummary,
    SessionStatus,
    WorkoutType,
)
from services.community_reels import publish_recording
from services.document_store import DocumentStore, FieldFilter, Transaction, parse_timestamp, utc_now
from services.errors import (
    DocumentNotFoundError,
    NotAuthorizedError,
    SessionConflictError,
    SessionStateError,
)
from services.ratings import submit_user_rating
from services.session_sync import Projection, SessionSyncClient, Subscription
from services.storage import BlobStorage
from services.transport import ChannelRole, ChannelSession, MediaTransport

logger = logging.getLogger(__name__)


class WorkoutRecorder(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> Optional[str]:
        """Finish recording and return the local file path, if anything was captured."""
        ...


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


async def create_partner_session(
    store: DocumentStore,
    host_id: str,
    workout_type: WorkoutType,
    duration_minutes: int,
    now: Optional[datetime] = None,
) -> PartnerSession:
    session = PartnerSession(
        id=uuid.uuid4().hex,
        host_id=host_id,
        channel_id=f"partner_{uuid.uuid4()}",
        created_at=now or utc_now(),
        workout_type=workout_type,
        duration_minutes=duration_minutes,
    )
    await store.create(PARTNER_SESSIONS, session.to_document(), doc_id=session.id)
    logger.info("Created partner session %s for host %s", session.id, host_id)
    return session


async def get_partner_session(store: DocumentStore, session_id: str) -> Optional[PartnerSession]:
    snapshot = await store.get(PARTNER_SESSIONS, session_id)
    return PartnerSession.from_document(snapshot) if snapshot is not None else None


async def claim_partner_session(store: DocumentStore, session_id: str, partner_id: str) -> PartnerSession:
    async def _claim(txn: Transaction) -> PartnerSession:
        snapshot = await txn.get(PARTNER_SESSIONS, session_id)
        if snapshot is None:
            raise DocumentNotFoundError(PARTNER_SESSIONS, session_id)
        session = PartnerSession.from_document(snapshot)
        if session.host_id == partner_id:
            raise SessionStateError("Hosts cannot join their own partner session.")
        if session.status != SessionStatus.WAITING or not session.is_active:
            raise SessionConflictError(f"Partner session {session_id} is no longer waiting for a partner.")
        txn.update(
            PARTNER_SESSIONS,
            session_id,
            {"partnerId": partner_id, "status": SessionStatus.IN_PROGRESS},
        )
        return session.model_copy(update={"partner_id": partner_id, "status": SessionStatus.IN_PROGRESS})

    session = await store.run_transaction(_claim)
    logger.info("Partner %s joined session %s", partner_id, session_id)
    return session


async def end_partner_session(store: DocumentStore, session_id: str) -> PartnerSession:
    """Move a session to ``ended``; ending an ended session changes nothing."""

    async def _end(txn: Transaction) -> PartnerSession:
        snapshot = await txn.get(PARTNER_SESSIONS, session_id)
        if snapshot is None:
            raise DocumentNotFoundError(PARTNER_SESSIONS, session_id)
        session = PartnerSession.from_document(snapshot)
        if session.status == SessionStatus.ENDED and not session.is_active:
            return session
        txn.update(PARTNER_SESSIONS, session_id, {"isActive": False, "status": SessionStatus.ENDED})
        return session.model_copy(update={"is_active": False, "status": SessionStatus.ENDED})

    session = await store.run_transaction(_end)
    logger.info("Ended partner session %s", session_id)
    return session


async def cleanup_stale_partner_sessions(store: DocumentStore, now: Optional[datetime] = None) -> List[str]:
    """End ``waiting`` sessions older than ``PARTNER_SESSION_STALE_MINUTES``."""
    cutoff = (now or utc_now()) - timedelta(minutes=settings.PARTNER_SESSION_STALE_MINUTES)
    stale = await store.query(
        PARTNER_SESSIONS,
        [
            FieldFilter("isActive", "==", True),
            FieldFilter("status", "==", SessionStatus.WAITING),
            FieldFilter("createdAt", "<", cutoff),
        ],
        order_by="createdAt",
    )

    async def _expire(txn: Transaction, session_id: str) -> bool:
        snapshot = await txn.get(PARTNER_SESSIONS, session_id)
        if snapshot is None or snapshot.get("status") != SessionStatus.WAITING.value:
            return False
        created_at = parse_timestamp(snapshot.get("createdAt"))
        if created_at is not None and created_at >= cutoff:
            return False
        txn.update(PARTNER_SESSIONS, session_id, {"isActive": False, "status": SessionStatus.ENDED})
        return True

    closed: List[str] = []
    for snapshot in stale:
        try:
            expired = await store.run_transaction(lambda txn, sid=snapshot.id: _expire(txn, sid))
        except Exception as exc:
            logger.warning("Could not end stale partner session %s: %s", snapshot.id, exc)
            continue
        if expired:
            closed.append(snapshot.id)
    if closed:
        logger.info("Ended %d stale partner sessions", len(closed))
    return closed


async def list_available_partner_sessions(
    store: DocumentStore,
    now: Optional[datetime] = None,
) -> List[PartnerSession]:
    try:
        await cleanup_stale_partner_sessions(store, now=now)
    except Exception as exc:
        logger.warning("Stale partner session sweep failed: %s", exc)
    snapshots = await store.query(
        PARTNER_SESSIONS,
        [FieldFilter("isActive", "==", True), FieldFilter("status", "==", SessionStatus.WAITING)],
        order_by="createdAt",
        descending=True,
    )
    return [PartnerSession.from_document(snapshot) for snapshot in snapshots]


async def submit_partner_rating(
    store: DocumentStore,
    session_id: str,
    rater_id: str,
    rated_user_id: str,
    rating: int,
) -> RatingSummary:
    session = await get_partner_session(store, session_id)
    if session is None:
        raise DocumentNotFoundError(PARTNER_SESSIONS, session_id)
    if session.status != SessionStatus.ENDED:
        raise SessionStateError("Ratings open once the partner session has ended.")
    participants = set(session.participants)
    if rater_id == rated_user_id or rater_id not in participants or rated_user_id not in participants:
        raise NotAuthorizedError("Ratings are only accepted between the two session participants.")
    return await submit_user_rating(
        store,
        rated_user_id,
        rating,
        session_id=session_id,
        rater_id=rater_id,
    )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class PartnerSessionCoordinator:
    def __init__(
        self,
        sync: SessionSyncClient,
        transport: Union[MediaTransport, ChannelSession],
        recorder: Optional[WorkoutRecorder] = None,
        storage: Optional[BlobStorage] = None,
    ):
        self._sync = sync
        self._store = sync.store
        self._channel = transport if isinstance(transport, ChannelSession) else ChannelSession(transport)
        self._recorder = recorder
        self._storage = storage
        self._subscription: Optional[Subscription] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._recording = False

        self.session: Optional[PartnerSession] = None
        self.projection: Projection[SessionStatus] = Projection()
        self.recording_path: Optional[str] = None
        self.reel: Optional[CommunityReel] = None
        self.handoff_error: Optional[str] = None

    @property
    def channel(self) -> ChannelSession:
        return self._channel

    @property
    def recording(self) -> bool:
        return self._recording

    async def create(self, host_id: str, workout_type: WorkoutType, duration_minutes: int) -> PartnerSession:
        session = await create_partner_session(self._store, host_id, workout_type, duration_minutes)
        self._accept(session)
        return session

    async def join(self, session_id: str, partner_id: str) -> PartnerSession:
        self.projection.apply_local(SessionStatus.IN_PROGRESS)
        try:
            session = await claim_partner_session(self._store, session_id, partner_id)
        except Exception:
            self.projection.rollback()
            raise
        self._accept(session)
        return session

    async def start_media(self, session: Optional[PartnerSession] = None) -> None:
        session = session or self.session
        if session is None:
            raise SessionStateError("Create or join a partner session before starting media.")
        if session.status == SessionStatus.ENDED:
            raise SessionStateError("Partner session has already ended.")

        await self._channel.join(session.channel_id, ChannelRole.BROADCASTER)
        if self._recorder is not None and not self._recording:
            await self._recorder.start()
            self._recording = True
        if self._subscription is None:
            self._subscription = await self._sync.watch(
                PARTNER_SESSIONS, session.id, PartnerSession.from_document
            )
            self._watch_task = asyncio.create_task(self._follow(self._subscription))

    async def end(self, session_id: Optional[str] = None) -> PartnerSession:
        session_id = session_id or (self.session.id if self.session else None)
        if session_id is None:
            raise SessionStateError("No partner session to end.")

        self.projection.apply_local(SessionStatus.ENDED)
        try:
            ended = await end_partner_session(self._store, session_id)
        except Exception:
            self.projection.rollback()
            raise
        self._accept(ended)
        await self._stop_watch()
        await self._stop_media()
        await self.handoff_recording()
        return ended

    async def handoff_recording(self) -> Optional[CommunityReel]:
        """Publish the captured recording as a community reel, once."""
        path, session = self.recording_path, self.session
        if not path or session is None or self._storage is None:
            return None
        self.recording_path = None
        try:
            reel = await publish_recording(self._store, self._storage, session, path)
            await self._store.update(PARTNER_SESSIONS, session.id, {"reelId": reel.id})
        except Exception as exc:
            self.handoff_error = str(exc)
            logger.warning("Recording handoff failed for partner session %s: %s", session.id, exc)
            return None
        self.reel = reel
        return reel

    async def submit_rating(self, session_id: str, rater_id: str, rated_user_id: str, rating: int) -> RatingSummary:
        return await submit_partner_rating(self._store, session_id, rater_id, rated_user_id, rating)

    async def shutdown(self) -> None:
        await self._stop_watch()
        await self._stop_media()

    def _accept(self, session: PartnerSession) -> None:
        current = self.session
        if current is not None and current.id == session.id:
            if STATUS_ORDER[session.status] < STATUS_ORDER[current.status]:
                return
        self.session = session
        self.projection.confirm(session.status)

    async def _follow(self, subscription: Subscription) -> None:
        async for update in subscription:
            self._accept(update)
            if update.status == SessionStatus.ENDED:
                await self._stop_watch()
                await self._stop_media()
                break

    async def _stop_watch(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.cancel()
        task, self._watch_task = self._watch_task, None
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})

    async def _stop_media(self) -> None:
        if self._recording and self._recorder is not None:
            self._recording = False
            try:
                path = await self._recorder.stop()
            except Exception as exc:
                logger.warning("Stopping the workout recorder failed: %s", exc)
                path = None
            if path:
                self.recording_path = path
        try:
            await self._channel.leave()
        except Exception as exc:
            logger.warning("Leaving partner channel failed: %s", exc)
