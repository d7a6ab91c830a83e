"""
Live broadcast sessions.

Store helpers operate on ``liveSessions`` documents. ``LiveSessionCoordinator``
drives the host side (NONE -> CREATING -> LIVE -> ENDING -> ENDED) and
``LiveSessionViewer`` the audience side. Workout plan generation is a single
background request started when a host ends a session with a transcript.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from config import settings
from models.content import SAVED_WORKOUTS
from models.sessions import LIVE_SESSIONS, LiveSession
from multimodal.llm import generate_structured_workout, generate_workout_plan
from services.document_store import DocumentStore, FieldFilter, Transaction, utc_now
from services.errors import DocumentNotFoundError, GenerationError, SessionStateError, TransportError
from services.session_sync import SessionSyncClient, Subscription
from services.transcription import SpeechTranscriber
from services.transport import ChannelRole, ChannelSession, MediaTransport

logger = logging.getLogger(__name__)


WorkoutPlanGenerator = Callable[[str], Awaitable[str]]


async def generate_workout_plan_in_thread(transcript: str) -> str:
    return await asyncio.to_thread(generate_workout_plan, transcript)


def _channel_session(transport: Union[MediaTransport, ChannelSession]) -> ChannelSession:
    return transport if isinstance(transport, ChannelSession) else ChannelSession(transport)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


async def create_live_session(
    store: DocumentStore,
    host_id: str,
    host_name: str,
    channel_id: str,
    now: Optional[datetime] = None,
) -> LiveSession:
    session = LiveSession(
        id=uuid.uuid4().hex,
        host_id=host_id,
        host_name=host_name,
        channel_id=channel_id,
        created_at=now or utc_now(),
    )
    await store.create(LIVE_SESSIONS, session.to_document(), doc_id=session.id)
    logger.info("Created live session %s for host %s", session.id, host_id)
    return session


async def get_live_session(store: DocumentStore, session_id: str) -> Optional[LiveSession]:
    snapshot = await store.get(LIVE_SESSIONS, session_id)
    return LiveSession.from_document(snapshot) if snapshot is not None else None


async def end_live_session(store: DocumentStore, session_id: str) -> None:
    await store.update(LIVE_SESSIONS, session_id, {"isActive": False})
    logger.info("Ended live session %s", session_id)


async def update_live_session_transcript(store: DocumentStore, session_id: str, transcript: str) -> None:
    await store.update(LIVE_SESSIONS, session_id, {"workoutTranscript": transcript})


async def update_live_session_workout(store: DocumentStore, session_id: str, workout: str) -> None:
    await store.update(LIVE_SESSIONS, session_id, {"generatedWorkout": workout, "generationError": None})


async def record_live_session_generation_error(store: DocumentStore, session_id: str, message: str) -> None:
    await store.update(LIVE_SESSIONS, session_id, {"generationError": message})


async def cleanup_stale_live_sessions(store: DocumentStore, now: Optional[datetime] = None) -> List[str]:
    """Force-close active sessions older than ``LIVE_SESSION_STALE_MINUTES``."""
    cutoff = (now or utc_now()) - timedelta(minutes=settings.LIVE_SESSION_STALE_MINUTES)
    stale = await store.query(
        LIVE_SESSIONS,
        [FieldFilter("isActive", "==", True), FieldFilter("createdAt", "<", cutoff)],
    )
    closed: List[str] = []
    for snapshot in stale:
        try:
            await store.update(LIVE_SESSIONS, snapshot.id, {"isActive": False})
            closed.append(snapshot.id)
        except Exception as exc:
            logger.warning("Could not close stale live session %s: %s", snapshot.id, exc)
    if closed:
        logger.info("Closed %d stale live sessions", len(closed))
    return closed


async def list_active_live_sessions(store: DocumentStore, now: Optional[datetime] = None) -> List[LiveSession]:
    try:
        await cleanup_stale_live_sessions(store, now=now)
    except Exception as exc:
        logger.warning("Stale live session sweep failed: %s", exc)
    snapshots = await store.query(
        LIVE_SESSIONS,
        [FieldFilter("isActive", "==", True)],
        order_by="createdAt",
        descending=True,
    )
    return [LiveSession.from_document(snapshot) for snapshot in snapshots]


async def add_live_viewer(store: DocumentStore, session_id: str, viewer_id: str) -> int:
    async def _register(txn: Transaction) -> int:
        snapshot = await txn.get(LIVE_SESSIONS, session_id)
        if snapshot is None:
            raise DocumentNotFoundError(LIVE_SESSIONS, session_id)
        viewers = list(snapshot.get("viewers") or [])
        if viewer_id not in viewers:
            viewers.append(viewer_id)
            txn.update(LIVE_SESSIONS, session_id, {"viewers": viewers, "viewerCount": len(viewers)})
        return len(viewers)

    return await store.run_transaction(_register)


async def remove_live_viewer(store: DocumentStore, session_id: str, viewer_id: str) -> int:
    async def _deregister(txn: Transaction) -> int:
        snapshot = await txn.get(LIVE_SESSIONS, session_id)
        if snapshot is None:
            return 0
        viewers = list(snapshot.get("viewers") or [])
        if viewer_id in viewers:
            viewers.remove(viewer_id)
            txn.update(LIVE_SESSIONS, session_id, {"viewers": viewers, "viewerCount": len(viewers)})
        return len(viewers)

    return await store.run_transaction(_deregister)


async def save_workout_from_session(store: DocumentStore, user_id: str, session: LiveSession) -> str:
    """Store a finished session's plan in the user's saved workouts."""
    if not session.generated_workout:
        raise SessionStateError("Live session has no generated workout to save.")

    source_text = session.workout_transcript or session.generated_workout
    parsed = await asyncio.to_thread(generate_structured_workout, source_text)
    snapshot = await store.create(
        SAVED_WORKOUTS,
        {
            "userId": user_id,
            "title": parsed.title,
            "workoutPlan": parsed.workout_plan,
            "createdAt": utc_now(),
            "sourceSessionId": session.id,
            "type": parsed.type,
            "difficulty": parsed.difficulty,
            "equipment": parsed.equipment,
            "estimatedDuration": parsed.estimated_duration,
        },
    )
    logger.info("Saved workout %s from live session %s for %s", snapshot.id, session.id, user_id)
    return snapshot.id


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------


class LiveSessionState(str, Enum):
    NONE = "none"
    CREATING = "creating"
    LIVE = "live"
    ENDING = "ending"
    ENDED = "ended"


class LiveSessionCoordinator:
    def __init__(
        self,
        sync: SessionSyncClient,
        transport: Union[MediaTransport, ChannelSession],
        transcriber: Optional[SpeechTranscriber] = None,
        generator: Optional[WorkoutPlanGenerator] = None,
    ):
        self._store = sync.store
        self._channel = _channel_session(transport)
        self._transcriber = transcriber
        self._generate = generator or generate_workout_plan_in_thread
        self._transcription_task: Optional[asyncio.Task] = None
        self._generation_task: Optional[asyncio.Task] = None

        self.state = LiveSessionState.NONE
        self.session: Optional[LiveSession] = None
        self.transcript = ""
        self.generated_workout: Optional[str] = None
        self.generation_error: Optional[str] = None

    @property
    def channel(self) -> ChannelSession:
        return self._channel

    @property
    def generating(self) -> bool:
        return self._generation_task is not None and not self._generation_task.done()

    async def start(self, host_id: str, host_name: str) -> LiveSession:
        if self.state not in (LiveSessionState.NONE, LiveSessionState.ENDED):
            raise SessionStateError(f"Cannot start a live session while {self.state.value}.")

        self.state = LiveSessionState.CREATING
        self.transcript = ""
        self.generated_workout = None
        self.generation_error = None
        channel_id = f"live_{uuid.uuid4()}"
        try:
            session = await create_live_session(self._store, host_id, host_name, channel_id)
        except Exception:
            self.state = LiveSessionState.NONE
            raise
        self.session = session

        try:
            await self._channel.join(channel_id, ChannelRole.BROADCASTER)
        except TransportError:
            self.state = LiveSessionState.ENDED
            self.session = session.model_copy(update={"is_active": False})
            try:
                await end_live_session(self._store, session.id)
            except Exception as exc:
                logger.warning("Could not close live session %s after join failure: %s", session.id, exc)
            raise

        self.state = LiveSessionState.LIVE
        if self._transcriber is not None:
            self._transcription_task = asyncio.create_task(self._pump_transcripts(self._transcriber))
        return session

    async def update_transcript(self, text: str) -> None:
        if self.state != LiveSessionState.LIVE or self.session is None:
            raise SessionStateError("Transcript updates are only accepted while live.")
        self.transcript = text
        await update_live_session_transcript(self._store, self.session.id, text)

    async def end(self) -> LiveSession:
        if self.state not in (LiveSessionState.LIVE, LiveSessionState.ENDING) or self.session is None:
            raise SessionStateError(f"Cannot end a live session while {self.state.value}.")

        self.state = LiveSessionState.ENDING
        await self._stop_transcription()
        try:
            await self._channel.leave()
        except Exception as exc:
            logger.warning("Leaving live channel failed: %s", exc)
        await end_live_session(self._store, self.session.id)

        self.state = LiveSessionState.ENDED
        self.session = self.session.model_copy(
            update={"is_active": False, "workout_transcript": self.transcript or None}
        )
        if self.transcript.strip():
            self._generation_task = asyncio.create_task(
                self._generate_workout(self.session.id, self.transcript)
            )
        return self.session

    async def wait_for_generation(self, timeout: Optional[float] = None) -> Optional[str]:
        task = self._generation_task
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.generated_workout

    async def shutdown(self) -> None:
        await self._stop_transcription()
        if self.state in (LiveSessionState.CREATING, LiveSessionState.LIVE, LiveSessionState.ENDING) and self.session:
            try:
                await end_live_session(self._store, self.session.id)
            except Exception as exc:
                logger.warning("Could not close live session %s on shutdown: %s", self.session.id, exc)
            self.state = LiveSessionState.ENDED
        try:
            await self._channel.leave()
        except Exception as exc:
            logger.warning("Leaving live channel failed: %s", exc)
        task, self._generation_task = self._generation_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def _pump_transcripts(self, transcriber: SpeechTranscriber) -> None:
        try:
            async for text in transcriber.start():
                if self.state != LiveSessionState.LIVE:
                    break
                try:
                    await self.update_transcript(text)
                except Exception as exc:
                    logger.warning("Transcript update failed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Transcription stopped unexpectedly: %s", exc)

    async def _stop_transcription(self) -> None:
        if self._transcriber is not None:
            try:
                await self._transcriber.stop()
            except Exception as exc:
                logger.warning("Stopping transcription failed: %s", exc)
        task, self._transcription_task = self._transcription_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def _generate_workout(self, session_id: str, transcript: str) -> None:
        try:
            plan = await self._generate(transcript)
            if not plan or not plan.strip():
                raise GenerationError("Workout plan generation returned an empty plan.")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.generation_error = str(exc) or exc.__class__.__name__
            logger.warning("Workout plan generation failed for live session %s: %s", session_id, exc)
            try:
                await record_live_session_generation_error(self._store, session_id, self.generation_error)
            except Exception as store_exc:
                logger.warning("Could not record generation failure for %s: %s", session_id, store_exc)
            return

        self.generated_workout = plan
        try:
            await update_live_session_workout(self._store, session_id, plan)
        except Exception as exc:
            self.generation_error = f"Generated workout could not be saved: {exc}"
            logger.warning("Could not store generated workout for %s: %s", session_id, exc)


# ---------------------------------------------------------------------------
# Audience
# ---------------------------------------------------------------------------


class ViewerOutcomeStatus(str, Enum):
    WORKOUT_READY = "workout_ready"
    GENERATING_TIMED_OUT = "generating_timed_out"
    NO_WORKOUT = "no_workout"


@dataclass
class ViewerOutcome:
    status: ViewerOutcomeStatus
    session: Optional[LiveSession]
    generated_workout: Optional[str] = None
    error: Optional[str] = None


class LiveSessionViewer:
    def __init__(self, sync: SessionSyncClient, transport: Union[MediaTransport, ChannelSession]):
        self._sync = sync
        self._store = sync.store
        self._channel = _channel_session(transport)
        self._subscription: Optional[Subscription] = None
        self.session: Optional[LiveSession] = None
        self.viewer_id: Optional[str] = None

    @property
    def channel(self) -> ChannelSession:
        return self._channel

    async def join(self, session: LiveSession, viewer_id: str) -> LiveSession:
        if self._subscription is not None:
            raise SessionStateError("Already watching a live session; leave it first.")

        subscription = await self._sync.watch(LIVE_SESSIONS, session.id, LiveSession.from_document)
        latest = subscription.latest
        if latest is None:
            subscription.cancel()
            raise DocumentNotFoundError(LIVE_SESSIONS, session.id)
        if not latest.is_active:
            subscription.cancel()
            raise SessionStateError("This live session has already ended.")

        self._subscription = subscription
        self.session = latest
        try:
            await self._channel.join(latest.channel_id, ChannelRole.AUDIENCE)
            await add_live_viewer(self._store, session.id, viewer_id)
        except Exception:
            await self.leave()
            raise
        self.viewer_id = viewer_id
        return latest

    async def wait_until_ended(self, timeout: Optional[float] = None) -> ViewerOutcome:
        """
        Follow the session until the host ends it, then wait up to ``timeout``
        seconds for the generated workout when a transcript exists.
        """
        subscription = self._subscription
        if subscription is None:
            raise SessionStateError("Join a live session before waiting on it.")
        wait_seconds = settings.GENERATED_WORKOUT_WAIT_SECONDS if timeout is None else timeout

        ended: Optional[LiveSession] = None
        async for update in subscription:
            self.session = update
            if not update.is_active:
                ended = update
                break

        await self._leave_channel()
        if ended is None:
            return ViewerOutcome(ViewerOutcomeStatus.NO_WORKOUT, self.session)

        outcome = self._terminal_outcome(ended)
        if outcome is not None:
            return outcome

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_seconds, 0.0)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return ViewerOutcome(ViewerOutcomeStatus.GENERATING_TIMED_OUT, self.session)
            try:
                update = await subscription.next(timeout=remaining)
            except asyncio.TimeoutError:
                return ViewerOutcome(ViewerOutcomeStatus.GENERATING_TIMED_OUT, self.session)
            except StopAsyncIteration:
                return ViewerOutcome(ViewerOutcomeStatus.NO_WORKOUT, self.session)
            self.session = update
            outcome = self._terminal_outcome(update)
            if outcome is not None:
                return outcome

    def _terminal_outcome(self, session: LiveSession) -> Optional[ViewerOutcome]:
        if session.generated_workout:
            return ViewerOutcome(ViewerOutcomeStatus.WORKOUT_READY, session, session.generated_workout)
        if session.generation_error:
            return ViewerOutcome(ViewerOutcomeStatus.NO_WORKOUT, session, error=session.generation_error)
        if not (session.workout_transcript or "").strip():
            return ViewerOutcome(ViewerOutcomeStatus.NO_WORKOUT, session)
        return None

    async def leave(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.cancel()
        await self._leave_channel()
        viewer_id, self.viewer_id = self.viewer_id, None
        if viewer_id and self.session is not None:
            try:
                await remove_live_viewer(self._store, self.session.id, viewer_id)
            except Exception as exc:
                logger.warning("Could not deregister viewer %s from %s: %s", viewer_id, self.session.id, exc)

    async def _leave_channel(self) -> None:
        try:
            await self._channel.leave()
        except Exception as exc:
            logger.warning("Leaving live channel failed: %s", exc)
