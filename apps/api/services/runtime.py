"""Composition root wiring the coordination services together."""

import logging
from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from multimodal.models import WorkoutQuiz
from services.document_store import DocumentStore
from services.engagement import EngagementTarget, LikeToggle
from services.live_session import LiveSessionCoordinator, LiveSessionViewer
from services.media_cache import MediaHandleCache
from services.partner_session import PartnerSessionCoordinator, WorkoutRecorder
from services.quiz_trigger import QuizTriggerEngine
from services.session_sync import SessionSyncClient
from services.storage import BlobStorage, LocalBlobStorage
from services.transcription import SpeechTranscriber
from services.transport import MediaTransport

logger = logging.getLogger(__name__)


class CoachRuntime:
    """
    Owns the shared store, sync client, blob storage and media cache.

    Coordinators are built per session through the factory methods so each
    one receives its own transport and collaborators.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        storage: Optional[BlobStorage] = None,
        change_feed_enabled: Optional[bool] = None,
    ):
        self.store = DocumentStore(session_maker, change_feed_enabled=change_feed_enabled)
        self.sync = SessionSyncClient(self.store)
        self.storage = storage or LocalBlobStorage()
        self.media_cache = MediaHandleCache()
        self.started = False

    async def init(self) -> "CoachRuntime":
        if not self.started:
            await self.store.start()
            self.started = True
        return self

    async def shutdown(self) -> None:
        await self.media_cache.shutdown()
        await self.store.close()
        self.started = False

    def live_host(
        self,
        transport: MediaTransport,
        transcriber: Optional[SpeechTranscriber] = None,
    ) -> LiveSessionCoordinator:
        return LiveSessionCoordinator(self.sync, transport, transcriber=transcriber)

    def live_viewer(self, transport: MediaTransport) -> LiveSessionViewer:
        return LiveSessionViewer(self.sync, transport)

    def partner(
        self,
        transport: MediaTransport,
        recorder: Optional[WorkoutRecorder] = None,
    ) -> PartnerSessionCoordinator:
        return PartnerSessionCoordinator(self.sync, transport, recorder=recorder, storage=self.storage)

    def quiz_engine(self, on_quiz: Optional[Callable[[WorkoutQuiz], Any]] = None) -> QuizTriggerEngine:
        return QuizTriggerEngine(on_quiz=on_quiz)

    def like_toggle(self, target: EngagementTarget, content_id: str, user_id: str) -> LikeToggle:
        return LikeToggle(self.store, target, content_id, user_id)


def get_runtime(request: Request) -> CoachRuntime:
    """FastAPI dependency returning the runtime created in the app lifespan."""
    return request.app.state.runtime
