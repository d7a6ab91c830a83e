import asyncio
from typing import AsyncIterator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
import models  # noqa: F401
from routers import rate_limit
from services.document_store import DocumentStore
from services.session_sync import SessionSyncClient
from services.storage import LocalBlobStorage
from services.transport import ChannelRole, TransportDelegate


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_maker):
    document_store = DocumentStore(session_maker, change_feed_enabled=False, max_attempts=20)
    await document_store.start()
    yield document_store
    await document_store.close()


@pytest.fixture
def sync(store):
    return SessionSyncClient(store)


@pytest.fixture
def blob_storage(tmp_path):
    return LocalBlobStorage(root=str(tmp_path / "blobs"), base_url="http://blobs.test")


class FakeTransport:
    """In-memory conferencing SDK double recording every call."""

    def __init__(self, fail_join_with: Optional[Exception] = None):
        self.delegate: Optional[TransportDelegate] = None
        self.fail_join_with = fail_join_with
        self.joined: List[tuple] = []
        self.leave_calls = 0
        self.camera_switches = 0
        self.local_muted: List[bool] = []
        self.remote_muted: List[bool] = []

    def set_delegate(self, delegate: TransportDelegate) -> None:
        self.delegate = delegate

    async def join_channel(self, token: str, role: ChannelRole) -> None:
        if self.fail_join_with is not None:
            raise self.fail_join_with
        self.joined.append((token, role))

    async def leave_channel(self) -> None:
        self.leave_calls += 1

    async def switch_camera(self) -> None:
        self.camera_switches += 1

    async def mute_local_audio(self, muted: bool) -> None:
        self.local_muted.append(muted)

    async def mute_remote_audio(self, muted: bool) -> None:
        self.remote_muted.append(muted)


class FakeTranscriber:
    """Yields whatever is pushed until stopped."""

    def __init__(self):
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.stopped = False

    def push(self, text: str) -> None:
        self._queue.put_nowait(text)

    async def start(self) -> AsyncIterator[str]:
        while True:
            text = await self._queue.get()
            if text is None:
                return
            yield text

    async def stop(self) -> None:
        self.stopped = True
        self._queue.put_nowait(None)


class FakeRecorder:
    def __init__(self, output_path: Optional[str] = None):
        self.output_path = output_path
        self.started = 0
        self.stopped = 0

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> Optional[str]:
        self.stopped += 1
        return self.output_path


@pytest.fixture
def transport():
    return FakeTransport()
