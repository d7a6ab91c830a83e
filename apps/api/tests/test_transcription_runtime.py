from unittest.mock import patch

import pytest

from conftest import FakeTransport
from services.engagement import REELS
from services.live_session import LiveSessionCoordinator, LiveSessionViewer
from services.partner_session import PartnerSessionCoordinator
from services.quiz_trigger import QuizTriggerEngine
from services.runtime import CoachRuntime
from services.transcription import WhisperChunkTranscriber


async def _chunks(paths):
    for path in paths:
        yield path


@pytest.mark.asyncio
async def test_whisper_transcriber_yields_cumulative_text_and_skips_failures():
    def _fake_transcribe(path, api_key=None):
        if path.endswith("bad.mp3"):
            raise RuntimeError("whisper unavailable")
        return {"/tmp/a.mp3": "Warm up", "/tmp/c.mp3": "then squats"}[path]

    transcriber = WhisperChunkTranscriber(_chunks(["/tmp/a.mp3", "/tmp/bad.mp3", "/tmp/c.mp3"]), api_key="k")
    with patch("services.transcription.transcribe_audio", side_effect=_fake_transcribe):
        results = [text async for text in transcriber.start()]

    assert results == ["Warm up", "Warm up then squats"]


@pytest.mark.asyncio
async def test_whisper_transcriber_stops_on_request():
    transcriber = WhisperChunkTranscriber(_chunks(["/tmp/a.mp3", "/tmp/b.mp3"]))
    results = []
    with patch("services.transcription.transcribe_audio", return_value="chunk"):
        async for text in transcriber.start():
            results.append(text)
            await transcriber.stop()

    assert results == ["chunk"]


@pytest.mark.asyncio
async def test_runtime_builds_coordinators_over_shared_store(session_maker, blob_storage):
    runtime = await CoachRuntime(session_maker, storage=blob_storage, change_feed_enabled=False).init()
    try:
        assert isinstance(runtime.live_host(FakeTransport()), LiveSessionCoordinator)
        assert isinstance(runtime.live_viewer(FakeTransport()), LiveSessionViewer)
        assert isinstance(runtime.partner(FakeTransport()), PartnerSessionCoordinator)
        assert isinstance(runtime.quiz_engine(), QuizTriggerEngine)
        toggle = runtime.like_toggle(REELS, "r1", "u1")
        assert toggle.content_id == "r1"
        assert runtime.sync.store is runtime.store
        assert runtime.started
    finally:
        await runtime.shutdown()
    assert not runtime.started
