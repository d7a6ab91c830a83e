import asyncio
from datetime import timedelta

import pytest

from conftest import FakeTranscriber, FakeTransport
from models.sessions import LIVE_SESSIONS
from services.document_store import utc_now
from services.errors import DocumentNotFoundError, SessionStateError, TransportError
from services.live_session import (
    SAVED_WORKOUTS,
    LiveSessionCoordinator,
    LiveSessionState,
    LiveSessionViewer,
    ViewerOutcomeStatus,
    add_live_viewer,
    create_live_session,
    get_live_session,
    list_active_live_sessions,
    remove_live_viewer,
    save_workout_from_session,
)
from services.transport import ChannelRole

TRANSCRIPT = "Start with jumping jacks, then squats for three sets and finish with a plank."


async def _plan(transcript: str) -> str:
    return f"PLAN for: {transcript}"


async def _failing_plan(transcript: str) -> str:
    raise RuntimeError("model offline")


@pytest.mark.asyncio
async def test_host_lifecycle_generates_and_stores_workout(sync, transport):
    host = LiveSessionCoordinator(sync, transport, generator=_plan)

    session = await host.start("host-1", "Coach Kim")
    assert host.state == LiveSessionState.LIVE
    assert transport.joined == [(session.channel_id, ChannelRole.BROADCASTER)]
    assert session.channel_id.startswith("live_")

    await host.update_transcript(TRANSCRIPT)
    ended = await host.end()
    assert host.state == LiveSessionState.ENDED
    assert ended.is_active is False
    assert transport.leave_calls == 1

    plan = await host.wait_for_generation(timeout=2)
    assert plan == f"PLAN for: {TRANSCRIPT}"

    stored = await get_live_session(sync.store, session.id)
    assert stored.is_active is False
    assert stored.workout_transcript == TRANSCRIPT
    assert stored.generated_workout == plan


@pytest.mark.asyncio
async def test_ending_without_transcript_skips_generation(sync, transport):
    host = LiveSessionCoordinator(sync, transport, generator=_plan)
    await host.start("host-1", "Coach Kim")
    await host.end()

    assert host.generating is False
    assert await host.wait_for_generation(timeout=0.1) is None


@pytest.mark.asyncio
async def test_generation_failure_is_recorded_on_session(sync, transport):
    host = LiveSessionCoordinator(sync, transport, generator=_failing_plan)
    session = await host.start("host-1", "Coach Kim")
    await host.update_transcript(TRANSCRIPT)
    await host.end()
    await host.wait_for_generation(timeout=2)

    assert host.generation_error == "model offline"
    stored = await get_live_session(sync.store, session.id)
    assert stored.generation_error == "model offline"
    assert stored.generated_workout is None


@pytest.mark.asyncio
async def test_start_rejected_while_live_and_end_rejected_before_start(sync, transport):
    host = LiveSessionCoordinator(sync, transport, generator=_plan)
    with pytest.raises(SessionStateError):
        await host.end()

    await host.start("host-1", "Coach Kim")
    with pytest.raises(SessionStateError):
        await host.start("host-1", "Coach Kim")
    await host.shutdown()


@pytest.mark.asyncio
async def test_transport_failure_closes_created_session(sync):
    transport = FakeTransport(fail_join_with=TransportError("Invalid token", code=110))
    host = LiveSessionCoordinator(sync, transport, generator=_plan)

    with pytest.raises(TransportError):
        await host.start("host-1", "Coach Kim")

    assert host.state == LiveSessionState.ENDED
    stored = await get_live_session(sync.store, host.session.id)
    assert stored.is_active is False


@pytest.mark.asyncio
async def test_transcriber_updates_are_persisted_while_live(sync, transport):
    transcriber = FakeTranscriber()
    host = LiveSessionCoordinator(sync, transport, transcriber=transcriber, generator=_plan)
    session = await host.start("host-1", "Coach Kim")

    transcriber.push("Warm up with jumping jacks")
    transcriber.push("Warm up with jumping jacks then squats")
    for _ in range(100):
        stored = await get_live_session(sync.store, session.id)
        if stored.workout_transcript == "Warm up with jumping jacks then squats":
            break
        await asyncio.sleep(0.01)
    assert stored.workout_transcript == "Warm up with jumping jacks then squats"

    await host.end()
    assert transcriber.stopped
    assert await host.wait_for_generation(timeout=2) == "PLAN for: Warm up with jumping jacks then squats"


@pytest.mark.asyncio
async def test_viewer_receives_generated_workout_after_host_ends(sync):
    host = LiveSessionCoordinator(sync, FakeTransport(), generator=_plan)
    session = await host.start("host-1", "Coach Kim")

    viewer_transport = FakeTransport()
    viewer = LiveSessionViewer(sync, viewer_transport)
    await viewer.join(session, "viewer-1")
    assert viewer_transport.joined == [(session.channel_id, ChannelRole.AUDIENCE)]
    assert (await get_live_session(sync.store, session.id)).viewer_count == 1

    waiting = asyncio.create_task(viewer.wait_until_ended(timeout=2))
    await host.update_transcript(TRANSCRIPT)
    await host.end()
    outcome = await waiting

    assert outcome.status == ViewerOutcomeStatus.WORKOUT_READY
    assert outcome.generated_workout == f"PLAN for: {TRANSCRIPT}"
    assert viewer_transport.leave_calls == 1

    await viewer.leave()
    assert (await get_live_session(sync.store, session.id)).viewer_count == 0


@pytest.mark.asyncio
async def test_viewer_times_out_when_generation_never_lands(sync):
    gate = asyncio.Event()

    async def _stuck(transcript: str) -> str:
        await gate.wait()
        return "late plan"

    host = LiveSessionCoordinator(sync, FakeTransport(), generator=_stuck)
    session = await host.start("host-1", "Coach Kim")
    await host.update_transcript(TRANSCRIPT)

    viewer = LiveSessionViewer(sync, FakeTransport())
    await viewer.join(session, "viewer-1")
    waiting = asyncio.create_task(viewer.wait_until_ended(timeout=0.1))
    await host.end()
    outcome = await waiting

    assert outcome.status == ViewerOutcomeStatus.GENERATING_TIMED_OUT
    await viewer.leave()
    await host.shutdown()


@pytest.mark.asyncio
async def test_viewer_without_transcript_gets_no_workout(sync):
    host = LiveSessionCoordinator(sync, FakeTransport(), generator=_plan)
    session = await host.start("host-1", "Coach Kim")
    viewer = LiveSessionViewer(sync, FakeTransport())
    await viewer.join(session, "viewer-1")

    waiting = asyncio.create_task(viewer.wait_until_ended(timeout=1))
    await host.end()
    outcome = await waiting

    assert outcome.status == ViewerOutcomeStatus.NO_WORKOUT
    await viewer.leave()


@pytest.mark.asyncio
async def test_viewer_cannot_join_ended_or_missing_session(sync):
    host = LiveSessionCoordinator(sync, FakeTransport(), generator=_plan)
    session = await host.start("host-1", "Coach Kim")
    await host.end()

    viewer = LiveSessionViewer(sync, FakeTransport())
    with pytest.raises(SessionStateError):
        await viewer.join(session, "viewer-1")

    await sync.store.delete(LIVE_SESSIONS, session.id)
    with pytest.raises(DocumentNotFoundError):
        await viewer.join(session, "viewer-1")


@pytest.mark.asyncio
async def test_viewer_registration_is_idempotent(store):
    session = await create_live_session(store, "host-1", "Coach", "live_x")
    assert await add_live_viewer(store, session.id, "v1") == 1
    assert await add_live_viewer(store, session.id, "v1") == 1
    assert await add_live_viewer(store, session.id, "v2") == 2
    assert await remove_live_viewer(store, session.id, "v1") == 1
    assert await remove_live_viewer(store, "missing", "v1") == 0


@pytest.mark.asyncio
async def test_listing_closes_stale_sessions(store):
    now = utc_now()
    stale = await create_live_session(store, "host-1", "Old", "live_old", now=now - timedelta(hours=5))
    fresh = await create_live_session(store, "host-2", "New", "live_new", now=now)

    sessions = await list_active_live_sessions(store, now=now)

    assert [session.id for session in sessions] == [fresh.id]
    assert (await get_live_session(store, stale.id)).is_active is False


@pytest.mark.asyncio
async def test_listing_keeps_sessions_just_under_two_hours_old(store):
    now = utc_now()
    almost = await create_live_session(store, "host-1", "Long", "live_long", now=now - timedelta(hours=1, minutes=59))

    sessions = await list_active_live_sessions(store, now=now)

    assert [session.id for session in sessions] == [almost.id]
    assert (await get_live_session(store, almost.id)).is_active is True


@pytest.mark.asyncio
async def test_save_workout_requires_generated_plan(store):
    session = await create_live_session(store, "host-1", "Coach", "live_x")
    with pytest.raises(SessionStateError):
        await save_workout_from_session(store, "user-1", session)

    ready = session.model_copy(update={"workout_transcript": TRANSCRIPT, "generated_workout": "PLAN"})
    workout_id = await save_workout_from_session(store, "user-1", ready)

    saved = await store.get(SAVED_WORKOUTS, workout_id)
    assert saved.get("userId") == "user-1"
    assert saved.get("sourceSessionId") == session.id
    assert saved.get("type") == "Bodyweight"
    assert saved.get("workoutPlan")
