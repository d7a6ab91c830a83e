import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import FakeRecorder, FakeTransport
from models.sessions import COMMUNITY_REELS, PARTNER_SESSIONS, SessionStatus, WorkoutType
from services.document_store import utc_now
from services.errors import (
    DuplicateRatingError,
    NotAuthorizedError,
    SessionConflictError,
    SessionStateError,
)
from services.partner_session import (
    PartnerSessionCoordinator,
    claim_partner_session,
    create_partner_session,
    end_partner_session,
    get_partner_session,
    list_available_partner_sessions,
    submit_partner_rating,
)
from services.ratings import get_rating_summary
from services.transport import ChannelRole


@pytest.mark.asyncio
async def test_exactly_one_racing_joiner_wins(store):
    session = await create_partner_session(store, "host", WorkoutType.HIIT, 20)

    results = await asyncio.gather(
        *(claim_partner_session(store, session.id, f"partner-{index}") for index in range(4)),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert all(isinstance(error, SessionConflictError) for error in losers)

    stored = await get_partner_session(store, session.id)
    assert stored.status == SessionStatus.IN_PROGRESS
    assert stored.partner_id == winners[0].partner_id


@pytest.mark.asyncio
async def test_host_cannot_join_own_session(store):
    session = await create_partner_session(store, "host", WorkoutType.YOGA, 30)
    with pytest.raises(SessionStateError):
        await claim_partner_session(store, session.id, "host")


@pytest.mark.asyncio
async def test_ended_session_stays_ended(store):
    session = await create_partner_session(store, "host", WorkoutType.CARDIO, 30)
    await end_partner_session(store, session.id)
    again = await end_partner_session(store, session.id)

    assert again.status == SessionStatus.ENDED
    with pytest.raises(SessionConflictError):
        await claim_partner_session(store, session.id, "late-partner")


@pytest.mark.asyncio
async def test_listing_expires_stale_waiting_sessions(store):
    now = utc_now()
    stale = await create_partner_session(store, "h1", WorkoutType.STRENGTH, 30, now=now - timedelta(hours=1))
    fresh = await create_partner_session(store, "h2", WorkoutType.STRENGTH, 30, now=now)
    claimed = await create_partner_session(store, "h3", WorkoutType.STRENGTH, 30, now=now)
    await claim_partner_session(store, claimed.id, "p3")

    available = await list_available_partner_sessions(store, now=now)

    assert [session.id for session in available] == [fresh.id]
    assert (await get_partner_session(store, stale.id)).status == SessionStatus.ENDED


@pytest.mark.asyncio
async def test_ratings_require_ended_session_between_participants(store):
    session = await create_partner_session(store, "host", WorkoutType.HIIT, 20)
    await claim_partner_session(store, session.id, "partner")

    with pytest.raises(SessionStateError):
        await submit_partner_rating(store, session.id, "host", "partner", 5)

    await end_partner_session(store, session.id)
    with pytest.raises(NotAuthorizedError):
        await submit_partner_rating(store, session.id, "stranger", "partner", 5)
    with pytest.raises(NotAuthorizedError):
        await submit_partner_rating(store, session.id, "host", "host", 5)
    with pytest.raises(ValueError):
        await submit_partner_rating(store, session.id, "host", "partner", 6)

    summary = await submit_partner_rating(store, session.id, "host", "partner", 4)
    assert summary.total_ratings == 1
    assert summary.average == 4.0

    with pytest.raises(DuplicateRatingError):
        await submit_partner_rating(store, session.id, "host", "partner", 5)

    await submit_partner_rating(store, session.id, "partner", "host", 3)
    assert (await get_rating_summary(store, "host")).rating_sum == 3
    assert (await get_rating_summary(store, "nobody")).average is None


@pytest.mark.asyncio
async def test_ratings_from_many_sessions_accumulate(store):
    for index, rating in enumerate([5, 4, 4]):
        session = await create_partner_session(store, f"host-{index}", WorkoutType.HIIT, 20)
        await claim_partner_session(store, session.id, "partner")
        await end_partner_session(store, session.id)
        await submit_partner_rating(store, session.id, f"host-{index}", "partner", rating)

    summary = await get_rating_summary(store, "partner")
    assert summary.total_ratings == 3
    assert summary.rating_sum == 13
    assert summary.average == 4.33


@pytest.mark.asyncio
async def test_coordinators_follow_each_other_until_end(sync):
    host = PartnerSessionCoordinator(sync, FakeTransport())
    partner_transport = FakeTransport()
    partner = PartnerSessionCoordinator(sync, partner_transport)

    session = await host.create("host", WorkoutType.PILATES, 45)
    await host.start_media()
    assert host.projection.current == SessionStatus.WAITING

    joined = await partner.join(session.id, "partner")
    await partner.start_media()
    assert partner_transport.joined == [(joined.channel_id, ChannelRole.BROADCASTER)]

    for _ in range(100):
        if host.session.status == SessionStatus.IN_PROGRESS:
            break
        await asyncio.sleep(0.01)
    assert host.session.partner_id == "partner"

    await host.end()
    for _ in range(100):
        if partner.session.status == SessionStatus.ENDED:
            break
        await asyncio.sleep(0.01)
    assert partner.projection.current == SessionStatus.ENDED
    for _ in range(100):
        if not partner.channel.in_channel:
            break
        await asyncio.sleep(0.01)
    assert partner_transport.leave_calls == 1
    await partner.shutdown()


@pytest.mark.asyncio
async def test_remote_end_releases_the_partner_listener(sync):
    host = PartnerSessionCoordinator(sync, FakeTransport())
    partner = PartnerSessionCoordinator(sync, FakeTransport())

    session = await host.create("host", WorkoutType.HIIT, 20)
    await host.start_media()
    await partner.join(session.id, "partner")
    await partner.start_media()
    assert sync.store.listener_count(PARTNER_SESSIONS, session.id) == 2

    await host.end()
    for _ in range(100):
        if not partner.channel.in_channel:
            break
        await asyncio.sleep(0.01)

    assert partner.projection.current == SessionStatus.ENDED
    assert partner._subscription is None
    assert sync.store.listener_count(PARTNER_SESSIONS, session.id) == 0


@pytest.mark.asyncio
async def test_listing_keeps_sessions_just_inside_the_window(store):
    now = utc_now()
    waiting = await create_partner_session(store, "h1", WorkoutType.YOGA, 30, now=now - timedelta(minutes=29))
    busy = await create_partner_session(store, "h2", WorkoutType.YOGA, 30, now=now - timedelta(minutes=45))
    await claim_partner_session(store, busy.id, "p2")

    available = await list_available_partner_sessions(store, now=now)

    assert [session.id for session in available] == [waiting.id]
    assert (await get_partner_session(store, waiting.id)).status == SessionStatus.WAITING
    assert (await get_partner_session(store, busy.id)).status == SessionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_failed_join_rolls_back_projection(sync):
    host = PartnerSessionCoordinator(sync, FakeTransport())
    session = await host.create("host", WorkoutType.YOGA, 30)
    await claim_partner_session(sync.store, session.id, "first")

    late = PartnerSessionCoordinator(sync, FakeTransport())
    with pytest.raises(SessionConflictError):
        await late.join(session.id, "second")
    assert late.projection.pending is False
    assert late.session is None


@pytest.mark.asyncio
async def test_recording_is_published_as_reel_on_end(sync, blob_storage, tmp_path):
    recording = tmp_path / "partner.mp4"
    recording.write_bytes(b"fake-mp4")
    recorder = FakeRecorder(str(recording))
    host = PartnerSessionCoordinator(sync, FakeTransport(), recorder=recorder, storage=blob_storage)

    session = await host.create("host", WorkoutType.HIIT, 20)
    await claim_partner_session(sync.store, session.id, "partner")
    await host.start_media()

    with (
        patch("services.community_reels.probe_media", side_effect=RuntimeError("no ffprobe")),
        patch("services.community_reels.extract_thumbnail", side_effect=RuntimeError("no ffmpeg")),
    ):
        await host.end()

    assert recorder.started == 1
    assert recorder.stopped == 1
    assert host.reel is not None
    assert set(host.reel.participants) == {"host", "partner"}
    assert host.reel.video_url.startswith("http://blobs.test/reels/workout_")
    assert host.reel.thumbnail_url is None
    assert not recording.exists()

    stored_session = await get_partner_session(sync.store, session.id)
    assert stored_session.reel_id == host.reel.id
    assert await sync.store.get(COMMUNITY_REELS, host.reel.id) is not None
