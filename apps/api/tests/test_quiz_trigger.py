import asyncio
from typing import List

import pytest

from multimodal.llm import generate_quiz_from_transcripts
from multimodal.models import QuizQuestion, WorkoutQuiz
from services.quiz_trigger import QuizTriggerEngine

LONG = "Today we are doing squats, lunges and a long plank hold to build core strength."


def _quiz() -> WorkoutQuiz:
    return WorkoutQuiz(
        questions=[QuizQuestion(question="Which move?", options=["Squat", "Nap"], correct_answer=0)]
    )


async def _no_sleep(seconds: float) -> None:
    return None


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingGenerator:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: List[List[str]] = []

    async def __call__(self, transcripts: List[str]) -> WorkoutQuiz:
        self.calls.append(list(transcripts))
        if len(self.calls) <= self.failures:
            raise RuntimeError("generation unavailable")
        return _quiz()


@pytest.mark.asyncio
async def test_inactive_engine_ignores_transcripts():
    engine = QuizTriggerEngine(RecordingGenerator(), sleep=_no_sleep)
    assert engine.add_transcript(LONG) is False
    assert engine.recent_transcripts == []


@pytest.mark.asyncio
async def test_short_transcripts_are_not_counted():
    engine = QuizTriggerEngine(RecordingGenerator(), sleep=_no_sleep)
    engine.set_active(True)

    assert engine.add_transcript("   too short   ") is False
    assert engine.observed_since_last_quiz == 0


@pytest.mark.asyncio
async def test_third_valid_transcript_triggers_one_generation():
    generator = RecordingGenerator()
    delivered = []
    engine = QuizTriggerEngine(generator, on_quiz=delivered.append, sleep=_no_sleep)
    engine.set_active(True)

    for index in range(3):
        engine.add_transcript(f"{LONG} Video {index}")
    await engine.wait_idle()

    assert len(generator.calls) == 1
    assert generator.calls[0][0].endswith("Video 2")
    assert engine.should_show_quiz is True
    assert engine.current_quiz is delivered[0]
    assert engine.observed_since_last_quiz == 0


@pytest.mark.asyncio
async def test_transcript_list_is_bounded_newest_first():
    engine = QuizTriggerEngine(RecordingGenerator(), sleep=_no_sleep)
    engine.set_active(True)
    engine.threshold = 100

    for index in range(7):
        engine.add_transcript(f"{LONG} #{index}")

    assert len(engine.recent_transcripts) == engine.max_stored
    assert engine.recent_transcripts[0].endswith("#6")
    assert engine.recent_transcripts[-1].endswith("#2")


@pytest.mark.asyncio
async def test_triggers_while_generating_are_ignored():
    gate = asyncio.Event()
    calls = []

    async def _slow(transcripts):
        calls.append(transcripts)
        await gate.wait()
        return _quiz()

    engine = QuizTriggerEngine(_slow, sleep=_no_sleep)
    engine.set_active(True)
    for index in range(5):
        engine.add_transcript(f"{LONG} {index}")
    await asyncio.sleep(0)
    assert engine.generating

    gate.set()
    await engine.wait_idle()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_leave_counter_one_short_of_threshold():
    generator = RecordingGenerator(failures=10)
    sleep = RecordingSleep()
    engine = QuizTriggerEngine(generator, sleep=sleep)
    engine.set_active(True)
    for index in range(3):
        engine.add_transcript(f"{LONG} {index}")
    await engine.wait_idle()

    assert len(generator.calls) == engine.max_retries + 1
    assert sleep.delays == [1.0, 1.0]
    assert engine.current_quiz is None
    assert engine.observed_since_last_quiz == engine.threshold - 1

    engine.add_transcript(f"{LONG} again")
    await engine.wait_idle()
    assert len(generator.calls) == 2 * (engine.max_retries + 1)


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failure():
    generator = RecordingGenerator(failures=1)
    sleep = RecordingSleep()
    engine = QuizTriggerEngine(generator, sleep=sleep)
    engine.set_active(True)
    for index in range(3):
        engine.add_transcript(f"{LONG} {index}")
    await engine.wait_idle()

    assert len(generator.calls) == 2
    assert sleep.delays == [1.0]
    assert engine.should_show_quiz


@pytest.mark.asyncio
async def test_deactivating_cancels_generation_and_clears_quiz():
    gate = asyncio.Event()

    async def _blocked(transcripts):
        await gate.wait()
        return _quiz()

    engine = QuizTriggerEngine(_blocked, sleep=_no_sleep)
    engine.set_active(True)
    for index in range(3):
        engine.add_transcript(f"{LONG} {index}")
    await asyncio.sleep(0)

    engine.set_active(False)
    await engine.wait_idle()

    assert not engine.generating
    assert engine.current_quiz is None
    assert engine.should_show_quiz is False


@pytest.mark.asyncio
async def test_reactivated_engine_triggers_again_after_cancelled_generation():
    gate = asyncio.Event()
    calls = []

    async def _gated(transcripts):
        calls.append(transcripts)
        await gate.wait()
        return _quiz()

    engine = QuizTriggerEngine(_gated, sleep=_no_sleep)
    engine.set_active(True)
    for index in range(3):
        engine.add_transcript(f"{LONG} first {index}")
    await asyncio.sleep(0)
    assert len(calls) == 1

    engine.set_active(False)
    engine.set_active(True)
    for index in range(3):
        engine.add_transcript(f"{LONG} second {index}")
    await asyncio.sleep(0)

    assert len(calls) == 2
    gate.set()
    await engine.wait_idle()
    assert engine.current_quiz is not None
    assert engine.observed_since_last_quiz == 0


@pytest.mark.asyncio
async def test_dismiss_resets_state():
    engine = QuizTriggerEngine(RecordingGenerator(), sleep=_no_sleep)
    engine.set_active(True)
    for index in range(3):
        engine.add_transcript(f"{LONG} {index}")
    await engine.wait_idle()

    engine.dismiss_quiz()

    assert engine.current_quiz is None
    assert engine.recent_transcripts == []
    assert engine.observed_since_last_quiz == 0


def test_fallback_quiz_has_five_valid_questions():
    quiz = generate_quiz_from_transcripts([LONG, LONG], api_key="test-key")
    assert len(quiz.questions) == 5
    for question in quiz.questions:
        assert 0 <= question.correct_answer < len(question.options)
