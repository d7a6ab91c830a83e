import json
from unittest.mock import MagicMock, patch

import pytest

from models.sessions import WorkoutType
from multimodal.audio import ensure_audio_file, transcribe_audio
from multimodal.llm import (
    generate_quiz_from_transcripts,
    generate_structured_workout,
    generate_workout_plan,
    parse_quiz,
    parse_structured_workout,
)
from multimodal.video import MediaProbe, get_video_duration_seconds
from services.errors import GenerationError


def test_workout_plan_fallback_without_openai_key_mentions_exercises():
    plan = generate_workout_plan("Let's do burpees and lunges today, then stretch.", api_key="test-key")

    assert "MAIN WORKOUT" in plan
    assert "Burpees" in plan
    assert "Lunges" in plan


def test_workout_plan_rejects_empty_transcript():
    with pytest.raises(GenerationError):
        generate_workout_plan("   ", api_key="test-key")


def test_structured_workout_fallback_parses_metadata():
    parsed = generate_structured_workout("Squats and planks", api_key="your_openai_key_here")

    assert parsed.title == "Live Session Workout"
    assert parsed.type == WorkoutType.BODYWEIGHT
    assert parsed.estimated_duration == 30
    assert parsed.workout_plan.startswith("WORKOUT OVERVIEW")


def test_parse_structured_workout_reads_equipment_and_unknown_type():
    parsed = parse_structured_workout(
        "---METADATA---\nTitle: Kettlebell Blast\nType: Kettlebell\nDifficulty: Advanced\n"
        "Equipment: Kettlebell, Mat\nDuration: 45 minutes\n---WORKOUT PLAN---\nSwing it."
    )
    assert parsed.type == WorkoutType.OTHER
    assert parsed.equipment == ["Kettlebell", "Mat"]
    assert parsed.estimated_duration == 45

    with pytest.raises(GenerationError):
        parse_structured_workout("no separators at all")


def test_workout_plan_uses_openai_when_configured():
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content="WORKOUT OVERVIEW\nType: HIIT"))]
    client = MagicMock()
    client.chat.completions.create.return_value = response

    with patch("multimodal.llm.OpenAI", return_value=client):
        plan = generate_workout_plan("Sprint intervals", api_key="sk-real")

    assert plan.startswith("WORKOUT OVERVIEW")
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"][1]["content"].endswith("Sprint intervals")


def test_openai_failure_surfaces_generation_error():
    client = MagicMock()
    client.chat.completions.create.side_effect = RuntimeError("rate limited")

    with patch("multimodal.llm.OpenAI", return_value=client):
        with pytest.raises(GenerationError):
            generate_quiz_from_transcripts(["Some narration"], api_key="sk-real")


def test_parse_quiz_validates_answer_index():
    good = json.dumps(
        {"questions": [{"question": "Q?", "options": ["A", "B", "C", "D"], "correctAnswer": 2}]}
    )
    assert parse_quiz(good).questions[0].correct_answer == 2

    bad = json.dumps({"questions": [{"question": "Q?", "options": ["A", "B"], "correctAnswer": 5}]})
    with pytest.raises(GenerationError):
        parse_quiz(bad)
    with pytest.raises(GenerationError):
        parse_quiz("not json")


def test_quiz_requires_transcripts():
    with pytest.raises(GenerationError):
        generate_quiz_from_transcripts(["  ", ""], api_key="test-key")


def test_transcription_mock_and_audio_passthrough():
    assert "jumping jacks" in transcribe_audio("/tmp/chunk.mp3", api_key="test-key")
    assert ensure_audio_file("/tmp/chunk.m4a") == "/tmp/chunk.m4a"


@pytest.mark.parametrize(
    "probe,orientation",
    [
        (MediaProbe(True, 1.0, 1080, 1920), "portrait"),
        (MediaProbe(True, 1.0, 1920, 1080), "landscape"),
        (MediaProbe(True, 1.0, 1920, 1080, rotation=-90), "portrait"),
        (MediaProbe(True, 1.0, 500, 500), "square"),
        (MediaProbe(False, 0.0), "unknown"),
    ],
)
def test_probe_orientation(probe, orientation):
    assert probe.orientation == orientation


def test_video_duration_is_zero_when_probe_fails():
    with patch("multimodal.video.ffmpeg.probe", side_effect=RuntimeError("missing file")):
        assert get_video_duration_seconds("/nope.mp4") == 0
