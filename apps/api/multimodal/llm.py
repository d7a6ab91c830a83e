import logging
import json
import re
from typing import List, Optional, Sequence
from openai import OpenAI

from config import settings
from models.sessions import WorkoutType
from services.errors import GenerationError
from .models import ParsedWorkout, QuizQuestion, WorkoutQuiz

logger = logging.getLogger(__name__)

WORKOUT_PLAN_PROMPT = """
You are a professional fitness trainer. Convert the given workout instructions into a clear, structured workout plan.
Format the response in this exact structure:

WORKOUT OVERVIEW
Type: [Identify the type of workout]
Duration: [Estimate the duration]
Difficulty: [Beginner/Intermediate/Advanced]
Equipment: [List any equipment mentioned or "No equipment needed"]

WARMUP
[List 2-3 warmup exercises with reps/duration]

MAIN WORKOUT
[Break down the workout into clear sets/exercises with specific reps/durations]

COOLDOWN
[List 2-3 cooldown/stretching exercises]

FORM TIPS
[List 2-3 key form tips for the main exercises]

Keep it concise, practical, and safe for all fitness levels.
If any exercise details are unclear, provide standard alternatives.
"""

STRUCTURED_WORKOUT_PROMPT = """
You are a professional fitness trainer. Analyze the given workout instructions and convert them into a structured workout plan.
Also determine the following metadata:
1. A concise title for the workout
2. The primary type of workout (must be one of: strength, cardio, hiit, yoga, pilates, stretching, bodyweight, other)
3. Difficulty level (Beginner, Intermediate, or Advanced)
4. Required equipment (list all equipment mentioned)
5. Estimated duration in minutes

Format the response in this exact structure:
---METADATA---
Title: [Concise descriptive title]
Type: [Primary workout type]
Difficulty: [Difficulty level]
Equipment: [Comma-separated list of equipment]
Duration: [Estimated minutes]

---WORKOUT PLAN---
[Format the workout in a clear, structured way with sections for warmup, main workout, and cooldown]

Keep it practical and safe for all fitness levels.
If any exercise details are unclear, provide standard alternatives.
"""

TRANSCRIPT_QUIZ_PROMPT = """
You are a fitness expert. The user just watched several short workout videos; their narration is provided below.
Generate a quiz that tests understanding of the exercises, form, and safety covered in those videos.
Create 5 multiple-choice questions. Each question should have 4 options with exactly one correct answer.

Return a strict JSON object in this exact structure:
{
  "questions": [
    {
      "question": "Question text here",
      "options": ["Option 1", "Option 2", "Option 3", "Option 4"],
      "correctAnswer": 0
    }
  ]
}

correctAnswer is the index (0-3) of the correct option.
Keep questions clear and unambiguous. Ensure all options are plausible but only one is correct.
"""

_EXERCISE_KEYWORDS = (
    "jumping jacks", "push-ups", "pushups", "squats", "lunges", "plank", "burpees",
    "crunches", "deadlifts", "rows", "mountain climbers", "bridges", "stretch",
)


def get_openai_client(api_key: Optional[str]) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key, timeout=settings.OPENAI_TIMEOUT_SECONDS)


def _complete(client: OpenAI, system_prompt: str, user_prompt: str, json_mode: bool = False) -> str:
    options = {}
    if json_mode:
        options["response_format"] = {"type": "json_object"}
    response = client.chat.completions.create(
        model=settings.OPENAI_TEXT_MODEL,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        temperature=settings.OPENAI_TEMPERATURE,
        max_tokens=settings.OPENAI_MAX_TOKENS,
        **options,
    )
    content = response.choices[0].message.content or ""
    if not content.strip():
        raise GenerationError("Empty response from text generation service.")
    return content


def _mentioned_exercises(text: str) -> List[str]:
    lowered = text.lower()
    found = [keyword for keyword in _EXERCISE_KEYWORDS if keyword in lowered]
    return found or ["bodyweight squats", "push-ups", "plank hold"]


def _fallback_workout_plan(transcript: str) -> str:
    exercises = _mentioned_exercises(transcript)
    main_lines = "\n".join(f"- {name.title()}: 3 sets x 10-12 reps" for name in exercises)
    excerpt = transcript[:200] + ("..." if len(transcript) > 200 else "")
    return (
        "WORKOUT OVERVIEW\n"
        "Type: Bodyweight\n"
        "Duration: 30 minutes\n"
        "Difficulty: Intermediate\n"
        "Equipment: No equipment needed\n\n"
        "WARMUP\n- Jumping jacks: 60 seconds\n- Arm circles: 30 seconds\n\n"
        f"MAIN WORKOUT\n{main_lines}\n\n"
        "COOLDOWN\n- Hamstring stretch: 30 seconds per side\n- Child's pose: 60 seconds\n\n"
        "FORM TIPS\n- Keep your core braced\n- Move through a controlled range of motion\n\n"
        f"Based on session notes: {excerpt}"
    )


def generate_workout_plan(transcript: str, api_key: Optional[str] = None) -> str:
    """
    Turn a live session transcript into a sectioned workout plan.
    Falls back to a deterministic local plan when no OpenAI key is configured.
    """
    transcript = (transcript or "").strip()
    if not transcript:
        raise GenerationError("Cannot generate a workout plan from an empty transcript.")

    client = get_openai_client(settings.OPENAI_API_KEY if api_key is None else api_key)
    if client is None:
        logger.warning("Using MOCK workout plan generation.")
        return _fallback_workout_plan(transcript)

    try:
        return _complete(client, WORKOUT_PLAN_PROMPT, f"Here's the workout instruction: {transcript}")
    except GenerationError:
        raise
    except Exception as e:
        logger.error(f"Error generating workout plan: {e}")
        raise GenerationError(f"Workout plan generation failed: {e}") from e


def _workout_type_from_label(label: str) -> WorkoutType:
    normalized = label.strip().lower()
    for workout_type in WorkoutType:
        if workout_type.value.lower() == normalized:
            return workout_type
    return WorkoutType.OTHER


def parse_structured_workout(content: str) -> ParsedWorkout:
    parts = content.split("---WORKOUT PLAN---")
    if len(parts) != 2:
        raise GenerationError("Invalid structured workout format.")

    metadata = parts[0].replace("---METADATA---", "").strip()
    plan = parts[1].strip()

    title = ""
    workout_type = WorkoutType.OTHER
    difficulty = "Intermediate"
    equipment: List[str] = []
    duration = 30
    for line in metadata.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if key == "Title":
            title = value
        elif key == "Type":
            workout_type = _workout_type_from_label(value)
        elif key == "Difficulty":
            difficulty = value
        elif key == "Equipment":
            equipment = [item.strip() for item in value.split(",") if item.strip()]
        elif key == "Duration":
            match = re.match(r"\d+", value)
            duration = int(match.group(0)) if match else 30

    return ParsedWorkout(
        title=title or "Workout Session",
        type=workout_type,
        difficulty=difficulty,
        equipment=equipment,
        estimated_duration=duration,
        workout_plan=plan,
    )


def generate_structured_workout(transcript: str, api_key: Optional[str] = None) -> ParsedWorkout:
    transcript = (transcript or "").strip()
    if not transcript:
        raise GenerationError("Cannot generate a workout from an empty transcript.")

    client = get_openai_client(settings.OPENAI_API_KEY if api_key is None else api_key)
    if client is None:
        logger.warning("Using MOCK structured workout generation.")
        content = (
            "---METADATA---\n"
            "Title: Live Session Workout\n"
            "Type: Bodyweight\n"
            "Difficulty: Intermediate\n"
            "Equipment: None\n"
            "Duration: 30 minutes\n\n"
            f"---WORKOUT PLAN---\n{_fallback_workout_plan(transcript)}"
        )
        return parse_structured_workout(content)

    try:
        content = _complete(client, STRUCTURED_WORKOUT_PROMPT, f"Here's the workout instruction: {transcript}")
    except GenerationError:
        raise
    except Exception as e:
        logger.error(f"Error generating structured workout: {e}")
        raise GenerationError(f"Structured workout generation failed: {e}") from e
    return parse_structured_workout(content)


def parse_quiz(content: str) -> WorkoutQuiz:
    try:
        data = json.loads(content)
        questions = [QuizQuestion(**item) for item in data["questions"]]
    except (TypeError, KeyError, ValueError) as e:
        raise GenerationError(f"Could not parse quiz response: {e}") from e
    if not questions:
        raise GenerationError("Quiz response contained no questions.")
    return WorkoutQuiz(questions=questions)


def _fallback_quiz(transcripts: Sequence[str]) -> WorkoutQuiz:
    exercises = _mentioned_exercises(" ".join(transcripts))
    questions = [
        QuizQuestion(
            question="Which exercise came up in the videos you just watched?",
            options=[exercises[0].title(), "Underwater basket weaving", "Chess openings", "Knitting"],
            correct_answer=0,
        ),
        QuizQuestion(
            question="What should you do before starting the main workout?",
            options=["Skip straight to max effort", "Warm up for a few minutes", "Eat a large meal", "Hold your breath"],
            correct_answer=1,
        ),
        QuizQuestion(
            question="What is the safest way to progress an exercise?",
            options=["Add load every set", "Ignore pain", "Increase difficulty gradually", "Never rest"],
            correct_answer=2,
        ),
        QuizQuestion(
            question="Which cue keeps most bodyweight movements stable?",
            options=["Relax your whole body", "Lock your knees", "Look at the ceiling", "Brace your core"],
            correct_answer=3,
        ),
        QuizQuestion(
            question="How should you finish a workout?",
            options=["With a cooldown and stretching", "With a sprint", "By sitting down immediately", "With heavy lifting"],
            correct_answer=0,
        ),
    ]
    return WorkoutQuiz(questions=questions)


def generate_quiz_from_transcripts(transcripts: Sequence[str], api_key: Optional[str] = None) -> WorkoutQuiz:
    """
    Build a 5-question multiple-choice quiz from recently watched video narration.
    """
    valid = [text.strip() for text in transcripts if text and text.strip()]
    if not valid:
        raise GenerationError("No transcripts available for quiz generation.")

    client = get_openai_client(settings.OPENAI_API_KEY if api_key is None else api_key)
    if client is None:
        logger.warning("Using MOCK quiz generation.")
        return _fallback_quiz(valid)

    joined = "\n\n".join(f"Video {index + 1}: {text}" for index, text in enumerate(valid))
    try:
        content = _complete(client, TRANSCRIPT_QUIZ_PROMPT, f"Generate a quiz for these videos:\n{joined}", json_mode=True)
    except GenerationError:
        raise
    except Exception as e:
        logger.error(f"Error generating quiz: {e}")
        raise GenerationError(f"Quiz generation failed: {e}") from e
    return parse_quiz(content)
