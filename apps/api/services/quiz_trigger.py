"""
Decides when enough reel narration has been watched to request a quiz.

Valid transcripts (at least ``QUIZ_MIN_TRANSCRIPT_LENGTH`` characters after
trimming) are kept newest-first in a bounded list. Once the observation counter
reaches the threshold with at least two transcripts stored, one generation
request is started; further triggers are ignored while it is in flight.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from config import settings
from multimodal.llm import generate_quiz_from_transcripts
from multimodal.models import WorkoutQuiz

logger = logging.getLogger(__name__)

QuizGenerator = Callable[[List[str]], Awaitable[WorkoutQuiz]]


async def generate_quiz_in_thread(transcripts: List[str]) -> WorkoutQuiz:
    return await asyncio.to_thread(generate_quiz_from_transcripts, transcripts)


class QuizTriggerEngine:
    def __init__(
        self,
        generator: Optional[QuizGenerator] = None,
        *,
        on_quiz: Optional[Callable[[WorkoutQuiz], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.threshold = settings.QUIZ_TRANSCRIPTS_BEFORE_TRIGGER
        self.max_stored = settings.QUIZ_MAX_STORED_TRANSCRIPTS
        self.min_length = settings.QUIZ_MIN_TRANSCRIPT_LENGTH
        self.min_transcripts = settings.QUIZ_MIN_VALID_TRANSCRIPTS
        self.max_retries = settings.QUIZ_MAX_RETRIES
        self.retry_delay = settings.QUIZ_RETRY_DELAY_SECONDS

        self._generate = generator or generate_quiz_in_thread
        self._on_quiz = on_quiz
        self._sleep = sleep
        self._generation_task: Optional[asyncio.Task] = None

        self.active = False
        self.recent_transcripts: List[str] = []
        self.observed_since_last_quiz = 0
        self.current_quiz: Optional[WorkoutQuiz] = None
        self.should_show_quiz = False

    @property
    def generating(self) -> bool:
        return self._generation_task is not None and not self._generation_task.done()

    def set_active(self, active: bool) -> None:
        was_active = self.active
        self.active = active
        if not active:
            self._clear_pending_quiz()
            task, self._generation_task = self._generation_task, None
            if task is not None:
                task.cancel()
        elif not was_active:
            self._clear_pending_quiz()

    def add_transcript(self, text: str) -> bool:
        """Record one watched transcript; returns False when it was ignored."""
        if not self.active:
            logger.debug("Skipping transcript, quiz feed inactive")
            return False

        clean = (text or "").strip()
        if len(clean) < self.min_length:
            logger.debug("Skipping transcript, too short (%d chars)", len(clean))
            return False

        self.recent_transcripts.insert(0, clean)
        del self.recent_transcripts[self.max_stored:]
        self.observed_since_last_quiz += 1

        if (
            self.observed_since_last_quiz >= self.threshold
            and len(self.recent_transcripts) >= self.min_transcripts
        ):
            self._trigger()
        return True

    def dismiss_quiz(self) -> None:
        self._clear_pending_quiz()
        self.recent_transcripts.clear()
        self.observed_since_last_quiz = 0

    async def wait_idle(self) -> None:
        task = self._generation_task
        if task is not None:
            await asyncio.wait({task})

    def _clear_pending_quiz(self) -> None:
        self.should_show_quiz = False
        self.current_quiz = None

    def _trigger(self) -> None:
        if self.generating:
            logger.debug("Quiz generation already in flight, ignoring trigger")
            return
        self._generation_task = asyncio.create_task(self._generate_with_retry())

    async def _generate_with_retry(self) -> None:
        attempts = self.max_retries + 1
        last_error: Optional[Exception] = None
        try:
            for attempt in range(1, attempts + 1):
                if not self.active:
                    return
                transcripts = [text for text in self.recent_transcripts if len(text) >= self.min_length]
                try:
                    quiz = await self._generate(transcripts)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    last_error = exc
                    logger.warning("Quiz generation attempt %d/%d failed: %s", attempt, attempts, exc)
                    if attempt < attempts:
                        await self._sleep(self.retry_delay)
                    continue

                if not self.active:
                    return
                self.current_quiz = quiz
                self.should_show_quiz = True
                self.observed_since_last_quiz = 0
                if self._on_quiz is not None:
                    self._on_quiz(quiz)
                return

            logger.warning("Quiz generation failed after %d retries: %s", self.max_retries, last_error)
            self.observed_since_last_quiz = max(0, self.threshold - 1)
        finally:
            if self._generation_task is asyncio.current_task():
                self._generation_task = None
