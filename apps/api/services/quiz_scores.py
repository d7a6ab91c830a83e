"""
Quiz results and the global leaderboard.

Each finished quiz adds one quiz, its question count and the correct answers to
the user's ``quizScores`` document inside a single transaction. The average is
stored alongside the counters only so the leaderboard can order by it.
"""

import logging
from typing import List, Optional, Sequence

from models.content import QUIZ_SCORES, QuizScore
from models.sessions import USERS
from multimodal.models import WorkoutQuiz
from services.document_store import DocumentStore, Transaction, utc_now

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "Anonymous User"


def grade_quiz(quiz: WorkoutQuiz, answers: Sequence[Optional[int]]) -> int:
    """Count answers matching the quiz key; unanswered questions count as wrong."""
    if len(answers) > len(quiz.questions):
        raise ValueError("More answers than quiz questions.")
    return sum(
        1
        for question, answer in zip(quiz.questions, answers)
        if answer is not None and answer == question.correct_answer
    )


async def record_quiz_result(
    store: DocumentStore,
    user_id: str,
    total_questions: int,
    correct_answers: int,
    username: Optional[str] = None,
) -> QuizScore:
    if total_questions <= 0:
        raise ValueError("A quiz needs at least one question.")
    if not 0 <= correct_answers <= total_questions:
        raise ValueError("Correct answers must be between 0 and the number of questions.")

    async def _apply(txn: Transaction) -> QuizScore:
        current_doc = await txn.get(QUIZ_SCORES, user_id)
        user_doc = await txn.get(USERS, user_id)
        current = QuizScore.from_document(user_id, current_doc)
        name = (
            (user_doc.get("username") if user_doc is not None else None)
            or username
            or current.username
            or DEFAULT_USERNAME
        )
        updated = QuizScore(
            user_id=user_id,
            username=name,
            total_quizzes_taken=current.total_quizzes_taken + 1,
            total_questions=current.total_questions + total_questions,
            total_correct_answers=current.total_correct_answers + correct_answers,
            last_quiz_date=utc_now(),
        )
        txn.set(
            QUIZ_SCORES,
            user_id,
            {
                "userId": user_id,
                "username": updated.username,
                "totalQuizzesTaken": updated.total_quizzes_taken,
                "totalQuestions": updated.total_questions,
                "totalCorrectAnswers": updated.total_correct_answers,
                "averageScore": updated.average_score,
                "lastQuizDate": updated.last_quiz_date,
            },
            merge=True,
        )
        return updated

    score = await store.run_transaction(_apply)
    logger.info(
        "Recorded quiz result %d/%d for %s (average %.2f)",
        correct_answers,
        total_questions,
        user_id,
        score.average_score,
    )
    return score


async def submit_quiz_answers(
    store: DocumentStore,
    user_id: str,
    quiz: WorkoutQuiz,
    answers: Sequence[Optional[int]],
    username: Optional[str] = None,
) -> QuizScore:
    correct = grade_quiz(quiz, answers)
    return await record_quiz_result(store, user_id, len(quiz.questions), correct, username=username)


async def get_quiz_score(store: DocumentStore, user_id: str) -> QuizScore:
    return QuizScore.from_document(user_id, await store.get(QUIZ_SCORES, user_id))


async def get_leaderboard(store: DocumentStore, limit: int = 50) -> List[QuizScore]:
    snapshots = await store.query(QUIZ_SCORES, order_by="averageScore", descending=True, limit=limit)
    return [QuizScore.from_document(snapshot.id, snapshot) for snapshot in snapshots]
