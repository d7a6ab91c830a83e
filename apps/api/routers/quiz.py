"""Quiz results and leaderboard."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from multimodal.models import WorkoutQuiz
from routers.auth_scope import get_identity
from routers.errors import http_error
from routers.rate_limit import rate_limit
from services.identity import IdentityClaims
from services.quiz_scores import get_leaderboard, get_quiz_score, submit_quiz_answers
from services.runtime import CoachRuntime, get_runtime

router = APIRouter()


class SubmitQuizRequest(BaseModel):
    quiz: WorkoutQuiz
    answers: List[Optional[int]] = Field(default_factory=list)


class QuizScoreResponse(BaseModel):
    user_id: str
    username: str
    total_quizzes_taken: int
    total_questions: int
    total_correct_answers: int
    average_score: float


def _score_response(score) -> QuizScoreResponse:
    return QuizScoreResponse(
        user_id=score.user_id,
        username=score.username,
        total_quizzes_taken=score.total_quizzes_taken,
        total_questions=score.total_questions,
        total_correct_answers=score.total_correct_answers,
        average_score=score.average_score,
    )


@router.post("/results", response_model=QuizScoreResponse)
async def submit_results(
    request: SubmitQuizRequest,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
    _rate_limit: None = Depends(rate_limit("quiz_result")),
):
    try:
        score = await submit_quiz_answers(
            runtime.store,
            identity.user_id,
            request.quiz,
            request.answers,
            username=identity.display_name,
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return _score_response(score)


@router.get("/leaderboard", response_model=List[QuizScoreResponse])
async def read_leaderboard(
    limit: int = Query(default=50, ge=1, le=100),
    runtime: CoachRuntime = Depends(get_runtime),
):
    return [_score_response(score) for score in await get_leaderboard(runtime.store, limit=limit)]


@router.get("/scores/{user_id}", response_model=QuizScoreResponse)
async def read_user_score(user_id: str, runtime: CoachRuntime = Depends(get_runtime)):
    return _score_response(await get_quiz_score(runtime.store, user_id))
