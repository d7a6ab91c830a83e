from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.sessions import WorkoutType
from services.document_store import utc_now


class QuizQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    options: List[str]
    correct_answer: int = Field(alias="correctAnswer")  # index into options

    @model_validator(mode="after")
    def _answer_in_range(self) -> "QuizQuestion":
        if not 0 <= self.correct_answer < len(self.options):
            raise ValueError("correctAnswer must index one of the options")
        return self


class WorkoutQuiz(BaseModel):
    workout_id: Optional[str] = None
    questions: List[QuizQuestion]
    created_at: datetime = Field(default_factory=utc_now)


class ParsedWorkout(BaseModel):
    title: str
    type: WorkoutType = WorkoutType.OTHER
    difficulty: str = "Intermediate"
    equipment: List[str] = Field(default_factory=list)
    estimated_duration: int = 30  # minutes
    workout_plan: str
