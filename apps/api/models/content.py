"""Saved workouts, feed videos and quiz score aggregates."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.sessions import WorkoutType, _workout_type
from services.document_store import DocumentSnapshot, encode_value, parse_timestamp, utc_now


SAVED_WORKOUTS = "savedWorkouts"
VIDEOS = "videos"
QUIZ_SCORES = "quizScores"


class SavedWorkout(BaseModel):
    id: str
    user_id: str
    title: str = ""
    workout_plan: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    source_session_id: Optional[str] = None
    type: WorkoutType = WorkoutType.OTHER
    difficulty: str = "Beginner"
    equipment: List[str] = Field(default_factory=list)
    estimated_duration: int = 30  # minutes

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "SavedWorkout":
        data = snapshot.data
        return cls(
            id=snapshot.id,
            user_id=str(data.get("userId") or ""),
            title=str(data.get("title") or ""),
            workout_plan=str(data.get("workoutPlan") or ""),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
            source_session_id=data.get("sourceSessionId"),
            type=_workout_type(data.get("type")),
            difficulty=str(data.get("difficulty") or "Beginner"),
            equipment=list(data.get("equipment") or []),
            estimated_duration=int(data.get("estimatedDuration") or 30),
        )


class FeedVideo(BaseModel):
    id: str
    owner_id: str
    title: str
    video_url: str
    thumbnail_url: Optional[str] = None
    trainer: str = ""
    workout_type: WorkoutType = WorkoutType.OTHER
    created_at: datetime = Field(default_factory=utc_now)
    likes: int = 0
    comments: int = 0

    def to_document(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ownerId": self.owner_id,
            "title": self.title,
            "videoURL": self.video_url,
            "trainer": self.trainer,
            "workoutType": self.workout_type.value,
            "createdAt": encode_value(self.created_at),
            "likes": self.likes,
            "comments": self.comments,
        }
        if self.thumbnail_url:
            data["thumbnailURL"] = self.thumbnail_url
        return data

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "FeedVideo":
        data = snapshot.data
        return cls(
            id=snapshot.id,
            owner_id=str(data.get("ownerId") or ""),
            title=str(data.get("title") or ""),
            video_url=str(data.get("videoURL") or ""),
            thumbnail_url=data.get("thumbnailURL"),
            trainer=str(data.get("trainer") or ""),
            workout_type=_workout_type(data.get("workoutType")),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
            likes=int(data.get("likes") or 0),
            comments=int(data.get("comments") or 0),
        )


class QuizScore(BaseModel):
    user_id: str
    username: str = ""
    total_quizzes_taken: int = 0
    total_questions: int = 0
    total_correct_answers: int = 0
    last_quiz_date: Optional[datetime] = None

    @property
    def average_score(self) -> float:
        if self.total_questions <= 0:
            return 0.0
        return round(self.total_correct_answers / self.total_questions, 4)

    @classmethod
    def from_document(cls, user_id: str, snapshot: Optional[DocumentSnapshot]) -> "QuizScore":
        if snapshot is None:
            return cls(user_id=user_id)
        return cls(
            user_id=user_id,
            username=str(snapshot.get("username") or ""),
            total_quizzes_taken=int(snapshot.get("totalQuizzesTaken") or 0),
            total_questions=int(snapshot.get("totalQuestions") or 0),
            total_correct_answers=int(snapshot.get("totalCorrectAnswers") or 0),
            last_quiz_date=parse_timestamp(snapshot.get("lastQuizDate")),
        )
