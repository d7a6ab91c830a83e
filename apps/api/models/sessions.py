"""Session, reel and rating shapes stored in the document store."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from services.document_store import DocumentSnapshot, encode_value, parse_timestamp, utc_now


LIVE_SESSIONS = "liveSessions"
PARTNER_SESSIONS = "partnerSessions"
COMMUNITY_REELS = "communityReels"
USERS = "users"


class SessionStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "inProgress"
    ENDED = "ended"


# Position of each status in the only allowed progression.
STATUS_ORDER = {
    SessionStatus.WAITING: 0,
    SessionStatus.IN_PROGRESS: 1,
    SessionStatus.ENDED: 2,
}


class WorkoutType(str, Enum):
    STRENGTH = "Strength"
    CARDIO = "Cardio"
    YOGA = "Yoga"
    HIIT = "HIIT"
    PILATES = "Pilates"
    STRETCHING = "Stretching"
    BODYWEIGHT = "Bodyweight"
    OTHER = "Other"


def _workout_type(value: Any) -> WorkoutType:
    try:
        return WorkoutType(value)
    except ValueError:
        return WorkoutType.OTHER


class LiveSession(BaseModel):
    id: str
    host_id: str
    host_name: str = ""
    channel_id: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    viewer_count: int = 0
    viewers: List[str] = Field(default_factory=list)
    workout_transcript: Optional[str] = None
    generated_workout: Optional[str] = None
    generation_error: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "hostId": self.host_id,
            "hostName": self.host_name,
            "channelId": self.channel_id,
            "isActive": self.is_active,
            "createdAt": encode_value(self.created_at),
            "viewerCount": self.viewer_count,
            "viewers": list(self.viewers),
            "workoutTranscript": self.workout_transcript,
            "generatedWorkout": self.generated_workout,
            "generationError": self.generation_error,
        }

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "LiveSession":
        data = snapshot.data
        return cls(
            id=snapshot.id,
            host_id=str(data.get("hostId") or ""),
            host_name=str(data.get("hostName") or ""),
            channel_id=str(data.get("channelId") or ""),
            is_active=bool(data.get("isActive", False)),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
            viewer_count=int(data.get("viewerCount") or 0),
            viewers=list(data.get("viewers") or []),
            workout_transcript=data.get("workoutTranscript"),
            generated_workout=data.get("generatedWorkout"),
            generation_error=data.get("generationError"),
        )


class PartnerSession(BaseModel):
    id: str
    host_id: str
    partner_id: Optional[str] = None
    channel_id: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    status: SessionStatus = SessionStatus.WAITING
    workout_type: WorkoutType = WorkoutType.OTHER
    duration_minutes: int = 30
    reel_id: Optional[str] = None

    @property
    def participants(self) -> List[str]:
        members = [self.host_id]
        if self.partner_id:
            members.append(self.partner_id)
        return members

    def to_document(self) -> Dict[str, Any]:
        return {
            "hostId": self.host_id,
            "partnerId": self.partner_id,
            "channelId": self.channel_id,
            "isActive": self.is_active,
            "createdAt": encode_value(self.created_at),
            "status": self.status.value,
            "workoutType": self.workout_type.value,
            "durationMinutes": self.duration_minutes,
            "reelId": self.reel_id,
        }

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "PartnerSession":
        data = snapshot.data
        try:
            status = SessionStatus(data.get("status"))
        except ValueError:
            status = SessionStatus.ENDED
        return cls(
            id=snapshot.id,
            host_id=str(data.get("hostId") or ""),
            partner_id=data.get("partnerId"),
            channel_id=str(data.get("channelId") or ""),
            is_active=bool(data.get("isActive", False)),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
            status=status,
            workout_type=_workout_type(data.get("workoutType")),
            duration_minutes=int(data.get("durationMinutes") or 0),
            reel_id=data.get("reelId"),
        )


class CommunityReel(BaseModel):
    id: str
    video_url: str
    thumbnail_url: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    duration: float = 0.0
    workout_type: WorkoutType = WorkoutType.OTHER
    created_at: datetime = Field(default_factory=utc_now)
    like_count: int = 0
    comment_count: int = 0
    session_id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "videoURL": self.video_url,
            "participants": list(self.participants),
            "duration": self.duration,
            "workoutType": self.workout_type.value,
            "createdAt": encode_value(self.created_at),
            "likeCount": self.like_count,
            "commentCount": self.comment_count,
            "sessionId": self.session_id,
        }
        if self.thumbnail_url:
            data["thumbnailURL"] = self.thumbnail_url
        return data

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "CommunityReel":
        data = snapshot.data
        return cls(
            id=snapshot.id,
            video_url=str(data.get("videoURL") or ""),
            thumbnail_url=data.get("thumbnailURL"),
            participants=list(data.get("participants") or []),
            duration=float(data.get("duration") or 0.0),
            workout_type=_workout_type(data.get("workoutType")),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
            like_count=int(data.get("likeCount") or 0),
            comment_count=int(data.get("commentCount") or 0),
            session_id=data.get("sessionId"),
        )


class RatingSummary(BaseModel):
    user_id: str
    total_ratings: int = 0
    rating_sum: int = 0

    @property
    def average(self) -> Optional[float]:
        if self.total_ratings <= 0:
            return None
        return round(self.rating_sum / self.total_ratings, 2)

    @classmethod
    def from_document(cls, user_id: str, snapshot: Optional[DocumentSnapshot]) -> "RatingSummary":
        if snapshot is None:
            return cls(user_id=user_id)
        return cls(
            user_id=user_id,
            total_ratings=int(snapshot.get("totalRatings") or 0),
            rating_sum=int(snapshot.get("ratingSum") or 0),
        )
