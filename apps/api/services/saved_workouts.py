"""A user's library of workouts saved from finished live sessions."""

import logging
from typing import List, Optional

from models.content import SAVED_WORKOUTS, SavedWorkout
from services.document_store import DocumentStore, FieldFilter
from services.errors import DocumentNotFoundError, NotAuthorizedError

logger = logging.getLogger(__name__)


async def list_saved_workouts(store: DocumentStore, user_id: str) -> List[SavedWorkout]:
    """Newest first."""
    snapshots = await store.query(
        SAVED_WORKOUTS,
        [FieldFilter("userId", "==", user_id)],
        order_by="createdAt",
        descending=True,
    )
    return [SavedWorkout.from_document(snapshot) for snapshot in snapshots]


async def get_saved_workout(store: DocumentStore, workout_id: str) -> Optional[SavedWorkout]:
    snapshot = await store.get(SAVED_WORKOUTS, workout_id)
    return SavedWorkout.from_document(snapshot) if snapshot is not None else None


async def delete_saved_workout(store: DocumentStore, workout_id: str, requester_id: str) -> None:
    workout = await get_saved_workout(store, workout_id)
    if workout is None:
        raise DocumentNotFoundError(SAVED_WORKOUTS, workout_id)
    if workout.user_id != requester_id:
        raise NotAuthorizedError("Not authorized to delete this workout.")
    await store.delete(SAVED_WORKOUTS, workout_id)
    logger.info("Deleted saved workout %s for %s", workout_id, requester_id)
