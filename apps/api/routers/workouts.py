"""Saved workout library for the signed-in user."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from models.content import SavedWorkout
from routers.auth_scope import ensure_user_scope, get_identity
from routers.errors import http_error
from services.errors import CoordinationError
from services.identity import IdentityClaims
from services.runtime import CoachRuntime, get_runtime
from services.saved_workouts import delete_saved_workout, get_saved_workout, list_saved_workouts

router = APIRouter()


@router.get("", response_model=List[SavedWorkout])
async def list_workouts(
    user_id: Optional[str] = None,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    owner_id = ensure_user_scope(identity.user_id, user_id)
    return await list_saved_workouts(runtime.store, owner_id)


@router.get("/{workout_id}", response_model=SavedWorkout)
async def read_workout(
    workout_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    workout = await get_saved_workout(runtime.store, workout_id)
    if workout is None:
        raise HTTPException(status_code=404, detail="Saved workout not found")
    ensure_user_scope(identity.user_id, workout.user_id)
    return workout


@router.delete("/{workout_id}")
async def remove_workout(
    workout_id: str,
    identity: IdentityClaims = Depends(get_identity),
    runtime: CoachRuntime = Depends(get_runtime),
):
    try:
        await delete_saved_workout(runtime.store, workout_id, identity.user_id)
    except CoordinationError as exc:
        raise http_error(exc) from exc
    return {"deleted": True, "workout_id": workout_id}
