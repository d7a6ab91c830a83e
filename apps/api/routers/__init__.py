"""Routers package."""

from . import (
    blobs,
    health,
    live,
    partner,
    quiz,
    reels,
    videos,
    workouts,
)
