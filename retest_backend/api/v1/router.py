"""Main API router aggregating all module routers."""

from fastapi import APIRouter

from retest_backend.api.v1.endpoints import attempts, retests, submissions

api_router = APIRouter()

# Retest assignments (staff)
api_router.include_router(
    retests.router,
    prefix="/retests",
    tags=["Retests"],
)

# Submissions (students)
api_router.include_router(
    submissions.router,
    prefix="/submissions",
    tags=["Submissions"],
)

# Attempt history and best attempts
api_router.include_router(
    attempts.router,
    prefix="/attempts",
    tags=["Attempts"],
)
