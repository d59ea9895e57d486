"""Submission endpoint shared by every test-type submission path."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from retest_backend.core.database import get_db
from retest_backend.core.dependencies import StudentPrincipal
from retest_backend.schemas.attempt import SubmissionRequest, SubmissionResult
from retest_backend.schemas.common import ErrorResponse
from retest_backend.services.submission import SubmissionService

router = APIRouter()


@router.post(
    "",
    response_model=SubmissionResult,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
def submit_attempt(
    request: SubmissionRequest,
    principal: StudentPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Record a graded submission for the calling student.

    Pass retest_assignment_id to submit against a retest. Eligibility
    failures come back as 409 with WINDOW_CLOSED, ALREADY_COMPLETED or
    ATTEMPTS_EXHAUSTED. Resending the same idempotency_key replays the
    earlier attempt instead of consuming a new one.
    """
    service = SubmissionService(db)
    return service.submit(principal.student_id, request, profile=principal.profile)
