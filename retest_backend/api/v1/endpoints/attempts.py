"""Attempt history and best-attempt endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from retest_backend.core.database import atomic, get_db
from retest_backend.core.dependencies import CurrentPrincipal, Principal, StaffPrincipal
from retest_backend.core.exceptions import InvalidArgumentError, PermissionDeniedError
from retest_backend.schemas.attempt import (
    AttemptRegrade,
    AttemptResponse,
    BestAttemptRefresh,
    BestAttemptResponse,
)
from retest_backend.services.attempt import AttemptRecorder
from retest_backend.services.best_attempt import BestAttemptProjector

router = APIRouter()


def _resolve_student(principal: Principal, student_id: str | None) -> str:
    """Students may only look at their own attempts."""
    if principal.is_student():
        if student_id and student_id != principal.student_id:
            raise PermissionDeniedError("Students can only view their own attempts")
        return principal.student_id
    if not student_id:
        raise InvalidArgumentError("student_id is required")
    return student_id


@router.get("", response_model=list[AttemptResponse])
def list_attempts(
    principal: CurrentPrincipal,
    db: Annotated[Session, Depends(get_db)],
    test_id: int = Query(...),
    student_id: str | None = None,
):
    """
    Attempt history for a student on a test, oldest first.
    """
    student_id = _resolve_student(principal, student_id)
    return AttemptRecorder(db).list_attempts(student_id, test_id)


@router.get("/best", response_model=BestAttemptResponse)
def get_best_attempt(
    principal: CurrentPrincipal,
    db: Annotated[Session, Depends(get_db)],
    test_id: int = Query(...),
    student_id: str | None = None,
):
    """
    Best attempt for a student on a test.
    """
    student_id = _resolve_student(principal, student_id)
    return BestAttemptProjector(db).get_best(student_id, test_id)


@router.post("/best/refresh", response_model=BestAttemptResponse | None)
def refresh_best_attempt(
    request: BestAttemptRefresh,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Rebuild the best attempt from the attempt log.
    Returns null when the student has no attempts on the test.
    """
    with atomic(db):
        best = BestAttemptProjector(db).refresh_best(request.student_id, request.test_id)
    return best


@router.patch("/{attempt_id}/score", response_model=AttemptResponse)
def regrade_attempt(
    attempt_id: int,
    request: AttemptRegrade,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Score an attempt that was submitted ungraded, or correct a score.
    The retest target is left as it is.
    """
    return AttemptRecorder(db).regrade_attempt(
        attempt_id,
        request,
        actor_role=principal.role,
        actor_id=principal.subject_id,
    )
