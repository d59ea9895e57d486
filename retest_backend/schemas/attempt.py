"""Attempt, submission and best-attempt schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import Field, field_validator

from retest_backend.models.retest import RetestStatus
from retest_backend.schemas.common import BaseSchema, to_utc


# ==========================================
# Submission Schemas
# ==========================================

class SubmissionRequest(BaseSchema):
    """A graded submission from one of the test-type submission paths."""

    test_id: int = Field(..., description="Original test id, also for retests")
    retest_assignment_id: int | None = None
    score: Decimal | None = Field(None, ge=0)
    max_score: Decimal | None = Field(None, ge=0)
    completed: bool = True
    idempotency_key: str | None = Field(
        None,
        max_length=100,
        description="Client-generated key; resending it replays the same attempt",
    )

    answers: Any | None = None
    time_taken: int | None = Field(None, ge=0)
    started_at: datetime | None = None
    caught_cheating: bool = False
    visibility_change_times: int = Field(0, ge=0)

    @field_validator("started_at")
    @classmethod
    def validate_started_at(cls, v: datetime | None) -> datetime | None:
        return to_utc(v)


class SubmissionResult(BaseSchema):
    """Outcome of a submission.

    ``attempt_number`` is the retest counter after the submission (or the log
    number for regular tests); ``recorded_attempt_number`` is the key the
    attempt was stored under.
    """

    attempt_id: int
    attempt_number: int
    recorded_attempt_number: int
    percentage: Decimal | None
    passed: bool | None
    completed: bool
    status: RetestStatus | None = None
    replayed: bool = False


# ==========================================
# Attempt Schemas
# ==========================================

class AttemptPayload(BaseSchema):
    """Column values written by the attempt recorder."""

    score: Decimal | None = None
    max_score: Decimal | None = None
    percentage: Decimal | None = None
    is_completed: bool = False
    submitted_at: datetime
    retest_assignment_id: int | None = None
    idempotency_key: str | None = None

    answers: Any | None = None
    time_taken: int | None = None
    started_at: datetime | None = None
    caught_cheating: bool = False
    visibility_change_times: int = 0

    test_name: str | None = None
    teacher_id: str | None = None
    subject_id: str | None = None
    grade: str | None = None
    class_name: str | None = None
    student_number: str | None = None
    student_name: str | None = None
    student_surname: str | None = None
    student_nickname: str | None = None


class AttemptResponse(BaseSchema):
    """Attempt response schema."""

    id: int
    student_id: str
    test_id: int
    attempt_number: int
    score: Decimal | None
    max_score: Decimal | None
    percentage: Decimal | None
    is_completed: bool
    submitted_at: datetime
    retest_assignment_id: int | None
    test_name: str | None
    student_name: str | None
    student_surname: str | None


class AttemptRegrade(BaseSchema):
    """Manual score for an attempt that arrived ungraded."""

    score: Decimal = Field(..., ge=0)
    max_score: Decimal = Field(..., gt=0)


# ==========================================
# Best Attempt Schemas
# ==========================================

class BestAttemptRefresh(BaseSchema):
    """Request to rebuild the best attempt for a student and test."""

    student_id: str
    test_id: int

    @field_validator("student_id", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v


class BestAttemptResponse(BaseSchema):
    """Best attempt projection response schema."""

    student_id: str
    test_id: int
    attempt_id: int
    attempt_number: int
    best_score: Decimal | None
    best_max_score: Decimal | None
    best_percentage: Decimal | None
    attempt_count: int
    refreshed_at: datetime
