"""Retest assignment and target schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import Field, field_validator

from retest_backend.core.config import settings
from retest_backend.models.assessment import AssessmentType
from retest_backend.models.retest import RetestStatus, ScoringPolicy
from retest_backend.schemas.common import BaseSchema, to_utc


# ==========================================
# Assignment Schemas
# ==========================================

class RetestAssignmentCreate(BaseSchema):
    """Retest assignment creation schema.

    Range checks (empty student list, threshold bounds, window order) are done
    by the service so every caller gets the same INVALID_ARGUMENT error.
    """

    test_type: AssessmentType
    original_test_id: int
    teacher_id: str | None = Field(None, description="Only honoured for admins")
    subject_id: str | None = None
    grade: str | None = None
    class_name: str | None = Field(None, alias="class")
    student_ids: list[str]
    passing_threshold: Decimal = Field(
        default_factory=lambda: Decimal(str(settings.RETEST_DEFAULT_PASSING_THRESHOLD))
    )
    scoring_policy: ScoringPolicy = ScoringPolicy.BEST
    max_attempts: int = Field(default_factory=lambda: settings.RETEST_DEFAULT_MAX_ATTEMPTS)
    window_start: datetime
    window_end: datetime

    @field_validator("student_ids", mode="before")
    @classmethod
    def normalize_student_ids(cls, v: Any) -> Any:
        """Student ids are opaque strings; accept numeric ids from older clients."""
        if isinstance(v, list):
            return [str(item) for item in v]
        return v

    @field_validator("teacher_id", "subject_id", "grade", "class_name", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("window_start", "window_end")
    @classmethod
    def validate_window(cls, v: datetime) -> datetime:
        return to_utc(v)


class RetestStatusCounts(BaseSchema):
    """Per-status target counts for an assignment."""

    pending: int = 0
    in_progress: int = 0
    passed: int = 0
    failed: int = 0
    expired: int = 0


class RetestAssignmentResponse(BaseSchema):
    """Retest assignment response schema."""

    id: int
    test_type: AssessmentType
    test_id: int
    teacher_id: str
    subject_id: str | None
    grade: str | None
    class_name: str | None
    passing_threshold: Decimal
    scoring_policy: ScoringPolicy
    max_attempts: int
    window_start: datetime
    window_end: datetime
    created_at: datetime
    updated_at: datetime

    # Enriched fields
    target_count: int = 0
    status_counts: RetestStatusCounts | None = None


class RetestCancelResponse(BaseSchema):
    """Result of shortening an assignment's window."""

    assignment_id: int
    window_end: datetime
    updated: bool


# ==========================================
# Target Schemas
# ==========================================

class RetestTargetResponse(BaseSchema):
    """Retest target response schema."""

    id: int
    assignment_id: int
    student_id: str
    attempt_number: int
    max_attempts: int
    attempts_left: int
    is_completed: bool
    passed: bool
    status: RetestStatus
    completed_at: datetime | None
    last_attempt_at: datetime | None


class EligibleStudentResponse(BaseSchema):
    """A student whose best result is below the retest threshold."""

    student_id: str
    student_name: str | None = None
    student_surname: str | None = None
    student_nickname: str | None = None
    best_percentage: Decimal | None
    attempt_count: int


class RetestStudentsAdd(BaseSchema):
    """Students to add to an existing assignment."""

    student_ids: list[str]

    @field_validator("student_ids", mode="before")
    @classmethod
    def normalize_student_ids(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [str(item) for item in v]
        return v


class ExpirySweepResponse(BaseSchema):
    """Outcome of a manual expiry sweep."""

    expired: int
