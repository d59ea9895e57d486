"""Retest assignment and per-student target models."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from retest_backend.core.database import Base
from retest_backend.models.assessment import AssessmentType
from retest_backend.models.base import IDMixin, TimestampMixin


class ScoringPolicy(str, enum.Enum):
    """How attempts are reduced to one reported result."""

    BEST = "BEST"
    LATEST = "LATEST"  # Stored but not yet used by the projector


class RetestStatus(str, enum.Enum):
    """Lifecycle of a retest target."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    PASSED = "PASSED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({RetestStatus.PASSED, RetestStatus.FAILED, RetestStatus.EXPIRED})
OPEN_STATUSES = frozenset({RetestStatus.PENDING, RetestStatus.IN_PROGRESS})


class RetestAssignment(Base, IDMixin, TimestampMixin):
    """A teacher-issued remedial offer for an original test."""

    __tablename__ = "retest_assignments"

    test_type: Mapped[AssessmentType] = mapped_column(Enum(AssessmentType), nullable=False)
    test_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    teacher_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    grade: Mapped[str | None] = mapped_column(String(20), nullable=True)
    class_name: Mapped[str | None] = mapped_column(String(20), nullable=True)

    passing_threshold: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        default=Decimal("50.00"),
        nullable=False,
    )
    scoring_policy: Mapped[ScoringPolicy] = mapped_column(
        Enum(ScoringPolicy),
        default=ScoringPolicy.BEST,
        nullable=False,
    )
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    targets: Mapped[list["RetestTarget"]] = relationship(
        "RetestTarget",
        back_populates="assignment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("max_attempts >= 1", name="ck_retest_max_attempts_positive"),
        CheckConstraint("window_start <= window_end", name="ck_retest_window_order"),
        CheckConstraint(
            "passing_threshold >= 0 AND passing_threshold <= 100",
            name="ck_retest_threshold_range",
        ),
    )

    def __repr__(self) -> str:
        return f"<RetestAssignment(id={self.id}, test_id={self.test_id}, max_attempts={self.max_attempts})>"


class RetestTarget(Base, IDMixin, TimestampMixin):
    """One student's progress against a retest assignment."""

    __tablename__ = "retest_targets"

    assignment_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("retest_assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    student_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    attempt_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)  # Snapshot of the assignment cap
    # Attempt log numbers of this target start after this value
    attempt_offset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    passed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[RetestStatus] = mapped_column(
        Enum(RetestStatus),
        default=RetestStatus.PENDING,
        nullable=False,
        index=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    assignment: Mapped["RetestAssignment"] = relationship(
        "RetestAssignment",
        back_populates="targets",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("assignment_id", "student_id", name="uq_retest_target_assignment_student"),
        CheckConstraint(
            "attempt_number >= 0 AND attempt_number <= max_attempts",
            name="ck_retest_target_attempt_bounds",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RetestTarget(assignment_id={self.assignment_id}, student_id={self.student_id}, "
            f"attempt={self.attempt_number}/{self.max_attempts}, status={self.status})>"
        )
