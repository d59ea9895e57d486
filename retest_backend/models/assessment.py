"""Original test registry and per-type result rows.

Both tables belong to the test-management CRUD side of the system. The retest
engine reads ``assessments`` for existence checks and snapshot fields, and
touches ``assessment_results`` only through the result store adapters.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from retest_backend.core.database import Base
from retest_backend.models.base import IDMixin, TimestampMixin, utcnow


class AssessmentType(str, enum.Enum):
    """Test types, each with its own submission path and result store."""

    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    INPUT = "input"
    MATCHING_TYPE = "matching_type"
    WORD_MATCHING = "word_matching"
    DRAWING = "drawing"
    FILL_BLANKS = "fill_blanks"
    SPEAKING = "speaking"


class Assessment(Base, IDMixin, TimestampMixin):
    """An original test a student can sit and later be offered a retest for."""

    __tablename__ = "assessments"

    test_type: Mapped[AssessmentType] = mapped_column(
        Enum(AssessmentType),
        nullable=False,
        index=True,
    )
    test_name: Mapped[str] = mapped_column(String(255), nullable=False)
    teacher_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<Assessment(id={self.id}, type={self.test_type}, name={self.test_name})>"


class AssessmentResult(Base, IDMixin):
    """A student's result row for an original test, one table per type upstream."""

    __tablename__ = "assessment_results"

    test_type: Mapped[AssessmentType] = mapped_column(Enum(AssessmentType), nullable=False)
    test_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False,
    )
    student_id: Mapped[str] = mapped_column(String(50), nullable=False)
    score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    max_score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    # Retest bookkeeping consumed by the student-facing views
    retest_offered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retest_assignment_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("retest_assignments.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_assessment_results_type_student_test", "test_type", "student_id", "test_id"),
    )

    def __repr__(self) -> str:
        return f"<AssessmentResult(student_id={self.student_id}, test_id={self.test_id})>"
