"""Attempt log and best-attempt projection models."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from retest_backend.core.database import Base
from retest_backend.models.base import IDMixin, JSONType, TimestampMixin, utcnow


class Attempt(Base, IDMixin, TimestampMixin):
    """One graded submission for a (student, original test) pair.

    Regular and retest submissions share this log. ``test_id`` is always the
    original test so history joins line up across both paths.
    """

    __tablename__ = "attempts"

    student_id: Mapped[str] = mapped_column(String(50), nullable=False)
    test_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)

    score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    max_score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    retest_assignment_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("retest_assignments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Answer payload as sent by the submission path
    answers: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    time_taken: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    caught_cheating: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    visibility_change_times: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Snapshot taken at submission time so reports survive later renames
    test_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    teacher_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    grade: Mapped[str | None] = mapped_column(String(20), nullable=True)
    class_name: Mapped[str | None] = mapped_column(String(20), nullable=True)
    student_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    student_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    student_surname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    student_nickname: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("student_id", "test_id", "attempt_number", name="uq_attempt_student_test_number"),
        UniqueConstraint("student_id", "test_id", "idempotency_key", name="uq_attempt_idempotency"),
    )

    def __repr__(self) -> str:
        return f"<Attempt(student_id={self.student_id}, test_id={self.test_id}, number={self.attempt_number})>"


class BestAttempt(Base, IDMixin):
    """Materialized best attempt per (student, test), rebuilt from the log."""

    __tablename__ = "best_attempts"

    student_id: Mapped[str] = mapped_column(String(50), nullable=False)
    test_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("attempts.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    best_score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    best_max_score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    best_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    refreshed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("student_id", "test_id", name="uq_best_attempt_student_test"),
    )

    def __repr__(self) -> str:
        return f"<BestAttempt(student_id={self.student_id}, test_id={self.test_id}, pct={self.best_percentage})>"
