"""Attempt recorder: the append/overwrite log shared by regular and retest submissions."""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retest_backend.core.database import atomic, dialect_insert
from retest_backend.core.exceptions import InvalidArgumentError, NotFoundError
from retest_backend.models.attempt import Attempt
from retest_backend.models.audit import AuditAction
from retest_backend.models.base import utcnow
from retest_backend.schemas.attempt import AttemptPayload, AttemptRegrade
from retest_backend.services.audit import AuditService
from retest_backend.services.best_attempt import BestAttemptProjector
from retest_backend.services.transition import compute_percentage

logger = logging.getLogger(__name__)

ATTEMPT_KEY = ("student_id", "test_id", "attempt_number")


class AttemptRecorder:
    """Writes attempts keyed by (student, original test, attempt number)."""

    def __init__(self, db: Session):
        self.db = db

    def record_attempt(
        self,
        student_id: str,
        test_id: int,
        attempt_number: int,
        payload: AttemptPayload,
    ) -> Attempt:
        """Insert the attempt, or overwrite it in place if that number already exists.

        A single INSERT ... ON CONFLICT DO UPDATE, so a retried or raced
        submission for the same number can never produce a second row.
        """
        now = utcnow()
        values = payload.model_dump()

        stmt = dialect_insert(self.db, Attempt).values(
            student_id=student_id,
            test_id=test_id,
            attempt_number=attempt_number,
            created_at=now,
            updated_at=now,
            **values,
        )
        update_columns = {column: stmt.excluded[column] for column in values}
        update_columns["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(
            index_elements=list(ATTEMPT_KEY),
            set_=update_columns,
        )
        self.db.execute(stmt)

        attempt = self.db.execute(
            select(Attempt)
            .where(
                Attempt.student_id == student_id,
                Attempt.test_id == test_id,
                Attempt.attempt_number == attempt_number,
            )
            .execution_options(populate_existing=True)
        ).scalar_one()

        logger.info(
            f"Recorded attempt {attempt_number} for student {student_id} on test {test_id} "
            f"(percentage={attempt.percentage}, retest={attempt.retest_assignment_id})"
        )
        return attempt

    def next_attempt_number_hint(self, student_id: str, test_id: int) -> int:
        """max(existing attempt_number) + 1, or 1 for an empty log."""
        current = self.db.execute(
            select(func.max(Attempt.attempt_number)).where(
                Attempt.student_id == student_id,
                Attempt.test_id == test_id,
            )
        ).scalar()
        return (current or 0) + 1

    def find_by_idempotency_key(
        self,
        student_id: str,
        test_id: int,
        idempotency_key: str,
    ) -> Attempt | None:
        result = self.db.execute(
            select(Attempt).where(
                Attempt.student_id == student_id,
                Attempt.test_id == test_id,
                Attempt.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    def get_attempt(self, attempt_id: int) -> Attempt:
        """Get attempt by ID."""
        attempt = self.db.get(Attempt, attempt_id)
        if not attempt:
            raise NotFoundError("Attempt", str(attempt_id))
        return attempt

    def list_attempts(self, student_id: str, test_id: int) -> list[Attempt]:
        """Full attempt history for a student and test, oldest first."""
        result = self.db.execute(
            select(Attempt)
            .where(
                Attempt.student_id == student_id,
                Attempt.test_id == test_id,
            )
            .order_by(Attempt.attempt_number)
        )
        return list(result.scalars().all())

    def regrade_attempt(
        self,
        attempt_id: int,
        request: AttemptRegrade,
        actor_role: str | None = None,
        actor_id: str | None = None,
    ) -> Attempt:
        """Set a teacher-given score on an attempt and refresh the best attempt.

        The retest target is not moved: ungraded submissions already counted
        as a pass when they were made.
        """
        if request.score > request.max_score:
            raise InvalidArgumentError(
                f"score ({request.score}) exceeds max_score ({request.max_score})"
            )

        with atomic(self.db):
            attempt = self.get_attempt(attempt_id)
            previous: Decimal | None = attempt.percentage

            attempt.score = request.score
            attempt.max_score = request.max_score
            attempt.percentage = compute_percentage(request.score, request.max_score)
            self.db.flush()

            BestAttemptProjector(self.db).refresh_best(attempt.student_id, attempt.test_id)

            AuditService(self.db).log(
                action=AuditAction.ATTEMPT_REGRADED,
                resource_type="attempt",
                resource_id=str(attempt.id),
                actor_role=actor_role,
                actor_id=actor_id,
                description=f"Attempt {attempt.attempt_number} of student {attempt.student_id} regraded",
                metadata={
                    "previous_percentage": str(previous) if previous is not None else None,
                    "percentage": str(attempt.percentage),
                },
            )

        logger.info(f"Regraded attempt {attempt_id}: {previous} -> {attempt.percentage}")
        return attempt
