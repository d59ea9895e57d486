"""Retest target tracker: the authoritative per-student progress record."""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from retest_backend.core.exceptions import (
    IntegrityFaultError,
    NotFoundError,
    SubmissionConflictError,
)
from retest_backend.models.base import utcnow
from retest_backend.models.retest import RetestAssignment, RetestStatus, RetestTarget
from retest_backend.schemas.retest import RetestTargetResponse
from retest_backend.services.transition import Transition, effective_max_attempts

logger = logging.getLogger(__name__)


class RetestTargetTracker:
    """Reads targets and applies lifecycle transitions to them.

    ``apply_transition`` is the only write path; the rules that produce a
    transition live in ``services.transition``.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, assignment_id: int) -> RetestAssignment:
        assignment = self.db.execute(
            select(RetestAssignment)
            .where(RetestAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not assignment:
            raise NotFoundError("Retest assignment", str(assignment_id))
        return assignment

    def get_target(
        self,
        assignment_id: int,
        student_id: str,
        for_update: bool = False,
    ) -> tuple[RetestTarget, RetestAssignment]:
        """Get a student's target and its assignment.

        With ``for_update`` the target row stays locked until the transaction
        ends, so concurrent submissions for the same student queue up.
        """
        assignment = self.get_assignment(assignment_id)

        query = (
            select(RetestTarget)
            .where(
                RetestTarget.assignment_id == assignment_id,
                RetestTarget.student_id == student_id,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()

        target = self.db.execute(query).scalar_one_or_none()
        if not target:
            raise NotFoundError("Retest target", f"{assignment_id}/{student_id}")
        return target, assignment

    def list_targets(self, assignment_id: int) -> list[RetestTarget]:
        """All targets of an assignment, ordered by student."""
        result = self.db.execute(
            select(RetestTarget)
            .where(RetestTarget.assignment_id == assignment_id)
            .order_by(RetestTarget.student_id, RetestTarget.id)
        )
        return list(result.scalars().all())

    def list_targets_page(
        self,
        assignment_id: int,
        status: RetestStatus | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[RetestTargetResponse], int]:
        """List an assignment's targets with optional status filter."""
        self.get_assignment(assignment_id)

        query = select(RetestTarget).where(RetestTarget.assignment_id == assignment_id)
        if status:
            query = query.where(RetestTarget.status == status)

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar() or 0

        query = (
            query
            .order_by(RetestTarget.student_id, RetestTarget.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        targets = self.db.execute(query).scalars().all()
        return [self.to_response(t) for t in targets], total

    def find_open_target(self, student_id: str, test_id: int, now: datetime) -> RetestTarget | None:
        """A not-yet-completed target for the test whose window has not closed."""
        result = self.db.execute(
            select(RetestTarget)
            .join(RetestAssignment, RetestAssignment.id == RetestTarget.assignment_id)
            .where(
                RetestTarget.student_id == student_id,
                RetestTarget.is_completed.is_(False),
                RetestAssignment.test_id == test_id,
                RetestAssignment.window_end >= now,
            )
            .order_by(RetestAssignment.window_end.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def apply_transition(
        self,
        target: RetestTarget,
        transition: Transition,
        now: datetime | None = None,
    ) -> RetestTarget:
        """Write a transition with one conditional UPDATE.

        The WHERE clause pins the attempt counter and open state that the
        transition was computed from. If nothing matches, the row either
        vanished (integrity fault) or moved underneath us (conflict).
        """
        if now is None:
            now = utcnow()

        values = {
            "attempt_number": transition.next_attempt_number,
            "status": transition.status,
            "passed": transition.passed,
            "is_completed": transition.completed,
            "last_attempt_at": now,
            "updated_at": now,
        }
        if transition.completed:
            # Set once, never overwritten
            values["completed_at"] = func.coalesce(RetestTarget.completed_at, now)

        result = self.db.execute(
            update(RetestTarget)
            .where(
                RetestTarget.assignment_id == target.assignment_id,
                RetestTarget.student_id == target.student_id,
                RetestTarget.attempt_number == target.attempt_number,
                RetestTarget.is_completed.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = self.db.execute(
                select(RetestTarget.id).where(
                    RetestTarget.assignment_id == target.assignment_id,
                    RetestTarget.student_id == target.student_id,
                )
            ).scalar_one_or_none()
            if current is None:
                logger.error(
                    "Retest target vanished during submission",
                    extra={
                        "assignment_id": target.assignment_id,
                        "student_id": target.student_id,
                    },
                )
                raise IntegrityFaultError(
                    "Retest target row missing on update",
                    details={
                        "assignment_id": target.assignment_id,
                        "student_id": target.student_id,
                    },
                )
            logger.warning(
                f"Concurrent submission detected for assignment {target.assignment_id}, "
                f"student {target.student_id}"
            )
            raise SubmissionConflictError(target.assignment_id, target.student_id)

        logger.info(
            f"Retest target {target.assignment_id}/{target.student_id}: "
            f"{target.status.value} #{target.attempt_number} -> "
            f"{transition.status.value} #{transition.next_attempt_number}"
        )

        self.db.refresh(target)
        return target

    def to_response(self, target: RetestTarget) -> RetestTargetResponse:
        max_attempts = effective_max_attempts(target, target.assignment)
        return RetestTargetResponse(
            id=target.id,
            assignment_id=target.assignment_id,
            student_id=target.student_id,
            attempt_number=target.attempt_number,
            max_attempts=max_attempts,
            attempts_left=max(0, max_attempts - target.attempt_number),
            is_completed=target.is_completed,
            passed=target.passed,
            status=target.status,
            completed_at=target.completed_at,
            last_attempt_at=target.last_attempt_at,
        )
