"""Retest assignment service: issuing, cancelling and expiring remedial offers."""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from retest_backend.core.database import advisory_xact_lock, atomic, dialect_insert
from retest_backend.core.dependencies import Principal
from retest_backend.core.exceptions import (
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from retest_backend.models.assessment import Assessment
from retest_backend.models.attempt import Attempt, BestAttempt
from retest_backend.models.audit import AuditAction
from retest_backend.models.base import as_utc, utcnow
from retest_backend.models.retest import (
    OPEN_STATUSES,
    RetestAssignment,
    RetestStatus,
    RetestTarget,
)
from retest_backend.schemas.retest import (
    EligibleStudentResponse,
    RetestAssignmentCreate,
    RetestAssignmentResponse,
    RetestCancelResponse,
    RetestStatusCounts,
)
from retest_backend.services.attempt import AttemptRecorder
from retest_backend.services.audit import AuditService
from retest_backend.services.result_store import ResultStoreRegistry

logger = logging.getLogger(__name__)


class RetestAssignmentService:
    """Retest assignment store."""

    def __init__(self, db: Session, result_stores: ResultStoreRegistry | None = None):
        self.db = db
        self.result_stores = result_stores or ResultStoreRegistry(db)

    # ==========================================
    # Create / Cancel
    # ==========================================

    def create_assignment(
        self,
        request: RetestAssignmentCreate,
        principal: Principal,
    ) -> RetestAssignmentResponse:
        """Create a retest assignment and a PENDING target for every listed student."""
        teacher_id = self._resolve_teacher_id(request, principal)
        student_ids = self._normalize_student_ids(request.student_ids)
        self._validate_definition(request, student_ids)

        assessment = self.db.get(Assessment, request.original_test_id)
        if not assessment:
            raise NotFoundError("Test", str(request.original_test_id))
        if assessment.test_type != request.test_type:
            raise InvalidArgumentError(
                f"Test {assessment.id} is a {assessment.test_type.value} test, not {request.test_type.value}"
            )

        with atomic(self.db):
            assignment = RetestAssignment(
                test_type=request.test_type,
                test_id=assessment.id,
                teacher_id=teacher_id,
                subject_id=request.subject_id or assessment.subject_id,
                grade=request.grade,
                class_name=request.class_name,
                passing_threshold=request.passing_threshold,
                scoring_policy=request.scoring_policy,
                max_attempts=request.max_attempts,
                window_start=request.window_start,
                window_end=request.window_end,
            )
            self.db.add(assignment)
            self.db.flush()

            created = self._create_targets(assignment, student_ids)

            AuditService(self.db).log(
                action=AuditAction.RETEST_CREATED,
                resource_type="retest_assignment",
                resource_id=str(assignment.id),
                actor_role=principal.role,
                actor_id=principal.subject_id,
                description=f"Retest issued on test {assessment.id} for {created} student(s)",
                metadata={
                    "student_ids": student_ids,
                    "max_attempts": request.max_attempts,
                    "passing_threshold": str(request.passing_threshold),
                },
            )

        logger.info(
            f"Retest assignment {assignment.id} created by {principal.role} {principal.subject_id} "
            f"on test {assessment.id} ({created} targets)"
        )
        return self.get_assignment(assignment.id)

    def add_students(
        self,
        assignment_id: int,
        student_ids: list[str],
        principal: Principal,
    ) -> RetestAssignmentResponse:
        """Target more students; students already targeted are left untouched."""
        student_ids = self._normalize_student_ids(student_ids)
        if not student_ids:
            raise InvalidArgumentError("student_ids must not be empty")

        with atomic(self.db):
            assignment = self._get_assignment_row(assignment_id)
            self._check_owner(assignment, principal)
            created = self._create_targets(assignment, student_ids)

        logger.info(f"Retest assignment {assignment_id}: {created} new target(s)")
        return self.get_assignment(assignment_id)

    def cancel_assignment(
        self,
        assignment_id: int,
        principal: Principal,
        now: datetime | None = None,
    ) -> RetestCancelResponse:
        """Close the window early: window_end becomes min(window_end, now).

        Targets keep their attempt counts. A window that has not opened yet
        collapses onto its start so window_start <= window_end still holds.
        """
        now = as_utc(now) if now else utcnow()

        with atomic(self.db):
            assignment = self._get_assignment_row(assignment_id, for_update=True)
            self._check_owner(assignment, principal)

            current_end = as_utc(assignment.window_end)
            new_end = max(as_utc(assignment.window_start), min(current_end, now))
            updated = new_end != current_end
            if updated:
                assignment.window_end = new_end
                self.db.flush()

            AuditService(self.db).log(
                action=AuditAction.RETEST_CANCELLED,
                resource_type="retest_assignment",
                resource_id=str(assignment.id),
                actor_role=principal.role,
                actor_id=principal.subject_id,
                description=f"Retest window closed at {new_end.isoformat()}",
                metadata={"previous_window_end": current_end.isoformat(), "updated": updated},
            )

        logger.info(f"Retest assignment {assignment_id} cancelled (window_end={new_end.isoformat()})")
        return RetestCancelResponse(
            assignment_id=assignment_id,
            window_end=new_end,
            updated=updated,
        )

    # ==========================================
    # Queries
    # ==========================================

    def get_assignment(self, assignment_id: int) -> RetestAssignmentResponse:
        assignment = self._get_assignment_row(assignment_id)
        counts = self._status_counts([assignment.id])
        return self._to_response(assignment, counts.get(assignment.id))

    def list_assignments(
        self,
        teacher_id: str | None = None,
        test_id: int | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[RetestAssignmentResponse], int]:
        """List assignments, newest first, with per-status target counts."""
        query = select(RetestAssignment)
        if teacher_id:
            query = query.where(RetestAssignment.teacher_id == teacher_id)
        if test_id:
            query = query.where(RetestAssignment.test_id == test_id)

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar() or 0

        query = (
            query
            .order_by(RetestAssignment.created_at.desc(), RetestAssignment.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        assignments = self.db.execute(query).scalars().all()
        counts = self._status_counts([a.id for a in assignments])
        return [self._to_response(a, counts.get(a.id)) for a in assignments], total

    def list_eligible_students(
        self,
        test_id: int,
        threshold: Decimal,
    ) -> list[EligibleStudentResponse]:
        """Students whose best graded result on the test is below the threshold."""
        if not self.db.get(Assessment, test_id):
            raise NotFoundError("Test", str(test_id))
        if not Decimal("0") <= threshold <= Decimal("100"):
            raise InvalidArgumentError("threshold must be between 0 and 100")

        rows = self.db.execute(
            select(BestAttempt, Attempt)
            .join(Attempt, Attempt.id == BestAttempt.attempt_id)
            .where(
                BestAttempt.test_id == test_id,
                BestAttempt.best_percentage.is_not(None),
                BestAttempt.best_percentage < threshold,
            )
            .order_by(BestAttempt.best_percentage, BestAttempt.student_id)
        ).all()

        return [
            EligibleStudentResponse(
                student_id=best.student_id,
                student_name=attempt.student_name,
                student_surname=attempt.student_surname,
                student_nickname=attempt.student_nickname,
                best_percentage=best.best_percentage,
                attempt_count=best.attempt_count,
            )
            for best, attempt in rows
        ]

    # ==========================================
    # Expiry
    # ==========================================

    def expire_overdue_targets(self, now: datetime | None = None) -> int:
        """Move open targets of closed windows to EXPIRED. Safe to run repeatedly."""
        now = as_utc(now) if now else utcnow()

        with atomic(self.db):
            overdue = select(RetestAssignment.id).where(RetestAssignment.window_end < now)
            result = self.db.execute(
                update(RetestTarget)
                .where(
                    RetestTarget.assignment_id.in_(overdue),
                    RetestTarget.status.in_(list(OPEN_STATUSES)),
                    RetestTarget.is_completed.is_(False),
                )
                .values(
                    status=RetestStatus.EXPIRED,
                    is_completed=True,
                    completed_at=func.coalesce(RetestTarget.completed_at, now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0

            if expired:
                AuditService(self.db).log(
                    action=AuditAction.RETEST_TARGETS_EXPIRED,
                    resource_type="retest_target",
                    description=f"{expired} retest target(s) expired",
                    metadata={"expired_at": now.isoformat()},
                )

        if expired:
            logger.info(f"Expired {expired} retest target(s)")
        return expired

    # ==========================================
    # Helpers
    # ==========================================

    def _create_targets(self, assignment: RetestAssignment, student_ids: list[str]) -> int:
        """Insert targets with ON CONFLICT DO NOTHING and flag the original results."""
        created = 0
        for student_id in student_ids:
            stmt = (
                dialect_insert(self.db, RetestTarget)
                .values(
                    assignment_id=assignment.id,
                    student_id=student_id,
                    attempt_number=0,
                    max_attempts=assignment.max_attempts,
                    attempt_offset=self._attempt_offset(student_id, assignment.test_id),
                    is_completed=False,
                    passed=False,
                    status=RetestStatus.PENDING,
                )
                .on_conflict_do_nothing(index_elements=["assignment_id", "student_id"])
            )
            result = self.db.execute(stmt)
            if not result.rowcount:
                logger.debug(f"Student {student_id} already targeted by assignment {assignment.id}")
                continue
            created += 1

            self.result_stores.flag_retest(
                assignment.test_type,
                student_id,
                assignment.test_id,
                assignment.id,
            )
        return created

    def _attempt_offset(self, student_id: str, test_id: int) -> int:
        """First free log number minus one for a new target.

        Skips past numbers already logged and past every range reserved by an
        earlier target on the same test, so two retests never share a log key.
        """
        # Held until commit so concurrent issuers for this student and test queue up
        advisory_xact_lock(self.db, f"retest_offset:{student_id}:{test_id}")
        logged = AttemptRecorder(self.db).next_attempt_number_hint(student_id, test_id) - 1
        reserved = self.db.execute(
            select(func.max(RetestTarget.attempt_offset + RetestTarget.max_attempts))
            .join(RetestAssignment, RetestAssignment.id == RetestTarget.assignment_id)
            .where(
                RetestTarget.student_id == student_id,
                RetestAssignment.test_id == test_id,
            )
        ).scalar()
        return max(logged, reserved or 0)

    def _get_assignment_row(self, assignment_id: int, for_update: bool = False) -> RetestAssignment:
        query = (
            select(RetestAssignment)
            .where(RetestAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        assignment = self.db.execute(query).scalar_one_or_none()
        if not assignment:
            raise NotFoundError("Retest assignment", str(assignment_id))
        return assignment

    def _resolve_teacher_id(self, request: RetestAssignmentCreate, principal: Principal) -> str:
        """Teachers always issue as themselves; admins may issue for any teacher."""
        if principal.is_admin():
            teacher_id = request.teacher_id or principal.teacher_id
        else:
            teacher_id = principal.teacher_id
        if not teacher_id:
            raise InvalidArgumentError("teacher_id is required")
        return teacher_id

    def _check_owner(self, assignment: RetestAssignment, principal: Principal) -> None:
        if principal.is_admin():
            return
        if assignment.teacher_id != principal.teacher_id:
            raise PermissionDeniedError("Only the issuing teacher can change this retest")

    def _normalize_student_ids(self, student_ids: list[str]) -> list[str]:
        """Strip blanks and duplicates, keeping first-seen order."""
        seen: dict[str, None] = {}
        for student_id in student_ids:
            student_id = str(student_id).strip()
            if student_id:
                seen.setdefault(student_id, None)
        return list(seen)

    def _validate_definition(self, request: RetestAssignmentCreate, student_ids: list[str]) -> None:
        if not student_ids:
            raise InvalidArgumentError("student_ids must not be empty")
        if not Decimal("0") <= request.passing_threshold <= Decimal("100"):
            raise InvalidArgumentError(
                "passing_threshold must be between 0 and 100",
                details={"passing_threshold": str(request.passing_threshold)},
            )
        if request.max_attempts < 1:
            raise InvalidArgumentError(
                "max_attempts must be at least 1",
                details={"max_attempts": request.max_attempts},
            )
        if request.window_start > request.window_end:
            raise InvalidArgumentError(
                "window_start must not be after window_end",
                details={
                    "window_start": request.window_start.isoformat(),
                    "window_end": request.window_end.isoformat(),
                },
            )

    def _status_counts(self, assignment_ids: list[int]) -> dict[int, RetestStatusCounts]:
        if not assignment_ids:
            return {}

        def count_of(status: RetestStatus):
            return func.coalesce(func.sum(case((RetestTarget.status == status, 1), else_=0)), 0)

        rows = self.db.execute(
            select(
                RetestTarget.assignment_id,
                count_of(RetestStatus.PENDING),
                count_of(RetestStatus.IN_PROGRESS),
                count_of(RetestStatus.PASSED),
                count_of(RetestStatus.FAILED),
                count_of(RetestStatus.EXPIRED),
            )
            .where(RetestTarget.assignment_id.in_(assignment_ids))
            .group_by(RetestTarget.assignment_id)
        ).all()

        return {
            row[0]: RetestStatusCounts(
                pending=row[1],
                in_progress=row[2],
                passed=row[3],
                failed=row[4],
                expired=row[5],
            )
            for row in rows
        }

    def _to_response(
        self,
        assignment: RetestAssignment,
        counts: RetestStatusCounts | None,
    ) -> RetestAssignmentResponse:
        counts = counts or RetestStatusCounts()
        return RetestAssignmentResponse(
            id=assignment.id,
            test_type=assignment.test_type,
            test_id=assignment.test_id,
            teacher_id=assignment.teacher_id,
            subject_id=assignment.subject_id,
            grade=assignment.grade,
            class_name=assignment.class_name,
            passing_threshold=assignment.passing_threshold,
            scoring_policy=assignment.scoring_policy,
            max_attempts=assignment.max_attempts,
            window_start=as_utc(assignment.window_start),
            window_end=as_utc(assignment.window_end),
            created_at=as_utc(assignment.created_at),
            updated_at=as_utc(assignment.updated_at),
            target_count=counts.pending + counts.in_progress + counts.passed + counts.failed + counts.expired,
            status_counts=counts,
        )
