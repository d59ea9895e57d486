"""Submission service: the one transactional entry point for graded attempts."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from retest_backend.core.config import settings
from retest_backend.core.database import atomic, set_statement_timeout
from retest_backend.core.exceptions import InvalidArgumentError, NotFoundError
from retest_backend.models.assessment import Assessment
from retest_backend.models.attempt import Attempt
from retest_backend.models.base import as_utc, utcnow
from retest_backend.models.retest import RetestTarget
from retest_backend.schemas.attempt import AttemptPayload, SubmissionRequest, SubmissionResult
from retest_backend.services.attempt import AttemptRecorder
from retest_backend.services.best_attempt import BestAttemptProjector
from retest_backend.services.target import RetestTargetTracker
from retest_backend.services.transition import advance, check_window, compute_percentage

logger = logging.getLogger(__name__)


class SubmissionService:
    """Records submissions and drives retest targets through their lifecycle.

    Every call runs in a single transaction: the attempt row, the target
    update and the best-attempt projection commit together or not at all.
    """

    def __init__(self, db: Session):
        self.db = db
        self.recorder = AttemptRecorder(db)
        self.tracker = RetestTargetTracker(db)
        self.projector = BestAttemptProjector(db)

    def submit(
        self,
        student_id: str,
        request: SubmissionRequest,
        profile: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> SubmissionResult:
        """Record one submission for a student."""
        now = as_utc(now) if now else utcnow()
        self._validate_scores(request)

        with atomic(self.db):
            set_statement_timeout(self.db, settings.SUBMISSION_STATEMENT_TIMEOUT_MS)

            assessment = self.db.get(Assessment, request.test_id)
            if not assessment:
                raise NotFoundError("Test", str(request.test_id))

            percentage = compute_percentage(request.score, request.max_score)
            payload = self._build_payload(request, assessment, percentage, profile, now)

            if request.retest_assignment_id is not None:
                result = self._submit_retest(student_id, request, payload, now)
            else:
                result = self._submit_regular(student_id, request, payload, now)

        logger.info(
            f"Submission by student {student_id} on test {request.test_id}: "
            f"attempt #{result.recorded_attempt_number}, percentage={result.percentage}, "
            f"passed={result.passed}, replayed={result.replayed}"
        )
        return result

    # ==========================================
    # Paths
    # ==========================================

    def _submit_retest(
        self,
        student_id: str,
        request: SubmissionRequest,
        payload: AttemptPayload,
        now: datetime,
    ) -> SubmissionResult:
        target, assignment = self.tracker.get_target(
            request.retest_assignment_id,
            student_id,
            for_update=True,
        )
        if assignment.test_id != request.test_id:
            raise InvalidArgumentError(
                f"Retest assignment {assignment.id} is not for test {request.test_id}",
                details={"assignment_test_id": assignment.test_id},
            )

        # A resent submission is still bound by the window
        check_window(assignment, now)

        replay = self._find_replay(student_id, request)
        if replay is not None:
            if replay.retest_assignment_id != assignment.id:
                raise InvalidArgumentError(
                    "idempotency_key was already used for a different submission",
                    details={"idempotency_key": request.idempotency_key},
                )
            attempt = self.recorder.record_attempt(
                student_id, request.test_id, replay.attempt_number, payload
            )
            self.projector.refresh_best(student_id, request.test_id)
            logger.info(
                f"Replayed submission {request.idempotency_key} for student {student_id} "
                f"on retest {assignment.id}"
            )
            return self._retest_result(target, attempt, replayed=True)

        transition = advance(target, assignment, payload.percentage, now)
        # The log number is fixed by the target counter, never recomputed from the log
        attempt = self.recorder.record_attempt(
            student_id,
            request.test_id,
            target.attempt_offset + transition.next_attempt_number,
            payload,
        )
        target = self.tracker.apply_transition(target, transition, now)
        self.projector.refresh_best(student_id, request.test_id)

        return self._retest_result(target, attempt)

    def _submit_regular(
        self,
        student_id: str,
        request: SubmissionRequest,
        payload: AttemptPayload,
        now: datetime,
    ) -> SubmissionResult:
        replay = self._find_replay(student_id, request)
        if replay is not None and replay.retest_assignment_id is not None:
            raise InvalidArgumentError(
                "idempotency_key was already used for a different submission",
                details={"idempotency_key": request.idempotency_key},
            )

        if replay is not None:
            # Already recorded before any retest was issued; overwrite in place
            attempt_number = replay.attempt_number
        else:
            open_target = self.tracker.find_open_target(student_id, request.test_id, now)
            if open_target is not None:
                raise InvalidArgumentError(
                    "An open retest exists for this test; submit against the retest assignment",
                    details={"retest_assignment_id": open_target.assignment_id},
                )
            attempt_number = self.recorder.next_attempt_number_hint(student_id, request.test_id)

        attempt = self.recorder.record_attempt(student_id, request.test_id, attempt_number, payload)
        self.projector.refresh_best(student_id, request.test_id)

        return SubmissionResult(
            attempt_id=attempt.id,
            attempt_number=attempt.attempt_number,
            recorded_attempt_number=attempt.attempt_number,
            percentage=attempt.percentage,
            passed=None,
            completed=attempt.is_completed,
            status=None,
            replayed=replay is not None,
        )

    # ==========================================
    # Helpers
    # ==========================================

    def _find_replay(self, student_id: str, request: SubmissionRequest) -> Attempt | None:
        if not request.idempotency_key:
            return None
        return self.recorder.find_by_idempotency_key(
            student_id,
            request.test_id,
            request.idempotency_key,
        )

    def _validate_scores(self, request: SubmissionRequest) -> None:
        if request.score is not None and request.max_score is not None and request.score > request.max_score:
            raise InvalidArgumentError(
                f"score ({request.score}) exceeds max_score ({request.max_score})",
                details={"score": str(request.score), "max_score": str(request.max_score)},
            )
        if request.score is not None and request.max_score is None:
            raise InvalidArgumentError("max_score is required when score is given")

    def _build_payload(
        self,
        request: SubmissionRequest,
        assessment: Assessment,
        percentage,
        profile: dict[str, Any] | None,
        now: datetime,
    ) -> AttemptPayload:
        """Attempt columns, with test and student details snapshotted for reports."""
        profile = profile or {}
        return AttemptPayload(
            score=request.score,
            max_score=request.max_score,
            percentage=percentage,
            is_completed=request.completed,
            submitted_at=now,
            retest_assignment_id=request.retest_assignment_id,
            idempotency_key=request.idempotency_key,
            answers=request.answers,
            time_taken=request.time_taken,
            started_at=request.started_at,
            caught_cheating=request.caught_cheating,
            visibility_change_times=request.visibility_change_times,
            test_name=assessment.test_name,
            teacher_id=assessment.teacher_id,
            subject_id=assessment.subject_id,
            grade=_claim(profile, "grade"),
            class_name=_claim(profile, "class"),
            student_number=_claim(profile, "number"),
            student_name=_claim(profile, "name"),
            student_surname=_claim(profile, "surname"),
            student_nickname=_claim(profile, "nickname"),
        )

    def _retest_result(
        self,
        target: RetestTarget,
        attempt: Attempt,
        replayed: bool = False,
    ) -> SubmissionResult:
        return SubmissionResult(
            attempt_id=attempt.id,
            attempt_number=target.attempt_number,
            recorded_attempt_number=attempt.attempt_number,
            percentage=attempt.percentage,
            passed=target.passed,
            completed=target.is_completed,
            status=target.status,
            replayed=replayed,
        )


def _claim(profile: dict[str, Any], key: str) -> str | None:
    value = profile.get(key)
    return str(value) if value is not None else None
