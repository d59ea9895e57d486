from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from retest_backend.core import scheduler
from retest_backend.core.database import advisory_xact_lock
from retest_backend.core.dependencies import Principal
from retest_backend.core.exceptions import (
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    WindowClosedError,
)
from retest_backend.core.security import ROLE_ADMIN, ROLE_TEACHER
from retest_backend.models import (
    AssessmentResult,
    AssessmentType,
    AuditAction,
    AuditLog,
    RetestStatus,
)
from retest_backend.models.base import utcnow
from retest_backend.schemas.retest import RetestAssignmentCreate
from retest_backend.services import retest as retest_service
from retest_backend.services.retest import RetestAssignmentService
from retest_backend.services.target import RetestTargetTracker

from conftest import NOW, TestingSessionLocal


def create_request(assessment, **overrides):
    data = {
        "test_type": assessment.test_type,
        "original_test_id": assessment.id,
        "student_ids": ["s-1"],
        "passing_threshold": Decimal("50"),
        "max_attempts": 2,
        "window_start": NOW - timedelta(days=1),
        "window_end": NOW + timedelta(days=1),
    }
    data.update(overrides)
    return RetestAssignmentCreate(**data)


def test_create_assignment_creates_pending_targets(db_session, make_assessment, make_retest):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1", "s-2", "s-1", " "], max_attempts=4)

    targets = RetestTargetTracker(db_session).list_targets(retest.id)

    assert [t.student_id for t in targets] == ["s-1", "s-2"]
    for target in targets:
        assert target.attempt_number == 0
        assert target.max_attempts == 4
        assert target.status == RetestStatus.PENDING
        assert target.is_completed is False
    assert retest.target_count == 2
    assert retest.status_counts.pending == 2
    assert retest.teacher_id == "t-1"


def test_create_assignment_flags_latest_result(db_session, make_assessment, make_result, make_retest):
    assessment = make_assessment()
    older = make_result(assessment, "s-1", created_at=NOW - timedelta(days=9))
    latest = make_result(assessment, "s-1", created_at=NOW - timedelta(days=2))
    untouched = make_result(assessment, "s-2")

    retest = make_retest(assessment, ["s-1"])

    rows = {
        row.id: row
        for row in db_session.execute(
            select(AssessmentResult).execution_options(populate_existing=True)
        ).scalars()
    }
    assert rows[latest.id].retest_offered is True
    assert rows[older.id].retest_offered is False
    assert rows[older.id].retest_assignment_id == retest.id
    assert rows[latest.id].retest_assignment_id == retest.id
    assert rows[untouched.id].retest_assignment_id is None


def test_create_assignment_writes_audit_entry(db_session, make_assessment, make_retest):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"])

    log = db_session.execute(
        select(AuditLog).where(AuditLog.action == AuditAction.RETEST_CREATED)
    ).scalar_one()
    assert log.resource_id == str(retest.id)
    assert log.actor_id == "t-1"
    assert log.extra_data["student_ids"] == ["s-1"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"student_ids": []},
        {"student_ids": ["", "  "]},
        {"passing_threshold": Decimal("100.5")},
        {"passing_threshold": Decimal("-1")},
        {"max_attempts": 0},
        {"window_start": NOW + timedelta(days=2)},
        {"test_type": AssessmentType.TRUE_FALSE},
    ],
)
def test_create_assignment_rejects_invalid_arguments(db_session, make_assessment, teacher, overrides):
    assessment = make_assessment()
    service = RetestAssignmentService(db_session)

    with pytest.raises(InvalidArgumentError):
        service.create_assignment(create_request(assessment, **overrides), teacher)


def test_create_assignment_for_missing_test(db_session, make_assessment, teacher):
    assessment = make_assessment()
    request = create_request(assessment, original_test_id=assessment.id + 100)

    with pytest.raises(NotFoundError):
        RetestAssignmentService(db_session).create_assignment(request, teacher)


def test_admin_can_issue_for_another_teacher(db_session, make_assessment):
    assessment = make_assessment()
    admin = Principal(role=ROLE_ADMIN)

    retest = RetestAssignmentService(db_session).create_assignment(
        create_request(assessment, teacher_id="t-7"), admin
    )
    assert retest.teacher_id == "t-7"

    with pytest.raises(InvalidArgumentError):
        RetestAssignmentService(db_session).create_assignment(create_request(assessment), admin)


def test_teacher_cannot_issue_as_someone_else(db_session, make_assessment, teacher):
    assessment = make_assessment()
    retest = RetestAssignmentService(db_session).create_assignment(
        create_request(assessment, teacher_id="t-7"), teacher
    )
    assert retest.teacher_id == "t-1"


def test_add_students_skips_existing_targets(db_session, make_assessment, make_retest, teacher, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)
    submit("s-1", assessment.id, score=10, retest_id=retest.id)

    updated = RetestAssignmentService(db_session).add_students(retest.id, ["s-1", "s-3"], teacher)

    assert updated.target_count == 2
    assert updated.status_counts.in_progress == 1
    assert updated.status_counts.pending == 1
    target, _ = RetestTargetTracker(db_session).get_target(retest.id, "s-1")
    assert target.attempt_number == 1


def test_cancel_shortens_window_and_keeps_progress(db_session, make_assessment, make_retest, teacher, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)
    submit("s-1", assessment.id, score=10, retest_id=retest.id)

    result = RetestAssignmentService(db_session).cancel_assignment(retest.id, teacher, now=NOW)

    assert result.updated is True
    assert result.window_end == NOW
    target, assignment = RetestTargetTracker(db_session).get_target(retest.id, "s-1")
    assert target.attempt_number == 1
    assert target.status == RetestStatus.IN_PROGRESS

    with pytest.raises(WindowClosedError):
        submit("s-1", assessment.id, score=90, retest_id=retest.id, now=NOW + timedelta(seconds=1))


def test_cancel_after_window_closed_is_a_no_op(db_session, make_assessment, make_retest, teacher):
    assessment = make_assessment()
    window_end = NOW - timedelta(hours=1)
    retest = make_retest(assessment, ["s-1"], window_start=NOW - timedelta(days=1), window_end=window_end)

    result = RetestAssignmentService(db_session).cancel_assignment(retest.id, teacher, now=NOW)

    assert result.updated is False
    assert result.window_end == window_end


def test_cancel_before_window_opens_keeps_window_order(db_session, make_assessment, make_retest, teacher):
    assessment = make_assessment()
    start = NOW + timedelta(days=1)
    retest = make_retest(assessment, ["s-1"], window_start=start, window_end=start + timedelta(days=1))

    result = RetestAssignmentService(db_session).cancel_assignment(retest.id, teacher, now=NOW)

    assert result.window_end == start


def test_cancel_by_other_teacher_is_denied(db_session, make_assessment, make_retest):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"])

    with pytest.raises(PermissionDeniedError):
        RetestAssignmentService(db_session).cancel_assignment(
            retest.id, Principal(role=ROLE_TEACHER, teacher_id="t-2"), now=NOW
        )


def test_cancel_missing_assignment(db_session, teacher):
    with pytest.raises(NotFoundError):
        RetestAssignmentService(db_session).cancel_assignment(12345, teacher)


def test_expiry_sweep_expires_open_targets_only(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    window_end = NOW + timedelta(hours=1)
    retest = make_retest(assessment, ["s-1", "s-2", "s-3"], max_attempts=3, window_end=window_end)
    submit("s-1", assessment.id, score=10, retest_id=retest.id)
    submit("s-3", assessment.id, score=90, retest_id=retest.id)

    service = RetestAssignmentService(db_session)
    assert service.expire_overdue_targets(now=window_end) == 0

    sweep_time = window_end + timedelta(minutes=5)
    assert service.expire_overdue_targets(now=sweep_time) == 2
    assert service.expire_overdue_targets(now=sweep_time + timedelta(hours=1)) == 0

    tracker = RetestTargetTracker(db_session)
    in_progress, _ = tracker.get_target(retest.id, "s-1")
    pending, _ = tracker.get_target(retest.id, "s-2")
    passed, _ = tracker.get_target(retest.id, "s-3")

    assert in_progress.status == RetestStatus.EXPIRED
    assert in_progress.attempt_number == 1
    assert in_progress.is_completed is True
    assert pending.status == RetestStatus.EXPIRED
    assert pending.completed_at is not None
    assert passed.status == RetestStatus.PASSED

    counts = service.get_assignment(retest.id).status_counts
    assert (counts.expired, counts.passed) == (2, 1)


def test_scheduler_job_runs_the_sweep(db_session, make_assessment, make_retest, monkeypatch):
    assessment = make_assessment()
    now = utcnow()
    retest = make_retest(
        assessment,
        ["s-1"],
        window_start=now - timedelta(days=2),
        window_end=now - timedelta(days=1),
    )
    monkeypatch.setattr(scheduler, "get_db_session", TestingSessionLocal)

    assert scheduler.trigger_expiry_sweep() == 1

    target, _ = RetestTargetTracker(db_session).get_target(retest.id, "s-1")
    assert target.status == RetestStatus.EXPIRED


def test_list_eligible_students_uses_best_attempt(db_session, make_assessment, submit):
    assessment = make_assessment()
    submit("s-1", assessment.id, score=30)
    submit("s-1", assessment.id, score=42)
    submit("s-2", assessment.id, score=80)
    submit("s-3", assessment.id, score=20)

    eligible = RetestAssignmentService(db_session).list_eligible_students(assessment.id, Decimal("50"))

    assert [(s.student_id, s.best_percentage) for s in eligible] == [
        ("s-3", Decimal("20.00")),
        ("s-1", Decimal("42.00")),
    ]
    assert eligible[1].attempt_count == 2


def test_list_assignments_filters_by_teacher(db_session, make_assessment, make_retest):
    assessment = make_assessment()
    make_retest(assessment, ["s-1", "s-2"])
    RetestAssignmentService(db_session).create_assignment(
        create_request(assessment, teacher_id="t-9"), Principal(role=ROLE_ADMIN)
    )

    items, total = RetestAssignmentService(db_session).list_assignments(teacher_id="t-1")

    assert total == 1
    assert items[0].status_counts.pending == 2


def test_attempt_offset_is_computed_under_student_lock(
    db_session, make_assessment, make_retest, teacher, monkeypatch
):
    assessment = make_assessment()
    locked = []
    monkeypatch.setattr(retest_service, "advisory_xact_lock", lambda db, key: locked.append(key))

    retest = make_retest(assessment, ["s-1", "s-2"])
    RetestAssignmentService(db_session).add_students(retest.id, ["s-3"], teacher)

    assert locked == [
        f"retest_offset:s-1:{assessment.id}",
        f"retest_offset:s-2:{assessment.id}",
        f"retest_offset:s-3:{assessment.id}",
    ]


def test_advisory_lock_is_skipped_on_sqlite(db_session):
    advisory_xact_lock(db_session, "retest_offset:s-1:1")
