from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import delete, select, update

from retest_backend.core.exceptions import (
    AlreadyCompletedError,
    AttemptsExhaustedError,
    IntegrityFaultError,
    InvalidArgumentError,
    NotFoundError,
    SubmissionConflictError,
    WindowClosedError,
)
from retest_backend.models import (
    AssessmentType,
    Attempt,
    BestAttempt,
    RetestStatus,
    RetestTarget,
)
from retest_backend.services.best_attempt import BestAttemptProjector
from retest_backend.services.target import RetestTargetTracker
from retest_backend.services.transition import Transition

from conftest import NOW


def target_state(db_session, assignment_id, student_id):
    target, _ = RetestTargetTracker(db_session).get_target(assignment_id, student_id)
    return target


def attempt_numbers(db_session, student_id, test_id):
    return db_session.execute(
        select(Attempt.attempt_number)
        .where(Attempt.student_id == student_id, Attempt.test_id == test_id)
        .order_by(Attempt.attempt_number)
    ).scalars().all()


def test_scenario_a_pass_on_third_attempt(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3, passing_threshold="50")

    first = submit("s-1", assessment.id, score=40, retest_id=retest.id)
    assert (first.attempt_number, first.status) == (1, RetestStatus.IN_PROGRESS)
    assert first.passed is False

    second = submit("s-1", assessment.id, score=45, retest_id=retest.id)
    assert (second.attempt_number, second.status) == (2, RetestStatus.IN_PROGRESS)

    third = submit("s-1", assessment.id, score=60, retest_id=retest.id)
    assert (third.attempt_number, third.status) == (3, RetestStatus.PASSED)
    assert third.passed is True
    assert third.completed is True

    target = target_state(db_session, retest.id, "s-1")
    assert target.attempt_number == 3
    assert target.is_completed is True
    assert target.status == RetestStatus.PASSED
    assert target.completed_at is not None
    assert attempt_numbers(db_session, "s-1", assessment.id) == [1, 2, 3]


def test_scenario_b_fail_then_exhausted(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)

    for score in (30, 35, 40):
        result = submit("s-1", assessment.id, score=score, retest_id=retest.id)

    assert result.attempt_number == 3
    assert result.status == RetestStatus.FAILED
    assert result.completed is True
    assert result.passed is False

    with pytest.raises(AttemptsExhaustedError):
        submit("s-1", assessment.id, score=90, retest_id=retest.id)

    assert attempt_numbers(db_session, "s-1", assessment.id) == [1, 2, 3]


def test_scenario_c_late_submission_leaves_target_unchanged(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    window_end = NOW + timedelta(hours=1)
    retest = make_retest(assessment, ["s-1"], window_start=NOW - timedelta(hours=1), window_end=window_end)

    with pytest.raises(WindowClosedError):
        submit("s-1", assessment.id, score=90, retest_id=retest.id, now=window_end + timedelta(seconds=1))

    target = target_state(db_session, retest.id, "s-1")
    assert target.attempt_number == 0
    assert target.status == RetestStatus.PENDING
    assert attempt_numbers(db_session, "s-1", assessment.id) == []


def test_submission_before_window_opens_is_rejected(make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], window_start=NOW + timedelta(days=1), window_end=NOW + timedelta(days=2))

    with pytest.raises(WindowClosedError):
        submit("s-1", assessment.id, score=90, retest_id=retest.id)


def test_scenario_d_ungraded_submission_passes(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment(test_type=AssessmentType.DRAWING)
    retest = make_retest(assessment, ["s-1"], max_attempts=3)

    result = submit("s-1", assessment.id, retest_id=retest.id)

    assert result.percentage is None
    assert result.passed is True
    assert result.attempt_number == 3
    assert result.status == RetestStatus.PASSED


def test_pass_short_circuit_blocks_further_attempts(make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)

    result = submit("s-1", assessment.id, score=80, retest_id=retest.id)
    assert result.attempt_number == 3
    assert result.recorded_attempt_number == 3

    with pytest.raises(AlreadyCompletedError):
        submit("s-1", assessment.id, score=95, retest_id=retest.id)


def test_attempt_counter_is_monotonic(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=5)

    seen = [0]
    for score in (10, 20, 30, 40):
        submit("s-1", assessment.id, score=score, retest_id=retest.id)
        seen.append(target_state(db_session, retest.id, "s-1").attempt_number)

    assert seen == sorted(seen)
    assert seen[-1] == 4
    assert all(n <= 5 for n in seen)


def test_resubmitting_same_idempotency_key_does_not_consume_attempt(
    db_session, make_assessment, make_retest, submit
):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)

    first = submit("s-1", assessment.id, score=20, retest_id=retest.id, idempotency_key="k-1")
    replay = submit("s-1", assessment.id, score=25, retest_id=retest.id, idempotency_key="k-1")

    assert replay.replayed is True
    assert replay.attempt_id == first.attempt_id
    assert replay.attempt_number == 1
    assert replay.percentage == Decimal("25.00")

    target = target_state(db_session, retest.id, "s-1")
    assert target.attempt_number == 1
    assert attempt_numbers(db_session, "s-1", assessment.id) == [1]


def test_replay_is_still_bound_by_window(make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], window_end=NOW + timedelta(hours=1))

    submit("s-1", assessment.id, score=20, retest_id=retest.id, idempotency_key="k-1")

    with pytest.raises(WindowClosedError):
        submit(
            "s-1",
            assessment.id,
            score=20,
            retest_id=retest.id,
            idempotency_key="k-1",
            now=NOW + timedelta(hours=2),
        )


def test_replay_of_final_attempt_after_pass(make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=2)

    submit("s-1", assessment.id, score=70, retest_id=retest.id, idempotency_key="k-9")
    replay = submit("s-1", assessment.id, score=70, retest_id=retest.id, idempotency_key="k-9")

    assert replay.replayed is True
    assert replay.status == RetestStatus.PASSED


def test_retest_attempts_continue_after_regular_attempts(
    db_session, make_assessment, make_retest, submit
):
    assessment = make_assessment()
    submit("s-1", assessment.id, score=30)
    submit("s-1", assessment.id, score=35)

    retest = make_retest(assessment, ["s-1"], max_attempts=2)
    result = submit("s-1", assessment.id, score=40, retest_id=retest.id)

    assert result.attempt_number == 1
    assert result.recorded_attempt_number == 3
    assert attempt_numbers(db_session, "s-1", assessment.id) == [1, 2, 3]


def test_second_retest_does_not_reuse_reserved_numbers(
    db_session, make_assessment, make_retest, submit
):
    assessment = make_assessment()
    first = make_retest(assessment, ["s-1"], max_attempts=3)
    submit("s-1", assessment.id, score=90, retest_id=first.id)

    second = make_retest(assessment, ["s-1"], max_attempts=2)
    result = submit("s-1", assessment.id, score=20, retest_id=second.id)

    assert result.recorded_attempt_number == 4
    assert attempt_numbers(db_session, "s-1", assessment.id) == [3, 4]


def test_regular_submission_numbers_from_log(make_assessment, submit):
    assessment = make_assessment()

    first = submit("s-1", assessment.id, score=40)
    second = submit("s-1", assessment.id, score=80)

    assert (first.recorded_attempt_number, second.recorded_attempt_number) == (1, 2)
    assert first.passed is None
    assert second.status is None


def test_regular_submission_blocked_while_retest_open(make_assessment, make_retest, submit):
    assessment = make_assessment()
    make_retest(assessment, ["s-1"])

    with pytest.raises(InvalidArgumentError):
        submit("s-1", assessment.id, score=40)

    # Other students are unaffected
    assert submit("s-2", assessment.id, score=40).recorded_attempt_number == 1


def test_retest_for_other_test_is_rejected(make_assessment, make_retest, submit):
    assessment = make_assessment()
    other = make_assessment(name="Decimals quiz")
    retest = make_retest(assessment, ["s-1"])

    with pytest.raises(InvalidArgumentError):
        submit("s-1", other.id, score=40, retest_id=retest.id)


def test_student_without_target_gets_not_found(make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"])

    with pytest.raises(NotFoundError):
        submit("s-2", assessment.id, score=40, retest_id=retest.id)


def test_score_above_max_is_invalid(make_assessment, submit):
    assessment = make_assessment()

    with pytest.raises(InvalidArgumentError):
        submit("s-1", assessment.id, score=120, max_score="100")


def test_unknown_test_is_not_found(submit):
    with pytest.raises(NotFoundError):
        submit("s-1", 999, score=10)


def test_submission_refreshes_best_attempt(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)

    submit("s-1", assessment.id, score=45, retest_id=retest.id)
    submit("s-1", assessment.id, score=30, retest_id=retest.id)

    best = db_session.execute(
        select(BestAttempt)
        .where(BestAttempt.student_id == "s-1", BestAttempt.test_id == assessment.id)
        .execution_options(populate_existing=True)
    ).scalar_one()
    assert best.best_percentage == Decimal("45.00")
    assert best.attempt_number == 1
    assert best.attempt_count == 2


def test_stale_target_raises_conflict(db_session, make_assessment, make_retest):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)
    tracker = RetestTargetTracker(db_session)
    target, _ = tracker.get_target(retest.id, "s-1")

    db_session.execute(
        update(RetestTarget)
        .where(RetestTarget.id == target.id)
        .values(attempt_number=1)
        .execution_options(synchronize_session=False)
    )

    transition = Transition(next_attempt_number=1, passed=False, completed=False, status=RetestStatus.IN_PROGRESS)
    with pytest.raises(SubmissionConflictError):
        tracker.apply_transition(target, transition, NOW)


def test_vanished_target_raises_integrity_fault(db_session, make_assessment, make_retest):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)
    tracker = RetestTargetTracker(db_session)
    target, _ = tracker.get_target(retest.id, "s-1")

    db_session.execute(
        delete(RetestTarget)
        .where(RetestTarget.id == target.id)
        .execution_options(synchronize_session=False)
    )

    transition = Transition(next_attempt_number=1, passed=False, completed=False, status=RetestStatus.IN_PROGRESS)
    with pytest.raises(IntegrityFaultError) as exc_info:
        tracker.apply_transition(target, transition, NOW)
    assert exc_info.value.status_code == 500


def test_regular_retry_replays_after_retest_is_issued(db_session, make_assessment, make_retest, submit):
    assessment = make_assessment()
    first = submit("s-1", assessment.id, score=30, idempotency_key="r-1")

    make_retest(assessment, ["s-1"])
    replay = submit("s-1", assessment.id, score=30, idempotency_key="r-1")

    assert replay.replayed is True
    assert replay.attempt_id == first.attempt_id
    assert replay.recorded_attempt_number == 1
    assert attempt_numbers(db_session, "s-1", assessment.id) == [1]

    # A new regular submission is still blocked by the open retest
    with pytest.raises(InvalidArgumentError):
        submit("s-1", assessment.id, score=30, idempotency_key="r-2")


def test_regular_submission_blocked_before_retest_window_opens(make_assessment, make_retest, submit):
    assessment = make_assessment()
    make_retest(
        assessment,
        ["s-1"],
        window_start=NOW + timedelta(days=1),
        window_end=NOW + timedelta(days=2),
    )

    with pytest.raises(InvalidArgumentError):
        submit("s-1", assessment.id, score=40)


def test_regular_submission_allowed_after_retest_window_closes(make_assessment, make_retest, submit):
    assessment = make_assessment()
    make_retest(
        assessment,
        ["s-1"],
        window_start=NOW - timedelta(days=2),
        window_end=NOW - timedelta(days=1),
    )

    result = submit("s-1", assessment.id, score=40)
    assert result.status is None


def test_failed_target_write_rolls_back_whole_submission(
    db_session, make_assessment, make_retest, submit, monkeypatch
):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)

    def fail_transition(self, target, transition, now=None):
        raise IntegrityFaultError("Retest target row missing on update")

    monkeypatch.setattr(RetestTargetTracker, "apply_transition", fail_transition)

    with pytest.raises(IntegrityFaultError):
        submit("s-1", assessment.id, score=40, retest_id=retest.id)

    assert attempt_numbers(db_session, "s-1", assessment.id) == []
    assert db_session.execute(select(BestAttempt)).scalars().all() == []
    target = target_state(db_session, retest.id, "s-1")
    assert target.attempt_number == 0
    assert target.status == RetestStatus.PENDING


def test_failure_after_best_refresh_discards_projection(
    db_session, make_assessment, make_retest, submit, monkeypatch
):
    assessment = make_assessment()
    retest = make_retest(assessment, ["s-1"], max_attempts=3)
    original_refresh = BestAttemptProjector.refresh_best

    def refresh_then_fail(self, student_id, test_id):
        original_refresh(self, student_id, test_id)
        raise IntegrityFaultError("forced failure after projection")

    monkeypatch.setattr(BestAttemptProjector, "refresh_best", refresh_then_fail)

    with pytest.raises(IntegrityFaultError):
        submit("s-1", assessment.id, score=40, retest_id=retest.id)

    assert attempt_numbers(db_session, "s-1", assessment.id) == []
    assert db_session.execute(select(BestAttempt)).scalars().all() == []
    assert target_state(db_session, retest.id, "s-1").attempt_number == 0
