"""Retest lifecycle rules.

Every decision about a retest submission lives here: eligibility, pass/fail,
how far the attempt counter moves and which status the target lands in.
Nothing in this module touches the database; callers hand in the target and
assignment rows and write the returned ``Transition`` back themselves.

    PENDING -> IN_PROGRESS -> PASSED | FAILED | EXPIRED

PASSED, FAILED and EXPIRED are terminal.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from retest_backend.core.exceptions import (
    AlreadyCompletedError,
    AttemptsExhaustedError,
    WindowClosedError,
)
from retest_backend.models.base import as_utc, utcnow
from retest_backend.models.retest import RetestAssignment, RetestStatus, RetestTarget

HUNDRED = Decimal("100")
TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class Transition:
    """Target state after one accepted submission."""

    next_attempt_number: int
    passed: bool
    completed: bool
    status: RetestStatus


def _decimal(value: Decimal | float | int | str | None) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_percentage(
    score: Decimal | float | int | None,
    max_score: Decimal | float | int | None,
) -> Decimal | None:
    """round(score / max_score * 100, 2), or None when there is nothing to divide by."""
    score = _decimal(score)
    max_score = _decimal(max_score)
    if score is None or max_score is None or max_score <= 0:
        return None
    return (score / max_score * HUNDRED).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def effective_max_attempts(target: RetestTarget, assignment: RetestAssignment) -> int:
    """The target's snapshot wins; the assignment cap covers targets created without one."""
    return target.max_attempts or assignment.max_attempts or 1


def is_window_open(assignment: RetestAssignment, now: datetime) -> bool:
    now = as_utc(now)
    return as_utc(assignment.window_start) <= now <= as_utc(assignment.window_end)


def check_window(assignment: RetestAssignment, now: datetime) -> None:
    if not is_window_open(assignment, now):
        raise WindowClosedError(
            assignment.id,
            details={
                "window_start": as_utc(assignment.window_start).isoformat(),
                "window_end": as_utc(assignment.window_end).isoformat(),
            },
        )


def check_eligibility(
    target: RetestTarget,
    assignment: RetestAssignment,
    now: datetime,
) -> None:
    """Raise the first rule that blocks a new attempt.

    A target that failed by using up its attempts reports AttemptsExhausted;
    passed and expired targets report AlreadyCompleted.
    """
    check_window(assignment, now)

    max_attempts = effective_max_attempts(target, assignment)
    exhausted = (target.attempt_number or 0) >= max_attempts
    if target.is_completed and (target.passed or not exhausted):
        raise AlreadyCompletedError(assignment.id, target.student_id)
    if exhausted:
        raise AttemptsExhaustedError(assignment.id, target.student_id, max_attempts)


def is_passing(percentage: Decimal | None, threshold: Decimal | float | int) -> bool:
    """Ungraded submissions (no percentage) pass so manual grading never blocks the lifecycle."""
    if percentage is None:
        return True
    return _decimal(percentage) >= _decimal(threshold)


def advance(
    target: RetestTarget,
    assignment: RetestAssignment,
    percentage: Decimal | None,
    now: datetime | None = None,
) -> Transition:
    """Compute the target's next state for a submitted percentage.

    An early pass consumes every remaining attempt: the counter jumps to the
    cap and no further retakes are offered.
    """
    if now is None:
        now = utcnow()

    check_eligibility(target, assignment, now)

    max_attempts = effective_max_attempts(target, assignment)
    passed = is_passing(percentage, assignment.passing_threshold)

    if passed:
        next_attempt_number = max_attempts
    else:
        next_attempt_number = (target.attempt_number or 0) + 1

    exhausted = next_attempt_number >= max_attempts
    completed = passed or exhausted

    if passed:
        status = RetestStatus.PASSED
    elif exhausted:
        status = RetestStatus.FAILED
    else:
        status = RetestStatus.IN_PROGRESS

    return Transition(
        next_attempt_number=next_attempt_number,
        passed=passed,
        completed=completed,
        status=status,
    )
