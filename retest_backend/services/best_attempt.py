"""Best-attempt projector."""

import logging
from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from retest_backend.core.database import dialect_insert
from retest_backend.core.exceptions import NotFoundError
from retest_backend.models.attempt import Attempt, BestAttempt
from retest_backend.models.base import utcnow

logger = logging.getLogger(__name__)


def choose_best(attempts: Sequence[Attempt]) -> Attempt | None:
    """Highest percentage wins, earliest attempt on ties.

    Ungraded attempts only count when nothing has been graded yet; the latest
    of those is kept so reports still show that the student sat the test.
    """
    if not attempts:
        return None
    graded = [a for a in attempts if a.percentage is not None]
    if graded:
        return max(graded, key=lambda a: (a.percentage, -a.attempt_number))
    return max(attempts, key=lambda a: a.attempt_number)


class BestAttemptProjector:
    """Keeps ``best_attempts`` in step with the attempt log.

    The projection is a pure function of the log, so refreshing is idempotent
    and may run any number of times.
    """

    def __init__(self, db: Session):
        self.db = db

    def refresh_best(self, student_id: str, test_id: int) -> BestAttempt | None:
        """Recompute and store the best attempt for a student and test."""
        self.db.flush()
        attempts = self.db.execute(
            select(Attempt)
            .where(
                Attempt.student_id == student_id,
                Attempt.test_id == test_id,
            )
            .execution_options(populate_existing=True)
        ).scalars().all()

        best = choose_best(attempts)
        if best is None:
            self.db.execute(
                delete(BestAttempt).where(
                    BestAttempt.student_id == student_id,
                    BestAttempt.test_id == test_id,
                )
            )
            return None

        values = {
            "attempt_id": best.id,
            "attempt_number": best.attempt_number,
            "best_score": best.score,
            "best_max_score": best.max_score,
            "best_percentage": best.percentage,
            "attempt_count": len(attempts),
            "refreshed_at": utcnow(),
        }
        stmt = dialect_insert(self.db, BestAttempt).values(
            student_id=student_id,
            test_id=test_id,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["student_id", "test_id"],
            set_={column: stmt.excluded[column] for column in values},
        )
        self.db.execute(stmt)

        logger.debug(
            f"Best attempt for student {student_id} on test {test_id}: "
            f"#{best.attempt_number} ({best.percentage})"
        )
        return self._load(student_id, test_id)

    def get_best(self, student_id: str, test_id: int) -> BestAttempt:
        best = self._load(student_id, test_id)
        if not best:
            raise NotFoundError("Best attempt", f"{student_id}/{test_id}")
        return best

    def _load(self, student_id: str, test_id: int) -> BestAttempt | None:
        return self.db.execute(
            select(BestAttempt)
            .where(
                BestAttempt.student_id == student_id,
                BestAttempt.test_id == test_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
