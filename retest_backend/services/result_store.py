"""Original-test result stores.

Each test type keeps its own result rows upstream. Creating a retest needs two
things from them, flagging the student's latest result as "retest offered"
and stamping the assignment id onto the student's result rows, and nothing
else. The engine only sees the ``ResultStore`` interface.
"""

import logging
from abc import ABC, abstractmethod

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from retest_backend.models.assessment import AssessmentResult, AssessmentType

logger = logging.getLogger(__name__)


class ResultStore(ABC):
    """Operations the retest engine needs from one test type's result store."""

    test_type: AssessmentType

    @abstractmethod
    def mark_retest_offered(self, student_id: str, test_id: int) -> bool:
        """Flag the student's most recent result for the test. False when there is none."""

    @abstractmethod
    def stamp_retest_assignment(self, student_id: str, test_id: int, assignment_id: int) -> int:
        """Back-reference the assignment on every result row of the student for the test."""


class TableResultStore(ResultStore):
    """Result store over the ``assessment_results`` rows of one test type."""

    def __init__(self, db: Session, test_type: AssessmentType):
        self.db = db
        self.test_type = test_type

    def mark_retest_offered(self, student_id: str, test_id: int) -> bool:
        latest = self.db.execute(
            select(AssessmentResult)
            .where(
                AssessmentResult.test_type == self.test_type,
                AssessmentResult.student_id == student_id,
                AssessmentResult.test_id == test_id,
            )
            .order_by(AssessmentResult.created_at.desc(), AssessmentResult.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None:
            return False
        latest.retest_offered = True
        self.db.flush()
        return True

    def stamp_retest_assignment(self, student_id: str, test_id: int, assignment_id: int) -> int:
        result = self.db.execute(
            update(AssessmentResult)
            .where(
                AssessmentResult.test_type == self.test_type,
                AssessmentResult.student_id == student_id,
                AssessmentResult.test_id == test_id,
            )
            .values(retest_assignment_id=assignment_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class ResultStoreRegistry:
    """One store per test type."""

    def __init__(self, db: Session, stores: dict[AssessmentType, ResultStore] | None = None):
        self.stores = stores or {
            test_type: TableResultStore(db, test_type) for test_type in AssessmentType
        }

    def for_type(self, test_type: AssessmentType) -> ResultStore:
        return self.stores[test_type]

    def all(self) -> list[ResultStore]:
        return list(self.stores.values())

    def flag_retest(self, test_type: AssessmentType, student_id: str, test_id: int, assignment_id: int) -> int:
        """Flag the latest result of the test's own type and stamp the assignment everywhere.

        Returns how many result rows now carry the back-reference.
        """
        if not self.for_type(test_type).mark_retest_offered(student_id, test_id):
            logger.debug(f"No {test_type.value} result to flag for student {student_id} on test {test_id}")

        stamped = 0
        for store in self.all():
            stamped += store.stamp_retest_assignment(student_id, test_id, assignment_id)
        return stamped
