"""Database models package."""

from retest_backend.models.assessment import (
    Assessment,
    AssessmentResult,
    AssessmentType,
)
from retest_backend.models.attempt import Attempt, BestAttempt
from retest_backend.models.audit import AuditAction, AuditLog
from retest_backend.models.retest import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    RetestAssignment,
    RetestStatus,
    RetestTarget,
    ScoringPolicy,
)

__all__ = [
    # Assessment
    "Assessment",
    "AssessmentResult",
    "AssessmentType",
    # Retest
    "RetestAssignment",
    "RetestTarget",
    "RetestStatus",
    "ScoringPolicy",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    # Attempt
    "Attempt",
    "BestAttempt",
    # Audit
    "AuditLog",
    "AuditAction",
]
