"""Custom exception classes and error handling."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": {
                    "code": code,
                    "message": message,
                    "details": details or {},
                },
            },
        )


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="AUTH_FAILED",
            message=message,
        )


class PermissionDeniedError(AppException):
    """Principal's role is not allowed to perform the action."""

    def __init__(
        self,
        message: str = "Permission denied",
        required_roles: list[str] | None = None,
    ):
        details = {}
        if required_roles:
            details["required_roles"] = required_roles
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code="PERMISSION_DENIED",
            message=message,
            details=details,
        )


class InvalidArgumentError(AppException):
    """Malformed request arguments (thresholds, student lists, scores)."""

    def __init__(
        self,
        message: str = "Invalid argument",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="INVALID_ARGUMENT",
            message=message,
            details=details,
        )


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(
        self,
        resource: str = "Resource",
        identifier: str | None = None,
    ):
        details = {}
        if identifier:
            details["identifier"] = identifier
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code="NOT_FOUND",
            message=f"{resource} not found",
            details=details,
        )


class RetestIneligibleError(AppException):
    """Base for expected business outcomes that block a retest submission."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message,
            details=details,
        )


class WindowClosedError(RetestIneligibleError):
    """Submission attempted outside the assignment's window."""

    def __init__(self, assignment_id: int, details: dict[str, Any] | None = None):
        super().__init__(
            code="WINDOW_CLOSED",
            message="Retest window is not active",
            details={"assignment_id": assignment_id, **(details or {})},
        )


class AlreadyCompletedError(RetestIneligibleError):
    """Target already reached a terminal status."""

    def __init__(self, assignment_id: int, student_id: str):
        super().__init__(
            code="ALREADY_COMPLETED",
            message="Retest is already completed",
            details={"assignment_id": assignment_id, "student_id": student_id},
        )


class AttemptsExhaustedError(RetestIneligibleError):
    """Target has consumed every allowed attempt."""

    def __init__(self, assignment_id: int, student_id: str, max_attempts: int):
        super().__init__(
            code="ATTEMPTS_EXHAUSTED",
            message="Maximum retest attempts reached",
            details={
                "assignment_id": assignment_id,
                "student_id": student_id,
                "max_attempts": max_attempts,
            },
        )


class SubmissionConflictError(AppException):
    """Target changed between the eligibility check and the write."""

    def __init__(self, assignment_id: int, student_id: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code="SUBMISSION_CONFLICT",
            message="Another submission for this retest was recorded concurrently, retry",
            details={"assignment_id": assignment_id, "student_id": student_id},
        )


class IntegrityFaultError(AppException):
    """A row that must exist was not there. Always a defect, never a user error."""

    def __init__(
        self,
        message: str = "Data integrity fault",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="INTEGRITY_FAULT",
            message=message,
            details=details,
        )
