"""FastAPI dependency injection utilities."""

from typing import Annotated, Any

from fastapi import Depends, Header

from retest_backend.core.exceptions import AuthenticationError, PermissionDeniedError
from retest_backend.core.security import (
    PROFILE_CLAIMS,
    ROLE_ADMIN,
    ROLE_STUDENT,
    ROLE_TEACHER,
    ROLES,
    verify_access_token,
)


class Principal:
    """Authenticated caller: a role plus the subject id that role acts as."""

    def __init__(
        self,
        role: str,
        student_id: str | None = None,
        teacher_id: str | None = None,
        profile: dict[str, Any] | None = None,
    ):
        self.role = role
        self.student_id = student_id
        self.teacher_id = teacher_id
        self.profile = profile or {}

    @property
    def subject_id(self) -> str | None:
        return self.student_id if self.role == ROLE_STUDENT else self.teacher_id

    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT

    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def is_staff(self) -> bool:
        """Teachers and admins manage retest assignments."""
        return self.role in (ROLE_TEACHER, ROLE_ADMIN)


def get_principal(
    authorization: str = Header(..., description="Bearer token"),
) -> Principal:
    """Extract and validate the caller from the JWT bearer token."""
    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header format")

    token = authorization[7:]  # Remove "Bearer " prefix
    payload = verify_access_token(token)

    if not payload:
        raise AuthenticationError("Invalid or expired token")

    role = payload.get("role")
    if role not in ROLES:
        raise AuthenticationError("Invalid token payload")

    student_id = payload.get("student_id")
    teacher_id = payload.get("teacher_id")
    if role == ROLE_STUDENT and not student_id:
        raise AuthenticationError("Student token is missing student_id")
    if role == ROLE_TEACHER and not teacher_id:
        raise AuthenticationError("Teacher token is missing teacher_id")

    profile = {claim: payload[claim] for claim in PROFILE_CLAIMS if claim in payload}
    return Principal(
        role=role,
        student_id=str(student_id) if student_id else None,
        teacher_id=str(teacher_id) if teacher_id else None,
        profile=profile,
    )


def require_roles(*roles: str):
    """Dependency factory that requires one of the given roles."""

    def check_role(
        principal: Annotated[Principal, Depends(get_principal)],
    ) -> Principal:
        if principal.role not in roles:
            raise PermissionDeniedError(
                f"Role '{principal.role}' is not allowed",
                required_roles=list(roles),
            )
        return principal

    return check_role


# Type aliases for dependency injection
CurrentPrincipal = Annotated[Principal, Depends(get_principal)]
StudentPrincipal = Annotated[Principal, Depends(require_roles(ROLE_STUDENT))]
StaffPrincipal = Annotated[Principal, Depends(require_roles(ROLE_TEACHER, ROLE_ADMIN))]
AdminPrincipal = Annotated[Principal, Depends(require_roles(ROLE_ADMIN))]
