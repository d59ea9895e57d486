"""Security utilities for authentication and authorization."""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from retest_backend.core.config import settings

ROLE_STUDENT = "student"
ROLE_TEACHER = "teacher"
ROLE_ADMIN = "admin"
ROLES = {ROLE_STUDENT, ROLE_TEACHER, ROLE_ADMIN}

# Student display claims copied onto attempt snapshots
PROFILE_CLAIMS = ("name", "surname", "nickname", "grade", "class", "number")


def create_access_token(
    subject: str,
    role: str,
    student_id: str | None = None,
    teacher_id: str | None = None,
    profile: dict[str, Any] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token.

    Tokens are normally issued by the login service; this helper exists for
    tooling and tests that need a principal of a given role.
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode: dict[str, Any] = {
        "sub": str(subject),
        "role": role,
        "exp": expire,
        "type": "access",
    }
    if student_id is not None:
        to_encode["student_id"] = str(student_id)
    if teacher_id is not None:
        to_encode["teacher_id"] = str(teacher_id)
    for claim in PROFILE_CLAIMS:
        if profile and profile.get(claim) is not None:
            to_encode[claim] = profile[claim]

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return payload
    except JWTError:
        return None


def verify_access_token(token: str) -> dict[str, Any] | None:
    """Verify an access token and return its payload."""
    payload = decode_token(token)
    if payload and payload.get("type") == "access":
        return payload
    return None
