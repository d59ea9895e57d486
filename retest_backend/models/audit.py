"""Audit log model."""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from retest_backend.core.database import Base
from retest_backend.models.base import IDMixin, JSONType, utcnow


class AuditAction(str, enum.Enum):
    """Audit action types."""

    RETEST_CREATED = "RETEST_CREATED"
    RETEST_CANCELLED = "RETEST_CANCELLED"
    RETEST_TARGETS_EXPIRED = "RETEST_TARGETS_EXPIRED"
    ATTEMPT_REGRADED = "ATTEMPT_REGRADED"


class AuditLog(Base, IDMixin):
    """Append-only audit log model."""

    __tablename__ = "audit_logs"

    # Actor (null for scheduler-driven actions)
    actor_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    # Action details
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Additional context (JSON)
    extra_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Timestamp (append-only, no updated_at)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action})>"
