"""Audit logging service."""

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retest_backend.models.audit import AuditAction, AuditLog


class AuditService:
    """Audit logging service - append-only."""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: str | None = None,
        actor_role: str | None = None,
        actor_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Create an audit log entry in the caller's transaction."""
        log = AuditLog(
            actor_role=actor_role,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            extra_data=metadata,
        )
        self.db.add(log)
        self.db.flush()
        return log

    def list_logs(
        self,
        resource_type: str | None = None,
        resource_id: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        """List audit logs, newest first."""
        query = select(AuditLog)
        if resource_type:
            query = query.where(AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar() or 0

        query = (
            query
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        logs = self.db.execute(query).scalars().all()
        return list(logs), total
