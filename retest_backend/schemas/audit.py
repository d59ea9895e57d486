"""Audit log schemas."""

from datetime import datetime
from typing import Any

from pydantic import Field

from retest_backend.models.audit import AuditAction
from retest_backend.schemas.common import BaseSchema


class AuditLogResponse(BaseSchema):
    """Audit log response schema."""

    id: int
    actor_role: str | None
    actor_id: str | None
    action: AuditAction
    resource_type: str
    resource_id: str | None
    description: str | None
    metadata: dict[str, Any] | None = Field(None, validation_alias="extra_data")
    created_at: datetime
