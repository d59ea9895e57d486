"""Retest assignment endpoints."""

from decimal import Decimal
from io import BytesIO
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from retest_backend.core.database import get_db
from retest_backend.core.dependencies import AdminPrincipal, StaffPrincipal
from retest_backend.models.retest import RetestStatus
from retest_backend.schemas.audit import AuditLogResponse
from retest_backend.schemas.common import PaginatedResponse
from retest_backend.schemas.retest import (
    EligibleStudentResponse,
    ExpirySweepResponse,
    RetestAssignmentCreate,
    RetestAssignmentResponse,
    RetestCancelResponse,
    RetestStudentsAdd,
    RetestTargetResponse,
)
from retest_backend.services.audit import AuditService
from retest_backend.services.report import RetestReportService
from retest_backend.services.retest import RetestAssignmentService
from retest_backend.services.target import RetestTargetTracker

router = APIRouter()


@router.post("", response_model=RetestAssignmentResponse, status_code=201)
def create_retest(
    request: RetestAssignmentCreate,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Issue a retest on an original test for a list of students.
    Teachers issue under their own id; admins may pass teacher_id.
    """
    service = RetestAssignmentService(db)
    return service.create_assignment(request, principal)


@router.get("", response_model=PaginatedResponse[RetestAssignmentResponse])
def list_retests(
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
    teacher_id: str | None = None,
    test_id: int | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    """
    List retest assignments with per-status target counts.
    Teachers only see their own; admins may filter by teacher_id.
    """
    if not principal.is_admin():
        teacher_id = principal.teacher_id

    service = RetestAssignmentService(db)
    items, total = service.list_assignments(
        teacher_id=teacher_id,
        test_id=test_id,
        page=page,
        page_size=page_size,
    )

    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.get("/eligible-students", response_model=list[EligibleStudentResponse])
def list_eligible_students(
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
    test_id: int = Query(...),
    threshold: Decimal = Query(Decimal("50"), ge=0, le=100),
):
    """
    Students whose best result on a test is below the threshold.
    """
    service = RetestAssignmentService(db)
    return service.list_eligible_students(test_id, threshold)


@router.post("/expire", response_model=ExpirySweepResponse)
def expire_overdue(
    principal: AdminPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Run the expiry sweep now instead of waiting for the scheduler.
    Admin only.
    """
    service = RetestAssignmentService(db)
    return ExpirySweepResponse(expired=service.expire_overdue_targets())


@router.get("/{assignment_id}", response_model=RetestAssignmentResponse)
def get_retest(
    assignment_id: int,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Get a retest assignment with per-status target counts.
    """
    service = RetestAssignmentService(db)
    return service.get_assignment(assignment_id)


@router.post("/{assignment_id}/students", response_model=RetestAssignmentResponse)
def add_retest_students(
    assignment_id: int,
    request: RetestStudentsAdd,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Target more students. Students already on the retest are skipped.
    """
    service = RetestAssignmentService(db)
    return service.add_students(assignment_id, request.student_ids, principal)


@router.post("/{assignment_id}/cancel", response_model=RetestCancelResponse)
def cancel_retest(
    assignment_id: int,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Close the retest window now. Attempts already made are kept.
    """
    service = RetestAssignmentService(db)
    return service.cancel_assignment(assignment_id, principal)


@router.get("/{assignment_id}/targets", response_model=PaginatedResponse[RetestTargetResponse])
def list_retest_targets(
    assignment_id: int,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
    status: RetestStatus | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
):
    """
    List per-student progress for a retest.
    """
    tracker = RetestTargetTracker(db)
    items, total = tracker.list_targets_page(
        assignment_id,
        status=status,
        page=page,
        page_size=page_size,
    )

    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.get("/{assignment_id}/targets/export")
def export_retest_targets(
    assignment_id: int,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Download retest progress as an Excel file.
    """
    service = RetestReportService(db)
    content = service.export_targets(assignment_id)

    filename = f"retest_{assignment_id}_progress.xlsx"
    return StreamingResponse(
        BytesIO(content),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/{assignment_id}/audit", response_model=PaginatedResponse[AuditLogResponse])
def list_retest_audit_logs(
    assignment_id: int,
    principal: StaffPrincipal,
    db: Annotated[Session, Depends(get_db)],
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    """
    Audit history of a retest assignment, newest first.
    """
    RetestAssignmentService(db).get_assignment(assignment_id)

    logs, total = AuditService(db).list_logs(
        resource_type="retest_assignment",
        resource_id=str(assignment_id),
        page=page,
        page_size=page_size,
    )

    return PaginatedResponse(
        items=[AuditLogResponse.model_validate(log) for log in logs],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )
