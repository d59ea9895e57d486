"""Retest progress export."""

from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from sqlalchemy import select
from sqlalchemy.orm import Session

from retest_backend.models.attempt import BestAttempt
from retest_backend.models.base import as_utc
from retest_backend.models.retest import RetestStatus
from retest_backend.services.target import RetestTargetTracker

STATUS_FILLS = {
    RetestStatus.PASSED: "C6EFCE",
    RetestStatus.FAILED: "FFC7CE",
    RetestStatus.EXPIRED: "D9D9D9",
}


class RetestReportService:
    """Builds spreadsheets of retest progress for teachers."""

    def __init__(self, db: Session):
        self.db = db
        self.tracker = RetestTargetTracker(db)

    def export_targets(self, assignment_id: int) -> bytes:
        """Generate an Excel workbook with one row per targeted student."""
        assignment = self.tracker.get_assignment(assignment_id)
        targets = self.tracker.list_targets(assignment_id)

        best_by_student = {
            best.student_id: best
            for best in self.db.execute(
                select(BestAttempt).where(
                    BestAttempt.test_id == assignment.test_id,
                    BestAttempt.student_id.in_([t.student_id for t in targets]),
                )
            ).scalars()
        }

        wb = Workbook()
        ws = wb.active
        ws.title = "Retest Progress"

        # Styles
        title_font = Font(bold=True, size=14)
        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
        thin_border = Border(
            left=Side(style='thin'),
            right=Side(style='thin'),
            top=Side(style='thin'),
            bottom=Side(style='thin')
        )
        center_align = Alignment(horizontal='center', vertical='center')

        headers = [
            "Student ID",
            "Status",
            "Attempts Used",
            "Max Attempts",
            "Passed",
            "Best %",
            "Last Attempt (UTC)",
            "Completed (UTC)",
        ]

        # Title row
        window_end = as_utc(assignment.window_end)
        title_text = (
            f"Retest #{assignment.id} - Test {assignment.test_id} "
            f"(pass >= {assignment.passing_threshold}%, closes {window_end:%Y-%m-%d %H:%M})"
        )
        ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(headers))
        title_cell = ws.cell(row=1, column=1, value=title_text)
        title_cell.font = title_font
        title_cell.alignment = center_align
        title_cell.fill = PatternFill(start_color="B4C6E7", end_color="B4C6E7", fill_type="solid")

        for col_idx, header in enumerate(headers, start=1):
            cell = ws.cell(row=2, column=col_idx, value=header)
            cell.font = header_font
            cell.fill = header_fill
            cell.border = thin_border
            cell.alignment = center_align

        for row_idx, target in enumerate(targets, start=3):
            best = best_by_student.get(target.student_id)
            row = [
                target.student_id,
                target.status.value,
                target.attempt_number,
                target.max_attempts,
                "Yes" if target.passed else "No",
                float(best.best_percentage) if best and best.best_percentage is not None else None,
                _format_timestamp(target.last_attempt_at),
                _format_timestamp(target.completed_at),
            ]
            for col_idx, value in enumerate(row, start=1):
                cell = ws.cell(row=row_idx, column=col_idx, value=value)
                cell.border = thin_border

            fill = STATUS_FILLS.get(target.status)
            if fill:
                ws.cell(row=row_idx, column=2).fill = PatternFill(
                    start_color=fill, end_color=fill, fill_type="solid"
                )

        # Column widths
        widths = [15, 14, 14, 13, 9, 10, 20, 20]
        for col_idx, width in enumerate(widths, start=1):
            ws.column_dimensions[get_column_letter(col_idx)].width = width

        output = BytesIO()
        wb.save(output)
        output.seek(0)
        return output.getvalue()


def _format_timestamp(value) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M") if value else ""
