import io
import logging
from datetime import datetime, timezone

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from advisory_tracker.models.sheet import Sheet
from advisory_tracker.models.team import Team
from advisory_tracker.services.completion import assignment_progress, get_assignment
from advisory_tracker.services.fanout_service import team_rows
from advisory_tracker.utils.helpers import get_or_raise

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
DONE_FILL = PatternFill(start_color="D5F5E3", end_color="D5F5E3", fill_type="solid")
PENDING_FILL = PatternFill(start_color="FDEBD0", end_color="FDEBD0", fill_type="solid")
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)

# (column header, source, attribute); source is "entry" or "response"
EXPORT_COLUMNS = [
    ("Product Name", "entry", "product_name"),
    ("Product Category", "entry", "product_category"),
    ("Vendor Name", "entry", "vendor_name"),
    ("OEM/Vendor", "entry", "oem_vendor"),
    ("Source", "entry", "source"),
    ("Risk Level", "entry", "risk_level"),
    ("CVE", "entry", "cve"),
    ("Deployed in KE?", "response", "deployed_in_ke"),
    ("Site", "response", "site"),
    ("Current Status", "response", "current_status"),
    ("Vendor Contacted (Y/N)", "response", "vendor_contacted"),
    ("Date", "response", "vendor_contact_date"),
    ("Patching", "response", "patching"),
    ("Patching Est. Release Date", "response", "patching_est_release_date"),
    ("Implementation Date", "response", "implementation_date"),
    ("Estimated Completion Date", "response", "estimated_completion_date"),
    ("Est. Time", "response", "estimated_time"),
    ("Compensatory Controls Provided (Y/N)", "response", "compensatory_controls_provided"),
    ("Compensatory Controls Details", "response", "compensatory_controls_details"),
    ("Comments", "response", "comments"),
]

logger = logging.getLogger(__name__)


def _apply_header_style(ws, row: int, col_count: int) -> None:
    """Apply dark-header styling to an Excel row (1-indexed)."""
    for col in range(1, col_count + 1):
        cell = ws.cell(row=row, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)


def _auto_width(ws) -> None:
    """Auto-size column widths based on content (capped at 60 chars)."""
    for col in ws.columns:
        max_len = 0
        col_letter = get_column_letter(col[0].column)
        for cell in col:
            if cell.value:
                max_len = max(max_len, min(len(str(cell.value)), 60))
        ws.column_dimensions[col_letter].width = max(max_len + 4, 12)


def export_team_view_xlsx(sheet_id: int, team_id: int) -> bytes:
    """
    One team's responses for a sheet as an Excel workbook.

    Rows that satisfy the completion predicate are shaded green, the rest
    amber. Returns the workbook bytes, ready for Flask send_file.
    """
    sheet = get_or_raise(Sheet, sheet_id)
    team = get_or_raise(Team, team_id)
    assignment = get_assignment(sheet.id, team.id)
    progress = assignment_progress(assignment.id)
    pending = set(progress["pending_entry_ids"])

    wb = Workbook()
    ws = wb.active
    ws.title = "Responses"

    ws["A1"] = f"{sheet.title} - {team.name}"
    ws["A1"].font = Font(size=14, bold=True)
    ws["A2"] = (
        f"Status: {assignment.status} | "
        f"{progress['complete']}/{progress['total']} complete ({progress['percentage']}%) | "
        f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}"
    )
    ws["A2"].font = Font(size=10, italic=True, color="666666")

    header_row = 4
    for col, (label, _source, _attr) in enumerate(EXPORT_COLUMNS, 1):
        ws.cell(row=header_row, column=col, value=label)
    _apply_header_style(ws, header_row, len(EXPORT_COLUMNS))

    row_i = header_row
    for response, entry in team_rows(assignment.id):
        row_i += 1
        fill = PENDING_FILL if entry.id in pending else DONE_FILL
        for col, (_label, source, attr) in enumerate(EXPORT_COLUMNS, 1):
            value = getattr(entry if source == "entry" else response, attr)
            cell = ws.cell(row=row_i, column=col, value=value)
            cell.border = THIN_BORDER
            cell.fill = fill
            if hasattr(value, "isoformat"):
                cell.number_format = "yyyy-mm-dd"

    ws.freeze_panes = ws.cell(row=header_row + 1, column=1)
    _auto_width(ws)

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    logger.info("Exported sheet %s for team %s (%d rows)", sheet.id, team.id, row_i - header_row,
                extra={"sheet_id": sheet.id, "team_id": team.id})
    return buf.getvalue()
