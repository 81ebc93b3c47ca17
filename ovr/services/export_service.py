"""
Excel export of the incidents a caller may see.
"""

import io
import logging
from datetime import datetime, timezone

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from ovr.access_control import can_perform
from ovr.auth import AuthContext
from ovr.core.exceptions import AuthorizationError
from ovr.models.incident import Incident
from ovr.services.incident_service import visible_query
from ovr.workflow.status import IncidentStatus, status_label

logger = logging.getLogger(__name__)

HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
CLOSED_FILL = PatternFill(start_color="D9EAD3", end_color="D9EAD3", fill_type="solid")
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)

INCIDENT_COLUMNS = (
    ("ID", lambda i: i.id),
    ("Status", lambda i: status_label(i.status)),
    ("Occurrence date", lambda i: i.occurrence_date),
    ("Time", lambda i: i.occurrence_time),
    ("Category", lambda i: i.occurrence_category),
    ("Subcategory", lambda i: i.occurrence_subcategory),
    ("Level of harm", lambda i: i.level_of_harm),
    ("Person involved", lambda i: i.person_involved),
    ("Department", lambda i: i.department.name if i.department else None),
    ("Location", lambda i: i.location.name if i.location else None),
    ("Reporter", lambda i: i.reporter.email if i.reporter else None),
    ("Description", lambda i: i.description),
    ("Corrective actions", lambda i: len(i.corrective_actions)),
    ("Open actions", lambda i: len(i.open_action_ids())),
    ("Closed at", lambda i: _naive(i.closed_at)),
)

ACTION_HEADERS = ("Incident", "Action ID", "Title", "Due date", "Status", "Checklist", "Assignees")


def _naive(value):
    """openpyxl cannot store tz-aware datetimes."""
    if value is not None and getattr(value, "tzinfo", None) is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _apply_header_style(ws, row: int, col_count: int) -> None:
    for col in range(1, col_count + 1):
        cell = ws.cell(row=row, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)


def _auto_width(ws) -> None:
    """Size columns to content, capped at 60 characters."""
    for col in ws.columns:
        max_len = 0
        col_letter = get_column_letter(col[0].column)
        for cell in col:
            if cell.value:
                max_len = max(max_len, min(len(str(cell.value)), 60))
        ws.column_dimensions[col_letter].width = max(max_len + 4, 12)


def export_incidents_xlsx(ctx: AuthContext, status: str | None = None) -> io.BytesIO:
    """
    Build a two-sheet workbook (incidents, corrective actions).
    Returns a BytesIO buffer ready for Flask send_file.
    """
    if not can_perform(ctx.roles, "api", "incidents", "export"):
        raise AuthorizationError("Not allowed to export incidents")

    query = visible_query(ctx)
    if status and IncidentStatus.parse(status) is not None:
        query = query.filter(Incident.status == status)
    incidents = query.order_by(Incident.created_at.desc(), Incident.id.desc()).all()

    wb = Workbook()
    ws = wb.active
    ws.title = "Incidents"
    ws.append([header for header, _ in INCIDENT_COLUMNS])
    _apply_header_style(ws, 1, len(INCIDENT_COLUMNS))
    for incident in incidents:
        ws.append([getter(incident) for _, getter in INCIDENT_COLUMNS])
        if incident.status == IncidentStatus.CLOSED.value:
            for cell in ws[ws.max_row]:
                cell.fill = CLOSED_FILL
    ws.freeze_panes = "A2"
    _auto_width(ws)

    ws2 = wb.create_sheet("Corrective Actions")
    ws2.append(list(ACTION_HEADERS))
    _apply_header_style(ws2, 1, len(ACTION_HEADERS))
    for incident in incidents:
        for action in incident.corrective_actions:
            progress = action.checklist_progress
            ws2.append([
                incident.id,
                action.id,
                action.title,
                action.due_date,
                action.status,
                f"{progress['completed']}/{progress['total']}",
                ", ".join(u.email for u in action.assignees),
            ])
    _auto_width(ws2)

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    logger.info("Exported %d incidents", len(incidents), extra={"user_id": ctx.user_id})
    return buf


def export_filename() -> str:
    return f"ovr-incidents-{datetime.now(timezone.utc):%Y%m%d}.xlsx"
