"""
Render the finalized timesheet PDF from a frozen snapshot.

Rendering is a pure function of TimesheetDocumentData: no database access and no
wall-clock values, and ReportLab runs in invariant mode, so the same snapshot
always yields the same bytes.
"""
import io
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional, Tuple
from xml.sax.saxutils import escape

from PIL import Image as PILImage
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image, Table, TableStyle, KeepTogether

from ..models.models import MAX_TIME_ENTRIES
from ..services.time_rules import entry_minutes, minutes_to_hours, format_clock, format_wall_time, utc_to_local

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
SIGNATURE_BOX = (2.8 * inch, 0.8 * inch)


@dataclass(frozen=True)
class TimeEntryData:
    entry_number: int
    clock_in: Optional[datetime]
    clock_out: Optional[datetime]


@dataclass(frozen=True)
class WorkerRow:
    name: str
    role_code: str
    entries: Tuple[TimeEntryData, ...] = ()

    @property
    def total_minutes(self) -> int:
        return sum(entry_minutes(e.clock_in, e.clock_out) for e in self.entries)

    @property
    def total_hours(self) -> Decimal:
        return minutes_to_hours(self.total_minutes)

    def entry(self, number: int) -> Optional[TimeEntryData]:
        for e in self.entries:
            if e.entry_number == number:
                return e
        return None


@dataclass(frozen=True)
class SignatureBlock:
    label: str
    signer_name: str
    captured_at: datetime
    image_bytes: bytes
    is_override: bool = False


@dataclass(frozen=True)
class TimesheetDocumentData:
    timesheet_id: str
    timesheet_version: int
    status: str
    organization_name: str
    footer_text: str
    timezone: str
    client_name: str
    client_contact: Optional[str]
    job_name: str
    po_number: Optional[str]
    shift_date: date
    start_time: time
    end_time: time
    location: Optional[str]
    crew_chief_name: Optional[str]
    workers: Tuple[WorkerRow, ...] = ()
    client_signature: Optional[SignatureBlock] = None
    manager_signature: Optional[SignatureBlock] = None

    @property
    def worker_count(self) -> int:
        return len(self.workers)

    @property
    def total_minutes(self) -> int:
        return sum(w.total_minutes for w in self.workers)

    @property
    def total_hours(self) -> Decimal:
        return minutes_to_hours(self.total_minutes)


def _styles():
    styles = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "TimesheetTitle",
            parent=styles["Heading1"],
            fontName=FONT_BOLD,
            fontSize=18,
            alignment=1,  # Center
            spaceAfter=4,
        ),
        "subtitle": ParagraphStyle(
            "TimesheetSubtitle",
            parent=styles["Normal"],
            fontName=FONT,
            fontSize=10,
            alignment=1,
            textColor=colors.HexColor("#555555"),
            spaceAfter=14,
        ),
        "section": ParagraphStyle(
            "TimesheetSection",
            parent=styles["Heading3"],
            fontName=FONT_BOLD,
            fontSize=11,
            spaceBefore=10,
            spaceAfter=6,
        ),
        "small": ParagraphStyle(
            "TimesheetSmall",
            parent=styles["Normal"],
            fontName=FONT,
            fontSize=8,
            textColor=colors.HexColor("#333333"),
        ),
    }


def _info_table(data: TimesheetDocumentData) -> Table:
    time_window = f"{format_wall_time(data.start_time)} - {format_wall_time(data.end_time)}"
    rows = [
        ["CLIENT NAME:", data.client_name, "CLIENT PO#:", data.po_number or ""],
        ["JOB:", data.job_name, "LOCATION:", data.location or ""],
        ["DATE:", data.shift_date.strftime("%m/%d/%Y"), "TIME:", time_window],
        ["CREW CHIEF:", data.crew_chief_name or "", "STATUS:", data.status.replace("_", " ").upper()],
        ["TIMESHEET #:", data.timesheet_id, "", ""],
    ]
    table = Table(rows, colWidths=[1.0 * inch, 2.6 * inch, 0.9 * inch, 2.5 * inch])
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, -1), FONT),
        ("FONTNAME", (0, 0), (0, -1), FONT_BOLD),
        ("FONTNAME", (2, 0), (2, -1), FONT_BOLD),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("SPAN", (1, 4), (3, 4)),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]))
    return table


def _entries_table(data: TimesheetDocumentData) -> Table:
    header = ["EMPLOYEE NAME", "JT"]
    for _ in range(MAX_TIME_ENTRIES):
        header += ["IN", "OUT"]
    header.append("TOTAL HOURS")

    rows = [header]
    for worker in data.workers:
        row = [worker.name, worker.role_code]
        for number in range(1, MAX_TIME_ENTRIES + 1):
            entry = worker.entry(number)
            if entry is None:
                row += ["", ""]
            else:
                row += [format_clock(entry.clock_in, data.timezone), format_clock(entry.clock_out, data.timezone)]
        row.append(f"{worker.total_hours:.2f}")
        rows.append(row)

    entry_col = 0.62 * inch
    col_widths = [1.6 * inch, 0.4 * inch] + [entry_col] * (MAX_TIME_ENTRIES * 2) + [0.9 * inch]
    table = Table(rows, colWidths=col_widths, repeatRows=1)
    style = [
        ("FONTNAME", (0, 0), (-1, 0), FONT_BOLD),
        ("FONTNAME", (0, 1), (-1, -1), FONT),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#F0F0F0")),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
        ("ALIGN", (2, 0), (-1, -1), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]
    for i in range(1, len(rows)):
        if i % 2 == 0:
            style.append(("BACKGROUND", (0, i), (-1, i), colors.HexColor("#FAFAFA")))
    table.setStyle(TableStyle(style))
    return table


def _summary_table(data: TimesheetDocumentData) -> Table:
    rows = [
        ["WORKERS:", str(data.worker_count)],
        ["TOTAL HOURS:", f"{data.total_hours:.2f}"],
    ]
    table = Table(rows, colWidths=[1.2 * inch, 1.2 * inch], hAlign="RIGHT")
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (0, -1), FONT_BOLD),
        ("FONTNAME", (1, 0), (1, -1), FONT),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("LINEABOVE", (0, 0), (-1, 0), 0.75, colors.black),
    ]))
    return table


def _signature_image(image_bytes: bytes) -> Image:
    """Flatten the signature onto white and scale it into the signature box."""
    with PILImage.open(io.BytesIO(image_bytes)) as pil_im:
        pil_im = pil_im.convert("RGBA")
        background = PILImage.new("RGBA", pil_im.size, (255, 255, 255, 255))
        flattened = PILImage.alpha_composite(background, pil_im).convert("RGB")
    img_buf = io.BytesIO()
    flattened.save(img_buf, format="PNG")
    img_buf.seek(0)

    max_w, max_h = SIGNATURE_BOX
    w, h = flattened.size
    scale = min(max_w / w, max_h / h)
    return Image(img_buf, width=w * scale, height=h * scale)


def _signature_block(block: Optional[SignatureBlock], fallback_label: str, data: TimesheetDocumentData, styles):
    label = block.label if block else fallback_label
    items = [Paragraph(label, styles["section"])]
    if block is None:
        items.append(Paragraph("Not signed", styles["small"]))
        return KeepTogether(items)
    signed_at = utc_to_local(block.captured_at, data.timezone).strftime("%m/%d/%Y %I:%M %p %Z")
    caption = f"{escape(block.signer_name)} &mdash; signed {signed_at}"
    if block.is_override:
        caption += " (signed on behalf of the client)"
    items.append(_signature_image(block.image_bytes))
    items.append(Paragraph(caption, styles["small"]))
    return KeepTogether(items)


def render_timesheet_pdf(data: TimesheetDocumentData) -> bytes:
    """Build the timesheet PDF and return its bytes."""
    styles = _styles()
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        rightMargin=0.6 * inch,
        leftMargin=0.6 * inch,
        topMargin=0.6 * inch,
        bottomMargin=0.8 * inch,
        title=f"Timesheet {data.timesheet_id}",
        author=data.organization_name,
        subject=f"{data.client_name} - {data.job_name}",
        creator=data.organization_name,
        invariant=1,
    )

    def _footer(canvas, doc_):
        canvas.saveState()
        canvas.setFont(FONT, 8)
        page_width = letter[0]
        canvas.drawCentredString(page_width / 2, 0.5 * inch, data.footer_text)
        canvas.drawRightString(page_width - 0.6 * inch, 0.35 * inch, f"Page {doc_.page}")
        canvas.restoreState()

    story = [
        Paragraph(f"{escape(data.organization_name)} TIMESHEET", styles["title"]),
        Paragraph(f"Timesheet {data.timesheet_id} &middot; revision {data.timesheet_version}", styles["subtitle"]),
        _info_table(data),
        Spacer(1, 14),
        Paragraph("TIME ENTRIES", styles["section"]),
        _entries_table(data),
        Spacer(1, 10),
        _summary_table(data),
        Spacer(1, 18),
        _signature_block(data.client_signature, "CLIENT APPROVAL", data, styles),
        Spacer(1, 12),
        _signature_block(data.manager_signature, "MANAGER APPROVAL", data, styles),
    ]
    if data.client_contact:
        story.insert(3, Paragraph(f"Client contact: {escape(data.client_contact)}", styles["small"]))

    doc.build(story, onFirstPage=_footer, onLaterPages=_footer)
    buf.seek(0)
    return buf.read()
