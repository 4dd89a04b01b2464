"""
Renderers turning communication logs into downloadable artifacts.

Each renderer exposes render(content, options) -> bytes and is looked up in
RENDERERS by ExportFormat. Columns for the tabular formats are described once
per request by build_columns() and shared by header and row writers.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.models import CommunicationLog
from app.schemas import DeliveryStatusSummary
from app.utils import utc_now

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    CSV = "csv"
    EXCEL = "excel"
    PDF = "pdf"

    @property
    def extension(self) -> str:
        return {"csv": "csv", "excel": "xlsx", "pdf": "pdf"}[self.value]

    @property
    def content_type(self) -> str:
        return {
            "csv": "text/csv",
            "excel": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "pdf": "application/pdf",
        }[self.value]

    @property
    def label(self) -> str:
        return {"csv": "CSV", "excel": "Excel", "pdf": "PDF"}[self.value]


@dataclass(frozen=True)
class Column:
    header: str
    value: Callable[[CommunicationLog], Any]
    is_date: bool = False
    width: int = 15


def build_columns(include_content: bool = False, include_metadata: bool = False) -> list[Column]:
    """Column layout shared by the CSV and Excel renderers."""
    columns = [
        Column("Communication ID", lambda log: log.id, width=38),
        Column("Order ID", lambda log: log.order_id, width=38),
        Column("Communication Type", lambda log: log.communication_type, width=18),
        Column("Sender ID", lambda log: log.sender_id, width=38),
        Column("Recipient Email", lambda log: log.recipient_email, width=30),
        Column("Recipient Phone", lambda log: log.recipient_phone, width=16),
        Column("Subject", lambda log: log.subject, width=40),
    ]
    if include_content:
        columns += [
            Column("Content", lambda log: log.content, width=60),
            Column("Template Used", lambda log: log.template_used, width=20),
        ]
    columns += [
        Column("Delivery Status", lambda log: log.delivery_status),
        Column("External Message ID", lambda log: log.external_message_id, width=30),
        Column("Sent At", lambda log: log.sent_at, is_date=True, width=20),
        Column("Delivered At", lambda log: log.delivered_at, is_date=True, width=20),
        Column("Read At", lambda log: log.read_at, is_date=True, width=20),
        Column("Failure Reason", lambda log: log.failure_reason, width=30),
        Column("Created At", lambda log: log.created_at, is_date=True, width=20),
    ]
    if include_metadata:
        columns.append(Column("Metadata", lambda log: log.metadata_json, width=40))
    return columns


@dataclass
class ExportContent:
    """Everything a renderer needs, already loaded from the database."""
    logs: list[CommunicationLog] = field(default_factory=list)
    columns: list[Column] = field(default_factory=list)
    summary: Optional[DeliveryStatusSummary] = None
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    generated_at: Optional[datetime] = None


@dataclass
class ExportOptions:
    date_format: Optional[str] = None
    title: Optional[str] = None
    include_detailed_logs: bool = False
    include_failure_analysis: bool = True
    detail_row_limit: int = 500


def format_date(value: Optional[datetime], date_format: Optional[str] = None) -> str:
    if value is None:
        return ""
    return value.strftime(date_format) if date_format else value.isoformat()


def percentage(count: int, total: int) -> str:
    return f"{count * 100.0 / total:.1f}%" if total else "0.0%"


class CsvRenderer:
    """RFC 4180 CSV; every field quoted only when it has to be."""

    def render(self, content: ExportContent, options: ExportOptions) -> bytes:
        buffer = io.StringIO(newline="")
        writer = csv.writer(buffer, lineterminator="\r\n")
        writer.writerow([c.header for c in content.columns])
        for log in content.logs:
            writer.writerow([self._cell(c, log, options) for c in content.columns])
        data = buffer.getvalue().encode("utf-8")
        logger.debug(f"Rendered CSV with {len(content.logs)} rows, {len(data)} bytes")
        return data

    @staticmethod
    def _cell(column: Column, log: CommunicationLog, options: ExportOptions) -> str:
        value = column.value(log)
        if column.is_date:
            return format_date(value, options.date_format)
        return "" if value is None else str(value)


STATUS_FILLS = {
    "delivered": PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
    "read": PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
    "failed": PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
    "bounced": PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
    "sent": PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid"),
}
HEADER_FILL = PatternFill(start_color="BDD7EE", end_color="BDD7EE", fill_type="solid")


def worksheet_value(value: Any) -> Any:
    """Drop control characters openpyxl refuses to store in a cell."""
    return ILLEGAL_CHARACTERS_RE.sub("", value) if isinstance(value, str) else value


class ExcelRenderer:
    """
    Two-sheet workbook.

    "Communication Audit" holds one row per log with a bold, frozen,
    filterable header and colour-coded delivery status. "Summary" holds the
    status and type breakdown when the export was scoped to an organization.
    """

    DATA_SHEET = "Communication Audit"
    SUMMARY_SHEET = "Summary"

    def render(self, content: ExportContent, options: ExportOptions) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = self.DATA_SHEET

        for col, column in enumerate(content.columns, start=1):
            cell = sheet.cell(row=1, column=col, value=column.header)
            cell.font = Font(bold=True)
            cell.fill = HEADER_FILL
            sheet.column_dimensions[get_column_letter(col)].width = column.width

        status_col = next(
            (i for i, c in enumerate(content.columns, start=1) if c.header == "Delivery Status"),
            None
        )
        for row, log in enumerate(content.logs, start=2):
            for col, column in enumerate(content.columns, start=1):
                value = column.value(log)
                if column.is_date:
                    value = format_date(value, options.date_format) or None
                sheet.cell(row=row, column=col, value=worksheet_value(value))
            if status_col is not None:
                fill = STATUS_FILLS.get((log.delivery_status or "").lower())
                if fill is not None:
                    sheet.cell(row=row, column=status_col).fill = fill

        sheet.freeze_panes = "A2"
        if content.columns:
            last_row = max(len(content.logs) + 1, 1)
            sheet.auto_filter.ref = f"A1:{get_column_letter(len(content.columns))}{last_row}"

        self._write_summary(workbook.create_sheet(self.SUMMARY_SHEET), content)

        output = io.BytesIO()
        workbook.save(output)
        data = output.getvalue()
        logger.debug(f"Rendered Excel workbook with {len(content.logs)} rows, {len(data)} bytes")
        return data

    @staticmethod
    def _write_summary(sheet, content: ExportContent):
        summary = content.summary
        if summary is None:
            sheet["A1"] = "Summary data available when filtering by organization"
            sheet["A1"].font = Font(italic=True)
            return

        sheet["A1"] = "Communication Audit Summary"
        sheet["A1"].font = Font(size=16, bold=True)
        sheet["A3"] = "Report Period:"
        sheet["B3"] = f"{summary.date_from:%Y-%m-%d} to {summary.date_to:%Y-%m-%d}"
        sheet["A4"] = "Total Communications:"
        sheet["B4"] = summary.total_communications
        sheet["A5"] = "Delivery Success Rate:"
        sheet["B5"] = f"{summary.delivery_success_rate:.2f}%"

        row = 7
        for heading, counts in (
            ("Status Breakdown", summary.status_counts),
            ("Communication Type Breakdown", summary.type_counts),
        ):
            sheet.cell(row=row, column=1, value=heading).font = Font(bold=True)
            row += 1
            for key, count in sorted(counts.items(), key=lambda kv: -kv[1]):
                sheet.cell(row=row, column=1, value=worksheet_value(key))
                sheet.cell(row=row, column=2, value=count)
                sheet.cell(row=row, column=3, value=percentage(count, summary.total_communications))
                row += 1
            row += 1

        sheet.column_dimensions["A"].width = 32
        sheet.column_dimensions["B"].width = 28
        sheet.column_dimensions["C"].width = 12


class PdfRenderer:
    """Compliance report for one organization and period."""

    DEFAULT_TITLE = "Communication Compliance Report"
    HUMAN_DATE = "%B %d, %Y"

    def render(self, content: ExportContent, options: ExportOptions) -> bytes:
        summary = content.summary
        if summary is None:
            raise ValueError("Compliance report requires a delivery status summary")

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=0.7 * inch,
            leftMargin=0.7 * inch,
            topMargin=0.7 * inch,
            bottomMargin=0.7 * inch,
            title=options.title or self.DEFAULT_TITLE,
        )

        styles = getSampleStyleSheet()
        styles.add(ParagraphStyle(
            name="ReportTitle",
            parent=styles["Heading1"],
            fontSize=18,
            alignment=TA_CENTER,
            spaceAfter=20,
        ))
        styles.add(ParagraphStyle(
            name="SectionHeading",
            parent=styles["Heading2"],
            fontSize=14,
            spaceBefore=10,
            spaceAfter=10,
        ))
        styles.add(ParagraphStyle(
            name="Footer",
            parent=styles["Normal"],
            fontSize=9,
            textColor=colors.grey,
            alignment=TA_CENTER,
            spaceBefore=30,
        ))

        generated_at = content.generated_at or utc_now()
        total = summary.total_communications
        story = [Paragraph(escape(options.title or self.DEFAULT_TITLE), styles["ReportTitle"])]

        organization = content.organization_name or summary.organization_id
        if content.organization_name:
            organization = f"{content.organization_name} ({summary.organization_id})"
        story.append(self._key_value_table([
            ("Organization:", organization),
            ("Report Period:", f"{summary.date_from:{self.HUMAN_DATE}} to {summary.date_to:{self.HUMAN_DATE}}"),
            ("Generated:", f"{generated_at:{self.HUMAN_DATE}} {generated_at:%H:%M:%S} UTC"),
            ("Total Communications:", str(total)),
            ("Delivery Success Rate:", f"{summary.delivery_success_rate:.2f}%"),
        ]))
        story.append(Spacer(1, 0.2 * inch))

        story.append(Paragraph("Delivery Summary", styles["SectionHeading"]))
        if summary.status_counts:
            story.append(self._breakdown_table("Status", summary.status_counts, total, highlight=True))
        else:
            story.append(Paragraph("No communications in this period.", styles["Normal"]))

        if summary.type_counts:
            story.append(Paragraph("Communication Type Breakdown", styles["SectionHeading"]))
            story.append(self._breakdown_table("Type", summary.type_counts, total))

        if options.include_failure_analysis:
            story.extend(self._failure_analysis(summary, styles))

        if options.include_detailed_logs:
            story.extend(self._detailed_logs(content.logs, options.detail_row_limit, summary.total_communications, styles))

        story.append(Paragraph(
            f"Report generated on {generated_at:%Y-%m-%d %H:%M:%S} UTC",
            styles["Footer"]
        ))

        doc.build(story)
        data = buffer.getvalue()
        logger.debug(f"Rendered compliance PDF, {len(data)} bytes")
        return data

    @staticmethod
    def _key_value_table(rows: list[tuple[str, str]]) -> Table:
        table = Table(rows, colWidths=[2.2 * inch, 4.6 * inch])
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (0, -1), colors.lightgrey),
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ]))
        return table

    @staticmethod
    def _breakdown_table(label: str, counts: dict[str, int], total: int, highlight: bool = False) -> Table:
        ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        rows = [[label, "Count", "Percentage"]]
        rows += [[key, str(count), percentage(count, total)] for key, count in ordered]

        style = [
            ("BACKGROUND", (0, 0), (-1, 0), colors.darkgrey),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ]
        if highlight:
            for i, (key, _) in enumerate(ordered, start=1):
                if key.lower() == "delivered":
                    style.append(("BACKGROUND", (0, i), (-1, i), colors.HexColor("#E6FFE6")))
                elif key.lower() in ("failed", "bounced"):
                    style.append(("BACKGROUND", (0, i), (-1, i), colors.HexColor("#FFE6E6")))

        table = Table(rows, colWidths=[2.8 * inch, 2 * inch, 2 * inch])
        table.setStyle(TableStyle(style))
        return table

    def _failure_analysis(self, summary: DeliveryStatusSummary, styles) -> list:
        total = summary.total_communications
        failed = summary.status_counts.get("Failed", 0) + summary.status_counts.get("Bounced", 0)
        success_rate = (total - failed) * 100.0 / total if total else 100.0

        if success_rate >= 95:
            rate_colour = colors.HexColor("#E6FFE6")
        elif success_rate >= 85:
            rate_colour = colors.HexColor("#FFFFE6")
        else:
            rate_colour = colors.HexColor("#FFE6E6")

        table = self._key_value_table([
            ("Success Rate:", f"{success_rate:.2f}%"),
            ("Failed Communications:", str(failed)),
        ])
        table.setStyle(TableStyle([("BACKGROUND", (1, 0), (1, 0), rate_colour)]))
        flowables = [Paragraph("Failure Analysis", styles["SectionHeading"]), table]

        if summary.top_failure_reasons:
            rows = [["Reason", "Count", "Percentage", "Last Occurrence"]]
            rows += [
                [
                    Paragraph(escape(reason.reason), styles["Normal"]),
                    str(reason.count),
                    f"{reason.percentage:.1f}%",
                    f"{reason.last_occurrence:{self.HUMAN_DATE}}",
                ]
                for reason in summary.top_failure_reasons
            ]
            reasons = Table(rows, colWidths=[3 * inch, 0.9 * inch, 1.1 * inch, 1.8 * inch])
            reasons.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.darkgrey),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]))
            flowables += [Spacer(1, 0.15 * inch), reasons]
        return flowables

    def _detailed_logs(self, logs: list[CommunicationLog], limit: int, total: int, styles) -> list:
        flowables = [Paragraph("Detailed Communication Log", styles["SectionHeading"])]
        if not logs:
            flowables.append(Paragraph("No communications in this period.", styles["Normal"]))
            return flowables

        small = ParagraphStyle(name="Cell", parent=styles["Normal"], fontSize=7, leading=9)
        rows = [["Sent", "Type", "Recipient", "Subject", "Status"]]
        for log in logs[:limit]:
            rows.append([
                f"{log.sent_at:{self.HUMAN_DATE}}",
                log.communication_type,
                Paragraph(escape(log.recipient_email or log.recipient_phone or ""), small),
                Paragraph(escape(log.subject or ""), small),
                log.delivery_status,
            ])

        table = Table(rows, colWidths=[1.3 * inch, 0.9 * inch, 1.9 * inch, 1.9 * inch, 0.8 * inch], repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.darkgrey),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 7),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]))
        flowables.append(table)
        shown = min(len(logs), limit)
        if total > shown:
            flowables.append(Paragraph(f"Showing first {shown} of {total} communications.", styles["Italic"]))
        return flowables


RENDERERS = {
    ExportFormat.CSV: CsvRenderer(),
    ExportFormat.EXCEL: ExcelRenderer(),
    ExportFormat.PDF: PdfRenderer(),
}
