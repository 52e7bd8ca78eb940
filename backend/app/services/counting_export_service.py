"""Export of counting discrepancy reports to CSV, Excel and PDF."""

import csv
import io
import logging
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Dict, List, Tuple

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.counting import CountingSession
from app.services.counting_reconciliation_service import serialize_reconciliation_item
from app.services.discrepancy_report_service import DiscrepancyReportService

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pdf": "application/pdf",
}

ITEM_HEADERS = [
    "Item ID",
    "Product",
    "SKU",
    "Variant",
    "Warehouse",
    "Location",
    "Unit",
    "Theoretical",
    "Count 1",
    "Count 2",
    "Count 3",
    "Final",
    "Variance",
    "Variance %",
    "Resolution",
    "Flagged",
    "Flag Reason",
    "Notes",
]


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    return str(value)


class CountingExportService:
    """Renders a session's discrepancy report as a downloadable file."""

    def __init__(self, db: Session):
        self.db = db
        self.reports = DiscrepancyReportService(db)

    def item_rows(self, session: CountingSession) -> List[List[Any]]:
        rows = []
        for item in session.items:
            data = serialize_reconciliation_item(item)
            rows.append([
                item.id,
                data["product"]["name"],
                data["product"]["sku"],
                data["variant"]["name"] if data["variant"] else None,
                data["warehouse"]["name"],
                data["location"]["name"],
                data["unit_of_measure"],
                data["theoretical_qty"],
                data["count_1_qty"],
                data["count_2_qty"],
                data["count_3_qty"],
                data["final_qty"],
                data["variance"],
                data["variance_percentage"],
                item.resolution_method.value,
                "yes" if item.is_flagged else "no",
                item.flag_reason,
                item.resolution_notes,
            ])
        return [[_cell(v) for v in row] for row in rows]

    def export(self, session: CountingSession, fmt: str) -> Tuple[BytesIO, str, str]:
        """Return ``(buffer, media_type, filename)``.

        Raises:
            ValueError: Unsupported format.
        """
        fmt = (fmt or "").lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format '{fmt}'; use one of {sorted(EXPORT_FORMATS)}")

        rows = self.item_rows(session)
        report = self.reports.build_report(session)
        if fmt == "csv":
            output = self._to_csv(rows)
        elif fmt == "xlsx":
            output = self._to_xlsx(rows, report)
        else:
            output = self._to_pdf(rows, report, session)

        filename = (
            f"counting_{session.id}_discrepancies_"
            f"{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}.{fmt}"
        )
        logger.info(f"Exported counting session {session.id} discrepancy report as {fmt}")
        return output, EXPORT_FORMATS[fmt], filename

    @staticmethod
    def _to_csv(rows: List[List[Any]]) -> BytesIO:
        output = BytesIO()
        output.write(b"\xef\xbb\xbf")
        text_output = io.StringIO()
        writer = csv.writer(text_output, delimiter=",", quotechar='"', quoting=csv.QUOTE_MINIMAL)
        writer.writerow(ITEM_HEADERS)
        for row in rows:
            writer.writerow(row)
        output.write(text_output.getvalue().encode("utf-8"))
        output.seek(0)
        return output

    @staticmethod
    def _to_xlsx(rows: List[List[Any]], report: Dict[str, Any]) -> BytesIO:
        wb = Workbook()
        ws = wb.active
        ws.title = "Items"
        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")

        for col_idx, header in enumerate(ITEM_HEADERS, 1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center", vertical="center")
        for row_idx, row_data in enumerate(rows, 2):
            for col_idx, value in enumerate(row_data, 1):
                ws.cell(row=row_idx, column=col_idx, value=value)
        for column in ws.columns:
            max_length = max(len(str(c.value)) if c.value is not None else 0 for c in column)
            ws.column_dimensions[column[0].column_letter].width = min(max_length + 2, 50)

        counters = wb.create_sheet("Counters")
        counter_headers = [
            "User ID", "Name", "Counted", "Matched Other Counter", "Matched Theoretical",
            "Overruled By Third Count", "Confirmed By Third Count", "Matched Final",
            "Accuracy %", "Reliability %",
        ]
        for col_idx, header in enumerate(counter_headers, 1):
            cell = counters.cell(row=1, column=col_idx, value=header)
            cell.font = header_font
            cell.fill = header_fill
        for row_idx, c in enumerate(report["counters"], 2):
            values = [
                c["user_id"], c["name"], c["items_counted"], c["matched_other_counter"],
                c["matched_theoretical"], c["overruled_by_third_count"],
                c["confirmed_by_third_count"], c["matched_final"],
                _cell(c["accuracy_rate"]), _cell(c["reliability_score"]),
            ]
            for col_idx, value in enumerate(values, 1):
                counters.cell(row=row_idx, column=col_idx, value=value)

        output = BytesIO()
        wb.save(output)
        output.seek(0)
        return output

    @staticmethod
    def _to_pdf(rows: List[List[Any]], report: Dict[str, Any], session: CountingSession) -> BytesIO:
        output = BytesIO()
        doc = SimpleDocTemplate(
            output, pagesize=landscape(A4), topMargin=1.5 * cm, bottomMargin=1.5 * cm
        )
        styles = getSampleStyleSheet()
        title_style = ParagraphStyle("Title", parent=styles["Heading1"], fontSize=16, spaceAfter=12)

        elements = [
            Paragraph(settings.counting_export_title, title_style),
            Paragraph(f"<b>Session:</b> #{session.id} ({session.uuid})", styles["Normal"]),
            Paragraph(f"<b>Status:</b> {session.status.value}", styles["Normal"]),
            Paragraph(
                f"<b>Generated:</b> {report['generated_at'].strftime('%Y-%m-%d %H:%M')} UTC",
                styles["Normal"],
            ),
            Paragraph(
                f"<b>Variance:</b> +{report['variance']['positive']} / "
                f"{report['variance']['negative']} (net {report['variance']['net']})",
                styles["Normal"],
            ),
            Spacer(1, 0.5 * cm),
        ]

        # Identity, counts and outcome only; notes stay in the spreadsheet formats
        columns = [0, 1, 5, 7, 8, 9, 10, 11, 12, 14, 16]
        table_data = [[ITEM_HEADERS[i] for i in columns]]
        for row in rows:
            table_data.append([str(row[i])[:28] for i in columns])

        table = Table(table_data, repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#366092")),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 7),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ]))
        elements.append(table)

        if report["counters"]:
            elements.append(Spacer(1, 0.7 * cm))
            counter_data = [[
                "Counter", "Counted", "Matched Final", "Overruled", "Confirmed",
                "Accuracy %", "Reliability %",
            ]]
            for c in report["counters"]:
                counter_data.append([
                    c["name"] or str(c["user_id"]),
                    str(c["items_counted"]),
                    str(c["matched_final"]),
                    str(c["overruled_by_third_count"]),
                    str(c["confirmed_by_third_count"]),
                    _cell(c["accuracy_rate"]),
                    _cell(c["reliability_score"]),
                ])
            counter_table = Table(counter_data)
            counter_table.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
            ]))
            elements.append(counter_table)

        doc.build(elements)
        output.seek(0)
        return output
