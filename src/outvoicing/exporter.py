"""Sales report export to CSV and Excel workbooks."""

from __future__ import annotations

import csv
from decimal import Decimal
from pathlib import Path
from typing import List, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .reports import InvoiceReport


EXPORT_COLUMNS: Sequence[str] = (
    "Invoice #",
    "Client",
    "Issue Date",
    "Due Date",
    "Status",
    "Subtotal",
    "Tax",
    "Total",
    "Currency",
)

REPORT_SHEET = "Sales Report"
SUPPORTED_FORMATS = ("csv", "xlsx")


def report_rows(report: InvoiceReport) -> List[List[object]]:
    """Flatten the report's invoices into rows matching ``EXPORT_COLUMNS``."""

    return [
        [
            invoice.invoice_number,
            invoice.client.name,
            invoice.issue_date.isoformat(),
            invoice.due_date.isoformat(),
            invoice.status.value,
            invoice.subtotal,
            invoice.tax_amount,
            invoice.total,
            invoice.currency.value,
        ]
        for invoice in report.invoices
    ]


def default_export_name(report: InvoiceReport, extension: str) -> str:
    return f"sales_report_{report.start.isoformat()}_to_{report.end.isoformat()}.{extension}"


def build_workbook(report: InvoiceReport) -> Workbook:
    """Create a workbook holding the report with a bold header row and a totals row.

    Args:
        report (InvoiceReport): Filtered invoice view to export.

    Returns:
        Workbook: In-memory ``openpyxl`` workbook with one sheet.
    """

    wb = openpyxl.Workbook()
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)
    ws = wb.create_sheet(title=REPORT_SHEET)
    for col_idx, column_name in enumerate(EXPORT_COLUMNS, 1):
        cell = ws.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = bold_font

    for row in report_rows(report):
        ws.append(row)

    if report.invoices:
        ws.append(["Totals", None, None, None, None, report.subtotal, report.tax_amount, report.total, None])
        for cell in ws[ws.max_row]:
            cell.font = bold_font
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> Path:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    return dest


def write_csv(report: InvoiceReport, destination: Path) -> Path:
    """Write the report as CSV with the standard header row."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    with dest.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(EXPORT_COLUMNS)
        for row in report_rows(report):
            writer.writerow([_format_cell(value) for value in row])
    return dest


def _format_cell(value: object) -> object:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return value


def export_report(report: InvoiceReport, export_dir: Path, fmt: str = "csv") -> Path:
    """Export ``report`` into ``export_dir`` using ``fmt`` (``csv`` or ``xlsx``).

    Raises:
        ValueError: If ``fmt`` is not supported or the report is empty.
    """

    fmt = fmt.lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    if not report.invoices:
        log.warning("Export skipped: no invoices between %s and %s", report.start, report.end)
        raise ValueError("There are no invoices in the selected date range to export")

    destination = Path(export_dir) / default_export_name(report, fmt)
    if fmt == "xlsx":
        written = save_workbook(build_workbook(report), destination)
    else:
        written = write_csv(report, destination)
    log.info("Exported %d invoice(s) to %s", len(report.invoices), written)
    return written
