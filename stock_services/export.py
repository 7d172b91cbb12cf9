"""
Rotation analysis export (CSV and XLSX).

Rows are flat dicts with stable column names; ``rotation_rows`` is the one
place the layout is defined, the writers only serialize it.  Timestamps are
written as ISO-8601 text because spreadsheets cannot hold timezones.
"""

from __future__ import annotations

import csv
from io import BytesIO, StringIO
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from stock_engines.rotation import RotationAnalysis
from stock_kernel.logging_config import get_logger

logger = get_logger("services.export")

EXPORT_FORMATS = ("csv", "xlsx")

ROTATION_COLUMNS = (
    "product_id",
    "product_name",
    "family",
    "average_stock",
    "units_sold",
    "annual_consumption",
    "rotation_rate",
    "rotation_class",
    "days_to_sell_out",
    "stock_value",
    "consumption_change_percent",
    "last_movement_at",
)


def rotation_rows(analysis: RotationAnalysis) -> list[dict[str, Any]]:
    return [
        {
            "product_id": str(p.product_id),
            "product_name": p.product_name,
            "family": p.family or "",
            "average_stock": p.average_stock,
            "units_sold": p.units_sold,
            "annual_consumption": p.annual_consumption,
            "rotation_rate": p.rotation_rate,
            "rotation_class": p.rotation_class.value,
            "days_to_sell_out": p.days_to_sell_out,
            "stock_value": p.stock_value,
            "consumption_change_percent": p.consumption_change_percent,
            "last_movement_at": p.last_movement_at.isoformat() if p.last_movement_at else "",
        }
        for p in analysis.products
    ]


def to_csv_string(rows: list[dict[str, Any]], delimiter: str = ";") -> str:
    output = StringIO()
    writer = csv.DictWriter(output, fieldnames=ROTATION_COLUMNS, delimiter=delimiter)
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


def to_xlsx_bytes(rows: list[dict[str, Any]], sheet_name: str = "Rotation") -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name

    header_fill = PatternFill(start_color="F2F2F2", end_color="F2F2F2", fill_type="solid")
    for col_idx, header in enumerate(ROTATION_COLUMNS, 1):
        cell = ws.cell(row=1, column=col_idx, value=header)
        cell.font = Font(bold=True)
        cell.fill = header_fill

    for row_idx, row in enumerate(rows, 2):
        for col_idx, key in enumerate(ROTATION_COLUMNS, 1):
            ws.cell(row=row_idx, column=col_idx, value=row[key])

    for col_idx, header in enumerate(ROTATION_COLUMNS, 1):
        longest = max([len(header)] + [len(str(row[header])) for row in rows])
        ws.column_dimensions[get_column_letter(col_idx)].width = min(longest + 2, 50)

    output = BytesIO()
    wb.save(output)
    return output.getvalue()


def export_rotation(analysis: RotationAnalysis, fmt: str = "csv") -> str | bytes:
    """
    Serialize a rotation analysis.

    Returns:
        ``str`` for csv, ``bytes`` (an .xlsx workbook) for xlsx.

    Raises:
        ValueError: unknown format.
    """
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"export format must be one of {EXPORT_FORMATS}, got {fmt!r}")
    rows = rotation_rows(analysis)
    logger.info("rotation_exported", extra={"format": fmt, "rows": len(rows)})
    if fmt == "csv":
        return to_csv_string(rows)
    return to_xlsx_bytes(rows)
