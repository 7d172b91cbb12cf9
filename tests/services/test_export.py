"""
Tests for rotation export (CSV / XLSX).
"""

import csv
from datetime import datetime, timezone
from decimal import Decimal
from io import BytesIO, StringIO
from uuid import uuid4

import pytest
from openpyxl import load_workbook

from stock_engines import LotStock, ProductRotationInput, RotationEngine
from stock_services import export_rotation
from stock_services.export import ROTATION_COLUMNS, rotation_rows

LAST_MOVE = datetime(2024, 6, 14, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def analysis():
    products = [
        ProductRotationInput(
            product_id=uuid4(),
            product_name="Paracetamol 500mg",
            family="antalgique",
            cost_price=Decimal("2.00"),
            lots=(LotStock(100, 100),),
            units_sold=1200,
            last_movement_at=LAST_MOVE,
        ),
        ProductRotationInput(
            product_id=uuid4(),
            product_name="Vitamin C",
            family=None,
            cost_price=Decimal("1.00"),
            lots=(LotStock(10, 10),),
            units_sold=0,
        ),
    ]
    return RotationEngine().analyze(inputs=products, window_days=365)


class TestRows:
    def test_flat_rows(self, analysis):
        rows = rotation_rows(analysis)

        assert [r["product_name"] for r in rows] == ["Vitamin C", "Paracetamol 500mg"]
        assert set(rows[0]) == set(ROTATION_COLUMNS)
        assert rows[0]["family"] == ""
        assert rows[0]["last_movement_at"] == ""
        assert rows[1]["rotation_class"] == "excellent"
        assert rows[1]["last_movement_at"] == "2024-06-14T09:30:00+00:00"


class TestCsv:
    def test_semicolon_separated_with_header(self, analysis):
        text = export_rotation(analysis, "csv")

        records = list(csv.DictReader(StringIO(text), delimiter=";"))
        assert list(records[0]) == list(ROTATION_COLUMNS)
        assert records[1]["product_name"] == "Paracetamol 500mg"
        assert records[1]["rotation_rate"] == "12.0"
        assert records[0]["days_to_sell_out"] == "999"

    def test_empty_analysis_has_header_only(self):
        text = export_rotation(RotationEngine().analyze(inputs=[], window_days=30), "csv")

        assert text.splitlines() == [";".join(ROTATION_COLUMNS)]


class TestXlsx:
    def test_workbook(self, analysis):
        data = export_rotation(analysis, "xlsx")

        wb = load_workbook(BytesIO(data))
        ws = wb.active
        assert ws.title == "Rotation"
        assert [c.value for c in ws[1]] == list(ROTATION_COLUMNS)
        assert ws.cell(row=3, column=2).value == "Paracetamol 500mg"
        assert ws.cell(row=3, column=9).value == 30
        assert ws.max_row == 3
        assert ws.cell(row=1, column=1).font.bold


def test_unknown_format(analysis):
    with pytest.raises(ValueError):
        export_rotation(analysis, "pdf")


def test_facade_export(core, ctx, create_product, create_lot):
    create_lot(create_product(name="Ibuprofen"), quantity=20)

    text = core.export_rotation(ctx, "monthly", fmt="csv")

    assert "Ibuprofen" in text
