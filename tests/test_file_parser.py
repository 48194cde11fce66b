"""Tests for the statement file parser."""

import io
from decimal import Decimal

import pytest
from openpyxl import Workbook

from statement_import.errors import EmptyFileError, UnreadableFileError
from statement_import.models.statement import TransactionType
from statement_import.parsing import StatementFileParser, parse
from tests.fakes import AXIS_STATEMENT


def xlsx_bytes(rows: list[list[str]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TestDelimitedFiles:
    """Tests for CSV-style statements."""

    def test_axis_csv(self):
        """Test a known layout end to end."""
        parsed = parse(AXIS_STATEMENT, "axis_feb.csv")

        assert parsed.format_id == "AXIS"
        assert parsed.row_count == 3
        assert parsed.headers == ["Tran Date", "Particulars", "Debit", "Credit"]

        first, _, salary = parsed.rows
        assert first.narration == "UPI/NETFLIX SUBSCRIPTION"
        assert first.amount == Decimal("499.00")
        assert first.type == TransactionType.EXPENSE
        assert salary.type == TransactionType.INFLOW
        assert salary.amount == Decimal("85000.00")

    def test_row_order_preserved(self):
        """Test rows come back in file order."""
        parsed = parse(AXIS_STATEMENT, "axis.csv")
        assert [row.narration for row in parsed.rows] == [
            "UPI/NETFLIX SUBSCRIPTION",
            "ZOMATO ORDER 450",
            "SALARY FEB NEFT",
        ]

    def test_byte_order_mark(self):
        """Test a UTF-8 BOM does not corrupt the first header."""
        parsed = parse(b"\xef\xbb\xbf" + AXIS_STATEMENT, "axis.csv")
        assert parsed.format_id == "AXIS"

    def test_blank_lines_dropped(self):
        """Test blank and empty-cell rows are skipped."""
        data = AXIS_STATEMENT + b"\n,,,\n\n"
        assert parse(data, "axis.csv").row_count == 3

    def test_unknown_layout_uses_generic(self):
        """Test the generic format nulls out structural fields."""
        data = b"When,What,How much\n01/02/2026,ZOMATO ORDER 450,450\n02/02/2026,UBER TRIP,210\n"
        parsed = parse(data, "export.csv")

        assert parsed.format_id == "GENERIC"
        for row in parsed.rows:
            assert row.amount is None
            assert row.datetime is None
            assert row.type is None

    def test_empty_file(self):
        """Test a blank upload is rejected."""
        with pytest.raises(EmptyFileError):
            parse(b"   \n", "axis.csv")

    def test_header_only(self):
        """Test a header with no data rows is rejected."""
        with pytest.raises(EmptyFileError):
            parse(b"Tran Date,Particulars,Debit,Credit\n", "axis.csv")

    def test_not_utf8(self):
        """Test undecodable bytes are rejected."""
        with pytest.raises(UnreadableFileError):
            parse(b"\xff\xfe\x00\x81garbage", "axis.csv")


class TestSpreadsheets:
    """Tests for xlsx statements."""

    def test_xlsx_statement(self):
        """Test reading the first worksheet of a workbook."""
        data = xlsx_bytes([
            ["Tran Date", "Particulars", "Debit", "Credit"],
            ["01/02/2026", "UPI/SWIGGY", "320.00", "0.00"],
            ["02/02/2026", "REFUND", "0.00", "99.00"],
        ])
        parsed = StatementFileParser().parse(data, "axis.xlsx")

        assert parsed.format_id == "AXIS"
        assert parsed.row_count == 2
        assert parsed.rows[0].amount == Decimal("320.00")
        assert parsed.rows[1].type == TransactionType.INFLOW

    def test_corrupt_xlsx(self):
        """Test bytes that are not a workbook are rejected."""
        with pytest.raises(UnreadableFileError):
            parse(b"definitely not a zip archive", "axis.xlsx")
