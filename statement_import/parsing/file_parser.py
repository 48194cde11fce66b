"""
Statement File Parser

Turns uploaded bytes into RawImportRows:

    bytes -> header row + string records -> BankFormat -> RawImportRow[]

Spreadsheets are read with pandas (openpyxl for .xlsx, xlrd for legacy
.xls); everything else is treated as delimited text with the delimiter
sniffed. Every cell is read as a string so the bank format decides what
a value means, not the reader.

PDF statements have no header row. Only their text is read here and the
statement comes back with format "PDF" and no rows yet; the pipeline
extracts the rows from the text.

A file that cannot be read at all is rejected here, before any session
exists. A file that reads but has odd values is not: those become None
fields downstream.
"""

import csv
import io
import zipfile
from typing import Optional

import pandas as pd
import structlog
import xlrd
from pydantic import BaseModel, Field

from statement_import.errors import EmptyFileError, UnreadableFileError
from statement_import.formats import DEFAULT_REGISTRY, FormatRegistry
from statement_import.models.statement import RawImportRow
from statement_import.parsing.pdf_reader import extract_pdf_text


logger = structlog.get_logger()

SPREADSHEET_ENGINES = {"xlsx": "openpyxl", "xls": "xlrd"}
PDF_FORMAT_ID = "PDF"


class ParsedStatement(BaseModel):
    """Result of parsing one statement file."""

    format_id: str
    headers: list[str] = Field(default_factory=list)
    rows: list[RawImportRow] = Field(default_factory=list)
    text: Optional[str] = Field(
        default=None,
        description="Extracted statement text, for PDFs whose rows are not read yet"
    )

    @property
    def row_count(self) -> int:
        return len(self.rows)


class StatementFileParser:
    """
    Reads statement files and maps their rows through the format registry.

    Usage:
        parser = StatementFileParser()
        parsed = parser.parse(data, "hdfc_feb.csv")
        print(parsed.format_id, parsed.row_count)
    """

    def __init__(self, registry: Optional[FormatRegistry] = None):
        self._registry = registry or DEFAULT_REGISTRY

    def parse(self, data: bytes, filename: str, password: Optional[str] = None) -> ParsedStatement:
        """
        Parse a statement file.

        Raises:
            EmptyFileError: Blank file, or a header with no data rows
            UnreadableFileError: Bytes that are not a spreadsheet, PDF or text
            PasswordRequiredError / WrongPasswordError: Locked PDF
        """
        if not data or not data.strip():
            raise EmptyFileError()

        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""

        if extension == "pdf":
            text = extract_pdf_text(data, password)
            logger.info("statement_parsed", filename=filename, bank_format=PDF_FORMAT_ID)
            return ParsedStatement(format_id=PDF_FORMAT_ID, text=text)

        if extension in SPREADSHEET_ENGINES:
            frame = self._read_spreadsheet(data, SPREADSHEET_ENGINES[extension])
        else:
            frame = self._read_delimited(data)

        headers = [str(column).strip() for column in frame.columns]
        records = self._records(frame, headers)

        if not records:
            raise EmptyFileError()

        bank_format = self._registry.detect(headers)
        rows = [bank_format.map_row(record) for record in records]

        logger.info(
            "statement_parsed",
            filename=filename,
            bank_format=bank_format.id,
            row_count=len(rows),
        )

        return ParsedStatement(format_id=bank_format.id, headers=headers, rows=rows)

    # -------------------------------------------------------------------------
    # Readers
    # -------------------------------------------------------------------------

    def _read_spreadsheet(self, data: bytes, engine: str) -> pd.DataFrame:
        """First worksheet, every cell as text."""
        try:
            frame = pd.read_excel(
                io.BytesIO(data),
                sheet_name=0,
                engine=engine,
                dtype=str,
            )
        except (ValueError, KeyError, OSError, zipfile.BadZipFile, xlrd.XLRDError) as e:
            raise UnreadableFileError(f"Could not read spreadsheet: {e}")

        return frame.fillna("")

    def _read_delimited(self, data: bytes) -> pd.DataFrame:
        """Delimited text; UTF-8 with or without a BOM."""
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise UnreadableFileError("Statement file is not UTF-8 text")

        if not text.strip():
            raise EmptyFileError()

        try:
            frame = pd.read_csv(
                io.StringIO(text),
                sep=None,
                engine="python",
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
            )
        except pd.errors.EmptyDataError:
            raise EmptyFileError()
        except (pd.errors.ParserError, csv.Error, ValueError) as e:
            raise UnreadableFileError(f"Could not read delimited file: {e}")

        return frame.fillna("")

    @staticmethod
    def _records(frame: pd.DataFrame, headers: list[str]) -> list[dict[str, str]]:
        """Data rows as header -> cell text, dropping rows with no content."""
        records = []
        for values in frame.itertuples(index=False, name=None):
            cells = ["" if value is None else str(value).strip() for value in values]
            if not any(cells):
                continue
            records.append(dict(zip(headers, cells)))
        return records


_default_parser = StatementFileParser()


def parse(data: bytes, filename: str, password: Optional[str] = None) -> ParsedStatement:
    """Parse with the default bank format registry."""
    return _default_parser.parse(data, filename, password)
