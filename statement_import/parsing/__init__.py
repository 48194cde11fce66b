"""Statement file parsing."""

from statement_import.parsing.file_parser import (
    PDF_FORMAT_ID,
    ParsedStatement,
    StatementFileParser,
    parse,
)
from statement_import.parsing.pdf_reader import extract_pdf_text
from statement_import.parsing.pdf_rows import (
    GeminiRowExtractor,
    LineRowExtractor,
    RowExtractor,
    parse_extraction_response,
)

__all__ = [
    "GeminiRowExtractor",
    "LineRowExtractor",
    "PDF_FORMAT_ID",
    "ParsedStatement",
    "RowExtractor",
    "StatementFileParser",
    "extract_pdf_text",
    "parse",
    "parse_extraction_response",
]
