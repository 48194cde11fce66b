"""
Bank Format Registry

Maps a statement's header row to the layout that knows how to read it.
"""

from statement_import.formats.banks import (
    AXIS,
    DEFAULT_REGISTRY,
    GENERIC,
    HDFC,
    ICICI,
    KOTAK,
    SBI,
    detect_bank_format,
)
from statement_import.formats.registry import BankFormat, FormatRegistry, normalize_headers
from statement_import.formats.values import parse_amount, parse_statement_date

__all__ = [
    "AXIS",
    "BankFormat",
    "DEFAULT_REGISTRY",
    "FormatRegistry",
    "GENERIC",
    "HDFC",
    "ICICI",
    "KOTAK",
    "SBI",
    "detect_bank_format",
    "normalize_headers",
    "parse_amount",
    "parse_statement_date",
]
