"""
Known bank statement layouts.

Each layout is described by the header names it requires. Headers are
compared trimmed and lower-cased; cell lookups go through the same
normalization so "Withdrawal Amt. " and "withdrawal amt." are one column.
"""

from decimal import Decimal
from typing import Optional, Sequence

from statement_import.formats.registry import BankFormat, FormatRegistry, normalize_headers
from statement_import.formats.values import parse_amount, parse_statement_date
from statement_import.models.statement import RawImportRow, TransactionType


# =============================================================================
# Helpers
# =============================================================================

def _requires(*names: str):
    """Build a predicate that needs every listed header."""
    def detect(headers: Sequence[str]) -> bool:
        present = set(normalize_headers(headers))
        return all(name in present for name in names)
    return detect


def _cell(record: dict[str, str], *names: str) -> str:
    """First non-empty cell among the given (normalized) header names."""
    by_name = {str(k).strip().lower(): v for k, v in record.items()}
    for name in names:
        value = by_name.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _debit_credit(debit_text: str, credit_text: str) -> tuple[Optional[Decimal], Optional[TransactionType]]:
    """
    Positive debit is an expense, else positive credit is an inflow.

    A row with neither (zero, blank or garbage in both columns) has no
    amount and no type.
    """
    debit = parse_amount(debit_text)
    credit = parse_amount(credit_text)

    if debit is not None and debit > 0:
        return debit, TransactionType.EXPENSE
    if credit is not None and credit > 0:
        return credit, TransactionType.INFLOW
    return None, None


def _debit_credit_mapper(date_columns, narration_column, debit_column, credit_column):
    def map_row(record: dict[str, str]) -> RawImportRow:
        amount, txn_type = _debit_credit(
            _cell(record, debit_column),
            _cell(record, credit_column),
        )
        return RawImportRow(
            raw_data=dict(record),
            amount=amount,
            datetime=parse_statement_date(_cell(record, *date_columns)),
            type=txn_type,
            narration=_cell(record, narration_column),
        )
    return map_row


def _generic_row(record: dict[str, str]) -> RawImportRow:
    """Passthrough: only the narration can be recovered."""
    narration = " ".join(
        str(value).strip() for value in record.values()
        if value is not None and str(value).strip()
    )
    return RawImportRow(raw_data=dict(record), narration=narration)


# =============================================================================
# Formats (most specific first)
# =============================================================================

HDFC = BankFormat(
    id="HDFC",
    detect=_requires("narration", "withdrawal amt.", "deposit amt."),
    map_row=_debit_credit_mapper(
        ("date", "value dat"), "narration", "withdrawal amt.", "deposit amt."
    ),
)

ICICI = BankFormat(
    id="ICICI",
    detect=_requires("transaction date", "description", "debit", "credit"),
    map_row=_debit_credit_mapper(
        ("transaction date", "value date"), "description", "debit", "credit"
    ),
)

AXIS = BankFormat(
    id="AXIS",
    detect=_requires("tran date", "particulars"),
    map_row=_debit_credit_mapper(("tran date",), "particulars", "debit", "credit"),
)

SBI = BankFormat(
    id="SBI",
    detect=_requires("txn date", "description", "debit", "credit"),
    map_row=_debit_credit_mapper(
        ("txn date", "value date"), "description", "debit", "credit"
    ),
)

KOTAK = BankFormat(
    id="KOTAK",
    detect=_requires("transaction date", "debit amount", "credit amount"),
    map_row=_debit_credit_mapper(
        ("transaction date",), "description", "debit amount", "credit amount"
    ),
)

GENERIC = BankFormat(
    id="GENERIC",
    detect=lambda headers: True,
    map_row=_generic_row,
    catch_all=True,
)


DEFAULT_REGISTRY = FormatRegistry([HDFC, ICICI, AXIS, SBI, KOTAK, GENERIC])


def detect_bank_format(headers: Sequence[str]) -> BankFormat:
    """Pick the layout for a header row from the default registry."""
    return DEFAULT_REGISTRY.detect(headers)
