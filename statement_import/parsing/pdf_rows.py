"""
Transaction rows from PDF statement text.

PDF text has no columns to map, so rows are extracted from it:

- GeminiRowExtractor asks the LLM for a JSON array of transactions
- LineRowExtractor reads "date ... amount" lines without any network call
  (used offline, with IMPORT_AI_MOCK=true)

Either way the result is plain RawImportRows. The rule classifier and the
auto-accept gate treat them like rows from any other statement.
"""

import json
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import google.generativeai as genai
import structlog
from pydantic import BaseModel, ValidationError, field_validator
from tenacity import retry, stop_after_attempt, wait_exponential

from statement_import.config import GeminiSettings
from statement_import.formats.values import parse_amount, parse_statement_date
from statement_import.models.statement import RawImportRow, TransactionType


logger = structlog.get_logger()


class ExtractedTransaction(BaseModel):
    """One transaction as the extractor reports it."""

    date: Optional[str] = None
    amount: Optional[Decimal] = None
    type: Optional[TransactionType] = None
    narration: str = ""

    @field_validator("amount", mode="before")
    @classmethod
    def lenient_amount(cls, v):
        if v is None or isinstance(v, (int, float, Decimal)):
            return v
        return parse_amount(str(v))

    @field_validator("type", mode="before")
    @classmethod
    def known_type(cls, v):
        if isinstance(v, str) and v.strip().upper() in TransactionType.__members__:
            return v.strip().upper()
        return None

    @field_validator("narration", mode="before")
    @classmethod
    def narration_text(cls, v):
        return "" if v is None else str(v).strip()

    def to_raw_row(self) -> RawImportRow:
        amount = abs(self.amount)
        return RawImportRow(
            raw_data={
                "date": self.date or "",
                "narration": self.narration,
                "amount": str(amount),
                "type": self.type.value if self.type else "",
            },
            amount=amount,
            datetime=parse_statement_date(self.date),
            type=self.type,
            narration=self.narration,
        )


def parse_extraction_response(text: str) -> list[RawImportRow]:
    """
    Turn the model's JSON answer into rows.

    Entries without a date or a non-zero amount are dropped, as are
    entries that fail validation. A response with no JSON array raises
    ValueError.
    """
    text = text.strip()
    start = text.find("[")
    end = text.rfind("]") + 1
    if start < 0 or end <= start:
        raise ValueError("No JSON array in extraction response")

    data = json.loads(text[start:end])
    if not isinstance(data, list):
        raise ValueError("Extraction response is not a list")

    rows = []
    for position, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        try:
            transaction = ExtractedTransaction.model_validate(item)
        except ValidationError as e:
            logger.warning("extracted_row_invalid", position=position, errors=e.error_count())
            continue
        if not transaction.date or not transaction.amount:
            continue
        rows.append(transaction.to_raw_row())
    return rows


class RowExtractor(ABC):
    """Pulls transaction rows out of statement text."""

    name = "extractor"

    @abstractmethod
    async def extract_rows(self, text: str) -> list[RawImportRow]:
        pass


class GeminiRowExtractor(RowExtractor):
    """Extracts statement transactions with Gemini."""

    name = "gemini"

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or GeminiSettings()
        self._configure_genai()

    def _configure_genai(self):
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": 0.0,
                "max_output_tokens": 8192,
            }
        )

    def build_prompt(self, text: str) -> str:
        return f"""You are a bank statement parser. Extract every financial transaction
from the raw text of a bank statement PDF below.

Return a JSON array where each element has:
- "date": the transaction date in "YYYY-MM-DD" format
- "amount": positive number, no sign
- "type": "EXPENSE" (debit / withdrawal) or "INFLOW" (credit / deposit)
- "narration": the transaction description exactly as shown

Skip opening and closing balances, statement headers, account details and
any line without a clear date and amount.

Statement text:
{text}

Respond with ONLY the JSON array, no markdown, no explanation."""

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def extract_rows(self, text: str) -> list[RawImportRow]:
        response = await self._model.generate_content_async(self.build_prompt(text))
        return parse_extraction_response(response.text)


_STATEMENT_LINE = re.compile(
    r"^(?P<date>\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{1,2}[ \-][A-Za-z]{3}[ \-]\d{2,4})\s+(?P<rest>.+)$"
)
_AMOUNT_TOKEN = re.compile(r"(?P<amount>\d[\d,]*\.\d{2})(?:\s*(?P<marker>cr|dr)\b)?", re.IGNORECASE)


class LineRowExtractor(RowExtractor):
    """
    Offline extractor for line-per-transaction statements.

    A line that starts with a date and holds at least one amount is a
    transaction. The first amount is the transaction amount (later ones
    are usually the running balance); a Cr/Dr marker on it sets the type.
    """

    name = "lines"

    async def extract_rows(self, text: str) -> list[RawImportRow]:
        rows = []
        for line in text.splitlines():
            match = _STATEMENT_LINE.match(line.strip())
            if not match:
                continue
            rest = match.group("rest")
            amount_match = _AMOUNT_TOKEN.search(rest)
            if not amount_match:
                continue

            marker = (amount_match.group("marker") or "").lower()
            txn_type = {"cr": "INFLOW", "dr": "EXPENSE"}.get(marker)
            transaction = ExtractedTransaction(
                date=match.group("date"),
                amount=amount_match.group("amount"),
                type=txn_type,
                narration=rest[:amount_match.start()],
            )
            if transaction.amount:
                rows.append(transaction.to_raw_row())
        return rows
