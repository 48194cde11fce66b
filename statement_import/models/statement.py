"""
Core Data Models for Statement Import

These models define the strict schemas for everything flowing through
the import pipeline:

    RawImportRow  ->  ClassifiedRow  ->  ImportRow  ->  LedgerEntry
                                          (owned by an ImportSession)

DESIGN DECISION: Values that could not be recovered from the statement
are None, never a guessed default. A None structural field scores zero
confidence, which is what routes the row to review.
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of money movement."""
    EXPENSE = "EXPENSE"
    INFLOW = "INFLOW"


class ClassifiedBy(str, Enum):
    """
    Who produced the current classification of a row.

    RULE rows were never sent to the AI fallback.
    MANUAL marks a row whose classification the user overrode on confirm.
    """
    RULE = "RULE"
    AI = "AI"
    MANUAL = "MANUAL"


class SessionStatus(str, Enum):
    """
    Import session lifecycle.

    PARSING -> REVIEWING -> COMPLETE, with FAILED reachable from PARSING.
    FAILED is terminal.
    """
    PARSING = "PARSING"
    REVIEWING = "REVIEWING"
    FAILED = "FAILED"
    COMPLETE = "COMPLETE"


class RowStatus(str, Enum):
    """
    Import row lifecycle.

    CRITICAL: Rows leave PENDING only through a user or bulk action.
    """
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SKIPPED = "SKIPPED"


class RowAction(str, Enum):
    """Action a reviewer can take on one row."""
    CONFIRM = "CONFIRM"
    SKIP = "SKIP"


class ConfirmScope(str, Enum):
    """Which pending rows a bulk confirm touches."""
    AUTO = "AUTO"  # rule-classified rows only
    ALL = "ALL"


class EntrySource(str, Enum):
    """Provenance tag written on ledger entries."""
    MANUAL = "MANUAL"
    AI = "AI"
    IMPORT = "IMPORT"


# Order matters: this is the order the auto-accept gate checks
CONFIDENCE_FIELDS = (
    "amount",
    "datetime",
    "type",
    "category",
    "platform",
    "payment_method",
)

# Fields whose override means the user re-classified the row
CLASSIFICATION_FIELDS = ("category", "platform", "payment_method", "tags")


# =============================================================================
# ROW MODELS
# =============================================================================

class ConfidenceScores(BaseModel):
    """
    Per-field confidence in [0, 1].

    Absence of a value is confidence 0, so every field defaults to 0.
    """

    amount: float = Field(default=0.0, ge=0.0, le=1.0)
    datetime: float = Field(default=0.0, ge=0.0, le=1.0)
    type: float = Field(default=0.0, ge=0.0, le=1.0)
    category: float = Field(default=0.0, ge=0.0, le=1.0)
    platform: float = Field(default=0.0, ge=0.0, le=1.0)
    payment_method: float = Field(default=0.0, ge=0.0, le=1.0)

    def meets(self, threshold: float) -> bool:
        """True only if EVERY field reaches the threshold."""
        return all(getattr(self, name) >= threshold for name in CONFIDENCE_FIELDS)

    def lowest_field(self) -> str:
        """Name of the least trusted field (for logging why a row needs review)."""
        return min(CONFIDENCE_FIELDS, key=lambda name: getattr(self, name))


class RawImportRow(BaseModel):
    """
    One statement record after bank-format mapping.

    raw_data keeps the original cells so the ledger entry can carry them
    through untouched.
    """

    raw_data: dict[str, str] = Field(default_factory=dict)
    amount: Optional[Decimal] = Field(
        default=None,
        description="Absolute transaction amount; None if unparseable"
    )
    datetime: Optional[str] = Field(
        default=None,
        description="ISO local timestamp (YYYY-MM-DDTHH:MM:SS)"
    )
    type: Optional[TransactionType] = None
    narration: str = ""


class ClassifiedRow(RawImportRow):
    """A raw row plus classification and per-field confidence."""

    category: Optional[str] = None
    platform: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    recurring_flag: bool = False
    confidence: ConfidenceScores = Field(default_factory=ConfidenceScores)
    classified_by: ClassifiedBy = ClassifiedBy.RULE


class ImportRow(ClassifiedRow):
    """
    A persisted candidate transaction.

    posted_expense_id is written once, on the first confirmation, and is
    the anchor that makes materialization happen exactly once.
    """

    id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    position: int = Field(
        ...,
        ge=0,
        description="Index in rule-classification order"
    )
    status: RowStatus = RowStatus.PENDING
    posted_expense_id: Optional[UUID] = None
    created_at: dt.datetime = Field(default_factory=dt.datetime.utcnow)


# =============================================================================
# SESSION MODEL
# =============================================================================

class ImportSession(BaseModel):
    """
    One statement-upload-to-review unit of work.

    Owned exclusively by the orchestrator. Every write bumps `version`;
    writers pass the version they read so a stale write is refused.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    status: SessionStatus = SessionStatus.PARSING
    source_file: str
    bank_format: Optional[str] = None

    row_count: int = Field(default=0, ge=0)
    auto_count: int = Field(default=0, ge=0)
    review_count: int = Field(default=0, ge=0)
    progress_done: int = Field(default=0, ge=0)
    progress_total: int = Field(default=0, ge=0)

    version: int = Field(default=0, ge=0)
    created_at: dt.datetime = Field(default_factory=dt.datetime.utcnow)
    updated_at: dt.datetime = Field(default_factory=dt.datetime.utcnow)
    expires_at: Optional[dt.datetime] = Field(
        default=None,
        description="Deadline for leaving PARSING before the watchdog fails it"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.FAILED, SessionStatus.COMPLETE)


# =============================================================================
# LEDGER MODEL (collaborator record)
# =============================================================================

class LedgerEntry(BaseModel):
    """
    An expense/inflow entry created by materializing a confirmed row.

    source_row_id is unique across the ledger.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    amount: Optional[Decimal] = None
    datetime: Optional[str] = None
    type: Optional[TransactionType] = None
    category: str = "Other"
    platform: str = "Other"
    payment_method: str = "Other"
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    source: EntrySource = EntrySource.IMPORT
    raw_text: str = ""
    source_row_id: UUID
    created_at: dt.datetime = Field(default_factory=dt.datetime.utcnow)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class StatementUpload(BaseModel):
    """An uploaded statement file, as handed over by the HTTP layer."""

    filename: Optional[str] = None
    content_type: Optional[str] = None
    content: Optional[bytes] = None
    password: Optional[str] = Field(default=None, repr=False)

    @property
    def size_bytes(self) -> int:
        return len(self.content) if self.content else 0

    @property
    def extension(self) -> str:
        if not self.filename or "." not in self.filename:
            return ""
        return self.filename.rsplit(".", 1)[-1].strip().lower()


class RowFieldOverrides(BaseModel):
    """
    User corrections applied on confirm.

    User corrections take precedence over both rule and AI classification.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    amount: Optional[Decimal] = Field(default=None, gt=0)
    datetime: Optional[str] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    platform: Optional[str] = Field(default=None, min_length=1, max_length=100)
    payment_method: Optional[str] = Field(default=None, min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[list[str]] = None

    @field_validator('datetime')
    @classmethod
    def normalize_datetime(cls, v: Optional[str]) -> Optional[str]:
        """Accept any ISO date/datetime and store it as ISO local time."""
        if v is None:
            return v
        try:
            parsed = dt.datetime.fromisoformat(v)
        except ValueError:
            raise ValueError(f"datetime must be ISO 8601, got {v!r}")
        return parsed.replace(tzinfo=None).isoformat(timespec="seconds")

    def provided(self) -> dict:
        """Only the fields the user actually set."""
        return self.model_dump(exclude_none=True)

    @property
    def touches_classification(self) -> bool:
        return any(
            getattr(self, name) is not None for name in CLASSIFICATION_FIELDS
        )


class ConfirmRowRequest(BaseModel):
    """Body of a row action."""
    model_config = ConfigDict(extra="forbid")

    action: RowAction
    fields: Optional[RowFieldOverrides] = None


class ConfirmAllRequest(BaseModel):
    """Body of a bulk confirm."""
    model_config = ConfigDict(extra="forbid")

    scope: ConfirmScope
