"""
AI Classification Fallback

Rows the rule classifier could not settle are sent, in batches, to an
LLM that suggests category, platform, payment method and tags.

CRITICAL BOUNDARIES:
- The AI only ever sees rows that FAILED the auto-accept gate.
- The AI never touches amount or datetime. It may fill a missing type.
- AI confidence is capped below the rule floor, so an AI-classified row
  always needs a human to confirm it.
- A batch that keeps failing fails the whole import. Rows are never
  dropped silently.

The queue reports each row as soon as its batch returns, through an
async on_result(index, row) callback, so the orchestrator can persist
progress while other batches are still in flight.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import google.generativeai as genai
import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_incrementing

from statement_import.config import GeminiSettings, ImportSettings
from statement_import.errors import AIClassificationError
from statement_import.models.statement import (
    ClassifiedBy,
    ClassifiedRow,
    TransactionType,
)


logger = structlog.get_logger()

ResultCallback = Callable[[int, ClassifiedRow], Awaitable[None]]

CATEGORIES = (
    "Food", "Transport", "Shopping", "Entertainment", "Health", "Utilities",
    "Rent", "Salary", "EMI", "Insurance", "Education", "Other",
)
PAYMENT_METHODS = ("UPI", "Credit Card", "Debit Card", "Bank Transfer", "Cash")


class AIRowClassification(BaseModel):
    """
    The provider's answer for one row of a batch.

    `index` is the row's position inside the batch it was sent with.
    """

    index: int = Field(ge=0)
    category: Optional[str] = None
    platform: Optional[str] = None
    payment_method: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    type: Optional[TransactionType] = None
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)

    @field_validator("category", "platform", "payment_method", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        if not text or text.lower() in ("null", "none", "unknown"):
            return None
        return text

    @field_validator("type", mode="before")
    @classmethod
    def unknown_type_to_none(cls, v):
        if isinstance(v, str) and v.strip().upper() in TransactionType.__members__:
            return v.strip().upper()
        return None

    @field_validator("tags", mode="before")
    @classmethod
    def tags_list(cls, v):
        if not v:
            return []
        if isinstance(v, str):
            return [v]
        return [str(tag) for tag in v if str(tag).strip()]


# =============================================================================
# Providers
# =============================================================================

class ClassificationProvider(ABC):
    """
    The external classification call.

    Implementations receive one batch and answer with zero or more
    AIRowClassification entries. A row without an entry is treated as
    unclassified; raising fails (and retries) the whole batch.
    """

    name = "provider"

    @abstractmethod
    async def classify_batch(self, rows: list[ClassifiedRow]) -> list[AIRowClassification]:
        pass


class GeminiClassificationProvider(ClassificationProvider):
    """Classifies statement narrations with Gemini."""

    name = "gemini"

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or GeminiSettings()
        self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            }
        )

    def build_prompt(self, rows: list[ClassifiedRow]) -> str:
        transactions = [
            {
                "index": i,
                "narration": row.narration,
                "amount": str(row.amount) if row.amount is not None else None,
                "type": row.type.value if row.type else None,
            }
            for i, row in enumerate(rows)
        ]

        return f"""You are a financial transaction classifier for an Indian household.

Given a JSON array of bank statement transactions, return a JSON array with
one object per transaction, keeping its "index":

{{"index": 0, "category": "...", "platform": "...", "payment_method": "...", "tags": [], "type": "EXPENSE", "confidence": 0.7}}

- category: one of {', '.join(CATEGORIES)}, or null
- platform: merchant name, normalized (e.g. "Swiggy", "Netflix"), or null
- payment_method: one of {', '.join(PAYMENT_METHODS)}, or null
- type: "EXPENSE" (debit) or "INFLOW" (credit)
- confidence: how sure you are, between 0 and 1

Be conservative - use null rather than guessing.

Transactions:
{json.dumps(transactions, ensure_ascii=False)}

Respond with ONLY the JSON array, no markdown, no explanation."""

    async def classify_batch(self, rows: list[ClassifiedRow]) -> list[AIRowClassification]:
        response = await self._model.generate_content_async(self.build_prompt(rows))
        return parse_classification_response(response.text, len(rows))


class CannedClassificationProvider(ClassificationProvider):
    """
    Deterministic answers without any network call.

    Used for demos and end-to-end runs (IMPORT_AI_MOCK=true).
    """

    name = "canned"

    def __init__(
        self,
        category: str = "Other",
        payment_method: str = "UPI",
        confidence: float = 0.75,
    ):
        self._category = category
        self._payment_method = payment_method
        self._confidence = confidence

    async def classify_batch(self, rows: list[ClassifiedRow]) -> list[AIRowClassification]:
        return [
            AIRowClassification(
                index=i,
                category=self._category,
                payment_method=self._payment_method,
                confidence=self._confidence,
            )
            for i in range(len(rows))
        ]


def parse_classification_response(text: str, batch_size: int) -> list[AIRowClassification]:
    """
    Extract the JSON array from a model response.

    Entries that fail validation are dropped (their rows come back
    unclassified). A response with no JSON array at all raises ValueError,
    which fails the batch.
    """
    text = text.strip()
    start = text.find("[")
    end = text.rfind("]") + 1
    if start < 0 or end <= start:
        raise ValueError("No JSON array in classification response")

    data = json.loads(text[start:end])
    if not isinstance(data, list):
        raise ValueError("Classification response is not a list")

    answers = []
    for position, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        item = {"index": position, **item}
        try:
            answer = AIRowClassification.model_validate(item)
        except ValidationError as e:
            logger.warning(
                "ai_answer_invalid",
                position=position,
                errors=e.error_count(),
            )
            continue
        if answer.index < batch_size:
            answers.append(answer)
    return answers


# =============================================================================
# Queue
# =============================================================================

def merge_classification(
    row: ClassifiedRow,
    answer: Optional[AIRowClassification],
    ceiling: float,
) -> ClassifiedRow:
    """
    Overlay an AI answer on a rule-classified row.

    Classification fields are overwritten (with None when the provider had
    no answer); structural confidences are kept.
    """
    if answer is None:
        return row.model_copy(update={
            "category": None,
            "platform": None,
            "payment_method": None,
            "tags": [],
            "confidence": row.confidence.model_copy(update={
                "category": 0.0,
                "platform": 0.0,
                "payment_method": 0.0,
            }),
            "classified_by": ClassifiedBy.AI,
        })

    capped = min(answer.confidence, ceiling)

    def score(value) -> float:
        return capped if value else 0.0

    confidence_update = {
        "category": score(answer.category),
        "platform": score(answer.platform),
        "payment_method": score(answer.payment_method),
    }

    update = {
        "category": answer.category,
        "platform": answer.platform,
        "payment_method": answer.payment_method,
        "tags": answer.tags,
        "classified_by": ClassifiedBy.AI,
    }

    if row.type is None and answer.type is not None:
        update["type"] = answer.type
        confidence_update["type"] = capped

    update["confidence"] = row.confidence.model_copy(update=confidence_update)
    return row.model_copy(update=update)


class AIClassificationQueue:
    """
    Batched, bounded-concurrency front of a ClassificationProvider.

    Usage:
        queue = AIClassificationQueue(CannedClassificationProvider())
        rows = await queue.enqueue(rows, on_result=persist_row)
    """

    def __init__(
        self,
        provider: ClassificationProvider,
        batch_size: int = 25,
        concurrency: int = 2,
        retries: int = 2,
        backoff_seconds: float = 1.0,
        timeout_seconds: float = 20.0,
        confidence_ceiling: float = 0.75,
    ):
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be at least 1")
        self._provider = provider
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._retries = retries
        self._backoff = backoff_seconds
        self._timeout = timeout_seconds
        self._ceiling = confidence_ceiling

    @classmethod
    def from_settings(
        cls,
        provider: ClassificationProvider,
        settings: ImportSettings,
    ) -> "AIClassificationQueue":
        return cls(
            provider,
            batch_size=settings.ai_batch_size,
            concurrency=settings.ai_concurrency,
            retries=settings.ai_retries,
            backoff_seconds=settings.ai_backoff_seconds,
            timeout_seconds=settings.ai_timeout_seconds,
            confidence_ceiling=settings.ai_confidence_ceiling,
        )

    @property
    def provider(self) -> ClassificationProvider:
        return self._provider

    async def enqueue(
        self,
        rows: list[ClassifiedRow],
        on_result: Optional[ResultCallback] = None,
    ) -> list[ClassifiedRow]:
        """
        Classify rows. Output has the same length and order as input.

        Raises:
            AIClassificationError: A batch failed after all retries
        """
        if not rows:
            return []

        results: list[Optional[ClassifiedRow]] = [None] * len(rows)
        pending: asyncio.Queue = asyncio.Queue()
        for batch_index, start in enumerate(range(0, len(rows), self._batch_size)):
            pending.put_nowait((batch_index, start))

        async def worker():
            while True:
                try:
                    batch_index, start = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                batch = rows[start:start + self._batch_size]
                classified = await self._classify_batch(batch, batch_index)
                for offset, row in enumerate(classified):
                    results[start + offset] = row
                    if on_result is not None:
                        await on_result(start + offset, row)

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self._concurrency, pending.qsize()))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        return [row for row in results if row is not None]

    async def _classify_batch(
        self,
        batch: list[ClassifiedRow],
        batch_index: int,
    ) -> list[ClassifiedRow]:
        try:
            answers = await self._call_with_retry(batch, batch_index)
        except Exception as e:
            logger.error(
                "ai_batch_failed",
                provider=self._provider.name,
                batch_index=batch_index,
                batch_size=len(batch),
                error=str(e) or type(e).__name__,
            )
            raise AIClassificationError(
                f"AI classification failed for batch {batch_index}: {str(e) or type(e).__name__}",
                batch_index=batch_index,
            ) from e

        by_index = {answer.index: answer for answer in answers}
        return [
            merge_classification(row, by_index.get(i), self._ceiling)
            for i, row in enumerate(batch)
        ]

    async def _call_with_retry(
        self,
        batch: list[ClassifiedRow],
        batch_index: int,
    ) -> list[AIRowClassification]:
        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "ai_batch_retry",
                batch_index=batch_index,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            )

        answers: list[AIRowClassification] = []
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retries + 1),
            wait=wait_incrementing(start=self._backoff, increment=self._backoff),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                answers = await asyncio.wait_for(
                    self._provider.classify_batch(batch),
                    timeout=self._timeout,
                )
        return answers
