"""
Rule Classifier

Deterministic first pass over every imported row. Assigns category,
platform, payment method and a recurring flag from the narration, each
with a confidence score.

DESIGN DECISION: Rules are ordered data, not code. The first category
bucket with a matching keyword wins; the first payment rule with a
matching keyword wins. Rows the rules cannot settle keep None fields
with zero confidence, which is what sends them to the AI fallback.

The classifier keeps no state between calls. Recurring detection counts
fingerprints within the batch it was given and nothing else.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from statement_import.models.statement import (
    ClassifiedBy,
    ClassifiedRow,
    ConfidenceScores,
    RawImportRow,
)


logger = structlog.get_logger()

AMOUNT_CONFIDENCE = 1.0
DATETIME_CONFIDENCE = 0.95
TYPE_CONFIDENCE = 1.0
PAYMENT_CONFIDENCE = 1.0

FINGERPRINT_MIN_LENGTH = 4
RECURRING_MIN_COUNT = 2


def keyword_pattern(keyword: str) -> re.Pattern:
    """
    Compile a keyword matcher.

    Alphanumeric keywords must start at a word boundary so short keys
    like "pg" or "ola" don't fire inside "upgrade" or "cola". Symbol
    keywords such as "@" match anywhere.
    """
    escaped = re.escape(keyword.lower())
    if keyword[:1].isalnum():
        return re.compile(r"(?<![a-z0-9])" + escaped)
    return re.compile(escaped)


@dataclass(frozen=True)
class CategoryRule:
    """A keyword bucket mapping to one category."""

    category: str
    confidence: float
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(
            self, "patterns", tuple(keyword_pattern(kw) for kw in self.keywords)
        )

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


@dataclass(frozen=True)
class PaymentRule:
    """A keyword set mapping to one payment method."""

    method: str
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(
            self, "patterns", tuple(keyword_pattern(kw) for kw in self.keywords)
        )

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


# Order matters: first match wins
CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule("Food", 0.90, (
        "zomato", "swiggy", "uber eats", "blinkit", "zepto", "dunzo",
        "bigbasket", "restaurant", "food", "cafe", "dhaba",
    )),
    CategoryRule("Entertainment", 0.92, (
        "netflix", "spotify", "hotstar", "prime video", "youtube premium",
        "disney", "subscription", "ott",
    )),
    CategoryRule("Transport", 0.90, (
        "uber", "ola", "rapido", "metro", "bus", "railway", "irctc",
        "petrol", "diesel", "fuel",
    )),
    CategoryRule("Shopping", 0.88, (
        "amazon", "flipkart", "myntra", "meesho", "ajio", "nykaa",
        "shopping", "mall",
    )),
    CategoryRule("Travel", 0.88, (
        "makemytrip", "goibibo", "yatra", "oyo", "hotel", "airbnb",
        "flight", "airline",
    )),
    CategoryRule("Health", 0.85, (
        "apollo", "hospital", "pharmacy", "medical", "doctor", "clinic",
        "health", "medplus", "netmeds",
    )),
    CategoryRule("Utilities", 0.90, (
        "electricity", "eb bill", "bescom", "msedcl", "tata power", "power",
        "water bill", "gas bill", "bsnl", "airtel", "jio", "wifi",
        "broadband", "internet",
    )),
    CategoryRule("Rent", 0.92, (
        "rent", "rental", "flat", "apartment", "house rent", "pg",
    )),
    CategoryRule("Salary", 0.95, (
        "salary", "payroll", "pay credit", "stipend",
    )),
    CategoryRule("EMI", 0.90, (
        "emi", "loan", "installment", "home loan", "car loan",
    )),
    CategoryRule("Insurance", 0.88, (
        "insurance", "lic", "premium", "policy",
    )),
    CategoryRule("Education", 0.87, (
        "school", "college", "university", "tuition", "course", "udemy",
        "coursera",
    )),
)

PAYMENT_RULES: tuple[PaymentRule, ...] = (
    PaymentRule("UPI", ("upi", "@")),
    PaymentRule("Bank Transfer", ("neft", "rtgs", "imps", "bank transfer")),
    PaymentRule("Cash", ("atm", "cash withdrawal")),
    PaymentRule("Credit Card", ("credit card", "cc payment", "creditcard")),
    PaymentRule("Debit Card", ("debit card",)),
)


def fingerprint(narration: str) -> Optional[str]:
    """
    Coarse merchant key: first word of at least four characters.

    "UPI/ZOMATO/ORDER 450" -> "zomato"
    """
    normalized = re.sub(r"[^a-z0-9]", " ", narration.lower())
    for word in normalized.split():
        if len(word) >= FINGERPRINT_MIN_LENGTH:
            return word
    return None


def platform_name(narration: str) -> Optional[str]:
    """Capitalized first narration token, if it has at least two characters."""
    first = re.split(r"[\s/|]", narration.strip(), maxsplit=1)[0]
    if len(first) < 2:
        return None
    return first[:1].upper() + first[1:].lower()


class RuleClassifier:
    """
    Keyword classifier for imported statement rows.

    Usage:
        classifier = RuleClassifier()
        classified = classifier.classify(rows)
    """

    def __init__(
        self,
        category_rules: Iterable[CategoryRule] = CATEGORY_RULES,
        payment_rules: Iterable[PaymentRule] = PAYMENT_RULES,
    ):
        self._category_rules = tuple(category_rules)
        self._payment_rules = tuple(payment_rules)

    def classify(self, rows: list[RawImportRow]) -> list[ClassifiedRow]:
        """Classify a batch. Output has the same length and order as input."""
        fingerprints = [fingerprint(row.narration) for row in rows]
        counts = Counter(fp for fp in fingerprints if fp)

        classified = [
            self._classify_row(row, fp is not None and counts[fp] >= RECURRING_MIN_COUNT)
            for row, fp in zip(rows, fingerprints)
        ]

        logger.debug(
            "rule_classification_batch",
            row_count=len(rows),
            categorized=sum(1 for row in classified if row.category),
            recurring=sum(1 for row in classified if row.recurring_flag),
        )
        return classified

    def match_category(self, narration: str) -> tuple[Optional[str], float]:
        text = narration.lower()
        for rule in self._category_rules:
            if rule.matches(text):
                return rule.category, rule.confidence
        return None, 0.0

    def match_payment_method(self, narration: str) -> tuple[Optional[str], float]:
        text = narration.lower()
        for rule in self._payment_rules:
            if rule.matches(text):
                return rule.method, PAYMENT_CONFIDENCE
        return None, 0.0

    def _classify_row(self, row: RawImportRow, recurring: bool) -> ClassifiedRow:
        category, category_confidence = self.match_category(row.narration)
        payment_method, payment_confidence = self.match_payment_method(row.narration)

        # Platform only counts when the category corroborates it
        platform = platform_name(row.narration) if category else None
        platform_confidence = category_confidence if platform else 0.0

        confidence = ConfidenceScores(
            amount=AMOUNT_CONFIDENCE if row.amount is not None else 0.0,
            datetime=DATETIME_CONFIDENCE if row.datetime is not None else 0.0,
            type=TYPE_CONFIDENCE if row.type is not None else 0.0,
            category=category_confidence,
            platform=platform_confidence,
            payment_method=payment_confidence,
        )

        return ClassifiedRow(
            **row.model_dump(include=set(RawImportRow.model_fields)),
            category=category,
            platform=platform,
            payment_method=payment_method,
            recurring_flag=recurring,
            confidence=confidence,
            classified_by=ClassifiedBy.RULE,
        )
