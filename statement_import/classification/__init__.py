"""Row classification: deterministic rules first, AI fallback second."""

from statement_import.classification.ai import (
    AIClassificationQueue,
    AIRowClassification,
    CannedClassificationProvider,
    ClassificationProvider,
    GeminiClassificationProvider,
    merge_classification,
)
from statement_import.classification.rules import (
    CATEGORY_RULES,
    PAYMENT_RULES,
    CategoryRule,
    PaymentRule,
    RuleClassifier,
    fingerprint,
)

__all__ = [
    "AIClassificationQueue",
    "AIRowClassification",
    "CATEGORY_RULES",
    "CannedClassificationProvider",
    "CategoryRule",
    "ClassificationProvider",
    "GeminiClassificationProvider",
    "PAYMENT_RULES",
    "PaymentRule",
    "RuleClassifier",
    "fingerprint",
    "merge_classification",
]
