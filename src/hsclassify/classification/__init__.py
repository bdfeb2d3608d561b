"""GRI classification domain package.

Rule engine, candidate resolution, clarification loop and the hash-chained
decision trail behind :class:`ClassificationService`.
"""
from .config import ClassificationSettings
from .errors import (
    AuditIntegrityViolation,
    CheckDigitMismatch,
    ClassificationError,
    ClassificationNotFound,
    RuleOrderViolation,
    ValidationError,
)
from .knowledge_base import JsonKnowledgeBase, TariffKnowledgeBase, compute_check_digit, get_default_knowledge_base
from .models import (
    AuditEntry,
    Candidate,
    Classification,
    ClassificationProgress,
    ClassificationStatus,
    ClarificationQuestion,
    Decision,
    DecisionKind,
    GRIStep,
    ProductFeatures,
)
from .service import ClassificationService

__all__ = [
    "ClassificationSettings",
    "ClassificationService",
    "ClassificationError",
    "ValidationError",
    "ClassificationNotFound",
    "RuleOrderViolation",
    "AuditIntegrityViolation",
    "CheckDigitMismatch",
    "TariffKnowledgeBase",
    "JsonKnowledgeBase",
    "compute_check_digit",
    "get_default_knowledge_base",
    "AuditEntry",
    "Candidate",
    "Classification",
    "ClassificationProgress",
    "ClassificationStatus",
    "ClarificationQuestion",
    "Decision",
    "DecisionKind",
    "GRIStep",
    "ProductFeatures",
]
