"""Exceptions raised by the classification core."""

from __future__ import annotations

from typing import Optional


class ClassificationError(Exception):
    """Base class for classification failures."""


class ValidationError(ClassificationError):
    """Malformed input, rejected before any state is mutated."""


class ClassificationNotFound(ClassificationError):
    def __init__(self, classification_id: str) -> None:
        super().__init__(f"Classification not found: {classification_id}")
        self.classification_id = classification_id


class RuleOrderViolation(ClassificationError):
    """A rule was applied out of canonical GRI sequence."""

    def __init__(self, attempted: str, expected: Optional[str], message: str | None = None) -> None:
        detail = message or f"Step {attempted} applied out of order; expected {expected or 'no further step'}"
        super().__init__(detail)
        self.attempted = attempted
        self.expected = expected


class AuditIntegrityViolation(ClassificationError):
    """The audit hash chain does not reproduce; the classification is frozen."""

    def __init__(self, classification_id: str, sequence: Optional[int], reason: str) -> None:
        where = f" at sequence {sequence}" if sequence is not None else ""
        super().__init__(f"Audit trail for {classification_id} failed verification{where}: {reason}")
        self.classification_id = classification_id
        self.sequence = sequence
        self.reason = reason


class CheckDigitMismatch(UserWarning):
    """Knowledge base check digit disagrees with the computed one."""

    def __init__(self, code: str, declared: str, computed: str) -> None:
        super().__init__(f"Check digit mismatch for {code}: declared {declared}, computed {computed}")
        self.code = code
        self.declared = declared
        self.computed = computed
