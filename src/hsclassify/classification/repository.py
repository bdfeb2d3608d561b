"""Persistence interface for classifications, decisions and audit entries.

Decisions and audit entries are append-only: the interface has no update or
delete for them. A decision is always stored together with the audit entry
that records it.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from hsclassify.classification.models import AuditEntry, Classification, Decision


class ClassificationRepository(ABC):
    """Storage for classification sessions and their append-only trails."""

    @abstractmethod
    def create(self, classification: Classification) -> None:
        raise NotImplementedError

    @abstractmethod
    def save(self, classification: Classification) -> None:
        """Persist the mutable session row (status, step, metadata)."""

    @abstractmethod
    def get(self, classification_id: str) -> Optional[Classification]:
        raise NotImplementedError

    @abstractmethod
    def list_ids(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def append_decision(self, decision: Decision, entry: AuditEntry) -> None:
        """Store *decision* and the audit entry recording it in one unit."""

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_decisions(self, classification_id: str) -> List[Decision]:
        """Decisions in insertion order."""

    @abstractmethod
    def list_audit_entries(self, classification_id: str) -> List[AuditEntry]:
        """Audit entries ordered by sequence."""

    def get_decision(self, classification_id: str, decision_id: str) -> Optional[Decision]:
        for decision in self.list_decisions(classification_id):
            if decision.decision_id == decision_id:
                return decision
        return None

    def last_audit_entry(self, classification_id: str) -> Optional[AuditEntry]:
        entries = self.list_audit_entries(classification_id)
        return entries[-1] if entries else None


class InMemoryClassificationRepository(ClassificationRepository):
    """Thread-safe dictionary store used by tests and the default service."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._classifications: Dict[str, Classification] = {}
        self._decisions: Dict[str, List[Decision]] = {}
        self._audit: Dict[str, List[AuditEntry]] = {}

    def create(self, classification: Classification) -> None:
        with self._lock:
            if classification.classification_id in self._classifications:
                raise ValueError(f"Classification already exists: {classification.classification_id}")
            self._classifications[classification.classification_id] = classification.model_copy(deep=True)
            self._decisions[classification.classification_id] = []
            self._audit[classification.classification_id] = []

    def save(self, classification: Classification) -> None:
        with self._lock:
            if classification.classification_id not in self._classifications:
                raise KeyError(classification.classification_id)
            self._classifications[classification.classification_id] = classification.model_copy(deep=True)

    def get(self, classification_id: str) -> Optional[Classification]:
        with self._lock:
            stored = self._classifications.get(classification_id)
            return stored.model_copy(deep=True) if stored else None

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._classifications)

    def append_decision(self, decision: Decision, entry: AuditEntry) -> None:
        with self._lock:
            self._require_next_sequence(entry)
            self._decisions.setdefault(decision.classification_id, []).append(decision)
            self._audit.setdefault(entry.classification_id, []).append(entry)

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._require_next_sequence(entry)
            self._audit.setdefault(entry.classification_id, []).append(entry)

    def list_decisions(self, classification_id: str) -> List[Decision]:
        with self._lock:
            return list(self._decisions.get(classification_id, []))

    def list_audit_entries(self, classification_id: str) -> List[AuditEntry]:
        with self._lock:
            return list(self._audit.get(classification_id, []))

    def _require_next_sequence(self, entry: AuditEntry) -> None:
        expected = len(self._audit.get(entry.classification_id, []))
        if entry.sequence != expected:
            raise ValueError(
                f"Audit sequence {entry.sequence} for {entry.classification_id} is not the next ({expected})"
            )
