"""SQLAlchemy-backed :class:`ClassificationRepository`."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from hsclassify.classification.models import AuditEntry, Classification, Decision
from hsclassify.classification.repository import ClassificationRepository
from hsclassify.db.models import AuditEntryRecord, ClassificationRecord, DecisionRecord
from hsclassify.db.session import get_session_factory, get_standalone_session, init_db

logger = logging.getLogger(__name__)


def _classification_from_record(record: ClassificationRecord) -> Classification:
    return Classification(
        classification_id=record.classification_id,
        description=record.description,
        status=record.status,
        current_step=record.current_step,
        final_code=record.final_code,
        confidence=record.confidence,
        created_at=record.created_at,
        updated_at=record.updated_at,
        metadata=dict(record.metadata_json or {}),
    )


def _decision_from_record(record: DecisionRecord) -> Decision:
    return Decision(
        decision_id=record.decision_id,
        classification_id=record.classification_id,
        step=record.step,
        kind=record.kind,
        question=record.question,
        answer=record.answer,
        reasoning=record.reasoning,
        confidence=record.confidence,
        legal_basis=list(record.legal_basis or []),
        timestamp=record.timestamp,
        evidence=dict(record.evidence or {}),
        supersedes=record.supersedes,
    )


def _entry_from_record(record: AuditEntryRecord) -> AuditEntry:
    return AuditEntry(
        entry_id=record.entry_id,
        classification_id=record.classification_id,
        sequence=record.sequence,
        action=record.action,
        actor=record.actor,
        details=dict(record.details or {}),
        timestamp=record.timestamp,
        prev_hash=record.prev_hash,
        hash=record.hash,
    )


def _entry_record(entry: AuditEntry) -> AuditEntryRecord:
    data = entry.model_dump(mode="json")
    return AuditEntryRecord(**data)


class SqlClassificationRepository(ClassificationRepository):
    """Stores classifications, decisions and audit entries in three tables."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True) -> "SqlClassificationRepository":
        if create_tables:
            init_db(url)
        return cls(get_session_factory(url))

    def create(self, classification: Classification) -> None:
        data = classification.model_dump(mode="json")
        metadata = data.pop("metadata")
        with get_standalone_session(self._session_factory) as session:
            session.add(ClassificationRecord(**data, metadata_json=metadata))

    def save(self, classification: Classification) -> None:
        data = classification.model_dump(mode="json")
        with get_standalone_session(self._session_factory) as session:
            record = session.get(ClassificationRecord, classification.classification_id)
            if record is None:
                raise KeyError(classification.classification_id)
            record.status = data["status"]
            record.current_step = data["current_step"]
            record.final_code = data["final_code"]
            record.confidence = data["confidence"]
            record.updated_at = data["updated_at"]
            record.metadata_json = data["metadata"]

    def get(self, classification_id: str) -> Optional[Classification]:
        with get_standalone_session(self._session_factory) as session:
            record = session.get(ClassificationRecord, classification_id)
            return _classification_from_record(record) if record else None

    def list_ids(self) -> List[str]:
        with get_standalone_session(self._session_factory) as session:
            rows = session.execute(
                select(ClassificationRecord.classification_id).order_by(ClassificationRecord.created_at)
            )
            return [row[0] for row in rows]

    def append_decision(self, decision: Decision, entry: AuditEntry) -> None:
        data = decision.model_dump(mode="json")
        try:
            with get_standalone_session(self._session_factory) as session:
                position = session.execute(
                    select(func.count(DecisionRecord.decision_id)).where(
                        DecisionRecord.classification_id == decision.classification_id
                    )
                ).scalar_one()
                session.add(DecisionRecord(**data, position=position))
                session.add(_entry_record(entry))
        except IntegrityError as exc:
            logger.error("Concurrent append rejected for %s: %s", decision.classification_id, exc)
            raise ValueError(f"Audit sequence {entry.sequence} already taken for {entry.classification_id}") from exc

    def append_audit_entry(self, entry: AuditEntry) -> None:
        try:
            with get_standalone_session(self._session_factory) as session:
                session.add(_entry_record(entry))
        except IntegrityError as exc:
            raise ValueError(f"Audit sequence {entry.sequence} already taken for {entry.classification_id}") from exc

    def list_decisions(self, classification_id: str) -> List[Decision]:
        with get_standalone_session(self._session_factory) as session:
            records = session.scalars(
                select(DecisionRecord)
                .where(DecisionRecord.classification_id == classification_id)
                .order_by(DecisionRecord.position)
            ).all()
            return [_decision_from_record(record) for record in records]

    def list_audit_entries(self, classification_id: str) -> List[AuditEntry]:
        with get_standalone_session(self._session_factory) as session:
            records = session.scalars(
                select(AuditEntryRecord)
                .where(AuditEntryRecord.classification_id == classification_id)
                .order_by(AuditEntryRecord.sequence)
            ).all()
            return [_entry_from_record(record) for record in records]

    def last_audit_entry(self, classification_id: str) -> Optional[AuditEntry]:
        with get_standalone_session(self._session_factory) as session:
            record = session.scalars(
                select(AuditEntryRecord)
                .where(AuditEntryRecord.classification_id == classification_id)
                .order_by(AuditEntryRecord.sequence.desc())
                .limit(1)
            ).first()
            return _entry_from_record(record) if record else None
