"""SQLAlchemy models for classification persistence.

Three tables:
- classifications: one mutable row per case (status, step, session metadata)
- decisions: append-only, ordered by position within a classification
- audit_entries: append-only hash chain, unique per (classification, sequence)
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class ClassificationRecord(Base):
    """A classification case and its resumable session state."""

    __tablename__ = "classifications"

    classification_id = Column(String(64), primary_key=True)
    description = Column(Text, nullable=False)
    status = Column(String(32), nullable=False, default="in_progress", index=True)
    current_step = Column(String(32), nullable=False, default="pre_classification")
    final_code = Column(String(16), nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    # Session state: features, pending question, engine context
    metadata_json = Column(JsonColumn, default=dict)

    decisions = relationship(
        "DecisionRecord",
        back_populates="classification",
        cascade="all, delete-orphan",
        order_by="DecisionRecord.position",
    )
    audit_entries = relationship(
        "AuditEntryRecord",
        back_populates="classification",
        cascade="all, delete-orphan",
        order_by="AuditEntryRecord.sequence",
    )


class DecisionRecord(Base):
    """Immutable decision row; never updated after insert."""

    __tablename__ = "decisions"

    decision_id = Column(String(64), primary_key=True)
    classification_id = Column(
        String(64), ForeignKey("classifications.classification_id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    step = Column(String(32), nullable=False)
    kind = Column(String(32), nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)
    legal_basis = Column(JsonColumn, default=list)
    timestamp = Column(String(40), nullable=False)
    evidence = Column(JsonColumn, default=dict)
    supersedes = Column(String(64), nullable=True)

    classification = relationship("ClassificationRecord", back_populates="decisions")

    __table_args__ = (
        UniqueConstraint("classification_id", "position", name="uq_decision_position"),
    )


class AuditEntryRecord(Base):
    """Hash-chained audit ledger row."""

    __tablename__ = "audit_entries"

    entry_id = Column(String(64), primary_key=True)
    classification_id = Column(
        String(64), ForeignKey("classifications.classification_id"), nullable=False
    )
    sequence = Column(Integer, nullable=False)
    action = Column(String(64), nullable=False)
    actor = Column(String(128), nullable=False)
    details = Column(JsonColumn, default=dict)
    timestamp = Column(String(40), nullable=False)
    prev_hash = Column(String(64), nullable=False)
    hash = Column(String(64), nullable=False)

    classification = relationship("ClassificationRecord", back_populates="audit_entries")

    __table_args__ = (
        UniqueConstraint("classification_id", "sequence", name="uq_audit_sequence"),
        Index("idx_audit_classification_sequence", "classification_id", "sequence"),
    )
