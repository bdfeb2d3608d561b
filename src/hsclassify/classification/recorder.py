"""Append-only decision log with a hash-chained audit trail.

Chain structure::

    entry[0]  classification_created   prev_hash = sha256("genesis:" + id)
    entry[n]  <action>                 prev_hash = entry[n-1].hash

    hash = sha256(canonical_json(entry without hash) + prev_hash)

Every ``decision_recorded`` entry carries the digest of the decision it
records, so tampering with a stored decision also breaks verification.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from hsclassify.classification.errors import AuditIntegrityViolation, ValidationError
from hsclassify.classification.models import (
    RULE_DECISION_KINDS,
    AuditEntry,
    Decision,
    DecisionKind,
    GRIStep,
    utc_now,
)
from hsclassify.classification.repository import ClassificationRepository
from hsclassify.classification.steps import validate_evidence
from hsclassify.proofs import canonical_json, digest, payload_digest

logger = logging.getLogger(__name__)

DECISION_RECORDED = "decision_recorded"
SYSTEM_ACTOR = "system"


def genesis_hash(classification_id: str) -> str:
    return digest(f"genesis:{classification_id}")


def entry_hash(material: Mapping[str, Any], prev_hash: str) -> str:
    return digest(canonical_json(dict(material)) + prev_hash)


def decision_digest(decision: Decision) -> str:
    return payload_digest(decision.model_dump(mode="json"))


class DecisionRecorder:
    """Records decisions and audit events for one classification."""

    def __init__(self, repository: ClassificationRepository, classification_id: str) -> None:
        self.repository = repository
        self.classification_id = classification_id

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(
        self,
        step: GRIStep,
        *,
        question: str,
        answer: str,
        reasoning: str,
        confidence: float,
        legal_basis: Sequence[str] | None = None,
        kind: DecisionKind = DecisionKind.RULE,
        evidence: BaseModel | Mapping[str, Any] | None = None,
        actor: str = SYSTEM_ACTOR,
        supersedes: Optional[str] = None,
    ) -> Decision:
        """Record one decision and the audit entry that chains it."""

        if not reasoning or not reasoning.strip():
            raise ValidationError(f"Decision for {step.value} requires reasoning")
        try:
            evidence_payload = validate_evidence(step, kind, evidence).model_dump(mode="json")
        except ValueError as exc:
            raise ValidationError(f"Invalid evidence for {kind.value} decision at {step.value}: {exc}") from exc

        decision = Decision(
            decision_id=str(uuid.uuid4()),
            classification_id=self.classification_id,
            step=step,
            kind=kind,
            question=question,
            answer=answer,
            reasoning=reasoning,
            confidence=max(0.0, min(1.0, confidence)),
            legal_basis=list(legal_basis or []),
            timestamp=utc_now(),
            evidence=evidence_payload,
            supersedes=supersedes,
        )
        details: Dict[str, Any] = {
            "decision_id": decision.decision_id,
            "step": step.value,
            "kind": kind.value,
            "decision_digest": decision_digest(decision),
        }
        if supersedes:
            details["supersedes"] = supersedes
        entry = self._next_entry(DECISION_RECORDED, actor, details)
        self.repository.append_decision(decision, entry)
        logger.info("Recorded %s decision for %s on %s", kind.value, step.value, self.classification_id)
        return decision

    def log_event(self, action: str, *, actor: str = SYSTEM_ACTOR, details: Mapping[str, Any] | None = None) -> AuditEntry:
        """Record an audit entry that is not a decision."""

        if action == DECISION_RECORDED:
            raise ValidationError("decision_recorded entries are written by append()")
        entry = self._next_entry(action, actor, dict(details or {}))
        self.repository.append_audit_entry(entry)
        return entry

    def supersede(
        self,
        decision_id: str,
        *,
        answer: str,
        reasoning: str,
        actor: str,
        confidence: float | None = None,
        evidence: Mapping[str, Any] | None = None,
    ) -> Decision:
        """Record a correction of an earlier decision; nothing is edited in place."""

        original = self.repository.get_decision(self.classification_id, decision_id)
        if original is None:
            raise ValidationError(f"Decision {decision_id} does not belong to {self.classification_id}")
        return self.append(
            original.step,
            question=original.question,
            answer=answer,
            reasoning=reasoning,
            confidence=original.confidence if confidence is None else confidence,
            legal_basis=original.legal_basis,
            kind=DecisionKind.CORRECTION,
            evidence=evidence,
            actor=actor,
            supersedes=decision_id,
        )

    def _next_entry(self, action: str, actor: str, details: Dict[str, Any]) -> AuditEntry:
        last = self.repository.last_audit_entry(self.classification_id)
        sequence = last.sequence + 1 if last else 0
        prev_hash = last.hash if last else genesis_hash(self.classification_id)
        material = {
            "entry_id": str(uuid.uuid4()),
            "classification_id": self.classification_id,
            "sequence": sequence,
            "action": action,
            "actor": actor,
            "details": details,
            "timestamp": utc_now(),
            "prev_hash": prev_hash,
        }
        # Round-trip through the model so the hashed material matches what verify() sees
        draft = AuditEntry(**material, hash="")
        return draft.model_copy(update={"hash": entry_hash(draft.hash_material(), prev_hash)})

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def decisions(self) -> List[Decision]:
        return self.repository.list_decisions(self.classification_id)

    def entries(self) -> List[AuditEntry]:
        return self.repository.list_audit_entries(self.classification_id)

    def last_rule_decision(self) -> Optional[Decision]:
        rules = [decision for decision in self.decisions() if decision.kind in RULE_DECISION_KINDS]
        return rules[-1] if rules else None

    def last_rule_step(self) -> Optional[GRIStep]:
        last = self.last_rule_decision()
        return last.step if last else None

    def verify(self) -> bool:
        """Recompute the chain from the genesis digest.

        Raises:
            AuditIntegrityViolation: on a broken link, a hash mismatch, a
                sequence gap, a decision whose digest changed, or rule
                decisions recorded out of canonical order.
        """

        cid = self.classification_id
        entries = self.entries()
        if not entries:
            raise AuditIntegrityViolation(cid, None, "audit trail is empty")

        decisions = {decision.decision_id: decision for decision in self.decisions()}
        referenced = set()
        previous = genesis_hash(cid)
        for index, entry in enumerate(entries):
            if entry.classification_id != cid:
                raise AuditIntegrityViolation(cid, entry.sequence, "entry belongs to another classification")
            if entry.sequence != index:
                raise AuditIntegrityViolation(cid, entry.sequence, f"expected sequence {index}")
            if entry.prev_hash != previous:
                raise AuditIntegrityViolation(cid, entry.sequence, "prev_hash does not link to the previous entry")
            if entry_hash(entry.hash_material(), entry.prev_hash) != entry.hash:
                raise AuditIntegrityViolation(cid, entry.sequence, "entry hash mismatch")
            if entry.action == DECISION_RECORDED:
                decision_id = entry.details.get("decision_id")
                decision = decisions.get(decision_id)
                if decision is None:
                    raise AuditIntegrityViolation(cid, entry.sequence, f"decision {decision_id} is missing")
                if decision_digest(decision) != entry.details.get("decision_digest"):
                    raise AuditIntegrityViolation(cid, entry.sequence, f"decision {decision_id} digest mismatch")
                referenced.add(decision_id)
            previous = entry.hash

        unrecorded = sorted(set(decisions) - referenced)
        if unrecorded:
            raise AuditIntegrityViolation(cid, None, f"decisions without audit entries: {unrecorded}")

        last_order = -1
        for decision in decisions.values():
            if decision.kind not in RULE_DECISION_KINDS:
                continue
            if decision.step.order <= last_order:
                raise AuditIntegrityViolation(
                    cid, None, f"rule decision {decision.step.value} recorded out of canonical order"
                )
            last_order = decision.step.order
        return True
