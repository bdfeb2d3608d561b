"""Legal record export: decisions, audit trail and a defense checklist."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from hsclassify.classification.models import (
    RULE_DECISION_KINDS,
    AuditEntry,
    Classification,
    Decision,
    DecisionKind,
    GRIStep,
    format_code,
    utc_now,
)
from hsclassify.classification.steps import Gri1Payload, PreClassificationPayload, ValidationPayload, parse_payload
from hsclassify.proofs import payload_digest

RECORD_VERSION = "1.0"


class ChecklistItem(BaseModel):
    requirement: str
    satisfied: bool
    severity: Literal["critical", "important", "recommended"]
    evidence: str = ""

    model_config = ConfigDict(extra="forbid")


class LegalRecord(BaseModel):
    """Self-contained, hashable record of how a classification was reached."""

    classification: Classification
    decisions: List[Decision] = Field(default_factory=list)
    audit_trail: List[AuditEntry] = Field(default_factory=list)
    checklist: List[ChecklistItem] = Field(default_factory=list)
    summary: str
    chain_verified: bool
    generated_at: str = Field(default_factory=utc_now)
    version: str = RECORD_VERSION
    record_hash: str = ""

    model_config = ConfigDict(extra="forbid")


def _payload(decisions: List[Decision], step: GRIStep) -> Optional[BaseModel]:
    for decision in reversed(decisions):
        if decision.step == step and decision.kind in RULE_DECISION_KINDS:
            return parse_payload(decision.evidence)
    return None


def build_checklist(classification: Classification, decisions: List[Decision], low_confidence: float) -> List[ChecklistItem]:
    rule_steps = [d.step for d in decisions if d.kind in RULE_DECISION_KINDS]
    in_order = all(a.order < b.order for a, b in zip(rule_steps, rule_steps[1:]))
    pre = _payload(decisions, GRIStep.PRE_CLASSIFICATION) or PreClassificationPayload()
    gri1 = _payload(decisions, GRIStep.GRI_1) or Gri1Payload()
    validated = _payload(decisions, GRIStep.VALIDATION)
    validation = validated or ValidationPayload()
    materials = pre.materials
    composite = len(set(materials)) > 1
    confidence = classification.confidence or 0.0

    items = [
        ChecklistItem(
            requirement="Product description is complete",
            satisfied=len(classification.description) > 20,
            severity="critical",
            evidence=f"Description length: {len(classification.description)} characters",
        ),
        ChecklistItem(
            requirement="GRI rules applied in canonical sequence",
            satisfied=bool(rule_steps) and in_order,
            severity="critical",
            evidence="Applied rules: " + " -> ".join(step.value for step in rule_steps),
        ),
        ChecklistItem(
            requirement="Material composition documented (if composite)",
            satisfied=not composite or _payload(decisions, GRIStep.GRI_2B) is not None,
            severity="critical",
            evidence=f"Materials: {', '.join(materials) or 'none declared'}",
        ),
        ChecklistItem(
            requirement="Exclusion notes checked",
            satisfied=validated is not None and not validation.unresolved_exclusions,
            severity="critical",
            evidence=f"{len(gri1.excluded)} heading(s) excluded by notes",
        ),
        ChecklistItem(
            requirement="Reasoning recorded for each step",
            satisfied=all(d.reasoning.strip() for d in decisions),
            severity="important",
            evidence=f"{len(decisions)} decision(s) recorded",
        ),
        ChecklistItem(
            requirement=f"Confidence at or above {low_confidence:.0%}",
            satisfied=confidence >= low_confidence,
            severity="important",
            evidence=f"Confidence {confidence:.2f}",
        ),
        ChecklistItem(
            requirement="Alternative classifications considered",
            satisfied=len(gri1.matched) > 1 or bool(gri1.excluded),
            severity="recommended",
            evidence=f"{len(gri1.matched)} heading(s) matched at GRI 1",
        ),
        ChecklistItem(
            requirement="Check digit verified",
            satisfied=bool(validation.check_digit) and not validation.check_digit_mismatch,
            severity="recommended",
            evidence=f"Check digit {validation.check_digit or 'n/a'}",
        ),
    ]
    return items


def build_summary(classification: Classification, decisions: List[Decision]) -> str:
    code = classification.final_code or classification.metadata.get("archived_final_code") or classification.metadata.get("best_code")
    rule = classification.metadata.get("determining_rule") or "none"
    corrections = sum(1 for d in decisions if d.kind == DecisionKind.CORRECTION)
    parts = [
        f"Classification {classification.classification_id} is {classification.status.value}",
        f"code {format_code(code) if code else 'undetermined'} (determining rule {rule})",
        f"confidence {(classification.confidence or 0.0):.2f}",
    ]
    if corrections:
        parts.append(f"{corrections} correction(s) on record")
    return "; ".join(parts) + "."


def build_legal_record(
    classification: Classification,
    decisions: List[Decision],
    audit_trail: List[AuditEntry],
    *,
    chain_verified: bool,
    low_confidence: float = 0.7,
) -> LegalRecord:
    record = LegalRecord(
        classification=classification,
        decisions=decisions,
        audit_trail=audit_trail,
        checklist=build_checklist(classification, decisions, low_confidence),
        summary=build_summary(classification, decisions),
        chain_verified=chain_verified,
    )
    material = record.model_dump(mode="json", exclude={"record_hash", "generated_at"})
    return record.model_copy(update={"record_hash": payload_digest(material)})
