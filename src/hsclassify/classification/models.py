from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_code(code: str) -> str:
    """Strip dots/spaces, return digits only."""
    return "".join(ch for ch in str(code) if ch.isdigit())


def format_code(code: str) -> str:
    """Render digits as ``6109``, ``6109.10`` or ``6109.10.00``."""
    digits = normalize_code(code)
    if len(digits) <= 4:
        return digits
    parts = [digits[:4]] + [digits[i : i + 2] for i in range(4, len(digits), 2)]
    return ".".join(parts)


class GRIStep(str, Enum):
    """Canonical GRI sequence. Declaration order is the legal order."""

    PRE_CLASSIFICATION = "pre_classification"
    GRI_1 = "gri_1"
    GRI_2A = "gri_2a"
    GRI_2B = "gri_2b"
    GRI_3A = "gri_3a"
    GRI_3B = "gri_3b"
    GRI_3C = "gri_3c"
    GRI_4 = "gri_4"
    GRI_5A = "gri_5a"
    GRI_5B = "gri_5b"
    GRI_6 = "gri_6"
    VALIDATION = "validation"

    @property
    def order(self) -> int:
        return _STEP_ORDER[self]

    def next_step(self) -> Optional["GRIStep"]:
        members = list(GRIStep)
        index = self.order + 1
        return members[index] if index < len(members) else None


_STEP_ORDER = {step: index for index, step in enumerate(GRIStep)}

HEADING_LEVEL_STEPS = (
    GRIStep.GRI_1,
    GRIStep.GRI_2A,
    GRIStep.GRI_2B,
    GRIStep.GRI_3A,
    GRIStep.GRI_3B,
    GRIStep.GRI_3C,
    GRIStep.GRI_4,
)


class ClassificationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset(
    {ClassificationStatus.COMPLETED, ClassificationStatus.NEEDS_REVIEW, ClassificationStatus.ARCHIVED}
)


class CandidateLevel(str, Enum):
    HEADING = "heading"
    SUBHEADING = "subheading"
    TARIFF = "tariff"

    @classmethod
    def for_code(cls, code: str) -> "CandidateLevel":
        digits = len(normalize_code(code))
        if digits <= 4:
            return cls.HEADING
        if digits <= 6:
            return cls.SUBHEADING
        return cls.TARIFF


class DecisionKind(str, Enum):
    RULE = "rule"
    NOT_APPLICABLE = "not_applicable"
    CLARIFICATION = "clarification"
    CORRECTION = "correction"


RULE_DECISION_KINDS = frozenset({DecisionKind.RULE, DecisionKind.NOT_APPLICABLE})


class Classification(BaseModel):
    """A single classification case and its resumable session state."""

    classification_id: str
    description: str
    status: ClassificationStatus = ClassificationStatus.IN_PROGRESS
    current_step: GRIStep = GRIStep.PRE_CLASSIFICATION
    final_code: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _final_code_iff_completed(self) -> "Classification":
        completed = self.status == ClassificationStatus.COMPLETED
        if completed and not self.final_code:
            raise ValueError("completed classification requires a final_code")
        if not completed and self.final_code:
            raise ValueError("final_code is only set on completed classifications")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_frozen(self) -> bool:
        return bool(self.metadata.get("frozen"))


class Decision(BaseModel):
    """Immutable record of one step's question, answer and reasoning."""

    decision_id: str
    classification_id: str
    step: GRIStep
    kind: DecisionKind = DecisionKind.RULE
    question: str
    answer: str
    reasoning: str
    confidence: float = Field(ge=0.0, le=1.0)
    legal_basis: List[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now)
    evidence: Dict[str, Any] = Field(default_factory=dict)
    supersedes: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class AuditEntry(BaseModel):
    """Hash-chained audit ledger entry."""

    entry_id: str
    classification_id: str
    sequence: int = Field(ge=0)
    action: str
    actor: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now)
    prev_hash: str
    hash: str

    model_config = ConfigDict(extra="forbid", frozen=True)

    def hash_material(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"hash"})


class Candidate(BaseModel):
    """A tariff provision under consideration."""

    code: str
    description: str
    level: CandidateLevel
    specificity_score: float = 0.0
    match_score: float = 0.0
    materials: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    parts_heading: bool = False
    residual: bool = False
    check_digit: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @property
    def heading(self) -> str:
        return normalize_code(self.code)[:4]

    @property
    def chapter(self) -> str:
        return normalize_code(self.code)[:2]

    @property
    def display_code(self) -> str:
        return format_code(self.code)


class MaterialComponent(BaseModel):
    """One constituent material of a mixed or composite good."""

    name: str
    percentage: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    hs_code: Optional[str] = None
    role: Optional[Literal["essential", "important", "auxiliary"]] = None
    value_percentage: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    weight_percentage: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    quantity: Optional[float] = Field(default=None, ge=0.0)

    model_config = ConfigDict(extra="forbid")


class PackagingInfo(BaseModel):
    """Containers or packing presented with the goods (GRI 5)."""

    description: str
    specially_fitted: bool = False
    long_term_use: bool = False
    reusable: bool = False
    imparts_essential_character: bool = False

    model_config = ConfigDict(extra="forbid")


class ProductFeatures(BaseModel):
    """Structured hints extracted from the free-text description."""

    materials: List[MaterialComponent] = Field(default_factory=list)
    purpose: Optional[str] = None
    technical_specs: List[str] = Field(default_factory=list)
    packaging: Optional[PackagingInfo] = None
    incomplete: bool = False

    model_config = ConfigDict(extra="forbid")

    @property
    def material_names(self) -> List[str]:
        return [material.name.lower() for material in self.materials]

    @property
    def is_composite(self) -> bool:
        return len({name for name in self.material_names}) >= 2


class ExclusionRule(BaseModel):
    """Legal note of ``from_code`` excludes goods of ``to_code``."""

    from_code: str
    to_code: str
    type: Literal["chapter", "heading"]
    note_ref: str

    model_config = ConfigDict(extra="forbid")


class CrossReference(BaseModel):
    from_code: str
    to_code: str
    type: Literal["see", "see_also", "compare"]
    note_ref: str

    model_config = ConfigDict(extra="forbid")


class LegalNote(BaseModel):
    code: str
    text: str
    type: Literal["inclusion", "exclusion", "general"] = "general"

    model_config = ConfigDict(extra="forbid")


class Precedent(BaseModel):
    """An already-classified good used for classification by analogy."""

    precedent_id: str
    description: str
    code: str

    model_config = ConfigDict(extra="forbid")


class QuestionOption(BaseModel):
    label: str
    value: str

    model_config = ConfigDict(extra="forbid")


class ClarificationQuestion(BaseModel):
    """One clarification question put to the user."""

    question_id: str
    step: GRIStep
    feature: Literal["purpose", "material", "material_detail"]
    question: str
    options: List[QuestionOption] = Field(default_factory=list, max_length=3)
    allow_free_text: bool = True
    confidence: float = Field(ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid")


class ClassificationProgress(BaseModel):
    """Result of one request/response round."""

    classification: Classification
    next_step: Optional[GRIStep] = None
    completed: bool = False
    confidence: float = Field(ge=0.0, le=1.0)
    question: Optional[ClarificationQuestion] = None

    model_config = ConfigDict(extra="forbid")

