"""GRI step catalog and the typed payload recorded for each step.

Every :class:`~hsclassify.classification.models.GRIStep` has exactly one
:class:`StepDefinition` (legal text, inputs, criteria, transitions) and one
payload variant in :data:`StepPayload`. The payload union is discriminated on
``step`` so a decision's evidence can only carry the fields of its own rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from hsclassify.classification.models import DecisionKind, GRIStep


@dataclass(frozen=True)
class NextStep:
    condition: str
    next_step: Optional[GRIStep]
    reasoning: str


@dataclass(frozen=True)
class StepDefinition:
    step: GRIStep
    name: str
    mandatory: bool
    legal_text: str
    required_inputs: Tuple[str, ...]
    decision_criteria: Tuple[str, ...]
    next_steps: Tuple[NextStep, ...] = field(default_factory=tuple)

    @property
    def order(self) -> int:
        return self.step.order

    @property
    def citation(self) -> str:
        if self.step in (GRIStep.PRE_CLASSIFICATION, GRIStep.VALIDATION):
            return self.name
        rule = self.step.value.replace("gri_", "")
        number, letter = rule[0], rule[1:]
        return f"GRI Rule {number}({letter})" if letter else f"GRI Rule {number}"


STEP_DEFINITIONS: Dict[GRIStep, StepDefinition] = {
    GRIStep.PRE_CLASSIFICATION: StepDefinition(
        step=GRIStep.PRE_CLASSIFICATION,
        name="Pre-classification product analysis",
        mandatory=True,
        legal_text=(
            "Gather complete product information (physical, functional and commercial "
            "characteristics) to ensure accurate classification."
        ),
        required_inputs=("product_description",),
        decision_criteria=(
            "What materials compose the product?",
            "What is the primary purpose or intended use?",
            "What are the key technical specifications?",
        ),
        next_steps=(NextStep("analysis complete", GRIStep.GRI_1, "Proceed to GRI 1"),),
    ),
    GRIStep.GRI_1: StepDefinition(
        step=GRIStep.GRI_1,
        name="Classification by terms of headings and notes",
        mandatory=True,
        legal_text=(
            "The titles of Sections, Chapters and sub-Chapters are provided for ease of "
            "reference only; for legal purposes, classification shall be determined "
            "according to the terms of the headings and any relative Section or Chapter "
            "Notes and, provided such headings or Notes do not otherwise require, "
            "according to the following provisions."
        ),
        required_inputs=("product_description", "features"),
        decision_criteria=(
            "Which headings match the terms of the description?",
            "Do Section or Chapter Notes exclude any of them?",
        ),
        next_steps=(
            NextStep("single heading survives exclusions", GRIStep.GRI_5A, "Heading determined by GRI 1"),
            NextStep("several or no headings", GRIStep.GRI_2A, "Apply GRI 2"),
        ),
    ),
    GRIStep.GRI_2A: StepDefinition(
        step=GRIStep.GRI_2A,
        name="Incomplete, unfinished or unassembled articles",
        mandatory=True,
        legal_text=(
            "Any reference in a heading to an article shall be taken to include a "
            "reference to that article incomplete or unfinished, provided that, as "
            "presented, the incomplete or unfinished article has the essential character "
            "of the complete or finished article. It shall also be taken to include a "
            "reference to that article complete or finished (or falling to be classified "
            "as complete or finished by virtue of this Rule), presented unassembled or "
            "disassembled."
        ),
        required_inputs=("features.incomplete",),
        decision_criteria=("Is the article incomplete, unfinished, unassembled or disassembled?",),
        next_steps=(NextStep("always", GRIStep.GRI_2B, "Consider mixtures under GRI 2(b)"),),
    ),
    GRIStep.GRI_2B: StepDefinition(
        step=GRIStep.GRI_2B,
        name="Mixtures and combinations of materials",
        mandatory=True,
        legal_text=(
            "Any reference in a heading to a material or substance shall be taken to "
            "include a reference to mixtures or combinations of that material or "
            "substance with other materials or substances. Any reference to goods of a "
            "given material or substance shall be taken to include a reference to goods "
            "consisting wholly or partly of such material or substance. The "
            "classification of goods consisting of more than one material or substance "
            "shall be according to the principles of Rule 3."
        ),
        required_inputs=("features.materials",),
        decision_criteria=("Does the good consist of more than one material?",),
        next_steps=(NextStep("always", GRIStep.GRI_3A, "Classify according to Rule 3"),),
    ),
    GRIStep.GRI_3A: StepDefinition(
        step=GRIStep.GRI_3A,
        name="Most specific description",
        mandatory=True,
        legal_text=(
            "The heading which provides the most specific description shall be preferred "
            "to headings providing a more general description. However, when two or more "
            "headings each refer to part only of the materials or substances contained in "
            "mixed or composite goods or to part only of the items in a set put up for "
            "retail sale, those headings are to be regarded as equally specific in "
            "relation to those goods, even if one of them gives a more complete or "
            "precise description of the goods."
        ),
        required_inputs=("candidates",),
        decision_criteria=("Which candidate heading gives the most specific description?",),
        next_steps=(
            NextStep("unique most specific heading", GRIStep.GRI_5A, "Heading determined by GRI 3(a)"),
            NextStep("equally specific", GRIStep.GRI_3B, "Apply essential character"),
        ),
    ),
    GRIStep.GRI_3B: StepDefinition(
        step=GRIStep.GRI_3B,
        name="Essential character",
        mandatory=True,
        legal_text=(
            "Mixtures, composite goods consisting of different materials or made up of "
            "different components, and goods put up in sets for retail sale, which cannot "
            "be classified by reference to 3(a), shall be classified as if they consisted "
            "of the material or component which gives them their essential character, "
            "insofar as this criterion is applicable."
        ),
        required_inputs=("features.materials", "candidates"),
        decision_criteria=(
            "Which material or component gives the good its essential character "
            "(role in use, value, weight or bulk, quantity)?",
        ),
        next_steps=(
            NextStep("essential character decides", GRIStep.GRI_5A, "Heading determined by GRI 3(b)"),
            NextStep("undetermined", GRIStep.GRI_3C, "Apply last in numerical order"),
        ),
    ),
    GRIStep.GRI_3C: StepDefinition(
        step=GRIStep.GRI_3C,
        name="Last in numerical order",
        mandatory=True,
        legal_text=(
            "When goods cannot be classified by reference to 3(a) or 3(b), they shall be "
            "classified under the heading which occurs last in numerical order among "
            "those which equally merit consideration."
        ),
        required_inputs=("candidates",),
        decision_criteria=("Which equally meritorious heading occurs last in numerical order?",),
        next_steps=(NextStep("always", GRIStep.GRI_5A, "Heading determined by GRI 3(c)"),),
    ),
    GRIStep.GRI_4: StepDefinition(
        step=GRIStep.GRI_4,
        name="Most akin",
        mandatory=True,
        legal_text=(
            "Goods which cannot be classified in accordance with the above Rules shall be "
            "classified under the heading appropriate to the goods to which they are most akin."
        ),
        required_inputs=("precedents",),
        decision_criteria=("Which already-classified good is most similar?",),
        next_steps=(
            NextStep("comparator found", GRIStep.GRI_5A, "Heading determined by analogy"),
            NextStep("no comparator", None, "No matching provision found"),
        ),
    ),
    GRIStep.GRI_5A: StepDefinition(
        step=GRIStep.GRI_5A,
        name="Cases and containers",
        mandatory=True,
        legal_text=(
            "Camera cases, musical instrument cases, gun cases, drawing instrument cases, "
            "necklace cases and similar containers, specially shaped or fitted to contain "
            "a specific article or set of articles, suitable for long-term use and "
            "presented with the articles for which they are intended, shall be classified "
            "with such articles when of a kind normally sold therewith. This Rule does "
            "not, however, apply to containers which give the whole its essential character."
        ),
        required_inputs=("features.packaging",),
        decision_criteria=("Is there a specially fitted container suitable for long-term use?",),
        next_steps=(NextStep("always", GRIStep.GRI_5B, "Consider packing under GRI 5(b)"),),
    ),
    GRIStep.GRI_5B: StepDefinition(
        step=GRIStep.GRI_5B,
        name="Packing materials and containers",
        mandatory=True,
        legal_text=(
            "Subject to the provisions of Rule 5(a) above, packing materials and packing "
            "containers presented with the goods therein shall be classified with the "
            "goods if they are of a kind normally used for packing such goods. However, "
            "this provision is not binding when such packing materials or packing "
            "containers are clearly suitable for repetitive use."
        ),
        required_inputs=("features.packaging",),
        decision_criteria=("Is the packing clearly suitable for repetitive use?",),
        next_steps=(NextStep("always", GRIStep.GRI_6, "Determine the subheading"),),
    ),
    GRIStep.GRI_6: StepDefinition(
        step=GRIStep.GRI_6,
        name="Subheading classification",
        mandatory=True,
        legal_text=(
            "For legal purposes, the classification of goods in the subheadings of a "
            "heading shall be determined according to the terms of those subheadings and "
            "any related Subheading Notes and, mutatis mutandis, to the above Rules, on "
            "the understanding that only subheadings at the same level are comparable. "
            "For the purposes of this Rule the relative Section and Chapter Notes also "
            "apply, unless the context otherwise requires."
        ),
        required_inputs=("heading",),
        decision_criteria=("Which subheading at each level best describes the goods?",),
        next_steps=(NextStep("always", GRIStep.VALIDATION, "Validate the final code"),),
    ),
    GRIStep.VALIDATION: StepDefinition(
        step=GRIStep.VALIDATION,
        name="Classification validation",
        mandatory=True,
        legal_text="Ensure the classification complies with all applicable rules and notes.",
        required_inputs=("final_code",),
        decision_criteria=(
            "Does the check digit of the final code verify?",
            "Does any exclusion on the final code remain unresolved?",
        ),
        next_steps=(NextStep("always", None, "Classification finished"),),
    ),
}


# ---------------------------------------------------------------------------
# Step payloads (tagged union)
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ScoredCode(_Payload):
    code: str
    score: float


class PreClassificationPayload(_Payload):
    step: Literal["pre_classification"] = "pre_classification"
    materials: List[str] = Field(default_factory=list)
    purpose: Optional[str] = None
    technical_specs: List[str] = Field(default_factory=list)
    candidates: List[ScoredCode] = Field(default_factory=list)
    questions_asked: int = 0
    loop_exit: str = ""


class Gri1Payload(_Payload):
    step: Literal["gri_1"] = "gri_1"
    matched: List[ScoredCode] = Field(default_factory=list)
    excluded: List[Dict[str, str]] = Field(default_factory=list)
    cross_references: List[Dict[str, str]] = Field(default_factory=list)
    legal_notes: List[str] = Field(default_factory=list)


class Gri2aPayload(_Payload):
    step: Literal["gri_2a"] = "gri_2a"
    incomplete: bool = False
    removed_parts_headings: List[str] = Field(default_factory=list)


class Gri2bPayload(_Payload):
    step: Literal["gri_2b"] = "gri_2b"
    materials: List[str] = Field(default_factory=list)
    covering_heading: Optional[str] = None
    added: List[str] = Field(default_factory=list)


class Gri3aPayload(_Payload):
    step: Literal["gri_3a"] = "gri_3a"
    ranking: List[str] = Field(default_factory=list)
    equally_specific: bool = False
    partial_material_coverage: bool = False


class Gri3bPayload(_Payload):
    step: Literal["gri_3b"] = "gri_3b"
    selected_material: Optional[str] = None
    deciding_factors: List[str] = Field(default_factory=list)
    matching_codes: List[str] = Field(default_factory=list)


class Gri3cPayload(_Payload):
    step: Literal["gri_3c"] = "gri_3c"
    numerical_order: List[str] = Field(default_factory=list)
    selected: Optional[str] = None


class Gri4Payload(_Payload):
    step: Literal["gri_4"] = "gri_4"
    comparator_id: Optional[str] = None
    comparator: Optional[str] = None
    comparator_code: Optional[str] = None
    similarity: float = 0.0


class Gri5aPayload(_Payload):
    step: Literal["gri_5a"] = "gri_5a"
    container: Optional[str] = None
    follows_goods: Optional[bool] = None
    legal_review_flag: bool = False


class Gri5bPayload(_Payload):
    step: Literal["gri_5b"] = "gri_5b"
    packing: Optional[str] = None
    follows_goods: Optional[bool] = None
    legal_review_flag: bool = False


class Gri6Payload(_Payload):
    step: Literal["gri_6"] = "gri_6"
    heading: Optional[str] = None
    path: List[str] = Field(default_factory=list)
    level_rules: List[str] = Field(default_factory=list)


class ValidationPayload(_Payload):
    step: Literal["validation"] = "validation"
    final_code: Optional[str] = None
    check_digit: Optional[str] = None
    declared_check_digit: Optional[str] = None
    check_digit_mismatch: bool = False
    unresolved_exclusions: List[Dict[str, str]] = Field(default_factory=list)
    status: str = ""


StepPayload = Annotated[
    Union[
        PreClassificationPayload,
        Gri1Payload,
        Gri2aPayload,
        Gri2bPayload,
        Gri3aPayload,
        Gri3bPayload,
        Gri3cPayload,
        Gri4Payload,
        Gri5aPayload,
        Gri5bPayload,
        Gri6Payload,
        ValidationPayload,
    ],
    Field(discriminator="step"),
]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(StepPayload)


def parse_payload(raw: dict) -> BaseModel:
    """Rebuild the typed payload stored in a decision's evidence."""
    return _PAYLOAD_ADAPTER.validate_python(raw)


class ClarificationEvidence(_Payload):
    question_id: str
    feature: str


class CorrectionEvidence(_Payload):
    final_code: Optional[str] = None


def validate_evidence(step: GRIStep, kind: DecisionKind, evidence: BaseModel | Mapping[str, Any] | None) -> BaseModel:
    """Return the typed evidence for a decision of *kind* at *step*.

    Rule and not-applicable decisions carry the payload variant of their own
    step; a missing payload becomes that variant's defaults.

    Raises:
        ValueError: the evidence does not fit the step or decision kind.
    """

    raw = evidence.model_dump(mode="json") if isinstance(evidence, BaseModel) else dict(evidence or {})
    if kind == DecisionKind.CLARIFICATION:
        return ClarificationEvidence.model_validate(raw)
    if kind == DecisionKind.CORRECTION:
        return CorrectionEvidence.model_validate(raw)
    raw.setdefault("step", step.value)
    if raw["step"] != step.value:
        raise ValueError(f"{raw['step']} payload cannot be recorded for step {step.value}")
    return parse_payload(raw)


def definition_for(step: GRIStep) -> StepDefinition:
    return STEP_DEFINITIONS[step]


if set(STEP_DEFINITIONS) != set(GRIStep):  # pragma: no cover - import-time guard
    missing = sorted(step.value for step in set(GRIStep) - set(STEP_DEFINITIONS))
    raise RuntimeError(f"GRI steps without a definition: {missing}")
