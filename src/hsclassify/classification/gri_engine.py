"""General Rules for Interpretation (GRI) rule engine.

The GRI are applied in strict cascade order: GRI 1 first, and each
subsequent rule only when the prior rules did not determine a single
heading. Once a heading is determined the remaining heading-level rules are
not reached and the engine continues with GRI 5 (containers and packing),
GRI 6 (subheadings) and validation.

Every step that is reached is recorded through the
:class:`~hsclassify.classification.recorder.DecisionRecorder` before the
engine advances, either as the rule that was applied or as legally not
applicable, together with a typed payload describing what the rule saw.

GRI Reference:
  GRI 1:  Classification by terms of headings + section/chapter notes
  GRI 2a: Incomplete/unfinished/unassembled = classified as the finished article
  GRI 2b: Mixtures/composites of materials -> principles of GRI 3
  GRI 3a: Most specific description
  GRI 3b: Essential character
  GRI 3c: Last in numerical order
  GRI 4:  Most akin
  GRI 5a: Cases and containers specially fitted
  GRI 5b: Packing materials and containers
  GRI 6:  Subheadings, same rules mutatis mutandis
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.errors import AuditIntegrityViolation, CheckDigitMismatch, RuleOrderViolation
from hsclassify.classification.evaluator import essential_character, most_specific
from hsclassify.classification.knowledge_base import TariffKnowledgeBase
from hsclassify.classification.models import (
    HEADING_LEVEL_STEPS,
    Candidate,
    CandidateLevel,
    Classification,
    ClassificationStatus,
    DecisionKind,
    GRIStep,
    ProductFeatures,
    format_code,
    normalize_code,
)
from hsclassify.classification.recorder import DecisionRecorder
from hsclassify.classification.resolver import CandidateResolver, candidate_confidence, sort_candidates
from hsclassify.classification.steps import (
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
    PreClassificationPayload,
    ScoredCode,
    ValidationPayload,
    definition_for,
)
from hsclassify.text import jaccard, tokenize

logger = logging.getLogger(__name__)

CONTEXT_KEY = "context"
NO_PROVISION_REASON = "no matching provision found"


# ---------------------------------------------------------------------------
# Engine state
# ---------------------------------------------------------------------------


class ClassificationContext(BaseModel):
    """Resumable engine state, persisted in the classification's metadata."""

    description: str
    features: ProductFeatures = Field(default_factory=ProductFeatures)
    candidates: List[Candidate] = Field(default_factory=list)
    excluded: List[Dict[str, str]] = Field(default_factory=list)
    heading: Optional[Candidate] = None
    determining_rule: Optional[GRIStep] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    final_code: Optional[str] = None
    next_step: Optional[GRIStep] = GRIStep.PRE_CLASSIFICATION
    status: Optional[ClassificationStatus] = None
    status_reason: str = ""
    questions_asked: int = 0
    loop_exit: str = ""
    container_classified: bool = False

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_classification(cls, classification: Classification) -> "ClassificationContext":
        raw = classification.metadata.get(CONTEXT_KEY)
        if raw:
            return cls.model_validate(raw)
        return cls(description=classification.description)

    def store(self, classification: Classification) -> None:
        classification.metadata[CONTEXT_KEY] = self.model_dump(mode="json")

    @property
    def query_text(self) -> str:
        return " ".join(part for part in (self.description, self.features.purpose) if part)


@dataclass
class StepOutcome:
    """What a handler decided; the engine records it and advances."""

    payload: BaseModel
    answer: str
    reasoning: str
    kind: DecisionKind = DecisionKind.RULE
    resolved: bool = False
    terminal: bool = False
    legal_basis: List[str] = field(default_factory=list)


def _scored(candidates: List[Candidate]) -> List[ScoredCode]:
    return [ScoredCode(code=candidate.code, score=candidate.match_score) for candidate in candidates]


def _codes(candidates: List[Candidate]) -> str:
    return ", ".join(candidate.display_code for candidate in candidates) or "none"


def _not_applicable(payload: BaseModel, answer: str, reasoning: str) -> StepOutcome:
    return StepOutcome(payload=payload, answer=answer, reasoning=reasoning, kind=DecisionKind.NOT_APPLICABLE)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RuleEngine:
    """Applies the GRI in canonical order, recording every step reached."""

    def __init__(
        self,
        knowledge_base: TariffKnowledgeBase,
        resolver: CandidateResolver | None = None,
        settings: ClassificationSettings | None = None,
    ) -> None:
        self.settings = settings or ClassificationSettings()
        self.knowledge_base = knowledge_base
        self.resolver = resolver or CandidateResolver(knowledge_base, self.settings)

    def apply(self, step: GRIStep, context: ClassificationContext, recorder: DecisionRecorder) -> StepOutcome:
        """Apply *step*, record it, then advance ``context.next_step``."""

        expected = context.next_step
        if step != expected:
            raise RuleOrderViolation(step.value, expected.value if expected else None)
        last = recorder.last_rule_step()
        if last is not None and step.order <= last.order:
            raise RuleOrderViolation(
                step.value,
                expected.value if expected else None,
                f"Step {step.value} already passed; last recorded rule is {last.value}",
            )

        definition = definition_for(step)
        outcome = _HANDLERS[step](self, context)
        recorder.append(
            step,
            question=" ".join(definition.decision_criteria),
            answer=outcome.answer,
            reasoning=outcome.reasoning,
            confidence=context.confidence,
            legal_basis=[definition.citation, *outcome.legal_basis],
            kind=outcome.kind,
            evidence=outcome.payload,
        )
        context.next_step = self._advance(step, outcome)
        logger.info(
            "%s -> %s (%s): %s",
            step.value,
            context.next_step.value if context.next_step else "done",
            outcome.kind.value,
            outcome.answer,
        )
        return outcome

    def reconcile(self, context: ClassificationContext, recorder: DecisionRecorder) -> bool:
        """Bring a stale context snapshot level with the recorded decisions.

        The snapshot is written after the decision it follows, so an
        interrupted run can leave ``next_step`` pointing at a step that is
        already on record. That step's handler is replayed against the
        snapshot, which still holds the state the step started from, to
        rebuild its effects without recording it twice.

        Returns True when a step was replayed.

        Raises:
            AuditIntegrityViolation: if the replay disagrees with the record.
        """

        last = recorder.last_rule_decision()
        step = context.next_step
        if last is None or step is None or last.step != step:
            return False
        outcome = _HANDLERS[step](self, context)
        if outcome.answer != last.answer or outcome.kind != last.kind:
            raise AuditIntegrityViolation(
                recorder.classification_id,
                None,
                f"replay of {step.value} does not match recorded decision {last.decision_id}",
            )
        context.next_step = self._advance(step, outcome)
        logger.info(
            "Replayed recorded step %s; resuming at %s",
            step.value,
            context.next_step.value if context.next_step else "finalize",
        )
        return True

    def _advance(self, step: GRIStep, outcome: StepOutcome) -> Optional[GRIStep]:
        if outcome.terminal:
            return None
        if outcome.resolved and step in HEADING_LEVEL_STEPS:
            return GRIStep.GRI_5A
        return step.next_step()

    def run(
        self,
        classification: Classification,
        context: ClassificationContext,
        recorder: DecisionRecorder,
        persist: Callable[[Classification], None],
    ) -> Classification:
        """Apply steps from ``context.next_step`` to the end, persisting after each."""

        if self.reconcile(context, recorder):
            if context.next_step is not None:
                classification.current_step = context.next_step
            context.store(classification)
            persist(classification)

        while context.next_step is not None:
            self.apply(context.next_step, context, recorder)
            if context.next_step is not None:
                classification.current_step = context.next_step
            context.store(classification)
            persist(classification)

        self.finalize(classification, context)
        context.store(classification)
        persist(classification)
        return classification

    def finalize(self, classification: Classification, context: ClassificationContext) -> None:
        status = context.status or ClassificationStatus.NEEDS_REVIEW
        best = context.final_code or (context.heading.code if context.heading else None)
        classification.confidence = context.confidence
        classification.metadata["best_code"] = best
        classification.metadata["determining_rule"] = (
            context.determining_rule.value if context.determining_rule else None
        )
        classification.metadata["status_reason"] = context.status_reason
        if status == ClassificationStatus.COMPLETED:
            classification.final_code = context.final_code
            classification.status = status
        else:
            classification.status = status
            classification.final_code = None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _resolve_heading(self, context: ClassificationContext, winner: Candidate, step: GRIStep) -> None:
        context.heading = winner
        context.determining_rule = step
        pool = [winner, *[c for c in context.candidates if c.code != winner.code]]
        total = sum(max(c.match_score, 0.0) for c in pool)
        share = winner.match_score / total if total > 0 else 0.0
        context.confidence = round(min(share, self.settings.confidence_cap), 4)

    def _set_candidates(self, context: ClassificationContext, candidates: List[Candidate]) -> None:
        context.candidates = sort_candidates(candidates)
        context.confidence = candidate_confidence(context.candidates, self.settings.confidence_cap)


# ---------------------------------------------------------------------------
# Step handlers
# ---------------------------------------------------------------------------


def _pre_classification(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    features = context.features
    if not context.candidates:
        engine._set_candidates(context, engine.resolver.resolve(context.description, features).candidates)
    payload = PreClassificationPayload(
        materials=features.material_names,
        purpose=features.purpose,
        technical_specs=list(features.technical_specs),
        candidates=_scored(context.candidates),
        questions_asked=context.questions_asked,
        loop_exit=context.loop_exit,
    )
    materials = ", ".join(features.material_names) or "not declared"
    answer = f"Materials: {materials}; purpose: {features.purpose or 'not declared'}"
    reasoning = (
        f"Product analysed after {context.questions_asked} clarification question(s); "
        f"{len(context.candidates)} candidate heading(s) at confidence {context.confidence:.2f}"
    )
    if context.loop_exit:
        reasoning += f" (clarification ended: {context.loop_exit})"
    return StepOutcome(payload=payload, answer=answer, reasoning=reasoning)


def _gri_1(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    result = engine.resolver.resolve(context.description, context.features)
    engine._set_candidates(context, result.candidates)
    context.excluded = [
        {"code": candidate.code, "excluded_by": rule.note_ref, "in_favour_of": rule.to_code}
        for candidate, rule in result.excluded
    ]

    cross_references: List[Dict[str, str]] = []
    notes: List[str] = []
    for candidate in context.candidates:
        for ref in engine.knowledge_base.get_cross_references(candidate.code):
            cross_references.append(
                {"from_code": ref.from_code, "to_code": ref.to_code, "type": ref.type, "note_ref": ref.note_ref}
            )
        notes.extend(
            f"{note.code}: {note.text}" for note in engine.knowledge_base.get_legal_notes(candidate.code)
        )

    payload = Gri1Payload(
        matched=_scored(context.candidates),
        excluded=context.excluded,
        cross_references=cross_references,
        legal_notes=notes,
    )
    legal_basis = [rule.note_ref for _, rule in result.excluded]
    excluded_text = ""
    if result.excluded:
        excluded_text = "; excluded by notes: " + ", ".join(
            f"{candidate.display_code} ({rule.note_ref})" for candidate, rule in result.excluded
        )

    if len(context.candidates) == 1:
        winner = context.candidates[0]
        engine._resolve_heading(context, winner, GRIStep.GRI_1)
        return StepOutcome(
            payload=payload,
            answer=f"Heading {winner.display_code} determined by its terms",
            reasoning=f"Only heading {winner.display_code} ({winner.description}) matches the description{excluded_text}",
            resolved=True,
            legal_basis=legal_basis,
        )
    if not context.candidates:
        return StepOutcome(
            payload=payload,
            answer="No heading matches the terms of the description",
            reasoning=f"No heading text or note covers the goods{excluded_text}; later rules must supply a heading",
            legal_basis=legal_basis,
        )
    return StepOutcome(
        payload=payload,
        answer=f"{len(context.candidates)} headings prima facie classifiable: {_codes(context.candidates)}",
        reasoning=f"Goods are prima facie classifiable under more than one heading{excluded_text}",
        legal_basis=legal_basis,
    )


def _gri_2a(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    if not context.features.incomplete:
        return _not_applicable(
            Gri2aPayload(incomplete=False),
            "Article presented complete and assembled",
            "Rule 2(a) only extends headings to incomplete, unfinished or unassembled articles",
        )
    parts = [candidate for candidate in context.candidates if candidate.parts_heading]
    remaining = [candidate for candidate in context.candidates if not candidate.parts_heading]
    if parts and remaining:
        engine._set_candidates(context, remaining)
        reasoning = (
            f"The incomplete article is treated as the finished article; parts heading(s) "
            f"{_codes(parts)} give way to {_codes(remaining)}"
        )
        removed = [candidate.code for candidate in parts]
    else:
        reasoning = "The incomplete article is treated as the finished article; no parts heading to set aside"
        removed = []
    return StepOutcome(
        payload=Gri2aPayload(incomplete=True, removed_parts_headings=removed),
        answer="Classified as the complete article",
        reasoning=reasoning,
    )


def _covers_all(candidate: Candidate, materials: List[str]) -> bool:
    covered = {name.lower() for name in candidate.materials}
    return bool(materials) and all(material in covered for material in materials)


def _gri_2b(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    features = context.features
    materials = sorted(set(features.material_names))
    if not features.is_composite:
        return _not_applicable(
            Gri2bPayload(materials=materials),
            "Not a mixture or composite",
            f"Goods of a single declared material ({', '.join(materials) or 'none'})",
        )

    covering = next((c for c in context.candidates if _covers_all(c, materials)), None)
    if covering is not None:
        return StepOutcome(
            payload=Gri2bPayload(materials=materials, covering_heading=covering.code),
            answer=f"Heading {covering.display_code} covers every material",
            reasoning=f"A reference to a material includes its mixtures; {covering.display_code} covers {', '.join(materials)}",
        )

    present = {candidate.heading for candidate in context.candidates}
    merged = list(context.candidates)
    for material in materials:
        for component in engine.resolver.component_candidates(material, features):
            if component.heading not in present:
                merged.append(component)
                present.add(component.heading)
    kept, _ = engine.resolver.prune_exclusions(engine.resolver.best_per_heading(merged))
    kept = engine.resolver.apply_floor(kept)
    before = {candidate.code for candidate in context.candidates}
    added = [candidate.code for candidate in kept if candidate.code not in before]
    engine._set_candidates(context, kept)
    return StepOutcome(
        payload=Gri2bPayload(materials=materials, added=added),
        answer=f"Composite of {', '.join(materials)}; classify under Rule 3",
        reasoning=(
            "No candidate heading covers every material; component headings considered"
            + (f" (added {', '.join(format_code(code) for code in added)})" if added else " (none added)")
        ),
    )


def _gri_3a(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    candidates = context.candidates
    if not candidates:
        return _not_applicable(Gri3aPayload(), "No headings to compare", "Rule 3 needs at least one candidate heading")
    if len(candidates) == 1:
        winner = candidates[0]
        engine._resolve_heading(context, winner, GRIStep.GRI_3A)
        return StepOutcome(
            payload=Gri3aPayload(ranking=[winner.code]),
            answer=f"Heading {winner.display_code} is the only remaining provision",
            reasoning="After Rule 2 a single heading remains",
            resolved=True,
        )

    materials = sorted(set(context.features.material_names))
    partial = context.features.is_composite and all(not _covers_all(c, materials) for c in candidates)
    ranking = [c.code for c in sorted(candidates, key=lambda c: (-c.specificity_score, c.code))]
    if partial:
        return StepOutcome(
            payload=Gri3aPayload(ranking=ranking, equally_specific=True, partial_material_coverage=True),
            answer="Headings regarded as equally specific",
            reasoning=(
                f"Each of {_codes(candidates)} refers to part only of the materials "
                f"({', '.join(materials)}); they are equally specific"
            ),
        )

    best = most_specific(candidates)
    if len(best) == 1:
        winner = best[0]
        engine._resolve_heading(context, winner, GRIStep.GRI_3A)
        return StepOutcome(
            payload=Gri3aPayload(ranking=ranking),
            answer=f"Heading {winner.display_code} gives the most specific description",
            reasoning=f"{winner.display_code} ({winner.description}) is more specific than the alternatives",
            resolved=True,
        )
    engine._set_candidates(context, best)
    return StepOutcome(
        payload=Gri3aPayload(ranking=ranking, equally_specific=True),
        answer="Headings regarded as equally specific",
        reasoning=f"{_codes(best)} describe the goods with equal specificity",
    )


def _matches_material(candidate: Candidate, material: str, hs_code: Optional[str]) -> bool:
    if hs_code and normalize_code(hs_code)[:4] == candidate.heading:
        return True
    if material in {name.lower() for name in candidate.materials}:
        return True
    return material in {keyword.lower() for keyword in candidate.keywords}


def _gri_3b(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    features = context.features
    if not context.candidates:
        return _not_applicable(Gri3bPayload(), "No headings to compare", "Rule 3 needs at least one candidate heading")
    if not features.is_composite:
        return _not_applicable(
            Gri3bPayload(),
            "Not a mixture, composite good or set",
            "Essential character only applies to goods of more than one material or component",
        )

    result = essential_character(features.materials)
    if not result.determined:
        return StepOutcome(
            payload=Gri3bPayload(deciding_factors=result.deciding_factors),
            answer="Essential character cannot be determined",
            reasoning=result.reasoning,
        )

    material = result.selected_material or ""
    hs_code = next((m.hs_code for m in features.materials if m.name.lower() == material), None)
    matching = [c for c in context.candidates if _matches_material(c, material, hs_code)]
    payload = Gri3bPayload(
        selected_material=material,
        deciding_factors=result.deciding_factors,
        matching_codes=[c.code for c in matching],
    )
    if len(matching) == 1:
        winner = matching[0]
        engine._resolve_heading(context, winner, GRIStep.GRI_3B)
        return StepOutcome(
            payload=payload,
            answer=f"Heading {winner.display_code}: essential character from {material}",
            reasoning=f"{result.reasoning}; {winner.display_code} is the heading for goods of {material}",
            resolved=True,
        )
    if matching:
        engine._set_candidates(context, matching)
        reasoning = f"{result.reasoning}; several headings cover {material}: {_codes(matching)}"
    else:
        reasoning = f"{result.reasoning}; no candidate heading corresponds to {material}"
    return StepOutcome(payload=payload, answer="Essential character does not single out a heading", reasoning=reasoning)


def _gri_3c(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    if not context.candidates:
        return _not_applicable(Gri3cPayload(), "No headings to compare", "Rule 3 needs at least one candidate heading")
    ordered = sorted(context.candidates, key=lambda c: normalize_code(c.code))
    winner = ordered[-1]
    engine._resolve_heading(context, winner, GRIStep.GRI_3C)
    return StepOutcome(
        payload=Gri3cPayload(numerical_order=[c.code for c in ordered], selected=winner.code),
        answer=f"Heading {winner.display_code} occurs last in numerical order",
        reasoning=f"Of the equally meritorious headings {_codes(ordered)}, {winner.display_code} is last",
        resolved=True,
    )


def _gri_4(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    if context.candidates:
        return _not_applicable(
            Gri4Payload(), "Heading available from earlier rules", "Rule 4 only applies when no heading can be found"
        )
    query = set(tokenize(context.query_text))
    best: Optional[Tuple[float, str, str, str, Candidate]] = None
    unknown: List[str] = []
    for precedent in engine.knowledge_base.lookup_precedents(context.query_text):
        # A precedent only helps if its heading is a provision we can descend into
        entry = engine.knowledge_base.get_entry(normalize_code(precedent.code)[:4])
        if entry is None:
            unknown.append(f"{precedent.precedent_id} ({format_code(precedent.code)})")
            continue
        similarity = round(jaccard(query, set(tokenize(precedent.description))), 4)
        if best is None or similarity > best[0]:
            best = (similarity, precedent.precedent_id, precedent.description, precedent.code, entry)

    if best is None or best[0] < engine.settings.min_analogy_similarity:
        context.status = ClassificationStatus.NEEDS_REVIEW
        context.status_reason = NO_PROVISION_REASON
        context.confidence = 0.0
        reasoning = (
            f"No heading, component lookup or precedent is sufficiently akin "
            f"(best similarity {best[0] if best else 0.0:.2f}); {NO_PROVISION_REASON}"
        )
        if unknown:
            reasoning += f"; precedent(s) citing headings outside the knowledge base: {', '.join(unknown)}"
        return StepOutcome(
            payload=Gri4Payload(similarity=best[0] if best else 0.0),
            answer="No matching provision found",
            reasoning=reasoning,
            terminal=True,
        )

    similarity, precedent_id, description, code, entry = best
    heading = entry.model_copy(update={"match_score": similarity})
    context.candidates = [heading]
    context.heading = heading
    context.determining_rule = GRIStep.GRI_4
    context.confidence = round(min(similarity, engine.settings.confidence_cap), 4)
    return StepOutcome(
        payload=Gri4Payload(
            comparator_id=precedent_id, comparator=description, comparator_code=code, similarity=similarity
        ),
        answer=f"Heading {heading.display_code} by analogy with {precedent_id}",
        reasoning=f"Goods are most akin to '{description}' ({format_code(code)}), similarity {similarity:.2f}",
        resolved=True,
        legal_basis=[precedent_id],
    )


def _gri_5a(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    packaging = context.features.packaging
    if packaging is None:
        return _not_applicable(Gri5aPayload(), "No container presented", "No case or container is presented with the goods")
    if not (packaging.specially_fitted and packaging.long_term_use):
        return _not_applicable(
            Gri5aPayload(container=packaging.description),
            "Not a specially fitted container",
            "Rule 5(a) covers only containers specially shaped or fitted and suitable for long-term use",
        )
    follows = not packaging.imparts_essential_character
    context.container_classified = follows
    review = follows and packaging.reusable
    if follows:
        answer = "Container classified with the goods"
        reasoning = f"{packaging.description} is specially fitted, suitable for long-term use and presented with the goods"
    else:
        answer = "Container classified separately"
        reasoning = f"{packaging.description} gives the whole its essential character; Rule 5(a) does not apply to it"
    if review:
        reasoning += "; the container is also reusable, so Rule 5(b) may speak to it as well"
    return StepOutcome(
        payload=Gri5aPayload(container=packaging.description, follows_goods=follows, legal_review_flag=review),
        answer=answer,
        reasoning=reasoning,
    )


def _gri_5b(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    packaging = context.features.packaging
    if packaging is None:
        return _not_applicable(Gri5bPayload(), "No packing presented", "No packing material or container is presented with the goods")
    if context.container_classified and not packaging.reusable:
        return _not_applicable(
            Gri5bPayload(packing=packaging.description),
            "Container already dealt with under Rule 5(a)",
            "Rule 5(b) is subject to Rule 5(a)",
        )
    follows = not packaging.reusable
    review = context.container_classified and packaging.reusable
    if follows:
        answer = "Packing classified with the goods"
        reasoning = f"{packaging.description} is of a kind normally used for packing such goods"
    else:
        answer = "Packing classified separately"
        reasoning = f"{packaging.description} is clearly suitable for repetitive use"
    if review:
        reasoning += "; Rules 5(a) and 5(b) both apply to this container and need legal review"
    return StepOutcome(
        payload=Gri5bPayload(packing=packaging.description, follows_goods=follows, legal_review_flag=review),
        answer=answer,
        reasoning=reasoning,
    )


def _select_child(scored: List[Candidate]) -> Tuple[Optional[Candidate], str]:
    if len(scored) == 1:
        return scored[0], "only provision at this level"
    positive = [child for child in scored if child.match_score > 0]
    if not positive:
        residual = [child for child in scored if child.residual]
        if residual:
            return residual[-1], "residual 'Other' provision"
        return None, "no subheading matches"
    top = positive[0].match_score
    tied = [child for child in positive if child.match_score == top]
    if len(tied) == 1:
        return tied[0], "terms of the subheading"
    best = most_specific(tied)
    if len(best) == 1:
        return best[0], "most specific subheading"
    return max(best, key=lambda child: normalize_code(child.code)), "last in numerical order"


def _gri_6(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    if context.heading is None:
        return _not_applicable(Gri6Payload(), "No heading determined", "Subheadings can only be compared within a heading")

    heading_code = context.heading.heading
    current = engine.knowledge_base.get_entry(heading_code) or context.heading
    path = [current.code]
    level_rules: List[str] = []
    while True:
        children = engine.knowledge_base.children(current.code)
        if not children:
            break
        scored = engine.resolver.score_children(children, context.query_text, context.features)
        chosen, rule = _select_child(scored)
        if chosen is None:
            level_rules.append(f"{current.display_code}: {rule}")
            break
        level_rules.append(f"{chosen.display_code}: {rule}")
        path.append(chosen.code)
        current = chosen

    context.final_code = current.code
    if level_rules:
        reasoning = f"Subheadings compared level by level under {format_code(heading_code)}: " + "; ".join(level_rules)
    else:
        reasoning = f"Heading {format_code(heading_code)} has no subdivisions"
    return StepOutcome(
        payload=Gri6Payload(heading=heading_code, path=path, level_rules=level_rules),
        answer=f"Code {current.display_code}",
        reasoning=reasoning,
    )


def _validation(engine: RuleEngine, context: ClassificationContext) -> StepOutcome:
    code = context.final_code
    if code is None:
        context.status = ClassificationStatus.NEEDS_REVIEW
        context.status_reason = NO_PROVISION_REASON
        return StepOutcome(
            payload=ValidationPayload(status=context.status.value),
            answer="No final code to validate",
            reasoning=NO_PROVISION_REASON,
            terminal=True,
        )

    final = engine.knowledge_base.get_entry(code)
    if final is None or final.level != CandidateLevel.TARIFF or len(normalize_code(code)) != 8:
        context.status = ClassificationStatus.NEEDS_REVIEW
        context.status_reason = f"{format_code(code)} is not an 8-digit tariff item of the knowledge base"
        logger.warning("Validation stopped on %s: not a known tariff item", format_code(code))
        return StepOutcome(
            payload=ValidationPayload(final_code=code, status=context.status.value),
            answer=f"{format_code(code)}: {context.status.value}",
            reasoning=f"Check digit cannot be re-verified; {context.status_reason}",
            terminal=True,
        )

    computed = engine.knowledge_base.validate_check_digit(code)
    declared = final.check_digit
    mismatch = False
    if declared is not None and declared != computed:
        mismatch = True
        logger.warning("Check digit mismatch for %s: declared %s, computed %s", format_code(code), declared, computed)
        warnings.warn(CheckDigitMismatch(code, declared, computed), stacklevel=2)

    alternatives = [c for c in context.candidates if c.heading != final.heading]
    unresolved: List[Dict[str, str]] = []
    rule = engine.resolver.blocking_exclusion(final, alternatives)
    if rule is not None:
        unresolved.append({"from_code": rule.from_code, "to_code": rule.to_code, "note_ref": rule.note_ref})

    reasons: List[str] = []
    if unresolved:
        reasons.append(f"exclusion {unresolved[0]['note_ref']} remains unresolved")
    if context.confidence < engine.settings.expert_review_threshold:
        reasons.append(
            f"confidence {context.confidence:.2f} below expert review threshold "
            f"{engine.settings.expert_review_threshold:.2f}"
        )
    status = ClassificationStatus.NEEDS_REVIEW if reasons else ClassificationStatus.COMPLETED
    context.status = status
    context.status_reason = "; ".join(reasons)

    checks = [f"check digit {computed}" + (f" (declared {declared})" if mismatch else "")]
    checks.append("no unresolved exclusions" if not unresolved else "unresolved exclusion")
    return StepOutcome(
        payload=ValidationPayload(
            final_code=code,
            check_digit=computed,
            declared_check_digit=declared,
            check_digit_mismatch=mismatch,
            unresolved_exclusions=unresolved,
            status=status.value,
        ),
        answer=f"{format_code(code)}: {status.value}",
        reasoning="; ".join(checks + reasons),
        terminal=True,
    )


_HANDLERS: Dict[GRIStep, Callable[[RuleEngine, ClassificationContext], StepOutcome]] = {
    GRIStep.PRE_CLASSIFICATION: _pre_classification,
    GRIStep.GRI_1: _gri_1,
    GRIStep.GRI_2A: _gri_2a,
    GRIStep.GRI_2B: _gri_2b,
    GRIStep.GRI_3A: _gri_3a,
    GRIStep.GRI_3B: _gri_3b,
    GRIStep.GRI_3C: _gri_3c,
    GRIStep.GRI_4: _gri_4,
    GRIStep.GRI_5A: _gri_5a,
    GRIStep.GRI_5B: _gri_5b,
    GRIStep.GRI_6: _gri_6,
    GRIStep.VALIDATION: _validation,
}

if set(_HANDLERS) != set(GRIStep):  # pragma: no cover - import-time guard
    missing = sorted(step.value for step in set(GRIStep) - set(_HANDLERS))
    raise RuntimeError(f"GRI steps without a handler: {missing}")
