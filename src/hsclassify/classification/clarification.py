"""Confidence and clarification loop at the pre-classification gate.

Each round runs a resolver pass and computes the confidence of the leading
candidate. While confidence is below target, one question is asked about the
first missing feature category in priority order: purpose, material,
material detail. A category is never asked twice and the number of questions
is bounded.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.errors import ValidationError
from hsclassify.classification.features import KeywordFeatureExtractor
from hsclassify.classification.models import (
    Candidate,
    ClarificationQuestion,
    GRIStep,
    MaterialComponent,
    ProductFeatures,
    QuestionOption,
)
from hsclassify.classification.resolver import CandidateResolver, candidate_confidence

PRIORITY = ("purpose", "material", "material_detail")

EXIT_CONFIDENCE = "confidence_reached"
EXIT_EXHAUSTED = "no_more_questions"
EXIT_LIMIT = "question_limit"

_QUESTIONS: Dict[str, str] = {
    "purpose": "What is the primary purpose or intended use of the product?",
    "material": "What material is the product mainly made of?",
    "material_detail": "What share of the product (by weight, or by value if known) does each material make up?",
}


@dataclass
class ClarificationRound:
    candidates: List[Candidate]
    confidence: float
    question: Optional[ClarificationQuestion] = None
    exit_reason: Optional[str] = None
    excluded: List[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.question is None


class ClarificationLoop:
    def __init__(
        self,
        resolver: CandidateResolver,
        settings: ClassificationSettings | None = None,
        extractor: KeywordFeatureExtractor | None = None,
    ) -> None:
        self.resolver = resolver
        self.settings = settings or resolver.settings
        self.extractor = extractor or KeywordFeatureExtractor()

    def missing_categories(self, features: ProductFeatures) -> List[str]:
        missing: List[str] = []
        if not features.purpose:
            missing.append("purpose")
        if not features.materials:
            missing.append("material")
        elif features.is_composite and any(
            m.percentage is None and m.weight_percentage is None and m.value_percentage is None
            for m in features.materials
        ):
            missing.append("material_detail")
        return missing

    def next_category(self, features: ProductFeatures, asked: Sequence[str]) -> Optional[str]:
        missing = self.missing_categories(features)
        for category in PRIORITY:
            if category in missing and category not in asked:
                return category
        return None

    def evaluate(
        self,
        description: str,
        features: ProductFeatures,
        *,
        asked: Sequence[str],
        questions_asked: int,
    ) -> ClarificationRound:
        """One resolver pass plus the decision whether to ask another question."""

        result = self.resolver.resolve(description, features)
        confidence = candidate_confidence(result.candidates, self.settings.confidence_cap)
        round_ = ClarificationRound(
            candidates=result.candidates,
            confidence=confidence,
            excluded=[candidate.code for candidate, _ in result.excluded],
        )
        if confidence >= self.settings.target_confidence:
            round_.exit_reason = EXIT_CONFIDENCE
            return round_
        if questions_asked >= self.settings.max_questions:
            round_.exit_reason = EXIT_LIMIT
            return round_
        category = self.next_category(features, asked)
        if category is None:
            round_.exit_reason = EXIT_EXHAUSTED
            return round_
        round_.question = self.build_question(category, result.candidates, features, confidence)
        return round_

    def build_question(
        self,
        category: str,
        candidates: Sequence[Candidate],
        features: ProductFeatures,
        confidence: float,
    ) -> ClarificationQuestion:
        return ClarificationQuestion(
            question_id=str(uuid.uuid4()),
            step=GRIStep.PRE_CLASSIFICATION,
            feature=category,
            question=_QUESTIONS[category],
            options=self.options_for(category, candidates, features),
            allow_free_text=True,
            confidence=confidence,
        )

    def options_for(
        self, category: str, candidates: Sequence[Candidate], features: ProductFeatures
    ) -> List[QuestionOption]:
        options: List[QuestionOption] = []
        if category == "purpose":
            for candidate in candidates[:3]:
                label = candidate.description.rstrip(".")
                value = " ".join(candidate.keywords[:3]) or label
                options.append(QuestionOption(label=label[:120], value=value))
        elif category == "material":
            seen: List[str] = []
            for candidate in candidates:
                for material in candidate.materials:
                    if material not in seen:
                        seen.append(material)
            options = [QuestionOption(label=name.capitalize(), value=name) for name in seen[:3]]
        else:
            names = features.material_names
            if names:
                options = [
                    QuestionOption(label=f"Mostly {name}", value=f"80% {name}") for name in names[:3]
                ]
        return options

    def apply_answer(self, features: ProductFeatures, category: str, answer: str) -> ProductFeatures:
        """Merge a free-text or option answer into the features."""

        text = (answer or "").strip()
        if not text:
            raise ValidationError("Answer must not be empty")
        if category == "purpose":
            return features.model_copy(update={"purpose": text})
        if category == "material":
            found = self.extractor.extract_materials(text) or [MaterialComponent(name=text.lower())]
            return features.model_copy(update={"materials": _merge_materials(features.materials, found)})
        if category == "material_detail":
            found = self.extractor.extract_materials(text)
            if not found:
                raise ValidationError(f"No material shares found in answer: {text!r}")
            return features.model_copy(update={"materials": _merge_materials(features.materials, found)})
        raise ValidationError(f"Unknown feature category: {category}")


def _merge_materials(
    existing: Sequence[MaterialComponent], updates: Sequence[MaterialComponent]
) -> List[MaterialComponent]:
    merged: Dict[str, MaterialComponent] = {m.name.lower(): m for m in existing}
    for update in updates:
        key = update.name.lower()
        current = merged.get(key)
        if current is None:
            merged[key] = update
            continue
        changes = {name: value for name, value in update.model_dump().items() if value is not None and name != "name"}
        merged[key] = current.model_copy(update=changes)
    return list(merged.values())
