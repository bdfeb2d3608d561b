"""Candidate resolution: description and features to scored tariff provisions.

Scoring:

    score = keyword_weight * keyword_overlap
          + material_weight * material_match
          + level_boost            (initial pass only)

``keyword_overlap`` is the share of the description's non-material terms found
in a provision's index keywords. ``material_match`` is the declared share of
the good's materials that the provision covers (or the matched fraction when
no percentages are declared). Material and technical terms contribute to the
score but cannot open a candidate on their own unless no article term matches
anything at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.evaluator import specificity_score
from hsclassify.classification.features import MATERIAL_VOCABULARY, TECHNICAL_TERMS
from hsclassify.classification.knowledge_base import TariffKnowledgeBase
from hsclassify.classification.models import Candidate, ExclusionRule, ProductFeatures, normalize_code
from hsclassify.text import token_set, tokenize

logger = logging.getLogger(__name__)


@dataclass
class ResolverResult:
    candidates: List[Candidate] = field(default_factory=list)
    excluded: List[Tuple[Candidate, ExclusionRule]] = field(default_factory=list)
    fallback: bool = False

    @property
    def top(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None


def candidate_confidence(candidates: Sequence[Candidate], cap: float = 0.99) -> float:
    """``top.score / sum(scores)`` capped at *cap*; 0 for an empty set."""

    if not candidates:
        return 0.0
    total = sum(max(candidate.match_score, 0.0) for candidate in candidates)
    if total <= 0:
        return 0.0
    top = max(candidate.match_score for candidate in candidates)
    return round(min(top / total, cap), 4)


def sort_candidates(candidates: Iterable[Candidate]) -> List[Candidate]:
    return sorted(candidates, key=lambda candidate: (-candidate.match_score, candidate.code))


class CandidateResolver:
    """Scores knowledge base provisions against a product description."""

    def __init__(
        self,
        knowledge_base: TariffKnowledgeBase,
        settings: ClassificationSettings | None = None,
        *,
        material_terms: Iterable[str] | None = None,
        technical_terms: Iterable[str] | None = None,
    ) -> None:
        self.knowledge_base = knowledge_base
        self.settings = settings or ClassificationSettings()
        self._material_terms: Set[str] = token_set(material_terms or MATERIAL_VOCABULARY.keys())
        self._technical_terms: Set[str] = token_set(technical_terms or TECHNICAL_TERMS)

    # ------------------------------------------------------------------
    # Term handling
    # ------------------------------------------------------------------

    def query_terms(self, description: str, features: ProductFeatures) -> Set[str]:
        terms = set(tokenize(description))
        if features.purpose:
            terms.update(tokenize(features.purpose))
        terms.update(token_set(features.technical_specs))
        return terms

    def material_terms(self, features: ProductFeatures) -> Set[str]:
        return self._material_terms | token_set(features.material_names)

    def article_terms(self, description: str, features: ProductFeatures) -> Set[str]:
        return self.query_terms(description, features) - self.material_terms(features) - self._technical_terms

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def keyword_overlap(self, candidate: Candidate, terms: Set[str]) -> float:
        if not terms:
            return 0.0
        return len(terms & token_set(candidate.keywords)) / len(terms)

    def material_match(self, candidate: Candidate, features: ProductFeatures) -> float:
        if not features.materials:
            return 0.0
        covered = {name.lower() for name in candidate.materials}
        matched = [material for material in features.materials if material.name.lower() in covered]
        if any(material.percentage is not None for material in features.materials):
            share = sum(material.percentage or 0.0 for material in matched) / 100.0
            return min(share, 1.0)
        return len(matched) / len(features.materials)

    def score(
        self,
        candidate: Candidate,
        description: str,
        features: ProductFeatures,
        *,
        boost: bool = True,
    ) -> Candidate:
        terms = self.query_terms(description, features) - self.material_terms(features)
        value = self.settings.keyword_weight * self.keyword_overlap(candidate, terms)
        value += self.settings.material_weight * self.material_match(candidate, features)
        if boost:
            value += self.settings.level_boost.get(candidate.level, 0.0)
        return candidate.model_copy(
            update={"match_score": round(value, 6), "specificity_score": specificity_score(candidate)}
        )

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def resolve(self, description: str, features: ProductFeatures) -> ResolverResult:
        """Initial pass: lookup, article-term gate, exclusion pruning, floor."""

        query = self.query_terms(description, features) | token_set(features.material_names)
        if not query:
            return ResolverResult()
        found = self.knowledge_base.lookup_by_keyword(" ".join(sorted(query)))
        if not found:
            return ResolverResult()

        article = self.article_terms(description, features)
        gated = [entry for entry in found if article & token_set(entry.keywords)]
        fallback = not gated
        if fallback:
            gated = found
            logger.debug("No article term matched; falling back to %d material/spec matches", len(found))

        scored = [self.score(entry, description, features) for entry in gated]
        kept, excluded = self.prune_exclusions(self.best_per_heading(scored))
        return ResolverResult(candidates=self.apply_floor(kept), excluded=excluded, fallback=fallback)

    def component_candidates(self, material: str, features: ProductFeatures) -> List[Candidate]:
        """Provisions covering *material* as such (GRI 2(b) component lookup)."""

        name = material.lower()
        found = [
            entry
            for entry in self.knowledge_base.lookup_by_keyword(name)
            if name in {item.lower() for item in entry.materials}
        ]
        scored = [self.score(entry, "", features) for entry in found]
        return self.best_per_heading(scored)

    def score_children(self, children: Sequence[Candidate], description: str, features: ProductFeatures) -> List[Candidate]:
        """Score provisions one level down (GRI 6); no level boost, no floor."""

        return sort_candidates(self.score(child, description, features, boost=False) for child in children)

    # ------------------------------------------------------------------
    # Set operations
    # ------------------------------------------------------------------

    def best_per_heading(self, candidates: Iterable[Candidate]) -> List[Candidate]:
        best: Dict[str, Candidate] = {}
        for candidate in sort_candidates(candidates):
            best.setdefault(candidate.heading, candidate)
        return sort_candidates(best.values())

    def prune_exclusions(
        self, candidates: Sequence[Candidate]
    ) -> Tuple[List[Candidate], List[Tuple[Candidate, ExclusionRule]]]:
        """Drop candidates whose governing notes exclude another candidate's goods."""

        kept: List[Candidate] = []
        excluded: List[Tuple[Candidate, ExclusionRule]] = []
        for candidate in candidates:
            rule = self.blocking_exclusion(candidate, candidates)
            if rule is None:
                kept.append(candidate)
            else:
                excluded.append((candidate, rule))
        return kept, excluded

    def blocking_exclusion(self, candidate: Candidate, others: Sequence[Candidate]) -> Optional[ExclusionRule]:
        for rule in self.knowledge_base.get_exclusions(candidate.code):
            target = normalize_code(rule.to_code)
            for other in others:
                if other.heading == candidate.heading:
                    continue
                if normalize_code(other.code).startswith(target):
                    return rule
        return None

    def apply_floor(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        ordered = sort_candidates(candidates)
        if not ordered:
            return []
        floor = ordered[0].match_score * self.settings.candidate_floor_ratio
        return [candidate for candidate in ordered if candidate.match_score >= floor]
