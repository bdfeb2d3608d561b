"""Specificity comparison (GRI 3a) and essential character (GRI 3b).

Specificity here is a placeholder policy: a longer code is a narrower
provision, and among codes of equal depth the longer legal description is
taken as the more specific one. Swap :func:`compare_specificity` out when a
proper legal heuristic is available.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from hsclassify.classification.models import Candidate, MaterialComponent, normalize_code

_ROLE_RANK = {"essential": 3, "important": 2, "auxiliary": 1}


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def compare_specificity(a: Candidate, b: Candidate) -> int:
    """Return >0 when *a* is more specific than *b*, <0 when less, 0 when equal."""

    depth = len(normalize_code(a.code)) - len(normalize_code(b.code))
    if depth:
        return _sign(depth)
    return _sign(len(a.description.strip()) - len(b.description.strip()))


def specificity_score(candidate: Candidate) -> float:
    """Numeric rendition of :func:`compare_specificity` for ranking."""

    digits = len(normalize_code(candidate.code))
    return round(digits + min(len(candidate.description.strip()), 999) / 1000.0, 3)


def most_specific(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Return the candidates tied for most specific (one element when unique)."""

    best: List[Candidate] = []
    for candidate in candidates:
        if not best:
            best = [candidate]
            continue
        order = compare_specificity(candidate, best[0])
        if order > 0:
            best = [candidate]
        elif order == 0:
            best.append(candidate)
    return best


@dataclass
class EssentialCharacterResult:
    selected_material: Optional[str]
    deciding_factors: List[str] = field(default_factory=list)
    reasoning: str = ""
    scores: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def determined(self) -> bool:
        return self.selected_material is not None


def _weight_share(material: MaterialComponent) -> Optional[float]:
    # A bare percentage is a declared share by weight
    if material.weight_percentage is not None:
        return material.weight_percentage
    return material.percentage


_FACTORS: List[tuple[str, Callable[[MaterialComponent], Optional[float]]]] = [
    ("role in use", lambda m: float(_ROLE_RANK[m.role]) if m.role else None),
    ("value", lambda m: m.value_percentage),
    ("weight or bulk", _weight_share),
    ("quantity", lambda m: m.quantity),
]


def essential_character(materials: Sequence[MaterialComponent]) -> EssentialCharacterResult:
    """Select the material that gives a composite good its essential character.

    Factors are tried in order: role in use, value, weight or bulk, quantity.
    A factor without data for any material is skipped; the first factor with
    a unique maximum decides. If every factor ties, nothing is selected.
    """

    merged: Dict[str, MaterialComponent] = {}
    for material in materials:
        merged.setdefault(material.name.lower(), material)
    if not merged:
        return EssentialCharacterResult(None, reasoning="No materials declared")
    if len(merged) == 1:
        (name,) = merged
        return EssentialCharacterResult(
            name,
            deciding_factors=["single material"],
            reasoning=f"{name} is the only declared material",
        )

    considered: List[str] = []
    scores: Dict[str, Dict[str, float]] = {}
    for factor, extract in _FACTORS:
        values = {name: extract(material) for name, material in merged.items()}
        present = {name: value for name, value in values.items() if value is not None}
        if not present:
            continue
        considered.append(factor)
        scores[factor] = present
        top = max(present.values())
        leaders = sorted(name for name, value in present.items() if value == top)
        if len(leaders) == 1:
            winner = leaders[0]
            return EssentialCharacterResult(
                winner,
                deciding_factors=considered,
                reasoning=f"{winner} gives the essential character by {factor} ({top:g})",
                scores=scores,
            )

    if not considered:
        reasoning = "No essential-character factor has data for these materials"
    else:
        reasoning = f"Materials remain tied after {', '.join(considered)}"
    return EssentialCharacterResult(None, deciding_factors=considered, reasoning=reasoning, scores=scores)
