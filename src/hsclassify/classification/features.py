"""Feature extraction: free text to structured classification hints."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Set

from hsclassify.classification.models import MaterialComponent, PackagingInfo, ProductFeatures
from hsclassify.text import stem, tokenize

# Material vocabulary: surface form -> canonical material name
MATERIAL_VOCABULARY: Dict[str, str] = {
    "cotton": "cotton",
    "polyester": "polyester",
    "nylon": "nylon",
    "acrylic": "acrylic",
    "wool": "wool",
    "cashmere": "wool",
    "silk": "silk",
    "linen": "linen",
    "viscose": "viscose",
    "synthetic": "synthetic",
    "leather": "leather",
    "rubber": "rubber",
    "silicone": "rubber",
    "plastic": "plastic",
    "plastics": "plastic",
    "polypropylene": "plastic",
    "polyethylene": "plastic",
    "pvc": "plastic",
    "steel": "steel",
    "iron": "iron",
    "aluminium": "aluminium",
    "aluminum": "aluminium",
    "copper": "copper",
    "brass": "copper",
    "wood": "wood",
    "wooden": "wood",
    "bamboo": "wood",
    "glass": "glass",
    "ceramic": "ceramic",
    "porcelain": "ceramic",
    "paper": "paper",
    "cardboard": "paper",
    "textile": "textile",
}

# Construction / processing terms that qualify an article without naming it
TECHNICAL_TERMS: Set[str] = {
    "knitted", "crocheted", "woven", "non-woven", "printed", "dyed", "bleached",
    "unbleached", "plain", "stainless", "electric", "electronic", "wireless",
    "rechargeable", "waterproof", "portable", "handheld", "digital", "touchscreen",
    "battery-powered", "moulded", "molded", "forged", "cast",
}

INCOMPLETE_MARKERS: Set[str] = {
    "unfinished", "incomplete", "unassembled", "disassembled", "semi-finished",
    "knocked-down", "kit", "blank",
}

_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%\s*((?:[a-z][a-z\-]*\s*){1,3})")
_PURPOSE_RE = re.compile(
    r"\b(?:used for|designed (?:for|to)|intended for|for use (?:in|as|with)|suitable for)\s+([^.,;]+)"
)
_FITTED_RE = re.compile(r"\b(?:specially (?:fitted|shaped)|fitted case|carrying case|presentation case)\b")
_PACKING_RE = re.compile(r"\b(?:packed in|packaged in|presented in|supplied in|in a (?:box|carton|bag|case|tin|jar))\b")
_REUSABLE_RE = re.compile(r"\b(?:reusable|returnable|refillable|for repeated use|repetitive use)\b")


class FeatureExtractor(ABC):
    """Turns a product description into structured hints."""

    @abstractmethod
    def extract_features(self, text: str) -> ProductFeatures:
        raise NotImplementedError


class KeywordFeatureExtractor(FeatureExtractor):
    """Vocabulary and pattern based extractor.

    Understanding free text is a collaborator concern; this implementation only
    needs to be deterministic and good enough to drive the rule engine.
    """

    def __init__(self, materials: Mapping[str, str] | None = None) -> None:
        self._materials = dict(materials or MATERIAL_VOCABULARY)

    def material_for(self, word: str) -> Optional[str]:
        word = word.lower().strip()
        return self._materials.get(word) or self._materials.get(stem(word))

    def extract_materials(self, text: str) -> List[MaterialComponent]:
        lower = (text or "").lower()
        found: Dict[str, MaterialComponent] = {}

        for match in _PERCENT_RE.finditer(lower):
            share = float(match.group(1))
            for word in match.group(2).split():
                name = self.material_for(word)
                if name:
                    if name not in found and share <= 100:
                        found[name] = MaterialComponent(name=name, percentage=share)
                    break

        for word in re.findall(r"[a-z][a-z\-]*", lower):
            name = self.material_for(word)
            if name and name not in found:
                found[name] = MaterialComponent(name=name)

        return list(found.values())

    def extract_purpose(self, text: str) -> Optional[str]:
        match = _PURPOSE_RE.search((text or "").lower())
        if not match:
            return None
        purpose = match.group(1).strip()
        return purpose or None

    def extract_packaging(self, text: str) -> Optional[PackagingInfo]:
        lower = (text or "").lower()
        fitted = _FITTED_RE.search(lower)
        packed = _PACKING_RE.search(lower)
        reusable = bool(_REUSABLE_RE.search(lower))
        if not fitted and not packed and not reusable:
            return None
        description = (fitted or packed).group(0) if (fitted or packed) else "packing"
        return PackagingInfo(
            description=description,
            specially_fitted=bool(fitted),
            long_term_use=bool(fitted),
            reusable=reusable,
        )

    def extract_features(self, text: str) -> ProductFeatures:
        raw_words = set(re.findall(r"[a-z0-9]+(?:-[a-z0-9]+)*", (text or "").lower()))
        tokens = set(tokenize(text))
        specs = sorted(term for term in TECHNICAL_TERMS if term in raw_words or term in tokens)
        return ProductFeatures(
            materials=self.extract_materials(text),
            purpose=self.extract_purpose(text),
            technical_specs=specs,
            packaging=self.extract_packaging(text),
            incomplete=bool(raw_words & INCOMPLETE_MARKERS),
        )


def merge_context(features: ProductFeatures, context: Mapping[str, Any] | None) -> ProductFeatures:
    """Overlay caller-supplied structured context on extracted features.

    Explicit context wins over anything extracted from the description.
    """
    if not context:
        return features
    updates: Dict[str, Any] = {}
    if context.get("materials"):
        updates["materials"] = [
            item if isinstance(item, MaterialComponent) else MaterialComponent(**item)
            for item in context["materials"]
        ]
    if context.get("purpose"):
        updates["purpose"] = str(context["purpose"])
    if context.get("technical_specs"):
        updates["technical_specs"] = sorted(set(features.technical_specs) | set(context["technical_specs"]))
    if context.get("packaging"):
        packaging = context["packaging"]
        updates["packaging"] = packaging if isinstance(packaging, PackagingInfo) else PackagingInfo(**packaging)
    if "incomplete" in context:
        updates["incomplete"] = bool(context["incomplete"])
    return features.model_copy(update=updates)
