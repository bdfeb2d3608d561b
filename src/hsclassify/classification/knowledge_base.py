"""Tariff knowledge base interface and JSON-backed implementation.

The knowledge base is populated offline (headings, subheadings, tariff items,
legal notes and the derived exclusion / cross-reference indices). The core
only reads from it through :class:`TariffKnowledgeBase`.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from hsclassify.classification.errors import ValidationError
from hsclassify.classification.models import (
    Candidate,
    CandidateLevel,
    CrossReference,
    ExclusionRule,
    LegalNote,
    Precedent,
    normalize_code,
)
from hsclassify.text import token_set, tokenize

logger = logging.getLogger(__name__)

_CHECK_DIGIT_WEIGHTS = (1, 3, 1, 3, 1, 3, 1, 3)


def compute_check_digit(code8: str) -> str:
    """Weighted modulo-10 check digit of an 8-digit tariff code.

    Digits are weighted 1, 3, 1, 3, ... from the left; the check digit is
    ``(10 - sum mod 10) mod 10``.
    """
    digits = normalize_code(code8)
    if len(digits) != 8:
        raise ValidationError(f"Check digit requires an 8-digit code, got {code8!r}")
    total = sum(int(digit) * weight for digit, weight in zip(digits, _CHECK_DIGIT_WEIGHTS))
    return str((10 - total % 10) % 10)


def _prefix_applies(prefix: str, code: str) -> bool:
    prefix_digits = normalize_code(prefix)
    code_digits = normalize_code(code)
    return bool(prefix_digits) and code_digits.startswith(prefix_digits)


class TariffKnowledgeBase(ABC):
    """Read-only tariff nomenclature store."""

    @abstractmethod
    def lookup_by_keyword(self, text: str) -> List[Candidate]:
        """Return provisions whose index terms overlap *text* (unscored)."""

    @abstractmethod
    def get_exclusions(self, code: str) -> List[ExclusionRule]:
        """Exclusion rules declared by the chapter/heading notes governing *code*."""

    @abstractmethod
    def get_cross_references(self, code: str) -> List[CrossReference]:
        raise NotImplementedError

    @abstractmethod
    def get_legal_notes(self, code: str) -> List[LegalNote]:
        raise NotImplementedError

    @abstractmethod
    def get_entry(self, code: str) -> Optional[Candidate]:
        raise NotImplementedError

    @abstractmethod
    def children(self, code: str) -> List[Candidate]:
        """Provisions one level below *code* (subheadings of a heading, etc.)."""

    @abstractmethod
    def lookup_precedents(self, text: str) -> List[Precedent]:
        raise NotImplementedError

    def validate_check_digit(self, code8: str) -> str:
        return compute_check_digit(code8)


class JsonKnowledgeBase(TariffKnowledgeBase):
    """In-memory knowledge base loaded from a JSON document."""

    def __init__(self, payload: Mapping[str, Any]) -> None:
        self.version = str(payload.get("version", ""))
        self._entries: Dict[str, Candidate] = {}
        for raw in payload.get("entries", []):
            entry = _entry_from_raw(raw)
            self._entries[entry.code] = entry
        self._exclusions = [ExclusionRule(**_normalized_link(raw)) for raw in payload.get("exclusions", [])]
        self._cross_references = [
            CrossReference(**_normalized_link(raw)) for raw in payload.get("cross_references", [])
        ]
        self._notes = [
            LegalNote(**{**raw, "code": normalize_code(raw.get("code", ""))}) for raw in payload.get("notes", [])
        ]
        self._precedents = [
            Precedent(**{**raw, "code": normalize_code(raw.get("code", ""))})
            for raw in payload.get("precedents", [])
        ]
        self._index: Dict[str, set[str]] = {
            code: token_set(entry.keywords) | token_set(entry.materials) for code, entry in self._entries.items()
        }
        self._precedent_index = {item.precedent_id: set(tokenize(item.description)) for item in self._precedents}

    @classmethod
    def from_path(cls, path: str | Path) -> "JsonKnowledgeBase":
        source = Path(path)
        payload = json.loads(source.read_text(encoding="utf-8"))
        knowledge_base = cls(payload)
        logger.info(
            "Loaded knowledge base %s: %d provisions, %d exclusions",
            knowledge_base.version or source.name,
            len(knowledge_base._entries),
            len(knowledge_base._exclusions),
        )
        return knowledge_base

    @property
    def entries(self) -> List[Candidate]:
        return [self._entries[code] for code in sorted(self._entries)]

    def lookup_by_keyword(self, text: str) -> List[Candidate]:
        query = set(tokenize(text))
        if not query:
            return []
        matches = [
            self._entries[code].model_copy()
            for code in sorted(self._entries)
            if self._index[code] & query
        ]
        return matches

    def get_exclusions(self, code: str) -> List[ExclusionRule]:
        return [rule for rule in self._exclusions if _prefix_applies(rule.from_code, code)]

    def get_cross_references(self, code: str) -> List[CrossReference]:
        return [ref for ref in self._cross_references if _prefix_applies(ref.from_code, code)]

    def get_legal_notes(self, code: str) -> List[LegalNote]:
        return [note for note in self._notes if _prefix_applies(note.code, code)]

    def get_entry(self, code: str) -> Optional[Candidate]:
        entry = self._entries.get(normalize_code(code))
        return entry.model_copy() if entry else None

    def children(self, code: str) -> List[Candidate]:
        parent = normalize_code(code)
        depth = len(parent) + 2
        return [
            self._entries[child].model_copy()
            for child in sorted(self._entries)
            if child.startswith(parent) and len(child) == depth
        ]

    def lookup_precedents(self, text: str) -> List[Precedent]:
        query = set(tokenize(text))
        return [item for item in self._precedents if self._precedent_index[item.precedent_id] & query]

    def declared_check_digit(self, code8: str) -> Optional[str]:
        entry = self._entries.get(normalize_code(code8))
        return entry.check_digit if entry else None


def _entry_from_raw(raw: Mapping[str, Any]) -> Candidate:
    code = normalize_code(raw["code"])
    level = raw.get("level") or CandidateLevel.for_code(code).value
    check_digit = raw.get("check_digit")
    return Candidate(
        code=code,
        description=str(raw.get("description", "")),
        level=CandidateLevel(level),
        materials=[str(item).lower() for item in raw.get("materials", [])],
        keywords=[str(item).lower() for item in raw.get("keywords", [])],
        parts_heading=bool(raw.get("parts_heading", False)),
        residual=bool(raw.get("residual", False)),
        check_digit=str(check_digit) if check_digit is not None else None,
    )


def _normalized_link(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        **raw,
        "from_code": normalize_code(raw.get("from_code", "")),
        "to_code": normalize_code(raw.get("to_code", "")),
    }


def _default_data_path() -> Path:
    return Path(__file__).resolve().parent / "data" / "knowledge_base.json"


@lru_cache(maxsize=4)
def get_default_knowledge_base(path: str | None = None) -> JsonKnowledgeBase:
    """Return a cached knowledge base loaded from *path* or the bundled sample."""
    return JsonKnowledgeBase.from_path(path or _default_data_path())


def iter_tariff_items(knowledge_base: JsonKnowledgeBase) -> Iterable[Candidate]:
    return (entry for entry in knowledge_base.entries if entry.level == CandidateLevel.TARIFF)
