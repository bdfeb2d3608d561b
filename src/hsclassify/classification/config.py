"""Engine settings with environment overrides."""

from __future__ import annotations

import os
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hsclassify.classification.models import CandidateLevel


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class ClassificationSettings(BaseModel):
    """Thresholds and weights for the rule engine and clarification loop."""

    min_description_length: int = Field(default=10, ge=1)
    target_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    expert_review_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    low_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_questions: int = Field(default=5, ge=0)
    confidence_cap: float = Field(default=0.99, gt=0.0, le=1.0)

    keyword_weight: float = Field(default=0.6, ge=0.0)
    material_weight: float = Field(default=0.3, ge=0.0)
    level_boost: Dict[CandidateLevel, float] = Field(
        default_factory=lambda: {
            CandidateLevel.HEADING: 0.1,
            CandidateLevel.SUBHEADING: 0.05,
            CandidateLevel.TARIFF: 0.0,
        }
    )
    candidate_floor_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    min_analogy_similarity: float = Field(default=0.2, ge=0.0, le=1.0)

    knowledge_base_path: Optional[str] = None
    webhook_url: Optional[str] = None
    database_url: Optional[str] = None
    redis_url: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ClassificationSettings":
        if self.expert_review_threshold > self.target_confidence:
            raise ValueError("expert_review_threshold must not exceed target_confidence")
        return self

    @classmethod
    def from_env(cls) -> "ClassificationSettings":
        """Build settings from ``HSC_*`` environment variables."""

        defaults = cls()
        return cls(
            min_description_length=_env_int("HSC_MIN_DESCRIPTION_LENGTH", defaults.min_description_length),
            target_confidence=_env_float("HSC_TARGET_CONFIDENCE", defaults.target_confidence),
            expert_review_threshold=_env_float("HSC_EXPERT_REVIEW_THRESHOLD", defaults.expert_review_threshold),
            low_confidence_threshold=_env_float("HSC_LOW_CONFIDENCE_THRESHOLD", defaults.low_confidence_threshold),
            max_questions=_env_int("HSC_MAX_QUESTIONS", defaults.max_questions),
            confidence_cap=_env_float("HSC_CONFIDENCE_CAP", defaults.confidence_cap),
            keyword_weight=_env_float("HSC_KEYWORD_WEIGHT", defaults.keyword_weight),
            material_weight=_env_float("HSC_MATERIAL_WEIGHT", defaults.material_weight),
            candidate_floor_ratio=_env_float("HSC_CANDIDATE_FLOOR_RATIO", defaults.candidate_floor_ratio),
            min_analogy_similarity=_env_float("HSC_MIN_ANALOGY_SIMILARITY", defaults.min_analogy_similarity),
            knowledge_base_path=os.getenv("HSC_KNOWLEDGE_BASE_PATH") or None,
            webhook_url=os.getenv("HSC_WEBHOOK_URL") or None,
            database_url=os.getenv("HSC_DATABASE_URL") or None,
            redis_url=os.getenv("HSC_REDIS_URL") or None,
        )
