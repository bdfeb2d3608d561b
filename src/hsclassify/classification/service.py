"""Presentation-facing classification operations.

Every request loads the classification from the repository, does its work
under a per-classification lock, and writes everything back before
returning. Nothing about a classification lives in process memory between
requests.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from hsclassify.classification.clarification import ClarificationLoop
from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.errors import (
    AuditIntegrityViolation,
    ClassificationNotFound,
    RuleOrderViolation,
    ValidationError,
)
from hsclassify.classification.features import FeatureExtractor, KeywordFeatureExtractor, merge_context
from hsclassify.classification.gri_engine import ClassificationContext, RuleEngine
from hsclassify.classification.knowledge_base import TariffKnowledgeBase, get_default_knowledge_base
from hsclassify.classification.legal_record import LegalRecord, build_legal_record
from hsclassify.classification.models import (
    AuditEntry,
    Classification,
    ClassificationProgress,
    ClassificationStatus,
    ClarificationQuestion,
    Decision,
    DecisionKind,
    GRIStep,
    format_code,
    normalize_code,
)
from hsclassify.classification.notifications import (
    LoggingNotifier,
    LowConfidenceMonitor,
    LowConfidenceNotifier,
    WebhookNotifier,
)
from hsclassify.classification.recorder import DecisionRecorder
from hsclassify.classification.repository import ClassificationRepository, InMemoryClassificationRepository
from hsclassify.classification.resolver import CandidateResolver
from hsclassify.observability import bind_classification_id, log_event, reset_classification_id

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_question"
ASKED_KEY = "asked_categories"
COUNT_KEY = "questions_asked"


def _touch(classification: Classification) -> None:
    classification.updated_at = datetime.now(timezone.utc).isoformat()


@dataclass
class _LockSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ClassificationService:
    """Runs the clarification gate and the rule engine for each classification."""

    def __init__(
        self,
        repository: ClassificationRepository | None = None,
        knowledge_base: TariffKnowledgeBase | None = None,
        *,
        settings: ClassificationSettings | None = None,
        extractor: FeatureExtractor | None = None,
        notifier: LowConfidenceNotifier | None = None,
    ) -> None:
        self.settings = settings or ClassificationSettings()
        self.repository = repository or InMemoryClassificationRepository()
        self.knowledge_base = knowledge_base or get_default_knowledge_base(self.settings.knowledge_base_path)
        self.extractor = extractor or KeywordFeatureExtractor()
        self.resolver = CandidateResolver(self.knowledge_base, self.settings)
        self.engine = RuleEngine(self.knowledge_base, self.resolver, self.settings)
        answer_parser = self.extractor if isinstance(self.extractor, KeywordFeatureExtractor) else None
        self.clarifier = ClarificationLoop(self.resolver, self.settings, answer_parser)
        if notifier is None:
            notifier = WebhookNotifier(self.settings.webhook_url) if self.settings.webhook_url else LoggingNotifier()
        self.monitor = LowConfidenceMonitor(notifier, self.settings.low_confidence_threshold)
        self._locks: Dict[str, _LockSlot] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_env(cls) -> "ClassificationService":
        settings = ClassificationSettings.from_env()
        repository: ClassificationRepository | None = None
        if settings.database_url:
            from hsclassify.db.repository import SqlClassificationRepository

            repository = SqlClassificationRepository.from_url(settings.database_url)
        return cls(repository=repository, settings=settings)

    @contextmanager
    def _locked(self, classification_id: str) -> Iterator[None]:
        """Serialize work on one classification; the lock is dropped once unused."""

        with self._locks_guard:
            slot = self._locks.setdefault(classification_id, _LockSlot())
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._locks_guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._locks[classification_id]

    def _load(self, classification_id: str) -> Classification:
        classification = self.repository.get(classification_id)
        if classification is None:
            raise ClassificationNotFound(classification_id)
        return classification

    def _persist(self, classification: Classification) -> None:
        _touch(classification)
        self.repository.save(classification)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_classification(
        self, description: str, context: Mapping[str, Any] | None = None, *, actor: str = "system"
    ) -> Classification:
        """Create a classification and run it as far as it can go without input."""

        text = (description or "").strip()
        if len(text) < self.settings.min_description_length:
            raise ValidationError(
                f"Description must be at least {self.settings.min_description_length} characters"
            )
        if context is not None and not isinstance(context, Mapping):
            raise ValidationError("Context must be a mapping")
        try:
            features = merge_context(self.extractor.extract_features(text), context)
        except (PydanticValidationError, TypeError) as exc:
            raise ValidationError(f"Invalid classification context: {exc}") from exc

        classification_id = uuid4().hex
        classification = Classification(classification_id=classification_id, description=text)
        engine_context = ClassificationContext(description=text, features=features)
        engine_context.store(classification)
        classification.metadata.update({ASKED_KEY: [], COUNT_KEY: 0, PENDING_KEY: None})

        token = bind_classification_id(classification_id)
        try:
            with self._locked(classification_id):
                self.repository.create(classification)
                recorder = DecisionRecorder(self.repository, classification_id)
                recorder.log_event(
                    "classification_created",
                    actor=actor,
                    details={"description": text, "context": dict(context or {})},
                )
                log_event("classification_created", description=text)
                self._advance(classification, engine_context, recorder)
        finally:
            reset_classification_id(token)
        return classification

    def submit_answer(
        self, classification_id: str, step_id: str, answer: str, *, actor: str = "user"
    ) -> ClassificationProgress:
        """Record an answer to the pending question and continue the run."""

        token = bind_classification_id(classification_id)
        try:
            with self._locked(classification_id):
                classification = self._load(classification_id)
                if classification.is_frozen:
                    raise AuditIntegrityViolation(
                        classification_id, None, "classification is frozen after a failed verification"
                    )
                if classification.is_terminal:
                    raise RuleOrderViolation(
                        step_id, None, f"Classification is already {classification.status.value}"
                    )
                if step_id != classification.current_step.value:
                    raise RuleOrderViolation(step_id, classification.current_step.value)
                pending = classification.metadata.get(PENDING_KEY)
                if not pending:
                    raise RuleOrderViolation(step_id, classification.current_step.value, "No clarification is pending")

                question = ClarificationQuestion.model_validate(pending)
                engine_context = ClassificationContext.from_classification(classification)
                engine_context.features = self.clarifier.apply_answer(engine_context.features, question.feature, answer)

                recorder = DecisionRecorder(self.repository, classification_id)
                recorder.append(
                    GRIStep.PRE_CLASSIFICATION,
                    question=question.question,
                    answer=answer.strip(),
                    reasoning=f"Answer merged into the {question.feature.replace('_', ' ')} features",
                    confidence=question.confidence,
                    kind=DecisionKind.CLARIFICATION,
                    evidence={"question_id": question.question_id, "feature": question.feature},
                    actor=actor,
                )
                classification.metadata[PENDING_KEY] = None
                engine_context.store(classification)
                return self._advance(classification, engine_context, recorder)
        finally:
            reset_classification_id(token)

    def _advance(
        self, classification: Classification, context: ClassificationContext, recorder: DecisionRecorder
    ) -> ClassificationProgress:
        asked: List[str] = list(classification.metadata.get(ASKED_KEY, []))
        count = int(classification.metadata.get(COUNT_KEY, 0))
        round_ = self.clarifier.evaluate(
            context.description, context.features, asked=asked, questions_asked=count
        )
        self.monitor.observe(classification, round_.confidence, {"phase": "clarification"})

        if round_.question is not None:
            question = round_.question
            asked.append(question.feature)
            classification.metadata.update(
                {ASKED_KEY: asked, COUNT_KEY: count + 1, PENDING_KEY: question.model_dump(mode="json")}
            )
            classification.confidence = round_.confidence
            context.candidates = round_.candidates
            context.confidence = round_.confidence
            context.store(classification)
            recorder.log_event(
                "clarification_requested",
                details={"question_id": question.question_id, "feature": question.feature},
            )
            self._persist(classification)
            return ClassificationProgress(
                classification=classification,
                next_step=classification.current_step,
                completed=False,
                confidence=round_.confidence,
                question=question,
            )

        context.candidates = round_.candidates
        context.confidence = round_.confidence
        context.questions_asked = count
        context.loop_exit = round_.exit_reason or ""
        return self._run_rules(classification, context, recorder)

    def _run_rules(
        self, classification: Classification, context: ClassificationContext, recorder: DecisionRecorder
    ) -> ClassificationProgress:
        self.engine.run(classification, context, recorder, self._persist)
        self.monitor.observe(classification, classification.confidence or 0.0, {"phase": "final"})
        recorder.log_event(
            "status_changed",
            details={
                "status": classification.status.value,
                "final_code": classification.final_code,
                "reason": classification.metadata.get("status_reason", ""),
            },
        )
        self._persist(classification)
        log_event(
            "classification_finished",
            status=classification.status.value,
            final_code=classification.final_code,
        )
        return ClassificationProgress(
            classification=classification,
            next_step=None,
            completed=True,
            confidence=classification.confidence or 0.0,
        )

    def resume_classification(self, classification_id: str, *, actor: str = "system") -> ClassificationProgress:
        """Continue a run that stopped part-way, from what the trail records.

        A pending clarification question is returned as-is; it is answered
        through :meth:`submit_answer`.
        """

        token = bind_classification_id(classification_id)
        try:
            with self._locked(classification_id):
                classification = self._load(classification_id)
                if classification.is_frozen:
                    raise AuditIntegrityViolation(
                        classification_id, None, "classification is frozen after a failed verification"
                    )
                if classification.is_terminal:
                    raise RuleOrderViolation(
                        "resume", None, f"Classification is already {classification.status.value}"
                    )
                pending = classification.metadata.get(PENDING_KEY)
                if pending:
                    return ClassificationProgress(
                        classification=classification,
                        next_step=classification.current_step,
                        completed=False,
                        confidence=classification.confidence or 0.0,
                        question=ClarificationQuestion.model_validate(pending),
                    )

                engine_context = ClassificationContext.from_classification(classification)
                recorder = DecisionRecorder(self.repository, classification_id)
                last = recorder.last_rule_decision()
                recorder.log_event(
                    "classification_resumed",
                    actor=actor,
                    details={
                        "next_step": engine_context.next_step.value if engine_context.next_step else None,
                        "last_recorded_step": last.step.value if last else None,
                    },
                )
                log_event("classification_resumed", last_recorded_step=last.step.value if last else None)
                if last is None:
                    # Stopped before the analysis was recorded: the clarification gate runs again
                    return self._advance(classification, engine_context, recorder)
                return self._run_rules(classification, engine_context, recorder)
        finally:
            reset_classification_id(token)

    def get_classification(self, classification_id: str) -> Classification:
        return self._load(classification_id)

    def pending_question(self, classification_id: str) -> Optional[ClarificationQuestion]:
        pending = self._load(classification_id).metadata.get(PENDING_KEY)
        return ClarificationQuestion.model_validate(pending) if pending else None

    def get_decisions(self, classification_id: str) -> List[Decision]:
        self._load(classification_id)
        return self.repository.list_decisions(classification_id)

    def get_audit_trail(self, classification_id: str) -> List[AuditEntry]:
        self._load(classification_id)
        return self.repository.list_audit_entries(classification_id)

    def verify_audit_trail(self, classification_id: str) -> bool:
        """Verify the hash chain; a failure freezes the classification and re-raises."""

        with self._locked(classification_id):
            classification = self._load(classification_id)
            try:
                return DecisionRecorder(self.repository, classification_id).verify()
            except AuditIntegrityViolation as exc:
                logger.error("Audit verification failed, freezing classification: %s", exc)
                classification.metadata["frozen"] = True
                classification.metadata["frozen_reason"] = exc.reason
                self._persist(classification)
                raise

    def archive_classification(
        self, classification_id: str, *, actor: str = "user", reason: str = ""
    ) -> Classification:
        """Soft-terminate a classification; its trail stays intact."""

        with self._locked(classification_id):
            classification = self._load(classification_id)
            if classification.status == ClassificationStatus.ARCHIVED:
                return classification
            previous = classification.status
            if classification.final_code:
                classification.metadata["archived_final_code"] = classification.final_code
            classification.final_code = None
            classification.status = ClassificationStatus.ARCHIVED
            classification.metadata[PENDING_KEY] = None
            DecisionRecorder(self.repository, classification_id).log_event(
                "classification_archived",
                actor=actor,
                details={"previous_status": previous.value, "reason": reason},
            )
            self._persist(classification)
            logger.info("Archived classification %s (was %s)", classification_id, previous.value)
            return classification

    def correct_decision(
        self,
        classification_id: str,
        decision_id: str,
        *,
        answer: str,
        reasoning: str,
        actor: str,
        final_code: str | None = None,
    ) -> Decision:
        """Record a reviewer correction; optionally settle the final code."""

        with self._locked(classification_id):
            classification = self._load(classification_id)
            if classification.is_frozen:
                raise AuditIntegrityViolation(classification_id, None, "classification is frozen")
            code = normalize_code(final_code) if final_code else None
            if code is not None:
                if classification.status not in (ClassificationStatus.COMPLETED, ClassificationStatus.NEEDS_REVIEW):
                    raise RuleOrderViolation(
                        "correction", None, f"Cannot settle a code on a {classification.status.value} classification"
                    )
                if self.knowledge_base.get_entry(code) is None:
                    raise ValidationError(f"Unknown tariff code: {final_code}")

            recorder = DecisionRecorder(self.repository, classification_id)
            decision = recorder.supersede(
                decision_id,
                answer=answer,
                reasoning=reasoning,
                actor=actor,
                evidence={"final_code": code} if code else None,
            )
            if code is not None:
                previous = classification.status
                classification.final_code = code
                classification.status = ClassificationStatus.COMPLETED
                classification.metadata["corrected_by"] = decision.decision_id
                recorder.log_event(
                    "status_changed",
                    actor=actor,
                    details={
                        "status": ClassificationStatus.COMPLETED.value,
                        "previous_status": previous.value,
                        "final_code": code,
                        "reason": f"reviewer correction {decision.decision_id}",
                    },
                )
                logger.info("%s settled %s on %s", actor, classification_id, format_code(code))
            self._persist(classification)
            return decision

    def export_legal_record(self, classification_id: str) -> LegalRecord:
        classification = self._load(classification_id)
        try:
            verified = DecisionRecorder(self.repository, classification_id).verify()
        except AuditIntegrityViolation:
            verified = False
        return build_legal_record(
            classification,
            self.repository.list_decisions(classification_id),
            self.repository.list_audit_entries(classification_id),
            chain_verified=verified,
            low_confidence=self.settings.low_confidence_threshold,
        )
