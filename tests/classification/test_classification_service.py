import pytest

from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.errors import (
    AuditIntegrityViolation,
    ClassificationNotFound,
    RuleOrderViolation,
    ValidationError,
)
from hsclassify.classification.models import ClassificationStatus, DecisionKind, GRIStep
from hsclassify.classification.repository import InMemoryClassificationRepository
from hsclassify.classification.service import ClassificationService

MIXTURE = "Kitchen utensil, 70% stainless steel blade and 30% plastic handle"


def test_short_description_rejected(service, repository):
    with pytest.raises(ValidationError):
        service.start_classification("mug")
    assert repository.list_ids() == []


def test_invalid_context_rejected(service):
    with pytest.raises(ValidationError):
        service.start_classification(MIXTURE, {"materials": [{"name": "steel", "percentage": 170}]})


def test_low_confidence_asks_purpose_first(service):
    classification = service.start_classification(MIXTURE)
    question = service.pending_question(classification.classification_id)

    assert classification.status == ClassificationStatus.IN_PROGRESS
    assert question is not None
    assert question.feature == "purpose"
    assert question.step == GRIStep.PRE_CLASSIFICATION
    assert 1 <= len(question.options) <= 3
    assert service.get_decisions(classification.classification_id) == []


def test_answer_completes_classification(service):
    classification = service.start_classification(MIXTURE)
    cid = classification.classification_id

    progress = service.submit_answer(cid, "pre_classification", "preparing food")

    assert progress.completed
    assert progress.question is None
    assert progress.classification.final_code == "73239300"
    decisions = service.get_decisions(cid)
    assert decisions[0].kind == DecisionKind.CLARIFICATION
    assert decisions[0].answer == "preparing food"
    assert decisions[1].step == GRIStep.PRE_CLASSIFICATION
    assert decisions[1].kind == DecisionKind.RULE
    assert service.verify_audit_trail(cid)


def test_questions_follow_priority_and_never_repeat(service):
    classification = service.start_classification("Unassembled laptop computer kit")
    cid = classification.classification_id

    first = service.pending_question(cid)
    assert first.feature == "purpose"
    progress = service.submit_answer(cid, "pre_classification", "data processing")
    assert progress.question.feature == "material"
    progress = service.submit_answer(cid, "pre_classification", "aluminium")

    assert progress.completed
    assert progress.classification.final_code == "84713000"
    asked = [d.evidence["feature"] for d in service.get_decisions(cid) if d.kind == DecisionKind.CLARIFICATION]
    assert asked == ["purpose", "material"]


def test_question_limit_is_honoured(make_service):
    limited = make_service(max_questions=1)
    classification = limited.start_classification("Unassembled laptop computer kit")
    progress = limited.submit_answer(classification.classification_id, "pre_classification", "data processing")

    assert progress.completed
    context = progress.classification.metadata["context"]
    assert context["loop_exit"] == "question_limit"


def test_answer_for_wrong_step_rejected(service):
    classification = service.start_classification(MIXTURE)

    with pytest.raises(RuleOrderViolation):
        service.submit_answer(classification.classification_id, "gri_3b", "preparing food")


def test_answer_without_pending_question_rejected(direct_service, classify):
    classification = classify("Men's cotton t-shirt, 100% cotton, knitted")

    with pytest.raises(RuleOrderViolation):
        direct_service.submit_answer(classification.classification_id, "validation", "anything")


def test_empty_answer_rejected(service):
    classification = service.start_classification(MIXTURE)

    with pytest.raises(ValidationError):
        service.submit_answer(classification.classification_id, "pre_classification", "   ")
    assert service.pending_question(classification.classification_id) is not None


def test_unknown_classification(service):
    with pytest.raises(ClassificationNotFound):
        service.get_classification("nope")


def test_session_resumes_from_repository(repository, knowledge_base, notifier, service):
    classification = service.start_classification(MIXTURE)

    restarted = ClassificationService(repository, knowledge_base, notifier=notifier)
    progress = restarted.submit_answer(classification.classification_id, "pre_classification", "preparing food")

    assert progress.completed
    assert restarted.verify_audit_trail(classification.classification_id)


def test_low_confidence_notified_once_per_crossing(service, notifier):
    classification = service.start_classification(MIXTURE)
    service.submit_answer(classification.classification_id, "pre_classification", "preparing food")

    sent = [item for item in notifier.sent if item["classification_id"] == classification.classification_id]
    assert len(sent) == 1
    assert sent[0]["context"]["threshold"] == 0.7


def test_archive_is_idempotent_and_keeps_trail(direct_service, classify):
    classification = classify("Men's cotton t-shirt, 100% cotton, knitted")
    cid = classification.classification_id
    before = len(direct_service.get_audit_trail(cid))

    archived = direct_service.archive_classification(cid, actor="auditor", reason="duplicate case")
    again = direct_service.archive_classification(cid, actor="auditor")

    assert archived.status == ClassificationStatus.ARCHIVED
    assert archived.final_code is None
    assert archived.metadata["archived_final_code"] == "61091000"
    assert again.status == ClassificationStatus.ARCHIVED
    trail = direct_service.get_audit_trail(cid)
    assert len(trail) == before + 1
    assert trail[-1].action == "classification_archived"
    assert direct_service.verify_audit_trail(cid)


def test_reviewer_correction_settles_code(direct_service, classify):
    classification = classify("Decorative fidget spinner")
    cid = classification.classification_id
    gri_4 = next(d for d in direct_service.get_decisions(cid) if d.step == GRIStep.GRI_4)

    correction = direct_service.correct_decision(
        cid,
        gri_4.decision_id,
        answer="Heading 9503 confirmed",
        reasoning="Spinning toy for amusement; other toys",
        actor="reviewer",
        final_code="9503.00.90",
    )

    updated = direct_service.get_classification(cid)
    assert correction.supersedes == gri_4.decision_id
    assert updated.status == ClassificationStatus.COMPLETED
    assert updated.final_code == "95030090"
    assert updated.metadata["corrected_by"] == correction.decision_id
    assert direct_service.verify_audit_trail(cid)


def test_correction_with_unknown_code_rejected(direct_service, classify):
    classification = classify("Decorative fidget spinner")
    decision = direct_service.get_decisions(classification.classification_id)[0]

    with pytest.raises(ValidationError):
        direct_service.correct_decision(
            classification.classification_id,
            decision.decision_id,
            answer="x",
            reasoning="y",
            actor="reviewer",
            final_code="99999999",
        )


def test_failed_verification_freezes_classification(service, repository):
    classification = service.start_classification(MIXTURE)
    cid = classification.classification_id
    entries = repository._audit[cid]
    entries[0] = entries[0].model_copy(update={"actor": "mallory"})

    with pytest.raises(AuditIntegrityViolation):
        service.verify_audit_trail(cid)

    assert service.get_classification(cid).is_frozen
    with pytest.raises(AuditIntegrityViolation):
        service.submit_answer(cid, "pre_classification", "preparing food")


def test_legal_record_export(direct_service, classify):
    classification = classify("Kitchen utensil, 70% stainless steel blade and 30% plastic handle")
    record = direct_service.export_legal_record(classification.classification_id)

    assert record.chain_verified
    assert record.record_hash
    assert len(record.checklist) == 8
    checklist = {item.requirement: item for item in record.checklist}
    assert checklist["GRI rules applied in canonical sequence"].satisfied
    assert checklist["Material composition documented (if composite)"].satisfied
    assert not checklist["Confidence at or above 70%"].satisfied
    assert "7323.93.00" in record.summary
    assert "gri_3b" in record.summary

    again = direct_service.export_legal_record(classification.classification_id)
    assert again.record_hash == record.record_hash


class FlakyRepository(InMemoryClassificationRepository):
    """Fails one session save, as a dropped database connection would."""

    def __init__(self, fail_on_save: int) -> None:
        super().__init__()
        self.fail_on_save = fail_on_save
        self.saves = 0

    def save(self, classification) -> None:
        self.saves += 1
        if self.saves == self.fail_on_save:
            raise RuntimeError("database unavailable")
        super().save(classification)


def test_interrupted_run_resumes_from_recorded_decisions(knowledge_base, notifier):
    repository = FlakyRepository(fail_on_save=3)
    service = ClassificationService(
        repository, knowledge_base, settings=ClassificationSettings(max_questions=0), notifier=notifier
    )

    with pytest.raises(RuntimeError):
        service.start_classification("Men's cotton t-shirt, 100% cotton, knitted")
    cid = repository.list_ids()[0]
    assert service.get_classification(cid).status == ClassificationStatus.IN_PROGRESS
    assert [decision.step for decision in service.get_decisions(cid)][-1] == GRIStep.GRI_5A

    progress = service.resume_classification(cid, actor="operator")

    assert progress.completed
    assert progress.classification.status == ClassificationStatus.COMPLETED
    assert progress.classification.final_code == "61091000"
    steps = [decision.step.value for decision in service.get_decisions(cid)]
    assert steps == ["pre_classification", "gri_1", "gri_5a", "gri_5b", "gri_6", "validation"]
    resumed = [entry for entry in service.get_audit_trail(cid) if entry.action == "classification_resumed"]
    assert resumed[0].actor == "operator"
    assert resumed[0].details["last_recorded_step"] == "gri_5a"
    assert service.verify_audit_trail(cid)


def test_resume_returns_pending_question(service):
    classification = service.start_classification(MIXTURE)
    question = service.pending_question(classification.classification_id)

    progress = service.resume_classification(classification.classification_id)

    assert not progress.completed
    assert progress.question.question_id == question.question_id
    assert service.get_decisions(classification.classification_id) == []


def test_resume_of_finished_classification_rejected(direct_service, classify):
    classification = classify("Pure-bred breeding horse")

    with pytest.raises(RuleOrderViolation):
        direct_service.resume_classification(classification.classification_id)


def test_locks_released_after_each_operation(direct_service, classify):
    classification = classify("Pure-bred breeding horse")
    assert direct_service._locks == {}

    with pytest.raises(ClassificationNotFound):
        direct_service.archive_classification("missing", actor="reviewer")
    direct_service.archive_classification(classification.classification_id, actor="reviewer")
    assert direct_service._locks == {}
