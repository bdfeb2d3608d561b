import pytest

from hsclassify.classification.errors import AuditIntegrityViolation, ValidationError
from hsclassify.classification.models import Classification, DecisionKind, GRIStep
from hsclassify.classification.recorder import (
    DECISION_RECORDED,
    DecisionRecorder,
    decision_digest,
    entry_hash,
    genesis_hash,
)
from hsclassify.classification.steps import Gri1Payload, Gri3cPayload, parse_payload
from hsclassify.proofs import digest


@pytest.fixture()
def recorder(repository):
    repository.create(Classification(classification_id="chain-1", description="Stainless steel cooking pot"))
    recorder = DecisionRecorder(repository, "chain-1")
    recorder.log_event("classification_created", details={"description": "Stainless steel cooking pot"})
    return recorder


def _record(recorder, step, answer="ok"):
    return recorder.append(
        step,
        question="Which headings apply?",
        answer=answer,
        reasoning=f"Reasoning for {step.value}",
        confidence=0.9,
        legal_basis=["GRI Rule 1"],
    )


def test_chain_links_from_genesis(recorder):
    _record(recorder, GRIStep.PRE_CLASSIFICATION)
    _record(recorder, GRIStep.GRI_1)

    entries = recorder.entries()
    assert [entry.sequence for entry in entries] == [0, 1, 2]
    assert entries[0].prev_hash == genesis_hash("chain-1") == digest("genesis:chain-1")
    for previous, current in zip(entries, entries[1:]):
        assert current.prev_hash == previous.hash
    for entry in entries:
        assert entry.hash == entry_hash(entry.hash_material(), entry.prev_hash)
    assert recorder.verify()


def test_decision_entry_carries_digest(recorder):
    decision = _record(recorder, GRIStep.PRE_CLASSIFICATION)

    entry = recorder.entries()[-1]
    assert entry.action == DECISION_RECORDED
    assert entry.details["decision_id"] == decision.decision_id
    assert entry.details["decision_digest"] == decision_digest(decision)


def test_reasoning_is_required(recorder, repository):
    with pytest.raises(ValidationError):
        recorder.append(GRIStep.GRI_1, question="q", answer="a", reasoning="  ", confidence=0.5)
    assert repository.list_decisions("chain-1") == []


def test_tampered_decision_fails_verification(recorder, repository):
    _record(recorder, GRIStep.PRE_CLASSIFICATION)
    _record(recorder, GRIStep.GRI_1, answer="Heading 7323")

    stored = repository._decisions["chain-1"]
    stored[1] = stored[1].model_copy(update={"answer": "Heading 3924"})

    with pytest.raises(AuditIntegrityViolation) as excinfo:
        recorder.verify()
    assert "digest mismatch" in excinfo.value.reason


def test_tampered_entry_fails_verification(recorder, repository):
    _record(recorder, GRIStep.PRE_CLASSIFICATION)

    entries = repository._audit["chain-1"]
    entries[0] = entries[0].model_copy(update={"actor": "mallory"})

    with pytest.raises(AuditIntegrityViolation) as excinfo:
        recorder.verify()
    assert excinfo.value.sequence == 0
    assert excinfo.value.reason == "entry hash mismatch"


def test_removed_entry_breaks_sequence(recorder, repository):
    _record(recorder, GRIStep.PRE_CLASSIFICATION)
    _record(recorder, GRIStep.GRI_1)

    del repository._audit["chain-1"][1]

    with pytest.raises(AuditIntegrityViolation):
        recorder.verify()


def test_out_of_order_rule_decisions_fail_verification(recorder):
    _record(recorder, GRIStep.GRI_1)
    _record(recorder, GRIStep.PRE_CLASSIFICATION)

    with pytest.raises(AuditIntegrityViolation) as excinfo:
        recorder.verify()
    assert "out of canonical order" in excinfo.value.reason


def test_supersede_appends_correction(recorder, repository):
    original = _record(recorder, GRIStep.GRI_1, answer="Heading 3924")

    correction = recorder.supersede(
        original.decision_id,
        answer="Heading 7323",
        reasoning="Steel blade gives the essential character",
        actor="reviewer@example.com",
    )

    decisions = repository.list_decisions("chain-1")
    assert decisions[0] == original
    assert correction.kind == DecisionKind.CORRECTION
    assert correction.supersedes == original.decision_id
    assert correction.step == GRIStep.GRI_1
    assert recorder.entries()[-1].actor == "reviewer@example.com"
    assert recorder.verify()


def test_supersede_unknown_decision(recorder):
    with pytest.raises(ValidationError):
        recorder.supersede("missing", answer="x", reasoning="y", actor="reviewer")


def test_empty_trail_does_not_verify(repository):
    repository.create(Classification(classification_id="empty", description="Nothing recorded yet"))
    with pytest.raises(AuditIntegrityViolation):
        DecisionRecorder(repository, "empty").verify()


def test_missing_evidence_defaults_to_step_payload(recorder):
    decision = _record(recorder, GRIStep.PRE_CLASSIFICATION)
    _record(recorder, GRIStep.GRI_1)

    assert decision.evidence["step"] == "pre_classification"
    stored = recorder.decisions()[-1]
    assert isinstance(parse_payload(stored.evidence), Gri1Payload)


@pytest.mark.parametrize(
    "evidence",
    [
        Gri3cPayload(selected="7323"),
        {"step": "gri_3c", "selected": "7323"},
        {"matched": "7323"},
        {"unexpected": True},
    ],
)
def test_evidence_must_fit_the_step(recorder, evidence):
    _record(recorder, GRIStep.PRE_CLASSIFICATION)

    with pytest.raises(ValidationError):
        recorder.append(
            GRIStep.GRI_1,
            question="Which headings apply?",
            answer="Heading 73.23",
            reasoning="Terms of heading 73.23",
            confidence=0.8,
            evidence=evidence,
        )
    assert [decision.step for decision in recorder.decisions()] == [GRIStep.PRE_CLASSIFICATION]
    assert recorder.verify()


def test_clarification_evidence_is_checked(recorder):
    with pytest.raises(ValidationError):
        recorder.append(
            GRIStep.PRE_CLASSIFICATION,
            question="What is the product used for?",
            answer="preparing food",
            reasoning="Answered by the user",
            confidence=1.0,
            kind=DecisionKind.CLARIFICATION,
            evidence={"question_id": "q-1"},
        )

    decision = recorder.append(
        GRIStep.PRE_CLASSIFICATION,
        question="What is the product used for?",
        answer="preparing food",
        reasoning="Answered by the user",
        confidence=1.0,
        kind=DecisionKind.CLARIFICATION,
        evidence={"question_id": "q-1", "feature": "purpose"},
    )
    assert decision.evidence == {"question_id": "q-1", "feature": "purpose"}
