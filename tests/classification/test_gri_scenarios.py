import pytest

from hsclassify.classification.errors import CheckDigitMismatch
from hsclassify.classification.models import RULE_DECISION_KINDS, ClassificationStatus, DecisionKind, GRIStep


def _rule_steps(service, classification_id):
    return [
        decision.step.value
        for decision in service.get_decisions(classification_id)
        if decision.kind in RULE_DECISION_KINDS
    ]


def _decision(service, classification_id, step):
    for decision in service.get_decisions(classification_id):
        if decision.step == step and decision.kind in RULE_DECISION_KINDS:
            return decision
    raise AssertionError(f"no decision recorded for {step.value}")


def test_single_heading_resolved_at_gri_1(direct_service, classify):
    classification = classify("Men's cotton t-shirt, 100% cotton, knitted")

    assert classification.status == ClassificationStatus.COMPLETED
    assert classification.final_code == "61091000"
    assert classification.confidence == pytest.approx(0.99)
    assert classification.metadata["determining_rule"] == "gri_1"
    assert _rule_steps(direct_service, classification.classification_id) == [
        "pre_classification",
        "gri_1",
        "gri_5a",
        "gri_5b",
        "gri_6",
        "validation",
    ]

    gri_6 = _decision(direct_service, classification.classification_id, GRIStep.GRI_6)
    assert gri_6.evidence["path"] == ["6109", "610910", "61091000"]
    validation = _decision(direct_service, classification.classification_id, GRIStep.VALIDATION)
    assert validation.evidence["check_digit"] == "3"
    assert validation.evidence["check_digit_mismatch"] is False


def test_every_reached_step_has_reasoning_and_legal_basis(direct_service, classify):
    classification = classify("Men's cotton t-shirt, 100% cotton, knitted")

    decisions = direct_service.get_decisions(classification.classification_id)
    assert decisions
    for decision in decisions:
        assert decision.reasoning.strip()
        assert decision.legal_basis
    gri_5a = _decision(direct_service, classification.classification_id, GRIStep.GRI_5A)
    assert gri_5a.kind == DecisionKind.NOT_APPLICABLE
    assert gri_5a.evidence["step"] == "gri_5a"


def test_chapter_note_exclusion_prunes_woven_heading(direct_service, classify):
    classification = classify("Men's knitted polo shirt of cotton")

    assert classification.status == ClassificationStatus.COMPLETED
    assert classification.final_code == "61051000"
    gri_1 = _decision(direct_service, classification.classification_id, GRIStep.GRI_1)
    assert [item["code"] for item in gri_1.evidence["excluded"]] == ["6205"]
    assert gri_1.evidence["excluded"][0]["excluded_by"] == "Chapter 62, Note 1"
    assert "Chapter 62, Note 1" in gri_1.legal_basis


def test_composite_goods_resolved_by_essential_character(direct_service, classify, notifier):
    classification = classify("Kitchen utensil, 70% stainless steel blade and 30% plastic handle")
    cid = classification.classification_id

    assert _rule_steps(direct_service, cid) == [
        "pre_classification",
        "gri_1",
        "gri_2a",
        "gri_2b",
        "gri_3a",
        "gri_3b",
        "gri_5a",
        "gri_5b",
        "gri_6",
        "validation",
    ]
    assert classification.metadata["determining_rule"] == "gri_3b"
    assert classification.final_code == "73239300"
    assert classification.status == ClassificationStatus.COMPLETED
    assert classification.confidence == pytest.approx(0.55 / 0.98, abs=1e-3)

    gri_3a = _decision(direct_service, cid, GRIStep.GRI_3A)
    assert gri_3a.evidence["partial_material_coverage"] is True
    gri_3b = _decision(direct_service, cid, GRIStep.GRI_3B)
    assert gri_3b.evidence["selected_material"] == "steel"
    assert "weight or bulk" in gri_3b.evidence["deciding_factors"]

    # below the low-confidence threshold once; a single notification
    assert len(notifier.sent) == 1
    assert notifier.sent[0]["classification_id"] == cid


def test_undetermined_essential_character_falls_to_last_numerical_heading(direct_service, classify):
    classification = classify("Kitchen utensil of steel and plastic")
    cid = classification.classification_id

    steps = _rule_steps(direct_service, cid)
    assert steps[:7] == ["pre_classification", "gri_1", "gri_2a", "gri_2b", "gri_3a", "gri_3b", "gri_3c"]
    gri_3c = _decision(direct_service, cid, GRIStep.GRI_3C)
    assert gri_3c.evidence["selected"] == "7323"
    assert classification.metadata["determining_rule"] == "gri_3c"
    assert classification.metadata["best_code"].startswith("7323")


def test_incomplete_article_drops_parts_heading(direct_service, classify):
    classification = classify("Unassembled laptop computer kit")
    cid = classification.classification_id

    gri_2a = _decision(direct_service, cid, GRIStep.GRI_2A)
    assert gri_2a.kind == DecisionKind.RULE
    assert gri_2a.evidence["removed_parts_headings"] == ["8473"]
    assert classification.metadata["determining_rule"] == "gri_3a"
    assert classification.final_code == "84713000"
    assert classification.status == ClassificationStatus.COMPLETED


def test_check_digit_mismatch_warns_but_completes(direct_service, classify):
    with pytest.warns(CheckDigitMismatch):
        classification = classify("Smartphone with touchscreen display")

    assert classification.status == ClassificationStatus.COMPLETED
    assert classification.final_code == "85171300"
    validation = _decision(direct_service, classification.classification_id, GRIStep.VALIDATION)
    assert validation.evidence["check_digit"] == "5"
    assert validation.evidence["declared_check_digit"] == "4"
    assert validation.evidence["check_digit_mismatch"] is True


def test_classification_by_analogy_needs_review(direct_service, classify):
    classification = classify("Decorative fidget spinner")
    cid = classification.classification_id

    gri_4 = _decision(direct_service, cid, GRIStep.GRI_4)
    assert gri_4.kind == DecisionKind.RULE
    assert gri_4.evidence["comparator_id"] == "BTI-2021-0117"
    assert gri_4.evidence["similarity"] == pytest.approx(2 / 7, abs=1e-3)
    assert "BTI-2021-0117" in gri_4.legal_basis

    assert classification.status == ClassificationStatus.NEEDS_REVIEW
    assert classification.final_code is None
    assert classification.metadata["best_code"] == "95030090"
    assert classification.metadata["determining_rule"] == "gri_4"
    assert "below expert review threshold" in classification.metadata["status_reason"]


def test_no_provision_found_is_terminal(direct_service, classify):
    classification = classify("Quantum flux capacitor assembly")
    cid = classification.classification_id

    assert _rule_steps(direct_service, cid) == [
        "pre_classification",
        "gri_1",
        "gri_2a",
        "gri_2b",
        "gri_3a",
        "gri_3b",
        "gri_3c",
        "gri_4",
    ]
    assert classification.status == ClassificationStatus.NEEDS_REVIEW
    assert classification.final_code is None
    assert classification.metadata["status_reason"] == "no matching provision found"


def test_subheading_candidate_reaches_tariff_item(direct_service, classify):
    classification = classify("Pure-bred breeding horse")

    assert classification.final_code == "01012100"
    gri_6 = _decision(direct_service, classification.classification_id, GRIStep.GRI_6)
    assert gri_6.evidence["path"] == ["0101", "010121", "01012100"]


def test_specially_fitted_case_follows_the_goods(direct_service, classify):
    classification = classify("Camera with specially fitted carrying case")
    cid = classification.classification_id

    gri_5a = _decision(direct_service, cid, GRIStep.GRI_5A)
    assert gri_5a.kind == DecisionKind.RULE
    assert gri_5a.evidence["follows_goods"] is True
    gri_5b = _decision(direct_service, cid, GRIStep.GRI_5B)
    assert gri_5b.kind == DecisionKind.NOT_APPLICABLE
    assert classification.final_code == "85258900"


def test_reusable_packing_classified_separately(direct_service, classify):
    classification = classify("Digital camera packed in a reusable crate")
    cid = classification.classification_id

    assert _decision(direct_service, cid, GRIStep.GRI_5A).kind == DecisionKind.NOT_APPLICABLE
    gri_5b = _decision(direct_service, cid, GRIStep.GRI_5B)
    assert gri_5b.kind == DecisionKind.RULE
    assert gri_5b.evidence["follows_goods"] is False
    assert gri_5b.answer == "Packing classified separately"


def test_structured_context_overrides_extraction(direct_service, classify):
    classification = classify(
        "Kitchen utensil of steel and plastic",
        {"materials": [{"name": "steel", "role": "essential"}, {"name": "plastic", "role": "auxiliary"}]},
    )

    gri_3b = _decision(direct_service, classification.classification_id, GRIStep.GRI_3B)
    assert gri_3b.evidence["selected_material"] == "steel"
    assert gri_3b.evidence["deciding_factors"] == ["role in use"]
    assert classification.metadata["determining_rule"] == "gri_3b"


def test_precedent_outside_knowledge_base_is_not_adopted(direct_service, classify):
    classification = classify("Yoga mat strap webbing for exercise")
    cid = classification.classification_id

    assert _rule_steps(direct_service, cid)[-1] == "gri_4"
    assert classification.status == ClassificationStatus.NEEDS_REVIEW
    assert classification.final_code is None
    assert classification.metadata["status_reason"] == "no matching provision found"
    gri_4 = _decision(direct_service, cid, GRIStep.GRI_4)
    assert "outside the knowledge base" in gri_4.reasoning
    assert "BTI-2019-0342" in gri_4.reasoning


def test_reusable_fitted_case_is_flagged_under_both_rules(direct_service, classify):
    classification = classify("Camera with a reusable specially fitted carrying case")
    cid = classification.classification_id

    gri_5a = _decision(direct_service, cid, GRIStep.GRI_5A)
    assert gri_5a.evidence["follows_goods"] is True
    assert gri_5a.evidence["legal_review_flag"] is True
    gri_5b = _decision(direct_service, cid, GRIStep.GRI_5B)
    assert gri_5b.kind == DecisionKind.RULE
    assert gri_5b.evidence["legal_review_flag"] is True
    assert "need legal review" in gri_5b.reasoning


def test_container_with_essential_character_left_to_rule_5b(direct_service, classify):
    classification = classify(
        "Camera with specially fitted carrying case",
        {
            "packaging": {
                "description": "presentation case",
                "specially_fitted": True,
                "long_term_use": True,
                "imparts_essential_character": True,
            }
        },
    )
    cid = classification.classification_id

    gri_5a = _decision(direct_service, cid, GRIStep.GRI_5A)
    assert gri_5a.answer == "Container classified separately"
    assert gri_5a.evidence["follows_goods"] is False
    gri_5b = _decision(direct_service, cid, GRIStep.GRI_5B)
    assert gri_5b.kind == DecisionKind.RULE
    assert gri_5b.answer != "Container already dealt with under Rule 5(a)"
    assert gri_5b.evidence["legal_review_flag"] is False
