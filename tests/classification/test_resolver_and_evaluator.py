import pytest

from hsclassify.classification.evaluator import compare_specificity, essential_character, most_specific
from hsclassify.classification.features import KeywordFeatureExtractor, merge_context
from hsclassify.classification.models import Candidate, CandidateLevel, MaterialComponent, ProductFeatures
from hsclassify.classification.resolver import CandidateResolver, candidate_confidence


@pytest.fixture()
def resolver(knowledge_base):
    return CandidateResolver(knowledge_base)


@pytest.fixture()
def extractor():
    return KeywordFeatureExtractor()


def _candidate(code, score=0.0, description="Provision"):
    return Candidate(
        code=code,
        description=description,
        level=CandidateLevel.for_code(code),
        match_score=score,
    )


def test_resolver_scores_single_heading(resolver, extractor):
    description = "Men's cotton t-shirt, 100% cotton, knitted"
    result = resolver.resolve(description, extractor.extract_features(description))

    assert [candidate.code for candidate in result.candidates] == ["6109"]
    assert result.candidates[0].match_score == pytest.approx(0.8)
    assert not result.fallback


def test_resolver_prunes_excluded_heading(resolver, extractor):
    description = "Men's knitted polo shirt of cotton"
    result = resolver.resolve(description, extractor.extract_features(description))

    assert [candidate.code for candidate in result.candidates] == ["6105"]
    assert [(candidate.code, rule.note_ref) for candidate, rule in result.excluded] == [
        ("6205", "Chapter 62, Note 1")
    ]


def test_resolver_keeps_one_candidate_per_heading(resolver, extractor):
    description = "Kitchen utensil, 70% stainless steel blade and 30% plastic handle"
    result = resolver.resolve(description, extractor.extract_features(description))

    assert [candidate.code for candidate in result.candidates] == ["7323", "3924"]
    assert result.candidates[0].match_score == pytest.approx(0.55)
    assert result.candidates[1].match_score == pytest.approx(0.43)


def test_resolver_returns_nothing_for_unknown_goods(resolver, extractor):
    description = "Quantum flux capacitor assembly"
    result = resolver.resolve(description, extractor.extract_features(description))
    assert result.candidates == []
    assert result.top is None


def test_candidate_confidence():
    assert candidate_confidence([]) == 0.0
    assert candidate_confidence([_candidate("6109", 0.8)]) == 0.99
    assert candidate_confidence([_candidate("7323", 0.6), _candidate("3924", 0.2)]) == pytest.approx(0.75)


def test_specificity_prefers_deeper_codes():
    heading = _candidate("6109", description="T-shirts, singlets and other vests")
    subheading = _candidate("610910", description="Of cotton")
    assert compare_specificity(subheading, heading) > 0
    assert compare_specificity(heading, subheading) < 0
    assert most_specific([heading, subheading]) == [subheading]


def test_specificity_tie_on_equal_descriptions():
    a = _candidate("3924", description="Household articles")
    b = _candidate("7323", description="Household articles")
    assert compare_specificity(a, b) == 0
    assert most_specific([a, b]) == [a, b]


def test_essential_character_by_weight():
    result = essential_character(
        [MaterialComponent(name="steel", percentage=70), MaterialComponent(name="plastic", percentage=30)]
    )
    assert result.selected_material == "steel"
    assert result.deciding_factors == ["weight or bulk"]


def test_essential_character_value_outranks_weight():
    result = essential_character(
        [
            MaterialComponent(name="leather", value_percentage=80, weight_percentage=20),
            MaterialComponent(name="plastic", value_percentage=20, weight_percentage=80),
        ]
    )
    assert result.selected_material == "leather"
    assert result.deciding_factors == ["value"]


def test_essential_character_undetermined_without_data():
    result = essential_character([MaterialComponent(name="steel"), MaterialComponent(name="plastic")])
    assert not result.determined
    assert result.deciding_factors == []


def test_essential_character_tie_on_every_factor():
    result = essential_character(
        [MaterialComponent(name="cotton", percentage=50), MaterialComponent(name="polyester", percentage=50)]
    )
    assert not result.determined
    assert result.deciding_factors == ["weight or bulk"]


def test_feature_extraction(extractor):
    features = extractor.extract_features(
        "Unassembled stainless steel kettle designed for boiling water, packed in a cardboard box"
    )
    assert features.material_names == ["steel", "paper"]
    assert features.purpose == "boiling water"
    assert "stainless" in features.technical_specs
    assert features.incomplete
    assert features.packaging is not None
    assert not features.packaging.specially_fitted


def test_percentages_are_attached_to_materials(extractor):
    materials = extractor.extract_materials("60% cotton 40% polyester jersey")
    assert [(m.name, m.percentage) for m in materials] == [("cotton", 60.0), ("polyester", 40.0)]


def test_context_wins_over_extraction(extractor):
    features = extractor.extract_features("Cotton shirt")
    merged = merge_context(features, {"purpose": "workwear", "materials": [{"name": "linen", "percentage": 100}]})
    assert merged.purpose == "workwear"
    assert merged.material_names == ["linen"]
    assert merge_context(features, None) is features
    assert isinstance(merged, ProductFeatures)
