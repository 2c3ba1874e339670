import pytest

from fhir_records.db import (
    CONCEPT_HYPERTENSION_UUID,
    CONCEPT_MILD_UUID,
    CONCEPT_RASH_UUID,
    CONCEPT_SEVERE_UUID,
)
from fhir_records.global_properties import (
    DatabaseGlobalPropertyResolver,
    PropertySnapshot,
    StaticGlobalPropertyResolver,
)
from fhir_records.models import (
    AllergenType,
    Concept,
    ConditionClinicalStatus,
    ConditionVerificationStatus,
    GlobalProperty,
)
from fhir_records import vocabulary
from fhir_records.vocabulary import CodedOrFreeText, ConceptResolver, concept_to_codeable


class TestConditionStatus:

    @pytest.mark.parametrize(
        "code,expected",
        [
            ("active", ConditionClinicalStatus.ACTIVE),
            ("recurrence", ConditionClinicalStatus.ACTIVE),
            ("relapse", ConditionClinicalStatus.ACTIVE),
            ("inactive", ConditionClinicalStatus.INACTIVE),
            ("remission", ConditionClinicalStatus.INACTIVE),
            ("resolved", ConditionClinicalStatus.HISTORY_OF),
            ("Active", ConditionClinicalStatus.ACTIVE),
            ("bogus", None),
            (None, None),
        ],
    )
    def test_inbound(self, code, expected):
        assert vocabulary.condition_status_from_code(code) == expected

    def test_system_must_match_when_given(self):
        assert vocabulary.condition_status_from_code(
            "active", vocabulary.CONDITION_CLINICAL_SYSTEM
        ) == ConditionClinicalStatus.ACTIVE
        assert vocabulary.condition_status_from_code("active", "http://example.org") is None

    def test_outbound(self):
        assert vocabulary.condition_status_to_code(ConditionClinicalStatus.ACTIVE) == "active"
        assert vocabulary.condition_status_to_code(ConditionClinicalStatus.INACTIVE) == "inactive"
        assert vocabulary.condition_status_to_code(ConditionClinicalStatus.HISTORY_OF) == "resolved"
        assert vocabulary.condition_status_to_code(None) is None

    def test_verification(self):
        assert vocabulary.verification_status_from_code("confirmed") == ConditionVerificationStatus.CONFIRMED
        assert vocabulary.verification_status_to_code(ConditionVerificationStatus.PROVISIONAL) == "provisional"
        assert vocabulary.verification_status_from_code("refuted") is None


class TestAllergyVocabulary:

    def test_status_maps_onto_voided(self):
        assert vocabulary.allergy_status_to_voided("active") is False
        assert vocabulary.allergy_status_to_voided("inactive") is True
        assert vocabulary.allergy_status_to_voided("resolved") is None
        assert vocabulary.allergy_status_from_voided(True) == "inactive"
        assert vocabulary.allergy_status_from_voided(False) == "active"

    @pytest.mark.parametrize(
        "category,allergen_type",
        [
            ("food", AllergenType.FOOD),
            ("medication", AllergenType.DRUG),
            ("environment", AllergenType.ENVIRONMENT),
            ("biologic", AllergenType.OTHER),
        ],
    )
    def test_category_both_ways(self, category, allergen_type):
        assert vocabulary.allergen_type_from_category(category) == allergen_type
        assert vocabulary.category_from_allergen_type(allergen_type) == category

    def test_unknown_category(self):
        assert vocabulary.allergen_type_from_category("plants") is None
        assert vocabulary.category_from_allergen_type(None) is None

    @pytest.mark.parametrize(
        "severity,criticality",
        [("severe", "high"), ("moderate", "low"), ("mild", "low"), ("other", "unable-to-assess"), (None, "unable-to-assess")],
    )
    def test_criticality(self, severity, criticality):
        assert vocabulary.criticality_for_severity(severity) == criticality


class TestSeverityProperties:

    def test_lookup_through_properties(self):
        props = PropertySnapshot(StaticGlobalPropertyResolver({"severity-mild-concept": "mild-uuid"}))
        assert vocabulary.severity_concept_uuid("mild", props) == "mild-uuid"
        assert vocabulary.severity_concept_uuid("MILD", props) == "mild-uuid"
        assert vocabulary.severity_concept_uuid("severe", props) is None
        assert vocabulary.severity_concept_uuid("fatal", props) is None

    def test_database_resolver(self, session):
        props = PropertySnapshot(DatabaseGlobalPropertyResolver(session))
        assert vocabulary.severity_concept_uuid("severe", props) == CONCEPT_SEVERE_UUID
        assert vocabulary.severity_concept_uuid("other", props) is None

    def test_blank_property_counts_as_missing(self, session):
        session.add(GlobalProperty(property="severity-other-concept", property_value="   "))
        session.flush()
        assert DatabaseGlobalPropertyResolver(session).get("severity-other-concept") is None

    def test_snapshot_memoises_per_instance(self):
        calls = []

        class Counting:
            def get(self, key):
                calls.append(key)
                return "x"

        props = PropertySnapshot(Counting())
        props.get("severity-mild-concept")
        props.get("severity-mild-concept")
        assert calls == ["severity-mild-concept"]
        PropertySnapshot(Counting()).get("severity-mild-concept")
        assert len(calls) == 2

    def test_code_for_concept(self, session):
        props = PropertySnapshot(DatabaseGlobalPropertyResolver(session))
        mild = session.query(Concept).filter_by(uuid=CONCEPT_MILD_UUID).one()
        rash = session.query(Concept).filter_by(uuid=CONCEPT_RASH_UUID).one()
        assert vocabulary.severity_code_for_concept(mild, props) == "mild"
        assert vocabulary.severity_code_for_concept(rash, props) is None
        assert vocabulary.severity_code_for_concept(None, props) is None


class TestConcepts:

    def test_codeable_for_coded_value(self, session):
        concept = session.query(Concept).filter_by(uuid=CONCEPT_HYPERTENSION_UUID).one()
        codeable = concept_to_codeable(concept, "ignored free text")
        assert codeable["text"] == "Hypertension"
        assert codeable["coding"] == [
            {"code": CONCEPT_HYPERTENSION_UUID, "display": "Hypertension"},
            {"system": "http://snomed.info/sct", "code": "CD41003"},
            {"system": "https://cielterminology.org", "code": "117399"},
        ]

    def test_codeable_for_free_text(self):
        assert concept_to_codeable(None, "Headache") == {"text": "Headache"}
        assert concept_to_codeable(None, None) is None

    def test_by_coding(self, session):
        resolver = ConceptResolver(session)
        assert resolver.by_coding(None, CONCEPT_HYPERTENSION_UUID).name == "Hypertension"
        assert resolver.by_coding("http://snomed.info/sct", "CD41003").name == "Hypertension"
        assert resolver.by_coding("CIEL", "117399").name == "Hypertension"
        assert resolver.by_coding(None, "117399").name == "Hypertension"
        assert resolver.by_coding("http://snomed.info/sct", "117399") is None
        assert resolver.by_coding(None, "nothing") is None

    def test_from_codeable_tries_codings_in_order(self, session):
        resolver = ConceptResolver(session)
        value = resolver.from_codeable({
            "coding": [
                {"system": "http://example.org", "code": "unknown"},
                {"system": "http://snomed.info/sct", "code": "271807003"},
            ],
            "text": "Skin rash",
        })
        assert value.coded.uuid == CONCEPT_RASH_UUID
        assert value.non_coded is None

    def test_from_codeable_falls_back_to_text(self, session):
        resolver = ConceptResolver(session)
        assert resolver.from_codeable({"text": "Cat dander"}) == CodedOrFreeText(non_coded="Cat dander")
        assert resolver.from_codeable({"coding": [{"code": "zz"}]}) == CodedOrFreeText(non_coded="zz")
        assert resolver.from_codeable(None).is_empty

    def test_effective_key(self, session):
        concept = session.query(Concept).filter_by(uuid=CONCEPT_HYPERTENSION_UUID).one()
        assert CodedOrFreeText(concept, "legacy").effective_key() == CodedOrFreeText(concept).effective_key()
        assert CodedOrFreeText(None, "a").effective_key() != CodedOrFreeText(None, "b").effective_key()
