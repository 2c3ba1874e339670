import logging
from datetime import datetime
from types import SimpleNamespace

import pytest

from fhir_records.db import (
    ALLERGY_CAT_DANDER_UUID,
    ALLERGY_PENICILLIN_UUID,
    ALLERGY_VOIDED_UUID,
    CONCEPT_DIABETES_UUID,
    CONCEPT_HYPERTENSION_UUID,
    CONCEPT_RASH_UUID,
    CONDITION_DIABETES_UUID,
    CONDITION_FRACTURE_UUID,
    CONDITION_HEADACHE_UUID,
    CONDITION_HYPERTENSION_UUID,
    PATIENT_HORNBLOWER_UUID,
)
from fhir_records.errors import InvalidResourceError
from fhir_records.fhir_utils import resource_to_dict
from fhir_records.global_properties import DatabaseGlobalPropertyResolver
from fhir_records.models import (
    AllergenType,
    Allergy,
    Concept,
    Condition,
    ConditionClinicalStatus,
    ConditionVerificationStatus,
)
from fhir_records.translators import (
    AllergyIntoleranceTranslator,
    ConditionTranslator,
    merge_fields,
)
from fhir_records.vocabulary import CodedOrFreeText

NOW = datetime(2024, 2, 29, 12, 0)
SUBJECT = {"reference": f"Patient/{PATIENT_HORNBLOWER_UUID}"}


@pytest.fixture
def conditions(session):
    return ConditionTranslator.for_session(session, clock=lambda: NOW)


@pytest.fixture
def allergies(session):
    return AllergyIntoleranceTranslator.for_session(session, DatabaseGlobalPropertyResolver(session))


def _condition(session, uuid) -> Condition:
    return session.query(Condition).filter_by(uuid=uuid).one()


def _allergy(session, uuid) -> Allergy:
    return session.query(Allergy).filter_by(uuid=uuid).one()


class TestMergeFields:

    def test_incoming_overrides_and_absent_keys_survive(self):
        merged = merge_fields({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert merged == {"a": 1, "b": 3, "c": 4}

    def test_same_effective_coded_value_keeps_existing(self):
        concept = SimpleNamespace(uuid="x")
        existing = CodedOrFreeText(concept, "legacy text")
        merged = merge_fields({"value": existing}, {"value": CodedOrFreeText(concept, None)})
        assert merged["value"] is existing

    def test_no_existing(self):
        assert merge_fields(None, {"a": 1}) == {"a": 1}


class TestConditionToFhir:

    def test_coded_condition(self, session, conditions):
        data = resource_to_dict(conditions.to_fhir_resource(_condition(session, CONDITION_HYPERTENSION_UUID)))
        assert data["resourceType"] == "Condition"
        assert data["id"] == CONDITION_HYPERTENSION_UUID
        assert data["clinicalStatus"]["coding"][0] == {
            "system": "http://terminology.hl7.org/CodeSystem/condition-clinical",
            "code": "active",
        }
        assert data["verificationStatus"]["coding"][0]["code"] == "confirmed"
        codings = data["code"]["coding"]
        assert codings[0] == {"code": CONCEPT_HYPERTENSION_UUID, "display": "Hypertension"}
        assert {"system": "http://snomed.info/sct", "code": "CD41003"} in codings
        assert data["code"]["text"] == "Hypertension"
        assert data["subject"]["reference"] == f"Patient/{PATIENT_HORNBLOWER_UUID}"
        assert data["subject"]["display"] == "Horatio Hornblower"
        assert data["onsetDateTime"].startswith("2017-01-12T10:00:00")
        assert data["recordedDate"].startswith("2016-01-12T09:30:00")
        assert "abatementDateTime" not in data
        assert "extension" not in data

    def test_free_text_condition(self, session, conditions):
        data = resource_to_dict(conditions.to_fhir_resource(_condition(session, CONDITION_HEADACHE_UUID)))
        assert data["code"] == {"text": "Headache"}
        assert "verificationStatus" not in data

    def test_resolved_condition_carries_end(self, session, conditions):
        data = resource_to_dict(conditions.to_fhir_resource(_condition(session, CONDITION_FRACTURE_UUID)))
        assert data["clinicalStatus"]["coding"][0]["code"] == "resolved"
        assert data["abatementDateTime"].startswith("2015-11-20")
        assert data["extension"] == [
            {"url": "http://fhir.openmrs.org/ext/condition/end-reason", "valueString": "Healed"}
        ]


class TestConditionToInternal:

    def test_new_condition(self, conditions):
        condition = conditions.to_internal(None, {
            "resourceType": "Condition",
            "id": "b3c1a7e2-0000-4000-8000-000000000001",
            "subject": SUBJECT,
            "code": {"coding": [{"system": "http://snomed.info/sct", "code": "WGT234"}]},
            "clinicalStatus": {"coding": [{"code": "remission"}]},
            "verificationStatus": {"coding": [{"code": "provisional"}]},
            "onsetDateTime": "2022-03-04",
            "note": [{"text": "first line"}, {"text": "second line"}],
        })
        assert condition.uuid == "b3c1a7e2-0000-4000-8000-000000000001"
        assert condition.condition_coded.uuid == CONCEPT_DIABETES_UUID
        assert condition.condition_non_coded is None
        assert condition.clinical_status == ConditionClinicalStatus.INACTIVE
        assert condition.verification_status == ConditionVerificationStatus.PROVISIONAL
        assert condition.onset_date == datetime(2022, 3, 4)
        assert condition.additional_detail == "first line\nsecond line"
        # INACTIVE is terminal: the end date is derived
        assert condition.end_date == NOW

    def test_unresolved_code_is_kept_as_free_text(self, conditions):
        condition = conditions.to_internal(None, {
            "resourceType": "Condition",
            "subject": SUBJECT,
            "code": {"coding": [{"system": "http://example.org", "code": "X1", "display": "Rare thing"}]},
        })
        assert condition.condition_coded is None
        assert condition.condition_non_coded == "Rare thing"

    def test_text_wins_over_display(self, conditions):
        condition = conditions.to_internal(None, {
            "resourceType": "Condition",
            "subject": SUBJECT,
            "code": {"coding": [{"code": "X1", "display": "Display"}], "text": "Migraine"},
        })
        assert condition.condition_non_coded == "Migraine"

    def test_end_reason_without_end_date(self, conditions):
        condition = conditions.to_internal(None, {
            "resourceType": "Condition",
            "subject": SUBJECT,
            "clinicalStatus": {"coding": [{"code": "active"}]},
            "extension": [{"url": "http://fhir.openmrs.org/ext/condition/end-reason", "valueString": "Cured"}],
        })
        assert condition.end_reason == "Cured"
        assert condition.end_date == NOW

    def test_explicit_abatement_is_kept(self, conditions):
        condition = conditions.to_internal(None, {
            "resourceType": "Condition",
            "subject": SUBJECT,
            "clinicalStatus": {"coding": [{"code": "resolved"}]},
            "abatementDateTime": "2021-01-01T00:00:00Z",
        })
        assert condition.clinical_status == ConditionClinicalStatus.HISTORY_OF
        assert condition.end_date == datetime(2021, 1, 1)

    def test_update_to_history_of_derives_end_date(self, session, conditions):
        existing = _condition(session, CONDITION_HYPERTENSION_UUID)
        updated = conditions.to_internal(existing, {
            "resourceType": "Condition",
            "subject": SUBJECT,
            "clinicalStatus": {"coding": [{"code": "resolved"}]},
        })
        assert updated is existing
        assert existing.clinical_status == ConditionClinicalStatus.HISTORY_OF
        assert existing.end_date == NOW
        assert existing.condition_coded.uuid == CONCEPT_HYPERTENSION_UUID

    @pytest.mark.parametrize(
        "literal,expected",
        [
            ("2017", datetime(2017, 1, 1)),
            ("2017-03", datetime(2017, 3, 1)),
            ("2017-03-04", datetime(2017, 3, 4)),
            ("2017-03-04T10:30:00.250000+02:00", datetime(2017, 3, 4, 8, 30, 0, 250000)),
        ],
    )
    def test_onset_at_any_precision(self, conditions, literal, expected):
        condition = conditions.to_internal(None, {
            "resourceType": "Condition",
            "subject": SUBJECT,
            "onsetDateTime": literal,
        })
        assert condition.onset_date == expected

    @pytest.mark.parametrize(
        "resource,field",
        [
            ({"resourceType": "Condition"}, "Condition.subject"),
            ({"resourceType": "Condition", "subject": {"reference": "Patient/nobody"}}, "Condition.subject"),
            ({"resourceType": "Condition", "subject": SUBJECT, "onsetDateTime": "yesterday"}, "Condition.onsetDateTime"),
            ({"resourceType": "Condition", "subject": SUBJECT, "abatementDateTime": "2017-13"}, "Condition.abatementDateTime"),
            (
                {"resourceType": "Condition", "subject": SUBJECT, "clinicalStatus": {"coding": [{"code": "unknown"}]}},
                "Condition.clinicalStatus",
            ),
        ],
    )
    def test_invalid_input(self, conditions, resource, field):
        with pytest.raises(InvalidResourceError) as exc_info:
            conditions.to_internal(None, resource)
        assert exc_info.value.field == field


class TestConditionRoundTrip:

    @pytest.mark.parametrize("uuid", [CONDITION_HYPERTENSION_UUID, CONDITION_HEADACHE_UUID, CONDITION_FRACTURE_UUID])
    def test_own_resource_changes_nothing(self, session, conditions, uuid):
        condition = _condition(session, uuid)
        before = conditions.snapshot(condition)
        conditions.to_internal(condition, conditions.to_fhir_resource(condition))
        assert conditions.snapshot(condition) == before
        assert not session.is_modified(condition)

    def test_legacy_coded_and_free_text_is_idempotent(self, session, conditions):
        condition = _condition(session, CONDITION_HYPERTENSION_UUID)
        condition.condition_non_coded = "High blood pressure (legacy)"
        session.flush()
        before = conditions.snapshot(condition)
        conditions.to_internal(condition, resource_to_dict(conditions.to_fhir_resource(condition)))
        assert conditions.snapshot(condition) == before
        assert condition.condition_non_coded == "High blood pressure (legacy)"


    def test_terminal_record_without_end_date_stays_open(self, session, conditions):
        condition = _condition(session, CONDITION_DIABETES_UUID)
        assert condition.clinical_status == ConditionClinicalStatus.INACTIVE
        condition.end_date = None
        session.flush()
        conditions.to_internal(condition, conditions.to_fhir_resource(condition))
        assert condition.end_date is None
        assert not session.is_modified(condition)

    def test_unrelated_update_does_not_invent_end_date(self, session, conditions):
        condition = _condition(session, CONDITION_DIABETES_UUID)
        condition.end_date = None
        session.flush()
        conditions.to_internal(condition, {
            "resourceType": "Condition",
            "subject": {"reference": f"Patient/{condition.patient.uuid}"},
            "clinicalStatus": {"coding": [{"code": "inactive"}]},
            "note": [{"text": "Diet controlled"}],
        })
        assert condition.additional_detail == "Diet controlled"
        assert condition.end_date is None

    def test_merge_records_keeps_terminal_record_open(self, session, conditions):
        condition = _condition(session, CONDITION_DIABETES_UUID)
        condition.end_date = None
        session.flush()
        conditions.merge_records(condition, Condition(additional_detail="Reviewed"))
        assert condition.additional_detail == "Reviewed"
        assert condition.end_date is None

    def test_end_reason_still_derives_end_date(self, session, conditions):
        condition = _condition(session, CONDITION_DIABETES_UUID)
        condition.end_date = None
        condition.end_reason = "Resolved with treatment"
        session.flush()
        conditions.to_internal(condition, conditions.to_fhir_resource(condition))
        assert condition.end_date == NOW


class TestAllergyToFhir:

    def test_coded_allergy(self, session, allergies):
        data = resource_to_dict(allergies.to_fhir_resource(_allergy(session, ALLERGY_PENICILLIN_UUID)))
        assert data["resourceType"] == "AllergyIntolerance"
        assert data["clinicalStatus"]["coding"][0]["code"] == "active"
        assert data["verificationStatus"]["coding"][0]["code"] == "confirmed"
        assert data["type"] == "allergy"
        assert data["category"] == ["medication"]
        assert data["criticality"] == "high"
        assert data["code"]["text"] == "Penicillin"
        assert data["patient"]["reference"] == f"Patient/{PATIENT_HORNBLOWER_UUID}"
        reaction = data["reaction"][0]
        assert reaction["severity"] == "severe"
        assert [m["text"] for m in reaction["manifestation"]] == ["Rash", "Hives"]
        assert reaction["manifestation"][0]["coding"][0]["code"] == CONCEPT_RASH_UUID
        assert data["note"] == [{"text": "Reaction within minutes"}]

    def test_free_text_allergen(self, session, allergies):
        data = resource_to_dict(allergies.to_fhir_resource(_allergy(session, ALLERGY_CAT_DANDER_UUID)))
        assert data["code"] == {"text": "Cat dander"}
        assert data["category"] == ["environment"]
        assert data["criticality"] == "low"
        assert data["reaction"][0]["severity"] == "mild"

    def test_unconfigured_severity_is_not_a_warning_on_read(self, session, allergies, caplog):
        allergy = _allergy(session, ALLERGY_CAT_DANDER_UUID)
        allergy.severity = session.query(Concept).filter_by(uuid=CONCEPT_RASH_UUID).one()
        with caplog.at_level(logging.DEBUG, logger="fhir_records"):
            data = resource_to_dict(allergies.to_fhir_resource(allergy))
        assert data["criticality"] == "unable-to-assess"
        assert "severity-other-concept" in caplog.text
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_voided_allergy_is_inactive(self, session, allergies):
        data = resource_to_dict(allergies.to_fhir_resource(_allergy(session, ALLERGY_VOIDED_UUID)))
        assert data["clinicalStatus"]["coding"][0]["code"] == "inactive"
        assert data["criticality"] == "unable-to-assess"
        assert "severity" not in data["reaction"][0]


class TestAllergyToInternal:

    def test_status_is_ignored(self, session, allergies):
        existing = _allergy(session, ALLERGY_PENICILLIN_UUID)
        allergies.to_internal(existing, {
            "resourceType": "AllergyIntolerance",
            "patient": SUBJECT,
            "clinicalStatus": {"coding": [{"code": "inactive"}]},
        })
        assert existing.voided is False

    def test_unknown_category_raises(self, allergies):
        with pytest.raises(InvalidResourceError):
            allergies.to_internal(None, {
                "resourceType": "AllergyIntolerance",
                "patient": SUBJECT,
                "category": ["plants"],
            })

    def test_missing_patient_raises(self, allergies):
        with pytest.raises(InvalidResourceError):
            allergies.to_internal(None, {"resourceType": "AllergyIntolerance", "category": ["food"]})

    def test_unconfigured_severity_is_skipped(self, session, allergies):
        existing = _allergy(session, ALLERGY_PENICILLIN_UUID)
        allergies.to_internal(existing, {
            "resourceType": "AllergyIntolerance",
            "patient": SUBJECT,
            "reaction": [{"manifestation": [{"text": "Wheezing"}], "severity": "other"}],
        })
        assert existing.severity.name == "Severe"
        assert [r.reaction_non_coded for r in existing.reactions] == ["Wheezing"]

    def test_new_allergy(self, allergies):
        allergy = allergies.to_internal(None, {
            "resourceType": "AllergyIntolerance",
            "patient": SUBJECT,
            "category": ["biologic"],
            "code": {"text": "Bee venom"},
            "reaction": [{"manifestation": [{"text": "Swelling"}], "severity": "mild"}],
        })
        assert allergy.allergen_type == AllergenType.OTHER
        assert allergy.allergen_non_coded == "Bee venom"
        assert allergy.severity.name == "Mild"
        assert allergy.voided is not True


class TestAllergyRoundTrip:

    @pytest.mark.parametrize("uuid", [ALLERGY_PENICILLIN_UUID, ALLERGY_CAT_DANDER_UUID])
    def test_own_resource_changes_nothing(self, session, allergies, uuid):
        allergy = _allergy(session, uuid)
        reactions = list(allergy.reactions)
        before = allergies.snapshot(allergy)
        allergies.to_internal(allergy, allergies.to_fhir_resource(allergy))
        assert allergies.snapshot(allergy) == before
        # unchanged reactions are not rewritten
        assert all(a is b for a, b in zip(allergy.reactions, reactions))
        assert not session.is_modified(allergy)
