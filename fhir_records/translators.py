"""
Translators between stored records and FHIR R4B resources.

Writes are merges: the incoming resource is read into a mapping holding only the fields it
actually carries, and `merge_fields` lays that mapping over a snapshot of the existing record.
Fields the resource leaves out keep their stored value, so translating a record's own resource
back onto it changes nothing. Derived fields (end date) are enforced after the merge.
"""
from __future__ import annotations
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from fhir.resources.R4B.allergyintolerance import AllergyIntolerance as FhirAllergyIntolerance
from fhir.resources.R4B.condition import Condition as FhirCondition
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import vocabulary
from .errors import InvalidResourceError
from .fhir_utils import as_resource_dict
from .global_properties import GlobalPropertyResolver, PropertySnapshot
from .models import Allergy, AllergyReaction, Concept, Condition, Patient, utcnow
from .search_params import fhir_date_lower_bound
from .vocabulary import CodedOrFreeText, ConceptResolver, concept_to_codeable

logger = logging.getLogger("fhir_records.translators")

Fields = Dict[str, Any]


# ---- Shared helpers ----------------------------------------------------------

class PatientResolver:
    def __init__(self, session: Session):
        self.session = session

    def by_uuid(self, uuid: str) -> Optional[Patient]:
        return self.session.scalar(select(Patient).where(Patient.uuid == uuid))


def _fhir_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


_PARTIAL_DATE = re.compile(r"^\d{4}(-\d{2})?$")


def _parse_datetime(value: Any, field: str) -> Optional[datetime]:
    """FHIR dateTime (string or parsed value) -> naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif _PARTIAL_DATE.match(str(value)):
        # year or year-month precision: store the first instant it covers
        try:
            return fhir_date_lower_bound(str(value))
        except ValueError as exc:
            raise InvalidResourceError(f"Invalid dateTime for {field}: {value}", field=field) from exc
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidResourceError(f"Invalid dateTime for {field}: {value}", field=field) from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _patient_reference(patient: Optional[Patient]) -> Optional[Dict[str, Any]]:
    if patient is None:
        return None
    ref: Dict[str, Any] = {"reference": f"Patient/{patient.uuid}", "type": "Patient"}
    if patient.display_name:
        ref["display"] = patient.display_name
    return ref


def _resolve_patient(patients: PatientResolver, reference: Optional[Mapping[str, Any]], field: str) -> Patient:
    if not reference or not reference.get("reference"):
        raise InvalidResourceError(f"{field} is required", field=field)
    uuid = str(reference["reference"]).rsplit("/", 1)[-1]
    patient = patients.by_uuid(uuid)
    if patient is None:
        raise InvalidResourceError(f"{field} references unknown patient {uuid}", field=field)
    return patient


def _first_code(codeable: Optional[Mapping[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    for coding in (codeable or {}).get("coding") or []:
        if coding.get("code"):
            return coding.get("system"), coding["code"]
    return None, None


def _status_codeable(system: str, code: Optional[str]) -> Optional[Dict[str, Any]]:
    if code is None:
        return None
    return {"coding": [{"system": system, "code": code}], "text": code}


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, CodedOrFreeText) and isinstance(b, CodedOrFreeText):
        return a.effective_key() == b.effective_key()
    if isinstance(a, tuple) and isinstance(b, tuple):
        return len(a) == len(b) and all(_same(x, y) for x, y in zip(a, b))
    return a is b or a == b


def _is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, CodedOrFreeText):
        return value.is_empty
    if isinstance(value, tuple):
        return not value
    return False


def merge_fields(existing: Optional[Mapping[str, Any]], incoming: Optional[Mapping[str, Any]]) -> Fields:
    """
    Lay `incoming` over `existing`. A key missing from `incoming` keeps the existing value; a
    key whose incoming value has the same effective meaning also keeps the existing value, so
    an unchanged representation never rewrites the record.
    """
    merged: Fields = dict(existing or {})
    for key, value in (incoming or {}).items():
        if key in merged and _same(merged[key], value):
            continue
        merged[key] = value
    return merged


def present_fields(fields: Mapping[str, Any]) -> Fields:
    return {k: v for k, v in fields.items() if not _is_absent(v)}


# ---- Condition ---------------------------------------------------------------

class ConditionTranslator:
    def __init__(
        self,
        concepts: ConceptResolver,
        patients: PatientResolver,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.concepts = concepts
        self.patients = patients
        self.clock = clock

    @classmethod
    def for_session(cls, session: Session, **kwargs: Any) -> "ConditionTranslator":
        return cls(ConceptResolver(session), PatientResolver(session), **kwargs)

    def to_fhir_resource(self, condition: Condition) -> FhirCondition:
        out: Dict[str, Any] = {
            "resourceType": "Condition",
            "id": condition.uuid,
            "clinicalStatus": _status_codeable(
                vocabulary.CONDITION_CLINICAL_SYSTEM,
                vocabulary.condition_status_to_code(condition.clinical_status),
            ),
            "verificationStatus": _status_codeable(
                vocabulary.CONDITION_VERIFICATION_SYSTEM,
                vocabulary.verification_status_to_code(condition.verification_status),
            ),
            "code": concept_to_codeable(condition.condition_coded, condition.condition_non_coded),
            "subject": _patient_reference(condition.patient),
            "onsetDateTime": _fhir_datetime(condition.onset_date),
            "abatementDateTime": _fhir_datetime(condition.end_date),
            "recordedDate": _fhir_datetime(condition.date_created),
        }
        if condition.end_reason:
            out["extension"] = [{"url": vocabulary.END_REASON_EXTENSION_URL, "valueString": condition.end_reason}]
        if condition.additional_detail:
            out["note"] = [{"text": condition.additional_detail}]
        last_updated = condition.date_changed or condition.date_created
        if last_updated is not None:
            out["meta"] = {"lastUpdated": _fhir_datetime(last_updated)}
        return FhirCondition(**{k: v for k, v in out.items() if v is not None})

    def snapshot(self, condition: Condition) -> Fields:
        return {
            "patient": condition.patient,
            "condition": CodedOrFreeText(condition.condition_coded, condition.condition_non_coded),
            "clinical_status": condition.clinical_status,
            "verification_status": condition.verification_status,
            "onset_date": condition.onset_date,
            "end_date": condition.end_date,
            "end_reason": condition.end_reason,
            "additional_detail": condition.additional_detail,
        }

    def read_fields(self, data: Mapping[str, Any]) -> Fields:
        """Fields carried by a Condition resource; absent elements are left out."""
        fields: Fields = {"patient": _resolve_patient(self.patients, data.get("subject"), "Condition.subject")}
        if data.get("code"):
            fields["condition"] = self.concepts.from_codeable(data["code"])
        if data.get("clinicalStatus"):
            system, code = _first_code(data["clinicalStatus"])
            status = vocabulary.condition_status_from_code(code, system)
            if status is None:
                raise InvalidResourceError(f"Unsupported clinical status: {code}", field="Condition.clinicalStatus")
            fields["clinical_status"] = status
        if data.get("verificationStatus"):
            system, code = _first_code(data["verificationStatus"])
            status = vocabulary.verification_status_from_code(code, system)
            if status is None:
                raise InvalidResourceError(
                    f"Unsupported verification status: {code}", field="Condition.verificationStatus"
                )
            fields["verification_status"] = status
        if data.get("onsetDateTime"):
            fields["onset_date"] = _parse_datetime(data["onsetDateTime"], "Condition.onsetDateTime")
        if data.get("abatementDateTime"):
            fields["end_date"] = _parse_datetime(data["abatementDateTime"], "Condition.abatementDateTime")
        for ext in data.get("extension") or []:
            if ext.get("url") == vocabulary.END_REASON_EXTENSION_URL and ext.get("valueString"):
                fields["end_reason"] = ext["valueString"]
        notes = [n.get("text") for n in data.get("note") or [] if n.get("text")]
        if notes:
            fields["additional_detail"] = "\n".join(notes)
        return fields

    def to_internal(self, existing: Optional[Condition], resource: Any) -> Condition:
        data = as_resource_dict(resource)
        incoming = self.read_fields(data)
        if existing is not None and existing.id is not None:
            condition, base = existing, self.snapshot(existing)
        else:
            condition, base = existing or Condition(), None
            if not condition.uuid and data.get("id"):
                condition.uuid = data["id"]
        self._apply(condition, merge_fields(base, incoming))
        self.enforce_derived_fields(condition, base)
        return condition

    def merge_records(self, existing: Condition, incoming: Condition) -> Condition:
        """Record-level counterpart of `to_internal`: non-empty fields of `incoming` win."""
        base = self.snapshot(existing)
        self._apply(existing, merge_fields(base, present_fields(self.snapshot(incoming))))
        self.enforce_derived_fields(existing, base)
        return existing

    def enforce_derived_fields(self, condition: Condition, previous: Optional[Mapping[str, Any]] = None) -> None:
        """
        Derive a missing end date. An end reason always needs one; a terminal status only on
        the write that moves the record into it. `previous` is the stored state before the
        write, None for a new record.
        """
        if condition.end_date is not None:
            return
        entered_terminal = previous is None or previous.get("clinical_status") != condition.clinical_status
        if condition.end_reason:
            condition.end_date = self.clock()
            logger.info("Condition %s has an end reason but no end date; set to %s", condition.uuid, condition.end_date)
        elif entered_terminal and condition.clinical_status in vocabulary.TERMINAL_CONDITION_STATUSES:
            condition.end_date = self.clock()
            logger.info(
                "Condition %s moved to %s without an end date; set to %s",
                condition.uuid, condition.clinical_status.value, condition.end_date,
            )

    @staticmethod
    def _apply(condition: Condition, fields: Mapping[str, Any]) -> None:
        for key, value in fields.items():
            if key == "condition":
                condition.condition_coded = value.coded
                condition.condition_non_coded = value.non_coded
            else:
                setattr(condition, key, value)


# ---- AllergyIntolerance ------------------------------------------------------

class AllergyIntoleranceTranslator:
    def __init__(
        self,
        concepts: ConceptResolver,
        patients: PatientResolver,
        properties: GlobalPropertyResolver | None = None,
    ):
        self.concepts = concepts
        self.patients = patients
        self.properties = properties

    @classmethod
    def for_session(cls, session: Session, properties: GlobalPropertyResolver | None = None) -> "AllergyIntoleranceTranslator":
        return cls(ConceptResolver(session), PatientResolver(session), properties)

    def to_fhir_resource(self, allergy: Allergy) -> FhirAllergyIntolerance:
        props = PropertySnapshot(self.properties, missing_level=logging.DEBUG)
        severity = vocabulary.severity_code_for_concept(allergy.severity, props)
        category = vocabulary.category_from_allergen_type(allergy.allergen_type)
        out: Dict[str, Any] = {
            "resourceType": "AllergyIntolerance",
            "id": allergy.uuid,
            "clinicalStatus": _status_codeable(
                vocabulary.ALLERGY_CLINICAL_SYSTEM, vocabulary.allergy_status_from_voided(allergy.voided)
            ),
            "verificationStatus": _status_codeable(vocabulary.ALLERGY_VERIFICATION_SYSTEM, "confirmed"),
            "type": "allergy",
            "category": [category] if category else None,
            "criticality": vocabulary.criticality_for_severity(severity),
            "code": concept_to_codeable(allergy.allergen_coded, allergy.allergen_non_coded),
            "patient": _patient_reference(allergy.patient),
            "recordedDate": _fhir_datetime(allergy.date_created),
        }
        manifestations = [
            c for c in (concept_to_codeable(r.reaction, r.reaction_non_coded) for r in allergy.reactions) if c
        ]
        if manifestations:
            reaction: Dict[str, Any] = {"manifestation": manifestations}
            if severity in ("mild", "moderate", "severe"):
                reaction["severity"] = severity
            out["reaction"] = [reaction]
        if allergy.comment:
            out["note"] = [{"text": allergy.comment}]
        return FhirAllergyIntolerance(**{k: v for k, v in out.items() if v is not None})

    def snapshot(self, allergy: Allergy) -> Fields:
        return {
            "patient": allergy.patient,
            "allergen": CodedOrFreeText(allergy.allergen_coded, allergy.allergen_non_coded),
            "allergen_type": allergy.allergen_type,
            "severity": allergy.severity,
            "comment": allergy.comment,
            "reactions": tuple(CodedOrFreeText(r.reaction, r.reaction_non_coded) for r in allergy.reactions),
        }

    def read_fields(self, data: Mapping[str, Any]) -> Fields:
        fields: Fields = {"patient": _resolve_patient(self.patients, data.get("patient"), "AllergyIntolerance.patient")}
        if data.get("code"):
            fields["allergen"] = self.concepts.from_codeable(data["code"])
        categories = data.get("category") or []
        if categories:
            allergen_type = vocabulary.allergen_type_from_category(categories[0])
            if allergen_type is None:
                raise InvalidResourceError(f"Unsupported category: {categories[0]}", field="AllergyIntolerance.category")
            fields["allergen_type"] = allergen_type
        reactions: List[CodedOrFreeText] = []
        severity_code: Optional[str] = None
        for reaction in data.get("reaction") or []:
            for manifestation in reaction.get("manifestation") or []:
                value = self.concepts.from_codeable(manifestation)
                if not value.is_empty:
                    reactions.append(value)
            severity_code = severity_code or reaction.get("severity")
        if reactions:
            fields["reactions"] = tuple(reactions)
        if severity_code:
            severity = self._severity_concept(severity_code)
            if severity is not None:
                fields["severity"] = severity
        notes = [n.get("text") for n in data.get("note") or [] if n.get("text")]
        if notes:
            fields["comment"] = "\n".join(notes)
        return fields

    def _severity_concept(self, code: str) -> Optional[Concept]:
        uuid = vocabulary.severity_concept_uuid(code, PropertySnapshot(self.properties))
        if uuid is None:
            logger.warning("No concept configured for allergy severity %r; severity left unchanged", code)
            return None
        concept = self.concepts.by_uuid(uuid)
        if concept is None:
            logger.warning("Severity %r is configured as %s but no such concept exists", code, uuid)
        return concept

    def to_internal(self, existing: Optional[Allergy], resource: Any) -> Allergy:
        # clinicalStatus is derived from `voided` and deliberately not read: writes never void
        data = as_resource_dict(resource)
        incoming = self.read_fields(data)
        if existing is not None and existing.id is not None:
            allergy, base = existing, self.snapshot(existing)
        else:
            allergy, base = existing or Allergy(), None
            if not allergy.uuid and data.get("id"):
                allergy.uuid = data["id"]
        self._apply(allergy, merge_fields(base, incoming))
        return allergy

    def merge_records(self, existing: Allergy, incoming: Allergy) -> Allergy:
        self._apply(existing, merge_fields(self.snapshot(existing), present_fields(self.snapshot(incoming))))
        return existing

    @staticmethod
    def _apply(allergy: Allergy, fields: Mapping[str, Any]) -> None:
        for key, value in fields.items():
            if key == "allergen":
                allergy.allergen_coded = value.coded
                allergy.allergen_non_coded = value.non_coded
            elif key == "reactions":
                current = tuple(CodedOrFreeText(r.reaction, r.reaction_non_coded) for r in allergy.reactions)
                if not _same(current, value):
                    allergy.reactions = [
                        AllergyReaction(reaction=v.coded, reaction_non_coded=v.non_coded) for v in value
                    ]
            else:
                setattr(allergy, key, value)
