"""
Mapping between FHIR vocabularies and the internal coded representations.

Enumerations (condition clinical status, allergy category) are fixed tables. Allergy severity
is site-configurable: each FHIR severity code is bound to a concept UUID through a global
property, so every lookup goes through a `PropertySnapshot`.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .global_properties import (
    PropertySnapshot,
    SEVERITY_MILD_CONCEPT,
    SEVERITY_MODERATE_CONCEPT,
    SEVERITY_OTHER_CONCEPT,
    SEVERITY_SEVERE_CONCEPT,
)
from .models import (
    AllergenType,
    Concept,
    ConceptMapping,
    ConceptSource,
    ConditionClinicalStatus,
    ConditionVerificationStatus,
)

logger = logging.getLogger("fhir_records.vocabulary")

CONDITION_CLINICAL_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-clinical"
CONDITION_VERIFICATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-ver-status"
ALLERGY_CLINICAL_SYSTEM = "http://terminology.hl7.org/CodeSystem/allergyintolerance-clinical"
ALLERGY_VERIFICATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/allergyintolerance-verification"
END_REASON_EXTENSION_URL = "http://fhir.openmrs.org/ext/condition/end-reason"

# ---- Condition clinical / verification status --------------------------------

_CONDITION_STATUS_IN: Dict[str, ConditionClinicalStatus] = {
    "active": ConditionClinicalStatus.ACTIVE,
    "recurrence": ConditionClinicalStatus.ACTIVE,
    "relapse": ConditionClinicalStatus.ACTIVE,
    "inactive": ConditionClinicalStatus.INACTIVE,
    "remission": ConditionClinicalStatus.INACTIVE,
    "resolved": ConditionClinicalStatus.HISTORY_OF,
}

_CONDITION_STATUS_OUT: Dict[ConditionClinicalStatus, str] = {
    ConditionClinicalStatus.ACTIVE: "active",
    ConditionClinicalStatus.INACTIVE: "inactive",
    ConditionClinicalStatus.HISTORY_OF: "resolved",
}

TERMINAL_CONDITION_STATUSES = frozenset({ConditionClinicalStatus.INACTIVE, ConditionClinicalStatus.HISTORY_OF})

_VERIFICATION_IN: Dict[str, ConditionVerificationStatus] = {
    "provisional": ConditionVerificationStatus.PROVISIONAL,
    "unconfirmed": ConditionVerificationStatus.PROVISIONAL,
    "confirmed": ConditionVerificationStatus.CONFIRMED,
}

_VERIFICATION_OUT: Dict[ConditionVerificationStatus, str] = {
    ConditionVerificationStatus.PROVISIONAL: "provisional",
    ConditionVerificationStatus.CONFIRMED: "confirmed",
}


def _matches_system(system: Optional[str], expected: str) -> bool:
    return not system or system == expected


def condition_status_from_code(code: Optional[str], system: Optional[str] = None) -> Optional[ConditionClinicalStatus]:
    if not code or not _matches_system(system, CONDITION_CLINICAL_SYSTEM):
        return None
    return _CONDITION_STATUS_IN.get(code.strip().lower())


def condition_status_to_code(status: Optional[ConditionClinicalStatus]) -> Optional[str]:
    return _CONDITION_STATUS_OUT.get(status) if status is not None else None


def verification_status_from_code(code: Optional[str], system: Optional[str] = None) -> Optional[ConditionVerificationStatus]:
    if not code or not _matches_system(system, CONDITION_VERIFICATION_SYSTEM):
        return None
    return _VERIFICATION_IN.get(code.strip().lower())


def verification_status_to_code(status: Optional[ConditionVerificationStatus]) -> Optional[str]:
    return _VERIFICATION_OUT.get(status) if status is not None else None


# ---- Allergy clinical status (derived from the soft-delete flag) --------------

_ALLERGY_STATUS_TO_VOIDED: Dict[str, bool] = {"active": False, "inactive": True}


def allergy_status_to_voided(code: Optional[str], system: Optional[str] = None) -> Optional[bool]:
    """Map an allergy clinical-status token onto the value of `voided` it selects."""
    if not code or not _matches_system(system, ALLERGY_CLINICAL_SYSTEM):
        return None
    return _ALLERGY_STATUS_TO_VOIDED.get(code.strip().lower())


def allergy_status_from_voided(voided: bool) -> str:
    return "inactive" if voided else "active"


# ---- Allergy category ----------------------------------------------------------

_CATEGORY_IN: Dict[str, AllergenType] = {
    "food": AllergenType.FOOD,
    "medication": AllergenType.DRUG,
    "environment": AllergenType.ENVIRONMENT,
    "biologic": AllergenType.OTHER,
}
_CATEGORY_OUT: Dict[AllergenType, str] = {v: k for k, v in _CATEGORY_IN.items()}


def allergen_type_from_category(code: Optional[str]) -> Optional[AllergenType]:
    if not code:
        return None
    return _CATEGORY_IN.get(code.strip().lower())


def category_from_allergen_type(allergen_type: Optional[AllergenType]) -> Optional[str]:
    return _CATEGORY_OUT.get(allergen_type) if allergen_type is not None else None


# ---- Allergy severity (site configurable) -------------------------------------

SEVERITY_PROPERTY_KEYS: Dict[str, str] = {
    "mild": SEVERITY_MILD_CONCEPT,
    "moderate": SEVERITY_MODERATE_CONCEPT,
    "severe": SEVERITY_SEVERE_CONCEPT,
    "other": SEVERITY_OTHER_CONCEPT,
}

_CRITICALITY = {"severe": "high", "moderate": "low", "mild": "low"}


def severity_concept_uuid(code: Optional[str], properties: PropertySnapshot) -> Optional[str]:
    """Concept UUID configured for a FHIR severity code; None if unknown or not configured."""
    if not code:
        return None
    key = SEVERITY_PROPERTY_KEYS.get(code.strip().lower())
    if key is None:
        logger.debug("Unrecognized severity code %r", code)
        return None
    return properties.get(key)


def severity_code_for_concept(concept: Optional[Concept], properties: PropertySnapshot) -> Optional[str]:
    if concept is None:
        return None
    for code, key in SEVERITY_PROPERTY_KEYS.items():
        if properties.get(key) == concept.uuid:
            return code
    return None


def criticality_for_severity(severity_code: Optional[str]) -> str:
    return _CRITICALITY.get(severity_code or "", "unable-to-assess")


# ---- Coded concepts ------------------------------------------------------------

@dataclass(frozen=True)
class CodedOrFreeText:
    """
    Value of a coded-or-free-text field.

    `coded` wins when present; `non_coded` is only authoritative when there is no concept.
    """

    coded: Optional[Concept] = None
    non_coded: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.coded is None and not self.non_coded

    def effective_key(self) -> tuple:
        if self.coded is not None:
            return ("coded", self.coded.uuid)
        return ("text", self.non_coded)


def concept_to_codeable(concept: Optional[Concept], non_coded: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """CodeableConcept for a coded-or-free-text value; the concept wins over the free text."""
    if concept is not None:
        codings: List[Dict[str, Any]] = [{"code": concept.uuid, "display": concept.name}]
        for mapping in concept.mappings:
            coding = {"code": mapping.code}
            if mapping.source is not None and mapping.source.url:
                coding["system"] = mapping.source.url
            codings.append(coding)
        out: Dict[str, Any] = {"coding": [{k: v for k, v in c.items() if v is not None} for c in codings]}
        if concept.name:
            out["text"] = concept.name
        return out
    if non_coded:
        return {"text": non_coded}
    return None


class ConceptResolver:
    """Resolves external codings to stored concepts."""

    def __init__(self, session: Session):
        self.session = session

    def by_uuid(self, uuid: str) -> Optional[Concept]:
        return self.session.scalar(select(Concept).where(Concept.uuid == uuid))

    def by_coding(self, system: Optional[str], code: str) -> Optional[Concept]:
        """A system-less code is tried as a concept UUID first, then as a code in any source."""
        if not system:
            concept = self.by_uuid(code)
            if concept is not None:
                return concept
        stmt = (
            select(Concept)
            .join(Concept.mappings)
            .join(ConceptMapping.source)
            .where(ConceptMapping.code == code)
            .order_by(Concept.id)
            .limit(1)
        )
        if system:
            stmt = stmt.where(or_(ConceptSource.url == system, ConceptSource.name == system))
        return self.session.scalar(stmt)

    def from_codeable(self, codeable: Optional[Dict[str, Any]]) -> CodedOrFreeText:
        """
        Resolve a CodeableConcept to a concept, falling back to free text.

        Codings are tried in order; the first one that resolves wins.
        """
        if not codeable:
            return CodedOrFreeText()
        codings: Iterable[Dict[str, Any]] = codeable.get("coding") or []
        for coding in codings:
            code = coding.get("code")
            if not code:
                continue
            concept = self.by_coding(coding.get("system"), code)
            if concept is not None:
                return CodedOrFreeText(coded=concept)
        text = codeable.get("text")
        if not text:
            for coding in codings:
                text = coding.get("display") or coding.get("code")
                if text:
                    break
        return CodedOrFreeText(non_coded=text or None)
