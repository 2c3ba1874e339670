from __future__ import annotations
import enum
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class ConditionClinicalStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    HISTORY_OF = "HISTORY_OF"


class ConditionVerificationStatus(str, enum.Enum):
    PROVISIONAL = "PROVISIONAL"
    CONFIRMED = "CONFIRMED"


class AllergenType(str, enum.Enum):
    DRUG = "DRUG"
    FOOD = "FOOD"
    ENVIRONMENT = "ENVIRONMENT"
    OTHER = "OTHER"


class VoidableMixin:
    """
    Soft-delete columns shared by every clinical record.
    A voided row stays in the table; it is only hidden from default searches.
    """

    voided: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    date_voided: Mapped[Optional[datetime]] = mapped_column(DateTime)
    void_reason: Mapped[Optional[str]] = mapped_column(String(255))


class AuditedMixin:
    # maintained by the storage layer, never by translators
    date_created: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    date_changed: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=utcnow)


# ---- Patients ----------------------------------------------------------------

class Patient(VoidableMixin, Base):
    __tablename__ = "patient"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[str] = mapped_column(String(38), unique=True, default=_new_uuid, nullable=False)

    names: Mapped[List["PersonName"]] = relationship(back_populates="patient", order_by="PersonName.id")
    identifiers: Mapped[List["PatientIdentifier"]] = relationship(back_populates="patient")

    @property
    def preferred_name(self) -> Optional["PersonName"]:
        live = [n for n in self.names if not n.voided]
        for n in live:
            if n.preferred:
                return n
        return live[0] if live else None

    @property
    def given_name(self) -> Optional[str]:
        n = self.preferred_name
        return n.given_name if n else None

    @property
    def family_name(self) -> Optional[str]:
        n = self.preferred_name
        return n.family_name if n else None

    @property
    def display_name(self) -> Optional[str]:
        n = self.preferred_name
        if n is None:
            return None
        return " ".join(p for p in (n.given_name, n.middle_name, n.family_name) if p) or None


class PersonName(VoidableMixin, Base):
    __tablename__ = "person_name"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patient.id"), nullable=False)
    preferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    given_name: Mapped[Optional[str]] = mapped_column(String(50))
    middle_name: Mapped[Optional[str]] = mapped_column(String(50))
    family_name: Mapped[Optional[str]] = mapped_column(String(50))

    patient: Mapped[Patient] = relationship(back_populates="names")


class PatientIdentifier(VoidableMixin, Base):
    __tablename__ = "patient_identifier"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patient.id"), nullable=False)
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)

    patient: Mapped[Patient] = relationship(back_populates="identifiers")


# ---- Concepts ----------------------------------------------------------------

class ConceptSource(Base):
    """A code system; `url` is what FHIR calls the system, `name` the local label."""

    __tablename__ = "concept_source"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(String(255))


class Concept(Base):
    __tablename__ = "concept"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[str] = mapped_column(String(38), unique=True, default=_new_uuid, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))

    mappings: Mapped[List["ConceptMapping"]] = relationship(back_populates="concept", order_by="ConceptMapping.id")


class ConceptMapping(Base):
    __tablename__ = "concept_mapping"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    concept_id: Mapped[int] = mapped_column(ForeignKey("concept.id"), nullable=False)
    source_id: Mapped[int] = mapped_column(ForeignKey("concept_source.id"), nullable=False)
    code: Mapped[str] = mapped_column(String(255), nullable=False)

    concept: Mapped[Concept] = relationship(back_populates="mappings")
    source: Mapped[ConceptSource] = relationship()


# ---- Clinical records --------------------------------------------------------

class Condition(VoidableMixin, AuditedMixin, Base):
    """
    A diagnosis or problem-list entry.

    The condition itself is coded-or-free-text: `condition_coded` is authoritative when
    set, `condition_non_coded` is only used when there is no coded concept.
    """

    __tablename__ = "conditions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[str] = mapped_column(String(38), unique=True, default=_new_uuid, nullable=False)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patient.id"), nullable=False)

    condition_coded_id: Mapped[Optional[int]] = mapped_column(ForeignKey("concept.id"))
    condition_non_coded: Mapped[Optional[str]] = mapped_column(String(255))

    clinical_status: Mapped[Optional[ConditionClinicalStatus]] = mapped_column(
        Enum(ConditionClinicalStatus, native_enum=False, length=20)
    )
    verification_status: Mapped[Optional[ConditionVerificationStatus]] = mapped_column(
        Enum(ConditionVerificationStatus, native_enum=False, length=20)
    )
    onset_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    end_reason: Mapped[Optional[str]] = mapped_column(String(255))
    additional_detail: Mapped[Optional[str]] = mapped_column(Text)

    patient: Mapped[Optional[Patient]] = relationship()
    condition_coded: Mapped[Optional[Concept]] = relationship()


class Allergy(VoidableMixin, AuditedMixin, Base):
    """An allergy or intolerance; its FHIR clinical status is derived from `voided`."""

    __tablename__ = "allergy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[str] = mapped_column(String(38), unique=True, default=_new_uuid, nullable=False)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patient.id"), nullable=False)

    allergen_coded_id: Mapped[Optional[int]] = mapped_column(ForeignKey("concept.id"))
    allergen_non_coded: Mapped[Optional[str]] = mapped_column(String(255))
    allergen_type: Mapped[Optional[AllergenType]] = mapped_column(
        Enum(AllergenType, native_enum=False, length=20)
    )
    severity_concept_id: Mapped[Optional[int]] = mapped_column(ForeignKey("concept.id"))
    comment: Mapped[Optional[str]] = mapped_column(String(1024))

    patient: Mapped[Optional[Patient]] = relationship()
    allergen_coded: Mapped[Optional[Concept]] = relationship(foreign_keys=[allergen_coded_id])
    severity: Mapped[Optional[Concept]] = relationship(foreign_keys=[severity_concept_id])
    reactions: Mapped[List["AllergyReaction"]] = relationship(
        back_populates="allergy", cascade="all, delete-orphan", order_by="AllergyReaction.id"
    )


class AllergyReaction(Base):
    __tablename__ = "allergy_reaction"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    allergy_id: Mapped[int] = mapped_column(ForeignKey("allergy.id"), nullable=False)
    reaction_concept_id: Mapped[Optional[int]] = mapped_column(ForeignKey("concept.id"))
    reaction_non_coded: Mapped[Optional[str]] = mapped_column(String(255))

    allergy: Mapped[Allergy] = relationship(back_populates="reactions")
    reaction: Mapped[Optional[Concept]] = relationship()


# ---- Site configuration ------------------------------------------------------

class GlobalProperty(Base):
    __tablename__ = "global_property"

    property: Mapped[str] = mapped_column(String(255), primary_key=True)
    property_value: Mapped[Optional[str]] = mapped_column(Text)
