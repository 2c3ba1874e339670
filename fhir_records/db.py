from __future__ import annotations
from datetime import datetime
from sqlalchemy import create_engine, select, func
from sqlalchemy.orm import Session, sessionmaker
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from .global_properties import (
    SEVERITY_MILD_CONCEPT,
    SEVERITY_MODERATE_CONCEPT,
    SEVERITY_SEVERE_CONCEPT,
)
from .models import (
    AllergenType,
    Allergy,
    AllergyReaction,
    Base,
    Concept,
    ConceptMapping,
    ConceptSource,
    Condition,
    ConditionClinicalStatus,
    ConditionVerificationStatus,
    GlobalProperty,
    Patient,
    PatientIdentifier,
    PersonName,
)

class Settings(BaseSettings):
    db_url: str = Field("sqlite:///./fhir_records.db", validation_alias="FHIR_RECORDS_DB_URL")
    log_level: str = Field("INFO", validation_alias="FHIR_RECORDS_LOG_LEVEL")
    default_page_size: int = Field(20, validation_alias="FHIR_RECORDS_DEFAULT_PAGE_SIZE")
    max_page_size: int = Field(100, validation_alias="FHIR_RECORDS_MAX_PAGE_SIZE")
    seed_demo_data: bool = Field(True, validation_alias="FHIR_RECORDS_SEED_DEMO_DATA")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
    )

settings = Settings()

DB_URL = settings.db_url

def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        # FastAPI runs sync endpoints in a threadpool
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=False, **kwargs)

engine = make_engine(DB_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

# ---- Demo data ---------------------------------------------------------------

PATIENT_HORNBLOWER_UUID = "da7f524f-27ce-4bb2-86d6-6d1d05312bd5"
PATIENT_HORATIO_UUID = "5946f880-b197-400b-9caa-a3c661d23041"
PATIENT_DOE_UUID = "ca17fcc5-ec96-487f-b9ea-42973c8973e3"

CONCEPT_HYPERTENSION_UUID = "5497AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_DIABETES_UUID = "5089AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_MALARIA_UUID = "c607c80f-1ea9-4da3-bb88-6276ce8868dd"
CONCEPT_PENICILLIN_UUID = "71617AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_PEANUTS_UUID = "162302AAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_RASH_UUID = "512AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_HIVES_UUID = "111061AAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_ANAPHYLAXIS_UUID = "148888AAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_MILD_UUID = "1498AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_MODERATE_UUID = "1499AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
CONCEPT_SEVERE_UUID = "1500AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"

SNOMED_SYSTEM = "http://snomed.info/sct"
CIEL_SYSTEM = "https://cielterminology.org"

CONDITION_HYPERTENSION_UUID = "2cc6880e-2c46-15e4-9038-a6c5e4d22fb7"
CONDITION_HEADACHE_UUID = "8a9f3c2e-4d5b-4e6f-9a7b-1c2d3e4f5a6b"
CONDITION_DIABETES_UUID = "3d5c2b1a-6e7f-4a8b-9c0d-1e2f3a4b5c6d"
CONDITION_MALARIA_UUID = "604953c5-b5c6-4e1e-be95-e37d8f392046"
CONDITION_FRACTURE_UUID = "7f8e9d0c-1b2a-4c3d-8e9f-0a1b2c3d4e5f"
CONDITION_VOIDED_UUID = "9e8d7c6b-5a4f-4e3d-9c2b-1a0f9e8d7c6b"

ALLERGY_PENICILLIN_UUID = "1084ee5c-8b3f-4a7e-9a2d-3c4b5d6e7f80"
ALLERGY_CAT_DANDER_UUID = "2195ff6d-9c4a-4b8f-8b3e-4d5c6e7f8091"
ALLERGY_PEANUTS_UUID = "32a6007e-ad5b-4c9a-9c4f-5e6d7f8091a2"
ALLERGY_VOIDED_UUID = "43b7118f-be6c-4dab-ad5a-6f7e8091a2b3"

def seed_demo_data(s: Session) -> None:
    """
    Insert a small clinical data set: three patients, a handful of concepts with
    terminology mappings, conditions, allergies and the severity properties.
    The caller commits.
    """
    snomed = ConceptSource(id=1, name="SNOMED CT", url=SNOMED_SYSTEM)
    ciel = ConceptSource(id=2, name="CIEL", url=CIEL_SYSTEM)

    def concept(cid, uuid, name, *codes):
        c = Concept(id=cid, uuid=uuid, name=name)
        c.mappings = [ConceptMapping(source=src, code=code) for src, code in codes]
        return c

    hypertension = concept(5497, CONCEPT_HYPERTENSION_UUID, "Hypertension", (snomed, "CD41003"), (ciel, "117399"))
    diabetes = concept(5089, CONCEPT_DIABETES_UUID, "Diabetes mellitus", (snomed, "WGT234"))
    malaria = concept(5090, CONCEPT_MALARIA_UUID, "Malaria")
    penicillin = concept(71617, CONCEPT_PENICILLIN_UUID, "Penicillin", (ciel, "71617"))
    peanuts = concept(162302, CONCEPT_PEANUTS_UUID, "Peanuts", (ciel, "162302"))
    rash = concept(512, CONCEPT_RASH_UUID, "Rash", (snomed, "271807003"), (ciel, "512"))
    hives = concept(111061, CONCEPT_HIVES_UUID, "Hives", (snomed, "247472004"), (ciel, "111061"))
    anaphylaxis = concept(148888, CONCEPT_ANAPHYLAXIS_UUID, "Anaphylaxis", (ciel, "148888"))
    mild = concept(1498, CONCEPT_MILD_UUID, "Mild")
    moderate = concept(1499, CONCEPT_MODERATE_UUID, "Moderate")
    severe = concept(1500, CONCEPT_SEVERE_UUID, "Severe")

    # Patient A carries its name twice, which must not duplicate search results
    hornblower = Patient(id=1, uuid=PATIENT_HORNBLOWER_UUID)
    hornblower.names = [
        PersonName(given_name="Horatio", family_name="Hornblower", preferred=True),
        PersonName(given_name="Horatio", middle_name="Test", family_name="Hornblower"),
    ]
    hornblower.identifiers = [PatientIdentifier(identifier="101-6")]
    horatio = Patient(id=6, uuid=PATIENT_HORATIO_UUID)
    horatio.names = [PersonName(given_name="Horatio", family_name="Hornblower", preferred=True)]
    horatio.identifiers = [PatientIdentifier(identifier="102-4")]
    doe = Patient(id=7, uuid=PATIENT_DOE_UUID)
    doe.names = [PersonName(given_name="Jane", family_name="Doe", preferred=True)]
    doe.identifiers = [PatientIdentifier(identifier="103-2")]

    s.add_all([snomed, ciel, hypertension, diabetes, malaria, penicillin, peanuts,
               rash, hives, anaphylaxis, mild, moderate, severe, hornblower, horatio, doe])

    s.add_all([
        Condition(
            id=1, uuid=CONDITION_HYPERTENSION_UUID, patient=hornblower, condition_coded=hypertension,
            clinical_status=ConditionClinicalStatus.ACTIVE,
            verification_status=ConditionVerificationStatus.CONFIRMED,
            onset_date=datetime(2017, 1, 12, 10, 0), date_created=datetime(2016, 1, 12, 9, 30),
        ),
        Condition(
            id=2, uuid=CONDITION_HEADACHE_UUID, patient=hornblower, condition_non_coded="Headache",
            clinical_status=ConditionClinicalStatus.ACTIVE,
            onset_date=datetime(2017, 1, 12, 14, 30), date_created=datetime(2017, 1, 13, 8, 0),
        ),
        Condition(
            id=3, uuid=CONDITION_DIABETES_UUID, patient=horatio, condition_coded=diabetes,
            clinical_status=ConditionClinicalStatus.INACTIVE,
            onset_date=datetime(2017, 1, 12, 23, 59), end_date=datetime(2019, 6, 1),
            date_created=datetime(2017, 1, 13, 8, 0),
        ),
        Condition(
            id=4, uuid=CONDITION_MALARIA_UUID, patient=horatio, condition_coded=malaria,
            clinical_status=ConditionClinicalStatus.ACTIVE,
            verification_status=ConditionVerificationStatus.CONFIRMED,
            onset_date=datetime(2020, 3, 13, 19, 0), date_created=datetime(2020, 3, 14, 8, 0),
            additional_detail="Confirmed by rapid diagnostic test",
        ),
        Condition(
            id=5, uuid=CONDITION_FRACTURE_UUID, patient=doe, condition_non_coded="Broken arm",
            clinical_status=ConditionClinicalStatus.HISTORY_OF,
            onset_date=datetime(2015, 8, 2), end_date=datetime(2015, 11, 20),
            end_reason="Healed", date_created=datetime(2015, 8, 2, 12, 0),
        ),
        Condition(
            id=6, uuid=CONDITION_VOIDED_UUID, patient=hornblower, condition_coded=hypertension,
            clinical_status=ConditionClinicalStatus.ACTIVE,
            onset_date=datetime(2018, 4, 1), date_created=datetime(2018, 4, 1, 10, 0),
            voided=True, date_voided=datetime(2018, 4, 2), void_reason="Entered in error",
        ),
    ])

    def allergy(aid, uuid, patient, allergen_type, severity, reactions, allergen=None, non_coded=None, **kw):
        a = Allergy(
            id=aid, uuid=uuid, patient=patient, allergen_coded=allergen, allergen_non_coded=non_coded,
            allergen_type=allergen_type, severity=severity, **kw,
        )
        a.reactions = [AllergyReaction(reaction=r) for r in reactions]
        return a

    s.add_all([
        allergy(1, ALLERGY_PENICILLIN_UUID, hornblower, AllergenType.DRUG, severe, [rash, hives],
                allergen=penicillin, comment="Reaction within minutes",
                date_created=datetime(2016, 5, 1, 9, 0)),
        allergy(2, ALLERGY_CAT_DANDER_UUID, hornblower, AllergenType.ENVIRONMENT, mild, [hives],
                non_coded="Cat dander", date_created=datetime(2016, 5, 1, 9, 5)),
        allergy(3, ALLERGY_PEANUTS_UUID, horatio, AllergenType.FOOD, moderate, [anaphylaxis, rash],
                allergen=peanuts, date_created=datetime(2018, 2, 3, 14, 0)),
        allergy(4, ALLERGY_VOIDED_UUID, doe, AllergenType.DRUG, None, [rash],
                allergen=penicillin, voided=True, date_voided=datetime(2019, 1, 1),
                void_reason="Duplicate", date_created=datetime(2018, 12, 30, 10, 0)),
    ])

    # severity-other-concept is deliberately left unset
    s.add_all([
        GlobalProperty(property=SEVERITY_MILD_CONCEPT, property_value=CONCEPT_MILD_UUID),
        GlobalProperty(property=SEVERITY_MODERATE_CONCEPT, property_value=CONCEPT_MODERATE_UUID),
        GlobalProperty(property=SEVERITY_SEVERE_CONCEPT, property_value=CONCEPT_SEVERE_UUID),
    ])
    s.flush()

def init_db(seed: bool = True) -> None:
    """
    Create schema and optionally seed demo rows when the database is empty.
    Against an existing clinical database keep the table and column names of models.py,
    or point SQLAlchemy at views that project your schema onto them.
    """
    Base.metadata.create_all(engine)
    if not seed:
        return
    with SessionLocal() as s:
        exists = s.scalar(select(func.count()).select_from(Patient)) or 0
        if exists:
            return
        seed_demo_data(s)
        s.commit()
