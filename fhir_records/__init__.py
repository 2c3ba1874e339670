"""FHIR R4B facade over a relational clinical records store (Condition, AllergyIntolerance)."""

__version__ = "0.1.0"
