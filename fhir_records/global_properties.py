from __future__ import annotations
import logging
from typing import Dict, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import GlobalProperty

logger = logging.getLogger("fhir_records.global_properties")

SEVERITY_MILD_CONCEPT = "severity-mild-concept"
SEVERITY_MODERATE_CONCEPT = "severity-moderate-concept"
SEVERITY_SEVERE_CONCEPT = "severity-severe-concept"
SEVERITY_OTHER_CONCEPT = "severity-other-concept"


class GlobalPropertyResolver(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...


class DatabaseGlobalPropertyResolver:
    """Reads site configuration from the `global_property` table on every call."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str) -> Optional[str]:
        value = self.session.scalar(
            select(GlobalProperty.property_value).where(GlobalProperty.property == key)
        )
        if value is None or not value.strip():
            return None
        return value.strip()


class StaticGlobalPropertyResolver:
    """Fixed mapping; handy for tests and for configuration supplied from the environment."""

    def __init__(self, values: Mapping[str, Optional[str]] | None = None):
        self._values = dict(values or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)


class PropertySnapshot:
    """
    Memoises lookups for the lifetime of one composition or translation call.

    A fresh snapshot must be taken per call: site configuration may change between requests.
    Missing keys are logged at `missing_level`.
    """

    _MISSING = object()

    def __init__(self, resolver: GlobalPropertyResolver | None, missing_level: int = logging.WARNING):
        self._resolver = resolver
        self._missing_level = missing_level
        self._cache: Dict[str, object] = {}

    def get(self, key: str) -> Optional[str]:
        cached = self._cache.get(key, self._MISSING)
        if cached is not self._MISSING:
            return cached  # type: ignore[return-value]
        value = self._resolver.get(key) if self._resolver is not None else None
        if value is None:
            logger.log(self._missing_level, "Global property %s is not configured", key)
        self._cache[key] = value
        return value
