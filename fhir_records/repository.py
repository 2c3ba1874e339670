"""
Record repositories: lookup, search and writes for conditions and allergies.

Repositories work inside the caller's session and only flush; committing (or rolling back) the
unit of work is the caller's job. Storage errors are not caught here.
"""
from __future__ import annotations
import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .criteria import CriteriaComposer, allergy_composer, condition_composer
from .errors import InvalidResourceError
from .global_properties import DatabaseGlobalPropertyResolver, GlobalPropertyResolver
from .models import Allergy, Condition, utcnow
from .translators import AllergyIntoleranceTranslator, ConditionTranslator

logger = logging.getLogger("fhir_records.repository")

R = TypeVar("R", Condition, Allergy)


class _Repository(Generic[R]):
    model: Type[R]

    def __init__(self, session: Session, composer: CriteriaComposer, translator: Any):
        self.session = session
        self.composer = composer
        self.translator = translator

    # ---- lookups ----

    def get_by_uuid(self, uuid: str) -> Optional[R]:
        return self.session.scalar(select(self.model).where(self.model.uuid == uuid))

    def get_by_id(self, record_id: int) -> Optional[R]:
        return self.session.get(self.model, record_id)

    # ---- search ----

    def _search_stmt(self, params: Any):
        return self.composer.apply(select(self.model), params)

    def search(self, params: Any, offset: Optional[int] = None, limit: Optional[int] = None) -> List[R]:
        stmt = self._search_stmt(params).order_by(self.model.id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def count(self, params: Any) -> int:
        sub = self._search_stmt(params).subquery()
        return int(self.session.scalar(select(func.count()).select_from(sub)) or 0)

    # ---- writes ----

    def save(self, record: R) -> R:
        """
        Lookup-or-create by UUID. An existing record absorbs the non-empty fields of `record`;
        otherwise `record` itself is inserted. Returns the persisted record.
        """
        existing = None
        if record.id is None and record.uuid:
            existing = self.get_by_uuid(record.uuid)
        if existing is not None and existing is not record:
            if record in self.session:
                self.session.expunge(record)
            target = self.translator.merge_records(existing, record)
        else:
            target = record
            if target.id is None:
                self._prepare_new(target)
        if target.patient is None and target.patient_id is None:
            raise InvalidResourceError(f"{self.model.__name__} {target.uuid} has no patient", field="patient")
        self.session.add(target)
        self.session.flush()
        self.session.refresh(target)
        logger.info("Saved %s %s (id=%s)", self.model.__name__, target.uuid, target.id)
        return target

    def _prepare_new(self, record: R) -> None:
        pass

    def save_resource(self, resource: Any) -> R:
        """Translate an inbound FHIR resource onto its stored record (if any) and save it."""
        data_id = getattr(resource, "id", None) if not isinstance(resource, dict) else resource.get("id")
        existing = self.get_by_uuid(data_id) if data_id else None
        record = self.translator.to_internal(existing, resource)
        return self.save(record)

    def void(self, record: R, reason: str) -> R:
        """Soft delete. Only the voiding columns change; the record stays readable by id and UUID."""
        if not record.voided:
            record.voided = True
            record.date_voided = utcnow()
            record.void_reason = reason
            self.session.flush()
            logger.info("Voided %s %s: %s", self.model.__name__, record.uuid, reason)
        return record


class ConditionRepository(_Repository[Condition]):
    model = Condition

    def __init__(self, session: Session, properties: GlobalPropertyResolver | None = None, **translator_kwargs: Any):
        properties = properties or DatabaseGlobalPropertyResolver(session)
        super().__init__(
            session,
            condition_composer(properties),
            ConditionTranslator.for_session(session, **translator_kwargs),
        )

    def _prepare_new(self, record: Condition) -> None:
        self.translator.enforce_derived_fields(record)


class AllergyIntoleranceRepository(_Repository[Allergy]):
    model = Allergy

    def __init__(self, session: Session, properties: GlobalPropertyResolver | None = None):
        properties = properties or DatabaseGlobalPropertyResolver(session)
        super().__init__(
            session,
            allergy_composer(properties),
            AllergyIntoleranceTranslator.for_session(session, properties),
        )
