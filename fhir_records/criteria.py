"""
Search-criteria composition.

A search is a fixed set of independently optional slots. Each slot is handled by one builder
function that returns zero or more conjuncts; within a slot the builder ORs its values, and the
composer ANDs the slots together. Builders never join tables themselves: they ask the shared
`Criteria` for an alias of a relationship path, which is joined once per composition no matter
how many slots (or AND groups) filter on it.

Unrecognized values are dropped from their slot's OR list. A slot whose every value was
dropped contributes `false()`, so a search for only-unknown codes matches nothing instead of
everything.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import Select, and_, false, func, or_
from sqlalchemy.orm import aliased
from sqlalchemy.sql.elements import ColumnElement

from . import vocabulary
from .global_properties import GlobalPropertyResolver, PropertySnapshot
from .models import Allergy, Condition
from .search_params import DateParam, ReferenceAndList, ReferenceParam, TokenOrList

logger = logging.getLogger("fhir_records.criteria")

Predicate = ColumnElement[bool]


class Criteria:
    """Per-composition state: root entity, lazily created joins and the property snapshot."""

    def __init__(self, root: Any, properties: GlobalPropertyResolver | None = None):
        self.root = root
        self.properties = PropertySnapshot(properties)
        self._aliases: Dict[str, Any] = {}
        self._joins: List[Any] = []

    def alias(self, path: str) -> Any:
        """
        Alias for a dotted relationship path from the root, e.g. "patient.names".
        Parents are joined first; a path already joined returns its existing alias.
        """
        existing = self._aliases.get(path)
        if existing is not None:
            return existing
        parent_path, _, attr = path.rpartition(".")
        parent = self.alias(parent_path) if parent_path else self.root
        relationship = getattr(parent, attr)
        target = aliased(relationship.property.mapper.class_, name="j_" + path.replace(".", "_"))
        self._joins.append(relationship.of_type(target))
        self._aliases[path] = target
        return target

    @property
    def joined_paths(self) -> List[str]:
        return list(self._aliases)

    def apply(self, stmt: Select, predicates: Sequence[Predicate]) -> Select:
        # outer joins: an OR may mix joined and non-joined columns
        for onclause in self._joins:
            stmt = stmt.outerjoin(onclause)
        if predicates:
            stmt = stmt.where(and_(*predicates))
        if self._joins:
            # one-to-many joins multiply rows
            stmt = stmt.distinct()
        return stmt


def _any_of(slot: str, parts: List[Predicate], requested: int) -> List[Predicate]:
    """OR a slot's surviving predicates; a slot with values but no survivors matches nothing."""
    if parts:
        return [or_(*parts)] if len(parts) > 1 else parts
    if requested:
        logger.debug("No usable value in %s; slot matches nothing", slot)
        return [false()]
    return []


# ---- Slot builders -----------------------------------------------------------

def _contains(column: Any, value: str) -> Predicate:
    return func.lower(column).like(f"%{value.lower()}%")


def reference_predicates(criteria: Criteria, path: str, and_list: ReferenceAndList) -> List[Predicate]:
    """
    Reference slot. Plain references match the referenced entity's UUID; chained ones join the
    entity's names or identifiers. Names match partially and case-insensitively, identifiers
    exactly.
    """
    out: List[Predicate] = []
    for or_list in and_list:
        parts: List[Predicate] = []
        for ref in or_list:
            p = _reference_predicate(criteria, path, ref)
            if p is not None:
                parts.append(p)
        out.extend(_any_of(path, parts, len(or_list)))
    return out


def _reference_predicate(criteria: Criteria, path: str, ref: ReferenceParam) -> Optional[Predicate]:
    chain = (ref.chain or "").lower()
    if chain in ("", "_id"):
        return criteria.alias(path).uuid == ref.id_part
    if chain in ("given", "family", "name"):
        names = criteria.alias(f"{path}.names")
        if chain == "given":
            return _contains(names.given_name, ref.value)
        if chain == "family":
            return _contains(names.family_name, ref.value)
        return or_(
            _contains(names.given_name, ref.value),
            _contains(names.middle_name, ref.value),
            _contains(names.family_name, ref.value),
        )
    if chain == "identifier":
        ids = criteria.alias(f"{path}.identifiers")
        return ids.identifier == ref.value
    logger.debug("Unsupported reference chain %r on %s", ref.chain, path)
    return None


def coded_token_predicates(criteria: Criteria, path: str, tokens: TokenOrList) -> List[Predicate]:
    """
    Token slot over a coded concept. A system-less code matches a concept UUID or a mapping
    code in any source; `system|code` matches a mapping in that source; `system|` alone
    matches any concept mapped in that source. `|code` matches the concept UUID only, the one
    code rendered without a system.
    """
    parts: List[Predicate] = []
    for token in tokens:
        if not token.code and not token.system:
            continue
        if token.no_system:
            parts.append(criteria.alias(path).uuid == token.code)
            continue
        mappings = criteria.alias(f"{path}.mappings")
        if token.system:
            source = criteria.alias(f"{path}.mappings.source")
            in_source = or_(source.url == token.system, source.name == token.system)
            parts.append(and_(in_source, mappings.code == token.code) if token.code else in_source)
        else:
            concept = criteria.alias(path)
            parts.append(or_(concept.uuid == token.code, mappings.code == token.code))
    return _any_of(path, parts, len(tokens))


def enum_token_predicates(
    slot: str,
    column: Any,
    tokens: TokenOrList,
    lookup: Callable[[Optional[str], Optional[str]], Any],
) -> List[Predicate]:
    """Token slot over an enumeration column; each token must map exactly onto a member."""
    values = []
    for token in tokens:
        member = lookup(token.code, token.system)
        if member is None:
            logger.debug("Unrecognized %s token %s|%s", slot, token.system, token.code)
            continue
        if member not in values:
            values.append(member)
    parts: List[Predicate] = [column.in_(values)] if values else []
    return _any_of(slot, parts, len(tokens))


def date_predicate(column: Any, param: DateParam) -> Predicate:
    start, end = param.start, param.end
    prefix = param.prefix
    if prefix == "eq":
        return and_(column >= start, column < end)
    if prefix == "ne":
        return or_(column < start, column >= end)
    if prefix in ("lt", "eb"):
        return column < start
    if prefix == "le":
        return column < end
    if prefix in ("gt", "sa"):
        return column >= end
    if prefix == "ge":
        return column >= start
    raise ValueError(f"Unsupported date prefix: {prefix}")


def date_predicates(column: Any, date_range: Sequence[DateParam]) -> List[Predicate]:
    return [date_predicate(column, p) for p in date_range]


def voided_flag_predicates(column: Any, tokens: TokenOrList) -> List[Predicate]:
    """Status slot stored as the soft-delete flag: each token selects one value of `voided`."""
    flags = []
    for token in tokens:
        flag = vocabulary.allergy_status_to_voided(token.code, token.system)
        if flag is None:
            logger.debug("Unrecognized allergy clinical-status token %s|%s", token.system, token.code)
            continue
        if flag not in flags:
            flags.append(flag)
    parts: List[Predicate] = [column.is_(flag) for flag in flags]
    return _any_of("clinical_status", parts, len(tokens))


# ---- Composition -------------------------------------------------------------

@dataclass(frozen=True)
class Slot:
    name: str
    build: Callable[[Criteria, Any], List[Predicate]]
    # slot selects on `voided`, so the default non-voided filter must not be added
    governs_voided: bool = False


def _severity_predicates(criteria: Criteria, tokens: TokenOrList) -> List[Predicate]:
    uuids = []
    for token in tokens:
        uuid = vocabulary.severity_concept_uuid(token.code, criteria.properties)
        if uuid is not None and uuid not in uuids:
            uuids.append(uuid)
    parts: List[Predicate] = [criteria.alias("severity").uuid.in_(uuids)] if uuids else []
    return _any_of("severity", parts, len(tokens))


def _category_lookup(code: Optional[str], system: Optional[str]) -> Any:
    return vocabulary.allergen_type_from_category(code)


CONDITION_SLOTS: List[Slot] = [
    Slot("patient", lambda c, v: reference_predicates(c, "patient", v)),
    Slot("subject", lambda c, v: reference_predicates(c, "patient", v)),
    Slot("code", lambda c, v: coded_token_predicates(c, "condition_coded", v)),
    Slot("clinical_status", lambda c, v: enum_token_predicates(
        "clinical_status", c.root.clinical_status, v, vocabulary.condition_status_from_code)),
    Slot("onset_date", lambda c, v: date_predicates(c.root.onset_date, v)),
    Slot("recorded_date", lambda c, v: date_predicates(c.root.date_created, v)),
]

ALLERGY_SLOTS: List[Slot] = [
    Slot("patient", lambda c, v: reference_predicates(c, "patient", v)),
    Slot("category", lambda c, v: enum_token_predicates("category", c.root.allergen_type, v, _category_lookup)),
    Slot("allergen", lambda c, v: coded_token_predicates(c, "allergen_coded", v)),
    Slot("severity", _severity_predicates),
    Slot("manifestation", lambda c, v: coded_token_predicates(c, "reactions.reaction", v)),
    Slot("clinical_status", lambda c, v: voided_flag_predicates(c.root.voided, v), governs_voided=True),
]


class CriteriaComposer:
    """Folds a parameter set into one statement over the composer's root entity."""

    def __init__(self, root: Any, slots: Sequence[Slot], properties: GlobalPropertyResolver | None = None):
        self.root = root
        self.slots = list(slots)
        self.properties = properties

    def compose(self, params: Any) -> tuple[Criteria, List[Predicate]]:
        criteria = Criteria(self.root, self.properties)
        predicates: List[Predicate] = []
        voided_governed = False
        for slot in self.slots:
            value = getattr(params, slot.name, None)
            if value is None:
                continue
            predicates.extend(slot.build(criteria, value))
            voided_governed = voided_governed or slot.governs_voided
        if not voided_governed:
            predicates.append(self.root.voided.is_(False))
        return criteria, predicates

    def apply(self, stmt: Select, params: Any) -> Select:
        criteria, predicates = self.compose(params)
        return criteria.apply(stmt, predicates)


def condition_composer(properties: GlobalPropertyResolver | None = None) -> CriteriaComposer:
    return CriteriaComposer(Condition, CONDITION_SLOTS, properties)


def allergy_composer(properties: GlobalPropertyResolver | None = None) -> CriteriaComposer:
    return CriteriaComposer(Allergy, ALLERGY_SLOTS, properties)

