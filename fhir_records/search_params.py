# Typed search parameters plus the query-string parsing used at the HTTP boundary.
from __future__ import annotations
import re
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .errors import InvalidSearchParameter

# ---- Parameter types ---------------------------------------------------------

class _Param(BaseModel):
    model_config = ConfigDict(frozen=True)


class TokenParam(_Param):
    """`[system|]code`; either half may be empty. `|code` sets `no_system`: the code has no system."""

    system: Optional[str] = None
    code: Optional[str] = None
    no_system: bool = False


class ReferenceParam(_Param):
    """
    A reference to another resource, optionally chained onto one of its fields.

    `chain` None (or `_id`) means `value` is the referenced id; otherwise `value` is matched
    against the named field (given, family, name, identifier).
    """

    value: str
    chain: Optional[str] = None

    @property
    def id_part(self) -> str:
        # "Patient/abc" -> "abc"
        return self.value.rsplit("/", 1)[-1]


DATE_PREFIXES = ("eq", "ne", "lt", "le", "gt", "ge", "sa", "eb")


class DateParam(_Param):
    """
    A date comparison. `start`/`end` is the half-open interval the literal denotes at its
    own precision (a day literal covers the whole calendar day).
    """

    prefix: str = "eq"
    start: datetime
    end: datetime

    @classmethod
    def parse(cls, raw: str, name: str = "date") -> "DateParam":
        prefix, literal = _parse_prefix_and_value(raw.strip())
        try:
            start, end = _parse_fhir_date_bounds(literal)
        except ValueError as exc:
            raise InvalidSearchParameter(name, raw, str(exc)) from exc
        return cls(prefix=prefix, start=start, end=end)


TokenOrList = Tuple[TokenParam, ...]
ReferenceOrList = Tuple[ReferenceParam, ...]
ReferenceAndList = Tuple[ReferenceOrList, ...]
DateRange = Tuple[DateParam, ...]  # every member must hold


class ConditionSearchParams(_Param):
    patient: Optional[ReferenceAndList] = None
    subject: Optional[ReferenceAndList] = None
    code: Optional[TokenOrList] = None
    clinical_status: Optional[TokenOrList] = None
    onset_date: Optional[DateRange] = None
    recorded_date: Optional[DateRange] = None


class AllergyIntoleranceSearchParams(_Param):
    patient: Optional[ReferenceAndList] = None
    category: Optional[TokenOrList] = None
    allergen: Optional[TokenOrList] = None
    severity: Optional[TokenOrList] = None
    manifestation: Optional[TokenOrList] = None
    clinical_status: Optional[TokenOrList] = None


# ---- FHIR date parsing -------------------------------------------------------

_date_re = re.compile(
    r'^(\d{4})(?:-(\d{2})(?:-(\d{2})(?:T(\d{2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?(Z|[+-]\d{2}:\d{2})?)?)?)?$'
)


def _parse_fhir_date_bounds(s: str) -> Tuple[datetime, datetime]:
    m = _date_re.match(s)
    if not m:
        raise ValueError(f"Invalid FHIR date: {s}")
    y = int(m.group(1))
    mo = int(m.group(2)) if m.group(2) else None
    d = int(m.group(3)) if m.group(3) else None
    if mo is not None and not (1 <= mo <= 12):
        raise ValueError(f"Invalid month in FHIR date: {s}")

    if mo is None:
        return datetime(y, 1, 1), datetime(y + 1, 1, 1)
    if d is None:
        start = datetime(y, mo, 1)
        end = datetime(y + 1, 1, 1) if mo == 12 else datetime(y, mo + 1, 1)
        return start, end
    try:
        day = datetime(y, mo, d)
    except ValueError as exc:
        raise ValueError(f"Invalid day in FHIR date: {s}") from exc
    if m.group(4) is None:
        return day, day + timedelta(days=1)

    hh, mi = int(m.group(4)), int(m.group(5))
    if hh > 23 or mi > 59:
        raise ValueError(f"Invalid time in FHIR date: {s}")
    if m.group(6) is None:
        start, step = day.replace(hour=hh, minute=mi), timedelta(minutes=1)
    else:
        ss = int(m.group(6))
        if ss > 59:
            raise ValueError(f"Invalid time in FHIR date: {s}")
        start, step = day.replace(hour=hh, minute=mi, second=ss), timedelta(seconds=1)
    tz = m.group(7)
    if tz and tz != "Z":
        # stored timestamps are naive UTC
        sign = 1 if tz[0] == "+" else -1
        start -= sign * timedelta(hours=int(tz[1:3]), minutes=int(tz[4:6]))
    return start, start + step


def fhir_date_lower_bound(s: str) -> datetime:
    """Earliest instant a FHIR date or dateTime literal denotes, as naive UTC."""
    return _parse_fhir_date_bounds(s)[0]


def _parse_prefix_and_value(raw: str) -> Tuple[str, str]:
    if raw[:2] in DATE_PREFIXES:
        return raw[:2], raw[2:]
    return 'eq', raw


# ---- Query-string helpers ----------------------------------------------------

def _flatten_values(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        raw = [str(x) for x in v]
    else:
        raw = [str(v)]
    out: List[str] = []
    for s in raw:
        out.extend([p for p in (x.strip() for x in s.split(',')) if p])
    return out


def parse_token(raw: str) -> TokenParam:
    if "|" in raw:
        system, code = raw.split("|", 1)
        system = system.strip() or None
        return TokenParam(system=system, code=code.strip() or None, no_system=system is None)
    return TokenParam(code=raw.strip() or None)


def parse_token_or_list(values: List[str]) -> Optional[TokenOrList]:
    """All occurrences are merged into one OR list (tokens are find-any)."""
    tokens = tuple(parse_token(v) for v in _flatten_values(values))
    return tokens or None


def parse_reference_and_list(items: List[Tuple[Optional[str], str]]) -> Optional[ReferenceAndList]:
    """`items` is [(chain, raw_value)], one per query-string occurrence."""
    groups: List[ReferenceOrList] = []
    for chain, raw in items:
        ors = tuple(ReferenceParam(value=v, chain=chain) for v in _flatten_values(raw))
        if ors:
            groups.append(ors)
    return tuple(groups) or None


def parse_date_range(values: List[str], name: str) -> Optional[DateRange]:
    params = tuple(DateParam.parse(v, name) for v in values if v and v.strip())
    return params or None
