from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple
from contextlib import asynccontextmanager
import logging
import sys
from urllib.parse import urlencode

from fastapi import FastAPI, Request, Depends, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError

from fhir.resources.R4B.allergyintolerance import AllergyIntolerance as FhirAllergyIntolerance
from fhir.resources.R4B.condition import Condition as FhirCondition

from .db import init_db, SessionLocal, settings
from .errors import InvalidResourceError, InvalidSearchParameter
from .fhir_utils import (
    FHIR_JSON,
    wants_xml,
    op_outcome,
    bundle_from_resources,
    resource_to_dict,
    minimal_capability_statement,
)
from .repository import AllergyIntoleranceRepository, ConditionRepository
from .search_params import (
    AllergyIntoleranceSearchParams,
    ConditionSearchParams,
    parse_date_range,
    parse_reference_and_list,
    parse_token_or_list,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s", stream=sys.stdout)
logger = logging.getLogger("fhir_records.main")
logging.getLogger("fhir_records").setLevel(settings.log_level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create schema and seed demo data on startup, SQLite only."""
    with SessionLocal() as s:
        bind = s.get_bind()
        dialect = getattr(bind.dialect, "name", "")
        logger.info("Effective SQLAlchemy dialect: %s (url=%s)", dialect, bind.url)
    if dialect == "sqlite":
        logger.info("Using built-in SQLite database")
        init_db(seed=settings.seed_demo_data)
    else:
        logger.info("Using database dialect '%s'; schema is expected to exist", dialect or "unknown")
    yield

app = FastAPI(
    title="Clinical records FHIR facade (Condition, AllergyIntolerance)",
    lifespan=lifespan,
)


def _fhir_json(content: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, media_type=FHIR_JSON, headers=headers)


@app.exception_handler(OperationalError)
async def db_operational_error_handler(request: Request, exc: OperationalError):
    detail = str(getattr(exc, "orig", exc))
    logger.error("Database operation failed: %s", detail)
    outcome = op_outcome(
        "error",
        "Database error while accessing the records database. Check that it is online and reachable.",
        code="exception",
    )
    return _fhir_json(outcome, status.HTTP_500_INTERNAL_SERVER_ERROR)

@app.exception_handler(OSError)
async def os_error_handler(request: Request, exc: OSError):
    logger.error("OS error while accessing the database: %s: %s", type(exc).__name__, exc)
    outcome = op_outcome(
        "error",
        "Database error while accessing the records database. Check that it is online and reachable.",
        code="exception",
    )
    return _fhir_json(outcome, status.HTTP_500_INTERNAL_SERVER_ERROR)

@app.exception_handler(InvalidSearchParameter)
async def invalid_search_parameter_handler(request: Request, exc: InvalidSearchParameter):
    return _fhir_json(op_outcome("error", str(exc), code="invalid"), status.HTTP_400_BAD_REQUEST)

@app.exception_handler(InvalidResourceError)
async def invalid_resource_handler(request: Request, exc: InvalidResourceError):
    return _fhir_json(op_outcome("error", str(exc), code="invalid"), status.HTTP_400_BAD_REQUEST)

@app.exception_handler(ValidationError)
async def resource_validation_handler(request: Request, exc: ValidationError):
    return _fhir_json(op_outcome("error", f"Resource failed validation: {exc}", code="invalid"), status.HTTP_400_BAD_REQUEST)


# -----------------------------
# Database session dependency
# -----------------------------
def get_db():
    """Provide a SQLAlchemy session per request."""
    with SessionLocal() as s:
        yield s


# -----------------------------
# Parameter parsing utilities
# -----------------------------
def _reference_items(request: Request, base: str) -> List[Tuple[Optional[str], str]]:
    """
    Return [(chain, value)] for a reference parameter, one per occurrence.
    Accepts "patient", "patient:Patient", "patient.given" and "subject:Patient.name".
    """
    out: List[Tuple[Optional[str], str]] = []
    for k, v in request.query_params.multi_items():
        name, _, chain = k.partition(".")
        param, _, type_modifier = name.partition(":")
        if param != base:
            continue
        if type_modifier and type_modifier != "Patient":
            raise InvalidSearchParameter(k, v, "only Patient references are supported")
        out.append((chain or None, v))
    return out


def _paging(request: Request) -> Tuple[int, int]:
    qp = request.query_params
    try:
        count = int(qp.get("_count", str(settings.default_page_size)))
        if count < 1:
            count = 1
        if count > settings.max_page_size:
            count = settings.max_page_size
    except ValueError:
        count = settings.default_page_size

    try:
        page = int(qp.get("_page", "1"))
        if page < 1:
            page = 1
    except ValueError:
        page = 1
    return page, count


def condition_params_from_request(request: Request) -> ConditionSearchParams:
    qp = request.query_params
    return ConditionSearchParams(
        patient=parse_reference_and_list(_reference_items(request, "patient")),
        subject=parse_reference_and_list(_reference_items(request, "subject")),
        code=parse_token_or_list(qp.getlist("code")),
        clinical_status=parse_token_or_list(qp.getlist("clinical-status")),
        onset_date=parse_date_range(qp.getlist("onset-date"), "onset-date"),
        recorded_date=parse_date_range(qp.getlist("recorded-date"), "recorded-date"),
    )


def allergy_params_from_request(request: Request) -> AllergyIntoleranceSearchParams:
    qp = request.query_params
    return AllergyIntoleranceSearchParams(
        patient=parse_reference_and_list(_reference_items(request, "patient")),
        category=parse_token_or_list(qp.getlist("category")),
        allergen=parse_token_or_list(qp.getlist("code")),
        severity=parse_token_or_list(qp.getlist("severity")),
        manifestation=parse_token_or_list(qp.getlist("manifestation")),
        clinical_status=parse_token_or_list(qp.getlist("clinical-status")),
    )


def _xml_not_supported() -> JSONResponse:
    return _fhir_json(
        op_outcome("error", "XML not supported; use application/fhir+json."),
        status.HTTP_406_NOT_ACCEPTABLE,
    )


def _not_found(resource_type: str, id: str) -> JSONResponse:
    return _fhir_json(
        op_outcome("error", f"{resource_type} {id} not found", code="not-found"),
        status.HTTP_404_NOT_FOUND,
    )


async def _form_as_query(request: Request, path: str) -> Request:
    """POST _search: re-issue the form body as the query string of a GET on `path`."""
    form = await request.form()
    query_pairs = [(k, v) for k in form.keys() for v in form.getlist(k)]
    query_pairs += [(k, v) for k, v in request.query_params.multi_items()]
    scope = dict(request.scope)
    scope["query_string"] = urlencode(query_pairs, doseq=True).encode()
    scope["path"] = path
    return Request(scope, request.receive)


async def _resource_body(request: Request, resource_type: str, model: Callable[..., Any]) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidResourceError("Request body is not valid JSON") from exc
    if not isinstance(body, dict) or body.get("resourceType") != resource_type:
        raise InvalidResourceError(f"Expected a {resource_type} resource", field="resourceType")
    # validate against the R4B model before translating
    return resource_to_dict(model(**body))


# -----------------------------
# Shared interactions
# -----------------------------
def _search(request: Request, resource_type: str, repo, params) -> Dict[str, Any]:
    page, count = _paging(request)
    total = repo.count(params)
    records = repo.search(params, offset=(page - 1) * count, limit=count)
    resources = [resource_to_dict(repo.translator.to_fhir_resource(r)) for r in records]
    return bundle_from_resources(resource_type, resources, total, request, page, count)


def _read(resource_type: str, repo, id: str):
    record = repo.get_by_uuid(id)
    if record is None:
        return _not_found(resource_type, id)
    return _fhir_json(resource_to_dict(repo.translator.to_fhir_resource(record)))


def _write(request: Request, resource_type: str, repo, db: Session, data: Dict[str, Any], id: Optional[str] = None):
    if id is not None:
        if data.get("id") not in (None, id):
            raise InvalidResourceError(f"Resource id {data.get('id')} does not match {id}", field="id")
        data["id"] = id
    created = not data.get("id") or repo.get_by_uuid(data["id"]) is None
    record = repo.save_resource(data)
    db.commit()
    content = resource_to_dict(repo.translator.to_fhir_resource(record))
    base_url = str(request.base_url).rstrip("/")
    headers = {"Location": f"{base_url}/fhir/{resource_type}/{record.uuid}"}
    return _fhir_json(content, status.HTTP_201_CREATED if created else status.HTTP_200_OK, headers)


def _delete(resource_type: str, repo, db: Session, id: str):
    record = repo.get_by_uuid(id)
    if record is None:
        return _not_found(resource_type, id)
    repo.void(record, "Voided via FHIR API")
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# -----------------------------
# Endpoints
# -----------------------------
@app.get("/fhir/metadata")
def metadata(request: Request):
    if wants_xml(request):
        return _xml_not_supported()
    return minimal_capability_statement(str(request.base_url))


@app.get("/fhir/Condition")
def condition_search(request: Request, db: Session = Depends(get_db)):
    """
    Condition search. Comma-separated values are OR'ed; repeated reference and date
    parameters are AND'ed. Paging via _count and _page.
    """
    if wants_xml(request):
        return _xml_not_supported()
    return _search(request, "Condition", ConditionRepository(db), condition_params_from_request(request))


@app.post("/fhir/Condition/_search")
async def condition_search_post(request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    return condition_search(await _form_as_query(request, "/fhir/Condition"), db)


@app.get("/fhir/Condition/{id}")
def condition_read(id: str, request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    return _read("Condition", ConditionRepository(db), id)


@app.post("/fhir/Condition")
async def condition_create(request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    data = await _resource_body(request, "Condition", FhirCondition)
    return _write(request, "Condition", ConditionRepository(db), db, data)


@app.put("/fhir/Condition/{id}")
async def condition_update(id: str, request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    data = await _resource_body(request, "Condition", FhirCondition)
    return _write(request, "Condition", ConditionRepository(db), db, data, id)


@app.delete("/fhir/Condition/{id}")
def condition_delete(id: str, db: Session = Depends(get_db)):
    return _delete("Condition", ConditionRepository(db), db, id)


@app.get("/fhir/AllergyIntolerance")
def allergy_search(request: Request, db: Session = Depends(get_db)):
    """
    AllergyIntolerance search. Voided allergies are only returned when
    clinical-status asks for inactive ones.
    """
    if wants_xml(request):
        return _xml_not_supported()
    return _search(
        request, "AllergyIntolerance", AllergyIntoleranceRepository(db), allergy_params_from_request(request)
    )


@app.post("/fhir/AllergyIntolerance/_search")
async def allergy_search_post(request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    return allergy_search(await _form_as_query(request, "/fhir/AllergyIntolerance"), db)


@app.get("/fhir/AllergyIntolerance/{id}")
def allergy_read(id: str, request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    return _read("AllergyIntolerance", AllergyIntoleranceRepository(db), id)


@app.post("/fhir/AllergyIntolerance")
async def allergy_create(request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    data = await _resource_body(request, "AllergyIntolerance", FhirAllergyIntolerance)
    return _write(request, "AllergyIntolerance", AllergyIntoleranceRepository(db), db, data)


@app.put("/fhir/AllergyIntolerance/{id}")
async def allergy_update(id: str, request: Request, db: Session = Depends(get_db)):
    if wants_xml(request):
        return _xml_not_supported()
    data = await _resource_body(request, "AllergyIntolerance", FhirAllergyIntolerance)
    return _write(request, "AllergyIntolerance", AllergyIntoleranceRepository(db), db, data, id)


@app.delete("/fhir/AllergyIntolerance/{id}")
def allergy_delete(id: str, db: Session = Depends(get_db)):
    return _delete("AllergyIntolerance", AllergyIntoleranceRepository(db), db, id)
