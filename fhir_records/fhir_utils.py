from __future__ import annotations
import json
from typing import Any, Dict, Iterable, List, Mapping
from urllib.parse import urlencode

from fastapi import Request
from fhir.resources.R4B.operationoutcome import OperationOutcome, OperationOutcomeIssue

FHIR_JSON = "application/fhir+json"
FHIR_XML  = "application/fhir+xml"

def wants_xml(request: Request) -> bool:
    fmt = request.query_params.get("_format", "").lower()
    if "xml" in fmt:
        return True
    accept = request.headers.get("accept", "")
    return FHIR_XML in accept or "application/xml" in accept

def resource_to_dict(resource: Any) -> Dict[str, Any]:
    """Serialize a fhir.resources model to plain FHIR JSON (dates as strings, no nulls)."""
    if hasattr(resource, "model_dump_json"):
        return json.loads(resource.model_dump_json(by_alias=True, exclude_none=True))
    return json.loads(resource.json(by_alias=True, exclude_none=True))

def as_resource_dict(resource: Any) -> Dict[str, Any]:
    if isinstance(resource, Mapping):
        return dict(resource)
    return resource_to_dict(resource)

def op_outcome(severity: str, details: str, code: str = "not-supported") -> Dict[str, Any]:
    oo = OperationOutcome(
        issue=[OperationOutcomeIssue(severity=severity, code=code, diagnostics=details)]
    )
    return resource_to_dict(oo)

def bundle_from_resources(
    resource_type: str,
    resources: Iterable[Dict[str, Any]],
    total: int,
    request: Request,
    page: int,
    count: int,
) -> Dict[str, Any]:
    """searchset Bundle with fullUrl entries and self/next links."""
    base_url = str(request.base_url).rstrip("/")
    self_url = f"{base_url}{request.url.path}"
    if request.query_params:
        self_url = f"{self_url}?{request.query_params}"

    entries: List[Dict[str, Any]] = [
        {"fullUrl": f"{base_url}/fhir/{resource_type}/{r['id']}", "resource": r} for r in resources
    ]

    links = [{"relation": "self", "url": self_url}]
    if (page - 1) * count + len(entries) < total:
        qp = [(k, v) for k, v in request.query_params.multi_items() if k not in ("_page", "_count")]
        qp += [("_page", str(page + 1)), ("_count", str(count))]
        links.append({"relation": "next", "url": f"{base_url}/fhir/{resource_type}?{urlencode(qp, doseq=True)}"})

    bundle: Dict[str, Any] = {"resourceType": "Bundle", "type": "searchset", "total": total, "link": links}
    if entries:
        bundle["entry"] = entries
    return bundle

def minimal_capability_statement(server_url: str) -> Dict[str, Any]:
    """
    Minimal CapabilityStatement listing the interactions and search parameters we support.
    """
    interactions = [
        {"code": "read"}, {"code": "search-type"}, {"code": "create"},
        {"code": "update"}, {"code": "delete"},
    ]
    return {
      "resourceType": "CapabilityStatement",
      "status": "active",
      "kind": "instance",
      "fhirVersion": "4.3.0",
      "implementation": {"description": "Clinical records FHIR facade", "url": server_url},
      "format": [FHIR_JSON],
      "rest": [{
        "mode": "server",
        "resource": [
          {
            "type": "Condition",
            "interaction": interactions,
            "searchParam": [
              {"name": "patient", "type": "reference"},
              {"name": "subject", "type": "reference"},
              {"name": "code", "type": "token"},
              {"name": "clinical-status", "type": "token"},
              {"name": "onset-date", "type": "date"},
              {"name": "recorded-date", "type": "date"},
            ],
          },
          {
            "type": "AllergyIntolerance",
            "interaction": interactions,
            "searchParam": [
              {"name": "patient", "type": "reference"},
              {"name": "category", "type": "token"},
              {"name": "code", "type": "token"},
              {"name": "severity", "type": "token"},
              {"name": "manifestation", "type": "token"},
              {"name": "clinical-status", "type": "token"},
            ],
          },
        ],
      }],
    }
