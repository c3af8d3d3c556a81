"""
api/routes/v1/vulnerabilities.py -- Vulnerability routes for the VulnTrack REST API.

Routes:
  POST   /vulnerabilities                          -- create (starts OPEN)
  GET    /vulnerabilities                          -- list, ?status= ?severity=
  GET    /vulnerabilities/{vuln_id}                -- detail + status history
  PATCH  /vulnerabilities/{vuln_id}/status         -- change status
  GET    /vulnerabilities/{vuln_id}/status/allowed
  GET    /vulnerabilities/{vuln_id}/history

RESOLVED stamps resolved_at; reopening (OPEN / IN_PROGRESS) clears it. CLOSED
is terminal.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, read_limit, status_limit
from api.models import (
    AllowedTransitionsResponse,
    ErrorDetail,
    HistoryResponse,
    VulnerabilityCreate,
    VulnerabilityResponse,
    VulnerabilityStatusUpdate,
)
from api.status_service import allowed_transitions, change_status, not_found, status_history
from cmdb.store import CMDBStore
from core.lifecycle import TransitionRequest
from core.models import EntityKind, Severity, Vulnerability, VulnerabilityStatus

router = APIRouter()


@router.post("/vulnerabilities", response_model=VulnerabilityResponse, status_code=201)
@limiter.limit(status_limit)
def create_vulnerability(request: Request, body: VulnerabilityCreate) -> VulnerabilityResponse:
    """Register a vulnerability. A CVE ID may be recorded only once (409 if taken)."""
    cmdb: CMDBStore = request.app.state.cmdb
    vuln = Vulnerability(
        title=body.title,
        description=body.description,
        severity=body.severity,
        cvss_score=body.cvss_score,
        cve_id=body.cve_id,
        plugin_id=body.plugin_id,
        assignee_id=body.assignee_id,
    )
    try:
        vuln_id = cmdb.create_vulnerability(vuln)
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(
                code="vulnerability_exists",
                message=f"{body.cve_id} is already recorded.",
            ).model_dump(),
        ) from None
    return VulnerabilityResponse.from_vulnerability(cmdb.get_vulnerability(vuln_id))


@router.get("/vulnerabilities", response_model=list[VulnerabilityResponse])
@limiter.limit(read_limit)
def list_vulnerabilities(
    request: Request,
    status: Optional[VulnerabilityStatus] = None,
    severity: Optional[Severity] = None,
) -> list[VulnerabilityResponse]:
    cmdb: CMDBStore = request.app.state.cmdb
    vulns = cmdb.list_vulnerabilities(
        status=status.value if status else None,
        severity=severity.value if severity else None,
    )
    return [VulnerabilityResponse.from_vulnerability(v) for v in vulns]


@router.get("/vulnerabilities/{vuln_id}", response_model=VulnerabilityResponse)
@limiter.limit(read_limit)
def get_vulnerability(request: Request, vuln_id: int) -> VulnerabilityResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    vuln = cmdb.get_vulnerability(vuln_id)
    if vuln is None:
        raise not_found(EntityKind.vulnerability, vuln_id)
    return VulnerabilityResponse.from_vulnerability(vuln)


@router.patch("/vulnerabilities/{vuln_id}/status", response_model=VulnerabilityResponse)
@limiter.limit(status_limit)
def update_vulnerability_status(
    request: Request, vuln_id: int, body: VulnerabilityStatusUpdate
) -> VulnerabilityResponse:
    """Move a vulnerability to a new status. Findings are not touched."""
    saved = change_status(
        request.app.state.cmdb,
        EntityKind.vulnerability,
        vuln_id,
        TransitionRequest(requested_status=body.status, actor_id=body.actor_id, notes=body.notes),
    )
    return VulnerabilityResponse.from_vulnerability(saved)


@router.get("/vulnerabilities/{vuln_id}/status/allowed", response_model=AllowedTransitionsResponse)
@limiter.limit(read_limit)
def get_allowed_vulnerability_statuses(request: Request, vuln_id: int) -> AllowedTransitionsResponse:
    return allowed_transitions(request.app.state.cmdb, EntityKind.vulnerability, vuln_id)


@router.get("/vulnerabilities/{vuln_id}/history", response_model=HistoryResponse)
@limiter.limit(read_limit)
def get_vulnerability_history(request: Request, vuln_id: int) -> HistoryResponse:
    return status_history(request.app.state.cmdb, EntityKind.vulnerability, vuln_id)
