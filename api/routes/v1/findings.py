"""
api/routes/v1/findings.py -- Finding routes for the VulnTrack REST API.

A finding is one detection of a vulnerability on an asset. Its lifecycle
carries extra fields (fix notes, verification, risk acceptance), so besides
the generic status route there is one action route per remediation step.

Routes (mounted under /vulnerabilities, registered before the vulnerability
router so "findings" is never captured as a {vuln_id}):
  POST   /vulnerabilities/findings                                   -- create
  GET    /vulnerabilities/findings                                   -- list (filters, paging)
  GET    /vulnerabilities/findings/risk-acceptances/expired          -- lapsed acceptances
  GET    /vulnerabilities/findings/{finding_id}                      -- detail + history
  PATCH  /vulnerabilities/findings/{finding_id}/status               -- generic change
  POST   /vulnerabilities/findings/{finding_id}/mark-fixed           -- -> FIXED
  POST   /vulnerabilities/findings/{finding_id}/mark-mitigated       -- -> MITIGATED
  POST   /vulnerabilities/findings/{finding_id}/mark-verified        -- -> VERIFIED
  POST   /vulnerabilities/findings/{finding_id}/accept-risk          -- -> RISK_ACCEPTED
  POST   /vulnerabilities/findings/{finding_id}/mark-false-positive  -- -> FALSE_POSITIVE
  POST   /vulnerabilities/findings/{finding_id}/reopen               -- -> OPEN
  GET    /vulnerabilities/findings/{finding_id}/status/allowed
  GET    /vulnerabilities/findings/{finding_id}/history

Field preconditions (fix_notes for FIXED, acceptance_reason for RISK_ACCEPTED,
a prior fix for VERIFIED) are enforced by core/findings.py and surface as
422 missing_required_field.

The action routes call the matching core/findings.py wrapper (mark_fixed,
reopen, ...) through api.status_service.run_finding_action(), which retries on
a version conflict exactly like the generic route.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request

from api.limiter import limiter, read_limit, status_limit
from api.models import (
    AcceptRiskRequest,
    AllowedTransitionsResponse,
    FindingActionRequest,
    FindingCreate,
    FindingListResponse,
    FindingResponse,
    FindingStatusUpdate,
    HistoryResponse,
    MarkFixedRequest,
)
from api.status_service import (
    allowed_transitions,
    change_status,
    not_found,
    run_finding_action,
    status_history,
)
from cmdb.store import CMDBStore
from core import findings as actions
from core.lifecycle import TransitionRequest
from core.models import EntityKind, Finding, FindingStatus

router = APIRouter(prefix="/vulnerabilities/findings")


def _apply(request: Request, finding_id: int, transition: TransitionRequest) -> FindingResponse:
    saved = change_status(request.app.state.cmdb, EntityKind.finding, finding_id, transition)
    return FindingResponse.from_finding(saved)


def _run(request: Request, finding_id: int, action, **kwargs) -> FindingResponse:
    saved = run_finding_action(request.app.state.cmdb, finding_id, action, **kwargs)
    return FindingResponse.from_finding(saved)


# ---------------------------------------------------------------------------
# Create / list / read
# ---------------------------------------------------------------------------


@router.post("", response_model=FindingResponse, status_code=201)
@limiter.limit(status_limit)
def create_finding(request: Request, body: FindingCreate) -> FindingResponse:
    """Record a detection of an existing vulnerability on an existing asset."""
    cmdb: CMDBStore = request.app.state.cmdb
    if cmdb.get_vulnerability(body.vulnerability_id) is None:
        raise not_found(EntityKind.vulnerability, body.vulnerability_id)
    if cmdb.get_asset(body.asset_id) is None:
        raise not_found(EntityKind.asset, body.asset_id)
    finding_id = cmdb.create_finding(
        Finding(
            vulnerability_id=body.vulnerability_id,
            asset_id=body.asset_id,
            plugin_id=body.plugin_id,
            plugin_name=body.plugin_name,
            port=body.port,
            protocol=body.protocol,
        )
    )
    return FindingResponse.from_finding(cmdb.get_finding(finding_id))


@router.get("", response_model=FindingListResponse)
@limiter.limit(read_limit)
def list_findings(
    request: Request,
    vulnerability_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    status: Optional[FindingStatus] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> FindingListResponse:
    """List findings, most recently seen first."""
    cmdb: CMDBStore = request.app.state.cmdb
    items, total = cmdb.list_findings(
        vulnerability_id=vulnerability_id,
        asset_id=asset_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return FindingListResponse(
        items=[FindingResponse.from_finding(f) for f in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/risk-acceptances/expired", response_model=list[FindingResponse])
@limiter.limit(read_limit)
def list_expired_risk_acceptances(request: Request) -> list[FindingResponse]:
    """Return RISK_ACCEPTED findings whose acceptance has lapsed.

    Expiry does not change the status on its own; these findings are due for
    review (reopen or re-accept with a new expiry).
    """
    cmdb: CMDBStore = request.app.state.cmdb
    return [FindingResponse.from_finding(f) for f in cmdb.get_expired_risk_acceptances()]


@router.get("/{finding_id}", response_model=FindingResponse)
@limiter.limit(read_limit)
def get_finding(request: Request, finding_id: int) -> FindingResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    finding = cmdb.get_finding(finding_id)
    if finding is None:
        raise not_found(EntityKind.finding, finding_id)
    return FindingResponse.from_finding(finding)


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------


@router.patch("/{finding_id}/status", response_model=FindingResponse)
@limiter.limit(status_limit)
def update_finding_status(request: Request, finding_id: int, body: FindingStatusUpdate) -> FindingResponse:
    """Move a finding to any status, supplying the fields that status requires."""
    return _apply(
        request,
        finding_id,
        TransitionRequest(
            requested_status=body.status,
            actor_id=body.actor_id,
            notes=body.notes,
            fix_notes=body.fix_notes,
            acceptance_reason=body.acceptance_reason,
            expires_at=body.expires_at,
        ),
    )


@router.post("/{finding_id}/mark-fixed", response_model=FindingResponse)
@limiter.limit(status_limit)
def mark_fixed(request: Request, finding_id: int, body: MarkFixedRequest) -> FindingResponse:
    """Record a fix. fix_notes is required and doubles as the history note."""
    return _run(request, finding_id, actions.mark_fixed, fix_notes=body.fix_notes, actor_id=body.actor_id)


@router.post("/{finding_id}/mark-mitigated", response_model=FindingResponse)
@limiter.limit(status_limit)
def mark_mitigated(request: Request, finding_id: int, body: FindingActionRequest) -> FindingResponse:
    """Record a compensating control while the real fix is pending."""
    return _run(request, finding_id, actions.mark_mitigated, actor_id=body.actor_id, notes=body.notes)


@router.post("/{finding_id}/mark-verified", response_model=FindingResponse)
@limiter.limit(status_limit)
def mark_verified(request: Request, finding_id: int, body: FindingActionRequest) -> FindingResponse:
    """Confirm a recorded fix. Only a FIXED finding can be verified."""
    return _run(request, finding_id, actions.mark_verified, actor_id=body.actor_id, notes=body.notes)


@router.post("/{finding_id}/accept-risk", response_model=FindingResponse)
@limiter.limit(status_limit)
def accept_risk(request: Request, finding_id: int, body: AcceptRiskRequest) -> FindingResponse:
    """Accept the risk of leaving a finding unremediated.

    expires_at is optional; when given it must lie in the future (422
    invalid_field otherwise).
    """
    return _run(
        request,
        finding_id,
        actions.accept_risk,
        acceptance_reason=body.acceptance_reason,
        expires_at=body.expires_at,
        actor_id=body.actor_id,
    )


@router.post("/{finding_id}/mark-false-positive", response_model=FindingResponse)
@limiter.limit(status_limit)
def mark_false_positive(request: Request, finding_id: int, body: FindingActionRequest) -> FindingResponse:
    return _run(request, finding_id, actions.mark_false_positive, actor_id=body.actor_id, notes=body.notes)


@router.post("/{finding_id}/reopen", response_model=FindingResponse)
@limiter.limit(status_limit)
def reopen(request: Request, finding_id: int, body: FindingActionRequest) -> FindingResponse:
    """Reopen a finding. All remediation fields are cleared; history keeps them."""
    return _run(request, finding_id, actions.reopen, actor_id=body.actor_id, notes=body.notes)


# ---------------------------------------------------------------------------
# Allowed statuses / history
# ---------------------------------------------------------------------------


@router.get("/{finding_id}/status/allowed", response_model=AllowedTransitionsResponse)
@limiter.limit(read_limit)
def get_allowed_finding_statuses(request: Request, finding_id: int) -> AllowedTransitionsResponse:
    return allowed_transitions(request.app.state.cmdb, EntityKind.finding, finding_id)


@router.get("/{finding_id}/history", response_model=HistoryResponse)
@limiter.limit(read_limit)
def get_finding_history(request: Request, finding_id: int) -> HistoryResponse:
    return status_history(request.app.state.cmdb, EntityKind.finding, finding_id)
