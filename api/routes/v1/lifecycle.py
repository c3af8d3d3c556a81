"""
api/routes/v1/lifecycle.py -- The transition tables over HTTP.

Routes:
  GET   /lifecycle/{kind}/transitions  -- full table for asset|vulnerability|finding
  POST  /lifecycle/{kind}/validate     -- pure validator: would current -> requested be legal?
  GET   /lifecycle/{kind}/counts       -- number of entities per status

These never change anything. A UI can fetch the table once and grey out
options locally, then confirm with /validate or the per-entity
/status/allowed route.
"""

from fastapi import APIRouter, HTTPException, Request

from api.limiter import limiter, read_limit
from api.models import (
    ErrorDetail,
    StatusCountsResponse,
    TransitionCheckResponse,
    TransitionTableResponse,
    ValidateTransitionRequest,
)
from cmdb.store import CMDBStore
from core.models import EntityKind
from core.transitions import initial_status, terminal_statuses, transition_table, validate

router = APIRouter(prefix="/lifecycle")


@router.get("/{kind}/transitions", response_model=TransitionTableResponse)
@limiter.limit(read_limit)
def get_transition_table(request: Request, kind: EntityKind) -> TransitionTableResponse:
    return TransitionTableResponse(
        kind=kind.value,
        initial_status=initial_status(kind).value,
        terminal_statuses=sorted(s.value for s in terminal_statuses(kind)),
        transitions=transition_table(kind),
    )


@router.post("/{kind}/validate", response_model=TransitionCheckResponse)
@limiter.limit(read_limit)
def validate_transition(request: Request, kind: EntityKind, body: ValidateTransitionRequest) -> TransitionCheckResponse:
    """Run the transition validator without touching any entity.

    An illegal transition is a normal 200 answer (allowed=false with a
    reason). A status that does not exist for this kind is a malformed
    request and gets 422 invalid_status.
    """
    try:
        check = validate(kind, body.current_status, body.requested_status)
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail=ErrorDetail(code="invalid_status", message=str(exc)).model_dump(),
        ) from None
    return TransitionCheckResponse(allowed=check.allowed, reason=check.reason)


@router.get("/{kind}/counts", response_model=StatusCountsResponse)
@limiter.limit(read_limit)
def get_status_counts(request: Request, kind: EntityKind) -> StatusCountsResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    counts = cmdb.count_by_status(kind)
    return StatusCountsResponse(kind=kind.value, counts=counts, total=sum(counts.values()))
