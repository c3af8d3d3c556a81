"""
api/routes/v1/assets.py -- Asset CMDB routes for the VulnTrack REST API.

Routes:
  POST       /assets                            -- create asset (starts ACTIVE)
  GET        /assets                            -- list assets, optional ?status=
  GET        /assets/{asset_id}                 -- asset detail + status history
  PUT|PATCH  /assets/{asset_id}/status          -- change asset status
  GET        /assets/{asset_id}/status/allowed  -- statuses reachable from now
  GET        /assets/{asset_id}/history         -- status history, oldest first

Status changes go through api.status_service.change_status(), which retries on
a version conflict. Lifecycle errors are mapped to HTTP by api/main.py.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, read_limit, status_limit
from api.models import (
    AllowedTransitionsResponse,
    AssetCreate,
    AssetResponse,
    AssetStatusUpdate,
    ErrorDetail,
    HistoryResponse,
)
from api.status_service import allowed_transitions, change_status, not_found, status_history
from cmdb.store import CMDBStore
from core.lifecycle import TransitionRequest
from core.models import Asset, AssetStatus, EntityKind

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /assets -- create a new asset
# ---------------------------------------------------------------------------


@router.post("/assets", response_model=AssetResponse, status_code=201)
@limiter.limit(status_limit)
def create_asset(request: Request, body: AssetCreate) -> AssetResponse:
    """Register a new asset in the CMDB. Hostnames are unique (409 if taken)."""
    cmdb: CMDBStore = request.app.state.cmdb
    asset = Asset(
        hostname=body.hostname,
        ip_address=body.ip_address,
        system_type=body.system_type.value,
        environment=body.environment.value,
        criticality=body.criticality.value,
        owner_id=body.owner_id,
        description=body.description,
        tags=tuple(body.tags),
    )
    try:
        asset_id = cmdb.create_asset(asset)
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(
                code="asset_exists",
                message=f"An asset with hostname {body.hostname!r} already exists.",
            ).model_dump(),
        ) from None
    return AssetResponse.from_asset(cmdb.get_asset(asset_id))


# ---------------------------------------------------------------------------
# GET /assets -- list assets
# ---------------------------------------------------------------------------


@router.get("/assets", response_model=list[AssetResponse])
@limiter.limit(read_limit)
def list_assets(request: Request, status: Optional[AssetStatus] = None) -> list[AssetResponse]:
    """Return all assets ordered by hostname. History is omitted in list views."""
    cmdb: CMDBStore = request.app.state.cmdb
    assets = cmdb.list_assets(status=status.value if status else None)
    return [AssetResponse.from_asset(a) for a in assets]


# ---------------------------------------------------------------------------
# GET /assets/{asset_id}
# ---------------------------------------------------------------------------


@router.get("/assets/{asset_id}", response_model=AssetResponse)
@limiter.limit(read_limit)
def get_asset(request: Request, asset_id: int) -> AssetResponse:
    cmdb: CMDBStore = request.app.state.cmdb
    asset = cmdb.get_asset(asset_id)
    if asset is None:
        raise not_found(EntityKind.asset, asset_id)
    return AssetResponse.from_asset(asset)


# ---------------------------------------------------------------------------
# PUT|PATCH /assets/{asset_id}/status
# ---------------------------------------------------------------------------


@router.api_route("/assets/{asset_id}/status", methods=["PUT", "PATCH"], response_model=AssetResponse)
@limiter.limit(status_limit)
def update_asset_status(request: Request, asset_id: int, body: AssetStatusUpdate) -> AssetResponse:
    """Move an asset to a new status.

    DECOMMISSIONED is terminal: once reached, every further change is refused
    with 409 invalid_transition.
    """
    cmdb: CMDBStore = request.app.state.cmdb
    saved = change_status(
        cmdb,
        EntityKind.asset,
        asset_id,
        TransitionRequest(requested_status=body.status, actor_id=body.actor_id, notes=body.notes),
    )
    return AssetResponse.from_asset(saved)


# ---------------------------------------------------------------------------
# GET /assets/{asset_id}/status/allowed and /history
# ---------------------------------------------------------------------------


@router.get("/assets/{asset_id}/status/allowed", response_model=AllowedTransitionsResponse)
@limiter.limit(read_limit)
def get_allowed_asset_statuses(request: Request, asset_id: int) -> AllowedTransitionsResponse:
    return allowed_transitions(request.app.state.cmdb, EntityKind.asset, asset_id)


@router.get("/assets/{asset_id}/history", response_model=HistoryResponse)
@limiter.limit(read_limit)
def get_asset_history(request: Request, asset_id: int) -> HistoryResponse:
    return status_history(request.app.state.cmdb, EntityKind.asset, asset_id)
