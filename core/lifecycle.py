"""
core/lifecycle.py -- One entry point for every status change.

apply_transition() takes (kind, current snapshot, request, clock) and returns
the updated entity or raises a LifecycleError. It is a pure function of its
arguments: after a StaleEntityError from the store, the caller re-fetches the
snapshot and calls it again with the same request.

Per-kind side effects:
  asset          -- updated_at
  vulnerability  -- updated_at; resolved_at set on RESOLVED, cleared on
                    OPEN / IN_PROGRESS
  finding        -- lifecycle fields (see core/findings.py)
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union

from core.config import now_utc
from core.findings import transition_finding
from core.history import Clock, next_timestamp, record_transition
from core.models import Asset, EntityKind, Vulnerability, VulnerabilityStatus
from core.transitions import StatusLike, coerce_kind, coerce_status

_REOPENED_VULN = {VulnerabilityStatus.OPEN, VulnerabilityStatus.IN_PROGRESS}


@dataclass(frozen=True)
class TransitionRequest:
    """What the caller asked for. Fields irrelevant to the target status are ignored."""

    requested_status: StatusLike
    actor_id: Optional[int] = None
    notes: Optional[str] = None
    fix_notes: Optional[str] = None
    acceptance_reason: Optional[str] = None
    expires_at: Optional[datetime] = None


def transition_asset(asset: Asset, request: TransitionRequest, clock: Clock = now_utc) -> Asset:
    now = next_timestamp(asset.status_history, clock)
    updated = record_transition(
        EntityKind.asset, asset, request.requested_status, request.actor_id, request.notes, occurred_at=now
    )
    return replace(updated, updated_at=now)


def transition_vulnerability(
    vuln: Vulnerability, request: TransitionRequest, clock: Clock = now_utc
) -> Vulnerability:
    now = next_timestamp(vuln.status_history, clock)
    updated = record_transition(
        EntityKind.vulnerability, vuln, request.requested_status, request.actor_id, request.notes, occurred_at=now
    )
    target = coerce_status(EntityKind.vulnerability, request.requested_status)
    if target is VulnerabilityStatus.RESOLVED:
        return replace(updated, resolved_at=now, updated_at=now)
    if target in _REOPENED_VULN:
        return replace(updated, resolved_at=None, updated_at=now)
    return replace(updated, updated_at=now)


def apply_transition(
    kind: Union[str, EntityKind],
    entity,
    request: TransitionRequest,
    clock: Clock = now_utc,
):
    """Dispatch a status change to the kind's lifecycle function."""
    kind = coerce_kind(kind)
    if kind is EntityKind.asset:
        return transition_asset(entity, request, clock)
    if kind is EntityKind.vulnerability:
        return transition_vulnerability(entity, request, clock)
    return transition_finding(
        entity,
        request.requested_status,
        request.actor_id,
        request.notes,
        fix_notes=request.fix_notes,
        acceptance_reason=request.acceptance_reason,
        expires_at=request.expires_at,
        clock=clock,
    )
