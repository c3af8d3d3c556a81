"""
core/findings.py -- Finding lifecycle: status advance plus timestamped fields.

Findings follow OPEN -> MITIGATED -> FIXED -> VERIFIED, with a side branch to
RISK_ACCEPTED and an exit to FALSE_POSITIVE (terminal). On top of the generic
table in core/transitions.py some transitions demand extra input and stamp
extra fields:

  -> FIXED          requires fix_notes;          sets fixed_at, fix_notes
  -> VERIFIED       requires a prior fixed_at;   sets verified_at
  -> RISK_ACCEPTED  requires acceptance_reason;  sets risk_accepted_at,
                    acceptance_reason, expires_at (optional, must be later
                    than risk_accepted_at)
  -> OPEN (reopen)  clears all six lifecycle fields

Reopen policy is "full reset": reopening discards earlier remediation claims
on the finding itself. The claims are not lost -- every earlier transition is
still in status_history.

The lifecycle timestamps and the StatusChangeEvent share one clock reading,
so fixed_at == status_history[-1].occurred_at after mark_fixed(). updated_at
carries the same reading on every transition.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from core.config import now_utc
from core.errors import InvalidFieldError, InvalidTransitionError, MissingRequiredFieldError
from core.history import Clock, next_timestamp, record_transition
from core.models import EntityKind, Finding, FindingStatus
from core.transitions import StatusLike, coerce_status, validate

_KIND = EntityKind.finding

_CLEARED = {
    "fixed_at": None,
    "fix_notes": None,
    "verified_at": None,
    "risk_accepted_at": None,
    "acceptance_reason": None,
    "expires_at": None,
}


def _aware(dt: datetime) -> datetime:
    # Naive datetimes are treated as UTC.
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def transition_finding(
    finding: Finding,
    requested: StatusLike,
    actor_id: Optional[int] = None,
    notes: Optional[str] = None,
    *,
    fix_notes: Optional[str] = None,
    acceptance_reason: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    clock: Clock = now_utc,
) -> Finding:
    """Advance a finding and apply the lifecycle side effects of the new status.

    Check order:
      1. RISK_ACCEPTED with expires_at not after now -> InvalidFieldError,
         whether or not the transition itself is legal.
      2. Generic table check -> InvalidTransitionError.
      3. Field preconditions -> MissingRequiredFieldError.

    The input finding is never modified.
    """
    target = coerce_status(_KIND, requested)
    now = next_timestamp(finding.status_history, clock)

    if target is FindingStatus.RISK_ACCEPTED and expires_at is not None:
        expires_at = _aware(expires_at)
        if expires_at <= now:
            raise InvalidFieldError(
                "expires_at",
                f"expires_at ({expires_at.isoformat()}) must be after risk_accepted_at ({now.isoformat()})",
            )

    check = validate(_KIND, finding.status, target)
    if not check.allowed:
        raise InvalidTransitionError(coerce_status(_KIND, finding.status).value, target.value, check.reason)

    if target is FindingStatus.FIXED and _blank(fix_notes):
        raise MissingRequiredFieldError("fix_notes", "FIXED requires fix_notes")
    if target is FindingStatus.VERIFIED and finding.fixed_at is None:
        raise MissingRequiredFieldError("fixed_at", "VERIFIED requires the finding to have been marked FIXED first")
    if target is FindingStatus.RISK_ACCEPTED and _blank(acceptance_reason):
        raise MissingRequiredFieldError("acceptance_reason", "RISK_ACCEPTED requires acceptance_reason")

    updated = record_transition(_KIND, finding, target, actor_id, notes, occurred_at=now)
    updated = replace(updated, updated_at=now)

    if target is FindingStatus.FIXED:
        return replace(updated, fixed_at=now, fix_notes=fix_notes.strip())
    if target is FindingStatus.VERIFIED:
        return replace(updated, verified_at=now)
    if target is FindingStatus.RISK_ACCEPTED:
        return replace(
            updated,
            risk_accepted_at=now,
            acceptance_reason=acceptance_reason.strip(),
            expires_at=expires_at,
        )
    if target is FindingStatus.OPEN:
        return replace(updated, **_CLEARED)
    return updated


# ---------------------------------------------------------------------------
# Convenience wrappers -- one per action endpoint
# ---------------------------------------------------------------------------


def mark_fixed(
    finding: Finding, fix_notes: str, actor_id: Optional[int] = None, clock: Clock = now_utc
) -> Finding:
    return transition_finding(
        finding, FindingStatus.FIXED, actor_id, notes=fix_notes, fix_notes=fix_notes, clock=clock
    )


def mark_verified(
    finding: Finding, actor_id: Optional[int] = None, notes: Optional[str] = None, clock: Clock = now_utc
) -> Finding:
    return transition_finding(finding, FindingStatus.VERIFIED, actor_id, notes, clock=clock)


def mark_mitigated(
    finding: Finding, actor_id: Optional[int] = None, notes: Optional[str] = None, clock: Clock = now_utc
) -> Finding:
    return transition_finding(finding, FindingStatus.MITIGATED, actor_id, notes, clock=clock)


def accept_risk(
    finding: Finding,
    acceptance_reason: str,
    expires_at: Optional[datetime] = None,
    actor_id: Optional[int] = None,
    clock: Clock = now_utc,
) -> Finding:
    return transition_finding(
        finding,
        FindingStatus.RISK_ACCEPTED,
        actor_id,
        notes=acceptance_reason,
        acceptance_reason=acceptance_reason,
        expires_at=expires_at,
        clock=clock,
    )


def mark_false_positive(
    finding: Finding, actor_id: Optional[int] = None, notes: Optional[str] = None, clock: Clock = now_utc
) -> Finding:
    return transition_finding(finding, FindingStatus.FALSE_POSITIVE, actor_id, notes, clock=clock)


def reopen(
    finding: Finding, actor_id: Optional[int] = None, notes: Optional[str] = None, clock: Clock = now_utc
) -> Finding:
    return transition_finding(finding, FindingStatus.OPEN, actor_id, notes, clock=clock)
