"""
core/transitions.py -- Status transition tables and the transition validator.

The tables are static configuration: one immutable adjacency map per entity
kind, listing every status and the set of statuses reachable from it. A
terminal status maps to an empty set. Re-opening is allowed only where a
table says so explicitly (vulnerability RESOLVED -> OPEN, finding
FIXED/VERIFIED/... -> OPEN); nothing is inferred.

validate() is pure and side-effect free, so the API can call it speculatively
to grey out options in a status picker without committing anything.

Usage:
    allowed_next_statuses(EntityKind.asset, "ACTIVE")
    -> frozenset({INACTIVE, UNDER_MAINTENANCE, DECOMMISSIONED})

    validate(EntityKind.asset, "DECOMMISSIONED", "ACTIVE")
    -> TransitionCheck(allowed=False, reason="Cannot transition from DECOMMISSIONED: this status is terminal")
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

from core.models import AssetStatus, EntityKind, FindingStatus, VulnerabilityStatus

StatusLike = Union[str, Enum]

# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

_ASSET_TRANSITIONS = MappingProxyType(
    {
        AssetStatus.ACTIVE: frozenset(
            {AssetStatus.INACTIVE, AssetStatus.UNDER_MAINTENANCE, AssetStatus.DECOMMISSIONED}
        ),
        AssetStatus.INACTIVE: frozenset({AssetStatus.ACTIVE, AssetStatus.DECOMMISSIONED}),
        AssetStatus.UNDER_MAINTENANCE: frozenset(
            {AssetStatus.ACTIVE, AssetStatus.INACTIVE, AssetStatus.DECOMMISSIONED}
        ),
        AssetStatus.DECOMMISSIONED: frozenset(),
    }
)

_VULNERABILITY_TRANSITIONS = MappingProxyType(
    {
        VulnerabilityStatus.OPEN: frozenset(
            {VulnerabilityStatus.IN_PROGRESS, VulnerabilityStatus.RESOLVED, VulnerabilityStatus.CLOSED}
        ),
        VulnerabilityStatus.IN_PROGRESS: frozenset(
            {VulnerabilityStatus.OPEN, VulnerabilityStatus.RESOLVED, VulnerabilityStatus.CLOSED}
        ),
        # Reopen is explicit: a resolved vulnerability can regress.
        VulnerabilityStatus.RESOLVED: frozenset(
            {VulnerabilityStatus.OPEN, VulnerabilityStatus.IN_PROGRESS, VulnerabilityStatus.CLOSED}
        ),
        VulnerabilityStatus.CLOSED: frozenset(),
    }
)

_FINDING_TRANSITIONS = MappingProxyType(
    {
        FindingStatus.OPEN: frozenset(
            {
                FindingStatus.MITIGATED,
                FindingStatus.FIXED,
                FindingStatus.RISK_ACCEPTED,
                FindingStatus.FALSE_POSITIVE,
            }
        ),
        FindingStatus.MITIGATED: frozenset(
            {
                FindingStatus.OPEN,
                FindingStatus.FIXED,
                FindingStatus.RISK_ACCEPTED,
                FindingStatus.FALSE_POSITIVE,
            }
        ),
        FindingStatus.FIXED: frozenset(
            {
                FindingStatus.OPEN,
                FindingStatus.VERIFIED,
                FindingStatus.RISK_ACCEPTED,
                FindingStatus.FALSE_POSITIVE,
            }
        ),
        FindingStatus.VERIFIED: frozenset({FindingStatus.OPEN, FindingStatus.FALSE_POSITIVE}),
        FindingStatus.RISK_ACCEPTED: frozenset({FindingStatus.OPEN, FindingStatus.FALSE_POSITIVE}),
        FindingStatus.FALSE_POSITIVE: frozenset(),
    }
)

TRANSITIONS: Mapping[EntityKind, Mapping[Enum, frozenset]] = MappingProxyType(
    {
        EntityKind.asset: _ASSET_TRANSITIONS,
        EntityKind.vulnerability: _VULNERABILITY_TRANSITIONS,
        EntityKind.finding: _FINDING_TRANSITIONS,
    }
)

_STATUS_ENUMS: Mapping[EntityKind, type] = MappingProxyType(
    {
        EntityKind.asset: AssetStatus,
        EntityKind.vulnerability: VulnerabilityStatus,
        EntityKind.finding: FindingStatus,
    }
)

_INITIAL_STATUS: Mapping[EntityKind, Enum] = MappingProxyType(
    {
        EntityKind.asset: AssetStatus.ACTIVE,
        EntityKind.vulnerability: VulnerabilityStatus.OPEN,
        EntityKind.finding: FindingStatus.OPEN,
    }
)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def coerce_kind(kind: Union[str, EntityKind]) -> EntityKind:
    """Return kind as an EntityKind. Raises ValueError for unknown kinds."""
    try:
        return EntityKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in EntityKind)
        raise ValueError(f"Unknown entity kind {kind!r}; expected one of: {valid}") from None


def coerce_status(kind: Union[str, EntityKind], status: StatusLike) -> Enum:
    """Return status as a member of the kind's status enum.

    Accepts enum members or their string values (case-sensitive). Raises
    ValueError if the value is not a status of this kind.
    """
    enum_cls = _STATUS_ENUMS[coerce_kind(kind)]
    value = status.value if isinstance(status, Enum) else status
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(s.value for s in enum_cls)
        raise ValueError(f"Unknown {enum_cls.__name__} {value!r}; expected one of: {valid}") from None


def statuses_for(kind: Union[str, EntityKind]) -> tuple:
    """Every status of a kind, in declaration order."""
    return tuple(_STATUS_ENUMS[coerce_kind(kind)])


def initial_status(kind: Union[str, EntityKind]) -> Enum:
    return _INITIAL_STATUS[coerce_kind(kind)]


def allowed_next_statuses(kind: Union[str, EntityKind], current: StatusLike) -> frozenset:
    """Return the statuses reachable from current. Empty for terminal statuses."""
    kind = coerce_kind(kind)
    return TRANSITIONS[kind][coerce_status(kind, current)]


def is_terminal(kind: Union[str, EntityKind], status: StatusLike) -> bool:
    return not allowed_next_statuses(kind, status)


def terminal_statuses(kind: Union[str, EntityKind]) -> frozenset:
    kind = coerce_kind(kind)
    return frozenset(s for s, nxt in TRANSITIONS[kind].items() if not nxt)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    reason: Optional[str] = None


def _names(statuses) -> str:
    return ", ".join(sorted(s.value for s in statuses)) or "none"


def validate(kind: Union[str, EntityKind], current: StatusLike, requested: StatusLike) -> TransitionCheck:
    """Decide whether current -> requested is a legal transition for kind.

    allowed is True iff requested is in allowed_next_statuses(kind, current).
    A same-status request is never a transition and is rejected as "no change".
    The reason always names the current status so it can be shown verbatim.

    Raises ValueError (not a TransitionCheck) when either status is not a
    status of this kind at all -- that is a malformed request, not an
    illegal transition.
    """
    kind = coerce_kind(kind)
    cur = coerce_status(kind, current)
    req = coerce_status(kind, requested)
    reachable = TRANSITIONS[kind][cur]

    if req in reachable:
        return TransitionCheck(allowed=True)
    if req == cur:
        return TransitionCheck(allowed=False, reason=f"no change: {kind.value} is already {cur.value}")
    if not reachable:
        return TransitionCheck(
            allowed=False,
            reason=f"Cannot transition from {cur.value}: this status is terminal",
        )
    return TransitionCheck(
        allowed=False,
        reason=(
            f"Cannot transition from {cur.value} to {req.value}: {cur.value} is not a legal "
            f"predecessor of {req.value} (allowed: {_names(reachable)})"
        ),
    )


def transition_table(kind: Union[str, EntityKind]) -> dict[str, list[str]]:
    """Return the kind's table as plain JSON-ready data, statuses sorted."""
    kind = coerce_kind(kind)
    return {cur.value: sorted(s.value for s in nxt) for cur, nxt in TRANSITIONS[kind].items()}
