"""
core/models.py -- Domain dataclasses and status enums for VulnTrack.

These are pure data containers with zero logic. Transition rules live in
core/transitions.py, history recording in core/history.py, and the
per-kind lifecycle side effects in core/lifecycle.py and core/findings.py.

Every entity is a frozen dataclass. A status change never edits an entity in
place: the lifecycle functions return a new value built with
dataclasses.replace(), so a caller can discard it if persistence fails.

id is None before the record is written to the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EntityKind(str, Enum):
    asset = "asset"
    vulnerability = "vulnerability"
    finding = "finding"


class AssetStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    UNDER_MAINTENANCE = "UNDER_MAINTENANCE"
    DECOMMISSIONED = "DECOMMISSIONED"


class VulnerabilityStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class FindingStatus(str, Enum):
    OPEN = "OPEN"
    MITIGATED = "MITIGATED"
    FIXED = "FIXED"
    VERIFIED = "VERIFIED"
    RISK_ACCEPTED = "RISK_ACCEPTED"
    FALSE_POSITIVE = "FALSE_POSITIVE"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusChangeEvent:
    """Immutable audit entry for one accepted status transition.

    actor_id is None for system-initiated changes (e.g. scan import).
    occurred_at is timezone-aware and never earlier than the previous event
    in the same history.
    """

    previous_status: str
    new_status: str
    occurred_at: datetime
    actor_id: Optional[int] = None
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Asset:
    """A tracked infrastructure asset (an "affected system" in scan data)."""

    hostname: str
    environment: str = "PRODUCTION"  # PRODUCTION | STAGING | DEVELOPMENT | TEST
    criticality: str = "MEDIUM"  # CRITICAL | HIGH | MEDIUM | LOW
    system_type: str = "SERVER"
    status: AssetStatus = AssetStatus.ACTIVE
    id: Optional[int] = None
    ip_address: Optional[str] = None
    owner_id: Optional[int] = None
    description: Optional[str] = None
    tags: tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1
    status_history: tuple[StatusChangeEvent, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Vulnerability:
    """A vulnerability definition (one CVE or scanner plugin), shared by findings.

    resolved_at is set when the vulnerability moves to RESOLVED and cleared
    when it is reopened.
    """

    title: str
    severity: Severity = Severity.MEDIUM
    status: VulnerabilityStatus = VulnerabilityStatus.OPEN
    id: Optional[int] = None
    description: Optional[str] = None
    cvss_score: Optional[float] = None
    cve_id: Optional[str] = None
    plugin_id: Optional[str] = None
    assignee_id: Optional[int] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1
    status_history: tuple[StatusChangeEvent, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Finding:
    """One detected instance of a Vulnerability on an Asset.

    Lifecycle fields (fixed_at/fix_notes, verified_at, risk_accepted_at/
    acceptance_reason/expires_at) are written only as side effects of the
    matching status transition -- see core/findings.py.
    """

    vulnerability_id: int
    asset_id: int
    status: FindingStatus = FindingStatus.OPEN
    id: Optional[int] = None
    plugin_id: Optional[str] = None
    plugin_name: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    fixed_at: Optional[datetime] = None
    fix_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    risk_accepted_at: Optional[datetime] = None
    acceptance_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1
    status_history: tuple[StatusChangeEvent, ...] = field(default_factory=tuple)
