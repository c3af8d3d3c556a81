"""
API request and response models for VulnTrack REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.

Status fields reuse the str-Enums from core/models.py, so an unknown status in
a request body fails pydantic validation (422 validation_error) before the
lifecycle core is ever called.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cmdb.models import ImportResult
from core.models import (
    Asset,
    AssetStatus,
    Finding,
    FindingStatus,
    Severity,
    StatusChangeEvent,
    Vulnerability,
    VulnerabilityStatus,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CVE_PATTERN = r"^CVE-\d{4}-\d{4,}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EnvironmentEnum(str, Enum):
    PRODUCTION = "PRODUCTION"
    STAGING = "STAGING"
    DEVELOPMENT = "DEVELOPMENT"
    TEST = "TEST"


class CriticalityEnum(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class SystemTypeEnum(str, Enum):
    SERVER = "SERVER"
    WORKSTATION = "WORKSTATION"
    NETWORK_DEVICE = "NETWORK_DEVICE"
    APPLICATION = "APPLICATION"
    DATABASE = "DATABASE"
    CLOUD_RESOURCE = "CLOUD_RESOURCE"
    CONTAINER = "CONTAINER"
    OTHER = "OTHER"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class StatusChangeEventResponse(BaseModel):
    """One entry of an entity's status history."""

    model_config = ConfigDict(frozen=True)

    previous_status: str
    new_status: str
    occurred_at: datetime
    actor_id: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_event(cls, event: StatusChangeEvent) -> "StatusChangeEventResponse":
        return cls(
            previous_status=event.previous_status,
            new_status=event.new_status,
            occurred_at=event.occurred_at,
            actor_id=event.actor_id,
            notes=event.notes,
        )


class HistoryResponse(BaseModel):
    """Response for GET .../{id}/history. Events are oldest first."""

    model_config = ConfigDict(frozen=True)

    kind: str
    entity_id: int
    current_status: str
    events: list[StatusChangeEventResponse]


class AllowedTransitionsResponse(BaseModel):
    """Response for GET .../{id}/status/allowed.

    Lets a UI grey out options the server would reject. It is advisory only:
    the status may change between this call and the update.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    entity_id: int
    current_status: str
    allowed: list[str]
    terminal: bool
    version: int


# ---------------------------------------------------------------------------
# Status change requests
# ---------------------------------------------------------------------------


class _ActorRequest(BaseModel):
    """Fields every status change carries. actor_id is None for system changes."""

    model_config = ConfigDict(str_strip_whitespace=True)

    actor_id: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = Field(default=None, max_length=2000)


class AssetStatusUpdate(_ActorRequest):
    """Request body for PUT|PATCH /api/v1/assets/{asset_id}/status."""

    status: AssetStatus


class VulnerabilityStatusUpdate(_ActorRequest):
    """Request body for PATCH /api/v1/vulnerabilities/{vuln_id}/status."""

    status: VulnerabilityStatus


class FindingStatusUpdate(_ActorRequest):
    """Request body for PATCH /api/v1/vulnerabilities/findings/{finding_id}/status.

    fix_notes, acceptance_reason and expires_at are consulted only when the
    target status needs them (FIXED, RISK_ACCEPTED). They are optional here so
    an omission is reported by the lifecycle as missing_required_field, with
    the field name, rather than as a generic schema failure.
    """

    status: FindingStatus
    fix_notes: Optional[str] = Field(default=None, max_length=5000)
    acceptance_reason: Optional[str] = Field(default=None, max_length=5000)
    expires_at: Optional[datetime] = None


class MarkFixedRequest(BaseModel):
    """Request body for POST .../findings/{finding_id}/mark-fixed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    fix_notes: Optional[str] = Field(default=None, max_length=5000)
    actor_id: Optional[int] = Field(default=None, ge=1)


class AcceptRiskRequest(BaseModel):
    """Request body for POST .../findings/{finding_id}/accept-risk."""

    model_config = ConfigDict(str_strip_whitespace=True)

    acceptance_reason: Optional[str] = Field(default=None, max_length=5000)
    expires_at: Optional[datetime] = None
    actor_id: Optional[int] = Field(default=None, ge=1)


class FindingActionRequest(_ActorRequest):
    """Request body for mark-verified, mark-false-positive and reopen."""


class ValidateTransitionRequest(BaseModel):
    """Request body for POST /api/v1/lifecycle/{kind}/validate.

    Statuses are plain strings here because the kind is only known from the
    path; the route coerces them against the kind's status set.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    current_status: str = Field(min_length=1, max_length=30)
    requested_status: str = Field(min_length=1, max_length=30)

    @field_validator("current_status", "requested_status")
    @classmethod
    def upper(cls, value: str) -> str:
        return value.upper()


# ---------------------------------------------------------------------------
# Lifecycle table responses
# ---------------------------------------------------------------------------


class TransitionTableResponse(BaseModel):
    """Response for GET /api/v1/lifecycle/{kind}/transitions."""

    model_config = ConfigDict(frozen=True)

    kind: str
    initial_status: str
    terminal_statuses: list[str]
    transitions: dict[str, list[str]]


class TransitionCheckResponse(BaseModel):
    """Response for POST /api/v1/lifecycle/{kind}/validate."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None


class StatusCountsResponse(BaseModel):
    """Response for GET /api/v1/lifecycle/{kind}/counts."""

    model_config = ConfigDict(frozen=True)

    kind: str
    counts: dict[str, int]
    total: int


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


class AssetCreate(BaseModel):
    """Request body for POST /api/v1/assets. New assets always start ACTIVE."""

    model_config = ConfigDict(str_strip_whitespace=True)

    hostname: str = Field(min_length=1, max_length=255)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    system_type: SystemTypeEnum = SystemTypeEnum.SERVER
    environment: EnvironmentEnum = EnvironmentEnum.PRODUCTION
    criticality: CriticalityEnum = CriticalityEnum.MEDIUM
    owner_id: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = Field(default=None, max_length=2000)
    tags: list[str] = Field(default_factory=list, max_length=20)


class AssetResponse(BaseModel):
    """Full asset detail, status history included when loaded."""

    model_config = ConfigDict(frozen=True)

    id: int
    hostname: str
    ip_address: Optional[str]
    system_type: str
    environment: str
    criticality: str
    status: AssetStatus
    owner_id: Optional[int]
    description: Optional[str]
    tags: list[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    version: int
    status_history: list[StatusChangeEventResponse] = Field(default_factory=list)

    @classmethod
    def from_asset(cls, asset: Asset) -> "AssetResponse":
        """Factory Method -- the domain-to-contract mapping lives beside the contract."""
        return cls(
            id=asset.id,
            hostname=asset.hostname,
            ip_address=asset.ip_address,
            system_type=asset.system_type,
            environment=asset.environment,
            criticality=asset.criticality,
            status=asset.status,
            owner_id=asset.owner_id,
            description=asset.description,
            tags=list(asset.tags),
            created_at=asset.created_at,
            updated_at=asset.updated_at,
            version=asset.version,
            status_history=[StatusChangeEventResponse.from_event(e) for e in asset.status_history],
        )


# ---------------------------------------------------------------------------
# Vulnerabilities
# ---------------------------------------------------------------------------


class VulnerabilityCreate(BaseModel):
    """Request body for POST /api/v1/vulnerabilities. New vulnerabilities start OPEN."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=10000)
    severity: Severity = Severity.MEDIUM
    cvss_score: Optional[float] = Field(default=None, ge=0.0, le=10.0)
    cve_id: Optional[str] = Field(default=None, pattern=CVE_PATTERN)
    plugin_id: Optional[str] = Field(default=None, max_length=30)
    assignee_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("cve_id", mode="before")
    @classmethod
    def normalize_cve(cls, value: Optional[str]) -> Optional[str]:
        """Uppercase before the pattern check so lowercase ids are accepted."""
        if value is None:
            return None
        return str(value).strip().upper() or None


class VulnerabilityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    description: Optional[str]
    severity: Severity
    cvss_score: Optional[float]
    cve_id: Optional[str]
    plugin_id: Optional[str]
    status: VulnerabilityStatus
    assignee_id: Optional[int]
    resolved_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    version: int
    status_history: list[StatusChangeEventResponse] = Field(default_factory=list)

    @classmethod
    def from_vulnerability(cls, vuln: Vulnerability) -> "VulnerabilityResponse":
        return cls(
            id=vuln.id,
            title=vuln.title,
            description=vuln.description,
            severity=vuln.severity,
            cvss_score=vuln.cvss_score,
            cve_id=vuln.cve_id,
            plugin_id=vuln.plugin_id,
            status=vuln.status,
            assignee_id=vuln.assignee_id,
            resolved_at=vuln.resolved_at,
            created_at=vuln.created_at,
            updated_at=vuln.updated_at,
            version=vuln.version,
            status_history=[StatusChangeEventResponse.from_event(e) for e in vuln.status_history],
        )


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class FindingCreate(BaseModel):
    """Request body for POST /api/v1/vulnerabilities/findings."""

    model_config = ConfigDict(str_strip_whitespace=True)

    vulnerability_id: int = Field(ge=1)
    asset_id: int = Field(ge=1)
    plugin_id: Optional[str] = Field(default=None, max_length=30)
    plugin_name: Optional[str] = Field(default=None, max_length=500)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    protocol: Optional[str] = Field(default=None, max_length=10)

    @field_validator("protocol")
    @classmethod
    def lower_protocol(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else None


class FindingResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    vulnerability_id: int
    asset_id: int
    plugin_id: Optional[str]
    plugin_name: Optional[str]
    port: Optional[int]
    protocol: Optional[str]
    status: FindingStatus
    first_seen: Optional[datetime]
    last_seen: Optional[datetime]
    fixed_at: Optional[datetime]
    fix_notes: Optional[str]
    verified_at: Optional[datetime]
    risk_accepted_at: Optional[datetime]
    acceptance_reason: Optional[str]
    expires_at: Optional[datetime]
    updated_at: Optional[datetime]
    version: int
    status_history: list[StatusChangeEventResponse] = Field(default_factory=list)

    @classmethod
    def from_finding(cls, finding: Finding) -> "FindingResponse":
        return cls(
            id=finding.id,
            vulnerability_id=finding.vulnerability_id,
            asset_id=finding.asset_id,
            plugin_id=finding.plugin_id,
            plugin_name=finding.plugin_name,
            port=finding.port,
            protocol=finding.protocol,
            status=finding.status,
            first_seen=finding.first_seen,
            last_seen=finding.last_seen,
            fixed_at=finding.fixed_at,
            fix_notes=finding.fix_notes,
            verified_at=finding.verified_at,
            risk_accepted_at=finding.risk_accepted_at,
            acceptance_reason=finding.acceptance_reason,
            expires_at=finding.expires_at,
            updated_at=finding.updated_at,
            version=finding.version,
            status_history=[StatusChangeEventResponse.from_event(e) for e in finding.status_history],
        )


class FindingListResponse(BaseModel):
    """Paginated response for GET /api/v1/vulnerabilities/findings."""

    model_config = ConfigDict(frozen=True)

    items: list[FindingResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Nessus import
# ---------------------------------------------------------------------------


class ImportResponse(BaseModel):
    """Response for POST /api/v1/vulnerabilities/import/nessus."""

    model_config = ConfigDict(frozen=True)

    records: int
    assets_created: int
    vulnerabilities_created: int
    findings_created: int
    findings_updated: int
    skipped: int
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, records: int, result: ImportResult) -> "ImportResponse":
        return cls(
            records=records,
            assets_created=result.assets_created,
            vulnerabilities_created=result.vulnerabilities_created,
            findings_created=result.findings_created,
            findings_updated=result.findings_updated,
            skipped=result.skipped,
            errors=result.errors,
        )


class ImportPreviewResponse(BaseModel):
    """Response for POST /api/v1/vulnerabilities/import/nessus/preview."""

    model_config = ConfigDict(frozen=True)

    total_findings: int
    unique_hosts: int
    unique_vulnerabilities: int
    severity_breakdown: dict[str, int]
