"""
mcp_server/tools.py -- MCP tool definitions and their dispatcher.

TOOLS is the list advertised to clients. call_tool() validates the arguments
it needs, makes the REST calls through ApiClient and renders the result with
mcp_server/formatting.py. It always returns text: API and transport failures
come back as an actionable "Error: ..." string rather than an exception, so
the agent can read the reason and try again.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from mcp.types import Tool

from api.models import CriticalityEnum, EnvironmentEnum, SystemTypeEnum
from core.config import get_settings
from core.models import AssetStatus, EntityKind, FindingStatus, Severity, VulnerabilityStatus
from mcp_server.client import ApiClient, ApiError, describe_error
from mcp_server.formatting import (
    ResponseFormat,
    format_allowed,
    format_asset,
    format_counts,
    format_finding,
    format_history,
    format_table,
    format_vulnerability,
    render,
)

logger = logging.getLogger("vulntrack.mcp")

_ENTITY_PATHS = {
    EntityKind.asset: "/assets/{id}",
    EntityKind.vulnerability: "/vulnerabilities/{id}",
    EntityKind.finding: "/vulnerabilities/findings/{id}",
}

# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_FORMAT = {
    "type": "string",
    "enum": [f.value for f in ResponseFormat],
    "description": "Output format: 'markdown' (default) or 'json'",
    "default": "markdown",
}
_ACTOR = {"type": "integer", "description": "ID of the user making the change (omit for system changes)"}
_NOTES = {"type": "string", "description": "Free-text note stored in the status history"}
_KIND = {"type": "string", "enum": [k.value for k in EntityKind], "description": "Entity kind"}
_ASSET_FIELDS = ("ip_address", "system_type", "environment", "criticality", "owner_id", "description", "tags")


def _id(name: str) -> dict:
    return {"type": "integer", "description": f"{name} ID", "minimum": 1}


def _enum(values, description: str) -> dict:
    return {"type": "string", "enum": [v.value for v in values], "description": description}


TOOLS = [
    Tool(
        name="list_assets",
        description="List tracked assets with their current status. Optionally filter by status.",
        inputSchema={
            "type": "object",
            "properties": {
                "status": _enum(AssetStatus, "Only assets in this status"),
                "response_format": _FORMAT,
            },
        },
    ),
    Tool(
        name="get_asset",
        description="Get one asset, including its full status history.",
        inputSchema={
            "type": "object",
            "properties": {"asset_id": _id("Asset"), "response_format": _FORMAT},
            "required": ["asset_id"],
        },
    ),
    Tool(
        name="create_asset",
        description="""Register a new asset. It starts ACTIVE with an empty status history.

Hostnames are unique: creating an existing hostname fails with asset_exists
(use list_assets to find it instead).""",
        inputSchema={
            "type": "object",
            "properties": {
                "hostname": {"type": "string", "description": "Unique hostname"},
                "ip_address": {"type": "string", "description": "IPv4 or IPv6 address"},
                "system_type": _enum(SystemTypeEnum, "Kind of system (default SERVER)"),
                "environment": _enum(EnvironmentEnum, "Deployment environment (default PRODUCTION)"),
                "criticality": _enum(CriticalityEnum, "Business criticality (default MEDIUM)"),
                "owner_id": {"type": "integer", "description": "ID of the owning user", "minimum": 1},
                "description": {"type": "string"},
                "tags": {"type": "array", "items": {"type": "string"}, "description": "Free-form labels"},
                "response_format": _FORMAT,
            },
            "required": ["hostname"],
        },
    ),
    Tool(
        name="update_asset_status",
        description="""Change an asset's status.

Transitions: ACTIVE -> INACTIVE | UNDER_MAINTENANCE | DECOMMISSIONED;
INACTIVE -> ACTIVE | DECOMMISSIONED; UNDER_MAINTENANCE -> ACTIVE | INACTIVE |
DECOMMISSIONED. DECOMMISSIONED is terminal.""",
        inputSchema={
            "type": "object",
            "properties": {
                "asset_id": _id("Asset"),
                "status": _enum(AssetStatus, "Target status"),
                "actor_id": _ACTOR,
                "notes": _NOTES,
                "response_format": _FORMAT,
            },
            "required": ["asset_id", "status"],
        },
    ),
    Tool(
        name="list_vulnerabilities",
        description="List vulnerabilities, newest first. Optionally filter by status and severity.",
        inputSchema={
            "type": "object",
            "properties": {
                "status": _enum(VulnerabilityStatus, "Only vulnerabilities in this status"),
                "severity": _enum(Severity, "Only vulnerabilities of this severity"),
                "response_format": _FORMAT,
            },
        },
    ),
    Tool(
        name="get_vulnerability",
        description="Get one vulnerability, including its full status history.",
        inputSchema={
            "type": "object",
            "properties": {"vulnerability_id": _id("Vulnerability"), "response_format": _FORMAT},
            "required": ["vulnerability_id"],
        },
    ),
    Tool(
        name="update_vulnerability_status",
        description="""Change a vulnerability's status.

OPEN, IN_PROGRESS and RESOLVED can move between each other or to CLOSED.
CLOSED is terminal. Moving to RESOLVED stamps resolved_at; reopening clears it.""",
        inputSchema={
            "type": "object",
            "properties": {
                "vulnerability_id": _id("Vulnerability"),
                "status": _enum(VulnerabilityStatus, "Target status"),
                "actor_id": _ACTOR,
                "notes": _NOTES,
                "response_format": _FORMAT,
            },
            "required": ["vulnerability_id", "status"],
        },
    ),
    Tool(
        name="list_findings",
        description="List findings (vulnerability detections on assets), most recently seen first.",
        inputSchema={
            "type": "object",
            "properties": {
                "vulnerability_id": _id("Vulnerability"),
                "asset_id": _id("Asset"),
                "status": _enum(FindingStatus, "Only findings in this status"),
                "limit": {"type": "integer", "minimum": 1, "maximum": 500, "default": 50},
                "offset": {"type": "integer", "minimum": 0, "default": 0},
                "response_format": _FORMAT,
            },
        },
    ),
    Tool(
        name="get_finding",
        description="Get one finding, including remediation fields and status history.",
        inputSchema={
            "type": "object",
            "properties": {"finding_id": _id("Finding"), "response_format": _FORMAT},
            "required": ["finding_id"],
        },
    ),
    Tool(
        name="mark_finding_fixed",
        description="Mark a finding FIXED. fix_notes describing the remediation is required.",
        inputSchema={
            "type": "object",
            "properties": {
                "finding_id": _id("Finding"),
                "fix_notes": {"type": "string", "description": "What was done to fix it"},
                "actor_id": _ACTOR,
                "response_format": _FORMAT,
            },
            "required": ["finding_id", "fix_notes"],
        },
    ),
    Tool(
        name="mark_finding_verified",
        description="Mark a FIXED finding VERIFIED after confirming the fix (e.g. by rescan).",
        inputSchema={
            "type": "object",
            "properties": {
                "finding_id": _id("Finding"),
                "actor_id": _ACTOR,
                "notes": _NOTES,
                "response_format": _FORMAT,
            },
            "required": ["finding_id"],
        },
    ),
    Tool(
        name="accept_finding_risk",
        description="""Accept the risk of a finding instead of fixing it.

acceptance_reason is required. expires_at (ISO 8601) is optional and must be
in the future.""",
        inputSchema={
            "type": "object",
            "properties": {
                "finding_id": _id("Finding"),
                "acceptance_reason": {"type": "string", "description": "Why the risk is acceptable"},
                "expires_at": {"type": "string", "format": "date-time", "description": "When the acceptance lapses"},
                "actor_id": _ACTOR,
                "response_format": _FORMAT,
            },
            "required": ["finding_id", "acceptance_reason"],
        },
    ),
    Tool(
        name="reopen_finding",
        description="Reopen a finding. Clears fix, verification and risk-acceptance fields; history is kept.",
        inputSchema={
            "type": "object",
            "properties": {
                "finding_id": _id("Finding"),
                "actor_id": _ACTOR,
                "notes": _NOTES,
                "response_format": _FORMAT,
            },
            "required": ["finding_id"],
        },
    ),
    Tool(
        name="get_status_history",
        description="Get the status history (oldest first) of an asset, vulnerability or finding.",
        inputSchema={
            "type": "object",
            "properties": {"kind": _KIND, "entity_id": _id("Entity"), "response_format": _FORMAT},
            "required": ["kind", "entity_id"],
        },
    ),
    Tool(
        name="get_allowed_transitions",
        description="List the statuses an asset, vulnerability or finding can move to from its current status.",
        inputSchema={
            "type": "object",
            "properties": {"kind": _KIND, "entity_id": _id("Entity"), "response_format": _FORMAT},
            "required": ["kind", "entity_id"],
        },
    ),
    Tool(
        name="get_status_counts",
        description="Count assets, vulnerabilities or findings per status. Every status is listed, zeros included.",
        inputSchema={
            "type": "object",
            "properties": {"kind": _KIND, "response_format": _FORMAT},
            "required": ["kind"],
        },
    ),
]


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _require(arguments: dict, key: str) -> Any:
    value = arguments.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"'{key}' is required.")
    return value


def _int_arg(arguments: dict, key: str) -> int:
    value = _require(arguments, key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be an integer, got {value!r}.") from None


def _kind_arg(arguments: dict) -> EntityKind:
    value = _require(arguments, "kind")
    try:
        return EntityKind(value)
    except ValueError:
        raise ValueError(f"'kind' must be one of: {', '.join(k.value for k in EntityKind)}.") from None


def _format_arg(arguments: dict) -> ResponseFormat:
    try:
        return ResponseFormat(arguments.get("response_format") or ResponseFormat.MARKDOWN)
    except ValueError:
        raise ValueError("'response_format' must be 'markdown' or 'json'.") from None


def _entity_path(kind: EntityKind, entity_id: int) -> str:
    return _ENTITY_PATHS[kind].format(id=entity_id)


# ---------------------------------------------------------------------------
# Handlers -- each returns (payload, markdown)
# ---------------------------------------------------------------------------

Handler = Callable[[ApiClient, dict], Awaitable[tuple[Any, str]]]


async def _list_assets(client: ApiClient, args: dict) -> tuple[Any, str]:
    rows = await client.get("/assets", params={"status": args.get("status")})
    return rows, format_table("Assets", rows, ["id", "hostname", "status", "environment", "criticality"])


async def _get_asset(client: ApiClient, args: dict) -> tuple[Any, str]:
    asset = await client.get(_entity_path(EntityKind.asset, _int_arg(args, "asset_id")))
    return asset, format_asset(asset)


async def _create_asset(client: ApiClient, args: dict) -> tuple[Any, str]:
    body = {key: args.get(key) for key in _ASSET_FIELDS}
    body["hostname"] = _require(args, "hostname")
    asset = await client.post("/assets", json=body)
    return asset, format_asset(asset)


async def _update_asset_status(client: ApiClient, args: dict) -> tuple[Any, str]:
    path = _entity_path(EntityKind.asset, _int_arg(args, "asset_id")) + "/status"
    asset = await client.patch(
        path, json={"status": _require(args, "status"), "actor_id": args.get("actor_id"), "notes": args.get("notes")}
    )
    return asset, format_asset(asset)


async def _list_vulnerabilities(client: ApiClient, args: dict) -> tuple[Any, str]:
    rows = await client.get("/vulnerabilities", params={"status": args.get("status"), "severity": args.get("severity")})
    return rows, format_table("Vulnerabilities", rows, ["id", "cve_id", "title", "severity", "status"])


async def _get_vulnerability(client: ApiClient, args: dict) -> tuple[Any, str]:
    vuln = await client.get(_entity_path(EntityKind.vulnerability, _int_arg(args, "vulnerability_id")))
    return vuln, format_vulnerability(vuln)


async def _update_vulnerability_status(client: ApiClient, args: dict) -> tuple[Any, str]:
    path = _entity_path(EntityKind.vulnerability, _int_arg(args, "vulnerability_id")) + "/status"
    vuln = await client.patch(
        path, json={"status": _require(args, "status"), "actor_id": args.get("actor_id"), "notes": args.get("notes")}
    )
    return vuln, format_vulnerability(vuln)


async def _list_findings(client: ApiClient, args: dict) -> tuple[Any, str]:
    page = await client.get(
        "/vulnerabilities/findings",
        params={
            "vulnerability_id": args.get("vulnerability_id"),
            "asset_id": args.get("asset_id"),
            "status": args.get("status"),
            "limit": args.get("limit", 50),
            "offset": args.get("offset", 0),
        },
    )
    markdown = format_table(
        "Findings",
        page["items"],
        ["id", "vulnerability_id", "asset_id", "port", "status", "last_seen"],
        total=page["total"],
    )
    return page, markdown


async def _get_finding(client: ApiClient, args: dict) -> tuple[Any, str]:
    finding = await client.get(_entity_path(EntityKind.finding, _int_arg(args, "finding_id")))
    return finding, format_finding(finding)


async def _finding_action(client: ApiClient, args: dict, action: str, body: dict) -> tuple[Any, str]:
    path = _entity_path(EntityKind.finding, _int_arg(args, "finding_id")) + f"/{action}"
    finding = await client.post(path, json=body)
    return finding, format_finding(finding)


async def _mark_finding_fixed(client: ApiClient, args: dict) -> tuple[Any, str]:
    body = {"fix_notes": _require(args, "fix_notes"), "actor_id": args.get("actor_id")}
    return await _finding_action(client, args, "mark-fixed", body)


async def _mark_finding_verified(client: ApiClient, args: dict) -> tuple[Any, str]:
    body = {"actor_id": args.get("actor_id"), "notes": args.get("notes")}
    return await _finding_action(client, args, "mark-verified", body)


async def _accept_finding_risk(client: ApiClient, args: dict) -> tuple[Any, str]:
    body = {
        "acceptance_reason": _require(args, "acceptance_reason"),
        "expires_at": args.get("expires_at"),
        "actor_id": args.get("actor_id"),
    }
    return await _finding_action(client, args, "accept-risk", body)


async def _reopen_finding(client: ApiClient, args: dict) -> tuple[Any, str]:
    body = {"actor_id": args.get("actor_id"), "notes": args.get("notes")}
    return await _finding_action(client, args, "reopen", body)


async def _get_status_history(client: ApiClient, args: dict) -> tuple[Any, str]:
    path = _entity_path(_kind_arg(args), _int_arg(args, "entity_id")) + "/history"
    history = await client.get(path)
    return history, format_history(history)


async def _get_allowed_transitions(client: ApiClient, args: dict) -> tuple[Any, str]:
    path = _entity_path(_kind_arg(args), _int_arg(args, "entity_id")) + "/status/allowed"
    allowed = await client.get(path)
    return allowed, format_allowed(allowed)


async def _get_status_counts(client: ApiClient, args: dict) -> tuple[Any, str]:
    counts = await client.get(f"/lifecycle/{_kind_arg(args).value}/counts")
    return counts, format_counts(counts)


HANDLERS: dict[str, Handler] = {
    "list_assets": _list_assets,
    "get_asset": _get_asset,
    "create_asset": _create_asset,
    "update_asset_status": _update_asset_status,
    "list_vulnerabilities": _list_vulnerabilities,
    "get_vulnerability": _get_vulnerability,
    "update_vulnerability_status": _update_vulnerability_status,
    "list_findings": _list_findings,
    "get_finding": _get_finding,
    "mark_finding_fixed": _mark_finding_fixed,
    "mark_finding_verified": _mark_finding_verified,
    "accept_finding_risk": _accept_finding_risk,
    "reopen_finding": _reopen_finding,
    "get_status_history": _get_status_history,
    "get_allowed_transitions": _get_allowed_transitions,
    "get_status_counts": _get_status_counts,
}


async def call_tool(client: ApiClient, name: str, arguments: Optional[dict], limit: Optional[int] = None) -> str:
    """Run one tool and return its text output.

    Unknown tool names, bad arguments and API or transport failures are all
    returned as "Error: ..." text.
    """
    handler = HANDLERS.get(name)
    if handler is None:
        return f"Error: Unknown tool '{name}'. Available tools: {', '.join(sorted(HANDLERS))}."
    arguments = arguments or {}
    limit = limit or get_settings().mcp_character_limit
    try:
        fmt = _format_arg(arguments)
        payload, markdown = await handler(client, arguments)
    except (ApiError, httpx.HTTPError, ValueError) as exc:
        logger.info("Tool %s failed: %s", name, exc)
        return describe_error(exc)
    return render(payload, fmt, markdown, limit)
