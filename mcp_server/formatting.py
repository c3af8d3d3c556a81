"""
mcp_server/formatting.py -- Render API payloads for an agent.

Every tool takes a response_format argument: "markdown" (default, compact and
readable) or "json" (the raw API payload, pretty-printed). Output longer than
Settings.mcp_character_limit is cut and marked so the agent knows to narrow
its query.
"""

import json
from enum import Enum
from typing import Any, Optional


class ResponseFormat(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"


def truncate(text: str, limit: int) -> str:
    """Cut text to at most limit characters, marking the cut."""
    if len(text) <= limit:
        return text
    marker = f"\n\n[Truncated: output exceeded {limit} characters. Use filters or pagination to narrow the result.]"
    return text[: max(limit - len(marker), 0)] + marker


def to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


def _value(v: Any) -> str:
    return "-" if v is None or v == "" else str(v)


def _history_lines(events: list[dict]) -> list[str]:
    lines = []
    for ev in events:
        actor = f"user {ev['actor_id']}" if ev.get("actor_id") is not None else "system"
        line = f"- {ev['occurred_at']}: {ev['previous_status']} -> {ev['new_status']} ({actor})"
        if ev.get("notes"):
            line += f" -- {ev['notes']}"
        lines.append(line)
    return lines or ["- no status changes recorded"]


def format_asset(asset: dict) -> str:
    lines = [
        f"## Asset {asset['id']}: {asset['hostname']}",
        f"- **Status**: {asset['status']}",
        f"- **IP**: {_value(asset.get('ip_address'))}",
        f"- **Type**: {asset.get('system_type')} / {asset.get('environment')} / criticality {asset.get('criticality')}",
        f"- **Owner**: {_value(asset.get('owner_id'))}",
        f"- **Version**: {asset.get('version')}",
    ]
    if asset.get("tags"):
        lines.append(f"- **Tags**: {', '.join(asset['tags'])}")
    if asset.get("status_history"):
        lines += ["", "### Status history", *_history_lines(asset["status_history"])]
    return "\n".join(lines)


def format_vulnerability(vuln: dict) -> str:
    ident = vuln.get("cve_id") or (f"plugin {vuln['plugin_id']}" if vuln.get("plugin_id") else "no CVE")
    lines = [
        f"## Vulnerability {vuln['id']}: {vuln['title']} ({ident})",
        f"- **Status**: {vuln['status']}",
        f"- **Severity**: {vuln['severity']} (CVSS {_value(vuln.get('cvss_score'))})",
        f"- **Assignee**: {_value(vuln.get('assignee_id'))}",
        f"- **Resolved at**: {_value(vuln.get('resolved_at'))}",
        f"- **Version**: {vuln.get('version')}",
    ]
    if vuln.get("description"):
        lines += ["", vuln["description"]]
    if vuln.get("status_history"):
        lines += ["", "### Status history", *_history_lines(vuln["status_history"])]
    return "\n".join(lines)


def format_finding(finding: dict) -> str:
    where = _value(finding.get("port"))
    if finding.get("protocol"):
        where += f"/{finding['protocol']}"
    lines = [
        f"## Finding {finding['id']}",
        f"- **Status**: {finding['status']}",
        f"- **Vulnerability**: {finding['vulnerability_id']}  **Asset**: {finding['asset_id']}  **Port**: {where}",
        f"- **Plugin**: {_value(finding.get('plugin_name'))} ({_value(finding.get('plugin_id'))})",
        f"- **First / last seen**: {_value(finding.get('first_seen'))} / {_value(finding.get('last_seen'))}",
    ]
    if finding.get("fixed_at"):
        lines.append(f"- **Fixed at**: {finding['fixed_at']} -- {_value(finding.get('fix_notes'))}")
    if finding.get("verified_at"):
        lines.append(f"- **Verified at**: {finding['verified_at']}")
    if finding.get("risk_accepted_at"):
        lines.append(
            f"- **Risk accepted at**: {finding['risk_accepted_at']} until {_value(finding.get('expires_at'))} "
            f"-- {_value(finding.get('acceptance_reason'))}"
        )
    lines.append(f"- **Version**: {finding.get('version')}")
    if finding.get("status_history"):
        lines += ["", "### Status history", *_history_lines(finding["status_history"])]
    return "\n".join(lines)


def format_table(title: str, rows: list[dict], columns: list[str], total: Optional[int] = None) -> str:
    """Render rows as a markdown table with the given columns."""
    if not rows:
        return f"# {title}\n\nNo results."
    count = f"{len(rows)} of {total}" if total is not None else str(len(rows))
    lines = [
        f"# {title} ({count})",
        "",
        "| " + " | ".join(columns) + " |",
        "|" + "---|" * len(columns),
    ]
    for row in rows:
        lines.append("| " + " | ".join(_value(row.get(c)) for c in columns) + " |")
    return "\n".join(lines)


def format_history(history: dict) -> str:
    lines = [
        f"# {history['kind'].capitalize()} {history['entity_id']} history (current: {history['current_status']})",
        "",
        *_history_lines(history["events"]),
    ]
    return "\n".join(lines)


def format_allowed(allowed: dict) -> str:
    head = f"# {allowed['kind'].capitalize()} {allowed['entity_id']} is {allowed['current_status']}"
    if allowed["terminal"]:
        return f"{head}\n\nThis status is terminal: no further transitions are allowed."
    return f"{head}\n\nAllowed next statuses: {', '.join(allowed['allowed'])}"


def format_counts(counts: dict) -> str:
    lines = [f"# {counts['kind'].capitalize()} status counts ({counts['total']} total)", ""]
    lines += [f"- {status}: {n}" for status, n in counts["counts"].items()]
    return "\n".join(lines)


def render(payload: Any, fmt: ResponseFormat, markdown: str, limit: int) -> str:
    """Pick the representation for fmt and apply the character limit."""
    text = to_json(payload) if fmt is ResponseFormat.JSON else markdown
    return truncate(text, limit)
