"""
cmdb/ingest.py -- Nessus CSV parser for scan imports.

Normalizes a Nessus plugin export to a list of ScanRecord dataclasses. No
database access here -- CMDBStore.import_scan() does the reconciliation.

Pipeline:
  Nessus CSV -> parse_nessus_csv() -> list[ScanRecord]
  -> CMDBStore.import_scan(): dedup assets by hostname, vulnerabilities by
     CVE (else plugin ID), findings by (vulnerability, asset, port, protocol)

Expected columns (Nessus default export):
  Plugin ID, CVE, CVSS v2.0 Base Score, Risk, Host, Protocol, Port,
  Name, Synopsis, Description, Solution, See Also, Plugin Output

Newer exports name the score column "CVSS v3.0 Base Score"; either is read.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Optional

from core.models import Severity

_CVE_RE = re.compile(r"CVE-\d{4}-\d{4,}", re.IGNORECASE)

# Nessus "Risk" column -> Severity. "None" is informational and is skipped.
_RISK_TO_SEVERITY: dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
}


@dataclass
class ScanRecord:
    """One (host, plugin) row from a scan export.

    cve_id is the first CVE listed on the row; all of them are kept in
    cve_ids. A row without any CVE is keyed by plugin_id instead.
    """

    hostname: str
    plugin_id: str
    plugin_name: str
    severity: Severity
    cve_id: Optional[str] = None
    cve_ids: list[str] = field(default_factory=list)
    cvss_score: Optional[float] = None
    port: Optional[int] = None
    protocol: Optional[str] = None
    synopsis: Optional[str] = None


def _parse_port(value: str) -> Optional[int]:
    value = (value or "").strip()
    if not value.isdigit():
        return None
    port = int(value)
    # Nessus reports host-level plugins on port 0.
    return port if port > 0 else None


def _parse_score(row: dict) -> Optional[float]:
    for column in ("CVSS v3.0 Base Score", "CVSS v2.0 Base Score", "CVSS"):
        raw = (row.get(column) or "").strip()
        if raw:
            try:
                return float(raw)
            except ValueError:
                continue
    return None


def parse_nessus_csv(content: str) -> list[ScanRecord]:
    """Parse a Nessus CSV plugin export into ScanRecords.

    Rows are skipped when Host or Plugin ID is empty, or when Risk is "None"
    (informational plugins). A row listing several CVEs (comma- or
    semicolon-separated) stays one record: it is one detection.
    """
    records: list[ScanRecord] = []
    reader = csv.DictReader(io.StringIO(content))
    for row in reader:
        hostname = (row.get("Host") or "").strip()
        plugin_id = (row.get("Plugin ID") or "").strip()
        severity = _RISK_TO_SEVERITY.get((row.get("Risk") or "").strip().lower())
        if not hostname or not plugin_id or severity is None:
            continue
        cve_ids = [c.upper() for c in _CVE_RE.findall(row.get("CVE") or "")]
        protocol = (row.get("Protocol") or "").strip().lower() or None
        records.append(
            ScanRecord(
                hostname=hostname,
                plugin_id=plugin_id,
                plugin_name=(row.get("Name") or "").strip() or f"Nessus plugin {plugin_id}",
                severity=severity,
                cve_id=cve_ids[0] if cve_ids else None,
                cve_ids=cve_ids,
                cvss_score=_parse_score(row),
                port=_parse_port(row.get("Port") or ""),
                protocol=protocol,
                synopsis=(row.get("Synopsis") or "").strip() or None,
            )
        )
    return records


def summarize(records: list[ScanRecord]) -> dict:
    """Return a preview of what an import would touch, without touching anything."""
    severity_counts: dict[str, int] = {s.value: 0 for s in Severity}
    for rec in records:
        severity_counts[rec.severity.value] += 1
    return {
        "total_findings": len(records),
        "unique_hosts": len({r.hostname for r in records}),
        "unique_vulnerabilities": len({r.cve_id or f"plugin:{r.plugin_id}" for r in records}),
        "severity_breakdown": severity_counts,
    }
