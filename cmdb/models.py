"""
cmdb/models.py -- Dataclasses owned by the persistence and import layer.

The lifecycle entities (Asset, Vulnerability, Finding, StatusChangeEvent)
live in core/models.py because the kernel computes them. What lives here is
the bookkeeping only the CMDB cares about: the outcome of a scan import.
"""

from dataclasses import dataclass, field


@dataclass
class ImportResult:
    """Counts produced by CMDBStore.import_scan().

    skipped counts findings that already existed when skip_duplicates=True.
    errors holds one message per record that could not be reconciled; the
    rest of the import still commits.
    """

    assets_created: int = 0
    vulnerabilities_created: int = 0
    findings_created: int = 0
    findings_updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
