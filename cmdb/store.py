"""
cmdb/store.py -- SQLAlchemy-backed persistence layer for VulnTrack.

Uses SQLAlchemy Core (not ORM) so the frozen dataclasses in core/models.py
remain the authoritative domain representation. SQLAlchemy provides a
database-agnostic abstraction: swapping SQLite for PostgreSQL is a connection
string change, not a rewrite.

Pattern: Repository + Data Mapper. CMDBStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers (they translate
raw DB rows into domain dataclasses). Route handlers never touch SQL directly.

Status changes are computed by core/ and handed here whole. save_transition()
is the durability boundary:
  - optimistic concurrency: UPDATE ... WHERE version = :expected. Zero rows
    means another writer got there first -> StaleEntityError.
  - status_history is append-only: only events beyond the persisted count are
    inserted, in the same transaction as the status update. Rows are never
    updated or deleted.

Single-entity reads (get_asset, get_vulnerability, get_finding) run
core.history.check_history() on the loaded entity and log any violation at
WARNING. The entity is still returned; a broken chain is reported, not hidden.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = CMDBStore()                               # SQLite default
    store = CMDBStore("postgresql://user:pw@host/db") # PostgreSQL
    asset_id = store.create_asset(Asset(hostname="web-01"))
    asset = store.get_asset(asset_id)
    updated = apply_transition(EntityKind.asset, asset, request)
    store.save_transition(EntityKind.asset, updated, expected_version=asset.version)
    store.close()
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from cmdb.ingest import ScanRecord
from cmdb.models import ImportResult
from core.config import now_utc
from core.errors import StaleEntityError
from core.history import check_history
from core.models import (
    Asset,
    AssetStatus,
    EntityKind,
    Finding,
    FindingStatus,
    Severity,
    StatusChangeEvent,
    Vulnerability,
    VulnerabilityStatus,
)
from core.transitions import coerce_kind, statuses_for

logger = logging.getLogger("vulntrack.cmdb")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("hostname", String(255), nullable=False, unique=True),
    Column("ip_address", String(45)),
    Column("system_type", String(30), nullable=False, server_default="SERVER"),
    Column("environment", String(30), nullable=False, server_default="PRODUCTION"),
    Column("criticality", String(30), nullable=False, server_default="MEDIUM"),
    Column("status", String(30), nullable=False, server_default="ACTIVE"),
    Column("owner_id", Integer),
    Column("description", Text),
    Column("tags", Text),  # comma-joined, lowercase
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
)

_vulns = Table(
    "vulnerabilities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(500), nullable=False),
    Column("description", Text),
    Column("severity", String(20), nullable=False, server_default="MEDIUM"),
    Column("cvss_score", Float),
    Column("cve_id", String(30), unique=True),
    Column("plugin_id", String(30)),
    Column("status", String(30), nullable=False, server_default="OPEN"),
    Column("assignee_id", Integer),
    Column("resolved_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
)

_findings = Table(
    "findings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vulnerability_id", Integer, nullable=False),
    Column("asset_id", Integer, nullable=False),
    Column("plugin_id", String(30)),
    Column("plugin_name", String(500)),
    Column("port", Integer),
    Column("protocol", String(10)),
    Column("status", String(30), nullable=False, server_default="OPEN"),
    Column("first_seen", String(32), nullable=False),
    Column("last_seen", String(32), nullable=False),
    Column("fixed_at", String(32)),
    Column("fix_notes", Text),
    Column("verified_at", String(32)),
    Column("risk_accepted_at", String(32)),
    Column("acceptance_reason", Text),
    Column("expires_at", String(32)),
    Column("updated_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
)

_history = Table(
    "status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_kind", String(20), nullable=False),
    Column("entity_id", Integer, nullable=False),
    Column("seq", Integer, nullable=False),  # 0-based position in the entity's history
    Column("previous_status", String(30), nullable=False),
    Column("new_status", String(30), nullable=False),
    Column("actor_id", Integer),  # NULL = system
    Column("notes", Text),
    Column("occurred_at", String(32), nullable=False),
    # Two writers appending the same position is a lost update -- let the DB refuse it.
    UniqueConstraint("entity_kind", "entity_id", "seq", name="uq_history_position"),
)

_TABLES: dict[EntityKind, Table] = {
    EntityKind.asset: _assets,
    EntityKind.vulnerability: _vulns,
    EntityKind.finding: _findings,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO string. Naive values are treated as UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _lifecycle_values(kind: EntityKind, entity) -> dict:
    """Columns a status change may touch, per kind."""
    values = {"status": entity.status.value}
    if kind is EntityKind.asset:
        values["updated_at"] = _iso(entity.updated_at or now_utc())
    elif kind is EntityKind.vulnerability:
        values["resolved_at"] = _iso(entity.resolved_at)
        values["updated_at"] = _iso(entity.updated_at or now_utc())
    else:
        values.update(
            updated_at=_iso(entity.updated_at or now_utc()),
            fixed_at=_iso(entity.fixed_at),
            fix_notes=entity.fix_notes,
            verified_at=_iso(entity.verified_at),
            risk_accepted_at=_iso(entity.risk_accepted_at),
            acceptance_reason=entity.acceptance_reason,
            expires_at=_iso(entity.expires_at),
        )
    return values


def _checked(kind: EntityKind, entity):
    for problem in check_history(kind, entity):
        logger.warning("History check failed for %s %s: %s", kind.value, entity.id, problem)
    return entity


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CMDBStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # SQLite requires check_same_thread=False when used from FastAPI's
            # thread pool: the same connection may be used across threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def create_asset(self, asset: Asset) -> int:
        """Insert a new asset and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the hostname is already taken.
        """
        now = _iso(now_utc())
        with self.engine.connect() as conn:
            result = conn.execute(
                _assets.insert().values(
                    hostname=asset.hostname,
                    ip_address=asset.ip_address,
                    system_type=asset.system_type,
                    environment=asset.environment,
                    criticality=asset.criticality,
                    status=AssetStatus(asset.status).value,
                    owner_id=asset.owner_id,
                    description=asset.description,
                    tags=",".join(sorted({t.strip().lower() for t in asset.tags if t.strip()})),
                    created_at=now,
                    updated_at=now,
                    version=1,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_asset(self, asset_id: int) -> Optional[Asset]:
        """Fetch a single asset by ID, history included. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_assets.select().where(_assets.c.id == asset_id)).fetchone()
            if row is None:
                return None
            history = self._load_history(conn, EntityKind.asset, asset_id)
        return _checked(EntityKind.asset, _row_to_asset(row, history))

    def get_asset_by_hostname(self, hostname: str) -> Optional[Asset]:
        with self.engine.connect() as conn:
            row = conn.execute(_assets.select().where(_assets.c.hostname == hostname)).fetchone()
            if row is None:
                return None
            history = self._load_history(conn, EntityKind.asset, row.id)
        return _checked(EntityKind.asset, _row_to_asset(row, history))

    def list_assets(self, status: Optional[str] = None) -> list[Asset]:
        """Return assets ordered by hostname. History is not loaded for list views."""
        stmt = _assets.select().order_by(_assets.c.hostname)
        if status:
            stmt = stmt.where(_assets.c.status == status)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_asset(r, ()) for r in rows]

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def create_vulnerability(self, vuln: Vulnerability) -> int:
        """Insert a vulnerability and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the CVE ID is already recorded.
        """
        with self.engine.connect() as conn:
            vuln_id = self._insert_vulnerability(conn, vuln, _iso(now_utc()))
            conn.commit()
        return vuln_id

    def get_vulnerability(self, vuln_id: int) -> Optional[Vulnerability]:
        with self.engine.connect() as conn:
            row = conn.execute(_vulns.select().where(_vulns.c.id == vuln_id)).fetchone()
            if row is None:
                return None
            history = self._load_history(conn, EntityKind.vulnerability, vuln_id)
        return _checked(EntityKind.vulnerability, _row_to_vuln(row, history))

    def list_vulnerabilities(
        self, status: Optional[str] = None, severity: Optional[str] = None
    ) -> list[Vulnerability]:
        """Return vulnerabilities, newest first, optionally filtered."""
        stmt = _vulns.select().order_by(_vulns.c.created_at.desc(), _vulns.c.id.desc())
        if status:
            stmt = stmt.where(_vulns.c.status == status)
        if severity:
            stmt = stmt.where(_vulns.c.severity == severity)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_vuln(r, ()) for r in rows]

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    def create_finding(self, finding: Finding) -> int:
        """Link a vulnerability to an asset as a new OPEN finding and return its ID."""
        with self.engine.connect() as conn:
            finding_id = self._insert_finding(conn, finding, _iso(now_utc()))
            conn.commit()
        return finding_id

    def get_finding(self, finding_id: int) -> Optional[Finding]:
        with self.engine.connect() as conn:
            row = conn.execute(_findings.select().where(_findings.c.id == finding_id)).fetchone()
            if row is None:
                return None
            history = self._load_history(conn, EntityKind.finding, finding_id)
        return _checked(EntityKind.finding, _row_to_finding(row, history))

    def list_findings(
        self,
        vulnerability_id: Optional[int] = None,
        asset_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Finding], int]:
        """Return (page of findings, total matching) ordered by last_seen descending."""
        conditions = []
        if vulnerability_id is not None:
            conditions.append(_findings.c.vulnerability_id == vulnerability_id)
        if asset_id is not None:
            conditions.append(_findings.c.asset_id == asset_id)
        if status:
            conditions.append(_findings.c.status == status)
        stmt = _findings.select().where(*conditions)
        count_stmt = select(func.count()).select_from(_findings).where(*conditions)
        with self.engine.connect() as conn:
            total = conn.execute(count_stmt).scalar_one()
            rows = conn.execute(
                stmt.order_by(_findings.c.last_seen.desc(), _findings.c.id.desc()).limit(limit).offset(offset)
            ).fetchall()
        return [_row_to_finding(r, ()) for r in rows], total

    def get_expired_risk_acceptances(self, now: Optional[datetime] = None) -> list[Finding]:
        """Return RISK_ACCEPTED findings whose expires_at has passed, oldest expiry first.

        Uses Python date arithmetic (not SQLite date functions) for portability,
        the same tradeoff as the other aggregate queries: candidates are loaded
        and filtered in memory.
        """
        now = now or now_utc()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _findings.select().where(
                    (_findings.c.status == FindingStatus.RISK_ACCEPTED.value) & (_findings.c.expires_at.isnot(None))
                )
            ).fetchall()
        expired = [_row_to_finding(r, ()) for r in rows]
        expired = [f for f in expired if f.expires_at <= now]
        expired.sort(key=lambda f: f.expires_at)
        return expired

    # ------------------------------------------------------------------
    # Generic lifecycle access
    # ------------------------------------------------------------------

    def get_entity(self, kind: Union[str, EntityKind], entity_id: int):
        """Fetch any statusful entity by kind. Returns None if not found."""
        kind = coerce_kind(kind)
        if kind is EntityKind.asset:
            return self.get_asset(entity_id)
        if kind is EntityKind.vulnerability:
            return self.get_vulnerability(entity_id)
        return self.get_finding(entity_id)

    def get_status_history(self, kind: Union[str, EntityKind], entity_id: int) -> list[StatusChangeEvent]:
        """Return the entity's status history, oldest first."""
        with self.engine.connect() as conn:
            return list(self._load_history(conn, coerce_kind(kind), entity_id))

    def count_by_status(self, kind: Union[str, EntityKind]) -> dict[str, int]:
        """Return {status: count} for every status of kind, zeros included."""
        kind = coerce_kind(kind)
        table = _TABLES[kind]
        counts = {s.value: 0 for s in statuses_for(kind)}
        with self.engine.connect() as conn:
            rows = conn.execute(select(table.c.status, func.count()).group_by(table.c.status)).fetchall()
        for status, n in rows:
            counts[status] = n
        return counts

    def save_transition(self, kind: Union[str, EntityKind], updated, expected_version: int):
        """Persist an entity returned by core.lifecycle.apply_transition().

        Writes the status and lifecycle columns and appends the history events
        the store has not seen yet, atomically. Returns the entity with its
        version bumped.

        Raises StaleEntityError if the row's version is no longer
        expected_version (or the row is gone). Nothing is written in that case.
        """
        kind = coerce_kind(kind)
        table = _TABLES[kind]
        new_version = expected_version + 1
        with self.engine.connect() as conn:
            result = conn.execute(
                table.update()
                .where((table.c.id == updated.id) & (table.c.version == expected_version))
                .values(version=new_version, **_lifecycle_values(kind, updated))
            )
            if result.rowcount == 0:
                conn.rollback()
                raise StaleEntityError(kind.value, updated.id, expected_version)

            persisted = conn.execute(
                select(func.count())
                .select_from(_history)
                .where((_history.c.entity_kind == kind.value) & (_history.c.entity_id == updated.id))
            ).scalar_one()
            for seq, ev in enumerate(updated.status_history[persisted:], start=persisted):
                conn.execute(
                    _history.insert().values(
                        entity_kind=kind.value,
                        entity_id=updated.id,
                        seq=seq,
                        previous_status=ev.previous_status,
                        new_status=ev.new_status,
                        actor_id=ev.actor_id,
                        notes=ev.notes,
                        occurred_at=_iso(ev.occurred_at),
                    )
                )
            conn.commit()
        return replace(updated, version=new_version)

    # ------------------------------------------------------------------
    # Scan import
    # ------------------------------------------------------------------

    def import_scan(
        self,
        records: list[ScanRecord],
        skip_duplicates: bool = True,
        now: Optional[datetime] = None,
    ) -> ImportResult:
        """Reconcile parsed scan records against the store in one transaction.

        Dedup rules:
          asset          -- by hostname (new assets start ACTIVE)
          vulnerability  -- by cve_id, else by plugin_id (new ones start OPEN)
          finding        -- by (vulnerability_id, asset_id, port, protocol)

        An existing finding has last_seen bumped, or is counted as skipped
        when skip_duplicates is True. Import never changes a status; status
        moves only through lifecycle transitions.
        """
        stamp = _iso(now or now_utc())
        result = ImportResult()
        asset_ids: dict[str, int] = {}
        vuln_ids: dict[str, int] = {}

        with self.engine.connect() as conn:
            for rec in records:
                asset_id = asset_ids.get(rec.hostname)
                if asset_id is None:
                    asset_id = conn.execute(
                        select(_assets.c.id).where(_assets.c.hostname == rec.hostname)
                    ).scalar_one_or_none()
                    if asset_id is None:
                        asset_id = self._insert_asset_row(conn, rec.hostname, stamp)
                        result.assets_created += 1
                    asset_ids[rec.hostname] = asset_id

                key = rec.cve_id or f"plugin:{rec.plugin_id}"
                vuln_id = vuln_ids.get(key)
                if vuln_id is None:
                    if rec.cve_id:
                        where = _vulns.c.cve_id == rec.cve_id
                    else:
                        where = (_vulns.c.plugin_id == rec.plugin_id) & (_vulns.c.cve_id.is_(None))
                    vuln_id = conn.execute(select(_vulns.c.id).where(where).limit(1)).scalar_one_or_none()
                    if vuln_id is None:
                        vuln_id = self._insert_vulnerability(
                            conn,
                            Vulnerability(
                                title=rec.plugin_name,
                                severity=rec.severity,
                                description=rec.synopsis,
                                cvss_score=rec.cvss_score,
                                cve_id=rec.cve_id,
                                plugin_id=rec.plugin_id,
                            ),
                            stamp,
                        )
                        result.vulnerabilities_created += 1
                    vuln_ids[key] = vuln_id

                port_match = _findings.c.port.is_(None) if rec.port is None else _findings.c.port == rec.port
                proto_match = (
                    _findings.c.protocol.is_(None) if rec.protocol is None else _findings.c.protocol == rec.protocol
                )
                finding_id = conn.execute(
                    select(_findings.c.id).where(
                        (_findings.c.vulnerability_id == vuln_id)
                        & (_findings.c.asset_id == asset_id)
                        & port_match
                        & proto_match
                    )
                ).scalar_one_or_none()

                if finding_id is None:
                    self._insert_finding(
                        conn,
                        Finding(
                            vulnerability_id=vuln_id,
                            asset_id=asset_id,
                            plugin_id=rec.plugin_id,
                            plugin_name=rec.plugin_name,
                            port=rec.port,
                            protocol=rec.protocol,
                        ),
                        stamp,
                    )
                    result.findings_created += 1
                elif skip_duplicates:
                    result.skipped += 1
                else:
                    conn.execute(_findings.update().where(_findings.c.id == finding_id).values(last_seen=stamp))
                    result.findings_updated += 1
            conn.commit()

        logger.info(
            "Scan import: %d records, %d assets created, %d vulnerabilities created, "
            "%d findings created, %d updated, %d skipped",
            len(records),
            result.assets_created,
            result.vulnerabilities_created,
            result.findings_created,
            result.findings_updated,
            result.skipped,
        )
        return result

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal -- shared by single inserts and import_scan()
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_asset_row(conn, hostname: str, stamp: str) -> int:
        result = conn.execute(
            _assets.insert().values(
                hostname=hostname,
                status=AssetStatus.ACTIVE.value,
                tags="",
                created_at=stamp,
                updated_at=stamp,
                version=1,
            )
        )
        return result.inserted_primary_key[0]

    @staticmethod
    def _insert_vulnerability(conn, vuln: Vulnerability, stamp: str) -> int:
        result = conn.execute(
            _vulns.insert().values(
                title=vuln.title,
                description=vuln.description,
                severity=Severity(vuln.severity).value,
                cvss_score=vuln.cvss_score,
                cve_id=vuln.cve_id.upper() if vuln.cve_id else None,
                plugin_id=vuln.plugin_id,
                status=VulnerabilityStatus(vuln.status).value,
                assignee_id=vuln.assignee_id,
                created_at=stamp,
                updated_at=stamp,
                version=1,
            )
        )
        return result.inserted_primary_key[0]

    @staticmethod
    def _insert_finding(conn, finding: Finding, stamp: str) -> int:
        result = conn.execute(
            _findings.insert().values(
                vulnerability_id=finding.vulnerability_id,
                asset_id=finding.asset_id,
                plugin_id=finding.plugin_id,
                plugin_name=finding.plugin_name,
                port=finding.port,
                protocol=finding.protocol,
                status=FindingStatus(finding.status).value,
                first_seen=_iso(finding.first_seen) or stamp,
                last_seen=_iso(finding.last_seen) or stamp,
                updated_at=stamp,
                version=1,
            )
        )
        return result.inserted_primary_key[0]

    @staticmethod
    def _load_history(conn, kind: EntityKind, entity_id: int) -> tuple[StatusChangeEvent, ...]:
        rows = conn.execute(
            _history.select()
            .where((_history.c.entity_kind == kind.value) & (_history.c.entity_id == entity_id))
            .order_by(_history.c.seq)
        ).fetchall()
        return tuple(
            StatusChangeEvent(
                previous_status=r.previous_status,
                new_status=r.new_status,
                occurred_at=_dt(r.occurred_at),
                actor_id=r.actor_id,
                notes=r.notes,
            )
            for r in rows
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_asset(row, history: tuple) -> Asset:
    return Asset(
        id=row.id,
        hostname=row.hostname,
        ip_address=row.ip_address,
        system_type=row.system_type,
        environment=row.environment,
        criticality=row.criticality,
        status=AssetStatus(row.status),
        owner_id=row.owner_id,
        description=row.description,
        tags=tuple(t for t in (row.tags or "").split(",") if t),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        version=row.version,
        status_history=history,
    )


def _row_to_vuln(row, history: tuple) -> Vulnerability:
    return Vulnerability(
        id=row.id,
        title=row.title,
        description=row.description,
        severity=Severity(row.severity),
        cvss_score=row.cvss_score,
        cve_id=row.cve_id,
        plugin_id=row.plugin_id,
        status=VulnerabilityStatus(row.status),
        assignee_id=row.assignee_id,
        resolved_at=_dt(row.resolved_at),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        version=row.version,
        status_history=history,
    )


def _row_to_finding(row, history: tuple) -> Finding:
    return Finding(
        id=row.id,
        vulnerability_id=row.vulnerability_id,
        asset_id=row.asset_id,
        plugin_id=row.plugin_id,
        plugin_name=row.plugin_name,
        port=row.port,
        protocol=row.protocol,
        status=FindingStatus(row.status),
        first_seen=_dt(row.first_seen),
        last_seen=_dt(row.last_seen),
        fixed_at=_dt(row.fixed_at),
        fix_notes=row.fix_notes,
        verified_at=_dt(row.verified_at),
        risk_accepted_at=_dt(row.risk_accepted_at),
        acceptance_reason=row.acceptance_reason,
        expires_at=_dt(row.expires_at),
        updated_at=_dt(row.updated_at),
        version=row.version,
        status_history=history,
    )
