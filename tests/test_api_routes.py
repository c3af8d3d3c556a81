"""
tests/test_api_routes.py -- Integration tests for the VulnTrack REST routes.

These tests exercise the full stack: FastAPI routing -> status_service retry
loop -> core lifecycle -> CMDBStore -> response model serialization, plus the
exception handlers that map lifecycle errors onto the error envelope.

Coverage:
  - Asset / vulnerability / finding create, list, detail, 404
  - Status changes through PUT|PATCH and the finding action routes
  - Error mapping: 409 invalid_transition, 422 missing_required_field,
    422 invalid_field, 409 stale_entity, 422 validation_error
  - Retry on a version conflict
  - /status/allowed, /history, /lifecycle tables and validator
  - Nessus import and preview

Fixtures used (from conftest.py):
  - api_client: TestClient over the real app with a module-scoped in-memory store
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from fastapi.testclient import TestClient

from core import findings as findings_core
from core.errors import StaleEntityError

_seq = count(1)


def _new_asset(client: TestClient, **extra) -> dict:
    body = {"hostname": f"host-{next(_seq)}", **extra}
    resp = client.post("/api/v1/assets", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _new_vuln(client: TestClient, **extra) -> dict:
    body = {"title": f"Vuln {next(_seq)}", "severity": "HIGH", **extra}
    resp = client.post("/api/v1/vulnerabilities", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _new_finding(client: TestClient) -> dict:
    asset = _new_asset(client)
    vuln = _new_vuln(client)
    resp = client.post(
        "/api/v1/vulnerabilities/findings",
        json={"vulnerability_id": vuln["id"], "asset_id": asset["id"], "port": 443, "protocol": "TCP"},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _finding_url(finding: dict, suffix: str = "") -> str:
    return f"/api/v1/vulnerabilities/findings/{finding['id']}{suffix}"


class TestAssetRoutes:
    def test_create_asset(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client, criticality="HIGH", tags=["dmz"])
        assert asset["status"] == "ACTIVE"
        assert asset["criticality"] == "HIGH"
        assert asset["tags"] == ["dmz"]
        assert asset["version"] == 1
        assert asset["status_history"] == []

    def test_duplicate_hostname_conflicts(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        resp = api_client.post("/api/v1/assets", json={"hostname": asset["hostname"]})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "asset_exists"

    def test_list_and_filter(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        api_client.patch(f"/api/v1/assets/{asset['id']}/status", json={"status": "INACTIVE"})
        resp = api_client.get("/api/v1/assets", params={"status": "INACTIVE"})
        assert resp.status_code == 200
        assert asset["id"] in [a["id"] for a in resp.json()]
        assert all(a["status"] == "INACTIVE" for a in resp.json())

    def test_get_missing_asset(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/assets/99999")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "asset_not_found"

    def test_decommission_then_reactivate_is_refused(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        url = f"/api/v1/assets/{asset['id']}/status"

        resp = api_client.put(url, json={"status": "DECOMMISSIONED", "actor_id": 1, "notes": "retired"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "DECOMMISSIONED"
        assert body["version"] == 2
        assert len(body["status_history"]) == 1

        resp = api_client.patch(url, json={"status": "ACTIVE"})
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "invalid_transition"
        assert "terminal" in error["message"]
        assert error["detail"] == "DECOMMISSIONED -> ACTIVE"

    def test_unknown_status_is_validation_error(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        resp = api_client.patch(f"/api/v1/assets/{asset['id']}/status", json={"status": "RETIRED"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_same_status_is_rejected(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        resp = api_client.patch(f"/api/v1/assets/{asset['id']}/status", json={"status": "ACTIVE"})
        assert resp.status_code == 409
        assert "no change" in resp.json()["error"]["message"]

    def test_allowed_and_history(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        api_client.patch(f"/api/v1/assets/{asset['id']}/status", json={"status": "UNDER_MAINTENANCE", "actor_id": 3})

        allowed = api_client.get(f"/api/v1/assets/{asset['id']}/status/allowed").json()
        assert allowed["current_status"] == "UNDER_MAINTENANCE"
        assert allowed["allowed"] == ["ACTIVE", "DECOMMISSIONED", "INACTIVE"]
        assert allowed["terminal"] is False

        history = api_client.get(f"/api/v1/assets/{asset['id']}/history").json()
        assert history["current_status"] == "UNDER_MAINTENANCE"
        assert [(e["previous_status"], e["new_status"], e["actor_id"]) for e in history["events"]] == [
            ("ACTIVE", "UNDER_MAINTENANCE", 3)
        ]


class TestVulnerabilityRoutes:
    def test_create_normalizes_cve(self, api_client: TestClient) -> None:
        vuln = _new_vuln(api_client, cve_id="cve-2024-3094")
        assert vuln["cve_id"] == "CVE-2024-3094"
        assert vuln["status"] == "OPEN"

    def test_invalid_cve_rejected(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/vulnerabilities", json={"title": "x", "cve_id": "not-a-cve"})
        assert resp.status_code == 422

    def test_resolve_and_reopen(self, api_client: TestClient) -> None:
        vuln = _new_vuln(api_client)
        url = f"/api/v1/vulnerabilities/{vuln['id']}/status"
        resolved = api_client.patch(url, json={"status": "RESOLVED"}).json()
        assert resolved["resolved_at"] is not None
        reopened = api_client.patch(url, json={"status": "OPEN", "notes": "regressed"}).json()
        assert reopened["status"] == "OPEN"
        assert reopened["resolved_at"] is None
        assert len(reopened["status_history"]) == 2

    def test_closed_is_terminal(self, api_client: TestClient) -> None:
        vuln = _new_vuln(api_client)
        url = f"/api/v1/vulnerabilities/{vuln['id']}/status"
        assert api_client.patch(url, json={"status": "CLOSED"}).status_code == 200
        assert api_client.patch(url, json={"status": "OPEN"}).status_code == 409
        allowed = api_client.get(f"/api/v1/vulnerabilities/{vuln['id']}/status/allowed").json()
        assert allowed["terminal"] is True
        assert allowed["allowed"] == []

    def test_list_by_severity(self, api_client: TestClient) -> None:
        vuln = _new_vuln(api_client, severity="LOW")
        resp = api_client.get("/api/v1/vulnerabilities", params={"severity": "LOW"})
        assert vuln["id"] in [v["id"] for v in resp.json()]
        assert all(v["severity"] == "LOW" for v in resp.json())


class TestFindingRoutes:
    def test_create_requires_existing_parents(self, api_client: TestClient) -> None:
        asset = _new_asset(api_client)
        resp = api_client.post(
            "/api/v1/vulnerabilities/findings", json={"vulnerability_id": 99999, "asset_id": asset["id"]}
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "vulnerability_not_found"

    def test_created_finding(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        assert finding["status"] == "OPEN"
        assert finding["protocol"] == "tcp"

    def test_mark_fixed_then_verified(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        fixed = api_client.post(
            _finding_url(finding, "/mark-fixed"), json={"fix_notes": "Upgraded nginx", "actor_id": 2}
        )
        assert fixed.status_code == 200
        assert fixed.json()["fixed_at"] is not None
        assert fixed.json()["fix_notes"] == "Upgraded nginx"

        verified = api_client.post(_finding_url(finding, "/mark-verified"), json={"notes": "rescan clean"})
        assert verified.status_code == 200
        body = verified.json()
        assert body["status"] == "VERIFIED"
        assert body["verified_at"] is not None
        assert [e["new_status"] for e in body["status_history"]] == ["FIXED", "VERIFIED"]

    def test_mark_fixed_without_notes(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        resp = api_client.post(_finding_url(finding, "/mark-fixed"), json={"fix_notes": ""})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "missing_required_field"
        assert error["detail"] == "fix_notes"
        assert api_client.get(_finding_url(finding)).json()["status"] == "OPEN"

    def test_verify_without_fix(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        resp = api_client.post(_finding_url(finding, "/mark-verified"), json={})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_transition"

    def test_accept_risk_with_past_expiry(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        resp = api_client.post(
            _finding_url(finding, "/accept-risk"), json={"acceptance_reason": "legacy", "expires_at": past}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_field"
        assert resp.json()["error"]["detail"] == "expires_at"

    def test_accept_risk_and_reopen(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        future = (datetime.now(timezone.utc) + timedelta(days=90)).isoformat()
        accepted = api_client.post(
            _finding_url(finding, "/accept-risk"),
            json={"acceptance_reason": "Compensating control", "expires_at": future, "actor_id": 4},
        ).json()
        assert accepted["status"] == "RISK_ACCEPTED"
        assert accepted["acceptance_reason"] == "Compensating control"

        reopened = api_client.post(_finding_url(finding, "/reopen"), json={"notes": "control removed"}).json()
        assert reopened["status"] == "OPEN"
        assert reopened["acceptance_reason"] is None
        assert reopened["expires_at"] is None
        assert len(reopened["status_history"]) == 2

    def test_mark_mitigated(self, api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        finding = _new_finding(api_client)
        calls = []
        real = findings_core.mark_mitigated

        def recording(current, **kwargs):
            calls.append(kwargs)
            return real(current, **kwargs)

        monkeypatch.setattr(findings_core, "mark_mitigated", recording)
        resp = api_client.post(_finding_url(finding, "/mark-mitigated"), json={"notes": "WAF rule", "actor_id": 6})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "MITIGATED"
        assert body["status_history"][-1]["notes"] == "WAF rule"
        assert body["status_history"][-1]["actor_id"] == 6
        assert len(calls) == 1
        assert calls[0]["actor_id"] == 6

    def test_updated_at_follows_transitions(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        assert finding["updated_at"] is not None
        fixed = api_client.post(_finding_url(finding, "/mark-fixed"), json={"fix_notes": "Upgraded nginx"}).json()
        assert fixed["updated_at"] == fixed["status_history"][-1]["occurred_at"]
        assert fixed["updated_at"] == fixed["fixed_at"]

    def test_generic_status_route(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        resp = api_client.patch(_finding_url(finding, "/status"), json={"status": "MITIGATED", "notes": "WAF"})
        assert resp.status_code == 200
        resp = api_client.patch(_finding_url(finding, "/status"), json={"status": "FIXED"})
        assert resp.status_code == 422
        assert resp.json()["error"]["detail"] == "fix_notes"

    def test_false_positive_is_terminal(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        assert api_client.post(_finding_url(finding, "/mark-false-positive"), json={}).status_code == 200
        assert api_client.post(_finding_url(finding, "/reopen"), json={}).status_code == 409

    def test_list_filters(self, api_client: TestClient) -> None:
        finding = _new_finding(api_client)
        resp = api_client.get(
            "/api/v1/vulnerabilities/findings", params={"asset_id": finding["asset_id"], "status": "OPEN"}
        )
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 1
        assert page["items"][0]["id"] == finding["id"]

    def test_missing_finding(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/vulnerabilities/findings/99999/mark-fixed", json={"fix_notes": "x"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "finding_not_found"


class TestStaleRetry:
    """Version conflicts are retried against a fresh snapshot, then surfaced."""

    def test_retries_after_conflict(self, api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        asset = _new_asset(api_client)
        cmdb = api_client.app.state.cmdb
        real_save = cmdb.save_transition
        calls = []

        def flaky_save(kind, updated, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                raise StaleEntityError(str(kind), updated.id, expected_version)
            return real_save(kind, updated, expected_version)

        monkeypatch.setattr(cmdb, "save_transition", flaky_save)
        resp = api_client.patch(f"/api/v1/assets/{asset['id']}/status", json={"status": "INACTIVE"})
        assert resp.status_code == 200
        assert len(calls) == 2
        assert len(resp.json()["status_history"]) == 1

    def test_gives_up_with_409(self, api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        asset = _new_asset(api_client)
        cmdb = api_client.app.state.cmdb

        def always_stale(kind, updated, expected_version):
            raise StaleEntityError(str(kind), updated.id, expected_version)

        monkeypatch.setattr(cmdb, "save_transition", always_stale)
        resp = api_client.patch(f"/api/v1/assets/{asset['id']}/status", json={"status": "INACTIVE"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "stale_entity"

    def test_action_route_retries_after_conflict(
        self, api_client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        finding = _new_finding(api_client)
        cmdb = api_client.app.state.cmdb
        real_save = cmdb.save_transition
        calls = []

        def flaky_save(kind, updated, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                raise StaleEntityError(str(kind), updated.id, expected_version)
            return real_save(kind, updated, expected_version)

        monkeypatch.setattr(cmdb, "save_transition", flaky_save)
        resp = api_client.post(_finding_url(finding, "/mark-false-positive"), json={"notes": "scanner noise"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "FALSE_POSITIVE"
        assert len(calls) == 2


class TestLifecycleRoutes:
    def test_transition_table(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/lifecycle/finding/transitions")
        assert resp.status_code == 200
        body = resp.json()
        assert body["initial_status"] == "OPEN"
        assert body["terminal_statuses"] == ["FALSE_POSITIVE"]
        assert body["transitions"]["VERIFIED"] == ["FALSE_POSITIVE", "OPEN"]

    def test_unknown_kind(self, api_client: TestClient) -> None:
        assert api_client.get("/api/v1/lifecycle/server/transitions").status_code == 422

    def test_validate(self, api_client: TestClient) -> None:
        ok = api_client.post(
            "/api/v1/lifecycle/asset/validate", json={"current_status": "active", "requested_status": "INACTIVE"}
        )
        assert ok.json() == {"allowed": True, "reason": None}

        denied = api_client.post(
            "/api/v1/lifecycle/asset/validate",
            json={"current_status": "DECOMMISSIONED", "requested_status": "ACTIVE"},
        ).json()
        assert denied["allowed"] is False
        assert "terminal" in denied["reason"]

    def test_validate_unknown_status(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/lifecycle/vulnerability/validate", json={"current_status": "OPEN", "requested_status": "FIXED"}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_status"

    def test_counts(self, api_client: TestClient) -> None:
        _new_asset(api_client)
        body = api_client.get("/api/v1/lifecycle/asset/counts").json()
        assert set(body["counts"]) == {"ACTIVE", "INACTIVE", "UNDER_MAINTENANCE", "DECOMMISSIONED"}
        assert body["total"] == sum(body["counts"].values())
        assert body["counts"]["ACTIVE"] >= 1


NESSUS_CSV = (
    "Plugin ID,CVE,CVSS v2.0 Base Score,Risk,Host,Protocol,Port,Name,Synopsis\n"
    "156032,CVE-2021-44228,10.0,Critical,scan-web-01,tcp,8080,Log4Shell,RCE\n"
    "156032,CVE-2021-44228,10.0,Critical,scan-web-02,tcp,8080,Log4Shell,RCE\n"
    "51192,,6.4,Medium,scan-web-01,tcp,443,SSL Certificate Cannot Be Trusted,\n"
    "19506,,,None,scan-web-01,tcp,0,Nessus Scan Information,\n"
)


class TestNessusImport:
    def test_preview_writes_nothing(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/vulnerabilities/import/nessus/preview",
            files={"file": ("scan.csv", NESSUS_CSV, "text/csv")},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_findings"] == 3
        assert body["unique_hosts"] == 2
        assert body["severity_breakdown"]["CRITICAL"] == 2
        hostnames = {a["hostname"] for a in api_client.get("/api/v1/assets").json()}
        assert "scan-web-01" not in hostnames

    def test_import_and_reimport(self, api_client: TestClient) -> None:
        files = {"file": ("scan.csv", NESSUS_CSV, "text/csv")}
        first = api_client.post("/api/v1/vulnerabilities/import/nessus", files=files)
        assert first.status_code == 200
        body = first.json()
        assert body["records"] == 3
        assert body["assets_created"] == 2
        assert body["vulnerabilities_created"] == 2
        assert body["findings_created"] == 3

        second = api_client.post(
            "/api/v1/vulnerabilities/import/nessus", files={"file": ("scan.csv", NESSUS_CSV, "text/csv")}
        ).json()
        assert second["findings_created"] == 0
        assert second["skipped"] == 3

    def test_wrong_extension(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/vulnerabilities/import/nessus", files={"file": ("scan.nessus", "<xml/>", "text/xml")}
        )
        assert resp.status_code == 415
        assert resp.json()["error"]["code"] == "unsupported_format"
