"""
tests/test_ingest.py -- Unit tests for cmdb/ingest.py.

parse_nessus_csv() and summarize() are pure functions (no I/O, no DB) so no
fixtures or mocking are needed -- call them directly with inline test data.

Coverage: valid rows, informational rows, missing host / plugin, multi-CVE
cells, port and score parsing, and the preview summary.
"""

from cmdb.ingest import parse_nessus_csv, summarize
from core.models import Severity

HEADER = "Plugin ID,CVE,CVSS v2.0 Base Score,Risk,Host,Protocol,Port,Name,Synopsis\n"


class TestParseNessusCsv:
    """Tests for the Nessus CSV export parser."""

    def test_valid_row(self):
        content = HEADER + "156032,CVE-2021-44228,10.0,Critical,web-01,TCP,8080,Log4Shell,RCE in log4j\n"
        records = parse_nessus_csv(content)
        assert len(records) == 1
        rec = records[0]
        assert rec.hostname == "web-01"
        assert rec.plugin_id == "156032"
        assert rec.plugin_name == "Log4Shell"
        assert rec.severity is Severity.CRITICAL
        assert rec.cve_id == "CVE-2021-44228"
        assert rec.cvss_score == 10.0
        assert rec.port == 8080
        assert rec.protocol == "tcp"
        assert rec.synopsis == "RCE in log4j"

    def test_informational_rows_skipped(self):
        content = HEADER + "19506,,,None,web-01,tcp,0,Nessus Scan Information,\n"
        assert parse_nessus_csv(content) == []

    def test_missing_host_or_plugin_skipped(self):
        content = (
            HEADER
            + "156032,CVE-2021-44228,10.0,Critical,,tcp,443,Log4Shell,\n"
            + ",CVE-2021-44228,10.0,Critical,web-01,tcp,443,Log4Shell,\n"
        )
        assert parse_nessus_csv(content) == []

    def test_multiple_cves_keep_one_record(self):
        content = HEADER + '10001,"CVE-2022-0001, cve-2022-0002",5.0,Medium,db-01,tcp,5432,Postgres,\n'
        records = parse_nessus_csv(content)
        assert len(records) == 1
        assert records[0].cve_id == "CVE-2022-0001"
        assert records[0].cve_ids == ["CVE-2022-0001", "CVE-2022-0002"]

    def test_row_without_cve_keyed_by_plugin(self):
        content = HEADER + "51192,,6.4,Medium,web-01,tcp,443,SSL Certificate Cannot Be Trusted,\n"
        rec = parse_nessus_csv(content)[0]
        assert rec.cve_id is None
        assert rec.plugin_id == "51192"

    def test_port_zero_and_blank_name(self):
        content = HEADER + "10002,,,Low,web-01,tcp,0,,\n"
        rec = parse_nessus_csv(content)[0]
        assert rec.port is None
        assert rec.plugin_name == "Nessus plugin 10002"
        assert rec.cvss_score is None

    def test_cvss_v3_preferred(self):
        content = (
            "Plugin ID,CVE,CVSS v2.0 Base Score,CVSS v3.0 Base Score,Risk,Host,Protocol,Port,Name\n"
            "10003,CVE-2023-1111,5.0,7.8,High,web-01,tcp,22,OpenSSH\n"
        )
        assert parse_nessus_csv(content)[0].cvss_score == 7.8

    def test_empty_input(self):
        assert parse_nessus_csv("") == []


class TestSummarize:
    def test_counts(self):
        content = (
            HEADER
            + "1,CVE-2021-0001,9.8,Critical,web-01,tcp,443,A,\n"
            + "1,CVE-2021-0001,9.8,Critical,web-02,tcp,443,A,\n"
            + "2,,4.0,Low,web-01,tcp,80,B,\n"
        )
        summary = summarize(parse_nessus_csv(content))
        assert summary["total_findings"] == 3
        assert summary["unique_hosts"] == 2
        assert summary["unique_vulnerabilities"] == 2
        assert summary["severity_breakdown"]["CRITICAL"] == 2
        assert summary["severity_breakdown"]["LOW"] == 1
        assert summary["severity_breakdown"]["INFO"] == 0
