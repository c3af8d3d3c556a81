"""
tests/test_finding_lifecycle.py -- Unit tests for core/findings.py.

Covers the lifecycle fields a finding carries beyond its status:
  - FIXED requires fix_notes and stamps fixed_at with the event's timestamp
  - VERIFIED is reachable only from FIXED and requires fixed_at
  - RISK_ACCEPTED requires acceptance_reason; expires_at must be in the future,
    checked before the generic transition table
  - reopening clears every lifecycle field but keeps the history
  - rejected requests leave the input finding untouched
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from core.errors import InvalidFieldError, InvalidTransitionError, MissingRequiredFieldError
from core.findings import (
    accept_risk,
    mark_false_positive,
    mark_fixed,
    mark_mitigated,
    mark_verified,
    reopen,
    transition_finding,
)
from core.history import check_history
from core.lifecycle import TransitionRequest, apply_transition
from core.models import Finding, FindingStatus


@pytest.fixture
def finding():
    return Finding(id=10, vulnerability_id=1, asset_id=2, port=443, protocol="tcp")


class TestMarkFixed:
    def test_sets_fixed_fields(self, finding, clock):
        fixed = mark_fixed(finding, "  Upgraded openssl to 3.0.13  ", actor_id=5, clock=clock)
        assert fixed.status is FindingStatus.FIXED
        assert fixed.fixed_at == clock.now
        assert fixed.fix_notes == "Upgraded openssl to 3.0.13"
        assert fixed.fixed_at == fixed.status_history[-1].occurred_at
        assert fixed.status_history[-1].actor_id == 5

    def test_updated_at_stamped_on_each_transition(self, finding, clock):
        assert finding.updated_at is None
        mitigated = mark_mitigated(finding, clock=clock)
        clock.advance(hours=2)
        fixed = mark_fixed(mitigated, "Patched", clock=clock)
        assert mitigated.updated_at == mitigated.status_history[-1].occurred_at
        assert fixed.updated_at == clock.now
        assert fixed.updated_at > mitigated.updated_at

    def test_empty_fix_notes_rejected(self, finding, clock):
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            mark_fixed(finding, "", clock=clock)
        assert exc_info.value.field == "fix_notes"
        assert exc_info.value.error_kind == "MissingRequiredField"
        assert finding.status is FindingStatus.OPEN
        assert finding.status_history == ()

    def test_whitespace_fix_notes_rejected(self, finding, clock):
        with pytest.raises(MissingRequiredFieldError):
            mark_fixed(finding, "   ", clock=clock)

    def test_fix_from_mitigated(self, finding, clock):
        mitigated = mark_mitigated(finding, notes="WAF rule deployed", clock=clock)
        clock.advance(days=2)
        fixed = mark_fixed(mitigated, "Patched", clock=clock)
        assert [e.new_status for e in fixed.status_history] == ["MITIGATED", "FIXED"]


class TestMarkVerified:
    def test_verify_without_fix_rejected_by_table(self, finding, clock):
        with pytest.raises(InvalidTransitionError) as exc_info:
            mark_verified(finding, clock=clock)
        assert exc_info.value.current == "OPEN"
        assert exc_info.value.requested == "VERIFIED"

    def test_verify_after_fix(self, finding, clock):
        fixed = mark_fixed(finding, "Patched", clock=clock)
        clock.advance(days=1)
        verified = mark_verified(fixed, actor_id=9, notes="rescan clean", clock=clock)
        assert verified.status is FindingStatus.VERIFIED
        assert verified.verified_at == clock.now
        assert verified.fixed_at == fixed.fixed_at

    def test_fixed_status_without_fixed_at_rejected(self, finding, clock):
        """A FIXED finding missing fixed_at (e.g. legacy data) cannot be verified."""
        legacy = replace(finding, status=FindingStatus.FIXED)
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            mark_verified(legacy, clock=clock)
        assert exc_info.value.field == "fixed_at"


class TestAcceptRisk:
    def test_sets_acceptance_fields(self, finding, clock):
        expires = clock.now + timedelta(days=90)
        accepted = accept_risk(finding, "Compensating control in place", expires_at=expires, clock=clock)
        assert accepted.status is FindingStatus.RISK_ACCEPTED
        assert accepted.risk_accepted_at == clock.now
        assert accepted.acceptance_reason == "Compensating control in place"
        assert accepted.expires_at == expires
        assert accepted.status_history[-1].notes == "Compensating control in place"

    def test_no_expiry_is_allowed(self, finding, clock):
        accepted = accept_risk(finding, "Vendor EOL, isolated network", clock=clock)
        assert accepted.expires_at is None

    def test_missing_reason_rejected(self, finding, clock):
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            accept_risk(finding, "", clock=clock)
        assert exc_info.value.field == "acceptance_reason"

    def test_expiry_before_acceptance_rejected(self, finding, clock):
        with pytest.raises(InvalidFieldError) as exc_info:
            accept_risk(finding, "reason", expires_at=clock.now - timedelta(seconds=1), clock=clock)
        assert exc_info.value.field == "expires_at"
        assert exc_info.value.error_kind == "InvalidField"

    def test_expiry_equal_to_acceptance_rejected(self, finding, clock):
        with pytest.raises(InvalidFieldError):
            accept_risk(finding, "reason", expires_at=clock.now, clock=clock)

    def test_expiry_checked_before_transition_legality(self, clock):
        """A bad expiry is reported even when the transition itself is illegal."""
        closed = Finding(id=1, vulnerability_id=1, asset_id=1, status=FindingStatus.FALSE_POSITIVE)
        with pytest.raises(InvalidFieldError):
            accept_risk(closed, "reason", expires_at=clock.now - timedelta(seconds=1), clock=clock)

    def test_naive_expiry_treated_as_utc(self, finding, clock):
        naive = (clock.now + timedelta(days=1)).replace(tzinfo=None)
        accepted = accept_risk(finding, "reason", expires_at=naive, clock=clock)
        assert accepted.expires_at.tzinfo is not None
        assert accepted.expires_at == clock.now + timedelta(days=1)


class TestReopen:
    def test_reopen_clears_lifecycle_fields(self, finding, clock):
        fixed = mark_fixed(finding, "Patched", clock=clock)
        clock.advance(days=1)
        verified = mark_verified(fixed, clock=clock)
        clock.advance(days=30)
        reopened = reopen(verified, notes="regressed in rescan", clock=clock)
        assert reopened.status is FindingStatus.OPEN
        assert reopened.fixed_at is None
        assert reopened.fix_notes is None
        assert reopened.verified_at is None
        assert [e.new_status for e in reopened.status_history] == ["FIXED", "VERIFIED", "OPEN"]
        assert reopened.status_history[0].notes == "Patched"

    def test_reopen_after_risk_acceptance(self, finding, clock):
        accepted = accept_risk(finding, "reason", expires_at=clock.now + timedelta(days=1), clock=clock)
        clock.advance(days=2)
        reopened = reopen(accepted, clock=clock)
        assert reopened.risk_accepted_at is None
        assert reopened.acceptance_reason is None
        assert reopened.expires_at is None


class TestFalsePositive:
    def test_false_positive_is_terminal(self, finding, clock):
        fp = mark_false_positive(finding, notes="scanner misfire", clock=clock)
        assert fp.status is FindingStatus.FALSE_POSITIVE
        with pytest.raises(InvalidTransitionError) as exc_info:
            reopen(fp, clock=clock)
        assert "terminal" in exc_info.value.reason


class TestTransitionFinding:
    def test_same_status_is_rejected(self, finding, clock):
        with pytest.raises(InvalidTransitionError, match="no change"):
            transition_finding(finding, "OPEN", clock=clock)

    def test_fields_for_other_targets_are_ignored(self, finding, clock):
        mitigated = transition_finding(finding, "MITIGATED", fix_notes="not used", clock=clock)
        assert mitigated.fix_notes is None
        assert mitigated.fixed_at is None

    def test_apply_transition_dispatches_findings(self, finding, clock):
        fixed = apply_transition(
            "finding", finding, TransitionRequest("FIXED", actor_id=1, fix_notes="Patched"), clock=clock
        )
        assert fixed.status is FindingStatus.FIXED
        assert fixed.fix_notes == "Patched"

    def test_long_lifecycle_history_is_sound(self, finding, clock):
        f = mark_mitigated(finding, clock=clock)
        for step in (
            lambda x: mark_fixed(x, "Patched", clock=clock),
            lambda x: reopen(x, clock=clock),
            lambda x: accept_risk(x, "reason", expires_at=clock.now + timedelta(days=60), clock=clock),
            lambda x: reopen(x, clock=clock),
            lambda x: mark_fixed(x, "Patched again", clock=clock),
            lambda x: mark_verified(x, clock=clock),
        ):
            clock.advance(hours=6)
            f = step(f)
        assert f.status is FindingStatus.VERIFIED
        assert len(f.status_history) == 7
        assert check_history("finding", f) == []
