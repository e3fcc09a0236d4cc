"""提案ガバナンス（二者承認・有効期限・監査証跡）のテスト"""

import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from app.core.exceptions import GovernanceViolationError, ResourceNotFoundError
from app.services.governance import AuditAction, ExpirySweeper, SuggestionStatus
from app.services.rules import IssueKind, Rule, ValidationIssue, ValidationResult
from conftest import HIGH_AMOUNT_MOBILE_RULE

APPROVAL_NOTES = "Matches the chargeback pattern seen last quarter"


def _actions(governance, suggestion_id):
    events = governance.audit.get_events(resource_id=suggestion_id)["events"]
    return [(e["action"], e["actor"], e["success"]) for e in reversed(events)]


class TestCreate:
    """提案作成のテスト"""

    def test_pending_with_expiry(self, make_suggestion):
        now = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
        suggestion = make_suggestion(now=now)
        assert suggestion.status == SuggestionStatus.PENDING
        assert suggestion.id.startswith("sug_")
        assert suggestion.created_at == "2025-03-01T09:00:00.000000+00:00"
        assert suggestion.expires_at == "2025-03-08T09:00:00.000000+00:00"

    def test_persisted_and_audited(self, governance, make_suggestion):
        suggestion = make_suggestion()
        stored = governance.get(suggestion.id)
        assert stored.rule == suggestion.rule
        assert stored.rule_fingerprint == suggestion.rule_fingerprint
        assert stored.impact_status == "computed"
        assert _actions(governance, suggestion.id) == [("suggest_rule", "alice", True)]

    def test_unavailable_impact(self, governance):
        suggestion = governance.create(
            instruction="Review large mobile transactions",
            instruction_hash="h",
            rule=Rule.from_dict(HIGH_AMOUNT_MOBILE_RULE),
            validation=ValidationResult(),
            violations=[],
            author_id="alice",
            impact_error="Record store unavailable",
        )
        stored = governance.get(suggestion.id)
        assert stored.impact_status == "unavailable"
        assert stored.impact_report is None
        assert stored.impact_error == "Record store unavailable"

    def test_get_unknown(self, governance):
        with pytest.raises(ResourceNotFoundError):
            governance.get("sug_missing")

    def test_list_filters(self, governance, make_suggestion):
        make_suggestion("alice")
        make_suggestion("alice")
        make_suggestion("bob")
        assert governance.list_suggestions()["total"] == 3
        result = governance.list_suggestions(created_by="alice", limit=1)
        assert result["total"] == 2
        assert len(result["suggestions"]) == 1
        assert governance.list_suggestions(status=SuggestionStatus.APPROVED)["total"] == 0


class TestApprove:
    """承認のテスト"""

    def test_approve_promotes_rule(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")

        approved = governance.approve(suggestion.id, "bob", APPROVAL_NOTES, True, "~4% more reviews")

        assert approved.status == SuggestionStatus.APPROVED
        assert approved.approved_by == "bob"
        assert approved.impact_acknowledged is True
        assert approved.approved_at is not None

        active = governance.registry.list_active()
        assert len(active) == 1
        assert active[0].suggestion_id == suggestion.id
        assert active[0].created_by == "alice"
        assert active[0].approved_by == "bob"

        versions = governance.registry.list_versions(active[0].id)
        assert len(versions) == 1
        assert versions[0]["change_type"] == "created"
        assert versions[0]["impact_snapshot"] == {"match_count": 4, "sample_size": 20}

        assert _actions(governance, suggestion.id)[-1] == ("apply_rule", "bob", True)

    def test_self_approval_forbidden(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")

        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.approve(suggestion.id, "alice", APPROVAL_NOTES, True)

        error = exc_info.value
        assert error.http_status_code == 403
        assert error.detail["reason"] == "two_person_rule"
        assert governance.get(suggestion.id).status == SuggestionStatus.PENDING
        assert governance.registry.list_active() == []
        assert _actions(governance, suggestion.id)[-1] == (
            AuditAction.APPLY_RULE_REJECTED_TWO_PERSON,
            "alice",
            False,
        )

    @pytest.mark.parametrize(
        "approver, notes, ack, reason",
        [
            (None, APPROVAL_NOTES, True, "missing_reviewer"),
            ("", APPROVAL_NOTES, True, "missing_reviewer"),
            ("bob", "ok", True, "notes_too_short"),
            ("bob", "          ", True, "notes_too_short"),
            ("bob", None, True, "notes_too_short"),
            ("bob", APPROVAL_NOTES, False, "impact_not_acknowledged"),
        ],
    )
    def test_preconditions(self, governance, make_suggestion, approver, notes, ack, reason):
        suggestion = make_suggestion("alice")

        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.approve(suggestion.id, approver, notes, ack)

        assert exc_info.value.detail["reason"] == reason
        assert exc_info.value.http_status_code == 409
        assert governance.get(suggestion.id).status == SuggestionStatus.PENDING
        action, _, success = _actions(governance, suggestion.id)[-1]
        assert (action, success) == ("apply_rule", False)

    def test_invalid_rule_cannot_be_approved(self, governance):
        suggestion = governance.create(
            instruction="Review large mobile transactions",
            instruction_hash="h",
            rule=Rule.from_dict(HIGH_AMOUNT_MOBILE_RULE),
            validation=ValidationResult(
                errors=[ValidationIssue("conditions[0]", "bad", IssueKind.CATALOG)]
            ),
            violations=[],
            author_id="alice",
        )
        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.approve(suggestion.id, "bob", APPROVAL_NOTES, True)
        assert exc_info.value.detail["reason"] == "invalid_rule"

    def test_terminal_state(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")
        governance.approve(suggestion.id, "bob", APPROVAL_NOTES, True)

        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.approve(suggestion.id, "carol", APPROVAL_NOTES, True)

        assert exc_info.value.detail["reason"] == "terminal_state"
        assert exc_info.value.detail["current_status"] == "approved"
        assert len(governance.registry.list_active()) == 1

    def test_past_expiry_rejected(self, governance, make_suggestion):
        created = datetime.now(UTC) - timedelta(days=8)
        suggestion = make_suggestion("alice", now=created)

        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.approve(suggestion.id, "bob", APPROVAL_NOTES, True)

        assert exc_info.value.detail["reason"] == "expired"
        # 期限切れの反映はスイープのみが行う
        assert governance.get(suggestion.id).status == SuggestionStatus.PENDING

    def test_unknown_suggestion(self, governance):
        with pytest.raises(ResourceNotFoundError):
            governance.approve("sug_missing", "bob", APPROVAL_NOTES, True)

    def test_concurrent_approvals_single_winner(self, governance, make_suggestion):
        """同時承認はちょうど1件だけ成功する"""
        suggestion = make_suggestion("alice")
        barrier = threading.Barrier(2)
        outcomes: dict[str, object] = {}

        def _approve(approver):
            barrier.wait()
            try:
                outcomes[approver] = governance.approve(
                    suggestion.id, approver, APPROVAL_NOTES, True
                )
            except GovernanceViolationError as e:
                outcomes[approver] = e

        threads = [threading.Thread(target=_approve, args=(a,)) for a in ("bob", "carol")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        errors = [o for o in outcomes.values() if isinstance(o, GovernanceViolationError)]
        assert len(outcomes) == 2
        assert len(errors) == 1
        assert errors[0].detail["reason"] in ("concurrent_transition", "terminal_state")
        assert len(governance.registry.list_active()) == 1
        assert governance.get(suggestion.id).status == SuggestionStatus.APPROVED

    def test_failed_promotion_rolls_back(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")

        with patch.object(governance.registry, "promote", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                governance.approve(suggestion.id, "bob", APPROVAL_NOTES, True)

        assert governance.get(suggestion.id).status == SuggestionStatus.PENDING
        assert governance.registry.list_active() == []


class TestReject:
    """却下のテスト"""

    def test_reject(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")
        rejected = governance.reject(suggestion.id, "bob", "Too broad for current traffic")

        assert rejected.status == SuggestionStatus.REJECTED
        assert rejected.rejected_by == "bob"
        assert governance.registry.list_active() == []
        assert _actions(governance, suggestion.id)[-1] == ("reject_rule", "bob", True)

    def test_author_may_withdraw(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")
        assert governance.reject(suggestion.id, "alice", "Withdrawn by the author").status == (
            SuggestionStatus.REJECTED
        )

    def test_notes_required(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")
        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.reject(suggestion.id, "bob", "no")
        assert exc_info.value.detail["reason"] == "notes_too_short"
        assert _actions(governance, suggestion.id)[-1] == ("reject_rule", "bob", False)

    def test_rejected_is_terminal(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")
        governance.reject(suggestion.id, "bob", "Too broad for current traffic")

        with pytest.raises(GovernanceViolationError) as exc_info:
            governance.approve(suggestion.id, "carol", APPROVAL_NOTES, True)
        assert exc_info.value.detail["reason"] == "terminal_state"

        with pytest.raises(GovernanceViolationError):
            governance.reject(suggestion.id, "carol", "Rejecting a second time")


class TestExpiry:
    """期限切れスイープのテスト"""

    def test_expire_stale(self, governance, make_suggestion):
        stale = make_suggestion("alice", now=datetime.now(UTC) - timedelta(days=8))
        fresh = make_suggestion("alice")

        expired = governance.expire_stale()

        assert expired == [stale.id]
        assert governance.get(stale.id).status == SuggestionStatus.EXPIRED
        assert governance.get(stale.id).expired_at is not None
        assert governance.get(fresh.id).status == SuggestionStatus.PENDING
        assert _actions(governance, stale.id)[-1] == ("expire_rule", "system", True)

    def test_idempotent(self, governance, make_suggestion):
        make_suggestion("alice", now=datetime.now(UTC) - timedelta(days=8))
        assert len(governance.expire_stale()) == 1
        assert governance.expire_stale() == []

    def test_expiry_at_exact_boundary(self, governance, make_suggestion):
        created = datetime(2025, 1, 1, tzinfo=UTC)
        suggestion = make_suggestion("alice", now=created)
        assert governance.expire_stale(now=created + timedelta(days=7, seconds=-1)) == []
        assert governance.expire_stale(now=created + timedelta(days=7)) == [suggestion.id]

    def test_naive_now_treated_as_utc(self, governance, make_suggestion):
        created = datetime(2025, 1, 1, tzinfo=UTC)
        suggestion = make_suggestion("alice", now=created)
        assert governance.expire_stale(now=datetime(2025, 1, 9)) == [suggestion.id]

    def test_approved_not_expired(self, governance, make_suggestion):
        suggestion = make_suggestion("alice")
        governance.approve(suggestion.id, "bob", APPROVAL_NOTES, True)
        assert governance.expire_stale(now=datetime.now(UTC) + timedelta(days=30)) == []

    def test_sweeper_run_once(self, governance, make_suggestion):
        make_suggestion("alice", now=datetime.now(UTC) - timedelta(days=8))
        sweeper = ExpirySweeper(governance, interval_seconds=3600)
        assert len(sweeper.run_once()) == 1

    def test_sweeper_start_stop(self, governance):
        sweeper = ExpirySweeper(governance, interval_seconds=3600)
        sweeper.start()
        sweeper.stop(timeout=2)
        assert sweeper._thread is None
