import logging
import sqlite3
from decimal import Decimal

import pytest

from approval import ApprovalWorkflow
from audit import validate_history, replay, get_statistics
from capital_calls import create_capital_call
from config import ApprovalStatus, EntityType
from database import SqliteStore
from distributions import create_distribution
from errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError

from conftest import FailingNotifier, approve_without_cfo, run_concurrently

CC = EntityType.CAPITAL_CALL


def _status(store, call_id):
    return store.require(CC, call_id).approval_status


def test_full_cfo_path(store, workflow, admin, root, draft_call):
    r1 = workflow.submit_for_review(CC, draft_call.id, admin)
    assert r1.transaction.approval_status == ApprovalStatus.PENDING_REVIEW
    assert r1.audit_entry.action == "submitted"

    r2 = workflow.approve(CC, draft_call.id, admin, require_cfo=True)
    assert r2.transaction.approval_status == ApprovalStatus.PENDING_CFO
    assert r2.audit_entry.action == "cfo_submitted"

    r3 = workflow.cfo_approve(CC, draft_call.id, root)
    assert r3.transaction.approval_status == ApprovalStatus.APPROVED
    assert r3.audit_entry.action == "cfo_approved"
    assert r3.audit_entry.from_status == ApprovalStatus.PENDING_CFO
    assert r3.audit_entry.user_id == root.user_id

    history = store.list_history(CC, draft_call.id)
    assert [e.action for e in history] == ["created", "submitted", "cfo_submitted", "cfo_approved"]
    assert validate_history(history, ApprovalStatus.APPROVED) == []


def test_approve_without_cfo(workflow, admin, draft_call):
    call = approve_without_cfo(workflow, CC, draft_call.id, admin)
    assert call.approval_status == ApprovalStatus.APPROVED
    assert workflow.history(CC, draft_call.id)[0].action == "approved"


@pytest.mark.parametrize("path", [
    ["submit"],
    ["submit", "approve_cfo"],
    ["submit", "approve"],
    ["submit", "reject"],
])
def test_submit_outside_draft_is_a_conflict(store, workflow, root, admin, draft_call, path):
    steps = {
        "submit": lambda: workflow.submit_for_review(CC, draft_call.id, admin),
        "approve_cfo": lambda: workflow.approve(CC, draft_call.id, admin, require_cfo=True),
        "approve": lambda: workflow.approve(CC, draft_call.id, admin, require_cfo=False),
        "reject": lambda: workflow.reject(CC, draft_call.id, admin, "numbers are off"),
    }
    for step in path:
        steps[step]()
    before = _status(store, draft_call.id)
    history_before = len(store.list_history(CC, draft_call.id))

    with pytest.raises(StateConflictError):
        workflow.submit_for_review(CC, draft_call.id, root)

    assert _status(store, draft_call.id) == before
    assert len(store.list_history(CC, draft_call.id)) == history_before


@pytest.mark.parametrize("operation", ["cfo_approve", "reject", "request_changes"])
def test_only_root_acts_at_pending_cfo(store, workflow, admin, root, draft_call, operation):
    workflow.submit_for_review(CC, draft_call.id, admin)
    workflow.approve(CC, draft_call.id, admin, require_cfo=True)

    calls = {
        "cfo_approve": lambda actor: workflow.cfo_approve(CC, draft_call.id, actor),
        "reject": lambda actor: workflow.reject(CC, draft_call.id, actor, "bad wire details"),
        "request_changes": lambda actor: workflow.request_changes(CC, draft_call.id, actor, "fix date"),
    }
    with pytest.raises(AuthorizationError):
        calls[operation](admin)
    assert _status(store, draft_call.id) == ApprovalStatus.PENDING_CFO

    result = calls[operation](root)
    expected = {"cfo_approve": ApprovalStatus.APPROVED,
                "reject": ApprovalStatus.REJECTED,
                "request_changes": ApprovalStatus.DRAFT}[operation]
    assert result.transaction.approval_status == expected


def test_reject_requires_reason(store, workflow, admin, draft_call):
    workflow.submit_for_review(CC, draft_call.id, admin)
    with pytest.raises(ValidationError) as exc:
        workflow.reject(CC, draft_call.id, admin, "   ")
    assert exc.value.field == "reason"
    assert _status(store, draft_call.id) == ApprovalStatus.PENDING_REVIEW

    result = workflow.reject(CC, draft_call.id, admin, "Wrong amount")
    assert result.audit_entry.notes == "Wrong amount"
    assert result.audit_entry.metadata == {"reason": "Wrong amount"}


def test_request_changes_returns_to_draft_and_can_resubmit(store, workflow, admin, draft_call):
    workflow.submit_for_review(CC, draft_call.id, admin)
    with pytest.raises(ValidationError):
        workflow.request_changes(CC, draft_call.id, admin, "")
    workflow.request_changes(CC, draft_call.id, admin, "Update the due date")
    assert _status(store, draft_call.id) == ApprovalStatus.DRAFT

    workflow.submit_for_review(CC, draft_call.id, admin)
    history = store.list_history(CC, draft_call.id)
    assert replay(history) == [ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW,
                               ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW]
    assert validate_history(history, ApprovalStatus.PENDING_REVIEW) == []


def test_administrator_limited_to_own_transactions(store, workflow, other_admin, root, draft_call):
    with pytest.raises(AuthorizationError):
        workflow.submit_for_review(CC, draft_call.id, other_admin)
    assert _status(store, draft_call.id) == ApprovalStatus.DRAFT
    workflow.submit_for_review(CC, draft_call.id, root)


def test_support_and_investor_cannot_transition(workflow, support, investor, draft_call):
    for actor in (support, investor):
        with pytest.raises(AuthorizationError):
            workflow.submit_for_review(CC, draft_call.id, actor)


def test_stale_expectation_is_a_conflict(store, fund, admin, draft_call, notifier):
    # two independent connections to the same database
    first = ApprovalWorkflow(store, notifier=notifier)
    other_store = SqliteStore(store.db_path)
    second = ApprovalWorkflow(other_store, notifier=notifier)
    try:
        first.submit_for_review(CC, draft_call.id, admin)
        seen = other_store.require(CC, draft_call.id).approval_status

        first.approve(CC, draft_call.id, admin, require_cfo=False)
        with pytest.raises(StateConflictError) as exc:
            second.approve(CC, draft_call.id, admin, require_cfo=False, expected_status=seen)
        assert exc.value.actual == ApprovalStatus.APPROVED

        approvals = [e for e in store.list_history(CC, draft_call.id) if e.action == "approved"]
        assert len(approvals) == 1
    finally:
        other_store.close()


def test_concurrent_approvals_commit_once(store, admin, draft_call, notifier):
    ApprovalWorkflow(store).submit_for_review(CC, draft_call.id, admin)

    outcomes = run_concurrently(
        store.db_path, 4,
        lambda s: ApprovalWorkflow(s, notifier=notifier).approve(CC, draft_call.id, admin,
                                                                 require_cfo=False))

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(outcomes) - len(errors) == 1
    assert all(isinstance(e, StateConflictError) for e in errors)
    assert _status(store, draft_call.id) == ApprovalStatus.APPROVED
    history = store.list_history(CC, draft_call.id)
    assert [e.action for e in history].count("approved") == 1
    assert validate_history(history, ApprovalStatus.APPROVED) == []
    assert [e.action for e in notifier.events] == ["approved"]


class BrokenHistoryStore(SqliteStore):
    def append_history(self, entry):
        if entry.action != "created":
            raise sqlite3.OperationalError("disk I/O error")
        return super().append_history(entry)


def test_failed_history_write_rolls_back_status(store, admin, draft_call):
    broken = BrokenHistoryStore(store.db_path)
    try:
        with pytest.raises(sqlite3.OperationalError):
            ApprovalWorkflow(broken).submit_for_review(CC, draft_call.id, admin)
    finally:
        broken.close()
    assert _status(store, draft_call.id) == ApprovalStatus.DRAFT
    assert [e.action for e in store.list_history(CC, draft_call.id)] == ["created"]


def test_notification_failure_does_not_fail_transition(store, admin, draft_call, caplog):
    wf = ApprovalWorkflow(store, notifier=FailingNotifier())
    with caplog.at_level(logging.WARNING, logger="approval"):
        result = wf.submit_for_review(CC, draft_call.id, admin)
    assert result.transaction.approval_status == ApprovalStatus.PENDING_REVIEW
    assert any("Notification" in r.getMessage() for r in caplog.records)


def test_notification_audience(workflow, notifier, admin, draft_call):
    workflow.submit_for_review(CC, draft_call.id, admin)
    workflow.approve(CC, draft_call.id, admin, require_cfo=False)

    submitted, approved = notifier.events
    assert submitted.audience == "approvers"
    assert submitted.recipients == []
    assert approved.audience == "creator"
    assert approved.recipients == [admin.user_id]
    assert approved.to_status == ApprovalStatus.APPROVED


def test_transition_dispatcher(store, workflow, admin, root, draft_call):
    workflow.transition(CC, draft_call.id, "submitForReview", admin)
    workflow.transition(CC, draft_call.id, "approve", admin, {"requireCFO": True})
    result = workflow.transition(CC, draft_call.id, "reject", root,
                                 {"reason": "Duplicate call", "expectedStatus": "pending_cfo"})
    assert result.transaction.approval_status == ApprovalStatus.REJECTED

    with pytest.raises(ValidationError):
        workflow.transition(CC, draft_call.id, "publish", root)


def test_require_cfo_string_flags(store, workflow, admin, draft_call):
    workflow.transition(CC, draft_call.id, "submit", admin)
    with pytest.raises(ValidationError) as exc:
        workflow.transition(CC, draft_call.id, "approve", admin, {"requireCFO": "maybe"})
    assert exc.value.field == "requireCFO"
    with pytest.raises(ValidationError):
        workflow.transition(CC, draft_call.id, "approve", admin, {"requireCFO": 0})
    assert _status(store, draft_call.id) == ApprovalStatus.PENDING_REVIEW

    result = workflow.transition(CC, draft_call.id, "approve", admin, {"requireCFO": "false"})
    assert result.transaction.approval_status == ApprovalStatus.APPROVED
    assert result.audit_entry.metadata["requireCFO"] is False


def test_transition_on_missing_record(workflow, root):
    with pytest.raises(NotFoundError):
        workflow.submit_for_review(CC, "nope", root)


def test_pending_approval_queue(store, workflow, fund, admin, other_admin, root, investor, draft_call):
    dist = create_distribution(store, admin, fund.id, Decimal("1000"))
    workflow.submit_for_review(CC, draft_call.id, admin)
    workflow.submit_for_review(EntityType.DISTRIBUTION, dist.id, admin)
    workflow.approve(EntityType.DISTRIBUTION, dist.id, admin, require_cfo=True)

    assert {t.id for t in workflow.pending_approval(root)} == {draft_call.id, dist.id}
    assert {t.id for t in workflow.pending_approval(admin, CC)} == {draft_call.id}
    assert workflow.pending_approval(other_admin) == []
    with pytest.raises(AuthorizationError):
        workflow.pending_approval(investor)


def test_statistics(store, workflow, admin, fund, draft_call):
    second = create_capital_call(store, admin, fund.id, Decimal("500"))
    workflow.submit_for_review(CC, draft_call.id, admin)
    workflow.submit_for_review(CC, second.id, admin)
    workflow.reject(CC, second.id, admin, "duplicate")

    stats = get_statistics(store, CC)
    assert stats["total"] == 5
    assert stats["byAction"] == {"created": 2, "submitted": 2, "rejected": 1}
    assert stats["byStatus"]["pending_review"] == 2
    assert stats["byStatus"]["rejected"] == 1
