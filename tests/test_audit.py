from dataclasses import replace

from audit import (build_entry, get_history, validate_history, replay, is_legal_history,
                   history_frame)
from config import ApprovalStatus, EntityType

CC = EntityType.CAPITAL_CALL


def _entries(admin, *steps):
    out = []
    for i, (action, frm, to) in enumerate(steps, start=1):
        e = build_entry(CC, "c-1", action, frm, to, admin)
        out.append(replace(e, id=i, created_at=f"2024-01-01T00:00:0{i}.000000Z"))
    return out


def test_legal_history(admin):
    entries = _entries(admin,
                       ("created", None, ApprovalStatus.DRAFT),
                       ("submitted", ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW),
                       ("waterfall_applied", ApprovalStatus.PENDING_REVIEW, ApprovalStatus.PENDING_REVIEW),
                       ("approved", ApprovalStatus.PENDING_REVIEW, ApprovalStatus.APPROVED))
    assert validate_history(entries, ApprovalStatus.APPROVED) == []
    assert replay(entries) == [ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW,
                               ApprovalStatus.APPROVED]


def test_illegal_jump_is_reported(admin, caplog):
    entries = _entries(admin,
                       ("created", None, ApprovalStatus.DRAFT),
                       ("approved", ApprovalStatus.DRAFT, ApprovalStatus.APPROVED))
    issues = validate_history(entries)
    assert len(issues) == 1
    assert "illegal transition draft -> approved" in issues[0]
    assert not is_legal_history(entries)
    assert any("Approval history" in r.getMessage() for r in caplog.records)


def test_broken_chain_and_wrong_final_status(admin):
    entries = _entries(admin,
                       ("created", None, ApprovalStatus.DRAFT),
                       ("cfo_approved", ApprovalStatus.PENDING_CFO, ApprovalStatus.APPROVED))
    issues = validate_history(entries, ApprovalStatus.REJECTED)
    assert any("but state was draft" in i for i in issues)
    assert any("record is rejected" in i for i in issues)


def test_history_must_start_with_created(admin):
    entries = _entries(admin, ("submitted", ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW))
    assert any("does not start with 'created'" in i for i in validate_history(entries))


def test_out_of_order_input_is_replayed_by_timestamp(admin):
    entries = _entries(admin,
                       ("created", None, ApprovalStatus.DRAFT),
                       ("submitted", ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW))
    assert validate_history(list(reversed(entries))) == []


def test_get_history_newest_first(store, workflow, admin, draft_call):
    workflow.submit_for_review(CC, draft_call.id, admin)
    history = get_history(store, CC, draft_call.id)
    assert [e.action for e in history] == ["submitted", "created"]
    assert history[0].user_name == admin.name


def test_history_frame(store, workflow, admin, draft_call):
    workflow.submit_for_review(CC, draft_call.id, admin)
    df = history_frame(store.list_history(CC, draft_call.id))
    assert list(df["action"]) == ["created", "submitted"]
    assert list(df["toStatus"]) == ["draft", "pending_review"]
    assert history_frame([]).empty
