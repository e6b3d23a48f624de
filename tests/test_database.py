from datetime import date
from decimal import Decimal

import pytest

from config import ApprovalStatus, EntityType
from database import SqliteStore
from errors import NotFoundError, StateConflictError
from models import (FundContext, DistributionAllocation, ApprovalHistoryEntry, Distribution,
                    WaterfallTerms, WaterfallPosition)
from waterfall import run_waterfall


def _distribution(store, fund_id="fund-1"):
    d = Distribution(id="dist-1", structure_id=fund_id, distribution_number=1,
                     total_amount=Decimal("1000.00"), distribution_date=date(2024, 1, 1),
                     created_by="admin-1")
    return store.insert_transaction(d)


def test_decimal_values_survive_round_trip(store):
    store.insert_structure(FundContext(id="f", total_commitment=Decimal("1000000.50"),
                                       hurdle_rate=Decimal("7.25")))
    fund = store.get_structure("f")
    assert fund.total_commitment == Decimal("1000000.50")
    assert isinstance(fund.hurdle_rate, Decimal)
    assert fund.created_at is not None


def test_unit_of_work_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.unit_of_work():
            store.insert_structure(FundContext(id="rolled-back"))
            raise RuntimeError("boom")
    assert store.get_structure("rolled-back") is None

    # nested units commit with the outer one
    with store.unit_of_work():
        with store.unit_of_work():
            store.insert_structure(FundContext(id="kept"))
    assert store.get_structure("kept") is not None


def test_compare_and_swap_status(store, fund):
    _distribution(store)
    assert store.update_status_if(EntityType.DISTRIBUTION, "dist-1",
                                  ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW)
    # stale expectation: nothing written
    assert not store.update_status_if(EntityType.DISTRIBUTION, "dist-1",
                                      ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW)
    assert store.load(EntityType.DISTRIBUTION, "dist-1").approval_status == ApprovalStatus.PENDING_REVIEW


def test_update_fields_refuses_approval_status(store, fund):
    _distribution(store)
    with pytest.raises(ValueError):
        store.update_fields(EntityType.DISTRIBUTION, "dist-1", approval_status="approved")


def test_waterfall_flag_set_only_once(store, fund):
    _distribution(store)
    result = run_waterfall(Decimal("1000"), WaterfallTerms(), WaterfallPosition(
        contributed_capital=Decimal("5000")), [("lp1", Decimal("100"))])

    assert store.mark_waterfall_applied_if_not("dist-1", result)
    assert not store.mark_waterfall_applied_if_not("dist-1", result)
    d = store.load(EntityType.DISTRIBUTION, "dist-1")
    assert d.waterfall_applied is True
    assert d.tier1_amount == Decimal("1000.00")


def test_duplicate_allocation_is_a_conflict(store, fund):
    _distribution(store)
    row = DistributionAllocation(distribution_id="dist-1", user_id="lp1",
                                 allocated_amount=Decimal("10"))
    store.insert_allocations(EntityType.DISTRIBUTION, [row])
    with pytest.raises(StateConflictError):
        store.insert_allocations(EntityType.DISTRIBUTION, [
            DistributionAllocation(distribution_id="dist-1", user_id="lp1")])
    assert len(store.list_allocations(EntityType.DISTRIBUTION, "dist-1")) == 1


def test_history_append_and_order(store, fund):
    _distribution(store)
    for action, frm, to in (("created", None, ApprovalStatus.DRAFT),
                            ("submitted", ApprovalStatus.DRAFT, ApprovalStatus.PENDING_REVIEW)):
        store.append_history(ApprovalHistoryEntry(
            entity_type=EntityType.DISTRIBUTION, entity_id="dist-1", action=action,
            from_status=frm, to_status=to, user_id="admin-1", metadata={"k": 1}))

    oldest = store.list_history(EntityType.DISTRIBUTION, "dist-1")
    newest = store.list_history(EntityType.DISTRIBUTION, "dist-1", newest_first=True)
    assert [e.action for e in oldest] == ["created", "submitted"]
    assert [e.action for e in newest] == ["submitted", "created"]
    assert oldest[0].from_status is None
    assert oldest[1].metadata == {"k": 1}
    assert oldest[1].entity_type == EntityType.DISTRIBUTION


def test_delete_cascades_to_allocations_and_history(store, fund):
    _distribution(store)
    store.insert_allocations(EntityType.DISTRIBUTION, [
        DistributionAllocation(distribution_id="dist-1", user_id="lp1")])
    store.append_history(ApprovalHistoryEntry(
        entity_type=EntityType.DISTRIBUTION, entity_id="dist-1", action="created",
        from_status=None, to_status=ApprovalStatus.DRAFT, user_id="admin-1"))

    store.delete_transaction(EntityType.DISTRIBUTION, "dist-1")

    assert store.load(EntityType.DISTRIBUTION, "dist-1") is None
    assert store.list_allocations(EntityType.DISTRIBUTION, "dist-1") == []
    assert store.list_history(EntityType.DISTRIBUTION, "dist-1") == []
    with pytest.raises(NotFoundError):
        store.delete_transaction(EntityType.DISTRIBUTION, "dist-1")


def test_require_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.require(EntityType.CAPITAL_CALL, "missing")


def test_second_connection_sees_committed_state(store, fund, tmp_path):
    _distribution(store)
    other = SqliteStore(store.db_path)
    try:
        assert other.load(EntityType.DISTRIBUTION, "dist-1").total_amount == Decimal("1000.00")
    finally:
        other.close()


def test_table_counts(store, fund):
    counts = store.table_counts()
    assert set(counts['table']) == {'structures', 'structure_investors', 'capital_calls',
                                    'distributions', 'capital_call_allocations',
                                    'distribution_allocations', 'approval_history'}
    assert counts.set_index('table').loc['structure_investors', 'rows'] == 2
