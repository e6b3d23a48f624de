from decimal import Decimal

import pytest

from errors import AuthorizationError, NotFoundError, ValidationError
from models import FundContext, StructureInvestor
from ownership import (compute_ownership, ownership_weights, create_structure,
                       recompute_ownership, set_commitment)


def test_equal_commitments_sum_to_exactly_100():
    pct = compute_ownership([("a", Decimal("100")), ("b", Decimal("100")), ("c", Decimal("100"))])
    assert pct == {"a": Decimal("33.3334"), "b": Decimal("33.3333"), "c": Decimal("33.3333")}
    assert sum(pct.values()) == Decimal("100")


def test_no_commitments_gives_zero_ownership():
    assert compute_ownership([("a", Decimal("0")), ("b", Decimal("0"))]) == {
        "a": Decimal("0"), "b": Decimal("0")}
    assert compute_ownership([]) == {}


def test_negative_commitment_rejected():
    with pytest.raises(ValidationError):
        compute_ownership([("a", Decimal("-1"))])


def test_set_commitment_recomputes_structure(store, admin, fund):
    pct = set_commitment(store, admin, fund.id, "lp3", Decimal("1000000"))
    assert pct == {"lp1": Decimal("30"), "lp2": Decimal("20"), "lp3": Decimal("50")}
    assert store.get_structure(fund.id).total_commitment == Decimal("2000000")

    # changing an existing commitment replaces it
    set_commitment(store, admin, fund.id, "lp3", Decimal("0"))
    investors = {i.user_id: i for i in store.list_structure_investors(fund.id)}
    assert investors["lp1"].ownership_percent == Decimal("60")
    assert investors["lp3"].ownership_percent == Decimal("0")
    assert store.get_structure(fund.id).total_commitment == Decimal("1000000")


def test_set_commitment_validation(store, admin, other_admin, fund):
    with pytest.raises(ValidationError):
        set_commitment(store, admin, fund.id, "lp9", Decimal("-5"))
    with pytest.raises(ValidationError):
        set_commitment(store, admin, fund.id, "lp9", Decimal("5"), fee_discount=Decimal("120"))
    with pytest.raises(NotFoundError):
        set_commitment(store, admin, "missing", "lp9", Decimal("5"))
    with pytest.raises(AuthorizationError):
        set_commitment(store, other_admin, fund.id, "lp9", Decimal("5"))
    assert len(store.list_structure_investors(fund.id)) == 2


def test_create_structure_roles(store, admin, support):
    with pytest.raises(AuthorizationError):
        create_structure(store, support, FundContext(id="f-support"))
    with pytest.raises(ValidationError):
        create_structure(store, admin, FundContext(id="f-bad", carry_percent=Decimal("150")))

    fund = create_structure(store, admin, FundContext(id="", name="Fund II"))
    assert fund.id
    assert store.get_structure(fund.id).created_by == admin.user_id


def test_recompute_without_investors(store, admin):
    create_structure(store, admin, FundContext(id="empty"))
    assert recompute_ownership(store, "empty") == {}
    assert store.get_structure("empty").total_commitment == 0


def test_ownership_weights_warn_on_drift(caplog):
    investors = [StructureInvestor("f", "a", ownership_percent=Decimal("50")),
                 StructureInvestor("f", "b", ownership_percent=Decimal("30"))]
    assert ownership_weights(investors) == [("a", Decimal("50")), ("b", Decimal("30"))]
    assert any("normalising" in r.getMessage() for r in caplog.records)


def test_ownership_weights_reject_all_zero():
    investors = [StructureInvestor("f", "a", ownership_percent=Decimal("0"))]
    with pytest.raises(ValidationError):
        ownership_weights(investors)
    assert ownership_weights([]) == []
