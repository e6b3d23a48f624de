from datetime import date
from decimal import Decimal

import pytest

from capital_calls import create_capital_call
from config import EntityType
from distributions import create_distribution
from errors import NotFoundError
from reporting import (cash_flows_from_transactions, performance_report, performance_table,
                       quarterly_activity, ccd_summary)

from conftest import approve_without_cfo


@pytest.fixture
def approved_distribution(store, workflow, admin, fund, approved_call):
    dist = create_distribution(store, admin, fund.id, Decimal("1100000"),
                               distribution_date=date(2024, 1, 1), source="Asset sale")
    return approve_without_cfo(workflow, EntityType.DISTRIBUTION, dist.id, admin)


def test_performance_report(store, fund, approved_distribution):
    report = performance_report(store, fund.id, as_of=date(2024, 1, 1))
    perf = report["performance"]

    assert perf["grossIRR"] == pytest.approx(10.0, abs=0.1)
    assert perf["netIRR"] == perf["grossIRR"]
    assert perf["dpi"] == pytest.approx(1.1)
    assert perf["grossTVPI"] == pytest.approx(1.1)
    assert perf["rvpi"] == 0
    assert perf["irrConverged"] is True

    capital = report["capitalSummary"]
    # called - distributed is negative: NAV estimate floors at zero
    assert capital["currentNAV"] == 0.0
    assert capital["totalCapitalCalled"] == 1000000.0
    assert capital["uncalled"] == 0.0
    assert capital["paidInRatio"] == 100.0
    assert report["fundInfo"]["investorCount"] == 2
    assert report["cashFlowSummary"] == {"totalCalls": 1, "totalDistributions": 1,
                                         "realizedGain": 100000.0, "unrealizedGain": 0.0}
    assert report["asOfDate"] == "2024-01-01"


def test_unapproved_records_are_ignored(store, admin, fund, approved_call):
    create_capital_call(store, admin, fund.id, Decimal("250000"), call_date=date(2023, 6, 1))
    create_distribution(store, admin, fund.id, Decimal("50000"), distribution_date=date(2023, 7, 1))

    report = performance_report(store, fund.id, nav=Decimal("1080000"), as_of=date(2024, 1, 1))
    assert report["capitalSummary"]["totalCapitalCalled"] == 1000000.0
    assert report["capitalSummary"]["totalDistributed"] == 0.0
    assert report["performance"]["rvpi"] == pytest.approx(1.08)
    assert report["performance"]["dpi"] == 0
    assert report["cashFlowSummary"]["unrealizedGain"] == 80000.0
    assert report["cashFlowSummary"]["realizedGain"] == 0.0


def test_gains_with_supplied_nav_after_capital_is_returned(store, fund, approved_distribution):
    report = performance_report(store, fund.id, nav=Decimal("50000"), as_of=date(2024, 1, 1))
    summary = report["cashFlowSummary"]
    # cost basis is fully returned, so the whole NAV is unrealized gain
    assert summary["realizedGain"] == 100000.0
    assert summary["unrealizedGain"] == 50000.0
    assert report["capitalSummary"]["totalValue"] == 1150000.0


def test_report_for_unknown_structure(store):
    with pytest.raises(NotFoundError):
        performance_report(store, "missing")


def test_performance_table(store, fund, approved_distribution):
    table = performance_table(performance_report(store, fund.id, as_of=date(2024, 1, 1)))
    values = dict(zip(table["Metric"], table["Value"]))
    assert values["DPI"] == "1.10x"
    assert values["Capital Called"] == "1,000,000.00"
    assert values["Paid-In Ratio"] == "100.0%"
    assert values["As Of"] == "2024-01-01"


def test_quarterly_activity(store, fund, approved_distribution):
    q1 = quarterly_activity(store, fund.id, "2023-01-01", "2023-03-31")
    assert q1["capitalCalls"]["count"] == 1
    assert q1["distributions"]["count"] == 0
    assert q1["netCashFlow"] == Decimal("1000000")
    assert q1["capitalCalls"]["calls"][0]["purpose"] == "Capital Deployment"

    q1_2024 = quarterly_activity(store, fund.id, date(2024, 1, 1), date(2024, 3, 31))
    assert q1_2024["distributions"]["distributions"][0]["source"] == "Asset sale"
    assert q1_2024["netCashFlow"] == Decimal("-1100000")


def test_ccd_summary_running_balances(store, fund, approved_distribution):
    df = ccd_summary(store, fund.id)
    assert list(df["type"]) == ["Capital Call", "Distribution"]
    assert list(df["cumulativeCalled"]) == [1000000.0, 1000000.0]
    assert list(df["cumulativeDistributed"]) == [0.0, 1100000.0]
    assert list(df["netPosition"]) == [1000000.0, -100000.0]


def test_ccd_summary_empty(store, fund):
    assert ccd_summary(store, fund.id).empty


def test_cash_flows_from_transactions_respects_as_of(store, fund, approved_call, approved_distribution):
    flows = cash_flows_from_transactions([approved_call], [approved_distribution], date(2023, 12, 31))
    assert [(f.kind, f.amount) for f in flows] == [("call", -1000000.0)]
