import logging
import threading
from datetime import date
from decimal import Decimal

import pytest

from config import Role, EntityType
from database import SqliteStore
from models import Actor, FundContext
from ownership import create_structure, set_commitment
from approval import ApprovalWorkflow
from capital_calls import create_capital_call
from ports import Notifier


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class FailingNotifier(Notifier):
    def notify(self, event):
        raise RuntimeError("smtp down")


@pytest.fixture
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "fund_admin_test.db"))
    yield s
    s.close()


@pytest.fixture
def root():
    return Actor(user_id="cfo", role=Role.ROOT, name="Chief Financial Officer")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role=Role.ADMIN, name="Fund Admin")


@pytest.fixture
def other_admin():
    return Actor(user_id="admin-2", role=Role.ADMIN, name="Other Admin")


@pytest.fixture
def support():
    return Actor(user_id="support-1", role=Role.SUPPORT, name="Support")


@pytest.fixture
def investor():
    return Actor(user_id="lp1", role=Role.INVESTOR, name="LP One")


@pytest.fixture
def fund(store, admin):
    """Structure owned by admin-1 with lp1 (60%) and lp2 (40%)"""
    f = create_structure(store, admin, FundContext(
        id="fund-1",
        name="Fund I",
        management_fee_rate=Decimal("2"),
        hurdle_rate=Decimal("8"),
        catch_up_rate=Decimal("100"),
        carry_percent=Decimal("20"),
        gp_percentage=Decimal("10"),
    ))
    set_commitment(store, admin, f.id, "lp1", Decimal("600000"))
    set_commitment(store, admin, f.id, "lp2", Decimal("400000"))
    return store.get_structure(f.id)


@pytest.fixture
def unowned_fund(store, admin):
    """Structure whose only investor has committed nothing"""
    f = create_structure(store, admin, FundContext(id="fund-0", name="Fund Zero"))
    set_commitment(store, admin, f.id, "lp1", Decimal("0"))
    return store.get_structure(f.id)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow(store, notifier):
    return ApprovalWorkflow(store, notifier=notifier)


@pytest.fixture
def draft_call(store, admin, fund):
    return create_capital_call(store, admin, fund.id, Decimal("1000000"),
                               call_date=date(2023, 1, 1))


def approve_without_cfo(workflow, entity_type, entity_id, actor):
    workflow.submit_for_review(entity_type, entity_id, actor)
    return workflow.approve(entity_type, entity_id, actor, require_cfo=False).transaction


def run_concurrently(db_path, count, action):
    """
    Run action(store) on count threads released together by a barrier.

    Each thread gets its own connection to db_path. Returns one outcome per
    thread: the action's return value or the exception it raised.
    """
    stores = [SqliteStore(db_path) for _ in range(count)]
    barrier = threading.Barrier(count)
    outcomes = [None] * count

    def worker(i):
        barrier.wait()
        try:
            outcomes[i] = action(stores[i])
        except Exception as e:
            outcomes[i] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
    finally:
        for s in stores:
            s.close()
    return outcomes


@pytest.fixture
def approved_call(workflow, admin, draft_call):
    return approve_without_cfo(workflow, EntityType.CAPITAL_CALL, draft_call.id, admin)


@pytest.fixture(autouse=True)
def _quiet_logs(caplog):
    caplog.set_level(logging.INFO)
