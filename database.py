"""
database.py
SQLite persistence for capital calls, distributions, allocations and approval history

Provides:
- Connection management
- Schema creation
- Unit-of-work transactions (BEGIN IMMEDIATE / COMMIT / ROLLBACK)
- Compare-and-swap status writes
- Append-only approval history
- Allocation bulk read/write
- DataFrame queries for reporting
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import fields
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type
import logging

import pandas as pd

from config import DB_PATH, ApprovalStatus, EntityType
from errors import NotFoundError, StateConflictError
from models import (FundContext, StructureInvestor, CapitalCall, Distribution,
                    CapitalCallAllocation, DistributionAllocation, ApprovalHistoryEntry,
                    WaterfallResult)
from utils import to_decimal, as_date, utc_now
from ports import PersistencePort

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Table definitions
TABLE_DEFINITIONS = {
    'structures': {
        'description': 'Funds / investment structures and their economic terms',
        'key_columns': ['id'],
        'model': FundContext,
    },
    'structure_investors': {
        'description': 'Investor commitments and ownership per structure',
        'key_columns': ['structure_id', 'user_id'],
        'model': StructureInvestor,
    },
    'capital_calls': {
        'description': 'Capital call headers with fee configuration and approval state',
        'key_columns': ['id'],
        'model': CapitalCall,
    },
    'distributions': {
        'description': 'Distribution headers with waterfall results and approval state',
        'key_columns': ['id'],
        'model': Distribution,
    },
    'capital_call_allocations': {
        'description': 'Per-investor capital call amounts, fees and payments',
        'key_columns': ['capital_call_id', 'user_id'],
        'model': CapitalCallAllocation,
    },
    'distribution_allocations': {
        'description': 'Per-investor distribution amounts by waterfall tier',
        'key_columns': ['distribution_id', 'user_id'],
        'model': DistributionAllocation,
    },
    'approval_history': {
        'description': 'Append-only approval workflow history',
        'key_columns': ['id'],
        'model': ApprovalHistoryEntry,
    },
}

ENTITY_TABLES = {
    EntityType.CAPITAL_CALL: ('capital_calls', CapitalCall),
    EntityType.DISTRIBUTION: ('distributions', Distribution),
}

ALLOCATION_TABLES = {
    EntityType.CAPITAL_CALL: ('capital_call_allocations', 'capital_call_id', CapitalCallAllocation),
    EntityType.DISTRIBUTION: ('distribution_allocations', 'distribution_id', DistributionAllocation),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS structures (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    base_currency TEXT NOT NULL DEFAULT 'USD',
    total_commitment TEXT NOT NULL DEFAULT '0',
    management_fee_rate TEXT NOT NULL DEFAULT '0',
    hurdle_rate TEXT NOT NULL DEFAULT '8',
    catch_up_rate TEXT NOT NULL DEFAULT '100',
    carry_percent TEXT NOT NULL DEFAULT '20',
    gp_percentage TEXT NOT NULL DEFAULT '0',
    exit_management_fee_percent TEXT NOT NULL DEFAULT '0',
    created_by TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS structure_investors (
    structure_id TEXT NOT NULL REFERENCES structures(id),
    user_id TEXT NOT NULL,
    commitment TEXT NOT NULL DEFAULT '0',
    ownership_percent TEXT NOT NULL DEFAULT '0',
    fee_discount TEXT NOT NULL DEFAULT '0',
    vat_exempt INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (structure_id, user_id)
);

CREATE TABLE IF NOT EXISTS capital_calls (
    id TEXT PRIMARY KEY,
    structure_id TEXT NOT NULL REFERENCES structures(id),
    call_number INTEGER NOT NULL,
    total_call_amount TEXT NOT NULL,
    call_date TEXT,
    due_date TEXT,
    total_paid_amount TEXT NOT NULL DEFAULT '0',
    total_unpaid_amount TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'Draft',
    purpose TEXT,
    notes TEXT,
    management_fee_base TEXT,
    management_fee_rate TEXT,
    vat_rate TEXT,
    vat_applicable INTEGER NOT NULL DEFAULT 0,
    fee_period TEXT,
    fee_rate_on_nic TEXT,
    fee_rate_on_unfunded TEXT,
    approval_status TEXT NOT NULL DEFAULT 'draft'
        CHECK (approval_status IN ('draft','pending_review','pending_cfo','approved','rejected')),
    created_by TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS distributions (
    id TEXT PRIMARY KEY,
    structure_id TEXT NOT NULL REFERENCES structures(id),
    distribution_number INTEGER NOT NULL,
    total_amount TEXT NOT NULL,
    distribution_date TEXT,
    status TEXT NOT NULL DEFAULT 'Draft',
    source TEXT,
    notes TEXT,
    source_equity_gain TEXT NOT NULL DEFAULT '0',
    source_debt_interest TEXT NOT NULL DEFAULT '0',
    source_debt_principal TEXT NOT NULL DEFAULT '0',
    source_other TEXT NOT NULL DEFAULT '0',
    waterfall_applied INTEGER NOT NULL DEFAULT 0,
    tier1_amount TEXT NOT NULL DEFAULT '0',
    tier2_amount TEXT NOT NULL DEFAULT '0',
    tier3_amount TEXT NOT NULL DEFAULT '0',
    tier4_amount TEXT NOT NULL DEFAULT '0',
    lp_total_amount TEXT NOT NULL DEFAULT '0',
    gp_total_amount TEXT NOT NULL DEFAULT '0',
    management_fee_amount TEXT NOT NULL DEFAULT '0',
    approval_status TEXT NOT NULL DEFAULT 'draft'
        CHECK (approval_status IN ('draft','pending_review','pending_cfo','approved','rejected')),
    created_by TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS capital_call_allocations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    capital_call_id TEXT NOT NULL REFERENCES capital_calls(id),
    user_id TEXT NOT NULL,
    ownership_percent TEXT NOT NULL DEFAULT '0',
    commitment TEXT NOT NULL DEFAULT '0',
    principal_amount TEXT NOT NULL DEFAULT '0',
    management_fee_gross TEXT NOT NULL DEFAULT '0',
    management_fee_discount TEXT NOT NULL DEFAULT '0',
    management_fee_net TEXT NOT NULL DEFAULT '0',
    vat_amount TEXT NOT NULL DEFAULT '0',
    total_due TEXT NOT NULL DEFAULT '0',
    allocated_amount TEXT NOT NULL DEFAULT '0',
    paid_amount TEXT NOT NULL DEFAULT '0',
    remaining_amount TEXT NOT NULL DEFAULT '0',
    capital_paid TEXT NOT NULL DEFAULT '0',
    fees_paid TEXT NOT NULL DEFAULT '0',
    vat_paid TEXT NOT NULL DEFAULT '0',
    nic_fee_amount TEXT NOT NULL DEFAULT '0',
    unfunded_fee_amount TEXT NOT NULL DEFAULT '0',
    fee_offset_amount TEXT NOT NULL DEFAULT '0',
    deemed_gp_contribution TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'Pending',
    due_date TEXT,
    UNIQUE (capital_call_id, user_id)
);

CREATE TABLE IF NOT EXISTS distribution_allocations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    distribution_id TEXT NOT NULL REFERENCES distributions(id),
    user_id TEXT NOT NULL,
    ownership_percent TEXT NOT NULL DEFAULT '0',
    tier1_amount TEXT NOT NULL DEFAULT '0',
    tier2_amount TEXT NOT NULL DEFAULT '0',
    tier3_amount TEXT NOT NULL DEFAULT '0',
    tier4_amount TEXT NOT NULL DEFAULT '0',
    allocated_amount TEXT NOT NULL DEFAULT '0',
    paid_amount TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'Pending',
    payment_date TEXT,
    UNIQUE (distribution_id, user_id)
);

CREATE TABLE IF NOT EXISTS approval_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    action TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT,
    user_id TEXT,
    user_name TEXT NOT NULL DEFAULT 'Unknown',
    notes TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calls_structure ON capital_calls(structure_id);
CREATE INDEX IF NOT EXISTS idx_calls_approval ON capital_calls(approval_status);
CREATE INDEX IF NOT EXISTS idx_dist_structure ON distributions(structure_id);
CREATE INDEX IF NOT EXISTS idx_dist_approval ON distributions(approval_status);
CREATE INDEX IF NOT EXISTS idx_history_entity ON approval_history(entity_type, entity_id, created_at);
"""


def get_db_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Get database connection with optimizations

    The connection runs in autocommit mode (isolation_level=None); multi-statement
    writes are grouped explicitly by SqliteStore.unit_of_work().

    Returns:
        sqlite3.Connection with row_factory set to Row
    """
    conn = sqlite3.connect(db_path or DB_PATH, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row  # Return rows as dictionaries

    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA journal_mode=WAL")  # Write-Ahead Logging
    conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes
    conn.execute("PRAGMA busy_timeout=5000")  # Wait for competing writers

    return conn


# ============================================================
# ROW CONVERSION
# ============================================================

def _type_args(tp) -> tuple:
    return getattr(tp, '__args__', None) or (tp,)


def _to_db(value):
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return json.dumps(value, default=str, sort_keys=True)
    return value


def _from_db(tp, value):
    args = _type_args(tp)
    if value is None:
        return None
    if Decimal in args:
        return to_decimal(value)
    if date in args:
        return as_date(value)
    if bool in args:
        return bool(value)
    if ApprovalStatus in args:
        return ApprovalStatus(value)
    if EntityType in args:
        return EntityType(value)
    if dict in args or getattr(tp, '__origin__', None) is dict:
        return json.loads(value) if value else {}
    return value


def row_to_record(cls: Type, row: sqlite3.Row):
    """Build a model instance from a row whose columns are the field names"""
    keys = row.keys()
    kwargs = {}
    for f in fields(cls):
        if f.name in keys:
            kwargs[f.name] = _from_db(f.type, row[f.name])
    return cls(**kwargs)


def record_to_row(obj, skip_none_id: bool = True) -> Dict[str, Any]:
    out = {}
    for f in fields(obj):
        v = getattr(obj, f.name)
        if f.name == 'id' and v is None and skip_none_id:
            continue
        out[f.name] = _to_db(v)
    return out


# ============================================================
# STORE
# ============================================================

class SqliteStore(PersistencePort):
    """
    Persistence adapter over one SQLite database.

    All multi-statement writes go through unit_of_work(), which takes the
    database write lock up front (BEGIN IMMEDIATE) so that a read followed by a
    conditional write inside the unit cannot interleave with another writer.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DB_PATH
        self.conn = get_db_connection(self.db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self.init_schema()

    def close(self):
        self.conn.close()

    def init_schema(self):
        with self._lock:
            self.conn.executescript(SCHEMA)
        logger.info(f"Schema ready in {self.db_path}")

    # --------------------------------------------------------
    # Transactions
    # --------------------------------------------------------

    @contextmanager
    def unit_of_work(self):
        """
        Group writes into one atomic transaction.

        Nested units join the outermost one.  Any exception rolls the whole
        unit back and propagates.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                logger.error("Unit of work rolled back")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, tuple(params))

    def _insert(self, table: str, row: Dict[str, Any]) -> sqlite3.Cursor:
        cols = ", ".join(row.keys())
        marks = ", ".join("?" for _ in row)
        return self._execute(f"INSERT INTO {table} ({cols}) VALUES ({marks})", row.values())

    def _update(self, table: str, row: Dict[str, Any], where: Dict[str, Any]) -> int:
        sets = ", ".join(f"{k} = ?" for k in row)
        cond = " AND ".join(f"{k} = ?" for k in where)
        cur = self._execute(f"UPDATE {table} SET {sets} WHERE {cond}",
                            list(row.values()) + [_to_db(v) for v in where.values()])
        return cur.rowcount

    # --------------------------------------------------------
    # Structures and investors
    # --------------------------------------------------------

    def insert_structure(self, fund: FundContext) -> FundContext:
        if fund.created_at is None:
            fund.created_at = utc_now()
        self._insert('structures', record_to_row(fund))
        return fund

    def get_structure(self, structure_id: str) -> Optional[FundContext]:
        row = self._execute("SELECT * FROM structures WHERE id = ?", (structure_id,)).fetchone()
        return row_to_record(FundContext, row) if row else None

    def update_structure(self, structure_id: str, **values) -> int:
        return self._update('structures', {k: _to_db(v) for k, v in values.items()},
                            {'id': structure_id})

    def upsert_structure_investor(self, investor: StructureInvestor):
        row = record_to_row(investor)
        cols = ", ".join(row.keys())
        marks = ", ".join("?" for _ in row)
        updates = ", ".join(f"{k} = excluded.{k}" for k in row if k not in ('structure_id', 'user_id'))
        self._execute(
            f"INSERT INTO structure_investors ({cols}) VALUES ({marks}) "
            f"ON CONFLICT(structure_id, user_id) DO UPDATE SET {updates}",
            row.values(),
        )

    def list_structure_investors(self, structure_id: str) -> List[StructureInvestor]:
        rows = self._execute(
            "SELECT * FROM structure_investors WHERE structure_id = ? ORDER BY rowid",
            (structure_id,),
        ).fetchall()
        return [row_to_record(StructureInvestor, r) for r in rows]

    def set_ownership(self, structure_id: str, ownership: Dict[str, Decimal]):
        for user_id, pct in ownership.items():
            self._update('structure_investors', {'ownership_percent': _to_db(pct)},
                         {'structure_id': structure_id, 'user_id': user_id})

    # --------------------------------------------------------
    # Transactions (capital calls / distributions)
    # --------------------------------------------------------

    def next_number(self, entity_type: EntityType, structure_id: str) -> int:
        table, _ = ENTITY_TABLES[EntityType(entity_type)]
        col = 'call_number' if table == 'capital_calls' else 'distribution_number'
        row = self._execute(
            f"SELECT COALESCE(MAX({col}), 0) AS n FROM {table} WHERE structure_id = ?",
            (structure_id,),
        ).fetchone()
        return int(row['n']) + 1

    def insert_transaction(self, txn):
        table, _ = ENTITY_TABLES[txn.entity_type]
        self._insert(table, record_to_row(txn))
        return txn

    def load(self, entity_type: EntityType, entity_id: str):
        """Load a capital call or distribution; None when absent"""
        table, cls = ENTITY_TABLES[EntityType(entity_type)]
        row = self._execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        return row_to_record(cls, row) if row else None

    def require(self, entity_type: EntityType, entity_id: str):
        txn = self.load(entity_type, entity_id)
        if txn is None:
            raise NotFoundError(EntityType(entity_type).value, entity_id)
        return txn

    def list_transactions(
        self,
        entity_type: EntityType,
        structure_id: Optional[str] = None,
        approval_statuses: Optional[Iterable[ApprovalStatus]] = None,
        created_by: Optional[str] = None,
    ) -> list:
        table, cls = ENTITY_TABLES[EntityType(entity_type)]
        date_col = 'call_date' if table == 'capital_calls' else 'distribution_date'
        clauses, params = [], []
        if structure_id is not None:
            clauses.append("structure_id = ?")
            params.append(structure_id)
        if approval_statuses is not None:
            statuses = [ApprovalStatus(s).value for s in approval_statuses]
            clauses.append(f"approval_status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if created_by is not None:
            clauses.append("created_by = ?")
            params.append(created_by)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(
            f"SELECT * FROM {table} {where} ORDER BY {date_col}, created_at", params
        ).fetchall()
        return [row_to_record(cls, r) for r in rows]

    def update_status_if(self, entity_type: EntityType, entity_id: str,
                         expected: ApprovalStatus, new: ApprovalStatus) -> bool:
        """
        Compare-and-swap the approval status.

        Returns False when the persisted status is no longer `expected`
        (nothing is written in that case).
        """
        table, _ = ENTITY_TABLES[EntityType(entity_type)]
        cur = self._execute(
            f"UPDATE {table} SET approval_status = ?, updated_at = ? "
            f"WHERE id = ? AND approval_status = ?",
            (ApprovalStatus(new).value, utc_now(), entity_id, ApprovalStatus(expected).value),
        )
        return cur.rowcount == 1

    def update_fields(self, entity_type: EntityType, entity_id: str, **values) -> int:
        """Update operational (non-approval) columns of a transaction"""
        if 'approval_status' in values:
            raise ValueError("approval_status changes go through update_status_if")
        table, _ = ENTITY_TABLES[EntityType(entity_type)]
        row = {k: _to_db(v) for k, v in values.items()}
        row['updated_at'] = utc_now()
        return self._update(table, row, {'id': entity_id})

    def mark_waterfall_applied_if_not(self, distribution_id: str, result: WaterfallResult) -> bool:
        """
        Set waterfall_applied and the tier/LP/GP totals, only if not yet applied.

        Returns False when the flag was already set.
        """
        cur = self._execute(
            "UPDATE distributions SET waterfall_applied = 1, "
            "tier1_amount = ?, tier2_amount = ?, tier3_amount = ?, tier4_amount = ?, "
            "lp_total_amount = ?, gp_total_amount = ?, management_fee_amount = ?, updated_at = ? "
            "WHERE id = ? AND waterfall_applied = 0",
            (
                str(result.tier_amount(1)), str(result.tier_amount(2)),
                str(result.tier_amount(3)), str(result.tier_amount(4)),
                str(result.lp_total), str(result.gp_total),
                str(result.management_fee_amount), utc_now(), distribution_id,
            ),
        )
        return cur.rowcount == 1

    def delete_transaction(self, entity_type: EntityType, entity_id: str):
        """Delete a transaction with its allocations and approval history"""
        entity_type = EntityType(entity_type)
        table, _ = ENTITY_TABLES[entity_type]
        alloc_table, fk, _ = ALLOCATION_TABLES[entity_type]
        with self.unit_of_work():
            self._execute(f"DELETE FROM {alloc_table} WHERE {fk} = ?", (entity_id,))
            self._execute("DELETE FROM approval_history WHERE entity_type = ? AND entity_id = ?",
                          (entity_type.value, entity_id))
            cur = self._execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
            if cur.rowcount == 0:
                raise NotFoundError(entity_type.value, entity_id)
        logger.info(f"Deleted {entity_type.value} {entity_id} with allocations and history")

    # --------------------------------------------------------
    # Approval history
    # --------------------------------------------------------

    def append_history(self, entry: ApprovalHistoryEntry) -> ApprovalHistoryEntry:
        row = record_to_row(entry)
        if row.get('created_at') is None:
            row['created_at'] = utc_now()
        cur = self._insert('approval_history', row)
        return self.get_history_entry(cur.lastrowid)

    def get_history_entry(self, entry_id: int) -> Optional[ApprovalHistoryEntry]:
        row = self._execute("SELECT * FROM approval_history WHERE id = ?", (entry_id,)).fetchone()
        return row_to_record(ApprovalHistoryEntry, row) if row else None

    def list_history(self, entity_type: Optional[EntityType] = None,
                     entity_id: Optional[str] = None,
                     newest_first: bool = False) -> List[ApprovalHistoryEntry]:
        clauses, params = [], []
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(EntityType(entity_type).value)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "DESC" if newest_first else "ASC"
        rows = self._execute(
            f"SELECT * FROM approval_history {where} ORDER BY created_at {order}, id {order}", params
        ).fetchall()
        return [row_to_record(ApprovalHistoryEntry, r) for r in rows]

    # --------------------------------------------------------
    # Allocations
    # --------------------------------------------------------

    def list_allocations(self, entity_type: EntityType, entity_id: str) -> list:
        table, fk, cls = ALLOCATION_TABLES[EntityType(entity_type)]
        rows = self._execute(f"SELECT * FROM {table} WHERE {fk} = ? ORDER BY id", (entity_id,)).fetchall()
        return [row_to_record(cls, r) for r in rows]

    def insert_allocations(self, entity_type: EntityType, allocations: list) -> list:
        """
        Bulk insert allocation rows.

        A second row for the same (transaction, investor) violates the UNIQUE
        key and is reported as a state conflict.
        """
        table, _, _ = ALLOCATION_TABLES[EntityType(entity_type)]
        with self.unit_of_work():
            for alloc in allocations:
                try:
                    cur = self._insert(table, record_to_row(alloc))
                except sqlite3.IntegrityError as e:
                    raise StateConflictError(
                        f"Allocation already exists for {alloc.user_id}: {e}")
                alloc.id = cur.lastrowid
        return allocations

    def replace_allocations(self, entity_type: EntityType, entity_id: str, allocations: list) -> list:
        table, fk, _ = ALLOCATION_TABLES[EntityType(entity_type)]
        with self.unit_of_work():
            self._execute(f"DELETE FROM {table} WHERE {fk} = ?", (entity_id,))
            self.insert_allocations(entity_type, allocations)
        return allocations

    def update_allocation(self, entity_type: EntityType, allocation) -> int:
        table, _, _ = ALLOCATION_TABLES[EntityType(entity_type)]
        row = record_to_row(allocation)
        row.pop('id', None)
        return self._update(table, row, {'id': allocation.id})

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def table_counts(self) -> pd.DataFrame:
        """Row count per table, with descriptions"""
        rows = []
        for name, meta in TABLE_DEFINITIONS.items():
            n = self._execute(f"SELECT COUNT(*) AS cnt FROM {name}").fetchone()['cnt']
            rows.append({'table': name, 'description': meta['description'], 'rows': int(n)})
        return pd.DataFrame(rows)
