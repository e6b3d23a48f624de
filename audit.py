"""
audit.py
Approval history (audit log): append, query, statistics and replay validation

History is append-only.  Rows are only removed together with their parent
transaction (SqliteStore.delete_transaction).
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from config import (ApprovalStatus, EntityType, LEGAL_TRANSITIONS, NON_TRANSITION_ACTIONS,
                    ACTION_CREATED)
from models import Actor, ApprovalHistoryEntry

logger = logging.getLogger(__name__)


def build_entry(
    entity_type: EntityType,
    entity_id: str,
    action: str,
    from_status: Optional[ApprovalStatus],
    to_status: Optional[ApprovalStatus],
    actor: Actor,
    notes: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ApprovalHistoryEntry:
    return ApprovalHistoryEntry(
        entity_type=EntityType(entity_type),
        entity_id=entity_id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        user_id=actor.user_id,
        user_name=actor.name or "Unknown",
        notes=notes,
        metadata=dict(metadata or {}),
    )


def record(store, entity_type, entity_id, action, from_status, to_status,
           actor: Actor, notes=None, metadata=None) -> ApprovalHistoryEntry:
    """Append one history entry (call inside the unit of work of the change it records)"""
    entry = build_entry(entity_type, entity_id, action, from_status, to_status,
                        actor, notes, metadata)
    return store.append_history(entry)


def get_history(store, entity_type: EntityType, entity_id: str) -> List[ApprovalHistoryEntry]:
    """Approval history of one transaction, newest first"""
    return store.list_history(entity_type, entity_id, newest_first=True)


def get_statistics(store, entity_type: Optional[EntityType] = None) -> Dict[str, Any]:
    """
    Counts of history entries by action and by resulting status.

    Returns:
        {'total': n, 'byAction': {action: n}, 'byStatus': {status: n}}
    """
    entries = store.list_history(entity_type)
    by_action = Counter(e.action for e in entries)
    by_status = Counter(e.to_status.value for e in entries if e.to_status is not None)
    return {
        'total': len(entries),
        'byAction': dict(by_action),
        'byStatus': dict(by_status),
    }


# ============================================================
# REPLAY
# ============================================================

def _ordered(entries: Sequence[ApprovalHistoryEntry]) -> List[ApprovalHistoryEntry]:
    return sorted(entries, key=lambda e: (e.created_at or "", e.id or 0))


def validate_history(entries: Sequence[ApprovalHistoryEntry],
                     current_status: Optional[ApprovalStatus] = None) -> List[str]:
    """
    Replay history in timestamp order against the transition table.

    Returns:
        List of problems (empty if the history is a legal path that ends in
        current_status, when given)
    """
    issues = []
    state: Optional[ApprovalStatus] = None
    started = False

    for e in _ordered(entries):
        if e.action in NON_TRANSITION_ACTIONS:
            if e.to_status is not None and e.to_status != state:
                issues.append(f"#{e.id} {e.action}: recorded at {e.to_status.value}, "
                              f"state was {getattr(state, 'value', None)}")
            continue

        if not started and e.action != ACTION_CREATED:
            issues.append(f"#{e.id} {e.action}: history does not start with '{ACTION_CREATED}'")
        started = True

        if e.from_status != state:
            issues.append(f"#{e.id} {e.action}: from {getattr(e.from_status, 'value', None)} "
                          f"but state was {getattr(state, 'value', None)}")

        allowed = LEGAL_TRANSITIONS.get((e.from_status, e.to_status))
        if not allowed or e.action not in allowed:
            issues.append(f"#{e.id} {e.action}: illegal transition "
                          f"{getattr(e.from_status, 'value', None)} -> "
                          f"{getattr(e.to_status, 'value', None)}")
        state = e.to_status

    if current_status is not None and entries and state != current_status:
        issues.append(f"History ends at {getattr(state, 'value', None)} "
                      f"but record is {ApprovalStatus(current_status).value}")
    return issues


def replay(entries: Sequence[ApprovalHistoryEntry]) -> List[ApprovalStatus]:
    """Sequence of statuses the history walks through, starting from creation"""
    path = []
    for e in _ordered(entries):
        if e.action in NON_TRANSITION_ACTIONS:
            continue
        path.append(e.to_status)
    return path


def is_legal_history(entries: Sequence[ApprovalHistoryEntry],
                     current_status: Optional[ApprovalStatus] = None) -> bool:
    issues = validate_history(entries, current_status)
    for msg in issues:
        logger.warning(f"Approval history: {msg}")
    return not issues


def history_frame(entries: Sequence[ApprovalHistoryEntry]) -> pd.DataFrame:
    """History as a DataFrame with camelCase columns, oldest first"""
    cols = ['id', 'entityType', 'entityId', 'action', 'fromStatus', 'toStatus',
            'userId', 'userName', 'notes', 'metadata', 'createdAt']
    if not entries:
        return pd.DataFrame(columns=cols)
    df = pd.DataFrame([e.to_record() for e in _ordered(entries)])
    return df[cols]
