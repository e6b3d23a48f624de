"""
approval.py
Approval workflow for capital calls and distributions

    draft -> pending_review -> pending_cfo -> approved
                  |                 |
                  +-> rejected <----+
                  +-> draft    <----+   (changes requested)

Every transition:
- validates its payload and authorizes the actor before touching state
- re-reads the persisted record and checks its status is the operation's
  precondition (and the caller's expectation, when one is given)
- writes the new status with a compare-and-swap and appends the history
  entry in the same unit of work
- notifies after commit; notifier failures are logged and swallowed
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import (ApprovalStatus, EntityType, Role, PENDING_STATUSES,
                    ACTION_SUBMITTED, ACTION_CFO_SUBMITTED, ACTION_APPROVED, ACTION_CFO_APPROVED,
                    ACTION_REJECTED, ACTION_CHANGES_REQUESTED,
                    OP_SUBMIT, OP_APPROVE, OP_CFO_APPROVE, OP_REJECT, OP_REQUEST_CHANGES)
from errors import AuthorizationError, StateConflictError, ValidationError
from models import Actor, TransitionResult
from ports import RoleAuthorizer, LoggingNotifier, build_event
import audit

logger = logging.getLogger(__name__)

# Aliases accepted by transition() (snake_case and the camelCase route names)
ACTION_ALIASES = {
    "submit": OP_SUBMIT,
    "submit_for_review": OP_SUBMIT,
    "submitForReview": OP_SUBMIT,
    "approve": OP_APPROVE,
    "cfo_approve": OP_CFO_APPROVE,
    "cfoApprove": OP_CFO_APPROVE,
    "reject": OP_REJECT,
    "request_changes": OP_REQUEST_CHANGES,
    "requestChanges": OP_REQUEST_CHANGES,
}

# String spellings accepted for boolean payload flags
FLAG_VALUES = {"true": True, "yes": True, "1": True, "false": False, "no": False, "0": False}


def _require_text(field: str, value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(field, "is required")
    return str(value).strip()


def _parse_flag(field: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in FLAG_VALUES:
        return FLAG_VALUES[value.strip().lower()]
    raise ValidationError(field, f"must be true or false, got {value!r}")


class ApprovalWorkflow:
    """
    Approval state machine over a persistence port.

    Args:
        store: PersistencePort (SqliteStore)
        authorizer: Role/ownership rules (RoleAuthorizer by default)
        notifier: Transition notifications (LoggingNotifier by default)
    """

    def __init__(self, store, authorizer=None, notifier=None):
        self.store = store
        self.authorizer = authorizer or RoleAuthorizer()
        self.notifier = notifier or LoggingNotifier()

    # --------------------------------------------------------
    # Core
    # --------------------------------------------------------

    def _execute(
        self,
        entity_type: EntityType,
        entity_id: str,
        actor: Actor,
        operation: str,
        allowed_from: Tuple[ApprovalStatus, ...],
        outcome: Callable[[ApprovalStatus], Tuple[ApprovalStatus, str]],
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> TransitionResult:
        entity_type = EntityType(entity_type)

        with self.store.unit_of_work():
            txn = self.store.require(entity_type, entity_id)
            self.authorizer.authorize(actor, txn, operation)

            current = txn.approval_status
            if expected_status is not None and ApprovalStatus(expected_status) != current:
                raise StateConflictError(
                    f"{entity_type.value} {entity_id} is {current.value}, "
                    f"expected {ApprovalStatus(expected_status).value}",
                    expected=ApprovalStatus(expected_status), actual=current,
                )
            if current not in allowed_from:
                raise StateConflictError(
                    f"Cannot {operation.replace('_', ' ')} {entity_type.value} {entity_id} "
                    f"from {current.value}",
                    expected=allowed_from, actual=current,
                )

            new_status, action = outcome(current)
            if not self.store.update_status_if(entity_type, entity_id, current, new_status):
                actual = self.store.require(entity_type, entity_id).approval_status
                raise StateConflictError(
                    f"{entity_type.value} {entity_id} changed concurrently "
                    f"({current.value} -> {actual.value})",
                    expected=current, actual=actual,
                )
            entry = audit.record(self.store, entity_type, entity_id, action, current, new_status,
                                 actor, notes, metadata)
            txn = self.store.require(entity_type, entity_id)

        logger.info(
            f"{entity_type.value} {entity_id}: {action} by {actor.user_id} "
            f"({current.value} -> {new_status.value})"
        )
        self._notify(entry, txn)
        return TransitionResult(transaction=txn, audit_entry=entry)

    def _notify(self, entry, txn):
        try:
            self.notifier.notify(build_event(entry, txn))
        except Exception as e:
            logger.warning(f"Notification for {entry.entity_type.value} {entry.entity_id} "
                           f"({entry.action}) failed: {e}")

    # --------------------------------------------------------
    # Operations
    # --------------------------------------------------------

    def submit_for_review(self, entity_type, entity_id: str, actor: Actor,
                          notes: Optional[str] = None,
                          expected_status: Optional[ApprovalStatus] = None) -> TransitionResult:
        """draft -> pending_review"""
        return self._execute(
            entity_type, entity_id, actor, OP_SUBMIT,
            (ApprovalStatus.DRAFT,),
            lambda _: (ApprovalStatus.PENDING_REVIEW, ACTION_SUBMITTED),
            notes=notes, expected_status=expected_status,
        )

    def approve(self, entity_type, entity_id: str, actor: Actor, require_cfo: bool = True,
                notes: Optional[str] = None,
                expected_status: Optional[ApprovalStatus] = None) -> TransitionResult:
        """pending_review -> pending_cfo (require_cfo) or approved"""
        if require_cfo:
            outcome = lambda _: (ApprovalStatus.PENDING_CFO, ACTION_CFO_SUBMITTED)
        else:
            outcome = lambda _: (ApprovalStatus.APPROVED, ACTION_APPROVED)
        return self._execute(
            entity_type, entity_id, actor, OP_APPROVE,
            (ApprovalStatus.PENDING_REVIEW,), outcome,
            notes=notes, metadata={'requireCFO': bool(require_cfo)},
            expected_status=expected_status,
        )

    def cfo_approve(self, entity_type, entity_id: str, actor: Actor,
                    notes: Optional[str] = None,
                    expected_status: Optional[ApprovalStatus] = None) -> TransitionResult:
        """pending_cfo -> approved (root only)"""
        return self._execute(
            entity_type, entity_id, actor, OP_CFO_APPROVE,
            (ApprovalStatus.PENDING_CFO,),
            lambda _: (ApprovalStatus.APPROVED, ACTION_CFO_APPROVED),
            notes=notes, expected_status=expected_status,
        )

    def reject(self, entity_type, entity_id: str, actor: Actor, reason: str,
               expected_status: Optional[ApprovalStatus] = None) -> TransitionResult:
        """pending_review | pending_cfo -> rejected"""
        reason = _require_text("reason", reason)
        return self._execute(
            entity_type, entity_id, actor, OP_REJECT,
            PENDING_STATUSES,
            lambda _: (ApprovalStatus.REJECTED, ACTION_REJECTED),
            notes=reason, metadata={'reason': reason}, expected_status=expected_status,
        )

    def request_changes(self, entity_type, entity_id: str, actor: Actor, notes: str,
                        expected_status: Optional[ApprovalStatus] = None) -> TransitionResult:
        """pending_review | pending_cfo -> draft"""
        notes = _require_text("notes", notes)
        return self._execute(
            entity_type, entity_id, actor, OP_REQUEST_CHANGES,
            PENDING_STATUSES,
            lambda _: (ApprovalStatus.DRAFT, ACTION_CHANGES_REQUESTED),
            notes=notes, expected_status=expected_status,
        )

    def transition(self, entity_type, entity_id: str, action: str, actor: Actor,
                   payload: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """
        Single entry point: dispatch an action name with its payload.

        Payload keys: requireCFO, reason, notes, expectedStatus.
        """
        payload = payload or {}
        op = ACTION_ALIASES.get(action)
        if op is None:
            raise ValidationError("action", f"unknown action {action!r}")

        expected = payload.get('expectedStatus', payload.get('expected_status'))
        expected = ApprovalStatus(expected) if expected is not None else None
        notes = payload.get('notes')

        if op == OP_SUBMIT:
            return self.submit_for_review(entity_type, entity_id, actor, notes, expected)
        elif op == OP_APPROVE:
            require_cfo = _parse_flag('requireCFO',
                                      payload.get('requireCFO', payload.get('require_cfo', True)))
            return self.approve(entity_type, entity_id, actor, require_cfo, notes, expected)
        elif op == OP_CFO_APPROVE:
            return self.cfo_approve(entity_type, entity_id, actor, notes, expected)
        elif op == OP_REJECT:
            return self.reject(entity_type, entity_id, actor, payload.get('reason'), expected)
        elif op == OP_REQUEST_CHANGES:
            return self.request_changes(entity_type, entity_id, actor, notes, expected)
        else:
            raise ValidationError("action", f"unhandled action {action!r}")

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def pending_approval(self, actor: Actor, entity_type: Optional[EntityType] = None) -> List[Any]:
        """
        Transactions waiting in pending_review or pending_cfo.

        Root sees everything; administrators see only what they created.
        """
        role = Role.from_code(actor.role)
        if role is Role.ROOT:
            created_by = None
        elif role is Role.ADMIN:
            created_by = actor.user_id
        else:
            raise AuthorizationError(f"{role.name.title()} users cannot view the approval queue")

        types = [EntityType(entity_type)] if entity_type else list(EntityType)
        out = []
        for et in types:
            out.extend(self.store.list_transactions(et, approval_statuses=PENDING_STATUSES,
                                                    created_by=created_by))
        return out

    def history(self, entity_type, entity_id: str):
        self.store.require(entity_type, entity_id)
        return audit.get_history(self.store, entity_type, entity_id)
