"""
ports.py
Collaborator interfaces consumed by the workflow, with default implementations

- PersistencePort: load-by-id, conditional status write, history append,
  allocation bulk read, unit of work (SqliteStore implements it)
- Authorizer: may this actor perform this operation on this record?
- Notifier: fire-and-forget "transition happened" events
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ContextManager, Dict, List, Optional

from config import (Role, ApprovalStatus, EntityType, NOTIFICATION_AUDIENCE,
                    OP_CFO_APPROVE, PENDING_CFO_OPERATIONS)
from errors import AuthorizationError
from models import Actor, ApprovalHistoryEntry, FundContext

logger = logging.getLogger(__name__)


# ============================================================
# PORTS
# ============================================================

class PersistencePort(ABC):
    """Storage operations the workflow relies on"""

    @abstractmethod
    def unit_of_work(self) -> ContextManager[Any]:
        """All writes inside commit together or not at all"""

    @abstractmethod
    def load(self, entity_type: EntityType, entity_id: str) -> Any:
        pass

    @abstractmethod
    def require(self, entity_type: EntityType, entity_id: str) -> Any:
        pass

    @abstractmethod
    def list_transactions(self, entity_type: EntityType, structure_id: Optional[str] = None,
                          approval_statuses=None, created_by: Optional[str] = None) -> list:
        pass

    @abstractmethod
    def update_status_if(self, entity_type: EntityType, entity_id: str,
                         expected: ApprovalStatus, new: ApprovalStatus) -> bool:
        """Write new only if the stored status still equals expected"""

    @abstractmethod
    def append_history(self, entry: ApprovalHistoryEntry) -> ApprovalHistoryEntry:
        pass

    @abstractmethod
    def list_allocations(self, entity_type: EntityType, entity_id: str) -> list:
        pass


class Authorizer(ABC):
    @abstractmethod
    def authorize(self, actor: Actor, transaction: Any, operation: str) -> None:
        """Raise AuthorizationError unless actor may perform operation on transaction"""

    @abstractmethod
    def authorize_structure(self, actor: Actor, fund: FundContext, operation: str) -> None:
        pass


@dataclass(frozen=True)
class TransitionEvent:
    """Committed workflow transition, as handed to the notifier"""
    entity_type: EntityType
    entity_id: str
    action: str
    from_status: Optional[ApprovalStatus]
    to_status: Optional[ApprovalStatus]
    actor_id: str
    audience: str                     # "approvers" or "creator"
    recipients: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    @abstractmethod
    def notify(self, event: TransitionEvent) -> None:
        pass


def build_event(entry: ApprovalHistoryEntry, transaction: Any) -> TransitionEvent:
    """
    Resolve the audience of a transition.

    Submissions go to the approvers (root users); every other outcome goes
    back to whoever created the record.
    """
    audience = NOTIFICATION_AUDIENCE.get(entry.action, "creator")
    recipients = [] if audience == "approvers" else [r for r in [transaction.created_by] if r]
    return TransitionEvent(
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        action=entry.action,
        from_status=entry.from_status,
        to_status=entry.to_status,
        actor_id=entry.user_id,
        audience=audience,
        recipients=recipients,
        notes=entry.notes,
        metadata=dict(entry.metadata),
    )


# ============================================================
# DEFAULT IMPLEMENTATIONS
# ============================================================

class RoleAuthorizer(Authorizer):
    """
    Role/ownership rules:
    - ROOT may act on any record at any stage
    - ADMIN may act only on records it created, never at pending_cfo,
      and never perform the CFO approval
    - SUPPORT and INVESTOR may not perform workflow operations

    Ownership is read from the persisted record passed in, never from the request.
    """

    def authorize(self, actor: Actor, transaction: Any, operation: str) -> None:
        role = Role.from_code(actor.role)
        stage = transaction.approval_status

        if role is Role.ROOT:
            return
        elif role is Role.ADMIN:
            if operation == OP_CFO_APPROVE:
                raise AuthorizationError("Only the CFO (root) can give final approval")
            if stage == ApprovalStatus.PENDING_CFO and operation in PENDING_CFO_OPERATIONS:
                raise AuthorizationError(
                    f"Only the CFO (root) can {operation.replace('_', ' ')} at pending_cfo")
            if transaction.created_by != actor.user_id:
                raise AuthorizationError(
                    f"Administrator {actor.user_id} can only act on transactions they created")
            return
        elif role is Role.SUPPORT:
            raise AuthorizationError(f"Support users cannot {operation.replace('_', ' ')}")
        elif role is Role.INVESTOR:
            raise AuthorizationError(f"Investors cannot {operation.replace('_', ' ')}")
        else:
            raise AuthorizationError(f"Unhandled role {role!r}")

    def authorize_structure(self, actor: Actor, fund: FundContext, operation: str) -> None:
        role = Role.from_code(actor.role)

        if role is Role.ROOT:
            return
        elif role is Role.ADMIN:
            if fund.created_by != actor.user_id:
                raise AuthorizationError(
                    f"Administrator {actor.user_id} does not manage structure {fund.id}")
            return
        elif role in (Role.SUPPORT, Role.INVESTOR):
            raise AuthorizationError(f"{role.name.title()} users cannot {operation.replace('_', ' ')}")
        else:
            raise AuthorizationError(f"Unhandled role {role!r}")


class LoggingNotifier(Notifier):
    """Notifier that only logs; downstream email/document systems plug in here"""

    def notify(self, event: TransitionEvent) -> None:
        logger.info(
            f"Notify {event.audience} {event.recipients or ''}: {event.entity_type.value} "
            f"{event.entity_id} {event.action} "
            f"({getattr(event.from_status, 'value', None)} -> {getattr(event.to_status, 'value', None)})"
        )
