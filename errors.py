"""
errors.py
Exception types raised by the workflow and calculation layers
"""

from typing import Optional


class FundAdminError(Exception):
    """Base error for domain/application exceptions."""


class ValidationError(FundAdminError):
    """Missing or out-of-range input. Raised before any state change."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class AuthorizationError(FundAdminError):
    """Actor lacks the role or ownership required for the action."""


class NotFoundError(FundAdminError):
    """Referenced entity does not exist."""

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class StateConflictError(FundAdminError):
    """Persisted state no longer matches the operation's precondition.

    Callers should re-fetch the record and decide whether to retry.
    """

    def __init__(self, message: str, expected=None, actual=None):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class WaterfallAlreadyAppliedError(StateConflictError):
    """Waterfall was already applied to the distribution."""

    def __init__(self, distribution_id, message: Optional[str] = None):
        self.distribution_id = distribution_id
        super().__init__(
            message or f"Waterfall already applied to distribution {distribution_id}",
            expected=False,
            actual=True,
        )
