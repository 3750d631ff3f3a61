"""Workflow error taxonomy.

Every error carries the HTTP status it maps to and whether the caller may
retry.  Route handlers never build error bodies by hand; the exception
handlers registered in ``hedwig.app.main`` render these uniformly.
"""

from enum import Enum
from typing import Optional


def _label(status) -> str:
    if isinstance(status, Enum):
        return status.value
    return str(status)


class WorkflowError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, retry_after: Optional[int] = None):
        self.message = message
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message}
        if self.retryable:
            body["retryable"] = True
            if self.retry_after is not None:
                body["retryAfter"] = self.retry_after
        else:
            body["retryable"] = False
        return body


class NotFoundError(WorkflowError):
    """Entity missing."""

    status_code = 404


class InvalidTransitionError(WorkflowError):
    """Raised when a contract, milestone or payment transition is not allowed."""

    status_code = 400

    def __init__(self, current_status, target_status, reason: str):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {_label(current_status)} to {_label(target_status)}: {reason}"
        )


class NotApprovedError(InvalidTransitionError):
    """Invoice requested for a milestone whose work is not approved."""

    def __init__(self, current_status):
        from hedwig.domain.enums import MilestoneStatus

        super().__init__(
            current_status,
            MilestoneStatus.APPROVED,
            "Milestone must be approved before an invoice can be generated",
        )
        self.message = (
            f"Milestone must be approved before generating invoice "
            f"(current status: {_label(current_status)})"
        )
        self.args = (self.message,)


class UnauthorizedError(WorkflowError):
    """Actor does not own the entity it is acting on."""

    status_code = 403


class ValidationFailedError(WorkflowError):
    """Malformed or missing input."""

    status_code = 400


class TransientStoreError(WorkflowError):
    """A store write failed for infrastructure reasons; safe to retry later."""

    status_code = 500
    retryable = True


class NotificationFailure(Exception):
    """Outbound delivery failed.  Logged by the dispatcher, never surfaced."""
