"""Milestone state machine: work lifecycle and payment lifecycle.

Work and payment are tracked independently on the same row; the only
coupling is that a milestone may not be paid before its work is approved.
"""

from hedwig.domain.enums import (
    InvoiceStatus,
    MilestoneStatus,
    PaymentStatus,
    WorkflowActor,
)
from hedwig.exceptions import InvalidTransitionError


# ---------------------------------------------------------------------------
# Work transitions: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = MilestoneStatus
P = PaymentStatus
A = WorkflowActor

TRANSITION_MAP: dict[MilestoneStatus, dict[MilestoneStatus, set[WorkflowActor]]] = {
    S.PENDING: {
        S.IN_PROGRESS: {A.FREELANCER},
    },
    S.IN_PROGRESS: {
        S.SUBMITTED: {A.FREELANCER},
    },
    S.SUBMITTED: {
        S.APPROVED: {A.CLIENT},
        S.CHANGES_REQUESTED: {A.CLIENT},
    },
    S.CHANGES_REQUESTED: {
        S.IN_PROGRESS: {A.SYSTEM, A.FREELANCER},
    },
}

TERMINAL_STATES: set[MilestoneStatus] = {S.APPROVED}

# ---------------------------------------------------------------------------
# Payment transitions: from_status -> allowed targets
# ---------------------------------------------------------------------------

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    P.UNPAID: {P.PROCESSING, P.PAID},
    P.PROCESSING: {P.PAID, P.FAILED, P.UNPAID},
    P.PAID: {P.UNPAID},  # explicit rollback only
    P.FAILED: {P.PROCESSING, P.UNPAID},
}

# Invoice status is a projection of the milestone's payment status
INVOICE_STATUS_FOR_PAYMENT: dict[PaymentStatus, InvoiceStatus] = {
    P.UNPAID: InvoiceStatus.PENDING,
    P.PROCESSING: InvoiceStatus.PROCESSING,
    P.PAID: InvoiceStatus.PAID,
    P.FAILED: InvoiceStatus.PENDING,
}


def work_status(milestone) -> MilestoneStatus:
    """Get MilestoneStatus enum from model (stored as string)."""
    s = milestone.status
    if isinstance(s, MilestoneStatus):
        return s
    return MilestoneStatus(s)


def payment_status(milestone) -> PaymentStatus:
    """Get PaymentStatus enum from model (stored as string)."""
    s = milestone.payment_status
    if isinstance(s, PaymentStatus):
        return s
    return PaymentStatus(s)


class MilestoneStateMachine:
    """Validates milestone work and payment transitions."""

    def validate_transition(
        self,
        current_status: MilestoneStatus,
        target_status: MilestoneStatus,
        actor: WorkflowActor,
    ) -> bool:
        """Return True if the work transition is valid. Raise InvalidTransitionError if not."""
        allowed_targets = TRANSITION_MAP.get(current_status)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"No transitions allowed from {current_status.value}",
            )

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )
        return True

    def validate_payment_transition(
        self,
        current_status: PaymentStatus,
        target_status: PaymentStatus,
        work: MilestoneStatus,
    ) -> bool:
        """Return True if the payment transition is valid. Raise InvalidTransitionError if not.

        Checks:
        1. The transition is in the payment map.
        2. Only approved work can be paid.
        """
        if target_status not in PAYMENT_TRANSITIONS.get(current_status, set()):
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Payment transition from {current_status.value} to {target_status.value} is not allowed",
            )

        if target_status == P.PAID and work != S.APPROVED:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Milestone work must be approved before it can be paid (current status: {work.value})",
            )
        return True

    def get_allowed_transitions(
        self,
        current_status: MilestoneStatus,
        actor: WorkflowActor,
    ) -> list[MilestoneStatus]:
        """Return list of work statuses the actor can move to from the current one."""
        allowed_targets = TRANSITION_MAP.get(current_status, {})
        return [target for target, actors in allowed_targets.items() if actor in actors]

    def is_terminal(self, status: MilestoneStatus) -> bool:
        return status in TERMINAL_STATES
