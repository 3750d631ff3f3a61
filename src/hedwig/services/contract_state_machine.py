"""Contract state machine.

``completed`` is derived from milestone payments and ``rejected`` is
terminal.  The single backward edge, ``completed -> approved``, exists only
for the audited payment rollback path.
"""

from hedwig.domain.enums import ContractStatus, WorkflowActor
from hedwig.exceptions import InvalidTransitionError

C = ContractStatus
A = WorkflowActor

TRANSITION_MAP: dict[ContractStatus, dict[ContractStatus, set[WorkflowActor]]] = {
    C.PENDING_APPROVAL: {
        C.APPROVED: {A.CLIENT},
        C.REJECTED: {A.CLIENT},
    },
    C.CREATED: {
        C.APPROVED: {A.CLIENT},
        C.REJECTED: {A.CLIENT},
    },
    C.APPROVED: {
        C.COMPLETED: {A.SYSTEM},
    },
    C.COMPLETED: {
        C.APPROVED: {A.SYSTEM},  # reopened after a payment rollback
    },
}

TERMINAL_STATES: set[ContractStatus] = {C.REJECTED}

# Human-readable reasons for the common client mistakes
_REPEAT_ACTION_REASONS: dict[ContractStatus, str] = {
    C.APPROVED: "Contract has already been approved",
    C.COMPLETED: "Contract has already been completed",
    C.REJECTED: "Contract has already been declined",
}


def contract_status(contract) -> ContractStatus:
    """Get ContractStatus enum from model (stored as string)."""
    s = contract.status
    if isinstance(s, ContractStatus):
        return s
    return ContractStatus(s)


class ContractStateMachine:
    """Validates contract state transitions."""

    def validate_transition(
        self,
        current_status: ContractStatus,
        target_status: ContractStatus,
        actor: WorkflowActor,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        allowed_targets = TRANSITION_MAP.get(current_status, {})
        if target_status not in allowed_targets:
            reason = _REPEAT_ACTION_REASONS.get(current_status)
            if reason is None or actor != A.CLIENT:
                reason = (
                    f"Transition from {current_status.value} to {target_status.value} is not allowed"
                )
            raise InvalidTransitionError(current_status, target_status, reason)

        if actor not in allowed_targets[target_status]:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition",
            )
        return True

    def is_terminal(self, status: ContractStatus) -> bool:
        return status in TERMINAL_STATES
