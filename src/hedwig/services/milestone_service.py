"""Milestone work lifecycle: start, submit, approve, request changes."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.domain.enums import (
    ContractStatus,
    MilestoneStatus,
    WorkflowActor,
    WorkflowEntity,
    WorkflowEventType,
)
from hedwig.domain.events import ChangesRequested, MilestoneApproved, MilestoneSubmitted
from hedwig.domain.models import Contract, Invoice, Milestone
from hedwig.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
    WorkflowError,
)
from hedwig.infra.clock import utcnow
from hedwig.services.audit import record_event
from hedwig.services.contract_state_machine import contract_status
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.milestone_state_machine import MilestoneStateMachine, work_status
from hedwig.services.notification_service import NotificationService
from hedwig.services.saga import commit_primary

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_FEEDBACK = "Approved by client"

S = MilestoneStatus
A = WorkflowActor

state_machine = MilestoneStateMachine()


@dataclass
class MilestoneTransitionResult:
    milestone: Milestone
    invoice: Optional[Invoice] = None
    invoice_error: Optional[WorkflowError] = None


def _required(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationFailedError(f"{field_name} is required")
    return str(value).strip()


class MilestoneService:
    """Validate and apply milestone work transitions."""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService,
        invoices: Optional[InvoiceGenerationService] = None,
    ):
        self.db = db
        self.notifications = notifications
        self.invoices = invoices or InvoiceGenerationService(db)

    async def _load(self, milestone_id: str) -> tuple[Milestone, Contract]:
        milestone = await self.db.get(Milestone, milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found")
        contract = await self.db.get(Contract, milestone.contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")
        return milestone, contract

    def _check_client(self, contract: Contract, client_email: Optional[str]) -> None:
        if client_email and client_email.strip().lower() != contract.client_email.lower():
            raise UnauthorizedError("Only the contract's client can review this milestone")

    def _check_freelancer(self, contract: Contract, freelancer_id: Optional[str]) -> None:
        if freelancer_id and freelancer_id != contract.freelancer_id:
            raise UnauthorizedError("Only the contract's freelancer can work on this milestone")

    async def transition_milestone(
        self,
        milestone_id: str,
        target,
        payload: Optional[dict] = None,
    ) -> MilestoneTransitionResult:
        """Route a requested work status to the matching operation.

        The requested target is never guessed: anything other than the four
        work operations raises InvalidTransitionError.
        """
        target = MilestoneStatus(target)
        payload = payload or {}
        if target == S.IN_PROGRESS:
            return await self.start(
                milestone_id, payload.get("freelancer_id"), contract_id=payload.get("contract_id"),
            )
        if target == S.SUBMITTED:
            return await self.submit(
                milestone_id,
                payload.get("deliverables"),
                payload.get("completion_notes"),
                freelancer_id=payload.get("freelancer_id"),
            )
        if target == S.APPROVED:
            return await self.approve(
                milestone_id,
                feedback=payload.get("feedback"),
                client_email=payload.get("client_email"),
            )
        if target == S.CHANGES_REQUESTED:
            return await self.request_changes(
                milestone_id,
                payload.get("changes_requested"),
                client_email=payload.get("client_email"),
            )
        milestone, _ = await self._load(milestone_id)
        raise InvalidTransitionError(
            work_status(milestone), target, f"{target.value} cannot be requested directly",
        )

    async def start(
        self,
        milestone_id: str,
        freelancer_id: Optional[str],
        contract_id: Optional[str] = None,
    ) -> MilestoneTransitionResult:
        milestone, contract = await self._load(milestone_id)
        if contract_id and contract_id != milestone.contract_id:
            raise NotFoundError("Milestone not found for this contract")
        if not freelancer_id:
            raise ValidationFailedError("freelancer_id is required")
        if freelancer_id != contract.freelancer_id:
            raise UnauthorizedError("Only the contract's freelancer can start this milestone")

        current = work_status(milestone)
        state_machine.validate_transition(current, S.IN_PROGRESS, A.FREELANCER)
        if contract_status(contract) != ContractStatus.APPROVED:
            raise InvalidTransitionError(
                current, S.IN_PROGRESS,
                f"Contract must be approved before work starts (contract status: {contract.status})",
            )

        milestone.status = S.IN_PROGRESS.value
        milestone.started_at = utcnow()
        record_event(
            self.db, WorkflowEntity.MILESTONE, milestone.id,
            WorkflowEventType.MILESTONE_STARTED, A.FREELANCER,
            from_status=current, to_status=S.IN_PROGRESS, contract_id=contract.id,
        )
        await commit_primary(self.db, f"start of milestone {milestone.id}")
        return MilestoneTransitionResult(milestone=milestone)

    async def submit(
        self,
        milestone_id: str,
        deliverables: Optional[str],
        completion_notes: Optional[str],
        freelancer_id: Optional[str] = None,
    ) -> MilestoneTransitionResult:
        milestone, contract = await self._load(milestone_id)
        deliverables = _required(deliverables, "deliverables")
        completion_notes = _required(completion_notes, "completion_notes")
        self._check_freelancer(contract, freelancer_id)

        current = work_status(milestone)
        state_machine.validate_transition(current, S.SUBMITTED, A.FREELANCER)

        milestone.status = S.SUBMITTED.value
        milestone.deliverables = deliverables
        milestone.completion_notes = completion_notes
        milestone.submitted_at = utcnow()
        record_event(
            self.db, WorkflowEntity.MILESTONE, milestone.id,
            WorkflowEventType.MILESTONE_SUBMITTED, A.FREELANCER,
            from_status=current, to_status=S.SUBMITTED, contract_id=contract.id,
        )
        await commit_primary(self.db, f"submission of milestone {milestone.id}")

        await self.notifications.notify(MilestoneSubmitted(contract.id, milestone.id))
        return MilestoneTransitionResult(milestone=milestone)

    async def approve(
        self,
        milestone_id: str,
        feedback: Optional[str] = None,
        client_email: Optional[str] = None,
    ) -> MilestoneTransitionResult:
        """Approve submitted work, then issue its invoice.

        An invoice failure is reported on the result; it never unwinds the
        approval, and the invoice can be regenerated later.
        """
        milestone, contract = await self._load(milestone_id)
        self._check_client(contract, client_email)

        current = work_status(milestone)
        state_machine.validate_transition(current, S.APPROVED, A.CLIENT)

        feedback = (feedback or "").strip() or DEFAULT_APPROVAL_FEEDBACK
        milestone.status = S.APPROVED.value
        milestone.approval_feedback = feedback
        milestone.approved_at = utcnow()
        record_event(
            self.db, WorkflowEntity.MILESTONE, milestone.id,
            WorkflowEventType.MILESTONE_APPROVED, A.CLIENT,
            from_status=current, to_status=S.APPROVED, contract_id=contract.id,
            data={"feedback": feedback},
        )
        await commit_primary(self.db, f"approval of milestone {milestone.id}")

        result = MilestoneTransitionResult(milestone=milestone)
        try:
            result.invoice = (await self.invoices.generate_invoice(milestone.id)).invoice
        except WorkflowError as e:
            logger.error("Invoice generation after approving milestone %s failed: %s", milestone.id, e)
            result.invoice_error = e

        await self.notifications.notify(
            MilestoneApproved(
                contract.id, milestone.id, feedback,
                invoice_number=result.invoice.invoice_number if result.invoice else None,
            ),
            refresh=[result.invoice],
        )
        return result

    async def request_changes(
        self,
        milestone_id: str,
        changes_requested: Optional[str],
        client_email: Optional[str] = None,
    ) -> MilestoneTransitionResult:
        """Send submitted work back; the milestone re-opens at in_progress."""
        milestone, contract = await self._load(milestone_id)
        changes_requested = _required(changes_requested, "changes_requested")
        self._check_client(contract, client_email)

        current = work_status(milestone)
        state_machine.validate_transition(current, S.CHANGES_REQUESTED, A.CLIENT)
        state_machine.validate_transition(S.CHANGES_REQUESTED, S.IN_PROGRESS, A.SYSTEM)

        milestone.changes_requested = changes_requested
        milestone.changes_requested_at = utcnow()
        milestone.status = S.IN_PROGRESS.value
        record_event(
            self.db, WorkflowEntity.MILESTONE, milestone.id,
            WorkflowEventType.MILESTONE_CHANGES_REQUESTED, A.CLIENT,
            from_status=current, to_status=S.CHANGES_REQUESTED, contract_id=contract.id,
            data={"changes_requested": changes_requested},
        )
        record_event(
            self.db, WorkflowEntity.MILESTONE, milestone.id,
            WorkflowEventType.MILESTONE_REOPENED, A.SYSTEM,
            from_status=S.CHANGES_REQUESTED, to_status=S.IN_PROGRESS, contract_id=contract.id,
        )
        await commit_primary(self.db, f"change request on milestone {milestone.id}")

        await self.notifications.notify(ChangesRequested(contract.id, milestone.id, changes_requested))
        return MilestoneTransitionResult(milestone=milestone)
