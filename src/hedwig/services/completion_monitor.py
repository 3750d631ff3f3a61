"""Contract completion monitor.

Invoked after every milestone payment change.  Safe to call redundantly:
multiple payment events may race to satisfy the completion condition, and
only the first one to observe a non-completed contract flips it.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.domain.enums import (
    ContractStatus,
    PaymentStatus,
    WorkflowActor,
    WorkflowEntity,
    WorkflowEventType,
)
from hedwig.domain.events import ContractCompleted
from hedwig.domain.models import Contract, Milestone
from hedwig.exceptions import NotFoundError
from hedwig.infra.clock import utcnow
from hedwig.services.audit import record_event
from hedwig.services.contract_state_machine import ContractStateMachine, contract_status
from hedwig.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")

state_machine = ContractStateMachine()


def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def paid_total(milestones: Iterable[Milestone]) -> Decimal:
    """Sum of what was actually paid on paid milestones."""
    total = Decimal("0")
    for m in milestones:
        if m.payment_status == PaymentStatus.PAID.value:
            total += _dec(m.paid_amount if m.paid_amount is not None else m.amount)
    return total


def is_complete(contract: Contract, milestones: Sequence[Milestone]) -> bool:
    """All milestones paid, or the running total matches the contract total."""
    if milestones and all(m.payment_status == PaymentStatus.PAID.value for m in milestones):
        return True
    return abs(_dec(contract.amount_paid) - _dec(contract.total_amount)) < TOLERANCE


@dataclass
class CompletionCheck:
    contract: Contract
    completed_now: bool = False
    reopened: bool = False


class ContractCompletionMonitor:
    """Recompute a contract's paid total and flip it to completed exactly once."""

    def __init__(self, db: AsyncSession, notifications: Optional[NotificationService] = None):
        self.db = db
        self.notifications = notifications

    async def check(self, contract_id: str) -> CompletionCheck:
        contract = await self.db.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")
        milestones = (
            await self.db.execute(select(Milestone).where(Milestone.contract_id == contract_id))
        ).scalars().all()

        total = paid_total(milestones)
        if total > _dec(contract.total_amount) + TOLERANCE:
            logger.warning(
                "Contract %s paid total %s exceeds contract total %s; capping",
                contract_id, total, contract.total_amount,
            )
            total = _dec(contract.total_amount)
        if _dec(contract.amount_paid) != total:
            contract.amount_paid = total

        current = contract_status(contract)
        complete = is_complete(contract, milestones)
        result = CompletionCheck(contract=contract)

        if complete and current == ContractStatus.APPROVED:
            state_machine.validate_transition(current, ContractStatus.COMPLETED, WorkflowActor.SYSTEM)
            contract.status = ContractStatus.COMPLETED.value
            contract.completed_at = utcnow()
            record_event(
                self.db, WorkflowEntity.CONTRACT, contract.id,
                WorkflowEventType.CONTRACT_COMPLETED, WorkflowActor.SYSTEM,
                from_status=current, to_status=ContractStatus.COMPLETED,
                contract_id=contract.id, data={"amount_paid": str(total)},
            )
            result.completed_now = True
        elif not complete and current == ContractStatus.COMPLETED:
            # A paid milestone was rolled back
            state_machine.validate_transition(current, ContractStatus.APPROVED, WorkflowActor.SYSTEM)
            contract.status = ContractStatus.APPROVED.value
            contract.completed_at = None
            record_event(
                self.db, WorkflowEntity.CONTRACT, contract.id,
                WorkflowEventType.CONTRACT_REOPENED, WorkflowActor.SYSTEM,
                from_status=current, to_status=ContractStatus.APPROVED,
                contract_id=contract.id, data={"amount_paid": str(total)},
            )
            result.reopened = True
            logger.warning("Contract %s reopened after payment rollback", contract.id)

        await self.db.commit()

        if result.completed_now:
            logger.info("Contract %s completed (paid %s)", contract.id, total)
            if self.notifications is not None:
                await self.notifications.notify(ContractCompleted(contract.id, total))
        return result
