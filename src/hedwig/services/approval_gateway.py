"""Token-based contract approval and decline.

The approval token is a capability handed to the client by email.  It is
single use: approving or declining clears it, so a declined contract can
never be approved with the same link.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.domain.enums import (
    ContractStatus,
    WorkflowActor,
    WorkflowEntity,
    WorkflowEventType,
)
from hedwig.domain.events import ContractApproved, ContractDeclined
from hedwig.domain.models import Contract
from hedwig.exceptions import (
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
    WorkflowError,
)
from hedwig.infra.clock import ensure_utc, utcnow
from hedwig.services.audit import record_event
from hedwig.services.contract_state_machine import ContractStateMachine, contract_status
from hedwig.services.invoice_service import ContractInvoiceBatch, InvoiceGenerationService
from hedwig.services.notification_service import NotificationService
from hedwig.services.saga import commit_primary

logger = logging.getLogger(__name__)

DEFAULT_DECLINE_REASON = "No reason provided"

state_machine = ContractStateMachine()


@dataclass
class ApprovalResult:
    contract: Contract
    invoices: ContractInvoiceBatch = field(default_factory=ContractInvoiceBatch)


class ApprovalGateway:
    """Approve or decline a contract on behalf of its client."""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService,
        invoices: Optional[InvoiceGenerationService] = None,
    ):
        self.db = db
        self.notifications = notifications
        self.invoices = invoices or InvoiceGenerationService(db)

    async def _get_by_token(self, token: Optional[str]) -> Contract:
        if not token or not token.strip():
            raise ValidationFailedError("Approval token is required")
        result = await self.db.execute(
            select(Contract).where(Contract.approval_token == token.strip())
        )
        contract = result.scalar_one_or_none()
        if contract is None:
            raise NotFoundError("Invalid or expired approval token")

        expires_at = ensure_utc(contract.approval_expires_at)
        if expires_at is not None and utcnow() >= expires_at:
            raise ValidationFailedError("Approval token has expired")
        return contract

    async def approve(self, token: Optional[str]) -> ApprovalResult:
        contract = await self._get_by_token(token)
        return await self._approve(contract)

    async def approve_legacy(self, contract_id: str) -> ApprovalResult:
        """Approve by id, for contracts created without an approval token."""
        contract = await self.db.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")
        if contract_status(contract) == ContractStatus.PENDING_APPROVAL:
            raise UnauthorizedError("This contract can only be approved with its approval link")
        return await self._approve(contract)

    async def _approve(self, contract: Contract) -> ApprovalResult:
        current = contract_status(contract)
        state_machine.validate_transition(current, ContractStatus.APPROVED, WorkflowActor.CLIENT)

        contract.status = ContractStatus.APPROVED.value
        contract.approved_at = utcnow()
        contract.approval_token = None
        contract.approval_expires_at = None
        record_event(
            self.db, WorkflowEntity.CONTRACT, contract.id,
            WorkflowEventType.CONTRACT_APPROVED, WorkflowActor.CLIENT,
            from_status=current, to_status=ContractStatus.APPROVED,
            contract_id=contract.id,
        )
        await commit_primary(self.db, f"approval of contract {contract.id}")

        try:
            batch = await self.invoices.generate_contract_invoices(contract.id)
        except WorkflowError as e:
            logger.error("Invoice fan-out for contract %s failed: %s", contract.id, e)
            batch = ContractInvoiceBatch()

        await self.notifications.notify(
            ContractApproved(contract.id, invoice_count=len(batch.invoices)),
            refresh=batch.invoices,
        )
        return ApprovalResult(contract=contract, invoices=batch)

    async def decline(self, token: Optional[str], reason: Optional[str] = None) -> Contract:
        contract = await self._get_by_token(token)
        current = contract_status(contract)
        state_machine.validate_transition(current, ContractStatus.REJECTED, WorkflowActor.CLIENT)

        reason = (reason or "").strip() or DEFAULT_DECLINE_REASON
        contract.status = ContractStatus.REJECTED.value
        contract.rejected_at = utcnow()
        contract.rejection_reason = reason
        contract.approval_token = None
        contract.approval_expires_at = None
        record_event(
            self.db, WorkflowEntity.CONTRACT, contract.id,
            WorkflowEventType.CONTRACT_REJECTED, WorkflowActor.CLIENT,
            from_status=current, to_status=ContractStatus.REJECTED,
            contract_id=contract.id, data={"reason": reason},
        )
        await commit_primary(self.db, f"decline of contract {contract.id}")

        await self.notifications.notify(ContractDeclined(contract.id, reason))
        return contract
