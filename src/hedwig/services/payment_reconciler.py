"""Payment status reconciler.

The single authoritative path for milestone payment transitions, reached
from the explicit payment-status endpoint, the payment webhook and payment
initiation.  The milestone's payment state is the source of truth; the
linked invoice is a best-effort projection of it.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import get_settings
from hedwig.domain.enums import (
    InvoiceStatus,
    MilestoneStatus,
    PaymentEventStatus,
    PaymentStatus,
    WorkflowActor,
    WorkflowEntity,
    WorkflowEventType,
)
from hedwig.domain.events import PaymentFailed, PaymentProcessing, PaymentReceived
from hedwig.domain.models import Contract, Invoice, Milestone
from hedwig.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from hedwig.infra.clock import utcnow
from hedwig.services.audit import record_event
from hedwig.services.completion_monitor import CompletionCheck, ContractCompletionMonitor
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.milestone_state_machine import (
    INVOICE_STATUS_FOR_PAYMENT,
    MilestoneStateMachine,
    payment_status,
    work_status,
)
from hedwig.services.notification_service import NotificationService
from hedwig.services.saga import commit_primary, run_best_effort

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")
DEFAULT_FAILURE_REASON = "Payment failed"

state_machine = MilestoneStateMachine()


@dataclass
class PaymentUpdateResult:
    milestone: Milestone
    invoice: Optional[Invoice]
    rollback_performed: bool
    contract_completed: bool = False


@dataclass
class PaymentEvent:
    """External payment confirmation, keyed by exactly one entity id."""

    amount: Decimal
    currency: str
    status: str
    transaction_hash: Optional[str] = None
    invoice_id: Optional[str] = None
    milestone_id: Optional[str] = None
    contract_id: Optional[str] = None


@dataclass
class PaymentEventOutcome:
    processed: bool
    message: str
    duplicate: bool = False
    result: Optional[PaymentUpdateResult] = None


@dataclass
class PaymentInitiation:
    milestone: Milestone
    invoice: Optional[Invoice]
    redirect_url: Optional[str]
    already_paid: bool = False


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class PaymentReconciler:
    """Drive milestone payment status and keep invoice and contract in step."""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService,
        invoices: Optional[InvoiceGenerationService] = None,
    ):
        self.db = db
        self.notifications = notifications
        self.invoices = invoices or InvoiceGenerationService(db)
        self.monitor = ContractCompletionMonitor(db, notifications)

    async def _get_milestone(self, milestone_id: str) -> Milestone:
        milestone = await self.db.get(Milestone, milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found")
        return milestone

    # ------------------------------------------------------------------
    # Explicit status updates
    # ------------------------------------------------------------------

    async def update_payment_status(
        self,
        milestone_id: str,
        target,
        transaction_hash: Optional[str] = None,
        payment_amount=None,
        failure_reason: Optional[str] = None,
        rollback_on_failure: bool = True,
        actor: WorkflowActor = WorkflowActor.SYSTEM,
    ) -> PaymentUpdateResult:
        """Validate and apply a payment transition, then run the follow-up saga.

        Raises:
            NotFoundError: milestone missing.
            ValidationFailedError: ``paid`` without a transaction hash, or a bad amount.
            InvalidTransitionError: transition not in the payment map, or work not approved.
            TransientStoreError: the milestone write itself failed.
        """
        target = PaymentStatus(target)
        milestone = await self._get_milestone(milestone_id)
        current = payment_status(milestone)

        if target == PaymentStatus.PAID and not transaction_hash:
            raise ValidationFailedError("transaction_hash is required to mark a payment as paid")
        state_machine.validate_payment_transition(current, target, work_status(milestone))

        now = utcnow()
        rollback_performed = target == PaymentStatus.FAILED and rollback_on_failure
        event_data: dict = {}

        if target == PaymentStatus.PAID:
            amount = _dec(payment_amount) if payment_amount is not None else _dec(milestone.amount)
            if amount <= 0:
                raise ValidationFailedError("Payment amount must be positive")
            if amount > _dec(milestone.amount) + TOLERANCE:
                raise ValidationFailedError(
                    f"Payment amount {amount} exceeds milestone amount {milestone.amount}"
                )
            milestone.payment_status = PaymentStatus.PAID.value
            milestone.transaction_hash = transaction_hash
            milestone.paid_amount = amount
            milestone.paid_at = now
            milestone.payment_failure_reason = None
            event_data = {"transaction_hash": transaction_hash, "paid_amount": str(amount)}
        elif target == PaymentStatus.PROCESSING:
            milestone.payment_status = PaymentStatus.PROCESSING.value
            milestone.transaction_hash = None
            milestone.paid_at = None
            milestone.paid_amount = None
            milestone.payment_failure_reason = None
        elif target == PaymentStatus.FAILED:
            failure_reason = failure_reason or DEFAULT_FAILURE_REASON
            milestone.payment_failure_reason = failure_reason
            milestone.payment_status = (
                PaymentStatus.UNPAID.value if rollback_performed else PaymentStatus.FAILED.value
            )
            if rollback_performed:
                milestone.transaction_hash = None
                milestone.paid_amount = None
                milestone.paid_at = None
            event_data = {"failure_reason": failure_reason}
        else:
            milestone.payment_status = PaymentStatus.UNPAID.value
            milestone.transaction_hash = None
            milestone.paid_amount = None
            milestone.paid_at = None

        explicit_rollback = current == PaymentStatus.PAID and target == PaymentStatus.UNPAID
        record_event(
            self.db, WorkflowEntity.MILESTONE, milestone.id,
            WorkflowEventType.PAYMENT_ROLLED_BACK if explicit_rollback
            else WorkflowEventType.PAYMENT_STATUS_CHANGED,
            actor, from_status=current, to_status=target,
            contract_id=milestone.contract_id, data=event_data or None,
        )
        if rollback_performed:
            record_event(
                self.db, WorkflowEntity.MILESTONE, milestone.id,
                WorkflowEventType.PAYMENT_ROLLED_BACK, WorkflowActor.SYSTEM,
                from_status=PaymentStatus.FAILED, to_status=PaymentStatus.UNPAID,
                contract_id=milestone.contract_id, data=event_data,
            )
        if explicit_rollback:
            logger.warning("Milestone %s payment rolled back from paid to unpaid", milestone.id)

        await commit_primary(self.db, f"payment status for milestone {milestone.id}")

        final = payment_status(milestone)
        invoice = await self._mirror_invoice(milestone, final)

        check: Optional[CompletionCheck] = await run_best_effort(
            self.db,
            f"completion check for contract {milestone.contract_id}",
            lambda: self.monitor.check(milestone.contract_id),
            refresh=[milestone, invoice],
        )

        await self._notify(milestone, target, invoice, failure_reason)

        return PaymentUpdateResult(
            milestone=milestone,
            invoice=invoice,
            rollback_performed=rollback_performed,
            contract_completed=bool(check and check.completed_now),
        )

    async def _find_invoice(self, milestone: Milestone) -> Optional[Invoice]:
        if milestone.invoice_id:
            invoice = await self.db.get(Invoice, milestone.invoice_id)
            if invoice is not None and invoice.status != InvoiceStatus.SUPERSEDED.value:
                return invoice
        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.milestone_id == milestone.id,
                Invoice.status != InvoiceStatus.SUPERSEDED.value,
            )
            .order_by(Invoice.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _mirror_invoice(self, milestone: Milestone, final: PaymentStatus) -> Optional[Invoice]:
        """Project the milestone's payment status onto its invoice, best-effort."""
        holder: dict = {}

        async def _write():
            invoice = await self._find_invoice(milestone)
            holder["invoice"] = invoice
            if invoice is None:
                logger.info("Milestone %s has no invoice to mirror", milestone.id)
                return None
            if milestone.invoice_id != invoice.id:
                logger.info("Relinking milestone %s to invoice %s", milestone.id, invoice.id)
                milestone.invoice_id = invoice.id

            previous = invoice.status
            target = INVOICE_STATUS_FOR_PAYMENT[final]
            invoice.status = target.value
            if final == PaymentStatus.PAID:
                invoice.transaction_hash = milestone.transaction_hash
                invoice.paid_amount = milestone.paid_amount
                invoice.paid_at = milestone.paid_at
            else:
                invoice.transaction_hash = None
                invoice.paid_amount = None
                invoice.paid_at = None
            if previous != target.value:
                record_event(
                    self.db, WorkflowEntity.INVOICE, invoice.id,
                    WorkflowEventType.PAYMENT_STATUS_CHANGED, WorkflowActor.SYSTEM,
                    from_status=previous, to_status=target,
                    contract_id=milestone.contract_id,
                )
            await self.db.commit()
            return invoice

        invoice = await run_best_effort(
            self.db,
            f"mirror invoice for milestone {milestone.id}",
            _write,
            refresh=[milestone, holder.get("invoice")],
        )
        if invoice is None and holder.get("invoice") is not None:
            invoice = holder["invoice"]
            await self.db.refresh(invoice)
        return invoice

    async def _notify(
        self,
        milestone: Milestone,
        target: PaymentStatus,
        invoice: Optional[Invoice],
        failure_reason: Optional[str],
    ) -> None:
        if target == PaymentStatus.PAID:
            event = PaymentReceived(
                milestone.contract_id, milestone.id,
                _dec(milestone.paid_amount), milestone.transaction_hash,
            )
        elif target == PaymentStatus.FAILED:
            event = PaymentFailed(milestone.contract_id, milestone.id, failure_reason)
        elif target == PaymentStatus.PROCESSING:
            event = PaymentProcessing(milestone.contract_id, milestone.id)
        else:
            return
        await self.notifications.notify(event, refresh=[invoice])

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def handle_payment_event(self, event: PaymentEvent) -> PaymentEventOutcome:
        """Map an external payment event onto the milestone it pays.

        Resolution precedence is invoice_id, then milestone_id, then
        contract_id.  Only ``completed`` events change state.
        """
        if event.status != PaymentEventStatus.COMPLETED.value:
            logger.info("Payment event with status %s noted but not processed", event.status)
            return PaymentEventOutcome(processed=False, message="Event noted but not processed")

        supplied = [k for k in ("invoice_id", "milestone_id", "contract_id") if getattr(event, k)]
        if not supplied:
            raise ValidationFailedError("One of invoice_id, milestone_id or contract_id is required")
        if len(supplied) > 1:
            logger.info("Payment event carries %s; resolving by %s", ", ".join(supplied), supplied[0])
        if not event.transaction_hash:
            raise ValidationFailedError("transaction_hash is required for completed payments")

        if event.invoice_id:
            invoice = await self.db.get(Invoice, event.invoice_id)
            if invoice is None:
                raise NotFoundError("Invoice not found")
            if invoice.status == InvoiceStatus.PAID.value:
                return self._duplicate(f"Invoice {invoice.invoice_number} already paid")
            if not invoice.milestone_id:
                raise ValidationFailedError("Invoice is not linked to a milestone")
            milestone = await self._get_milestone(invoice.milestone_id)
        elif event.milestone_id:
            milestone = await self._get_milestone(event.milestone_id)
        else:
            milestone = await self._resolve_contract_milestone(event.contract_id, _dec(event.amount))
            if milestone is None:
                return self._duplicate("All milestones on this contract are already paid")

        if milestone.payment_status == PaymentStatus.PAID.value:
            return self._duplicate(f"Milestone {milestone.id} already paid")

        contract = await self.db.get(Contract, milestone.contract_id)
        if contract is not None and event.currency.upper() != (contract.currency or "").upper():
            logger.warning(
                "Payment currency %s does not match contract %s currency %s",
                event.currency, contract.id, contract.currency,
            )

        if milestone.payment_status == PaymentStatus.FAILED.value:
            # failed -> paid is not a direct edge
            await self.update_payment_status(milestone.id, PaymentStatus.UNPAID)

        result = await self.update_payment_status(
            milestone.id,
            PaymentStatus.PAID,
            transaction_hash=event.transaction_hash,
            payment_amount=event.amount,
        )
        return PaymentEventOutcome(processed=True, message="Payment processed", result=result)

    async def _resolve_contract_milestone(self, contract_id: str, amount: Decimal) -> Optional[Milestone]:
        """Pick the first payable milestone, preferring one whose amount matches."""
        contract = await self.db.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")
        milestones = (
            await self.db.execute(
                select(Milestone)
                .where(Milestone.contract_id == contract_id)
                .order_by(Milestone.order_index)
            )
        ).scalars().all()

        payable = [
            m for m in milestones
            if m.status == MilestoneStatus.APPROVED.value
            and m.payment_status != PaymentStatus.PAID.value
        ]
        for m in payable:
            if abs(_dec(m.amount) - amount) < TOLERANCE:
                return m
        if payable:
            return payable[0]
        if milestones and all(m.payment_status == PaymentStatus.PAID.value for m in milestones):
            return None
        raise NotFoundError("No approved, unpaid milestone found for this contract")

    def _duplicate(self, message: str) -> PaymentEventOutcome:
        logger.info("Duplicate payment event ignored: %s", message)
        return PaymentEventOutcome(processed=False, message=message, duplicate=True)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_payment(self, milestone_id: str) -> PaymentInitiation:
        """Ensure an invoice exists, mark the milestone processing and build the pay link."""
        milestone = await self._get_milestone(milestone_id)
        work = work_status(milestone)
        if work != MilestoneStatus.APPROVED:
            raise InvalidTransitionError(
                work, MilestoneStatus.APPROVED,
                "Milestone must be approved before payment can be initiated",
            )
        contract = await self.db.get(Contract, milestone.contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")

        app_url = get_settings().app_url.rstrip("/")

        def _redirect(invoice: Invoice) -> str:
            return f"{app_url}/invoice/{invoice.id}?contract={contract.id}&milestone={milestone.id}"

        if payment_status(milestone) == PaymentStatus.PAID:
            invoice = await self.invoices.find_paid_invoice(milestone)
            return PaymentInitiation(
                milestone=milestone,
                invoice=invoice,
                redirect_url=_redirect(invoice) if invoice else None,
                already_paid=True,
            )

        invoice = (await self.invoices.ensure_invoice(milestone, contract)).invoice

        if payment_status(milestone) in (PaymentStatus.UNPAID, PaymentStatus.FAILED):
            await self.update_payment_status(milestone.id, PaymentStatus.PROCESSING)

        if invoice.sent_at is None:

            async def _stamp():
                invoice.sent_at = utcnow()
                await self.db.commit()

            await run_best_effort(
                self.db, f"stamp sent_at on invoice {invoice.id}", _stamp,
                refresh=[milestone, contract, invoice],
            )

        return PaymentInitiation(milestone=milestone, invoice=invoice, redirect_url=_redirect(invoice))
