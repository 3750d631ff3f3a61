"""Invoice generation service.

Derives invoices from milestones with at-most-one live invoice per
milestone.  A live invoice is any invoice not yet ``paid`` or
``superseded``; regenerating marks the previous live invoice superseded
instead of deleting it.  Every entry point is safe to re-invoke: an existing
live invoice is returned unchanged unless regeneration is forced.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import Settings, get_settings
from hedwig.domain.enums import (
    ContractStatus,
    InvoiceStatus,
    MilestoneStatus,
    PaymentStatus,
    WorkflowActor,
    WorkflowEntity,
    WorkflowEventType,
)
from hedwig.domain.models import Contract, Freelancer, Invoice, Milestone
from hedwig.exceptions import (
    InvalidTransitionError,
    NotApprovedError,
    NotFoundError,
    TransientStoreError,
    WorkflowError,
)
from hedwig.infra.clock import utcnow
from hedwig.services.audit import record_event
from hedwig.services.milestone_state_machine import payment_status, work_status
from hedwig.services.saga import run_best_effort, run_with_retry

logger = logging.getLogger(__name__)

# Statuses that still expect a payment
LIVE_STATUSES = (
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.PENDING.value,
    InvoiceStatus.SENT.value,
    InvoiceStatus.PROCESSING.value,
)


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """Return a human-readable number like ``INV-20260115-042917``."""
    now = now or utcnow()
    return f"INV-{now:%Y%m%d}-{secrets.randbelow(1_000_000):06d}"


def invoice_status(invoice) -> InvoiceStatus:
    s = invoice.status
    if isinstance(s, InvoiceStatus):
        return s
    return InvoiceStatus(s)


@dataclass
class InvoiceResult:
    invoice: Invoice
    created: bool


@dataclass
class ContractInvoiceBatch:
    invoices: list[Invoice] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)


class InvoiceGenerationService:
    """Create, reuse and supersede milestone invoices."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        backoff_base: Optional[float] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.max_attempts = self.settings.invoice_max_attempts
        self.backoff_base = (
            self.settings.invoice_backoff_base_seconds if backoff_base is None else backoff_base
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _get_milestone(self, milestone_id: str) -> Milestone:
        milestone = await self.db.get(Milestone, milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found")
        return milestone

    async def _get_contract(self, contract_id: str) -> Contract:
        contract = await self.db.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")
        return contract

    async def find_live_invoice(self, milestone: Milestone) -> Optional[Invoice]:
        """Return the milestone's live invoice, by link first, then by milestone_id."""
        if milestone.invoice_id:
            linked = await self.db.get(Invoice, milestone.invoice_id)
            if linked is not None and linked.status in LIVE_STATUSES:
                return linked

        # The link write is best-effort, so the invoice may exist unlinked
        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.milestone_id == milestone.id,
                Invoice.status.in_(LIVE_STATUSES),
            )
            .order_by(Invoice.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_paid_invoice(self, milestone: Milestone) -> Optional[Invoice]:
        if milestone.invoice_id:
            linked = await self.db.get(Invoice, milestone.invoice_id)
            if linked is not None and linked.status == InvoiceStatus.PAID.value:
                return linked
        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.milestone_id == milestone.id,
                Invoice.status == InvoiceStatus.PAID.value,
            )
            .order_by(Invoice.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_invoice(self, milestone_id: str, force_regenerate: bool = False) -> InvoiceResult:
        """Return the invoice for an approved milestone, creating it if needed.

        Raises:
            NotFoundError: milestone or contract missing.
            NotApprovedError: milestone work is not approved.
            TransientStoreError: creation failed on every attempt.
        """
        milestone = await self._get_milestone(milestone_id)
        current = work_status(milestone)
        if current != MilestoneStatus.APPROVED:
            raise NotApprovedError(current)
        contract = await self._get_contract(milestone.contract_id)
        return await self.ensure_invoice(milestone, contract, force_regenerate=force_regenerate)

    async def ensure_invoice(
        self,
        milestone: Milestone,
        contract: Contract,
        force_regenerate: bool = False,
    ) -> InvoiceResult:
        """Idempotently produce a live invoice for ``milestone``.

        No work-status precondition: contract approval issues invoices for
        every milestone up front.
        """
        if payment_status(milestone) == PaymentStatus.PAID:
            paid = await self.find_paid_invoice(milestone)
            if paid is not None:
                return InvoiceResult(paid, created=False)

        existing = await self.find_live_invoice(milestone)
        if existing is not None and not force_regenerate:
            if milestone.invoice_id != existing.id:
                await self._link(milestone, existing, contract)
            logger.info("Milestone %s already has invoice %s", milestone.id, existing.invoice_number)
            return InvoiceResult(existing, created=False)

        freelancer = await self.db.get(Freelancer, contract.freelancer_id)
        values = {
            "contract_id": contract.id,
            "milestone_id": milestone.id,
            "amount": milestone.amount,
            "currency": contract.currency,
            "payer_wallet": contract.client_wallet,
            "payee_wallet": freelancer.wallet_address if freelancer else None,
            "client_email": contract.client_email,
            "description": f"{contract.title}: {milestone.title}",
        }

        try:
            invoice = await run_with_retry(
                self.db,
                lambda: self._insert_invoice(values),
                attempts=self.max_attempts,
                backoff_base=self.backoff_base,
                label=f"Invoice insert for milestone {milestone.id}",
                refresh=[milestone, contract],
            )
        except SQLAlchemyError as e:
            logger.error(
                "Invoice generation for milestone %s failed after %d attempts: %s",
                milestone.id, self.max_attempts, e,
            )
            raise TransientStoreError(
                f"Failed to generate invoice after {self.max_attempts} attempts",
                retry_after=self.settings.invoice_retry_after_seconds,
            ) from e

        await self._link(milestone, invoice, contract)
        logger.info(
            "Invoice %s generated for milestone %s (%s %s)",
            invoice.invoice_number, milestone.id, invoice.amount, invoice.currency,
        )
        return InvoiceResult(invoice, created=True)

    async def _insert_invoice(self, values: dict) -> Invoice:
        """Supersede stale live invoices and insert a fresh one in a single commit."""
        now = utcnow()
        stale = (
            await self.db.execute(
                select(Invoice).where(
                    Invoice.milestone_id == values["milestone_id"],
                    Invoice.status.in_(LIVE_STATUSES),
                )
            )
        ).scalars().all()
        for old in stale:
            record_event(
                self.db, WorkflowEntity.INVOICE, old.id,
                WorkflowEventType.INVOICE_SUPERSEDED, WorkflowActor.SYSTEM,
                from_status=old.status, to_status=InvoiceStatus.SUPERSEDED,
                contract_id=values["contract_id"],
            )
            old.status = InvoiceStatus.SUPERSEDED.value
            old.superseded_at = now

        invoice = Invoice(
            invoice_number=generate_invoice_number(now),
            status=InvoiceStatus.PENDING.value,
            due_date=now + timedelta(days=self.settings.invoice_due_days),
            **values,
        )
        self.db.add(invoice)
        await self.db.flush()
        record_event(
            self.db, WorkflowEntity.INVOICE, invoice.id,
            WorkflowEventType.INVOICE_GENERATED, WorkflowActor.SYSTEM,
            to_status=InvoiceStatus.PENDING, contract_id=values["contract_id"],
            data={"milestone_id": values["milestone_id"], "invoice_number": invoice.invoice_number},
        )
        await self.db.commit()
        return invoice

    async def _link(self, milestone: Milestone, invoice: Invoice, contract: Contract) -> None:
        """Point the milestone at its invoice; failure leaves it discoverable by milestone_id."""

        async def _write():
            milestone.invoice_id = invoice.id
            await self.db.commit()

        await run_best_effort(
            self.db,
            f"link invoice {invoice.id} to milestone {milestone.id}",
            _write,
            refresh=[milestone, invoice, contract],
        )

    async def generate_contract_invoices(self, contract_id: str) -> ContractInvoiceBatch:
        """Issue one invoice per milestone; a failure on one never blocks the rest."""
        contract = await self._get_contract(contract_id)
        if contract.status not in (ContractStatus.APPROVED.value, ContractStatus.COMPLETED.value):
            raise InvalidTransitionError(
                ContractStatus(contract.status), ContractStatus.APPROVED,
                "Invoices are issued only for approved contracts",
            )
        milestones = (
            await self.db.execute(
                select(Milestone)
                .where(Milestone.contract_id == contract_id)
                .order_by(Milestone.order_index)
            )
        ).scalars().all()

        batch = ContractInvoiceBatch()
        for milestone in milestones:
            try:
                result = await self.ensure_invoice(milestone, contract)
                batch.invoices.append(result.invoice)
            except WorkflowError as e:
                logger.error(
                    "Invoice for milestone %s of contract %s failed: %s",
                    milestone.id, contract_id, e,
                )
                batch.failures.append(
                    {"milestone_id": milestone.id, "error": e.message, "retryable": e.retryable}
                )

        if batch.failures:
            logger.warning(
                "Contract %s: %d/%d milestone invoices failed",
                contract_id, len(batch.failures), len(milestones),
            )
        return batch

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        return invoice

    async def mark_sent(self, invoice_id: str) -> Invoice:
        """Move a draft/pending invoice to ``sent`` once surfaced to the payer."""
        invoice = await self.get_invoice(invoice_id)
        current = invoice_status(invoice)
        if current == InvoiceStatus.SENT:
            return invoice
        if current not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
            raise InvalidTransitionError(
                current, InvoiceStatus.SENT,
                f"Only draft or pending invoices can be sent (current status: {current.value})",
            )

        invoice.status = InvoiceStatus.SENT.value
        invoice.sent_at = utcnow()
        record_event(
            self.db, WorkflowEntity.INVOICE, invoice.id,
            WorkflowEventType.INVOICE_SENT, WorkflowActor.SYSTEM,
            from_status=current, to_status=InvoiceStatus.SENT,
            contract_id=invoice.contract_id,
        )
        await self.db.commit()
        return invoice
