"""Notification composition and fan-out for workflow events.

One ``compose`` function turns a workflow event into per-recipient
messages.  ``NotificationService`` delivers them through a dispatcher and
writes one ContractNotification audit row per message.  Nothing in here
ever raises into the workflow: delivery and audit failures are logged.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import get_settings
from hedwig.domain.enums import NotificationRecipient, NotificationType
from hedwig.domain.events import (
    ChangesRequested,
    ContractApproved,
    ContractCompleted,
    ContractCreated,
    ContractDeclined,
    DeadlineReminder,
    MilestoneApproved,
    MilestoneSubmitted,
    PaymentFailed,
    PaymentProcessing,
    PaymentReceived,
    WorkflowNotification,
)
from hedwig.domain.models import Contract, ContractNotification, Freelancer, Milestone
from hedwig.exceptions import NotificationFailure
from hedwig.services.email_service import EmailService
from hedwig.services.saga import run_best_effort
from hedwig.services.telegram_service import TelegramService

logger = logging.getLogger(__name__)

R = NotificationRecipient
N = NotificationType


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------


@dataclass
class OutboundMessage:
    """A rendered-agnostic message addressed to one party."""

    recipient: NotificationRecipient
    notification_type: NotificationType
    subject: str
    body: str
    email: Optional[str] = None
    telegram_chat_id: Optional[str] = None


@dataclass
class DeliveryResult:
    email_sent: bool = False
    telegram_sent: bool = False


@dataclass
class NotificationContext:
    """Rows and URLs a composer may draw on."""

    contract: Contract
    freelancer: Optional[Freelancer]
    milestone: Optional[Milestone]
    app_url: str


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Delivery interface. Implementations report per-channel success."""

    async def deliver(self, message: OutboundMessage) -> DeliveryResult:
        raise NotImplementedError


class ChannelDispatcher(NotificationDispatcher):
    """Email via SendGrid, plus Telegram when the recipient has a chat id."""

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        telegram_service: Optional[TelegramService] = None,
    ):
        self.email_service = email_service or EmailService()
        self.telegram_service = telegram_service or TelegramService()

    async def deliver(self, message: OutboundMessage) -> DeliveryResult:
        result = DeliveryResult()
        if message.email:
            result.email_sent = await self.email_service.send(
                message.email, message.subject, message.body,
            )
        if message.telegram_chat_id:
            result.telegram_sent = await self.telegram_service.send_message(
                message.telegram_chat_id, f"{message.subject}\n\n{message.body}",
            )
        if message.email and not result.email_sent and not result.telegram_sent:
            raise NotificationFailure(
                f"{message.notification_type.value} to {message.recipient.value} was not delivered"
            )
        return result


def get_notification_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency: the process-wide delivery channel."""
    return ChannelDispatcher()


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def _money(amount, currency: str) -> str:
    if amount is None:
        return f"0.00 {currency}"
    return f"{Decimal(str(amount)):,.2f} {currency}"


def _to_freelancer(ctx: NotificationContext, type_: NotificationType, subject: str, body: str) -> OutboundMessage:
    freelancer = ctx.freelancer
    return OutboundMessage(
        recipient=R.FREELANCER,
        notification_type=type_,
        subject=subject,
        body=body,
        email=freelancer.email if freelancer else None,
        telegram_chat_id=freelancer.telegram_chat_id if freelancer else None,
    )


def _to_client(ctx: NotificationContext, type_: NotificationType, subject: str, body: str) -> OutboundMessage:
    return OutboundMessage(
        recipient=R.CLIENT,
        notification_type=type_,
        subject=subject,
        body=body,
        email=ctx.contract.client_email,
    )


def _freelancer_name(ctx: NotificationContext) -> str:
    return ctx.freelancer.name if ctx.freelancer else "your freelancer"


def _client_name(ctx: NotificationContext) -> str:
    return ctx.contract.client_name or ctx.contract.client_email


def _compose_contract_created(event: ContractCreated, ctx: NotificationContext) -> list[OutboundMessage]:
    c = ctx.contract
    return [
        _to_client(
            ctx, N.APPROVAL_REQUESTED,
            f"Contract approval requested: {c.title}",
            f"{_freelancer_name(ctx)} has sent you a contract for {_money(c.total_amount, c.currency)}.\n"
            f"Review and approve it here: {event.approval_url}",
        ),
        _to_freelancer(
            ctx, N.CONTRACT_CREATED,
            f"Contract created: {c.title}",
            f"Your contract was sent to {c.client_email} for approval.",
        ),
    ]


def _compose_contract_approved(event: ContractApproved, ctx: NotificationContext) -> list[OutboundMessage]:
    c = ctx.contract
    return [
        _to_freelancer(
            ctx, N.CONTRACT_APPROVED,
            f"Contract approved: {c.title}",
            f"{_client_name(ctx)} approved your contract for {_money(c.total_amount, c.currency)}.\n"
            f"{event.invoice_count} milestone invoice(s) were generated. You can start working.",
        ),
        _to_client(
            ctx, N.CONTRACT_APPROVED,
            f"You approved: {c.title}",
            f"Thanks for approving the contract with {_freelancer_name(ctx)}.\n"
            f"Milestone invoices are available at {ctx.app_url}/contracts/{c.id}",
        ),
    ]


def _compose_contract_declined(event: ContractDeclined, ctx: NotificationContext) -> list[OutboundMessage]:
    c = ctx.contract
    return [
        _to_freelancer(
            ctx, N.CONTRACT_REJECTED,
            f"Contract declined: {c.title}",
            f"{_client_name(ctx)} declined your contract.\nReason: {event.reason}",
        ),
    ]


def _compose_milestone_submitted(event: MilestoneSubmitted, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    return [
        _to_client(
            ctx, N.MILESTONE_SUBMITTED,
            f"Milestone ready for review: {m.title}",
            f"{_freelancer_name(ctx)} submitted \"{m.title}\" on {ctx.contract.title}.\n"
            f"Deliverables: {m.deliverables}\nNotes: {m.completion_notes}\n"
            f"Review it at {ctx.app_url}/contracts/{ctx.contract.id}",
        ),
        _to_freelancer(
            ctx, N.MILESTONE_SUBMITTED,
            f"Milestone submitted: {m.title}",
            f"\"{m.title}\" was sent to {ctx.contract.client_email} for review.",
        ),
    ]


def _compose_milestone_approved(event: MilestoneApproved, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    c = ctx.contract
    invoice_line = f"Invoice {event.invoice_number} is ready." if event.invoice_number else ""
    return [
        _to_freelancer(
            ctx, N.MILESTONE_APPROVED,
            f"Milestone approved: {m.title}",
            f"{_client_name(ctx)} approved \"{m.title}\" ({_money(m.amount, c.currency)}).\n"
            f"Feedback: {event.feedback}\n{invoice_line}",
        ),
        _to_client(
            ctx, N.MILESTONE_APPROVED,
            f"Approval confirmed: {m.title}",
            f"You approved \"{m.title}\". {invoice_line}\n"
            f"Pay at {ctx.app_url}/contracts/{c.id}",
        ),
    ]


def _compose_changes_requested(event: ChangesRequested, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    return [
        _to_freelancer(
            ctx, N.CHANGES_REQUESTED,
            f"Changes requested: {m.title}",
            f"{_client_name(ctx)} asked for changes on \"{m.title}\".\nFeedback: {event.feedback}",
        ),
    ]


def _compose_payment_processing(event: PaymentProcessing, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    return [
        _to_freelancer(
            ctx, N.PAYMENT_PROCESSING,
            f"Payment processing: {m.title}",
            f"{_client_name(ctx)} started paying {_money(m.amount, ctx.contract.currency)} for \"{m.title}\".",
        ),
    ]


def _compose_payment_received(event: PaymentReceived, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    amount = _money(event.amount, ctx.contract.currency)
    return [
        _to_freelancer(
            ctx, N.PAYMENT_RECEIVED,
            f"Payment received: {m.title}",
            f"You received {amount} for \"{m.title}\".\nTransaction: {event.transaction_hash}",
        ),
        _to_client(
            ctx, N.PAYMENT_CONFIRMED,
            f"Payment confirmed: {m.title}",
            f"Your payment of {amount} for \"{m.title}\" was confirmed.\n"
            f"Transaction: {event.transaction_hash}",
        ),
    ]


def _compose_payment_failed(event: PaymentFailed, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    return [
        _to_freelancer(
            ctx, N.PAYMENT_FAILED,
            f"Payment failed: {m.title}",
            f"The payment for \"{m.title}\" failed.\nReason: {event.reason}",
        ),
        _to_client(
            ctx, N.PAYMENT_FAILED,
            f"Payment failed: {m.title}",
            f"Your payment for \"{m.title}\" did not go through.\nReason: {event.reason}\n"
            f"You can retry at {ctx.app_url}/contracts/{ctx.contract.id}",
        ),
    ]


def _compose_contract_completed(event: ContractCompleted, ctx: NotificationContext) -> list[OutboundMessage]:
    c = ctx.contract
    total = _money(event.total_paid, c.currency)
    return [
        _to_freelancer(
            ctx, N.CONTRACT_COMPLETED,
            f"Contract completed: {c.title}",
            f"All milestones on \"{c.title}\" are paid. Total received: {total}.",
        ),
        _to_client(
            ctx, N.CONTRACT_COMPLETED,
            f"Contract completed: {c.title}",
            f"Every milestone on \"{c.title}\" is paid ({total}). Thanks for working with {_freelancer_name(ctx)}.",
        ),
    ]


def _compose_deadline_reminder(event: DeadlineReminder, ctx: NotificationContext) -> list[OutboundMessage]:
    m = ctx.milestone
    if event.overdue:
        type_ = N.OVERDUE_NOTIFICATION
        when = f"is {abs(event.days_remaining)} day(s) overdue"
    else:
        type_ = N.DEADLINE_REMINDER
        when = "is due today" if event.days_remaining == 0 else f"is due in {event.days_remaining} day(s)"
    return [
        _to_freelancer(
            ctx, type_,
            f"Milestone {'overdue' if event.overdue else 'due soon'}: {m.title}",
            f"\"{m.title}\" on {ctx.contract.title} {when}.",
        ),
        _to_client(
            ctx, type_,
            f"Milestone update: {m.title}",
            f"\"{m.title}\" from {_freelancer_name(ctx)} {when}.",
        ),
    ]


_COMPOSERS: dict[type, Callable[..., list[OutboundMessage]]] = {
    ContractCreated: _compose_contract_created,
    ContractApproved: _compose_contract_approved,
    ContractDeclined: _compose_contract_declined,
    MilestoneSubmitted: _compose_milestone_submitted,
    MilestoneApproved: _compose_milestone_approved,
    ChangesRequested: _compose_changes_requested,
    PaymentProcessing: _compose_payment_processing,
    PaymentReceived: _compose_payment_received,
    PaymentFailed: _compose_payment_failed,
    ContractCompleted: _compose_contract_completed,
    DeadlineReminder: _compose_deadline_reminder,
}


def compose(event: WorkflowNotification, ctx: NotificationContext) -> list[OutboundMessage]:
    """Return the messages an event produces, one per recipient."""
    composer = _COMPOSERS.get(type(event))
    if composer is None:
        raise TypeError(f"No composer registered for {type(event).__name__}")
    return composer(event, ctx)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class NotificationService:
    """Compose, deliver and record notifications for workflow events."""

    def __init__(self, db: AsyncSession, dispatcher: NotificationDispatcher):
        self.db = db
        self.dispatcher = dispatcher

    async def _load_context(self, event: WorkflowNotification) -> Optional[NotificationContext]:
        contract = await self.db.get(Contract, event.contract_id)
        if contract is None:
            logger.error("Notification %s skipped: contract %s not found", type(event).__name__, event.contract_id)
            return None
        freelancer = await self.db.get(Freelancer, contract.freelancer_id)
        milestone = None
        milestone_id = getattr(event, "milestone_id", None)
        if milestone_id:
            milestone = await self.db.get(Milestone, milestone_id)
        return NotificationContext(
            contract=contract,
            freelancer=freelancer,
            milestone=milestone,
            app_url=get_settings().app_url.rstrip("/"),
        )

    async def _deliver(self, message: OutboundMessage) -> DeliveryResult:
        try:
            return await self.dispatcher.deliver(message)
        except NotificationFailure as e:
            logger.error("Notification delivery failed: %s", e)
        except Exception as e:
            logger.error(
                "Notification %s to %s raised: %s",
                message.notification_type.value, message.recipient.value, e,
            )
        return DeliveryResult()

    async def notify(self, event: WorkflowNotification, refresh: Iterable = ()) -> list[ContractNotification]:
        """Deliver every message for ``event`` and record audit rows.

        Returns the recorded rows (empty if recording failed).  ``refresh``
        names caller-held objects to reload if the audit write is rolled back.
        """
        try:
            ctx = await self._load_context(event)
            if ctx is None:
                return []
            messages = compose(event, ctx)
        except Exception as e:
            logger.error("Could not compose %s: %s", type(event).__name__, e)
            return []

        rows: list[ContractNotification] = []
        for message in messages:
            result = await self._deliver(message)
            rows.append(
                ContractNotification(
                    contract_id=ctx.contract.id,
                    milestone_id=ctx.milestone.id if ctx.milestone else None,
                    recipient=message.recipient.value,
                    notification_type=message.notification_type.value,
                    subject=message.subject,
                    message=message.body,
                    sent_via_email=result.email_sent,
                    sent_via_telegram=result.telegram_sent,
                )
            )

        async def _record():
            self.db.add_all(rows)
            await self.db.commit()
            return rows

        recorded = await run_best_effort(
            self.db,
            f"record {type(event).__name__} notifications",
            _record,
            refresh=[ctx.contract, ctx.milestone, *refresh],
        )
        if recorded is None:
            return []
        logger.info(
            "Notified %s for contract %s (%d message(s))",
            type(event).__name__, ctx.contract.id, len(recorded),
        )
        return recorded
