"""Scheduled workflow jobs.

Both jobs are idempotent: running them twice in a day produces no duplicate
reminders and no duplicate invoices.  They are plain async functions called
from the internal cron endpoints; there is no in-process scheduler.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import get_settings
from hedwig.domain.enums import (
    ContractStatus,
    MilestoneStatus,
    NotificationType,
    PaymentStatus,
)
from hedwig.domain.events import DeadlineReminder
from hedwig.domain.models import Contract, ContractNotification, Milestone
from hedwig.exceptions import WorkflowError
from hedwig.infra.clock import ensure_utc, utcnow
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _already_notified_today(
    db: AsyncSession,
    milestone_id: str,
    notification_type: NotificationType,
    now: datetime,
) -> bool:
    """Check the audit rows for a same-type notification written today (UTC)."""
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    result = await db.execute(
        select(ContractNotification.id).where(
            and_(
                ContractNotification.milestone_id == milestone_id,
                ContractNotification.notification_type == notification_type.value,
                ContractNotification.created_at >= day_start,
            )
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Job 1: Deadline reminders
# ---------------------------------------------------------------------------


async def send_deadline_reminders(
    db: AsyncSession,
    notifications: NotificationService,
    now: Optional[datetime] = None,
) -> int:
    """Remind both parties about milestones due soon or overdue.

    Only open work (pending or in_progress) on approved contracts is
    considered.  Returns the number of reminders sent.
    """
    now = now or utcnow()
    horizon = now + timedelta(days=get_settings().reminder_window_days)

    result = await db.execute(
        select(Milestone)
        .join(Contract, Contract.id == Milestone.contract_id)
        .where(
            and_(
                Contract.status == ContractStatus.APPROVED.value,
                Milestone.status.in_([MilestoneStatus.PENDING.value, MilestoneStatus.IN_PROGRESS.value]),
                Milestone.due_date.isnot(None),
                Milestone.due_date <= horizon,
            )
        )
        .order_by(Milestone.due_date)
    )
    milestones = result.scalars().all()

    sent = 0
    for milestone in milestones:
        due = ensure_utc(milestone.due_date)
        overdue = due < now
        notification_type = (
            NotificationType.OVERDUE_NOTIFICATION if overdue else NotificationType.DEADLINE_REMINDER
        )
        if await _already_notified_today(db, milestone.id, notification_type, now):
            continue

        days_remaining = (due.date() - now.date()).days
        rows = await notifications.notify(
            DeadlineReminder(milestone.contract_id, milestone.id, days_remaining, overdue)
        )
        if rows:
            sent += 1

    if sent:
        logger.info("Sent %d milestone deadline reminders", sent)
    return sent


# ---------------------------------------------------------------------------
# Job 2: Invoice generation retry
# ---------------------------------------------------------------------------


async def retry_invoice_generation(db: AsyncSession, backoff_base: Optional[float] = None) -> dict:
    """Re-run invoice generation for approved, unpaid milestones lacking a live invoice.

    Safe because generation is idempotent.  Returns counts of generated and
    failed invoices.
    """
    service = InvoiceGenerationService(db, backoff_base=backoff_base)
    result = await db.execute(
        select(Milestone).where(
            and_(
                Milestone.status == MilestoneStatus.APPROVED.value,
                Milestone.payment_status != PaymentStatus.PAID.value,
            )
        )
    )
    milestones = result.scalars().all()

    generated = 0
    failed = 0
    for milestone in milestones:
        if await service.find_live_invoice(milestone) is not None:
            continue
        try:
            outcome = await service.generate_invoice(milestone.id)
            if outcome.created:
                generated += 1
        except WorkflowError as e:
            failed += 1
            logger.error("Invoice retry for milestone %s failed: %s", milestone.id, e)

    if generated or failed:
        logger.info("Invoice retry: generated=%d failed=%d", generated, failed)
    return {"generated": generated, "failed": failed}
