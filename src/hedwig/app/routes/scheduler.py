"""Internal cron endpoints, called by an external scheduler."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.dependencies import get_notification_service, verify_internal_token
from hedwig.infra.database import get_db
from hedwig.services.background_jobs import retry_invoice_generation, send_deadline_reminders
from hedwig.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/internal/jobs",
    tags=["scheduler"],
    dependencies=[Depends(verify_internal_token)],
)


@router.post("/deadline-reminders")
async def deadline_reminders(
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Send due-soon and overdue milestone reminders. Run daily."""
    sent = await send_deadline_reminders(db, notifications)
    logger.info("Deadline reminder job: %d sent", sent)
    return {"ok": True, "sent": sent}


@router.post("/invoice-retry")
async def invoice_retry(db: AsyncSession = Depends(get_db)):
    """Generate invoices that failed earlier. Safe to run any time."""
    results = await retry_invoice_generation(db)
    logger.info("Invoice retry job: %s", results)
    return {"ok": True, "results": results}
