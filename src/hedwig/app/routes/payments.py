"""Payment webhook: external payment confirmations."""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import get_settings
from hedwig.app.dependencies import get_notification_service, serialize_invoice, serialize_milestone
from hedwig.domain.schemas import PaymentWebhookPayload
from hedwig.infra.database import get_db
from hedwig.services.notification_service import NotificationService
from hedwig.services.payment_reconciler import PaymentEvent, PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


async def verify_webhook_signature(
    request: Request,
    x_hedwig_signature: Optional[str] = Header(default=None),
):
    """Check the HMAC-SHA256 body signature when a webhook secret is configured."""
    secret = get_settings().webhook_secret
    if not secret:
        return
    if not x_hedwig_signature:
        raise HTTPException(status_code=401, detail="Missing webhook signature")
    body = await request.body()
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, x_hedwig_signature.strip().lower()):
        logger.warning("Payment webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/webhook", dependencies=[Depends(verify_webhook_signature)])
async def payment_webhook(
    payload: PaymentWebhookPayload,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Reconcile a payment event. Non-completed and duplicate events are acknowledged."""
    event = PaymentEvent(
        amount=payload.amount,
        currency=payload.currency,
        status=payload.status,
        transaction_hash=payload.transaction_hash,
        invoice_id=payload.invoice_id,
        milestone_id=payload.milestone_id,
        contract_id=payload.contract_id,
    )
    outcome = await PaymentReconciler(db, notifications).handle_payment_event(event)

    body = {
        "success": True,
        "processed": outcome.processed,
        "duplicate": outcome.duplicate,
        "message": outcome.message,
    }
    if outcome.result is not None:
        body["milestone"] = serialize_milestone(outcome.result.milestone)
        body["invoice"] = serialize_invoice(outcome.result.invoice)
        body["contractCompleted"] = outcome.result.contract_completed
    return body
