"""Milestone API: work lifecycle, invoicing and payment status."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.dependencies import (
    get_notification_service,
    serialize_invoice,
    serialize_milestone,
)
from hedwig.domain.schemas import (
    GenerateInvoiceRequest,
    MilestoneApproveRequest,
    MilestoneChangesRequest,
    MilestoneStartRequest,
    MilestoneSubmitRequest,
    PaymentStatusUpdate,
)
from hedwig.infra.database import get_db
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.milestone_service import MilestoneService, MilestoneTransitionResult
from hedwig.services.notification_service import NotificationService
from hedwig.services.payment_reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/milestones", tags=["milestones"])


def _transition_body(result: MilestoneTransitionResult) -> dict:
    body = {"success": True, "milestone": serialize_milestone(result.milestone)}
    if result.invoice is not None:
        body["invoice"] = serialize_invoice(result.invoice)
    if result.invoice_error is not None:
        body["invoiceError"] = result.invoice_error.to_dict()
    return body


@router.post("/{milestone_id}/start")
async def start_milestone(
    milestone_id: str,
    body: MilestoneStartRequest,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = await MilestoneService(db, notifications).start(
        milestone_id, body.freelancer_id, contract_id=body.contract_id,
    )
    return _transition_body(result)


@router.post("/{milestone_id}/submit")
async def submit_milestone(
    milestone_id: str,
    body: MilestoneSubmitRequest,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = await MilestoneService(db, notifications).submit(
        milestone_id, body.deliverables, body.completion_notes, freelancer_id=body.freelancer_id,
    )
    return _transition_body(result)


@router.post("/{milestone_id}/approve")
async def approve_milestone(
    milestone_id: str,
    body: Optional[MilestoneApproveRequest] = None,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    body = body or MilestoneApproveRequest()
    result = await MilestoneService(db, notifications).approve(
        milestone_id, feedback=body.approval_feedback, client_email=body.client_email,
    )
    response = _transition_body(result)
    response.setdefault("invoice", None)
    return response


@router.post("/{milestone_id}/request-changes")
async def request_milestone_changes(
    milestone_id: str,
    body: MilestoneChangesRequest,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = await MilestoneService(db, notifications).request_changes(
        milestone_id, body.changes_requested, client_email=body.client_email,
    )
    return _transition_body(result)


@router.post("/{milestone_id}/generate-invoice")
async def generate_invoice(
    milestone_id: str,
    body: Optional[GenerateInvoiceRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    force = body.force_regenerate if body else False
    result = await InvoiceGenerationService(db).generate_invoice(milestone_id, force_regenerate=force)
    return {
        "success": True,
        "invoice": serialize_invoice(result.invoice),
        "existing": not result.created,
    }


@router.post("/{milestone_id}/initiate-payment")
async def initiate_payment(
    milestone_id: str,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    initiation = await PaymentReconciler(db, notifications).initiate_payment(milestone_id)
    return {
        "success": True,
        "redirectUrl": initiation.redirect_url,
        "invoiceId": initiation.invoice.id if initiation.invoice else None,
        "alreadyPaid": initiation.already_paid,
    }


@router.post("/{milestone_id}/payment-status")
async def update_payment_status(
    milestone_id: str,
    body: PaymentStatusUpdate,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = await PaymentReconciler(db, notifications).update_payment_status(
        milestone_id,
        body.status,
        transaction_hash=body.transaction_hash,
        payment_amount=body.payment_amount,
        failure_reason=body.failure_reason,
        rollback_on_failure=body.rollback_on_failure,
    )
    return {
        "success": True,
        "milestone": serialize_milestone(result.milestone),
        "invoice": serialize_invoice(result.invoice),
        "rollbackPerformed": result.rollback_performed,
        "contractCompleted": result.contract_completed,
    }
