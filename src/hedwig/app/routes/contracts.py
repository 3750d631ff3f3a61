"""Contract API: creation, lookup, and token-based client approval.

Approve and decline accept POST (API callers) and GET (email link clicks).
Both are equivalent in effect; GET redirects to a confirmation page.
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import get_settings
from hedwig.app.dependencies import (
    get_notification_service,
    serialize_contract,
    serialize_invoice,
    serialize_milestone,
)
from hedwig.domain.schemas import ApprovalRequest, ContractCreate, DeclineRequest
from hedwig.infra.database import get_db
from hedwig.services.approval_gateway import ApprovalGateway, ApprovalResult
from hedwig.services.contract_service import ContractService
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contracts", tags=["contracts"])


def _confirmation_redirect(page: str, contract_id: str) -> RedirectResponse:
    app_url = get_settings().app_url.rstrip("/")
    return RedirectResponse(f"{app_url}/contracts/{page}?id={quote(contract_id)}", status_code=302)


def _approval_body(result: ApprovalResult) -> dict:
    return {
        "success": True,
        "contract": serialize_contract(result.contract),
        "invoices": [serialize_invoice(i) for i in result.invoices.invoices],
        "invoiceFailures": result.invoices.failures,
    }


@router.post("", status_code=201)
async def create_contract(
    body: ContractCreate,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Create a contract and email the client an approval link."""
    created = await ContractService(db, notifications).create_contract(body)
    return {
        "success": True,
        "contract_id": created.contract.id,
        "approval_url": created.approval_url,
        "contract": serialize_contract(created.contract),
        "milestones": [serialize_milestone(m) for m in created.milestones],
    }


@router.post("/approve")
async def approve_contract(
    body: ApprovalRequest,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = await ApprovalGateway(db, notifications).approve(body.approval_token)
    return _approval_body(result)


@router.get("/approve")
async def approve_contract_link(
    token: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = await ApprovalGateway(db, notifications).approve(token)
    return _confirmation_redirect("approved", result.contract.id)


@router.post("/decline")
async def decline_contract(
    body: DeclineRequest,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    contract = await ApprovalGateway(db, notifications).decline(body.approval_token, body.decline_reason)
    return {"success": True, "contract": serialize_contract(contract)}


@router.get("/decline")
async def decline_contract_link(
    token: Optional[str] = Query(default=None),
    reason: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    contract = await ApprovalGateway(db, notifications).decline(token, reason)
    return _confirmation_redirect("declined", contract.id)


@router.get("/{contract_id}")
async def get_contract(contract_id: str, db: AsyncSession = Depends(get_db)):
    contract, milestones = await ContractService(db).get_contract(contract_id)
    return {
        "success": True,
        "contract": serialize_contract(contract),
        "milestones": [serialize_milestone(m) for m in milestones],
    }


@router.post("/{contract_id}/approve")
async def approve_contract_by_id(
    contract_id: str,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Legacy approval for contracts created without an approval token."""
    result = await ApprovalGateway(db, notifications).approve_legacy(contract_id)
    return _approval_body(result)


@router.post("/{contract_id}/invoices")
async def regenerate_contract_invoices(contract_id: str, db: AsyncSession = Depends(get_db)):
    """Re-run the per-milestone invoice fan-out; existing live invoices are reused."""
    batch = await InvoiceGenerationService(db).generate_contract_invoices(contract_id)
    return {
        "success": not batch.failures,
        "invoices": [serialize_invoice(i) for i in batch.invoices],
        "invoiceFailures": batch.failures,
    }
