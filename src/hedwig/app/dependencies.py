"""Shared FastAPI dependencies and response serializers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import get_settings
from hedwig.domain.models import Contract, Invoice, Milestone
from hedwig.domain.schemas import ContractResponse, InvoiceResponse, MilestoneResponse
from hedwig.infra.database import get_db
from hedwig.services.notification_service import (
    NotificationDispatcher,
    NotificationService,
    get_notification_dispatcher,
)


def get_notification_service(
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> NotificationService:
    return NotificationService(db, dispatcher)


async def verify_internal_token(x_internal_token: Optional[str] = Header(default=None)):
    """Verify that the request includes a valid internal auth token."""
    settings = get_settings()
    if x_internal_token != settings.internal_api_token:
        raise HTTPException(status_code=401, detail="Invalid internal token")


def serialize_contract(contract: Contract) -> dict:
    return ContractResponse.model_validate(contract).model_dump(mode="json")


def serialize_milestone(milestone: Milestone) -> dict:
    return MilestoneResponse.model_validate(milestone).model_dump(mode="json")


def serialize_invoice(invoice: Optional[Invoice]) -> Optional[dict]:
    if invoice is None:
        return None
    return InvoiceResponse.model_validate(invoice).model_dump(mode="json")
