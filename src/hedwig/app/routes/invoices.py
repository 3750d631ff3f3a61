"""Invoice API."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.dependencies import serialize_invoice
from hedwig.infra.database import get_db
from hedwig.services.invoice_service import InvoiceGenerationService

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.get("/{invoice_id}")
async def get_invoice(invoice_id: str, db: AsyncSession = Depends(get_db)):
    invoice = await InvoiceGenerationService(db).get_invoice(invoice_id)
    return {"success": True, "invoice": serialize_invoice(invoice)}


@router.post("/{invoice_id}/send")
async def send_invoice(invoice_id: str, db: AsyncSession = Depends(get_db)):
    """Mark an invoice as surfaced to the payer."""
    invoice = await InvoiceGenerationService(db).mark_sent(invoice_id)
    return {"success": True, "invoice": serialize_invoice(invoice)}
