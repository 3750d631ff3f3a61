"""Tests for invoice generation, idempotency and retry."""

import re
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from hedwig.domain.models import Invoice, WorkflowEvent
from hedwig.exceptions import (
    InvalidTransitionError,
    NotApprovedError,
    NotFoundError,
    TransientStoreError,
)
from hedwig.services.invoice_service import InvoiceGenerationService, generate_invoice_number


@pytest.fixture
def service(db_session):
    return InvoiceGenerationService(db_session, backoff_base=0)


async def _invoices(db_session):
    return (await db_session.execute(select(Invoice))).scalars().all()


def test_invoice_number_format():
    number = generate_invoice_number()
    assert re.fullmatch(r"INV-\d{8}-\d{6}", number)


class TestGenerateInvoice:

    async def test_requires_approved_work(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")

        with pytest.raises(NotApprovedError) as exc_info:
            await service.generate_invoice(milestone.id)

        assert str(exc_info.value) == (
            "Milestone must be approved before generating invoice (current status: submitted)"
        )
        assert exc_info.value.status_code == 400
        assert await _invoices(db_session) == []

    async def test_missing_milestone(self, service):
        with pytest.raises(NotFoundError):
            await service.generate_invoice("nope")

    async def test_creates_pending_invoice_from_milestone(self, db_session, service, make_contract):
        contract, [milestone] = await make_contract(amounts=("750.50",), milestone_status="approved")

        result = await service.generate_invoice(milestone.id)

        invoice = result.invoice
        assert result.created is True
        assert invoice.status == "pending"
        assert invoice.amount == Decimal("750.50")
        assert invoice.currency == "USDC"
        assert invoice.contract_id == contract.id
        assert invoice.payer_wallet == "0xCLIENT"
        assert invoice.payee_wallet == "0xFREELANCER"
        assert invoice.client_email == "client@example.com"
        assert invoice.due_date is not None
        assert milestone.invoice_id == invoice.id

    async def test_second_call_returns_same_invoice(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")

        first = await service.generate_invoice(milestone.id)
        second = await service.generate_invoice(milestone.id)

        assert second.created is False
        assert second.invoice.id == first.invoice.id
        assert len(await _invoices(db_session)) == 1

    async def test_force_regenerate_supersedes_previous(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        first = await service.generate_invoice(milestone.id)

        second = await service.generate_invoice(milestone.id, force_regenerate=True)

        assert second.created is True
        assert second.invoice.id != first.invoice.id
        await db_session.refresh(first.invoice)
        assert first.invoice.status == "superseded"
        assert first.invoice.superseded_at is not None
        live = [i for i in await _invoices(db_session) if i.status != "superseded"]
        assert [i.id for i in live] == [second.invoice.id]
        assert milestone.invoice_id == second.invoice.id

    async def test_paid_milestone_returns_paid_invoice(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        invoice = (await service.generate_invoice(milestone.id)).invoice
        invoice.status = "paid"
        milestone.payment_status = "paid"
        await db_session.commit()

        result = await service.generate_invoice(milestone.id, force_regenerate=True)

        assert result.created is False
        assert result.invoice.id == invoice.id
        assert len(await _invoices(db_session)) == 1

    async def test_writes_generation_event(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        invoice = (await service.generate_invoice(milestone.id)).invoice

        events = (
            await db_session.execute(select(WorkflowEvent).where(WorkflowEvent.entity_id == invoice.id))
        ).scalars().all()
        assert [e.event_type for e in events] == ["invoice_generated"]
        assert events[0].data["invoice_number"] == invoice.invoice_number


class TestLinkFailure:

    async def test_unlinked_invoice_is_found_and_relinked(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        real_commit = db_session.commit
        calls = {"n": 0}

        async def _flaky_commit():
            calls["n"] += 1
            if calls["n"] == 2:
                raise OperationalError("UPDATE milestones", {}, Exception("database is locked"))
            await real_commit()

        with patch.object(db_session, "commit", _flaky_commit):
            first = await service.generate_invoice(milestone.id)

        # Insert committed, link did not
        assert first.created is True
        assert milestone.invoice_id is None

        second = await service.generate_invoice(milestone.id)

        assert second.created is False
        assert second.invoice.id == first.invoice.id
        assert milestone.invoice_id == first.invoice.id
        assert len(await _invoices(db_session)) == 1


class TestRetry:

    async def test_three_attempts_with_exponential_backoff(self, db_session, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        service = InvoiceGenerationService(db_session, backoff_base=1.0)
        failing = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))

        with patch.object(service, "_insert_invoice", failing), patch(
            "hedwig.services.saga.asyncio.sleep", new_callable=AsyncMock,
        ) as mock_sleep:
            with pytest.raises(TransientStoreError) as exc_info:
                await service.generate_invoice(milestone.id)

        assert failing.await_count == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]
        assert exc_info.value.retryable is True
        assert exc_info.value.retry_after == 60
        assert exc_info.value.to_dict() == {
            "success": False,
            "error": "Failed to generate invoice after 3 attempts",
            "retryable": True,
            "retryAfter": 60,
        }

    async def test_succeeds_on_third_attempt(self, db_session, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        service = InvoiceGenerationService(db_session, backoff_base=1.0)
        real_insert = service._insert_invoice
        calls = {"n": 0}

        async def _eventually(values):
            calls["n"] += 1
            if calls["n"] < 3:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await real_insert(values)

        with patch.object(service, "_insert_invoice", _eventually), patch(
            "hedwig.services.saga.asyncio.sleep", new_callable=AsyncMock,
        ):
            result = await service.generate_invoice(milestone.id)

        assert result.created is True
        assert calls["n"] == 3
        assert len(await _invoices(db_session)) == 1


class TestContractInvoices:

    async def test_one_invoice_per_milestone(self, db_session, service, make_contract):
        contract, milestones = await make_contract(amounts=("100", "200", "300"))

        batch = await service.generate_contract_invoices(contract.id)

        assert len(batch.invoices) == 3
        assert batch.failures == []
        assert [i.milestone_id for i in batch.invoices] == [m.id for m in milestones]

    async def test_rerun_is_idempotent(self, db_session, service, make_contract):
        contract, _ = await make_contract(amounts=("100", "200"))
        await service.generate_contract_invoices(contract.id)
        await service.generate_contract_invoices(contract.id)
        assert len(await _invoices(db_session)) == 2

    async def test_pending_contract_is_rejected(self, service, make_contract):
        contract, _ = await make_contract(status="pending_approval")
        with pytest.raises(InvalidTransitionError):
            await service.generate_contract_invoices(contract.id)


class TestMarkSent:

    async def test_pending_to_sent(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        invoice = (await service.generate_invoice(milestone.id)).invoice

        sent = await service.mark_sent(invoice.id)

        assert sent.status == "sent"
        assert sent.sent_at is not None

    async def test_sending_twice_is_a_no_op(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        invoice = (await service.generate_invoice(milestone.id)).invoice
        first = await service.mark_sent(invoice.id)
        sent_at = first.sent_at

        again = await service.mark_sent(invoice.id)

        assert again.status == "sent"
        assert again.sent_at == sent_at

    async def test_paid_invoice_cannot_be_sent(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        invoice = (await service.generate_invoice(milestone.id)).invoice
        invoice.status = "paid"
        await db_session.commit()

        with pytest.raises(InvalidTransitionError):
            await service.mark_sent(invoice.id)
