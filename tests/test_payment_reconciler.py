"""Tests for the payment status reconciler."""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from unittest.mock import patch

from hedwig.domain.models import ContractNotification, Invoice, WorkflowEvent
from hedwig.exceptions import InvalidTransitionError, ValidationFailedError
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.payment_reconciler import PaymentReconciler


@pytest.fixture
def reconciler(db_session, notifications):
    return PaymentReconciler(db_session, notifications)


@pytest.fixture
def invoiced_contract(db_session, make_contract):
    """Approved contract whose milestones are approved and invoiced."""
    async def _factory(**kwargs):
        kwargs.setdefault("milestone_status", "approved")
        contract, milestones = await make_contract(**kwargs)
        await InvoiceGenerationService(db_session).generate_contract_invoices(contract.id)
        return contract, milestones

    return _factory


async def _milestone_rows(db_session, milestone_id):
    return (
        await db_session.execute(
            select(ContractNotification).where(ContractNotification.milestone_id == milestone_id)
        )
    ).scalars().all()


class TestPaid:

    async def test_paid_mirrors_invoice_and_completes_contract(
        self, db_session, reconciler, dispatcher, invoiced_contract,
    ):
        contract, [milestone] = await invoiced_contract(amounts=("500",))

        result = await reconciler.update_payment_status(
            milestone.id, "paid", transaction_hash="0xabc", payment_amount="500",
        )

        assert milestone.payment_status == "paid"
        assert milestone.transaction_hash == "0xabc"
        assert milestone.paid_amount == Decimal("500")
        assert milestone.paid_at is not None
        assert result.invoice.status == "paid"
        assert result.invoice.transaction_hash == "0xabc"
        assert result.contract_completed is True
        await db_session.refresh(contract)
        assert contract.status == "completed"
        assert contract.amount_paid == Decimal("500")
        assert "payment_received" in dispatcher.types_for("freelancer")
        assert "payment_confirmed" in dispatcher.types_for("client")
        assert "contract_completed" in dispatcher.types_for("client")

    async def test_paid_defaults_amount_to_milestone_amount(self, reconciler, invoiced_contract):
        _, [milestone, _other] = await invoiced_contract(amounts=("300", "200"))

        result = await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0x1")

        assert milestone.paid_amount == Decimal("300")
        assert result.contract_completed is False

    async def test_paid_requires_transaction_hash(self, reconciler, invoiced_contract):
        _, [milestone] = await invoiced_contract()
        with pytest.raises(ValidationFailedError, match="transaction_hash"):
            await reconciler.update_payment_status(milestone.id, "paid")
        assert milestone.payment_status == "unpaid"

    async def test_paid_requires_approved_work(self, reconciler, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")
        with pytest.raises(InvalidTransitionError):
            await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0x1")
        assert milestone.payment_status == "unpaid"

    @pytest.mark.parametrize("amount", ["0", "-5", "500.02"])
    async def test_bad_amount_is_rejected(self, reconciler, invoiced_contract, amount):
        _, [milestone] = await invoiced_contract(amounts=("500",))
        with pytest.raises(ValidationFailedError):
            await reconciler.update_payment_status(
                milestone.id, "paid", transaction_hash="0x1", payment_amount=amount,
            )

    async def test_paid_twice_is_invalid(self, reconciler, invoiced_contract):
        _, [milestone] = await invoiced_contract(amounts=("500",))
        await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0x1")
        with pytest.raises(InvalidTransitionError):
            await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0x2")
        assert milestone.transaction_hash == "0x1"


class TestFailed:

    async def test_processing_then_failed_rolls_back(
        self, db_session, reconciler, dispatcher, invoiced_contract,
    ):
        _, [milestone] = await invoiced_contract()
        await reconciler.update_payment_status(milestone.id, "processing")

        result = await reconciler.update_payment_status(
            milestone.id, "failed", failure_reason="insufficient funds",
        )

        assert result.rollback_performed is True
        assert milestone.payment_status == "unpaid"
        assert milestone.transaction_hash is None
        assert milestone.payment_failure_reason == "insufficient funds"
        assert result.invoice.status == "pending"

        rows = await _milestone_rows(db_session, milestone.id)
        failed = {r.recipient for r in rows if r.notification_type == "payment_failed"}
        assert failed == {"freelancer", "client"}

        events = (
            await db_session.execute(
                select(WorkflowEvent).where(
                    WorkflowEvent.entity_id == milestone.id,
                    WorkflowEvent.event_type == "payment_rolled_back",
                )
            )
        ).scalars().all()
        assert len(events) == 1

    async def test_failed_without_rollback_stays_failed(self, reconciler, invoiced_contract):
        _, [milestone] = await invoiced_contract()
        await reconciler.update_payment_status(milestone.id, "processing")

        result = await reconciler.update_payment_status(
            milestone.id, "failed", rollback_on_failure=False,
        )

        assert result.rollback_performed is False
        assert milestone.payment_status == "failed"
        assert milestone.payment_failure_reason == "Payment failed"

    async def test_unpaid_cannot_fail(self, reconciler, invoiced_contract):
        _, [milestone] = await invoiced_contract()
        with pytest.raises(InvalidTransitionError):
            await reconciler.update_payment_status(milestone.id, "failed")


class TestRollback:

    async def test_paid_to_unpaid_reopens_contract(self, db_session, reconciler, invoiced_contract):
        contract, [milestone] = await invoiced_contract(amounts=("500",))
        await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0xabc")
        await db_session.refresh(contract)
        assert contract.status == "completed"

        result = await reconciler.update_payment_status(milestone.id, "unpaid")

        assert milestone.payment_status == "unpaid"
        assert milestone.transaction_hash is None
        assert result.invoice.status == "pending"
        await db_session.refresh(contract)
        assert contract.status == "approved"
        assert contract.amount_paid == Decimal("0")


class TestInvoiceMirror:

    async def test_processing_mirrors_invoice(self, reconciler, invoiced_contract):
        _, [milestone] = await invoiced_contract()
        result = await reconciler.update_payment_status(milestone.id, "processing")
        assert result.invoice.status == "processing"

    async def test_mirror_failure_keeps_milestone_paid(self, db_session, reconciler, invoiced_contract):
        _, [milestone, _other] = await invoiced_contract(amounts=("300", "200"))
        real_commit = db_session.commit
        calls = {"n": 0}

        async def _flaky_commit():
            calls["n"] += 1
            if calls["n"] == 2:
                raise OperationalError("UPDATE invoices", {}, Exception("database is locked"))
            await real_commit()

        with patch.object(db_session, "commit", _flaky_commit):
            result = await reconciler.update_payment_status(
                milestone.id, "paid", transaction_hash="0xabc",
            )

        await db_session.refresh(milestone)
        assert milestone.payment_status == "paid"
        assert result.invoice is not None
        assert result.invoice.status == "pending"

    async def test_unlinked_regenerated_invoice_is_marked_paid(
        self, db_session, reconciler, invoiced_contract,
    ):
        _, [milestone] = await invoiced_contract()
        first_id = milestone.invoice_id
        real_commit = db_session.commit
        calls = {"n": 0}

        async def _flaky_commit():
            calls["n"] += 1
            if calls["n"] == 2:
                raise OperationalError("UPDATE milestones", {}, Exception("database is locked"))
            await real_commit()

        with patch.object(db_session, "commit", _flaky_commit):
            regenerated = await InvoiceGenerationService(db_session, backoff_base=0).generate_invoice(
                milestone.id, force_regenerate=True,
            )
        live = regenerated.invoice
        assert milestone.invoice_id == first_id

        result = await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0xabc")

        assert result.invoice.id == live.id
        assert result.invoice.status == "paid"
        assert result.invoice.transaction_hash == "0xabc"
        assert milestone.invoice_id == live.id
        first = await db_session.get(Invoice, first_id)
        await db_session.refresh(first)
        assert first.status == "superseded"
        assert first.transaction_hash is None

    async def test_milestone_without_invoice_still_updates(self, reconciler, make_contract):
        _, [milestone, _other] = await make_contract(amounts=("300", "200"), milestone_status="approved")
        result = await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0x1")
        assert result.invoice is None
        assert milestone.payment_status == "paid"


class TestInitiatePayment:

    async def test_builds_redirect_and_marks_processing(self, reconciler, make_contract):
        contract, [milestone] = await make_contract(milestone_status="approved")

        initiation = await reconciler.initiate_payment(milestone.id)

        assert initiation.already_paid is False
        assert initiation.invoice is not None
        assert initiation.invoice.sent_at is not None
        assert milestone.payment_status == "processing"
        assert initiation.redirect_url.endswith(
            f"/invoice/{initiation.invoice.id}?contract={contract.id}&milestone={milestone.id}"
        )

    async def test_repeat_initiation_reuses_invoice(self, reconciler, make_contract):
        _, [milestone] = await make_contract(milestone_status="approved")
        first = await reconciler.initiate_payment(milestone.id)
        second = await reconciler.initiate_payment(milestone.id)
        assert second.invoice.id == first.invoice.id
        assert milestone.payment_status == "processing"

    async def test_paid_milestone_reports_already_paid(self, reconciler, invoiced_contract):
        _, [milestone, _other] = await invoiced_contract(amounts=("300", "200"))
        await reconciler.update_payment_status(milestone.id, "paid", transaction_hash="0x1")

        initiation = await reconciler.initiate_payment(milestone.id)

        assert initiation.already_paid is True
        assert initiation.invoice.status == "paid"

    async def test_unapproved_milestone_cannot_be_paid(self, reconciler, make_contract):
        _, [milestone] = await make_contract(milestone_status="in_progress")
        with pytest.raises(InvalidTransitionError):
            await reconciler.initiate_payment(milestone.id)
