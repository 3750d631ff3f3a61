"""Tests for the milestone work lifecycle."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from hedwig.domain.models import ContractNotification, Invoice, WorkflowEvent
from hedwig.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    TransientStoreError,
    UnauthorizedError,
    ValidationFailedError,
)
from hedwig.services.invoice_service import InvoiceGenerationService
from hedwig.services.milestone_service import MilestoneService


@pytest.fixture
def service(db_session, notifications):
    return MilestoneService(db_session, notifications)


async def _events(db_session, milestone_id):
    return (
        await db_session.execute(
            select(WorkflowEvent)
            .where(WorkflowEvent.entity_id == milestone_id)
            .order_by(WorkflowEvent.created_at)
        )
    ).scalars().all()


class TestStart:

    async def test_freelancer_starts_pending_milestone(self, db_session, service, make_contract):
        contract, [milestone] = await make_contract()

        result = await service.start(milestone.id, contract.freelancer_id, contract_id=contract.id)

        assert result.milestone.status == "in_progress"
        assert result.milestone.started_at is not None
        events = await _events(db_session, milestone.id)
        assert [(e.event_type, e.from_status, e.to_status) for e in events] == [
            ("milestone_started", "pending", "in_progress"),
        ]

    async def test_other_freelancer_is_unauthorized(self, service, make_contract):
        _, [milestone] = await make_contract()
        with pytest.raises(UnauthorizedError):
            await service.start(milestone.id, "someone-else")
        assert milestone.status == "pending"

    async def test_freelancer_id_required(self, service, make_contract):
        _, [milestone] = await make_contract()
        with pytest.raises(ValidationFailedError):
            await service.start(milestone.id, None)

    async def test_wrong_contract_is_not_found(self, service, make_contract):
        contract, [milestone] = await make_contract()
        with pytest.raises(NotFoundError):
            await service.start(milestone.id, contract.freelancer_id, contract_id="other-contract")

    async def test_contract_must_be_approved(self, service, make_contract):
        contract, [milestone] = await make_contract(status="pending_approval")
        with pytest.raises(InvalidTransitionError, match="Contract must be approved"):
            await service.start(milestone.id, contract.freelancer_id)

    async def test_cannot_start_submitted_milestone(self, service, make_contract):
        contract, [milestone] = await make_contract(milestone_status="submitted")
        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.start(milestone.id, contract.freelancer_id)
        assert "submitted" in str(exc_info.value)
        assert "in_progress" in str(exc_info.value)


class TestSubmit:

    async def test_submit_records_work_and_notifies_client(self, db_session, service, dispatcher, make_contract):
        _, [milestone] = await make_contract(milestone_status="in_progress")

        result = await service.submit(milestone.id, "https://figma.com/file/x", "All screens done")

        assert result.milestone.status == "submitted"
        assert result.milestone.deliverables == "https://figma.com/file/x"
        assert result.milestone.submitted_at is not None
        assert dispatcher.types_for("client") == ["milestone_submitted"]

    @pytest.mark.parametrize(
        "deliverables,notes",
        [(None, "notes"), ("", "notes"), ("link", None), ("link", "   ")],
    )
    async def test_submit_requires_deliverables_and_notes(self, service, make_contract, deliverables, notes):
        _, [milestone] = await make_contract(milestone_status="in_progress")
        with pytest.raises(ValidationFailedError, match="required"):
            await service.submit(milestone.id, deliverables, notes)
        assert milestone.status == "in_progress"

    async def test_cannot_submit_pending_milestone(self, service, make_contract):
        _, [milestone] = await make_contract()
        with pytest.raises(InvalidTransitionError):
            await service.submit(milestone.id, "link", "notes")


class TestApprove:

    async def test_start_submit_approve_creates_one_invoice(
        self, db_session, service, dispatcher, make_contract,
    ):
        contract, [milestone] = await make_contract(amounts=("500",))

        await service.start(milestone.id, contract.freelancer_id)
        await service.submit(milestone.id, "repo link", "done")
        result = await service.approve(milestone.id, feedback="Great work")

        assert result.milestone.status == "approved"
        assert result.milestone.approval_feedback == "Great work"
        assert result.milestone.approved_at is not None
        assert result.invoice is not None
        assert result.invoice.amount == Decimal("500")
        assert result.invoice.status in {"draft", "pending"}
        assert milestone.invoice_id == result.invoice.id

        # A retried approve is rejected and never creates a second invoice
        with pytest.raises(InvalidTransitionError):
            await service.approve(milestone.id)
        invoices = (await db_session.execute(select(Invoice))).scalars().all()
        assert [i.id for i in invoices] == [result.invoice.id]

        assert dispatcher.types_for("freelancer")[-1] == "milestone_approved"
        assert dispatcher.types_for("client")[-1] == "milestone_approved"

    async def test_approve_fires_invoice_generation_once(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")

        with patch.object(
            InvoiceGenerationService, "generate_invoice", new_callable=AsyncMock,
        ) as mock_generate:
            mock_generate.return_value.invoice = None
            await service.approve(milestone.id)

        mock_generate.assert_awaited_once_with(milestone.id)

    async def test_default_feedback(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")
        result = await service.approve(milestone.id)
        assert result.milestone.approval_feedback == "Approved by client"

    async def test_invoice_failure_does_not_unwind_approval(self, db_session, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")

        with patch.object(
            InvoiceGenerationService, "generate_invoice",
            AsyncMock(side_effect=TransientStoreError("Failed to generate invoice after 3 attempts", retry_after=60)),
        ):
            result = await service.approve(milestone.id)

        assert result.invoice is None
        assert result.invoice_error.retryable is True
        await db_session.refresh(milestone)
        assert milestone.status == "approved"

    async def test_wrong_client_is_unauthorized(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")
        with pytest.raises(UnauthorizedError):
            await service.approve(milestone.id, client_email="intruder@example.com")

    async def test_client_email_match_is_case_insensitive(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")
        result = await service.approve(milestone.id, client_email="CLIENT@example.com")
        assert result.milestone.status == "approved"

    async def test_cannot_approve_in_progress(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="in_progress")
        with pytest.raises(InvalidTransitionError):
            await service.approve(milestone.id)


class TestRequestChanges:

    async def test_request_changes_reopens_milestone(self, db_session, service, dispatcher, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")

        result = await service.request_changes(milestone.id, "Please fix the footer")

        assert result.milestone.status == "in_progress"
        assert result.milestone.changes_requested == "Please fix the footer"
        assert result.milestone.changes_requested_at is not None
        events = await _events(db_session, milestone.id)
        assert {(e.from_status, e.to_status) for e in events} == {
            ("submitted", "changes_requested"),
            ("changes_requested", "in_progress"),
        }
        assert dispatcher.types_for("freelancer") == ["changes_requested"]
        assert "Please fix the footer" in dispatcher.sent[0].body

    async def test_change_description_required(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")
        with pytest.raises(ValidationFailedError):
            await service.request_changes(milestone.id, "  ")

    async def test_resubmit_after_changes(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="submitted")
        await service.request_changes(milestone.id, "Fix it")
        result = await service.submit(milestone.id, "link v2", "fixed")
        assert result.milestone.status == "submitted"


class TestTransitionMilestone:

    async def test_routes_target_to_operation(self, service, make_contract):
        contract, [milestone] = await make_contract()
        result = await service.transition_milestone(
            milestone.id, "in_progress", {"freelancer_id": contract.freelancer_id},
        )
        assert result.milestone.status == "in_progress"

    async def test_pending_cannot_be_requested(self, service, make_contract):
        _, [milestone] = await make_contract(milestone_status="in_progress")
        with pytest.raises(InvalidTransitionError):
            await service.transition_milestone(milestone.id, "pending")

    async def test_notification_rows_recorded(self, db_session, service, make_contract):
        contract, [milestone] = await make_contract(milestone_status="in_progress")
        await service.transition_milestone(
            milestone.id, "submitted", {"deliverables": "link", "completion_notes": "done"},
        )
        rows = (
            await db_session.execute(
                select(ContractNotification).where(ContractNotification.milestone_id == milestone.id)
            )
        ).scalars().all()
        assert {r.recipient for r in rows} == {"client", "freelancer"}
