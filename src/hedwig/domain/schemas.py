"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from hedwig.domain.enums import PaymentStatus


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class MilestoneCreate(BaseModel):
    """One milestone inside a contract creation request."""

    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    amount: Decimal = Field(gt=0)
    due_date: Optional[datetime] = None


class ContractCreate(BaseModel):
    """Schema for creating a contract with its milestones."""

    freelancer_id: str
    client_email: EmailStr
    client_name: Optional[str] = None
    client_wallet: Optional[str] = None
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    total_amount: Decimal = Field(gt=0)
    currency: str = "USDC"
    deadline: Optional[datetime] = None
    milestones: list[MilestoneCreate] = Field(min_length=1)
    require_approval: bool = True


class ApprovalRequest(BaseModel):
    approval_token: Optional[str] = None


class DeclineRequest(BaseModel):
    approval_token: Optional[str] = None
    decline_reason: Optional[str] = None


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contract_id: str
    order_index: int
    title: str
    description: Optional[str] = None
    amount: float
    due_date: Optional[datetime] = None
    status: str
    payment_status: str
    invoice_id: Optional[str] = None
    deliverables: Optional[str] = None
    completion_notes: Optional[str] = None
    approval_feedback: Optional[str] = None
    changes_requested: Optional[str] = None
    transaction_hash: Optional[str] = None
    paid_amount: Optional[float] = None
    paid_at: Optional[datetime] = None
    payment_failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    changes_requested_at: Optional[datetime] = None


class ContractResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    freelancer_id: str
    client_email: str
    client_name: Optional[str] = None
    client_wallet: Optional[str] = None
    title: str
    description: Optional[str] = None
    total_amount: float
    currency: str
    deadline: Optional[datetime] = None
    status: str
    amount_paid: float
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contract_id: Optional[str] = None
    milestone_id: Optional[str] = None
    invoice_number: str
    amount: float
    currency: str
    payer_wallet: Optional[str] = None
    payee_wallet: Optional[str] = None
    status: str
    due_date: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    paid_amount: Optional[float] = None
    paid_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


class MilestoneStartRequest(BaseModel):
    freelancer_id: Optional[str] = None
    contract_id: Optional[str] = None


class MilestoneSubmitRequest(BaseModel):
    deliverables: Optional[str] = None
    completion_notes: Optional[str] = None
    freelancer_id: Optional[str] = None


class MilestoneApproveRequest(BaseModel):
    approval_feedback: Optional[str] = None
    client_email: Optional[str] = None


class MilestoneChangesRequest(BaseModel):
    changes_requested: Optional[str] = None
    client_email: Optional[str] = None


class GenerateInvoiceRequest(BaseModel):
    force_regenerate: bool = Field(default=False, alias="forceRegenerate")

    model_config = ConfigDict(populate_by_name=True)


class PaymentStatusUpdate(BaseModel):
    """Explicit payment status change.  camelCase aliases match the web client."""

    model_config = ConfigDict(populate_by_name=True)

    status: PaymentStatus
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    payment_amount: Optional[Decimal] = Field(default=None, alias="paymentAmount")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    rollback_on_failure: bool = Field(default=True, alias="rollbackOnFailure")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentWebhookPayload(BaseModel):
    """Inbound payment event from the payment processor."""

    amount: Decimal
    currency: str
    status: str
    transaction_hash: Optional[str] = None
    invoice_id: Optional[str] = None
    milestone_id: Optional[str] = None
    contract_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _lower_status(cls, v: str) -> str:
        return v.strip().lower()
