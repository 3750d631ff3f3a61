"""Workflow events that drive notification fan-out.

Each variant carries only the structured data its messages need.  The
contract, freelancer and milestone rows are loaded by the notification
service; rendering stays in ``notification_service.compose``.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union


@dataclass(frozen=True)
class ContractCreated:
    contract_id: str
    approval_url: str


@dataclass(frozen=True)
class ContractApproved:
    contract_id: str
    invoice_count: int = 0


@dataclass(frozen=True)
class ContractDeclined:
    contract_id: str
    reason: str


@dataclass(frozen=True)
class MilestoneSubmitted:
    contract_id: str
    milestone_id: str


@dataclass(frozen=True)
class MilestoneApproved:
    contract_id: str
    milestone_id: str
    feedback: str
    invoice_number: Optional[str] = None


@dataclass(frozen=True)
class ChangesRequested:
    contract_id: str
    milestone_id: str
    feedback: str


@dataclass(frozen=True)
class PaymentProcessing:
    contract_id: str
    milestone_id: str


@dataclass(frozen=True)
class PaymentReceived:
    contract_id: str
    milestone_id: str
    amount: Decimal
    transaction_hash: str


@dataclass(frozen=True)
class PaymentFailed:
    contract_id: str
    milestone_id: str
    reason: str


@dataclass(frozen=True)
class ContractCompleted:
    contract_id: str
    total_paid: Decimal


@dataclass(frozen=True)
class DeadlineReminder:
    contract_id: str
    milestone_id: str
    days_remaining: int
    overdue: bool


WorkflowNotification = Union[
    ContractCreated,
    ContractApproved,
    ContractDeclined,
    MilestoneSubmitted,
    MilestoneApproved,
    ChangesRequested,
    PaymentProcessing,
    PaymentReceived,
    PaymentFailed,
    ContractCompleted,
    DeadlineReminder,
]
