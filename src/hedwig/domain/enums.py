"""Domain enumerations for the Hedwig workflow engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class ContractStatus(str, Enum):
    """Lifecycle of a contract between a freelancer and a client."""

    CREATED = "created"  # legacy path, approved without a token
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class MilestoneStatus(str, Enum):
    """Work state of a milestone, tracked independently of payment."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class PaymentStatus(str, Enum):
    """Money state of a milestone."""

    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle.  SUPERSEDED marks a stale invoice replaced by a newer one."""

    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    PROCESSING = "processing"
    PAID = "paid"
    SUPERSEDED = "superseded"


class WorkflowActor(str, Enum):
    """Who initiated a workflow transition."""

    FREELANCER = "freelancer"
    CLIENT = "client"
    SYSTEM = "system"


class WorkflowEntity(str, Enum):
    """Entity kind a WorkflowEvent refers to."""

    CONTRACT = "contract"
    MILESTONE = "milestone"
    INVOICE = "invoice"


class WorkflowEventType(str, Enum):
    """Audit event types written on every committed transition."""

    CONTRACT_CREATED = "contract_created"
    CONTRACT_APPROVED = "contract_approved"
    CONTRACT_REJECTED = "contract_rejected"
    CONTRACT_COMPLETED = "contract_completed"
    CONTRACT_REOPENED = "contract_reopened"
    MILESTONE_STARTED = "milestone_started"
    MILESTONE_SUBMITTED = "milestone_submitted"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_CHANGES_REQUESTED = "milestone_changes_requested"
    MILESTONE_REOPENED = "milestone_reopened"
    INVOICE_GENERATED = "invoice_generated"
    INVOICE_SUPERSEDED = "invoice_superseded"
    INVOICE_SENT = "invoice_sent"
    PAYMENT_STATUS_CHANGED = "payment_status_changed"
    PAYMENT_ROLLED_BACK = "payment_rolled_back"


class NotificationType(str, Enum):
    """Types of contract notification audit rows."""

    CONTRACT_CREATED = "contract_created"
    APPROVAL_REQUESTED = "approval_requested"
    CONTRACT_APPROVED = "contract_approved"
    CONTRACT_REJECTED = "contract_rejected"
    INVOICE_GENERATED = "invoice_generated"
    MILESTONE_SUBMITTED = "milestone_submitted"
    MILESTONE_APPROVED = "milestone_approved"
    CHANGES_REQUESTED = "changes_requested"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    MILESTONE_COMPLETED = "milestone_completed"
    CONTRACT_COMPLETED = "contract_completed"
    DEADLINE_REMINDER = "deadline_reminder"
    OVERDUE_NOTIFICATION = "overdue_notification"


class NotificationRecipient(str, Enum):
    """Which party a notification is addressed to."""

    FREELANCER = "freelancer"
    CLIENT = "client"


class NotificationChannel(str, Enum):
    """Outbound delivery channel."""

    EMAIL = "email"
    TELEGRAM = "telegram"


class PaymentEventStatus(str, Enum):
    """Status values carried by inbound payment webhooks."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
