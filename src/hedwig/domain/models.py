"""SQLAlchemy ORM models for the Hedwig workflow engine.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
- Numeric(20, 6) for money, so stablecoin amounts round-trip exactly
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from hedwig.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Freelancer(Base):
    """Registered freelancer who owns contracts."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    telegram_chat_id = Column(String(64), nullable=True)
    wallet_address = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=func.now())

    contracts = relationship("Contract", back_populates="freelancer")


class Contract(Base):
    """Agreement between a freelancer and a client, split into milestones."""

    __tablename__ = "contracts"

    id = Column(String(36), primary_key=True, default=_uuid)
    freelancer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    # Client has no account, only an email and the approval token capability
    client_email = Column(String(255), nullable=False, index=True)
    client_name = Column(String(255), nullable=True)
    client_wallet = Column(String(128), nullable=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    total_amount = Column(Numeric(20, 6), nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")
    deadline = Column(DateTime, nullable=True)
    status = Column(String(30), nullable=False, default="pending_approval", index=True)
    amount_paid = Column(Numeric(20, 6), nullable=False, default=0)
    source_type = Column(String(20), nullable=False, default="api")

    # Present only while pending_approval
    approval_token = Column(String(128), nullable=True, unique=True, index=True)
    approval_expires_at = Column(DateTime, nullable=True)

    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    freelancer = relationship("Freelancer", back_populates="contracts")
    milestones = relationship(
        "Milestone", back_populates="contract", order_by="Milestone.order_index"
    )


class Milestone(Base):
    """Unit of contracted work with separate work and payment state."""

    __tablename__ = "milestones"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    order_index = Column(Integer, nullable=False, default=1)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(20, 6), nullable=False)
    due_date = Column(DateTime, nullable=True)

    status = Column(String(30), nullable=False, default="pending", index=True)  # MilestoneStatus
    payment_status = Column(String(20), nullable=False, default="unpaid", index=True)  # PaymentStatus
    invoice_id = Column(String(36), nullable=True)

    # Work
    deliverables = Column(Text, nullable=True)
    completion_notes = Column(Text, nullable=True)
    approval_feedback = Column(Text, nullable=True)
    changes_requested = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    changes_requested_at = Column(DateTime, nullable=True)

    # Payment
    transaction_hash = Column(String(128), nullable=True)
    paid_amount = Column(Numeric(20, 6), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    payment_failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    contract = relationship("Contract", back_populates="milestones")


class Invoice(Base):
    """Billing artifact derived from an approved milestone."""

    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=True, index=True)
    milestone_id = Column(String(36), ForeignKey("milestones.id"), nullable=True, index=True)
    # Random suffix, collisions are astronomically unlikely but not constrained
    invoice_number = Column(String(32), nullable=False, index=True)

    amount = Column(Numeric(20, 6), nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")
    payer_wallet = Column(String(128), nullable=True)
    payee_wallet = Column(String(128), nullable=True)
    client_email = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default="pending", index=True)  # InvoiceStatus
    due_date = Column(DateTime, nullable=True)
    transaction_hash = Column(String(128), nullable=True)
    paid_amount = Column(Numeric(20, 6), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class ContractNotification(Base):
    """Write-once audit row for every notification sent about a contract."""

    __tablename__ = "contract_notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False, index=True)
    milestone_id = Column(String(36), nullable=True, index=True)
    recipient = Column(String(20), nullable=False)  # NotificationRecipient
    notification_type = Column(String(40), nullable=False, index=True)  # NotificationType
    subject = Column(String(255), nullable=True)
    message = Column(Text, nullable=True)
    sent_via_email = Column(Boolean, default=False)
    sent_via_telegram = Column(Boolean, default=False)
    created_at = Column(DateTime, default=_utcnow)


class WorkflowEvent(Base):
    """Immutable audit trail entry for contract, milestone and invoice transitions."""

    __tablename__ = "workflow_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    entity_type = Column(String(20), nullable=False)  # WorkflowEntity
    entity_id = Column(String(36), nullable=False, index=True)
    contract_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(50), nullable=False)  # WorkflowEventType
    actor = Column(String(20), nullable=False)  # WorkflowActor
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
