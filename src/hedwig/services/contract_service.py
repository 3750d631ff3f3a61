"""Contract creation and lookup."""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.app.config import Settings, get_settings
from hedwig.domain.enums import (
    ContractStatus,
    MilestoneStatus,
    PaymentStatus,
    WorkflowActor,
    WorkflowEntity,
    WorkflowEventType,
)
from hedwig.domain.events import ContractCreated
from hedwig.domain.models import Contract, Freelancer, Milestone
from hedwig.domain.schemas import ContractCreate
from hedwig.exceptions import NotFoundError, ValidationFailedError
from hedwig.infra.clock import utcnow
from hedwig.services.audit import record_event
from hedwig.services.notification_service import NotificationService
from hedwig.services.saga import commit_primary

logger = logging.getLogger(__name__)

# Milestone amounts must add up to the contract total within this tolerance
AMOUNT_TOLERANCE = Decimal("0.01")


def generate_approval_token() -> str:
    """Return a URL-safe 256-bit approval token."""
    return secrets.token_urlsafe(32)


@dataclass
class CreatedContract:
    contract: Contract
    milestones: list[Milestone]
    approval_url: Optional[str]


class ContractService:
    """Create contracts and read them back with their milestones."""

    def __init__(
        self,
        db: AsyncSession,
        notifications: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifications = notifications
        self.settings = settings or get_settings()

    def approval_url(self, token: str) -> str:
        return f"{self.settings.api_url.rstrip('/')}/api/contracts/approve?token={quote(token)}"

    async def create_contract(self, data: ContractCreate) -> CreatedContract:
        """Validate and persist a contract with its milestones.

        Raises:
            ValidationFailedError: milestone amounts do not add up to the total.
            NotFoundError: the freelancer does not exist.
        """
        total = Decimal(str(data.total_amount))
        milestone_sum = sum((Decimal(str(m.amount)) for m in data.milestones), Decimal("0"))
        if abs(milestone_sum - total) > AMOUNT_TOLERANCE:
            raise ValidationFailedError(
                f"Milestone amounts ({milestone_sum}) must equal the contract total ({total})"
            )

        freelancer = await self.db.get(Freelancer, data.freelancer_id)
        if freelancer is None:
            raise NotFoundError("Freelancer not found")

        now = utcnow()
        token = generate_approval_token() if data.require_approval else None
        status = ContractStatus.PENDING_APPROVAL if data.require_approval else ContractStatus.CREATED

        contract = Contract(
            freelancer_id=freelancer.id,
            client_email=str(data.client_email).strip().lower(),
            client_name=data.client_name,
            client_wallet=data.client_wallet,
            title=data.title.strip(),
            description=data.description,
            total_amount=total,
            currency=data.currency.strip().upper(),
            deadline=data.deadline,
            status=status.value,
            amount_paid=Decimal("0"),
            approval_token=token,
            approval_expires_at=(
                now + timedelta(days=self.settings.approval_token_ttl_days) if token else None
            ),
        )
        self.db.add(contract)
        await self.db.flush()

        milestones = []
        for index, item in enumerate(data.milestones, start=1):
            milestone = Milestone(
                contract_id=contract.id,
                order_index=index,
                title=item.title.strip(),
                description=item.description,
                amount=Decimal(str(item.amount)),
                due_date=item.due_date or data.deadline,
                status=MilestoneStatus.PENDING.value,
                payment_status=PaymentStatus.UNPAID.value,
            )
            self.db.add(milestone)
            milestones.append(milestone)

        record_event(
            self.db, WorkflowEntity.CONTRACT, contract.id,
            WorkflowEventType.CONTRACT_CREATED, WorkflowActor.FREELANCER,
            to_status=status, contract_id=contract.id,
            data={"milestones": len(milestones), "total_amount": str(total)},
        )
        await commit_primary(self.db, "contract")

        approval_url = self.approval_url(token) if token else None
        logger.info(
            "Contract %s created for %s (%s %s, %d milestones)",
            contract.id, contract.client_email, total, contract.currency, len(milestones),
        )

        if self.notifications is not None and approval_url:
            await self.notifications.notify(
                ContractCreated(contract.id, approval_url), refresh=milestones,
            )
        return CreatedContract(contract=contract, milestones=milestones, approval_url=approval_url)

    async def get_contract(self, contract_id: str) -> tuple[Contract, list[Milestone]]:
        contract = await self.db.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError("Contract not found")
        milestones = (
            await self.db.execute(
                select(Milestone)
                .where(Milestone.contract_id == contract_id)
                .order_by(Milestone.order_index)
            )
        ).scalars().all()
        return contract, list(milestones)
