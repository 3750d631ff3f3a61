"""Shared test infrastructure for the Hedwig test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- dispatcher: RecordingDispatcher capturing outbound messages
- notifications: NotificationService wired to db_session + dispatcher
- make_freelancer / make_contract: factories for workflow rows
- api_client: httpx client over a FastAPI app bound to db_session
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from hedwig.infra.database import Base, get_db

import hedwig.domain.models  # noqa: F401

from hedwig.app.errors import register_exception_handlers
from hedwig.domain.models import Contract, Freelancer, Milestone
from hedwig.exceptions import NotificationFailure
from hedwig.infra.clock import utcnow
from hedwig.services.notification_service import (
    DeliveryResult,
    NotificationDispatcher,
    NotificationService,
    get_notification_dispatcher,
)


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Notification dispatcher
# ---------------------------------------------------------------------------

class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that records messages instead of delivering them.

    Set ``fail = True`` to make every delivery raise NotificationFailure.
    """

    def __init__(self):
        self.sent = []
        self.fail = False

    async def deliver(self, message):
        if self.fail:
            raise NotificationFailure("transport down")
        self.sent.append(message)
        return DeliveryResult(
            email_sent=bool(message.email),
            telegram_sent=bool(message.telegram_chat_id),
        )

    def types_for(self, recipient: str) -> list[str]:
        return [m.notification_type.value for m in self.sent if m.recipient.value == recipient]


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifications(db_session, dispatcher):
    return NotificationService(db_session, dispatcher)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_freelancer(db_session):
    """Factory that creates a Freelancer.

    Usage:
        freelancer = await make_freelancer(telegram_chat_id="12345")
    """
    counter = {"n": 0}

    async def _factory(
        name: str = "Ada Freelancer",
        email: str | None = None,
        telegram_chat_id: str | None = None,
        wallet_address: str | None = "0xFREELANCER",
    ) -> Freelancer:
        counter["n"] += 1
        freelancer = Freelancer(
            name=name,
            email=email or f"ada{counter['n']}@example.com",
            telegram_chat_id=telegram_chat_id,
            wallet_address=wallet_address,
        )
        db_session.add(freelancer)
        await db_session.commit()
        return freelancer

    return _factory


@pytest.fixture
def make_contract(db_session, make_freelancer):
    """Factory that creates a Contract with one milestone per amount.

    Usage:
        contract, milestones = await make_contract(amounts=("300", "200"), status="approved")
    """
    async def _factory(
        amounts=("500",),
        status: str = "approved",
        milestone_status: str = "pending",
        payment_status: str = "unpaid",
        freelancer: Freelancer | None = None,
        client_email: str = "client@example.com",
        approval_token: str | None = None,
        approval_expires_at=None,
        due_in_days: int | None = None,
        currency: str = "USDC",
    ) -> tuple[Contract, list[Milestone]]:
        freelancer = freelancer or await make_freelancer()
        decimals = [Decimal(str(a)) for a in amounts]
        contract = Contract(
            freelancer_id=freelancer.id,
            client_email=client_email,
            client_name="Client Co",
            client_wallet="0xCLIENT",
            title="Website redesign",
            total_amount=sum(decimals, Decimal("0")),
            currency=currency,
            status=status,
            amount_paid=Decimal("0"),
            approval_token=approval_token,
            approval_expires_at=approval_expires_at,
        )
        db_session.add(contract)
        await db_session.flush()

        milestones = []
        for index, amount in enumerate(decimals, start=1):
            milestone = Milestone(
                contract_id=contract.id,
                order_index=index,
                title=f"Milestone {index}",
                amount=amount,
                status=milestone_status,
                payment_status=payment_status,
                due_date=utcnow() + timedelta(days=due_in_days) if due_in_days is not None else None,
            )
            db_session.add(milestone)
            milestones.append(milestone)

        await db_session.commit()
        return contract, milestones

    return _factory


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
async def api_client(db_session, dispatcher):
    """httpx client over an app with every router, bound to the test session."""
    from hedwig.app.routes.contracts import router as contracts_router
    from hedwig.app.routes.invoices import router as invoices_router
    from hedwig.app.routes.milestones import router as milestones_router
    from hedwig.app.routes.payments import router as payments_router
    from hedwig.app.routes.scheduler import router as scheduler_router

    app = FastAPI()
    register_exception_handlers(app)
    for router in (contracts_router, milestones_router, payments_router, invoices_router, scheduler_router):
        app.include_router(router)

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
