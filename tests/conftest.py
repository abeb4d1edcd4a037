"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database (aiosqlite) with portal users, students and a ticket
- Twilio Messages API replaced by an httpx MockTransport
- Lifecycle and day-close services wired like the controllers wire them
- HTTPX AsyncClient against the FastAPI app with dependency overrides
"""
import json
import os
from typing import AsyncGenerator, Dict, List
from urllib.parse import parse_qs

os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from escalation_desk.config import Settings
from escalation_desk.infrastructure.database import Base, get_session
from escalation_desk.infrastructure.portal.models import (
    UserModel, StudentModel, TicketModel,
)
import escalation_desk.escalations.infrastructure.models  # noqa: F401
from escalation_desk.escalations.application import (
    DayCloseGateService,
    IPolicyConfigProvider,
    MatterLifecycleService,
    NotificationService,
    TicketMirror,
    resolve_actor,
)
from escalation_desk.escalations.domain import Actor, PolicyConfig
from escalation_desk.escalations.infrastructure import (
    NotificationDispatcher,
    SQLAlchemyDirectoryGateway,
    SQLAlchemyMatterRepository,
    SQLAlchemyNotificationStore,
    SQLAlchemyOverrideRepository,
    SQLAlchemyStepRepository,
    SQLAlchemyTicketGateway,
    SQLAlchemyTransaction,
    WhatsAppClient,
)
from escalation_desk.escalations.interfaces.controllers import (
    get_policy_provider,
    get_whatsapp_client,
)
from escalation_desk.main import app


# =============================================================================
# Seed data
# =============================================================================

ADMIN = 1
MANAGER = 2
LEAD = 3
MEMBER = 4
MUTED = 5
NO_NUMBER = 6
PRINCIPAL = 7

USERS = [
    dict(id=ADMIN, name="Asha Admin", role="admin", whatsapp_number="+919800000001"),
    dict(id=MANAGER, name="Tariq Manager", role="team_manager", whatsapp_number="+919800000002"),
    dict(id=LEAD, name="Lena Lead", role="team_manager", whatsapp_number="+919800000003"),
    dict(id=MEMBER, name="Mona Member", role="member", whatsapp_number="919800000004"),
    dict(id=MUTED, name="Nikhil Muted", role="member", whatsapp_number="+919800000005", whatsapp_enabled=False),
    dict(id=NO_NUMBER, name="Omar Offline", role="member", whatsapp_number=None),
    dict(id=PRINCIPAL, name="Priya Principal", role="principal", whatsapp_number="+919800000007"),
]

STUDENTS = [
    dict(id=1, name="Ravi Kumar", class_name="7A"),
    dict(id=2, name="Sara Ali", class_name="8B"),
]

TICKET_ID = 1


class StaticPolicyProvider(IPolicyConfigProvider):
    """Default role capabilities, no file involved."""

    def __init__(self, config: PolicyConfig = None):
        self._config = config or PolicyConfig()

    def get_config(self) -> PolicyConfig:
        return self._config


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    maker = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        session.add_all([UserModel(**u) for u in USERS])
        session.add_all([StudentModel(**s) for s in STUDENTS])
        await session.flush()
        session.add(TicketModel(
            id=TICKET_ID,
            ticket_number="TCK-2025-0001",
            title="Projector in lab 3 is broken",
            description="Lab 3 projector shows no signal since Monday.",
            status="open",
            created_by_id=MEMBER,
        ))
        await session.commit()
        yield session


# =============================================================================
# WhatsApp (Twilio) Fixtures
# =============================================================================

@pytest.fixture
def twilio_requests() -> List[Dict[str, str]]:
    """Form bodies posted to the Twilio Messages endpoint."""
    return []


@pytest.fixture
def twilio_settings() -> Settings:
    return Settings(
        twilio_account_sid="AC0123456789",
        twilio_auth_token="test-token",
        twilio_whatsapp_number="+14155238886",
        whatsapp_max_retries=2,
    )


@pytest.fixture
def whatsapp(twilio_requests, twilio_settings) -> WhatsAppClient:
    def handler(request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        twilio_requests.append(form)
        return httpx.Response(201, json={"sid": f"SM{len(twilio_requests):032d}", "status": "queued"})

    return WhatsAppClient(
        config=twilio_settings,
        transport=httpx.MockTransport(handler),
        backoff_base=0,
    )


def content_variables(form: Dict[str, str]) -> Dict[str, str]:
    return json.loads(form["ContentVariables"])


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def policy() -> StaticPolicyProvider:
    return StaticPolicyProvider()


@pytest.fixture
def lifecycle(session, whatsapp, policy) -> MatterLifecycleService:
    transaction = SQLAlchemyTransaction(session)
    directory = SQLAlchemyDirectoryGateway(session)
    dispatcher = NotificationDispatcher(whatsapp, SQLAlchemyNotificationStore(session))
    return MatterLifecycleService(
        matter_repository=SQLAlchemyMatterRepository(session),
        step_repository=SQLAlchemyStepRepository(session),
        transaction=transaction,
        directory=directory,
        notifications=NotificationService(directory, dispatcher, transaction),
        ticket_mirror=TicketMirror(SQLAlchemyTicketGateway(session), transaction),
        config_provider=policy,
    )


@pytest.fixture
def day_close(session, policy) -> DayCloseGateService:
    return DayCloseGateService(
        matter_repository=SQLAlchemyMatterRepository(session),
        override_repository=SQLAlchemyOverrideRepository(session),
        transaction=SQLAlchemyTransaction(session),
        directory=SQLAlchemyDirectoryGateway(session),
        config_provider=policy,
    )


@pytest.fixture
def actor(session, policy):
    """Resolve an Actor for a seeded user id."""
    directory = SQLAlchemyDirectoryGateway(session)

    async def _actor(user_id: int) -> Actor:
        return await resolve_actor(directory, policy, user_id)

    return _actor


@pytest.fixture
def steps(session):
    repo = SQLAlchemyStepRepository(session)

    async def _steps(matter_id: int):
        return await repo.list_for_matter(matter_id)

    return _steps


# =============================================================================
# HTTP Client Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def client(session, whatsapp, policy) -> AsyncGenerator[AsyncClient, None]:
    async def override_session():
        yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_whatsapp_client] = lambda: whatsapp
    app.dependency_overrides[get_policy_provider] = lambda: policy

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def as_user(user_id: int) -> Dict[str, str]:
    return {"X-User-ID": str(user_id)}
