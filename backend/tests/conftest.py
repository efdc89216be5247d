"""
Test configuration and fixtures for CharityPay backend tests.
"""
import os
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

import charitypay.models  # noqa: F401
from charitypay.main import app
from charitypay.api.deps import get_processor
from charitypay.db.base import Base, get_db
from charitypay.models.organization import Organization, AccountStatus
from charitypay.models.donor import Donor
from charitypay.models.donation import Donation, DonationStatus
from charitypay.models.scheduled_donation import ScheduledDonation, Frequency, ExecutionLockStatus
from charitypay.models.round_up import RoundUpConfig, RoundUpStatus
from charitypay.services.scheduler import build_scheduler
from tests.factories import create_donation
from tests.fakes import FakeProcessor


# Use a file-based SQLite DB to avoid :memory: multiple-connection issues
# with SQLAlchemy + aiosqlite (each new connection would see an empty DB).
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    # Clean up test database file
    try:
        os.remove("./test.db")
    except OSError:
        pass


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker:
    """Session factory for code that opens its own sessions (background jobs)."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession, session_factory, processor: FakeProcessor
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session and processor overrides."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor
    app.state.scheduler = build_scheduler(session_factory, processor)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    del app.state.scheduler


@pytest_asyncio.fixture
async def test_org(db_session: AsyncSession) -> Organization:
    """Create an organization whose connected account can take payments."""
    org = Organization(
        name="Harbour Food Bank",
        contact_email="finance@harbourfood.org",
        stripe_connect_account_id="acct_test_harbour",
        stripe_account_status=AccountStatus.ACTIVE,
        charges_enabled=True,
        payouts_enabled=True,
    )
    db_session.add(org)
    await db_session.commit()
    return org


@pytest_asyncio.fixture
async def restricted_org(db_session: AsyncSession) -> Organization:
    """Create an organization whose connected account is restricted."""
    org = Organization(
        name="Paused Charity",
        stripe_connect_account_id="acct_test_paused",
        stripe_account_status=AccountStatus.RESTRICTED,
    )
    db_session.add(org)
    await db_session.commit()
    return org


@pytest_asyncio.fixture
async def test_donor(db_session: AsyncSession) -> Donor:
    """Create a donor with a processor customer."""
    donor = Donor(
        name="Test Donor",
        email="donor@example.com",
        stripe_customer_id="cus_test_donor",
    )
    db_session.add(donor)
    await db_session.commit()
    return donor


@pytest_asyncio.fixture
async def processing_donation(
    db_session: AsyncSession, test_donor: Donor, test_org: Organization
) -> Donation:
    """A $100 one-time donation with an intent, awaiting its webhook."""
    return await create_donation(
        db_session, test_donor, test_org,
        status=DonationStatus.PROCESSING,
        payment_intent_id="pi_existing_1",
    )


@pytest_asyncio.fixture
async def scheduled_donation(
    db_session: AsyncSession, test_donor: Donor, test_org: Organization
) -> ScheduledDonation:
    """A monthly $50 template that is due now."""
    now = datetime.now(timezone.utc)
    template = ScheduledDonation(
        donor_id=test_donor.id,
        organization_id=test_org.id,
        amount=Decimal("50.00"),
        cover_fees=False,
        currency="aud",
        frequency=Frequency.MONTHLY,
        start_date=now - timedelta(days=30),
        next_run_at=now - timedelta(minutes=5),
        stripe_customer_id=test_donor.stripe_customer_id,
        payment_method_id="pm_test_card",
        is_active=True,
        status=ExecutionLockStatus.ACTIVE,
    )
    db_session.add(template)
    await db_session.commit()
    return template


@pytest_asyncio.fixture
async def round_up_config(
    db_session: AsyncSession, test_donor: Donor, test_org: Organization
) -> RoundUpConfig:
    """A round-up config with a $5 threshold and nothing accumulated."""
    config = RoundUpConfig(
        donor_id=test_donor.id,
        organization_id=test_org.id,
        monthly_threshold=Decimal("5.00"),
        cover_fees=False,
        currency="aud",
        stripe_customer_id=test_donor.stripe_customer_id,
        payment_method_id="pm_test_card",
        is_active=True,
        status=RoundUpStatus.PENDING,
        current_total=Decimal("0.00"),
        total_donated=Decimal("0.00"),
    )
    db_session.add(config)
    await db_session.commit()
    return config
