"""Test configuration and fixtures.

Each test gets a fresh database: in-memory SQLite through aiosqlite by
default, or whatever ``TEST_DATABASE_URL`` points at. Tables are created per
test, so services are free to commit.
"""

import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.config import settings
from marketplace.database import Base, get_db
from marketplace.dependencies import get_notifier, get_storage
from marketplace.main import app
from marketplace.models.contract import Contract, ContractPaymentStatus, ContractStatus
from marketplace.models.job import Job
from marketplace.models.payment import Payment, PaymentStatus
from marketplace.models.user import User, UserRole
from marketplace.services.notifications import Notifier


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    url = settings.test_database_url
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


@pytest.fixture
def redis_mock() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def notifier(redis_mock: AsyncMock) -> Notifier:
    return Notifier(redis_mock, channel="test:events", enabled=True)


class MemoryStorage:
    """Keeps uploads in a dict and hands back fake URLs."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}

    async def store(self, file_name: str, content: bytes, content_type: str) -> str:
        url = f"memory://evidence/{len(self.files)}/{file_name}"
        self.files[url] = content
        return url


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    notifier: Notifier,
    storage: MemoryStorage,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, notifier and storage dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_notifier() -> Notifier:
        return notifier

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = override_get_notifier
    app.dependency_overrides[get_storage] = lambda: storage

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------


async def make_user(
    db: AsyncSession,
    role: UserRole = UserRole.MEMBER,
    name: str = "Test User",
) -> User:
    user = User(
        user_id=uuid.uuid4(),
        display_name=name,
        role=role,
        balance=Decimal("0.00"),
    )
    db.add(user)
    await db.commit()
    return user


async def make_job(
    db: AsyncSession,
    client: User,
    price: Decimal = Decimal("40000.00"),
    max_workers: int = 2,
) -> Job:
    job = Job(
        job_id=uuid.uuid4(),
        client_id=client.user_id,
        title="Paint the house",
        price=price,
        max_workers=max_workers,
    )
    db.add(job)
    await db.commit()
    return job


async def make_contract(
    db: AsyncSession,
    client: User,
    doer: User,
    price: Decimal = Decimal("50000.00"),
    status: ContractStatus = ContractStatus.IN_PROGRESS,
    job: Job | None = None,
) -> Contract:
    contract = Contract(
        contract_id=uuid.uuid4(),
        job_id=job.job_id if job else None,
        client_id=client.user_id,
        doer_id=doer.user_id,
        price=price,
        status=status,
        payment_status=ContractPaymentStatus.PENDING,
    )
    db.add(contract)
    await db.commit()
    return contract


async def make_payment(
    db: AsyncSession,
    contract: Contract,
    amount: Decimal = Decimal("50000.00"),
    status: PaymentStatus = PaymentStatus.HELD_ESCROW,
    platform_fee: Decimal = Decimal("0.00"),
    worker_payment_amount: Decimal | None = None,
    is_escrow: bool = True,
) -> Payment:
    """A payment from the contract's client to its doer."""
    payment = Payment(
        payment_id=uuid.uuid4(),
        contract_id=contract.contract_id,
        payer_id=contract.client_id,
        recipient_id=contract.doer_id,
        provider_transaction_id=f"mp-{uuid.uuid4().hex}",
        amount=amount,
        platform_fee=platform_fee,
        status=status,
        is_escrow=is_escrow,
        worker_payment_amount=worker_payment_amount,
    )
    db.add(payment)
    if status == PaymentStatus.HELD_ESCROW:
        contract.payment_status = ContractPaymentStatus.HELD
    await db.commit()
    return payment


async def make_held_contract(
    db: AsyncSession,
    amount: Decimal = Decimal("50000.00"),
    platform_fee: Decimal = Decimal("0.00"),
) -> tuple[User, User, Contract, Payment]:
    """Client, doer, in-progress contract and its payment held in escrow."""
    client = await make_user(db, name="Client")
    doer = await make_user(db, name="Doer")
    contract = await make_contract(db, client, doer, price=amount)
    payment = await make_payment(db, contract, amount=amount, platform_fee=platform_fee)
    return client, doer, contract, payment


def auth_headers(user: User) -> dict[str, str]:
    return {"X-User-Id": str(user.user_id)}
