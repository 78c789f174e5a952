"""
tests/conftest.py
Shared fixtures: in-memory SQLite, fake Redis, a recording SMS sender, an
isolated connection registry, and seeded operator/donor accounts.
"""

import os

# Settings are read at import time; set them before any app module loads
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("OTP_EXPIRY_MINUTES", "30")

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketState

from config.database import Base, get_db
from config.redis_client import get_redis
from services.inventory.service import seed_inventory
from services.notification.dispatcher import NotificationDispatcher
from services.notification.sms import get_sms_sender
from services.realtime.registry import ConnectionRegistry
from services.requests.lifecycle import RequestLifecycle
from shared.exceptions import DeliveryError
from shared.models.models import BloodGroup, Donor, User, UserRole
from shared.utils.security import create_access_token


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Test doubles ───────────────────────────────────────────────────────────────

class RecordingSmsSender:
    """Stands in for TwilioSmsSender; records every send, optionally fails."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, to_phone: str, body: str) -> str:
        if self.fail:
            raise DeliveryError("SMS provider unavailable")
        self.sent.append((to_phone, body))
        return f"SM{len(self.sent):04d}"


class FakeChannel:
    """Minimal WebSocket stand-in for the registry."""

    def __init__(self, fail: bool = False):
        self.client_state = WebSocketState.CONNECTED
        self.messages: list[str] = []
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(data)


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine) -> AsyncSession:
    session_factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def inventory(db: AsyncSession) -> int:
    return await seed_inventory(db)


# ── Collaborators ──────────────────────────────────────────────────────────────

@pytest.fixture
def redis():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def sms_sender() -> RecordingSmsSender:
    return RecordingSmsSender()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def lifecycle(db, registry, sms_sender) -> RequestLifecycle:
    """Lifecycle wired the way the WebSocket handler wires it (no BackgroundTasks)."""
    return RequestLifecycle(db, registry, NotificationDispatcher(db, registry, sms_sender))


# ── Accounts ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    user = User(
        full_name="Asha Operator",
        email="operator@bloodcare.test",
        phone_number="9000000001",
        blood_group=BloodGroup.B_POSITIVE,
        role=UserRole.ADMIN,
    )
    db.add(user)
    await db.commit()
    return user


async def _make_donor(db: AsyncSession, name: str, email: str, phone: str) -> Donor:
    user = User(
        full_name=name,
        email=email,
        phone_number=phone,
        blood_group=BloodGroup.O_POSITIVE,
        role=UserRole.DONOR,
    )
    donor = Donor(user=user, is_available=True)
    db.add_all([user, donor])
    await db.commit()
    return donor


@pytest_asyncio.fixture
async def donor(db: AsyncSession) -> Donor:
    return await _make_donor(db, "Ravi Kumar", "ravi@bloodcare.test", "9876543210")


@pytest_asyncio.fixture
async def other_donor(db: AsyncSession) -> Donor:
    return await _make_donor(db, "Meera Nair", "meera@bloodcare.test", "+15550001111")


@pytest.fixture
def donor_user(donor: Donor) -> User:
    return donor.user


# ── App / HTTP client ──────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(db, redis, sms_sender, registry):
    from main import app

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_sms_sender] = lambda: sms_sender
    original_registry = app.state.registry
    app.state.registry = registry

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.registry = original_registry


@pytest_asyncio.fixture
async def create_payload(donor: Donor) -> dict:
    return {
        "patient_name": "Sunita Devi",
        "blood_group": "O+",
        "donor_id": str(donor.id),
        "hospital_name": "City General Hospital",
        "location": "Ward 4, Sector 12",
        "contact_number": "9123456780",
    }
