"""
Pytest configuration and fixtures for QR check-in tests.

Provides common fixtures for:
- Test database setup
- Frozen clock, signing keys and a static directory
- Token services wired to the test session
- HTTP client with authentication headers
"""

import os

# Settings are read at import time; configure before importing the app
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-bearer-secret-key-0123456789abcdef")
os.environ.setdefault("QR_SIGNING_KEY", "test-qr-signing-key-0123456789abcdef")

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkin.audit.service import AuditContext
from checkin.core.clock import FrozenClock, get_clock
from checkin.core.rate_limit import limiter
from checkin.core.secrets import SecretProvider, get_secret_provider
from checkin.core.security import create_access_token
from checkin.db.session import Base, get_db
from checkin.integrations.adapters.factory import get_participant_directory, get_session_directory
from checkin.integrations.adapters.static import StaticDirectoryAdapter
from checkin.integrations.interfaces.base import ParticipantInfo, SessionInfo
from checkin.main import app
from checkin.models.qr_token import QRToken, SessionKind
from checkin.services.issuer import QRIssuer
from checkin.services.redeemer import QRRedeemer
from checkin.services.signer import QRSigner

# =============================================================================
# Database Fixtures
# =============================================================================


# Use SQLite for tests (faster, no external dependencies)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_SIGNING_KEY = "test-qr-signing-key-0123456789abcdef"
ROTATED_SIGNING_KEY = "rotated-qr-signing-key-fedcba9876543210"

# 2026-03-03 10:00:00 UTC
T0 = datetime(2026, 3, 3, 10, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async_session = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def load_token(db_session):
    """Load a token row fresh from the database, ignoring the identity map."""

    async def _load(token_id: str) -> QRToken | None:
        result = await db_session.execute(
            select(QRToken).where(QRToken.id == token_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    return _load


# =============================================================================
# Time, Keys and Directory
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def secrets() -> SecretProvider:
    return SecretProvider(current=TEST_SIGNING_KEY, current_version=1, prior="", prior_version=0)


@pytest.fixture
def signer(secrets) -> QRSigner:
    return QRSigner(secrets)


@pytest.fixture
def directory() -> StaticDirectoryAdapter:
    """Roster with participant 42 and training session 7."""
    return StaticDirectoryAdapter(
        participants=[
            ParticipantInfo(participant_id="42", display_name="Sam Okafor", group_affiliation="U12 Lions"),
            ParticipantInfo(participant_id="43", display_name="Ana Ruiz", group_affiliation="U12 Lions"),
        ],
        sessions=[
            SessionInfo(
                session_id="7",
                session_kind=SessionKind.TRAINING,
                title="Tuesday drills",
                scheduled_at=datetime(2026, 3, 3, 10, 30, tzinfo=timezone.utc),
                location="Pitch 2",
            ),
        ],
    )


@pytest.fixture
def coach_context() -> AuditContext:
    return AuditContext(actor_id="coach-1", ip_address="127.0.0.1", user_agent="pytest")


@pytest.fixture
def player_context() -> AuditContext:
    return AuditContext(actor_id="player-42", ip_address="127.0.0.1", user_agent="pytest")


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def issuer(db_session, signer, directory, clock) -> QRIssuer:
    return QRIssuer(db_session, signer, directory, directory, clock)


@pytest.fixture
def redeemer(db_session, signer, directory, clock) -> QRRedeemer:
    return QRRedeemer(db_session, signer, directory, clock)


# =============================================================================
# Test Client Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def client(db_session, clock, secrets, directory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with database, clock, keys and directory overridden."""

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_secret_provider] = lambda: secrets
    app.dependency_overrides[get_participant_directory] = lambda: directory
    app.dependency_overrides[get_session_directory] = lambda: directory
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Authentication Fixtures
# =============================================================================


@pytest.fixture
def coach_token() -> str:
    return create_access_token(subject="coach-1", role="coach")


@pytest.fixture
def admin_token() -> str:
    return create_access_token(subject="admin-1", role="admin")


@pytest.fixture
def player_token() -> str:
    """Player linked to participant 42."""
    return create_access_token(subject="player-42", role="player", participant_id="42")


@pytest.fixture
def coach_headers(coach_token) -> dict:
    return {"Authorization": f"Bearer {coach_token}"}


@pytest.fixture
def admin_headers(admin_token) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def player_headers(player_token) -> dict:
    return {"Authorization": f"Bearer {player_token}"}
