"""
Pytest configuration and shared fixtures.

The environment is pinned before anything imports app.config, so every
TestClient gets a fresh in-memory database (created by the app lifespan),
a bootstrap admin, and a throwaway receipts directory. Stripe and SMTP stay
unconfigured: emails are only logged and webhooks are parsed unverified.
"""
import os
import tempfile

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SESSION_SECRET"] = "test-session-secret-for-pytest-only"
os.environ["ADMIN_EMAIL"] = "admin@solnumerique.test"
os.environ["ADMIN_PASSWORD"] = "AdminPass123"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="sol-receipts-")
os.environ["SMTP_HOST"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["TOUR_CHECK_INTERVAL_SECONDS"] = "0"

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.db.models import Base, User, UserRole
from app.utils.password_hash import hash_password

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]
DEFAULT_PASSWORD = "Password123"


# ============================================
# API fixtures (sync, TestClient)
# ============================================

@pytest.fixture
def client():
    """TestClient with the lifespan running (fresh database per test)."""
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register_user(client, email: str, firstname: str = "Marie", lastname: str = "Joseph", **extra) -> dict:
    """Register a member and return {"id", "headers", "token", "refresh_token"}."""
    payload = {
        "firstname": firstname,
        "lastname": lastname,
        "email": email,
        "password": DEFAULT_PASSWORD,
        **extra,
    }
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.text
    data = response.json()
    return {
        "id": data["user"]["id"],
        "headers": auth_headers(data["token"]),
        "token": data["token"],
        "refresh_token": data["refresh_token"],
    }


def login_admin(client) -> dict:
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200, response.text
    data = response.json()
    return {"id": data["user"]["id"], "headers": auth_headers(data["token"])}


def create_sol(client, headers: dict, **overrides) -> dict:
    payload = {
        "nom": "Sol Famille",
        "description": "Sol mensuel de la famille",
        "montant_par_periode": 100,
        "frequence": "mensuel",
        "max_participants": 5,
        **overrides,
    }
    response = client.post("/api/sols", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def join_sol(client, headers: dict, sol_id: int) -> dict:
    response = client.post(f"/api/sols/{sol_id}/join", headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def upload_receipt(client, headers: dict, participation_id: int, content: bytes = b"%PDF-1.4 receipt"):
    return client.post(
        "/api/payments/upload-receipt",
        data={"participation_id": str(participation_id)},
        files={"file": ("recu.pdf", content, "application/pdf")},
        headers=headers,
    )


@pytest.fixture
def admin(client):
    return login_admin(client)


@pytest.fixture
def member(client):
    return register_user(client, "marie@example.com")


# ============================================
# Service fixtures (async, direct sessions)
# ============================================

@pytest_asyncio.fixture
async def test_db():
    """Create an in-memory test database and yield its session maker."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    yield async_session_maker

    await engine.dispose()


async def make_user(db: AsyncSession, email: str, role: UserRole = UserRole.MEMBER, firstname: str = "Jean") -> User:
    user = User(
        firstname=firstname,
        lastname="Pierre",
        email=email,
        password_hash=hash_password(DEFAULT_PASSWORD),
        role=role,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user
