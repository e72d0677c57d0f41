"""Shared test configuration: fake keys, in-memory database, HTTP client."""

import os
import time

# Set before anything reads the settings
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-fake-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-fake-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-1234")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake")
os.environ.setdefault("AUTO_MIGRATE", "false")

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from iaiaz.core.config import get_settings
from iaiaz.core.model_catalog import catalog
from iaiaz.core.security import limiter
from iaiaz.db import models  # noqa: F401
from iaiaz.db.database import Base, get_db
from iaiaz.db.models import AIModelModel, AppSettingModel
from iaiaz.db.repository import OrganizationRepository, UserRepository
from iaiaz.main import app
from iaiaz.providers.base import AIProvider, ProviderResponse

TEST_MODELS = [
    {
        "id": "claude-sonnet-4-20250514",
        "name": "Claude Sonnet 4",
        "provider": "anthropic",
        "input_price": 3.0,
        "output_price": 15.0,
        "rate_limit_tier": "standard",
        "display_order": 1,
    },
    {
        "id": "gpt-4o-mini",
        "name": "GPT-4o mini",
        "provider": "openai",
        "input_price": 0.15,
        "output_price": 0.6,
        "rate_limit_tier": "economy",
        "display_order": 2,
    },
    {
        "id": "claude-opus-4-20250514",
        "name": "Claude Opus 4",
        "provider": "anthropic",
        "input_price": 15.0,
        "output_price": 75.0,
        "rate_limit_tier": "premium",
        "display_order": 3,
    },
]


class FakeProvider(AIProvider):
    """Provider returning a canned answer and recording calls."""

    def __init__(self, content: str = "Bonjour !", input_tokens: int = 1000, output_tokens: int = 500):
        self.content = content
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls = []

    async def generate(self, messages, model, max_tokens=4096, system_prompt=None):
        self.calls.append({"messages": messages, "model": model, "system_prompt": system_prompt})
        return ProviderResponse(
            content=self.content,
            model=model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


def make_token(user_id: str, email: str = None, name: str = None, expires_in: int = 3600) -> str:
    settings = get_settings()
    payload = {
        "sub": user_id,
        "email": email or f"{user_id}@example.com",
        "aud": settings.supabase_jwt_audience,
        "exp": int(time.time()) + expires_in,
        "user_metadata": {"full_name": name} if name else {},
    }
    return jwt.encode(payload, settings.supabase_jwt_secret, algorithm="HS256")


def auth_headers(user_id: str, email: str = None, name: str = None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, email, name)}"}


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    catalog.invalidate()
    async with session_factory() as session:
        yield session
    catalog.invalidate()


@pytest.fixture
async def seeded_db(db):
    """Database with the test model catalogue and a 50% markup."""
    for fields in TEST_MODELS:
        db.add(AIModelModel(**fields))
    db.add(AppSettingModel(key="markup", value={"percentage": 50}))
    db.add(AppSettingModel(key="free_credits", value={"amount": 1.0}))
    await db.commit()
    catalog.invalidate()
    return db


@pytest.fixture
async def client(seeded_db, session_factory):
    """FastAPI test client with the DB dependency overridden."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def fake_provider(monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr("iaiaz.core.chat.get_provider", lambda name: provider)
    return provider


@pytest.fixture
async def make_user(db):
    users = UserRepository(db)

    async def _make(user_id: str, balance: float = 0.0, **fields):
        user = await users.create(user_id, fields.pop("email", f"{user_id}@example.com"), welcome_credits=balance)
        for key, value in fields.items():
            setattr(user, key, value)
        await db.commit()
        return user

    return _make


@pytest.fixture
async def make_org(db):
    orgs = OrganizationRepository(db)

    async def _make(owner_id: str, balance: float = 0.0, org_type: str = "school", **fields):
        return await orgs.create(
            name=fields.pop("name", "Lycée Test"),
            org_type=org_type,
            owner_id=owner_id,
            slug=fields.pop("slug", f"org-{owner_id}"),
            credit_balance=balance,
            **fields,
        )

    return _make
