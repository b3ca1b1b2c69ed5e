import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services.providers import ProviderConfig


TEST_REGISTRY = {
    "google": ProviderConfig("google", "google-client-id", "google-secret", "Google"),
    "facebook": ProviderConfig("facebook", "facebook-app-id", "facebook-secret", "Facebook"),
}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def fast_auth_settings(monkeypatch):
    """Cheap bcrypt and no retry sleep so flow tests stay fast."""
    monkeypatch.setattr(settings, "BCRYPT_ROUNDS", 4)
    monkeypatch.setattr(settings, "AUTH_RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "PASSWORDLESS_CONVENIENCE_ENABLED", True)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "auth.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def auth_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    previous_registry = getattr(app.state, "provider_registry", None)
    app.state.provider_registry = dict(TEST_REGISTRY)
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    app.state.provider_registry = previous_registry
