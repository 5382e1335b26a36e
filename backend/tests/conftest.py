"""
pytest configuration and fixtures for EngageTrack backend tests.
"""

import os
import tempfile
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Set environment variables before importing app modules
_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="engagetrack-tests-"), "engagetrack.db")
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
os.environ["TRACKING_SECRET"] = "test-tracking-secret"
os.environ["IP_HASH_SALT"] = "test-ip-salt"
os.environ["ANALYTICS_REFRESH_MODE"] = "inline"
os.environ["PUBLIC_BASE_URL"] = "http://track.test"
os.environ["DEBUG"] = "false"


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the app uses."""

    def __init__(self):
        self.store = {}

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace the Redis connection with an in-memory fake for every test."""
    from app.db.redis import redis_client

    fake = FakeRedis()
    redis_client._client = fake
    yield fake
    redis_client._client = None


@pytest_asyncio.fixture
async def db():
    """Fresh schema on the SQLite test database."""
    import app.models  # noqa: F401
    from app.db.postgres import Base, engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def session(db):
    """A database session for direct ledger access in tests."""
    from app.db.postgres import async_session_maker

    async with async_session_maker() as s:
        yield s


@pytest_asyncio.fixture
async def client(db):
    """HTTP client bound to the FastAPI app."""
    from app.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def seed_send(db):
    """Record a ``sent`` event the way the sender would, returning its tracking ID."""
    from app.db.postgres import async_session_maker
    from app.models.engagement import EventType
    from app.schemas.engagement import EngagementEventCreate
    from app.services.event_store import EventStore

    async def _seed(
        tracking_id: str = "abc",
        campaign_id: str = "camp1",
        recipient_email: str = "a@b.com",
        created_at=None,
    ) -> str:
        async with async_session_maker() as s:
            await EventStore(s).append(EngagementEventCreate(
                campaign_id=campaign_id,
                event_type=EventType.SENT,
                tracking_id=tracking_id,
                recipient_email=recipient_email,
                created_at=created_at,
            ))
            await s.commit()
        return tracking_id

    return _seed


CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
SAFARI_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15"
)


@pytest.fixture
def user_agents() -> dict:
    """Representative user-agent strings by browser family."""
    return {"chrome": CHROME_UA, "firefox": FIREFOX_UA, "safari": SAFARI_UA}
