import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="inventory-tests-")
DB_PATH = os.path.join(_DB_DIR, "inventory.db")

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{DB_PATH}"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("JWT_EXPIRES_MINUTES", None)

import fakeredis  # noqa: E402
import fakeredis.aioredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
import redis.asyncio as aioredis  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app import db, main  # noqa: E402
from app.auth import CUSTOMER, SELLER, Identity, issue_token  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from an empty ledger file."""
    if os.path.exists(DB_PATH):
        os.remove(DB_PATH)
    yield


@pytest.fixture()
def redis_server(monkeypatch):
    server = fakeredis.FakeServer()

    def from_url(*args, **kwargs):
        return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

    monkeypatch.setattr(aioredis, "from_url", from_url)
    return server


@pytest.fixture()
def client(redis_server):
    with TestClient(main.app) as client:
        yield client


@pytest.fixture()
async def async_client(redis_server):
    async with main.lifespan(main.app):
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture()
async def session_factory():
    await db.init_db()
    yield db.async_session
    await db.engine.dispose()


@pytest.fixture()
def seller() -> Identity:
    return Identity(subject_id=1, role=SELLER)


@pytest.fixture()
def customer() -> Identity:
    return Identity(subject_id=2, role=CUSTOMER)


@pytest.fixture()
def seller_headers() -> dict:
    return {"Authorization": issue_token(1, SELLER)}


@pytest.fixture()
def customer_headers() -> dict:
    return {"Authorization": issue_token(2, CUSTOMER)}


