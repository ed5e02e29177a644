import os

# Configuração antes de importar a app (Settings é lida no import)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-api-key")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core import clock
from app.crud import crud_app_role, crud_oauth_client
from app.crud.crud_user import user as crud_user
from app.db.base import Base
from app.db.session import get_db
from app.schemas.user import UserCreate
from main import app

# --- CONFIGURAÇÃO DO BANCO DE DADOS DE TESTE ---
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

TEST_PASSWORD = "Password123!"
REDIRECT_URI = "https://app.example/cb"


@pytest.fixture(scope="session")
def async_engine():
    # NullPool: cada teste corre no seu próprio event loop
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)
    yield engine
    engine.sync_engine.dispose()
    try:
        os.remove("test.db")
    except (PermissionError, FileNotFoundError):
        print("Aviso: não foi possível remover 'test.db'.")


@pytest.fixture(scope="session")
def test_session_local(async_engine):
    yield async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function", autouse=True)
async def db_session(async_engine, test_session_local):
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session_local() as session:
        await crud_app_role.seed_default_roles(session)
        yield session
        await session.close()

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# --- CONFIGURAÇÃO DO CLIENTE HTTP DE TESTE ---
@pytest.fixture(scope="function")
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


# --- Relógio controlado ---
class FrozenClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def frozen_clock(monkeypatch) -> FrozenClock:
    fc = FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))
    monkeypatch.setattr(clock, "now", fc.now)
    return fc


# --- Utilizadores, sessões e clientes ---
@pytest.fixture
def create_user(db_session: AsyncSession):
    async def _create(email: str = "user@example.com", *, is_admin: bool = False, full_name: str = "Test User"):
        return await crud_user.create(
            db_session,
            obj_in=UserCreate(email=email, password=TEST_PASSWORD, full_name=full_name),
            is_admin=is_admin,
        )
    return _create


@pytest.fixture
def login(async_client: AsyncClient):
    async def _login(email: str, password: str = TEST_PASSWORD) -> Dict[str, str]:
        response = await async_client.post(
            "/api/v1/auth/token", data={"username": email, "password": password}
        )
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}
    return _login


@pytest.fixture
async def test_user(create_user):
    return await create_user("user@example.com")


@pytest.fixture
async def admin_headers(create_user, login) -> Dict[str, str]:
    await create_user("admin@example.com", is_admin=True, full_name="Admin")
    return await login("admin@example.com")


@pytest.fixture
async def oauth_client(db_session: AsyncSession):
    """Cliente ativo registado com REDIRECT_URI; devolve (cliente, secret em claro)."""
    return await crud_oauth_client.register(
        db_session, name="Example App", redirect_uris=[REDIRECT_URI], homepage_url="https://app.example"
    )
