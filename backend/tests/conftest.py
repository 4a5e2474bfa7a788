import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.api.deps import get_identity_client
from app.core.security import create_access_token
from app.db.database import create_tables, get_db, make_engine
from app.db.enums import AccessLevel
from app.db.store import FormStore
from app.forms.service import FormOrchestrator
from app.integrations.identity import CompanyAccess, IdentityServiceError


class FakeIdentity:
    """In-process stand-in for the identity provider."""

    def __init__(self):
        self.levels = {}
        self.display_names = {}
        self.access_error = None
        self.display_name_error = None
        self.access_checks = []

    def grant(self, user_id, company_id, level="admin"):
        self.levels[(user_id, company_id)] = level

    async def check_company_access(self, user_id, company_id):
        self.access_checks.append((user_id, company_id))
        if self.access_error is not None:
            raise self.access_error
        level = AccessLevel(self.levels.get((user_id, company_id), "no_access"))
        return CompanyAccess(access_level=level, has_access=level != AccessLevel.no_access)

    async def get_display_name(self, user_id):
        if self.display_name_error is not None:
            raise self.display_name_error
        return self.display_names.get(user_id)

    async def aclose(self):
        pass


@pytest.fixture
async def test_engine():
    # One shared connection so every session sees the same in-memory database
    engine = make_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(test_session):
    return FormStore(test_session)


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def orchestrator(store, identity):
    return FormOrchestrator(store, identity)


@pytest.fixture
def access_failure():
    return IdentityServiceError("Identity provider unavailable")


@pytest.fixture
def auth_headers():
    def _headers(user_id="user-1"):
        token = create_access_token({"sub": user_id})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def client(session_factory, identity):
    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_identity_client] = lambda: identity

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
