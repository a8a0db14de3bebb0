from pathlib import Path

from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / ".env.test"
load_dotenv(env_file)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.db.base  # noqa: E402, F401
from app.core import redis as redis_module  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.db.session import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from tests.utils.factories import create_user_factory  # noqa: E402


@pytest.fixture
def memory_engine():
    """In-memory SQLite shared by every session and thread of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def test_session_local(memory_engine):
    return sessionmaker(bind=memory_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(test_session_local):
    session = test_session_local()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
async def test_app(test_session_local):
    def override_get_db():
        db = test_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    redis_module.redis_client = None

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def test_client(test_app):
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client


@pytest.fixture
def test_user(db_session):
    return create_user_factory(db_session, username="alice", display_name="Alice Anderson")


@pytest.fixture
def other_user(db_session):
    return create_user_factory(db_session, username="bob", display_name="Bob Brown")


@pytest.fixture
def third_user(db_session):
    return create_user_factory(db_session, username="carol", display_name="Carol Clark")


@pytest.fixture
def test_user_token(test_user):
    return create_access_token({"sub": test_user.id})


@pytest.fixture
def other_user_token(other_user):
    return create_access_token({"sub": other_user.id})
