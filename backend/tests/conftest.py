import os
import tempfile

# Settings are read once at import time; configure before importing the app.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_INIT_MODE", "off")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-0123456789abcdef012345678")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "mcom-auth-tests", "app.log"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.main import app
from app.schemas.user import UserCreate, UserRole
from app.services.rate_limiter import rate_controller
from app.services.user_service import user_service


class FakeMailer:
    """Records reset links instead of sending them."""

    def __init__(self, deliver=True, raises=None):
        self.deliver = deliver
        self.raises = raises
        self.sent = []

    def send_password_reset(self, to_email, name, reset_url):
        if self.raises is not None:
            raise self.raises
        self.sent.append({"to": to_email, "name": name, "url": reset_url})
        return self.deliver

    @property
    def last_secret(self):
        return self.sent[-1]["url"].rsplit("/", 1)[-1]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_controller.reset()
    yield
    rate_controller.reset()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def make_user(db):
    def _make(email="alice@example.com", password="s3cret-pass", name="Alice", role=UserRole.CUSTOMER):
        return user_service.create_user(
            db, UserCreate(name=name, email=email, password=password, role=role)
        )

    return _make
