import os

# cheap hashes for the test run, must be set before lending.config is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from dotenv import load_dotenv

from lending.main import app, get_db
from lending.models import Base, UserRole
from lending.crud import create_copy, create_resource, create_user_record
from lending.schemas import CopyCreate, ResourceCreate, UserCreate

load_dotenv()

SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

USER_PASSWORD = "testpassword"
ADMIN_PASSWORD = "adminpassword"


@pytest.fixture(scope="session", autouse=True)
def create_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="module")
def client():
    app.state.testing = True

    def override_get_db():
        try:
            db = TestingSessionLocal()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


@pytest.fixture(scope="function")
def test_user(db_session):
    user_data = UserCreate(
        email="test@example.com",
        password=USER_PASSWORD,
        first_name="Test",
        last_name="User",
    )
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def other_user(db_session):
    user_data = UserCreate(
        email="other@example.com",
        password=USER_PASSWORD,
        first_name="Other",
        last_name="User",
    )
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def admin_user(db_session):
    user_data = UserCreate(
        email="admin@example.com",
        password=ADMIN_PASSWORD,
        first_name="Admin",
        last_name="User",
    )
    return create_user_record(db_session, user_data, role=UserRole.ADMIN)


@pytest.fixture
def user_auth(test_user):
    return (test_user.email, USER_PASSWORD)


@pytest.fixture
def other_auth(other_user):
    return (other_user.email, USER_PASSWORD)


@pytest.fixture
def admin_auth(admin_user):
    return (admin_user.email, ADMIN_PASSWORD)


@pytest.fixture(scope="function")
def test_resource(db_session):
    resource_data = ResourceCreate(
        title="Test Book",
        type="BOOK",
        description="Test Description",
        author="Test Author",
        isbn="1234567890",
        publisher="Test Publisher",
        genre="Test Genre",
    )
    return create_resource(db_session, resource_data)


@pytest.fixture(scope="function")
def test_copy(db_session, test_resource):
    return create_copy(db_session, CopyCreate(resource_id=test_resource.id))


@pytest.fixture
def make_copies(db_session, test_resource):
    def _make(count):
        return [
            create_copy(db_session, CopyCreate(resource_id=test_resource.id))
            for _ in range(count)
        ]

    return _make


@pytest.fixture
def session_factory():
    return TestingSessionLocal
