import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

# --- Alembic Imports ---
from alembic.config import Config
from alembic import command
# --- End Alembic Imports ---

# Import app and storage dependency first
from main import app, get_storage

# Import database components needed for setup
from database import Base, build_engine
import auth
import schemas
from storage import DatabaseStorage, MemoryStorage

TEST_DATABASE_URL = "sqlite:///./job-marketplace-test.db"
TEST_PASSWORD = "secret123"

# Same pragmas as the app engine, foreign keys included
test_engine = build_engine(TEST_DATABASE_URL)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeClock:
    """Deterministic clock: each reading is one second after the previous one."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create the test database from models and stamp with Alembic head."""
    db_path = TEST_DATABASE_URL.split("///")[-1]
    if os.path.exists(db_path):
        os.unlink(db_path)

    # --- Create schema directly from models --- #
    Base.metadata.create_all(bind=test_engine)

    # --- Stamp the database with the latest Alembic revision --- #
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    alembic_cfg.attributes["explicit_url"] = True
    command.stamp(alembic_cfg, "head")

    yield  # Tests run here

    test_engine.dispose()
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        if os.path.exists(path):
            os.unlink(path)


@pytest.fixture(scope="function")
def db_session(setup_test_database):
    """Yields a SQLAlchemy session and empties every table afterwards."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_storage(clock):
    return MemoryStorage(clock=clock)


@pytest.fixture
def database_storage(db_session, clock):
    return DatabaseStorage(db_session, clock=clock)


@pytest.fixture(params=["memory", "database"])
def storage(request):
    """Every test using this fixture runs once per storage backend."""
    return request.getfixturevalue(f"{request.param}_storage")


@pytest.fixture(scope="function")
def test_client(storage):
    """Test client whose requests all go to the parametrized storage backend."""

    def _override_get_storage():
        yield storage

    app.dependency_overrides[get_storage] = _override_get_storage
    yield TestClient(app)
    app.dependency_overrides.pop(get_storage, None)


# --- Data factories ---
@pytest.fixture
def make_user(storage):
    counter = {"n": 0}

    def _make_user(user_type: str = "job_seeker", **overrides) -> schemas.User:
        counter["n"] += 1
        data = {
            "email": f"user{counter['n']}@example.com",
            "password": auth.hash_password(TEST_PASSWORD),
            "first_name": "Test",
            "last_name": f"User{counter['n']}",
            "user_type": user_type,
        }
        data.update(overrides)
        return storage.create_user(schemas.UserCreate(**data))

    return _make_user


@pytest.fixture
def make_job(storage):
    def _make_job(**overrides) -> schemas.Job:
        data = {
            "title": "Site Electrician",
            "description": "Maintain wiring on commercial sites.",
            "requirements": "Licensed, 2+ years experience",
            "location": "Pune",
            "job_type": "full-time",
            "skills": ["Electrician"],
        }
        data.update(overrides)
        return storage.create_job(schemas.JobCreate(**data))

    return _make_job
