import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import Base, get_db, make_engine
from main import app
from models.user import User
from models.user_level import UserLevel

LEVELS = [
    {"level": 2, "required_xp": 100, "badge_name": "Bronze", "badge_icon": "b", "badge_description": "100 XP"},
    {"level": 3, "required_xp": 250, "badge_name": "Silver", "badge_icon": "s", "badge_description": "250 XP"},
]


@pytest.fixture
def engine():
    engine = make_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session_factory):
    """Insert a user in its own committed session and return its id."""
    counter = {"n": 0}

    def _make_user(**fields):
        counter["n"] += 1
        fields.setdefault("username", f"user{counter['n']}")
        fields.setdefault("email", f"user{counter['n']}@example.com")
        fields.setdefault("badges", [])
        with session_factory() as session:
            user = User(**fields)
            session.add(user)
            session.commit()
            return user.id

    return _make_user


@pytest.fixture
def levels(session_factory):
    with session_factory() as session:
        session.add_all([UserLevel(**data) for data in LEVELS])
        session.commit()
    return LEVELS


@pytest.fixture
def load_user(session_factory):
    def _load_user(user_id):
        with session_factory() as session:
            return session.get(User, user_id)

    return _load_user
