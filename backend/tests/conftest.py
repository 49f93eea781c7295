import os

# The app module builds its own engine at import time; keep it off disk
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import date  # noqa: E402
from typing import Callable, List  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from kartops.database import get_session  # noqa: E402
from kartops.main import app  # noqa: E402

TEST_DATABASE_URL = "sqlite:///:memory:"

# ============================================================================
# Test Database Setup with StaticPool
# ============================================================================
# 1. Use sqlite:///:memory: with StaticPool so ALL sessions share same DB
# 2. check_same_thread=False required for TestClient/threaded access
# 3. All models MUST be imported before create_all() (see session_fixture)
# 4. App dependency overridden to use test_engine (see client_fixture)
# 5. Tables are dropped after each test so unique nicknames can be reused
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def override_get_session():
    """Override session to use test engine"""
    with Session(test_engine) as session:
        yield session


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Provide a test database session on a fresh schema"""
    # Import all models to ensure they're registered BEFORE create_all
    import kartops.models  # noqa: F401

    SQLModel.metadata.create_all(test_engine)

    with Session(test_engine) as session:
        yield session

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(name="client")
def client_fixture(session: Session):
    """Provide a test client with overridden database session

    Override MUST be set BEFORE TestClient() and stay in place for the entire
    duration. This ensures the app never uses its own engine.
    """
    app.dependency_overrides[get_session] = override_get_session

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def tournament(session: Session):
    from kartops.models.tournament import Tournament

    t = Tournament(name="Spring Cup", held_on=date(2026, 4, 12), status="active")
    session.add(t)
    session.commit()
    session.refresh(t)
    return t


@pytest.fixture
def make_players(session: Session) -> Callable[[int], List[int]]:
    """Factory: make_players(n) -> list of new player ids."""
    from kartops.models.player import Player

    created = []

    def _make(count: int) -> List[int]:
        players = []
        for _ in range(count):
            n = len(created) + 1
            player = Player(name=f"Player {n}", nickname=f"racer{n}")
            created.append(player)
            players.append(player)
        session.add_all(players)
        session.commit()
        for player in players:
            session.refresh(player)
        return [p.id for p in players]

    return _make
