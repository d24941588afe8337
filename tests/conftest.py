# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("EVENT_BUS_BACKEND", "memory")

from degree_defender.api.dependencies import get_event_bus_dep
from degree_defender.db.session import Base
from degree_defender.db.session import get_db as app_get_session
from degree_defender.main import app as fastapi_app
from degree_defender.models import User
from degree_defender.services import user_service
from degree_defender.services.community_notes import CommunityNoteService
from degree_defender.services.events import InMemoryEventBus, NOTE_UPDATE_TOPIC

TEST_DB_URL = "sqlite://"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    # Services commit, so tables are emptied after each test.
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()

        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture()
def published(event_bus: InMemoryEventBus) -> Iterator[list[dict]]:
    """Collect every note update published during the test."""
    events: list[dict] = []
    unsubscribe = event_bus.subscribe(NOTE_UPDATE_TOPIC, events.append)
    try:
        yield events
    finally:
        unsubscribe()


@pytest.fixture()
def note_service(event_bus: InMemoryEventBus) -> CommunityNoteService:
    return CommunityNoteService(event_bus)


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_dependencies(
    app: FastAPI,
    db_session: Session,
    event_bus: InMemoryEventBus,
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    app.dependency_overrides[get_event_bus_dep] = lambda: event_bus
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)
        app.dependency_overrides.pop(get_event_bus_dep, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def author(db_session: Session) -> User:
    return user_service.create_user(db_session, "author")


@pytest.fixture()
def voter(db_session: Session) -> User:
    return user_service.create_user(db_session, "voter")


@pytest.fixture()
def other_voter(db_session: Session) -> User:
    return user_service.create_user(db_session, "other_voter")


@pytest.fixture()
def moderator(db_session: Session) -> User:
    return user_service.create_user(db_session, "moderator", is_moderator=True)


@pytest.fixture()
def pending_note(db_session: Session, note_service: CommunityNoteService, author: User):
    return note_service.submit_note(
        db_session,
        "The cited study was retracted in 2021.",
        author.id,
        "q-1",
        "a-1",
        "https://example.org/retraction",
    )
