import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ["ALLOWED_ORIGINS"] = "https://admin.example.com"
os.environ["EXTERNAL_API_SECRET"] = "test-external-secret"

from datetime import UTC, date, datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base, get_db
from app.models.directory import Team, UserRecord
from app.services.table_backends import document_store, seed_documents


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def client(db_session):
    from app.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def clear_document_store():
    document_store.clear()
    yield
    document_store.clear()


@pytest.fixture()
def team(db_session):
    team = Team(name="Support")
    db_session.add(team)
    db_session.commit()
    db_session.refresh(team)
    return team


USER_FIXTURES = [
    {
        "name": "Anna",
        "email": "anna@example.com",
        "role": "admin",
        "status": "Active",
        "age": 34,
        "tags": ["vip", "beta"],
        "is_verified": True,
        "joined_on": date(2024, 1, 15),
    },
    {
        "name": "Bob",
        "email": "bob@example.com",
        "role": "editor",
        "status": "Inactive",
        "age": 41,
        "tags": ["beta"],
        "is_verified": False,
        "joined_on": date(2024, 2, 1),
    },
    {
        "name": "Diana",
        "email": None,
        "role": "viewer",
        "status": "Active",
        "age": None,
        "tags": None,
        "is_verified": False,
        "joined_on": date(2024, 3, 10),
    },
]


@pytest.fixture()
def users(db_session, team):
    records = []
    for index, values in enumerate(USER_FIXTURES):
        record = UserRecord(
            **values,
            team_id=team.id if index == 0 else None,
            created_at=datetime(2024, 1, 1 + index, 9, 30, tzinfo=UTC),
        )
        db_session.add(record)
        records.append(record)
    db_session.commit()
    for record in records:
        db_session.refresh(record)
    return records


CONTACT_FIXTURES = [
    {
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "address": {"city": "London", "country": "UK"},
        "stage": "lead",
        "score": 82,
        "labels": ["math", "vip"],
        "subscribed": True,
        "last_contacted": "2024-05-02",
    },
    {
        "name": "Grace Hopper",
        "email": "grace@example.com",
        "address": {"city": "New York", "country": "US"},
        "stage": "customer",
        "score": 95,
        "labels": ["navy"],
        "subscribed": False,
        "last_contacted": "2024-05-10",
    },
    {
        "name": "Alan Turing",
        "address": {"city": "Manchester"},
        "stage": "qualified",
        "score": 77,
        "labels": [],
        "subscribed": True,
    },
]


@pytest.fixture()
def contacts():
    return seed_documents(document_store, "contacts", CONTACT_FIXTURES)
