import os
import uuid
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import db as db_module
from app.db import Base, get_db
from app.models.organization import Organization, OrganizationMembership, User
from app.models.platform_connection import ConnectionStatus, Platform, PlatformConnection
from app.services.auth import issue_access_token
from app.websocket.manager import ConnectionManager
from tests.mocks import PAGE_ID, FakePlatformService, RecordingNotifier


class _JoseDateTimeProxy:
    def utcnow(self):
        from datetime import datetime, timezone

        return datetime.now(timezone.utc)

    def now(self, tz: Any | None = None):
        from datetime import datetime

        return datetime.now(tz)

    def __getattr__(self, name: str) -> Any:
        from datetime import datetime

        return getattr(datetime, name)


@pytest.fixture(autouse=True)
def _patch_jose_datetime(monkeypatch):
    import jose.jwt as jose_jwt

    monkeypatch.setattr(jose_jwt, "datetime", _JoseDateTimeProxy(), raising=False)


@pytest.fixture()
def engine():
    # Services commit, so every test gets its own database instead of a
    # rolled-back outer transaction
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    db_module.init_db(engine)
    try:
        yield engine
    finally:
        if database_url:
            Base.metadata.drop_all(engine)
        db_module.dispose_db()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def organization(db_session):
    organization = Organization(name="Acme Support")
    db_session.add(organization)
    db_session.commit()
    db_session.refresh(organization)
    return organization


@pytest.fixture()
def other_organization(db_session):
    organization = Organization(name="Globex Support")
    db_session.add(organization)
    db_session.commit()
    db_session.refresh(organization)
    return organization


@pytest.fixture()
def user(db_session):
    user = User(email=_unique_email(), display_name="Agent Smith")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def membership(db_session, organization, user):
    membership = OrganizationMembership(organization_id=organization.id, user_id=user.id)
    db_session.add(membership)
    db_session.commit()
    return membership


@pytest.fixture()
def outsider(db_session, other_organization):
    outsider = User(email=_unique_email(), display_name="Other Agent")
    db_session.add(outsider)
    db_session.commit()
    db_session.add(
        OrganizationMembership(organization_id=other_organization.id, user_id=outsider.id)
    )
    db_session.commit()
    db_session.refresh(outsider)
    return outsider


def _make_connection(db_session, organization, platform, platform_user_id):
    connection = PlatformConnection(
        organization_id=organization.id,
        platform=platform,
        platform_user_id=platform_user_id,
        platform_username="Acme Page",
        access_token="page-token",
        status=ConnectionStatus.active,
    )
    db_session.add(connection)
    db_session.commit()
    db_session.refresh(connection)
    return connection


@pytest.fixture()
def connection(db_session, organization):
    return _make_connection(db_session, organization, Platform.facebook, PAGE_ID)


@pytest.fixture()
def instagram_connection(db_session, organization):
    return _make_connection(db_session, organization, Platform.instagram, "17841400000000001")


@pytest.fixture()
def other_connection(db_session, other_organization):
    return _make_connection(db_session, other_organization, Platform.facebook, "998877665544")


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def platform_service():
    return FakePlatformService()


@pytest.fixture()
def auth_headers(user):
    return {"Authorization": f"Bearer {issue_access_token(user.id)}"}


@pytest.fixture()
def app(db_session, platform_service):
    from app.main import create_app

    application = create_app(
        manager=ConnectionManager(redis_url=None),
        platform_service=platform_service,
        init_database=False,
    )

    def _override_get_db():
        yield db_session

    application.dependency_overrides[get_db] = _override_get_db
    return application


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
