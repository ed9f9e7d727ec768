"""
Pytest configuration and fixtures.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Force an isolated database before app.db.session builds its engine; don't inherit from .env.
# TEST_DATABASE_URL (PostgreSQL) runs the suite against the production dialect instead.
_TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")
os.environ["DATABASE_URL"] = _TEST_DATABASE_URL or "sqlite://"
os.environ["LAWBOOK_PATH"] = ""
os.environ["DEPLOY_ENV"] = "staging"

from app.db.session import Base  # noqa: E402
import app.models  # noqa: E402,F401
from tests.factories import deploy_status_signal, lawbook_data  # noqa: E402

def _sqlite_engine() -> Engine:
    """In-memory SQLite with working SAVEPOINTs (pysqlite transaction recipe)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        # Let SQLAlchemy emit BEGIN itself so begin_nested() gets real savepoints
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Fresh schema per test (SQLite) or the shared PostgreSQL test database."""
    if _TEST_DATABASE_URL:
        pg_engine = create_engine(_TEST_DATABASE_URL)
        Base.metadata.create_all(pg_engine)
        yield pg_engine
        pg_engine.dispose()
        return
    sqlite_engine = _sqlite_engine()
    yield sqlite_engine
    sqlite_engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Generator[Session, None, None]:
    """Database session. On PostgreSQL all changes are rolled back after each test."""
    if not _TEST_DATABASE_URL:
        session = Session(bind=engine, autoflush=False)
        try:
            yield session
        finally:
            session.close()
        return

    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def _clear_settings_and_lawbook_caches() -> Generator[None, None, None]:
    """Clear cached settings and the active lawbook before and after each test."""
    from app.config import get_settings
    from app.governance.lawbook import invalidate_lawbook_cache

    get_settings.cache_clear()
    invalidate_lawbook_cache()
    yield
    get_settings.cache_clear()
    invalidate_lawbook_cache()


@pytest.fixture
def lawbook():
    """Parsed permissive lawbook (version "test-1")."""
    from app.governance.lawbook import parse_lawbook

    return parse_lawbook(lawbook_data())


@pytest.fixture
def governance(lawbook):
    """Governance snapshot over the permissive lawbook."""
    from app.governance.snapshot import GovernanceSnapshot

    return GovernanceSnapshot(lawbook=lawbook)


@pytest.fixture
def active_lawbook(lawbook):
    """Install the permissive lawbook as the active one (cache cleared after the test)."""
    from app.governance.lawbook import get_lawbook_cache

    get_lawbook_cache().set(lawbook)
    return lawbook


@pytest.fixture
def adapters():
    """RemediationAdapters with MagicMock adapters that succeed by default."""
    from app.remediation.adapters import AdapterResult, RemediationAdapters

    lkg_selector = MagicMock()
    lkg_selector.find_last_known_good.return_value = AdapterResult(
        success=True,
        data={
            "lkg": {
                "snapshot_id": "snap-41",
                "deploy_event_id": "deploy-41",
                "env": "production",
                "service": "web",
                "version": "v1.4.0",
                "repository": "acme/web",
                "commit_hash": "9f2c1e7",
                "image_digest": "sha256:4b825dc642cb6eb9a060e54bf8d69288fbee4904",
                "observed_at": "2026-03-01T10:00:00Z",
                "verification_run_id": "verify-41",
                "verification_report_hash": "a1b2c3",
            }
        },
    )
    deploy_dispatcher = MagicMock()
    deploy_dispatcher.dispatch_deploy.return_value = AdapterResult(
        success=True, data={"dispatch_id": "dispatch-900"}
    )
    verification_runner = MagicMock()
    verification_runner.run_verification.return_value = AdapterResult(
        success=True,
        data={"run_id": "verify-900", "status": "success", "report_hash": "f00dfeed"},
    )
    ecs = MagicMock()
    ecs.describe_service.return_value = AdapterResult(
        success=True,
        data={
            "service_arn": "arn:aws:ecs:us-east-1:123456789012:service/prod-cluster/web",
            "desired_count": 2,
            "running_count": 1,
            "task_definition": "web:42",
        },
    )
    ecs.force_new_deployment.return_value = AdapterResult(
        success=True, data={"deployment_id": "ecs-svc/123"}
    )
    ecs.poll_service_stability.return_value = AdapterResult(
        success=True, data={"stable": True, "final_state": {"running_count": 2}}
    )
    return RemediationAdapters(
        lkg_selector=lkg_selector,
        deploy_dispatcher=deploy_dispatcher,
        verification_runner=verification_runner,
        ecs=ecs,
    )


@pytest.fixture
def make_incident(db: Session):
    """Ingest a deploy_status signal and return the stored Incident row."""
    from app.incidents import ingest
    from app.models import Incident

    def _make(**overrides: Any) -> Incident:
        result = ingest(db, "deploy_status", deploy_status_signal(**overrides))
        assert result.ok, result.error
        return db.get(Incident, result.incident.id)

    return _make
