from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.auth import Principal, encode_principal
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.models import Company, User
from leadflow.crm.notifications import DbNotificationSink, get_notification_sink, set_notification_sink
from leadflow.logging import JsonLogFormatter
from leadflow.main import app
from leadflow.middleware.rate_limit import reset_rate_limiter
from leadflow.security.capabilities import StaticCapabilityBackend, set_capability_backend
from leadflow.security.events import SecurityEventLog, get_security_event_log, set_security_event_log


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    previous_log = get_security_event_log()
    previous_sink = get_notification_sink()
    set_security_event_log(SecurityEventLog(session_factory=SessionLocal))
    set_notification_sink(DbNotificationSink(session_factory=SessionLocal))
    set_capability_backend(StaticCapabilityBackend())
    try:
        yield SessionLocal
    finally:
        set_security_event_log(previous_log)
        set_notification_sink(previous_sink)
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    session.add_all(
        [
            User(id="manager-1", email="manager@example.com", role="Manager"),
            User(id="head-1", email="head@example.com", role="Head"),
            Company(id="company-1", name="Acme", conversion_status="Confirmed"),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth(user_id: str, role: str, **extra: str) -> dict[str, str]:
    token = encode_principal(Principal(id=user_id, role=role, email=f"{user_id}@example.com"))
    return {"Authorization": f"Bearer {token}", **extra}


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.put(
        "/api/v1/companies/company-1/finalize",
        headers=_auth("manager-1", "Manager", **{"X-Correlation-Id": "abc-123"}),
    )
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "leadflow.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "PUT"
        and getattr(record, "path", None) == "/api/v1/companies/{company_id}/finalize"
        and getattr(record, "status_code", None) == 200
        and getattr(record, "user_id", None) == "manager-1"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_workflow_and_security_logs_share_the_request_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    client.put(
        "/api/v1/companies/company-1/finalize",
        headers=_auth("manager-1", "Manager", **{"X-Correlation-Id": "wf-1"}),
    )

    finalized = [record for record in caplog.records if record.getMessage() == "company_finalized"]
    assert finalized
    assert getattr(finalized[-1], "correlation_id", None) == "wf-1"
    assert getattr(finalized[-1], "company_id", None) == "company-1"

    security = [record for record in caplog.records if record.getMessage() == "security_event"]
    assert any(
        getattr(record, "event_type", None) == "COMPANY_FINALIZED" and getattr(record, "correlation_id", None) == "wf-1"
        for record in security
    )


def test_denials_are_logged_with_medium_severity(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.put(
        "/api/v1/companies/company-1",
        json={"name": "Acme Holdings"},
        headers=_auth("head-1", "Head"),
    )
    assert response.status_code == 403

    security = [record for record in caplog.records if record.getMessage() == "security_event"]
    violation = [record for record in security if getattr(record, "event_type", None) == "READ_ONLY_VIOLATION"]
    assert violation
    assert violation[0].levelno == logging.INFO
    assert getattr(violation[0], "severity", None) == "medium"


def test_json_formatter_emits_whitelisted_fields_only() -> None:
    record = logging.LogRecord("leadflow.test", logging.INFO, __file__, 1, "company_finalized", None, None)
    record.correlation_id = "corr-9"
    record.company_id = "company-1"
    record.password = "hunter2"
    record.error = "x" * 600

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "company_finalized"
    assert payload["logger"] == "leadflow.test"
    assert payload["correlation_id"] == "corr-9"
    assert payload["fields"]["company_id"] == "company-1"
    assert "password" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
