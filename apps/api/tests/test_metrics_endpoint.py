from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.auth import Principal, encode_principal
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.models import Company, User
from leadflow.crm.notifications import DbNotificationSink, get_notification_sink, set_notification_sink
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
            User(id="metrics-admin", email="metrics@example.com", role="Manager"),
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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


def _auth(user_id: str, role: str) -> dict[str, str]:
    token = encode_principal(Principal(id=user_id, role=role, email=f"{user_id}@example.com"))
    return {"Authorization": f"Bearer {token}"}


def _sample_value(body: str, name: str, labels: dict[str, str]) -> float | None:
    for family in text_string_to_metric_families(body):
        for sample in family.samples:
            if sample.name == name and all(sample.labels.get(key) == value for key, value in labels.items()):
                return sample.value
    return None


def test_metrics_endpoint_exposes_http_authz_and_workflow_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    finalize = client.put("/api/v1/companies/company-1/finalize", headers=_auth("metrics-admin", "Manager"))
    assert finalize.status_code == 200

    metrics = client.get("/metrics", headers=_auth("metrics-admin", "Manager"))
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_request_duration_seconds" in body
    assert "security_events_total" in body

    assert (_sample_value(body, "http_requests_total", {"path": "/health", "method": "GET"}) or 0) >= 1
    assert (
        _sample_value(body, "http_requests_total", {"path": "/api/v1/companies/{company_id}/finalize", "status": "200"})
        or 0
    ) >= 1
    assert (_sample_value(body, "authz_decisions_total", {"guard": "require_role", "outcome": "granted"}) or 0) >= 1
    assert (
        _sample_value(body, "workflow_transitions_total", {"workflow": "finalization", "action": "finalize"}) or 0
    ) >= 1


def test_metrics_require_user_management_capability(client: TestClient) -> None:
    response = client.get("/metrics", headers=_auth("head-1", "Head"))

    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics", headers=_auth("metrics-admin", "Manager"))

    assert response.status_code == 404
