from __future__ import annotations

import asyncio
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.auth import Principal, encode_principal
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.models import User
from leadflow.crm.notifications import DbNotificationSink, get_notification_sink, set_notification_sink
from leadflow.main import app
from leadflow.middleware.rate_limit import reset_rate_limiter
from leadflow.models.security_event import SecurityEvent
from leadflow.security.activity import (
    InProcessTtlCache,
    SuspiciousActivityTracker,
    UserRequestLimiter,
    detect_malicious_content,
    suspicious_patterns,
)
from leadflow.security.capabilities import DbCapabilityBackend, StaticCapabilityBackend, set_capability_backend
from leadflow.security.context import AccessContext
from leadflow.security.events import SecurityEventLog, get_security_event_log, set_security_event_log
from leadflow.security.roles import get_permissions


USERS = {
    "manager-1": "Manager",
    "collector-1": "DataCollector",
}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


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
    session.add_all([User(id=user_id, email=f"{user_id}@example.com", role=role) for user_id, role in USERS.items()])
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "3")
    monkeypatch.setenv("SUSPICIOUS_ACTIVITY_ALERT_THRESHOLD", "2")
    monkeypatch.setenv("SUSPICIOUS_ACTIVITY_THREAT_THRESHOLD", "4")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth(user_id: str) -> dict[str, str]:
    token = encode_principal(Principal(id=user_id, role=USERS[user_id], email=f"{user_id}@example.com"))
    return {"Authorization": f"Bearer {token}"}


def _events(session_factory: sessionmaker[Session], event_type: str) -> list[SecurityEvent]:
    with session_factory() as session:
        return list(session.scalars(select(SecurityEvent).where(SecurityEvent.event_type == event_type)))


def test_ttl_cache_expires_entries() -> None:
    clock = FakeClock()
    cache = InProcessTtlCache(clock=clock)

    cache.set("k", "v", ttl_seconds=10)
    assert cache.get("k") == "v"
    assert cache.ttl("k") == 10

    clock.now += 10
    assert cache.get("k") is None
    assert cache.ttl("k") is None


def test_ttl_cache_incr_starts_a_new_window_after_expiry() -> None:
    clock = FakeClock()
    cache = InProcessTtlCache(clock=clock)

    assert cache.incr("hits", 1, ttl_seconds=60) == 1
    clock.now += 30
    assert cache.incr("hits", 2, ttl_seconds=60) == 3
    assert cache.ttl("hits") == 30

    clock.now += 30
    assert cache.incr("hits", 1, ttl_seconds=60) == 1


def test_user_request_limiter_reports_retry_after() -> None:
    clock = FakeClock()
    limiter = UserRequestLimiter(InProcessTtlCache(clock=clock))

    decisions = [limiter.hit("user-1", max_requests=2, window_seconds=60) for _ in range(3)]
    assert [decision.allowed for decision in decisions] == [True, True, False]
    assert decisions[-1].count == 3

    clock.now += 45.5
    late = limiter.hit("user-1", max_requests=2, window_seconds=60)
    assert late.allowed is False
    assert late.retry_after == 15
    assert limiter.hit("user-2", max_requests=2, window_seconds=60).allowed is True


def test_suspicious_tracker_accumulates_pattern_hits() -> None:
    tracker = SuspiciousActivityTracker(InProcessTtlCache(clock=FakeClock()))

    assert tracker.observe("user-1", ["non_admin_admin_path"], window_seconds=3600) == 1
    assert tracker.observe("user-1", ["delete_without_permission", "finalized_without_permission"], window_seconds=3600) == 3
    assert tracker.observe("user-1", [], window_seconds=3600) == 3


def test_suspicious_patterns_by_role() -> None:
    collector = get_permissions("DataCollector")
    manager = get_permissions("Manager")

    assert suspicious_patterns("DataCollector", "DELETE", "/api/v1/admin/finalized", collector) == [
        "non_admin_admin_path",
        "delete_without_permission",
        "finalized_without_permission",
    ]
    assert suspicious_patterns("Manager", "GET", "/api/v1/admin/role-permissions", manager) == ["non_admin_admin_path"]
    assert suspicious_patterns("Admin", "DELETE", "/api/v1/admin/role-permissions", get_permissions("Admin")) == []


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"name": "<script>alert(1)</script>"}, ["script_tag"]),
        ({"url": "javascript:void(0)"}, ["javascript_uri"]),
        ({"notes": "<img src=x onerror=alert(1)>"}, ["inline_handler"]),
        ({"q": "1 UNION SELECT password"}, ["union_select"]),
        ({"name": "x; DROP TABLE companies"}, ["drop_table"]),
        ({"name": "x; delete  from users"}, ["delete_from"]),
        ({"name": "Acme Industries", "notes": "Prefers morning calls"}, []),
    ],
)
def test_detect_malicious_content(payload: dict[str, str], expected: list[str]) -> None:
    assert detect_malicious_content(payload) == expected


def test_authenticated_api_requests_are_rate_limited(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    responses = [client.get("/api/v1/companies/approvals", headers=_auth("manager-1")) for _ in range(5)]

    assert [response.status_code for response in responses] == [200, 200, 200, 429, 429]
    limited = responses[3]
    body = limited.json()
    assert body["error"] == "Rate limit exceeded. Please try again later."
    assert body["status"] == 429
    assert body["correlation_id"] == limited.headers["x-correlation-id"]
    assert int(limited.headers["Retry-After"]) >= 1
    assert body["details"]["retry_after"] == int(limited.headers["Retry-After"])

    events = _events(session_factory, "RATE_LIMIT_EXCEEDED")
    assert len(events) == 2
    assert events[0].user_id == "manager-1"
    assert events[0].severity == "medium"
    assert events[0].details["limit"] == 3


def test_limits_are_per_user(client: TestClient) -> None:
    for _ in range(4):
        client.get("/api/v1/companies/approvals", headers=_auth("manager-1"))

    response = client.get("/api/v1/companies/approvals", headers=_auth("collector-1"))

    assert response.status_code == 200


def test_anonymous_and_non_api_requests_bypass_the_limiter(client: TestClient) -> None:
    anonymous = [client.get("/api/v1/companies/approvals") for _ in range(5)]
    health = [client.get("/health", headers=_auth("manager-1")) for _ in range(5)]

    assert all(response.status_code == 401 for response in anonymous)
    assert all(response.status_code == 200 for response in health)


def test_rate_limit_can_be_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    responses = [client.get("/api/v1/companies/approvals", headers=_auth("manager-1")) for _ in range(6)]

    assert all(response.status_code == 200 for response in responses)


def test_suspicious_activity_raises_alerts_without_blocking(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    first = client.get("/api/v1/companies/finalized", headers=_auth("collector-1"))
    assert first.status_code == 403
    assert _events(session_factory, "SUSPICIOUS_ACTIVITY_DETECTED") == []

    second = client.get("/api/v1/admin/role-permissions", headers=_auth("collector-1"))
    assert second.status_code == 403

    alerts = _events(session_factory, "SUSPICIOUS_ACTIVITY_DETECTED")
    assert len(alerts) == 1
    assert alerts[0].severity == "high"
    assert alerts[0].details["score"] == 2
    assert alerts[0].details["patterns"] == ["non_admin_admin_path"]
    assert _events(session_factory, "POTENTIAL_SECURITY_THREAT") == []


def test_repeated_suspicious_activity_escalates_to_threat(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    client.delete("/api/v1/admin/role-permissions", headers=_auth("collector-1"))
    client.delete("/api/v1/admin/role-permissions", headers=_auth("collector-1"))

    threats = _events(session_factory, "POTENTIAL_SECURITY_THREAT")
    assert len(threats) == 1
    assert threats[0].severity == "critical"
    assert threats[0].details["score"] == 4


class RecordingCapabilityBackend(DbCapabilityBackend):
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        super().__init__(session_factory=session_factory)
        self.loads: list[bool] = []

    def _load_overrides(self, ctx: AccessContext | None):  # type: ignore[no-untyped-def]
        try:
            asyncio.get_running_loop()
            on_event_loop = True
        except RuntimeError:
            on_event_loop = False
        if ctx is None or self.CACHE_KEY not in ctx.cache:
            self.loads.append(on_event_loop)
        return super()._load_overrides(ctx)


def test_override_lookup_runs_once_per_request_off_the_event_loop(
    client: TestClient,
    session_factory: sessionmaker[Session],
) -> None:
    backend = RecordingCapabilityBackend(session_factory)
    set_capability_backend(backend)
    try:
        response = client.get("/api/v1/companies/finalized", headers=_auth("manager-1"))
    finally:
        set_capability_backend(StaticCapabilityBackend())

    assert response.status_code == 200
    assert backend.loads == [False]
